"""
Tests des handlers via la service layer (high gear).

Ces tests utilisent des fakes (FakeSaleRepository, FakeUnitOfWork,
FakeCache...) pour tester les cas d'usage complets à travers le
message bus, sans base de données ni Redis.
"""

from __future__ import annotations

from datetime import datetime, timedelta, timezone
from decimal import Decimal

import pytest

from flashsale.adapters import cache as cache_keys
from flashsale.adapters.cache import AbstractCache
from flashsale.adapters.notifications import AbstractNotifications
from flashsale.adapters.orders import RELEASED_STATUSES, AbstractOrderLines
from flashsale.adapters.repository import AbstractSaleRepository
from flashsale.domain import commands
from flashsale.domain.errors import (
    Conflict,
    InsufficientStock,
    InvalidRequest,
    NotFound,
    PurchaseLimitExceeded,
    SaleNotActive,
)
from flashsale.domain.model import Allocation, Sale, SaleStatus
from flashsale.service_layer import bootstrap, messagebus, unit_of_work

NOW = datetime(2026, 11, 27, 12, 0, tzinfo=timezone.utc)


# --- Fakes pour les tests ---


class FakeSaleRepository(AbstractSaleRepository):
    """Repository en mémoire ; hérite du tracking `seen`."""

    def __init__(self, sales: list[Sale] | None = None):
        super().__init__()
        self._sales = set(sales or [])

    def _add(self, sale: Sale) -> None:
        self._sales.add(sale)

    def _get(self, sale_id: str) -> Sale | None:
        return next((s for s in self._sales if s.id == sale_id), None)

    def _get_for_update(self, sale_id: str) -> Sale | None:
        return self._get(sale_id)

    def _lock_allocation(self, allocation_id: str) -> Sale | None:
        return next(
            (s for s in self._sales
             for a in s.allocations
             if a.id == allocation_id),
            None,
        )

    def _due_for_activation(self, now: datetime) -> list[Sale]:
        return [
            s for s in self._sales
            if s.status is SaleStatus.SCHEDULED and s.start_time <= now
        ]

    def _due_for_closing(self, now: datetime) -> list[Sale]:
        return [
            s for s in self._sales
            if s.status is SaleStatus.ACTIVE and s.end_time <= now
        ]

    def allocations_by_sale(self, sale_id: str) -> list[Allocation]:
        sale = self._get(sale_id)
        if sale is None:
            return []
        return sorted(sale.allocations, key=lambda a: a.sold_percentage, reverse=True)


class FakeOrderLines(AbstractOrderLines):
    def __init__(self) -> None:
        self.lines: list[dict] = []

    def sum_reserved_quantity(self, buyer_id: str, allocation_id: str) -> int:
        return sum(
            line["quantity"] for line in self.lines
            if line["buyer_id"] == buyer_id
            and line["allocation_id"] == allocation_id
            and line["status"] not in RELEASED_STATUSES
        )

    def record_reservation(self, allocation_id, buyer_id, quantity, price) -> None:
        self.lines.append({
            "allocation_id": allocation_id,
            "buyer_id": buyer_id,
            "quantity": quantity,
            "unit_price": price,
            "status": "reserved",
        })


class FakeUnitOfWork(unit_of_work.AbstractUnitOfWork):
    """
    Unit of Work en mémoire pour les tests.

    L'attribut `committed` permet de vérifier que le commit
    a bien été appelé dans les tests.
    """

    def __init__(self) -> None:
        self.sales = FakeSaleRepository()
        self.orders = FakeOrderLines()
        self.committed = False

    def __enter__(self) -> FakeUnitOfWork:
        return super().__enter__()

    def _commit(self) -> None:
        self.committed = True

    def rollback(self) -> None:
        pass


class FakeCache(AbstractCache):
    def __init__(self) -> None:
        self.store: dict[str, object] = {}
        self.deleted: list[str] = []

    def generation(self, key):
        return self.deleted.count(key)

    def get(self, key):
        return self.store.get(key)

    def set(self, key, value, ttl, generation, guard=None):
        if self.generation(guard or key) == generation:
            self.store[key] = value

    def delete(self, *keys):
        self.deleted.extend(keys)
        for key in keys:
            self.store.pop(key, None)


class FakeNotifications(AbstractNotifications):
    """Capture les notifications envoyées pour vérification dans les tests."""

    def __init__(self) -> None:
        self.sent: list[tuple[tuple[str, ...], str, str]] = []

    def notify_interested_buyers(self, allocation_ids, sale_title, message) -> None:
        self.sent.append((allocation_ids, sale_title, message))


class BrokenNotifications(AbstractNotifications):
    def notify_interested_buyers(self, allocation_ids, sale_title, message) -> None:
        raise ConnectionError("dispatcher injoignable")


class FakeClock:
    def __init__(self, now: datetime = NOW):
        self.now = now

    def __call__(self) -> datetime:
        return self.now


# --- Bootstrap de test ---


def bootstrap_test_bus(
    uow: FakeUnitOfWork | None = None,
    cache: FakeCache | None = None,
    notifications: AbstractNotifications | None = None,
    clock: FakeClock | None = None,
    purchase_limit: int = 2,
) -> messagebus.MessageBus:
    """
    Construit un MessageBus configuré avec des fakes.

    Même wiring que la production, mais avec des implémentations
    en mémoire pour l'isolation et la rapidité.
    """
    return bootstrap.bootstrap(
        start_orm=False,
        uow=uow or FakeUnitOfWork(),
        cache=cache or FakeCache(),
        notifications_adapter=notifications or FakeNotifications(),
        clock=clock or FakeClock(),
        purchase_limit=purchase_limit,
    )


def ajouter_vente(
    bus: messagebus.MessageBus,
    status: SaleStatus = SaleStatus.ACTIVE,
    start: datetime = NOW - timedelta(hours=1),
    end: datetime = NOW + timedelta(hours=1),
    max_quantity: int = 10,
) -> Sale:
    """Place directement une vente dans le repository du bus."""
    sale = Sale(
        id="vente-1",
        title="Soldes d'hiver",
        start_time=start,
        end_time=end,
        discount_percentage=Decimal("40"),
        allocations=[
            Allocation(
                id="alloc-1",
                product_id="BASKETS-42",
                original_price=Decimal("120.00"),
                sale_price=Decimal("72.00"),
                max_quantity=max_quantity,
            )
        ],
        status=status,
    )
    bus.uow.sales._add(sale)
    return sale


def réserver(bus, buyer_id="acheteur-1", quantity=1, allocation_id="alloc-1", sale_id=None):
    return bus.handle(
        commands.Reserve(
            allocation_id=allocation_id, buyer_id=buyer_id, quantity=quantity, sale_id=sale_id
        )
    )[0]


def nouvelle_vente(**overrides) -> commands.CreateSale:
    params = dict(
        title="Vente flash du midi",
        start_time=NOW + timedelta(hours=1),
        end_time=NOW + timedelta(hours=3),
        discount_percentage=Decimal("20"),
        allocations=(
            commands.NewAllocation(
                product_id="MONTRE-SPORT", original_price=Decimal("100.00"), max_quantity=50
            ),
        ),
    )
    params.update(overrides)
    return commands.CreateSale(**params)


# --- Tests des Commands ---


class TestCréerVente:
    def test_crée_une_vente_programmée(self):
        bus = bootstrap_test_bus()

        sale_id = bus.handle(nouvelle_vente())[0]

        sale = bus.uow.sales.get(sale_id)
        assert sale.status is SaleStatus.SCHEDULED
        assert len(sale.allocations) == 1
        assert bus.uow.committed

    def test_prix_de_vente_dérivé_de_la_remise(self):
        bus = bootstrap_test_bus()

        sale_id = bus.handle(nouvelle_vente())[0]

        allocation = bus.uow.sales.get(sale_id).allocations[0]
        assert allocation.sale_price == Decimal("80.00")
        assert allocation.quantity_sold == 0

    def test_prix_de_vente_explicite_conservé(self):
        bus = bootstrap_test_bus()
        cmd = nouvelle_vente(allocations=(
            commands.NewAllocation(
                product_id="MONTRE-SPORT",
                original_price=Decimal("100.00"),
                max_quantity=5,
                sale_price=Decimal("59.90"),
            ),
        ))

        sale_id = bus.handle(cmd)[0]

        assert bus.uow.sales.get(sale_id).allocations[0].sale_price == Decimal("59.90")

    def test_prix_de_vente_explicite_arrondi_au_centime(self):
        bus = bootstrap_test_bus()
        cmd = nouvelle_vente(allocations=(
            commands.NewAllocation(
                product_id="MONTRE-SPORT",
                original_price=Decimal("60.00"),
                max_quantity=5,
                sale_price="59.994",
            ),
        ))

        sale_id = bus.handle(cmd)[0]

        assert bus.uow.sales.get(sale_id).allocations[0].sale_price == Decimal("59.99")

    def test_remise_fractionnaire_acceptée(self):
        bus = bootstrap_test_bus()

        sale_id = bus.handle(nouvelle_vente(discount_percentage=Decimal("0.5")))[0]

        assert bus.uow.sales.get(sale_id).allocations[0].sale_price == Decimal("99.50")

    @pytest.mark.parametrize("discount", [Decimal("0"), Decimal("100.5")])
    def test_message_de_remise_hors_bornes(self, discount):
        bus = bootstrap_test_bus()

        with pytest.raises(InvalidRequest, match="strictement positive et au plus de 100 %"):
            bus.handle(nouvelle_vente(discount_percentage=discount))

    def test_invalide_le_cache(self):
        cache = FakeCache()
        bus = bootstrap_test_bus(cache=cache)

        sale_id = bus.handle(nouvelle_vente())[0]

        assert cache_keys.UPCOMING_SALES_KEY in cache.deleted
        assert cache_keys.sale_key(sale_id) in cache.deleted

    @pytest.mark.parametrize("overrides", [
        dict(end_time=NOW),
        dict(discount_percentage=Decimal("0")),
        dict(discount_percentage=Decimal("101")),
        dict(allocations=()),
        dict(title="  "),
        dict(kind="clearance"),
    ])
    def test_refuse_une_vente_invalide(self, overrides):
        uow = FakeUnitOfWork()
        bus = bootstrap_test_bus(uow=uow)

        with pytest.raises(InvalidRequest):
            bus.handle(nouvelle_vente(**overrides))
        assert not uow.committed

    def test_refuse_un_prix_de_vente_supérieur_au_prix_d_origine(self):
        bus = bootstrap_test_bus()
        cmd = nouvelle_vente(allocations=(
            commands.NewAllocation(
                product_id="MONTRE-SPORT",
                original_price=Decimal("100.00"),
                max_quantity=5,
                sale_price=Decimal("120.00"),
            ),
        ))

        with pytest.raises(InvalidRequest):
            bus.handle(cmd)

    def test_vente_saisonnière(self):
        bus = bootstrap_test_bus()

        sale_id = bus.handle(nouvelle_vente(kind="seasonal", season="hiver", banner_color="#0044aa"))[0]

        sale = bus.uow.sales.get(sale_id)
        assert sale.kind.value == "seasonal"
        assert sale.season == "hiver"


class TestRéserver:
    def test_réservation_réussie(self):
        bus = bootstrap_test_bus()
        ajouter_vente(bus)

        reservation = réserver(bus, quantity=2)

        assert reservation.reserved_price == Decimal("72.00")
        assert reservation.reserved_quantity == 2
        assert bus.uow.sales.get("vente-1").allocations[0].quantity_sold == 2
        assert bus.uow.committed

    def test_inscrit_la_ligne_de_commande_au_prix_figé(self):
        bus = bootstrap_test_bus()
        ajouter_vente(bus)

        réserver(bus, buyer_id="acheteur-7")

        assert bus.uow.orders.lines == [{
            "allocation_id": "alloc-1",
            "buyer_id": "acheteur-7",
            "quantity": 1,
            "unit_price": Decimal("72.00"),
            "status": "reserved",
        }]

    def test_invalide_le_cache_des_ventes_actives(self):
        cache = FakeCache()
        cache.store[cache_keys.ACTIVE_SALES_KEY] = ["obsolète"]
        bus = bootstrap_test_bus(cache=cache)
        ajouter_vente(bus)

        réserver(bus)

        assert cache_keys.ACTIVE_SALES_KEY not in cache.store
        assert cache_keys.sale_key("vente-1") in cache.deleted

    @pytest.mark.parametrize("quantity", [0, -1])
    def test_quantité_invalide(self, quantity):
        uow = FakeUnitOfWork()
        bus = bootstrap_test_bus(uow=uow)
        ajouter_vente(bus)

        with pytest.raises(InvalidRequest):
            réserver(bus, quantity=quantity)
        assert not uow.committed

    def test_allocation_inconnue(self):
        bus = bootstrap_test_bus()
        ajouter_vente(bus)

        with pytest.raises(NotFound):
            réserver(bus, allocation_id="alloc-inexistante")

    def test_allocation_d_une_autre_vente(self):
        bus = bootstrap_test_bus()
        ajouter_vente(bus)

        with pytest.raises(NotFound):
            réserver(bus, sale_id="vente-2")

    def test_stock_insuffisant_indique_le_restant(self):
        bus = bootstrap_test_bus(purchase_limit=10)
        sale = ajouter_vente(bus, max_quantity=3)
        réserver(bus, buyer_id="acheteur-1", quantity=2)

        with pytest.raises(InsufficientStock) as excinfo:
            réserver(bus, buyer_id="acheteur-2", quantity=2)

        assert excinfo.value.remaining == 1
        assert sale.allocations[0].quantity_sold == 2

    def test_le_stock_est_vérifié_avant_le_plafond(self):
        bus = bootstrap_test_bus(purchase_limit=2)
        ajouter_vente(bus, max_quantity=1)

        with pytest.raises(InsufficientStock):
            réserver(bus, quantity=3)

    def test_plafond_par_acheteur(self):
        bus = bootstrap_test_bus(purchase_limit=2)
        sale = ajouter_vente(bus)

        réserver(bus)
        réserver(bus)
        with pytest.raises(PurchaseLimitExceeded) as excinfo:
            réserver(bus)

        assert excinfo.value.already_claimed == 2
        assert excinfo.value.cap == 2
        assert sale.allocations[0].quantity_sold == 2

    def test_le_plafond_est_propre_à_chaque_acheteur(self):
        bus = bootstrap_test_bus(purchase_limit=2)
        ajouter_vente(bus)

        réserver(bus, buyer_id="acheteur-1", quantity=2)
        reservation = réserver(bus, buyer_id="acheteur-2", quantity=2)

        assert reservation.reserved_quantity == 2

    def test_les_lignes_annulées_ne_comptent_pas(self):
        bus = bootstrap_test_bus(purchase_limit=2)
        ajouter_vente(bus)
        réserver(bus, quantity=2)
        bus.uow.orders.lines[0]["status"] = "cancelled"

        reservation = réserver(bus, quantity=2)

        assert reservation.reserved_quantity == 2

    def test_prix_figé_après_changement_de_prix(self):
        bus = bootstrap_test_bus()
        ajouter_vente(bus)
        première = réserver(bus, buyer_id="acheteur-1")

        bus.handle(commands.ChangeSalePrice(allocation_id="alloc-1", sale_price=Decimal("60")))
        seconde = réserver(bus, buyer_id="acheteur-2")

        assert première.reserved_price == Decimal("72.00")
        assert seconde.reserved_price == Decimal("60.00")
        assert bus.uow.orders.lines[0]["unit_price"] == Decimal("72.00")


class TestFenêtreTemporelle:
    def test_vente_programmée_future_refusée(self):
        bus = bootstrap_test_bus()
        ajouter_vente(
            bus,
            status=SaleStatus.SCHEDULED,
            start=NOW + timedelta(minutes=10),
            end=NOW + timedelta(hours=1),
        )

        with pytest.raises(SaleNotActive) as excinfo:
            réserver(bus)
        assert excinfo.value.reason == "not_started"

    def test_acceptée_après_activation_par_le_scheduler(self):
        clock = FakeClock()
        bus = bootstrap_test_bus(clock=clock)
        ajouter_vente(
            bus,
            status=SaleStatus.SCHEDULED,
            start=NOW + timedelta(minutes=10),
            end=NOW + timedelta(hours=1),
        )

        clock.now = NOW + timedelta(minutes=10)
        bus.handle(commands.PromoteScheduledSales(now=clock.now))
        reservation = réserver(bus)

        assert reservation.reserved_quantity == 1

    def test_refusée_après_la_fin_même_avant_le_passage_du_scheduler(self):
        clock = FakeClock()
        bus = bootstrap_test_bus(clock=clock)
        sale = ajouter_vente(bus, end=NOW + timedelta(minutes=1))

        clock.now = NOW + timedelta(minutes=1)

        with pytest.raises(SaleNotActive) as excinfo:
            réserver(bus)
        assert excinfo.value.reason == "ended"
        assert sale.status is SaleStatus.ACTIVE
        assert sale.allocations[0].quantity_sold == 0


class TestCycleDeVie:
    def test_activer_notifie_les_acheteurs_intéressés(self):
        notifications = FakeNotifications()
        bus = bootstrap_test_bus(notifications=notifications)
        ajouter_vente(bus, status=SaleStatus.SCHEDULED, start=NOW)

        activated = bus.handle(commands.PromoteScheduledSales(now=NOW))[0]

        assert activated == ["vente-1"]
        assert len(notifications.sent) == 1
        allocation_ids, title, message = notifications.sent[0]
        assert allocation_ids == ("alloc-1",)
        assert title == "Soldes d'hiver"
        assert "Soldes d'hiver" in message

    def test_échec_de_notification_n_annule_pas_l_activation(self):
        cache = FakeCache()
        bus = bootstrap_test_bus(notifications=BrokenNotifications(), cache=cache)
        sale = ajouter_vente(bus, status=SaleStatus.SCHEDULED, start=NOW)

        bus.handle(commands.PromoteScheduledSales(now=NOW))

        assert sale.status is SaleStatus.ACTIVE
        assert bus.uow.committed
        assert cache_keys.ACTIVE_SALES_KEY in cache.deleted

    def test_clôturer_deux_fois_est_sans_effet(self):
        cache = FakeCache()
        bus = bootstrap_test_bus(cache=cache)
        sale = ajouter_vente(bus, end=NOW)

        premier = bus.handle(commands.CloseExpiredSales(now=NOW))[0]
        invalidations = list(cache.deleted)
        second = bus.handle(commands.CloseExpiredSales(now=NOW))[0]

        assert premier == ["vente-1"]
        assert second == []
        assert sale.status is SaleStatus.ENDED
        assert cache.deleted == invalidations

    def test_clôture_invalide_le_cache_des_ventes_actives(self):
        cache = FakeCache()
        cache.store[cache_keys.ACTIVE_SALES_KEY] = ["obsolète"]
        bus = bootstrap_test_bus(cache=cache)
        ajouter_vente(bus, end=NOW)

        bus.handle(commands.CloseExpiredSales(now=NOW))

        assert cache_keys.ACTIVE_SALES_KEY not in cache.store

    def test_rien_à_activer_avant_le_début(self):
        bus = bootstrap_test_bus()
        sale = ajouter_vente(bus, status=SaleStatus.SCHEDULED, start=NOW + timedelta(seconds=1))

        assert bus.handle(commands.PromoteScheduledSales(now=NOW))[0] == []
        assert sale.status is SaleStatus.SCHEDULED


class TestAnnulerVente:
    def test_annuler_une_vente_programmée(self):
        bus = bootstrap_test_bus()
        ajouter_vente(
            bus,
            status=SaleStatus.SCHEDULED,
            start=NOW + timedelta(hours=1),
            end=NOW + timedelta(hours=2),
        )

        bus.handle(commands.CancelSale(sale_id="vente-1"))

        assert bus.uow.sales.get("vente-1").status is SaleStatus.CANCELLED

    def test_une_vente_annulée_refuse_les_réservations(self):
        clock = FakeClock()
        bus = bootstrap_test_bus(clock=clock)
        ajouter_vente(
            bus,
            status=SaleStatus.SCHEDULED,
            start=NOW + timedelta(hours=1),
            end=NOW + timedelta(hours=2),
        )
        bus.handle(commands.CancelSale(sale_id="vente-1"))

        clock.now = NOW + timedelta(hours=1, minutes=30)
        bus.handle(commands.PromoteScheduledSales(now=clock.now))
        with pytest.raises(SaleNotActive) as excinfo:
            réserver(bus)
        assert excinfo.value.reason == "cancelled"

    def test_annuler_une_vente_active_est_un_conflit(self):
        bus = bootstrap_test_bus()
        ajouter_vente(bus)

        with pytest.raises(Conflict):
            bus.handle(commands.CancelSale(sale_id="vente-1"))

    def test_annuler_une_vente_inconnue(self):
        bus = bootstrap_test_bus()

        with pytest.raises(NotFound):
            bus.handle(commands.CancelSale(sale_id="vente-fantôme"))


class TestChangerPrix:
    def test_vente_terminée_est_un_conflit(self):
        bus = bootstrap_test_bus()
        ajouter_vente(bus, status=SaleStatus.ENDED)

        with pytest.raises(Conflict):
            bus.handle(commands.ChangeSalePrice(allocation_id="alloc-1", sale_price=Decimal("10")))

    def test_allocation_inconnue(self):
        bus = bootstrap_test_bus()

        with pytest.raises(NotFound):
            bus.handle(commands.ChangeSalePrice(allocation_id="inconnue", sale_price=Decimal("10")))

    def test_allocation_d_une_autre_vente(self):
        bus = bootstrap_test_bus()
        sale = ajouter_vente(bus)

        with pytest.raises(NotFound):
            bus.handle(commands.ChangeSalePrice(
                allocation_id="alloc-1", sale_price=Decimal("10"), sale_id="vente-2"
            ))
        assert sale.allocations[0].sale_price == Decimal("72.00")

    def test_retourne_le_prix_enregistré_arrondi_au_centime(self):
        bus = bootstrap_test_bus()
        ajouter_vente(bus)

        stored = bus.handle(commands.ChangeSalePrice(
            allocation_id="alloc-1", sale_price=Decimal("59.995"), sale_id="vente-1"
        ))[0]

        assert stored == Decimal("60.00")
