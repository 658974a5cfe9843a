"""
Tests d'intégration du Repository avec SQLite.

Ces tests vérifient que le mapping ORM fonctionne correctement :
- Sauvegarder et recharger une Vente avec ses Allocations
- Les dates reviennent en UTC, les statuts en enum
- Les requêtes du scheduler et le verrouillage par allocation
- Le cumul des lignes de commande par acheteur
"""

from datetime import datetime, timedelta, timezone
from decimal import Decimal

from sqlalchemy import update

from flashsale.adapters import orders, orm, repository
from flashsale.domain.model import Allocation, Sale, SaleKind, SaleStatus

NOW = datetime(2026, 11, 27, 12, 0, tzinfo=timezone.utc)


def créer_vente(
    sale_id: str = "vente-1",
    status: SaleStatus = SaleStatus.SCHEDULED,
    start: datetime = NOW + timedelta(hours=1),
    end: datetime = NOW + timedelta(hours=3),
    allocations: list[Allocation] | None = None,
) -> Sale:
    if allocations is None:
        allocations = [
            Allocation(
                id=f"{sale_id}-alloc",
                product_id="ENCEINTE-BT",
                original_price=Decimal("80.00"),
                sale_price=Decimal("56.00"),
                max_quantity=20,
            )
        ]
    return Sale(
        id=sale_id,
        title="Vente flash audio",
        start_time=start,
        end_time=end,
        discount_percentage=Decimal("30"),
        allocations=allocations,
        status=status,
    )


def sauvegarder(session_factory, *sales: Sale) -> None:
    session = session_factory()
    repo = repository.SqlAlchemySaleRepository(session)
    for sale in sales:
        repo.add(sale)
    session.commit()
    session.close()


class TestSqlAlchemySaleRepository:
    def test_sauvegarder_et_recharger_une_vente(self, session_factory):
        sauvegarder(session_factory, créer_vente())

        session = session_factory()
        rechargée = repository.SqlAlchemySaleRepository(session).get("vente-1")

        assert rechargée is not None
        assert rechargée.title == "Vente flash audio"
        assert rechargée.status is SaleStatus.SCHEDULED
        assert rechargée.kind is SaleKind.FLASH
        assert rechargée.discount_percentage == Decimal("30")
        assert [a.id for a in rechargée.allocations] == ["vente-1-alloc"]
        assert rechargée.allocations[0].sale_price == Decimal("56.00")
        assert rechargée.events == []
        session.close()

    def test_les_dates_reviennent_en_utc(self, session_factory):
        paris = timezone(timedelta(hours=1))
        start = datetime(2026, 11, 27, 14, 0, tzinfo=paris)
        sauvegarder(session_factory, créer_vente(start=start, end=start + timedelta(hours=2)))

        session = session_factory()
        rechargée = repository.SqlAlchemySaleRepository(session).get("vente-1")

        assert rechargée.start_time == start
        assert rechargée.start_time.tzinfo == timezone.utc
        assert rechargée.start_time.hour == 13
        session.close()

    def test_get_retourne_none_si_vente_inexistante(self, session):
        repo = repository.SqlAlchemySaleRepository(session)
        assert repo.get("INEXISTANTE") is None
        assert repo.get_for_update("INEXISTANTE") is None

    def test_seen_trace_les_agrégats(self, session_factory):
        sauvegarder(session_factory, créer_vente())

        session = session_factory()
        repo = repository.SqlAlchemySaleRepository(session)
        repo.get("vente-1")
        assert len(repo.seen) == 1
        session.close()


class TestVerrouillage:
    def test_verrouiller_une_allocation_retourne_sa_vente(self, session_factory):
        sauvegarder(session_factory, créer_vente())

        session = session_factory()
        repo = repository.SqlAlchemySaleRepository(session)
        sale = repo.lock_allocation("vente-1-alloc")

        assert sale.id == "vente-1"
        assert sale in repo.seen
        session.close()

    def test_allocation_inconnue(self, session):
        repo = repository.SqlAlchemySaleRepository(session)
        assert repo.lock_allocation("inconnue") is None
        assert repo.seen == set()


class TestRequêtesDuScheduler:
    def test_ventes_à_activer(self, session_factory):
        sauvegarder(
            session_factory,
            créer_vente("due", start=NOW - timedelta(minutes=1)),
            créer_vente("pile-à-l-heure", start=NOW),
            créer_vente("future", start=NOW + timedelta(minutes=1)),
            créer_vente("déjà-active", status=SaleStatus.ACTIVE, start=NOW - timedelta(hours=1)),
            créer_vente("annulée", status=SaleStatus.CANCELLED, start=NOW - timedelta(hours=1)),
        )

        session = session_factory()
        dues = repository.SqlAlchemySaleRepository(session).due_for_activation(NOW)

        assert [s.id for s in dues] == ["due", "pile-à-l-heure"]
        session.close()

    def test_ventes_à_clôturer(self, session_factory):
        sauvegarder(
            session_factory,
            créer_vente(
                "expirée", status=SaleStatus.ACTIVE,
                start=NOW - timedelta(hours=2), end=NOW,
            ),
            créer_vente(
                "en-cours", status=SaleStatus.ACTIVE,
                start=NOW - timedelta(hours=2), end=NOW + timedelta(seconds=1),
            ),
            créer_vente(
                "terminée", status=SaleStatus.ENDED,
                start=NOW - timedelta(hours=3), end=NOW - timedelta(hours=1),
            ),
        )

        session = session_factory()
        dues = repository.SqlAlchemySaleRepository(session).due_for_closing(NOW)

        assert [s.id for s in dues] == ["expirée"]
        session.close()


class TestAllocationsParVente:
    def test_triées_par_pourcentage_vendu_décroissant(self, session_factory):
        def allocation(aid, max_quantity, sold):
            return Allocation(
                id=aid, product_id=f"P-{aid}", original_price=Decimal("10"),
                sale_price=Decimal("5"), max_quantity=max_quantity, quantity_sold=sold,
            )

        sauvegarder(session_factory, créer_vente(allocations=[
            allocation("a", 10, 2),
            allocation("b", 10, 8),
            allocation("c", 4, 2),
        ]))

        session = session_factory()
        triées = repository.SqlAlchemySaleRepository(session).allocations_by_sale("vente-1")

        assert [a.id for a in triées] == ["b", "c", "a"]
        session.close()


class TestLignesDeCommande:
    def test_cumul_par_acheteur_et_allocation(self, session):
        lines = orders.SqlAlchemyOrderLines(session)
        lines.record_reservation("alloc-1", "acheteur-1", 1, Decimal("9.99"))
        lines.record_reservation("alloc-1", "acheteur-1", 2, Decimal("9.99"))
        lines.record_reservation("alloc-1", "acheteur-2", 1, Decimal("9.99"))
        lines.record_reservation("alloc-2", "acheteur-1", 1, Decimal("4.50"))

        assert lines.sum_reserved_quantity("acheteur-1", "alloc-1") == 3
        assert lines.sum_reserved_quantity("acheteur-3", "alloc-1") == 0

    def test_les_lignes_annulées_ou_remboursées_sont_exclues(self, session):
        lines = orders.SqlAlchemyOrderLines(session)
        lines.record_reservation("alloc-1", "acheteur-1", 2, Decimal("9.99"))
        lines.record_reservation("alloc-1", "acheteur-1", 1, Decimal("9.99"))
        session.execute(
            update(orm.order_lines)
            .where(orm.order_lines.c.quantity == 2)
            .values(status="refunded")
        )

        assert lines.sum_reserved_quantity("acheteur-1", "alloc-1") == 1

    def test_la_ligne_porte_le_prix_figé(self, session):
        orders.SqlAlchemyOrderLines(session).record_reservation(
            "alloc-1", "acheteur-1", 1, Decimal("12.34")
        )

        row = session.execute(orm.order_lines.select()).one()
        assert row.unit_price == Decimal("12.34")
        assert row.status == "reserved"
