"""
Modèle de domaine des ventes à durée limitée (ventes flash et saisonnières).

Une Vente (Sale) est l'agrégat racine : elle porte la fenêtre
d'activation, le statut du cycle de vie et les Allocations, c'est-à-dire
les lots de stock promotionnel disputés par les acheteurs.

Invariant central : pour chaque allocation,
    0 <= quantity_sold <= max_quantity
"""

from __future__ import annotations

import enum
from datetime import datetime, timezone
from decimal import ROUND_HALF_UP, Decimal
from typing import Optional

from flashsale.domain import events
from flashsale.domain.errors import (
    Conflict,
    InsufficientStock,
    InvalidRequest,
    NotFound,
    SaleNotActive,
)

CENT = Decimal("0.01")


class SaleStatus(str, enum.Enum):
    SCHEDULED = "scheduled"
    ACTIVE = "active"
    ENDED = "ended"
    CANCELLED = "cancelled"


class SaleKind(str, enum.Enum):
    FLASH = "flash"
    SEASONAL = "seasonal"


def derive_sale_price(original_price: Decimal, discount_percentage: Decimal) -> Decimal:
    """Prix remisé arrondi au centime (arrondi commercial)."""
    factor = (Decimal(100) - Decimal(discount_percentage)) / Decimal(100)
    return (Decimal(original_price) * factor).quantize(CENT, rounding=ROUND_HALF_UP)


class Allocation:
    """
    Entité représentant le stock d'un produit offert dans une vente.

    `quantity_sold` ne fait que croître, et uniquement via reserve().
    Le prix de vente peut changer, mais le prix renvoyé par reserve()
    est figé pour les unités déjà réservées.
    """

    def __init__(
        self,
        id: str,
        product_id: str,
        original_price: Decimal,
        sale_price: Decimal,
        max_quantity: int,
        quantity_sold: int = 0,
        sale_id: Optional[str] = None,
    ):
        self.id = id
        self.sale_id = sale_id
        self.product_id = product_id
        self.original_price = Decimal(original_price)
        self.sale_price = Decimal(sale_price)
        self.max_quantity = max_quantity
        self.quantity_sold = quantity_sold

    def __repr__(self) -> str:
        return f"<Allocation {self.id} {self.quantity_sold}/{self.max_quantity}>"

    def __eq__(self, other: object) -> bool:
        if not isinstance(other, Allocation):
            return NotImplemented
        return self.id == other.id

    def __hash__(self) -> int:
        return hash(self.id)

    @property
    def remaining_quantity(self) -> int:
        return self.max_quantity - self.quantity_sold

    @property
    def sold_percentage(self) -> int:
        if self.max_quantity <= 0:
            return 0
        ratio = Decimal(self.quantity_sold * 100) / Decimal(self.max_quantity)
        return int(ratio.quantize(Decimal(1), rounding=ROUND_HALF_UP))

    def can_reserve(self, quantity: int) -> bool:
        return 0 < quantity <= self.remaining_quantity

    def ensure_available(self, quantity: int) -> None:
        if not self.can_reserve(quantity):
            raise InsufficientStock(self.id, quantity, self.remaining_quantity)

    def reserve(self, quantity: int) -> Decimal:
        """Consomme `quantity` unités et retourne le prix unitaire figé."""
        self.ensure_available(quantity)
        self.quantity_sold += quantity
        return self.sale_price

    def reprice(self, sale_price: Decimal) -> None:
        sale_price = Decimal(sale_price).quantize(CENT, rounding=ROUND_HALF_UP)
        if sale_price < 0 or sale_price > self.original_price:
            raise InvalidRequest(
                f"Le prix de vente doit être compris entre 0 et {self.original_price}"
            )
        self.sale_price = sale_price


class Sale:
    """
    Agrégat racine : une campagne promotionnelle à fenêtre temporelle.

    Cycle de vie (irréversible) :
        scheduled -> active -> ended
        scheduled -> cancelled

    Les transitions sont déclenchées par le scheduler (activate, end)
    ou par un opérateur (cancel). Chaque transition émet un event.
    """

    def __init__(
        self,
        id: str,
        title: str,
        start_time: datetime,
        end_time: datetime,
        discount_percentage: Decimal,
        allocations: Optional[list[Allocation]] = None,
        description: str = "",
        kind: SaleKind = SaleKind.FLASH,
        season: Optional[str] = None,
        banner_color: Optional[str] = None,
        status: SaleStatus = SaleStatus.SCHEDULED,
        created_at: Optional[datetime] = None,
    ):
        for name, value in (("start_time", start_time), ("end_time", end_time)):
            if value.tzinfo is None or value.utcoffset() is None:
                raise InvalidRequest(f"{name} doit porter un fuseau horaire")
        if start_time >= end_time:
            raise InvalidRequest("La fin de la vente doit suivre son début")
        self.id = id
        self.title = title
        self.description = description
        self.kind = SaleKind(kind)
        self.season = season
        self.banner_color = banner_color
        self.start_time = start_time.astimezone(timezone.utc)
        self.end_time = end_time.astimezone(timezone.utc)
        self.discount_percentage = Decimal(discount_percentage)
        self.status = SaleStatus(status)
        self.created_at = created_at or datetime.now(timezone.utc)
        self.allocations = allocations or []
        for allocation in self.allocations:
            allocation.sale_id = id
        self.events: list[events.Event] = []

    def __repr__(self) -> str:
        return f"<Sale {self.id} {self.status.value}>"

    def __eq__(self, other: object) -> bool:
        if not isinstance(other, Sale):
            return NotImplemented
        return self.id == other.id

    def __hash__(self) -> int:
        return hash(self.id)

    def allocation(self, allocation_id: str) -> Allocation:
        try:
            return next(a for a in self.allocations if a.id == allocation_id)
        except StopIteration:
            raise NotFound(f"Allocation inconnue : {allocation_id}") from None

    # --- Fenêtre temporelle ---

    def is_live(self, now: datetime) -> bool:
        """
        Vrai seulement si le statut persisté est `active` ET que
        l'instant courant est dans [start_time, end_time[.

        Un scheduler en retard ne peut donc pas laisser passer
        un achat après la fin de la vente.
        """
        return (
            self.status is SaleStatus.ACTIVE
            and self.start_time <= now < self.end_time
        )

    def ensure_live(self, now: datetime) -> None:
        if self.is_live(now):
            return
        if self.status is SaleStatus.CANCELLED:
            reason = "cancelled"
        elif self.status is SaleStatus.ENDED or now >= self.end_time:
            reason = "ended"
        else:
            reason = "not_started"
        raise SaleNotActive(
            sale_id=self.id,
            status=self.status.value,
            reason=reason,
            start_time=self.start_time,
            end_time=self.end_time,
        )

    # --- Transitions ---

    def activate(self, now: datetime) -> bool:
        """
        scheduled -> active dès que now >= start_time.

        Retourne False (sans effet) si la transition ne s'applique pas,
        ce qui rend les ticks du scheduler idempotents. Une vente dont
        la fin est déjà passée est activée sans notification ; le même
        tick la clôture ensuite.
        """
        if self.status is not SaleStatus.SCHEDULED or now < self.start_time:
            return False
        self.status = SaleStatus.ACTIVE
        if now < self.end_time:
            self.events.append(
                events.SaleActivated(
                    sale_id=self.id,
                    title=self.title,
                    allocation_ids=tuple(a.id for a in self.allocations),
                )
            )
        return True

    def end(self, now: datetime) -> bool:
        """active -> ended dès que now >= end_time."""
        if self.status is not SaleStatus.ACTIVE or now < self.end_time:
            return False
        self.status = SaleStatus.ENDED
        self.events.append(events.SaleEnded(sale_id=self.id))
        return True

    def cancel(self, now: datetime) -> None:
        """
        scheduled -> cancelled, uniquement avant le début de la vente.

        Annuler une vente active invaliderait des réservations en cours.
        """
        if self.status is not SaleStatus.SCHEDULED or now >= self.start_time:
            raise Conflict(
                f"Impossible d'annuler la vente {self.id} : "
                f"statut {self.status.value}, début {self.start_time.isoformat()}"
            )
        self.status = SaleStatus.CANCELLED
        self.events.append(events.SaleCancelled(sale_id=self.id))

    # --- Stock ---

    def reserve(
        self, allocation_id: str, buyer_id: str, quantity: int, now: datetime
    ) -> Decimal:
        """
        Réserve `quantity` unités d'une allocation de cette vente.

        Revérifie la fenêtre et le stock avant d'incrémenter ;
        retourne le prix unitaire figé au moment de la réservation.
        """
        allocation = self.allocation(allocation_id)
        self.ensure_live(now)
        unit_price = allocation.reserve(quantity)
        self.events.append(
            events.UnitsReserved(
                sale_id=self.id,
                allocation_id=allocation.id,
                buyer_id=buyer_id,
                quantity=quantity,
                unit_price=unit_price,
            )
        )
        return unit_price

    def reprice(self, allocation_id: str, sale_price: Decimal) -> None:
        if self.status in (SaleStatus.ENDED, SaleStatus.CANCELLED):
            raise Conflict(
                f"La vente {self.id} est terminée ({self.status.value}) : "
                "prix non modifiable"
            )
        allocation = self.allocation(allocation_id)
        allocation.reprice(sale_price)
        self.events.append(
            events.AllocationRepriced(
                sale_id=self.id,
                allocation_id=allocation.id,
                sale_price=allocation.sale_price,
            )
        )
