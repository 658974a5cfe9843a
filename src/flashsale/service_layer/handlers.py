"""
Handlers pour les commands et events.

Les handlers sont les fonctions qui traitent les commands et events
transitant par le message bus.

- Command handlers : exécutent une action (peuvent échouer)
- Event handlers : réagissent à un fait passé (ne doivent pas échouer)

Le moteur d'allocation (reserve) est ici : c'est le seul endroit
qui modifie `quantity_sold`, toujours sous verrou de ligne.
"""

from __future__ import annotations

import logging
import uuid
from dataclasses import dataclass
from datetime import datetime
from decimal import ROUND_HALF_UP, Decimal, InvalidOperation
from typing import TYPE_CHECKING, Callable

from flashsale.adapters import cache as cache_keys
from flashsale.domain import commands, events, model
from flashsale.domain.errors import InvalidRequest, NotFound, PurchaseLimitExceeded

if TYPE_CHECKING:
    from flashsale.adapters.cache import AbstractCache
    from flashsale.adapters.notifications import AbstractNotifications
    from flashsale.service_layer.unit_of_work import AbstractUnitOfWork

logger = logging.getLogger(__name__)

Clock = Callable[[], datetime]


@dataclass(frozen=True)
class Reservation:
    """Résultat d'une réservation réussie ; le prix est figé."""

    sale_id: str
    allocation_id: str
    buyer_id: str
    reserved_quantity: int
    reserved_price: Decimal


def _new_id() -> str:
    return str(uuid.uuid4())


def _as_decimal(value: object, name: str) -> Decimal:
    try:
        result = Decimal(str(value))
    except (InvalidOperation, ValueError):
        raise InvalidRequest(f"{name} invalide : {value!r}") from None
    if not result.is_finite():
        raise InvalidRequest(f"{name} invalide : {value!r}")
    return result


def _to_cents(amount: Decimal) -> Decimal:
    return amount.quantize(model.CENT, rounding=ROUND_HALF_UP)


# --- Command Handlers ---


def create_sale(
    cmd: commands.CreateSale,
    uow: AbstractUnitOfWork,
) -> str:
    """
    Programme une nouvelle vente avec ses allocations.

    Le prix de vente d'une allocation, s'il n'est pas fourni,
    est dérivé du prix d'origine et de la remise de la vente.
    Retourne l'identifiant de la vente.
    """
    if not cmd.title or not cmd.title.strip():
        raise InvalidRequest("Le titre de la vente est obligatoire")
    discount = _as_decimal(cmd.discount_percentage, "discount_percentage")
    if not Decimal(0) < discount <= Decimal(100):
        raise InvalidRequest("La remise doit être strictement positive et au plus de 100 %")
    if not cmd.allocations:
        raise InvalidRequest("Au moins un produit est requis")
    try:
        kind = model.SaleKind(cmd.kind)
    except ValueError:
        raise InvalidRequest(f"Type de vente inconnu : {cmd.kind}") from None

    allocations = []
    for new in cmd.allocations:
        if not new.product_id:
            raise InvalidRequest("product_id est obligatoire")
        if new.max_quantity is None or int(new.max_quantity) <= 0:
            raise InvalidRequest(f"max_quantity doit être positif ({new.product_id})")
        original_price = _to_cents(_as_decimal(new.original_price, "original_price"))
        if original_price <= 0:
            raise InvalidRequest(f"original_price doit être positif ({new.product_id})")
        if new.sale_price is None:
            sale_price = model.derive_sale_price(original_price, discount)
        else:
            sale_price = _to_cents(_as_decimal(new.sale_price, "sale_price"))
        if not Decimal(0) <= sale_price <= original_price:
            raise InvalidRequest(
                f"sale_price doit être compris entre 0 et original_price ({new.product_id})"
            )
        allocations.append(
            model.Allocation(
                id=_new_id(),
                product_id=new.product_id,
                original_price=original_price,
                sale_price=sale_price,
                max_quantity=int(new.max_quantity),
            )
        )

    sale = model.Sale(
        id=_new_id(),
        title=cmd.title.strip(),
        description=cmd.description or "",
        start_time=cmd.start_time,
        end_time=cmd.end_time,
        discount_percentage=discount,
        allocations=allocations,
        kind=kind,
        season=cmd.season,
        banner_color=cmd.banner_color,
    )
    sale.events.append(events.SaleCreated(sale_id=sale.id))
    with uow:
        uow.sales.add(sale)
        uow.commit()
    logger.info(
        "Vente %s programmée : %s (%d produits, %s -> %s)",
        sale.id, sale.title, len(allocations),
        sale.start_time.isoformat(), sale.end_time.isoformat(),
    )
    return sale.id


def cancel_sale(
    cmd: commands.CancelSale,
    uow: AbstractUnitOfWork,
    clock: Clock,
) -> None:
    """Annule une vente programmée ; Conflict si elle a déjà commencé."""
    with uow:
        sale = uow.sales.get_for_update(cmd.sale_id)
        if sale is None:
            raise NotFound(f"Vente inconnue : {cmd.sale_id}")
        sale.cancel(clock())
        uow.commit()
    logger.info("Vente %s annulée", cmd.sale_id)


def change_sale_price(
    cmd: commands.ChangeSalePrice,
    uow: AbstractUnitOfWork,
) -> Decimal:
    """
    Modifie le prix de vente d'une allocation et retourne le prix enregistré.

    Verrouille comme une réservation (allocation puis vente) ;
    les unités déjà réservées gardent leur prix.
    """
    sale_price = _as_decimal(cmd.sale_price, "sale_price")
    with uow:
        sale = uow.sales.lock_allocation(cmd.allocation_id)
        if sale is None or (cmd.sale_id is not None and sale.id != cmd.sale_id):
            raise NotFound(f"Allocation inconnue : {cmd.allocation_id}")
        sale.reprice(cmd.allocation_id, sale_price)
        stored = sale.allocation(cmd.allocation_id).sale_price
        uow.commit()
    logger.info("Prix de %s modifié : %s", cmd.allocation_id, stored)
    return stored


def reserve(
    cmd: commands.Reserve,
    uow: AbstractUnitOfWork,
    clock: Clock,
    purchase_limit: int,
) -> Reservation:
    """
    Réserve des unités d'une allocation pour un acheteur.

    Vérifications, dans l'ordre (chacune a son propre refus) :
    1. quantité > 0                                -> InvalidRequest
    2. l'allocation existe                          -> NotFound
    3. vente `active` et dans sa fenêtre            -> SaleNotActive
    4. stock restant suffisant                      -> InsufficientStock
    5. déjà réservé + demandé <= plafond acheteur   -> PurchaseLimitExceeded

    Les étapes 2 à 5 et l'incrément se font sous le verrou de la ligne
    d'allocation. La ligne de commande est inscrite dans la même
    transaction : deux sessions du même acheteur ne peuvent donc pas
    lire toutes deux "0 réservé" pour la même allocation.
    """
    if not cmd.buyer_id:
        raise InvalidRequest("buyer_id est obligatoire")
    if not cmd.allocation_id:
        raise InvalidRequest("allocation_id est obligatoire")
    if isinstance(cmd.quantity, bool) or not isinstance(cmd.quantity, int) or cmd.quantity <= 0:
        raise InvalidRequest(f"La quantité doit être un entier positif : {cmd.quantity!r}")

    with uow:
        sale = uow.sales.lock_allocation(cmd.allocation_id)
        if sale is None or (cmd.sale_id is not None and sale.id != cmd.sale_id):
            raise NotFound(f"Allocation inconnue : {cmd.allocation_id}")
        allocation = sale.allocation(cmd.allocation_id)
        now = clock()
        sale.ensure_live(now)
        allocation.ensure_available(cmd.quantity)

        already_claimed = uow.orders.sum_reserved_quantity(cmd.buyer_id, allocation.id)
        if already_claimed + cmd.quantity > purchase_limit:
            raise PurchaseLimitExceeded(allocation.id, already_claimed, purchase_limit)

        unit_price = sale.reserve(allocation.id, cmd.buyer_id, cmd.quantity, now)
        uow.orders.record_reservation(allocation.id, cmd.buyer_id, cmd.quantity, unit_price)
        uow.commit()

    logger.info(
        "Réservation : %s x%d de %s à %s (vendu %d/%d)",
        cmd.buyer_id, cmd.quantity, allocation.id, unit_price,
        allocation.quantity_sold, allocation.max_quantity,
    )
    return Reservation(
        sale_id=sale.id,
        allocation_id=allocation.id,
        buyer_id=cmd.buyer_id,
        reserved_quantity=cmd.quantity,
        reserved_price=unit_price,
    )


def promote_scheduled_sales(
    cmd: commands.PromoteScheduledSales,
    uow: AbstractUnitOfWork,
) -> list[str]:
    """
    scheduled -> active pour toutes les ventes dont le début est atteint.

    Idempotent : l'état est dérivé des horodatages persistés,
    un tick relancé ou en retard rattrape simplement le retard.
    """
    with uow:
        activated = [
            sale.id for sale in uow.sales.due_for_activation(cmd.now)
            if sale.activate(cmd.now)
        ]
        uow.commit()
    if activated:
        logger.info("Ventes activées : %s", ", ".join(activated))
    return activated


def close_expired_sales(
    cmd: commands.CloseExpiredSales,
    uow: AbstractUnitOfWork,
) -> list[str]:
    """active -> ended pour toutes les ventes dont la fin est atteinte."""
    with uow:
        ended = [
            sale.id for sale in uow.sales.due_for_closing(cmd.now)
            if sale.end(cmd.now)
        ]
        uow.commit()
    if ended:
        logger.info("Ventes terminées : %s", ", ".join(ended))
    return ended


# --- Event Handlers ---


def invalidate_sale_cache(
    event: events.SaleCreated
    | events.SaleActivated
    | events.SaleEnded
    | events.SaleCancelled
    | events.UnitsReserved
    | events.AllocationRepriced,
    cache: AbstractCache,
) -> None:
    """
    Invalide les entrées de cache touchées par un changement
    d'état ou de stock, sans attendre leur expiration.
    """
    cache.delete(*cache_keys.sale_keys(event.sale_id))


def notify_interested_buyers(
    event: events.SaleActivated,
    notifications: AbstractNotifications,
) -> None:
    """
    Prévient les acheteurs intéressés de l'ouverture de la vente.

    Fire-and-forget : la vente est déjà activée et committée,
    un échec ici est loggé par le bus et n'annule rien.
    """
    notifications.notify_interested_buyers(
        allocation_ids=event.allocation_ids,
        sale_title=event.title,
        message=f"La vente « {event.title} » vient de commencer !",
    )
