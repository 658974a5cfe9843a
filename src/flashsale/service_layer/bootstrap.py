"""
Bootstrap : assemblage de l'application (Composition Root).

Ce module construit le message bus avec toutes ses dépendances.
C'est ici que l'injection de dépendances est réalisée :
on assemble les composants concrets (ou les fakes pour les tests).

C'est le seul endroit de l'application qui connaît les
implémentations concrètes de chaque abstraction.
"""

from __future__ import annotations

from datetime import datetime, timezone
from typing import Any, Callable

import redis

from flashsale import config
from flashsale.adapters import cache as cache_module
from flashsale.adapters import notifications, orm
from flashsale.domain import commands, events
from flashsale.service_layer import handlers, messagebus, unit_of_work


def utc_now() -> datetime:
    return datetime.now(timezone.utc)


def bootstrap(
    start_orm: bool = True,
    uow: unit_of_work.AbstractUnitOfWork | None = None,
    cache: cache_module.AbstractCache | None = None,
    notifications_adapter: notifications.AbstractNotifications | None = None,
    clock: Callable[[], datetime] = utc_now,
    purchase_limit: int | None = None,
    **extra_dependencies: Any,
) -> messagebus.MessageBus:
    """
    Construit et retourne un MessageBus configuré.

    En production, utilise les implémentations concrètes.
    En test, on injecte des fakes via les paramètres.
    """
    if start_orm:
        orm.start_mappers()

    if uow is None:
        uow = unit_of_work.SqlAlchemyUnitOfWork()

    redis_client = None
    if cache is None or notifications_adapter is None:
        redis_client = redis.Redis.from_url(config.get_redis_url())
    if cache is None:
        cache = cache_module.RedisCache(redis_client)
    if notifications_adapter is None:
        notifications_adapter = notifications.RedisNotifications(
            redis_client, channel=config.get_notifications_channel()
        )

    if purchase_limit is None:
        purchase_limit = config.get_purchase_limit()

    dependencies: dict[str, Any] = {
        "cache": cache,
        "notifications": notifications_adapter,
        "clock": clock,
        "purchase_limit": purchase_limit,
        **extra_dependencies,
    }

    return messagebus.MessageBus(
        uow=uow,
        event_handlers=EVENT_HANDLERS,
        command_handlers=COMMAND_HANDLERS,
        dependencies=dependencies,
    )


# --- Routage des messages vers les handlers ---

EVENT_HANDLERS: dict[type[events.Event], list] = {
    events.SaleCreated: [handlers.invalidate_sale_cache],
    events.SaleActivated: [
        handlers.invalidate_sale_cache,
        handlers.notify_interested_buyers,
    ],
    events.SaleEnded: [handlers.invalidate_sale_cache],
    events.SaleCancelled: [handlers.invalidate_sale_cache],
    events.UnitsReserved: [handlers.invalidate_sale_cache],
    events.AllocationRepriced: [handlers.invalidate_sale_cache],
}

COMMAND_HANDLERS: dict[type[commands.Command], Any] = {
    commands.CreateSale: handlers.create_sale,
    commands.CancelSale: handlers.cancel_sale,
    commands.ChangeSalePrice: handlers.change_sale_price,
    commands.Reserve: handlers.reserve,
    commands.PromoteScheduledSales: handlers.promote_scheduled_sales,
    commands.CloseExpiredSales: handlers.close_expired_sales,
}
