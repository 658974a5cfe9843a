"""
Views (lecture) pour le pattern CQRS.

Les views sont des fonctions de lecture pure qui interrogent
directement la base de données, sans passer par le message bus.
Les listes les plus consultées par la vitrine sont servies depuis
le cache avec un TTL court ; les handlers les invalident à chaque
changement d'état ou de stock.

Les valeurs retournées sont déjà sérialisables en JSON
(décimaux en chaînes, dates ISO-8601), pour le cache comme pour l'API.
"""

from __future__ import annotations

import math
from datetime import datetime
from decimal import ROUND_HALF_UP, Decimal
from typing import Any, Iterable

from sqlalchemy import Float, cast, func, or_, select

from flashsale.adapters import cache as cache_keys
from flashsale.adapters import orm
from flashsale.adapters.cache import AbstractCache
from flashsale.domain import model
from flashsale.domain.errors import InvalidRequest
from flashsale.service_layer import unit_of_work

UPCOMING_LIMIT = 10
TOP_ALLOCATIONS_LIMIT = 10
MAX_PAGE_LIMIT = 100
SALE_PRODUCT_SORTS = ("popularity", "price_asc", "price_desc", "discount", "stock")

sales = orm.sales
allocations = orm.sale_allocations


def active_sales(
    uow: unit_of_work.AbstractUnitOfWork,
    cache: AbstractCache,
    now: datetime,
    ttl: int,
) -> list[dict]:
    """
    Ventes en cours avec leurs allocations (stock vendu / restant).

    Le statut persisté ET la fenêtre temporelle sont vérifiés,
    comme pour une réservation.
    """
    generation = cache.generation(cache_keys.ACTIVE_SALES_KEY)
    cached = cache.get(cache_keys.ACTIVE_SALES_KEY)
    if cached is not None:
        return cached
    with uow:
        rows = uow.session.execute(
            select(sales)
            .where(
                sales.c.status == model.SaleStatus.ACTIVE,
                sales.c.start_time <= now,
                sales.c.end_time > now,
            )
            .order_by(sales.c.created_at.desc())
        ).mappings().all()
        result = [_sale_with_allocations(uow, row, now) for row in rows]
    cache.set(cache_keys.ACTIVE_SALES_KEY, result, ttl, generation)
    return result


def upcoming_sales(
    uow: unit_of_work.AbstractUnitOfWork,
    cache: AbstractCache,
    now: datetime,
    ttl: int,
) -> list[dict]:
    """Prochaines ventes programmées, la plus proche d'abord."""
    generation = cache.generation(cache_keys.UPCOMING_SALES_KEY)
    cached = cache.get(cache_keys.UPCOMING_SALES_KEY)
    if cached is not None:
        return cached
    with uow:
        rows = uow.session.execute(
            select(sales)
            .where(
                sales.c.status == model.SaleStatus.SCHEDULED,
                sales.c.start_time > now,
            )
            .order_by(sales.c.start_time)
            .limit(UPCOMING_LIMIT)
        ).mappings().all()
        result = [_sale_dict(row, now) for row in rows]
    cache.set(cache_keys.UPCOMING_SALES_KEY, result, ttl, generation)
    return result


def sale_detail(
    sale_id: str,
    uow: unit_of_work.AbstractUnitOfWork,
    cache: AbstractCache,
    now: datetime,
    ttl: int,
) -> dict | None:
    key = cache_keys.sale_key(sale_id)
    generation = cache.generation(key)
    cached = cache.get(key)
    if cached is not None:
        return cached
    with uow:
        row = uow.session.execute(
            select(sales).where(sales.c.id == sale_id)
        ).mappings().first()
        if row is None:
            return None
        result = _sale_with_allocations(uow, row, now)
    cache.set(key, result, ttl, generation)
    return result


def sale_products(
    sale_id: str,
    page: int,
    limit: int,
    sort: str,
    uow: unit_of_work.AbstractUnitOfWork,
    cache: AbstractCache,
    ttl: int,
) -> dict | None:
    """
    Produits d'une vente, paginés et triés.

    `sort` : popularity (pourcentage vendu) | price_asc | price_desc
    | discount (montant de la remise) | stock (restant)
    """
    if sort not in SALE_PRODUCT_SORTS:
        raise InvalidRequest(f"Tri inconnu : {sort}")
    if page < 1 or not 1 <= limit <= MAX_PAGE_LIMIT:
        raise InvalidRequest(f"Pagination invalide : page {page}, limit {limit}")

    key = cache_keys.sale_products_key(sale_id, page, limit, sort)
    anchor = cache_keys.sale_key(sale_id)
    generation = cache.generation(anchor)
    cached = cache.get(key)
    if cached is not None:
        return cached

    sold_ratio = cast(allocations.c.quantity_sold, Float) / allocations.c.max_quantity
    order_by = {
        "popularity": (sold_ratio.desc(), orm.products.c.name),
        "price_asc": (allocations.c.sale_price.asc(),),
        "price_desc": (allocations.c.sale_price.desc(),),
        "discount": ((allocations.c.original_price - allocations.c.sale_price).desc(),),
        "stock": ((allocations.c.max_quantity - allocations.c.quantity_sold).desc(),),
    }[sort]

    with uow:
        sale = uow.session.execute(
            select(sales.c.id, sales.c.title, sales.c.status, sales.c.start_time, sales.c.end_time)
            .where(sales.c.id == sale_id)
        ).mappings().first()
        if sale is None:
            return None
        total = uow.session.execute(
            select(func.count()).select_from(allocations).where(allocations.c.sale_id == sale_id)
        ).scalar_one()
        rows = uow.session.execute(
            select(
                allocations.c.id.label("allocation_id"),
                allocations.c.product_id,
                orm.products.c.name,
                orm.products.c.image_url,
                allocations.c.original_price,
                allocations.c.sale_price,
                allocations.c.max_quantity,
                allocations.c.quantity_sold,
            )
            .select_from(
                allocations.outerjoin(orm.products, orm.products.c.id == allocations.c.product_id)
            )
            .where(allocations.c.sale_id == sale_id)
            .order_by(*order_by, allocations.c.id)
            .limit(limit)
            .offset((page - 1) * limit)
        ).mappings().all()

    result = {
        "sale": {
            "id": sale["id"],
            "title": sale["title"],
            "status": sale["status"].value,
            "start_time": sale["start_time"].isoformat(),
            "end_time": sale["end_time"].isoformat(),
        },
        "products": [_product_row(row) for row in rows],
        "pagination": {
            "page": page,
            "limit": limit,
            "total": total,
            "pages": math.ceil(total / limit),
        },
    }
    cache.set(key, result, ttl, generation, guard=anchor)
    return result


def list_sales(
    status: str,
    uow: unit_of_work.AbstractUnitOfWork,
    now: datetime,
) -> list[dict]:
    """
    Liste opérateur, avec agrégats par vente.

    `status` : all | active | upcoming | ended | cancelled
    """
    query = (
        select(
            sales,
            func.count(allocations.c.id).label("total_products"),
            func.coalesce(func.sum(allocations.c.quantity_sold), 0).label("total_sold"),
            func.coalesce(func.sum(allocations.c.max_quantity), 0).label("total_quantity"),
        )
        .select_from(sales.outerjoin(allocations, allocations.c.sale_id == sales.c.id))
        .group_by(sales.c.id)
        .order_by(sales.c.start_time.desc())
    )
    if status == "active":
        query = query.where(
            sales.c.status == model.SaleStatus.ACTIVE,
            sales.c.start_time <= now,
            sales.c.end_time > now,
        )
    elif status == "upcoming":
        query = query.where(
            sales.c.status == model.SaleStatus.SCHEDULED,
            sales.c.start_time > now,
        )
    elif status == "ended":
        query = query.where(
            or_(sales.c.status == model.SaleStatus.ENDED, sales.c.end_time <= now),
            sales.c.status != model.SaleStatus.CANCELLED,
        )
    elif status == "cancelled":
        query = query.where(sales.c.status == model.SaleStatus.CANCELLED)
    elif status != "all":
        raise InvalidRequest(f"Filtre de statut inconnu : {status}")

    with uow:
        rows = uow.session.execute(query).mappings().all()
        return [
            {
                **_sale_dict(row, now),
                "total_products": int(row["total_products"]),
                "total_sold": int(row["total_sold"]),
                "total_quantity": int(row["total_quantity"]),
            }
            for row in rows
        ]


def sale_analytics(sale_id: str, uow: unit_of_work.AbstractUnitOfWork) -> dict | None:
    """Bilan d'une vente : volumes, chiffre d'affaires, remise accordée."""
    with uow:
        row = uow.session.execute(
            select(sales).where(sales.c.id == sale_id)
        ).mappings().first()
        if row is None:
            return None
        sale_allocations = uow.sales.allocations_by_sale(sale_id)
        products = _products(uow, (a.product_id for a in sale_allocations))

        revenue = sum(
            (a.sale_price * a.quantity_sold for a in sale_allocations), Decimal("0.00")
        )
        discount_given = sum(
            ((a.original_price - a.sale_price) * a.quantity_sold for a in sale_allocations),
            Decimal("0.00"),
        )
        average = (
            Decimal(sum(a.sold_percentage for a in sale_allocations)) / len(sale_allocations)
            if sale_allocations else Decimal(0)
        )
        top = sorted(
            sale_allocations,
            key=lambda a: (a.sold_percentage, a.sale_price * a.quantity_sold),
            reverse=True,
        )[:TOP_ALLOCATIONS_LIMIT]

        return {
            "sale_id": row["id"],
            "title": row["title"],
            "status": row["status"].value,
            "start_time": row["start_time"].isoformat(),
            "end_time": row["end_time"].isoformat(),
            "total_products": len(sale_allocations),
            "total_quantity": sum(a.max_quantity for a in sale_allocations),
            "total_sold": sum(a.quantity_sold for a in sale_allocations),
            "avg_sold_percentage": str(average.quantize(Decimal("0.01"))),
            "total_revenue": str(revenue),
            "total_discount_given": str(discount_given),
            "top_allocations": [
                {
                    **_allocation_dict(a, products.get(a.product_id)),
                    "revenue": str(a.sale_price * a.quantity_sold),
                }
                for a in top
            ],
        }


def sale_for_product(
    product_id: str,
    uow: unit_of_work.AbstractUnitOfWork,
    now: datetime,
) -> dict | None:
    """La vente en cours qui propose ce produit, s'il y en a une."""
    with uow:
        row = uow.session.execute(
            select(
                sales.c.id,
                sales.c.title,
                sales.c.description,
                sales.c.kind,
                sales.c.start_time,
                sales.c.end_time,
                allocations.c.id.label("allocation_id"),
                allocations.c.original_price,
                allocations.c.sale_price,
                allocations.c.max_quantity,
                allocations.c.quantity_sold,
            )
            .join(allocations, allocations.c.sale_id == sales.c.id)
            .where(
                allocations.c.product_id == product_id,
                sales.c.status == model.SaleStatus.ACTIVE,
                sales.c.start_time <= now,
                sales.c.end_time > now,
            )
            .order_by(sales.c.end_time)
            .limit(1)
        ).mappings().first()
    if row is None:
        return None
    return {
        "sale_id": row["id"],
        "title": row["title"],
        "description": row["description"],
        "kind": row["kind"].value,
        "start_time": row["start_time"].isoformat(),
        "end_time": row["end_time"].isoformat(),
        "allocation_id": row["allocation_id"],
        "original_price": str(row["original_price"]),
        "sale_price": str(row["sale_price"]),
        "max_quantity": row["max_quantity"],
        "sold_quantity": row["quantity_sold"],
        "remaining_quantity": row["max_quantity"] - row["quantity_sold"],
        "time_remaining_seconds": _seconds_between(now, row["end_time"]),
    }


# --- Helpers ---


def _seconds_between(earlier: datetime, later: datetime) -> int:
    return max(0, int((later - earlier).total_seconds()))


def _sale_dict(row: Any, now: datetime) -> dict:
    data = {
        "id": row["id"],
        "title": row["title"],
        "description": row["description"],
        "kind": row["kind"].value,
        "season": row["season"],
        "banner_color": row["banner_color"],
        "start_time": row["start_time"].isoformat(),
        "end_time": row["end_time"].isoformat(),
        "discount_percentage": str(row["discount_percentage"]),
        "status": row["status"].value,
    }
    if row["start_time"] > now:
        data["starts_in_seconds"] = _seconds_between(now, row["start_time"])
    else:
        data["time_remaining_seconds"] = _seconds_between(now, row["end_time"])
    return data


def _products(uow: unit_of_work.AbstractUnitOfWork, product_ids: Iterable[str]) -> dict[str, dict]:
    """Métadonnées d'affichage lues dans la table du catalogue."""
    ids = sorted(set(product_ids))
    if not ids:
        return {}
    rows = uow.session.execute(
        select(orm.products.c.id, orm.products.c.name, orm.products.c.image_url)
        .where(orm.products.c.id.in_(ids))
    ).mappings().all()
    return {row["id"]: dict(row) for row in rows}


def _allocation_dict(allocation: model.Allocation, product: dict | None) -> dict:
    product = product or {}
    return {
        "allocation_id": allocation.id,
        "product_id": allocation.product_id,
        "name": product.get("name"),
        "image_url": product.get("image_url"),
        "original_price": str(allocation.original_price),
        "sale_price": str(allocation.sale_price),
        "max_quantity": allocation.max_quantity,
        "sold_quantity": allocation.quantity_sold,
        "remaining_quantity": allocation.remaining_quantity,
        "sold_percentage": allocation.sold_percentage,
    }


def _sale_with_allocations(uow: unit_of_work.AbstractUnitOfWork, row: Any, now: datetime) -> dict:
    sale_allocations = uow.sales.allocations_by_sale(row["id"])
    products = _products(uow, (a.product_id for a in sale_allocations))
    total_quantity = sum(a.max_quantity for a in sale_allocations)
    total_sold = sum(a.quantity_sold for a in sale_allocations)
    return {
        **_sale_dict(row, now),
        "allocations": [
            _allocation_dict(a, products.get(a.product_id)) for a in sale_allocations
        ],
        "total_quantity": total_quantity,
        "total_sold": total_sold,
        "total_remaining": total_quantity - total_sold,
    }


def _percent(part: Any, whole: Any) -> int:
    if whole <= 0:
        return 0
    ratio = Decimal(part) * 100 / Decimal(whole)
    return int(ratio.quantize(Decimal(1), rounding=ROUND_HALF_UP))


def _product_row(row: Any) -> dict:
    return {
        "allocation_id": row["allocation_id"],
        "product_id": row["product_id"],
        "name": row["name"],
        "image_url": row["image_url"],
        "original_price": str(row["original_price"]),
        "sale_price": str(row["sale_price"]),
        "max_quantity": row["max_quantity"],
        "sold_quantity": row["quantity_sold"],
        "remaining_quantity": row["max_quantity"] - row["quantity_sold"],
        "sold_percentage": _percent(row["quantity_sold"], row["max_quantity"]),
        "discount_percent": _percent(row["original_price"] - row["sale_price"], row["original_price"]),
    }
