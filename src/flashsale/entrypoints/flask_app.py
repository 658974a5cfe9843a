"""
Point d'entrée Flask.

L'API Flask est un thin adapter : elle se contente de
convertir les requêtes HTTP en commands, les envoie au
message bus, et convertit les résultats en réponses HTTP.

Les refus métier (SaleError) deviennent des réponses JSON avec
un code stable ; seules les vraies pannes donnent une 500.

    flask --app flashsale.entrypoints.flask_app run
"""

from __future__ import annotations

import logging
from datetime import datetime, timezone
from typing import Any

from flask import Flask, jsonify, request

from flashsale import config
from flashsale.domain import commands, errors
from flashsale.service_layer import bootstrap, messagebus
from flashsale.views import views

logger = logging.getLogger(__name__)

HTTP_STATUS: dict[type[errors.SaleError], int] = {
    errors.InvalidRequest: 400,
    errors.NotFound: 404,
    errors.SaleNotActive: 409,
    errors.InsufficientStock: 409,
    errors.PurchaseLimitExceeded: 409,
    errors.Conflict: 409,
    errors.Busy: 503,
}


def _json_body() -> dict[str, Any]:
    data = request.get_json(silent=True)
    if not isinstance(data, dict):
        raise errors.InvalidRequest("Corps JSON attendu")
    return data


def _required(data: dict[str, Any], name: str) -> Any:
    value = data.get(name)
    if value is None or value == "":
        raise errors.InvalidRequest(f"Champ obligatoire manquant : {name}")
    return value


def _query_int(name: str, default: int) -> int:
    value = request.args.get(name)
    if value is None:
        return default
    try:
        return int(value)
    except ValueError:
        raise errors.InvalidRequest(f"{name} doit être un entier : {value!r}") from None


def _parse_datetime(value: Any, name: str) -> datetime:
    try:
        parsed = datetime.fromisoformat(str(value).replace("Z", "+00:00"))
    except ValueError:
        raise errors.InvalidRequest(f"{name} n'est pas une date ISO-8601 : {value!r}") from None
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed


def _parse_allocations(items: Any) -> tuple[commands.NewAllocation, ...]:
    if not isinstance(items, list) or not items:
        raise errors.InvalidRequest("Au moins un produit est requis")
    parsed = []
    for item in items:
        if not isinstance(item, dict):
            raise errors.InvalidRequest("Chaque produit doit être un objet JSON")
        max_quantity = _required(item, "max_quantity")
        if isinstance(max_quantity, bool) or not isinstance(max_quantity, int):
            raise errors.InvalidRequest("max_quantity doit être un entier")
        parsed.append(
            commands.NewAllocation(
                product_id=str(_required(item, "product_id")),
                original_price=_required(item, "original_price"),
                max_quantity=max_quantity,
                sale_price=item.get("sale_price"),
            )
        )
    return tuple(parsed)


def create_app(bus: messagebus.MessageBus | None = None) -> Flask:
    """
    Fabrique de l'application.

    Sans bus fourni, le bus de production est assemblé par le bootstrap.
    """
    if bus is None:
        bus = bootstrap.bootstrap()
    clock = bus.dependencies.get("clock", bootstrap.utc_now)
    cache = bus.dependencies["cache"]
    cache_ttl = config.get_cache_ttl()

    app = Flask(__name__)
    app.extensions["flashsale.bus"] = bus

    @app.errorhandler(errors.SaleError)
    def handle_sale_error(error: errors.SaleError):
        status = HTTP_STATUS.get(type(error), 400)
        logger.info("Refus %s : %s", error.code, error)
        response = jsonify(error.to_dict())
        response.status_code = status
        if isinstance(error, errors.Busy):
            response.headers["Retry-After"] = str(error.retry_after)
        return response

    @app.route("/sales", methods=["POST"])
    def create_sale_endpoint():
        """
        POST /sales
        Body JSON : { title, start_time, end_time, discount_percentage,
                      allocations: [{product_id, original_price, max_quantity, sale_price?}],
                      description?, kind?, season?, banner_color? }
        """
        data = _json_body()
        cmd = commands.CreateSale(
            title=str(_required(data, "title")),
            start_time=_parse_datetime(_required(data, "start_time"), "start_time"),
            end_time=_parse_datetime(_required(data, "end_time"), "end_time"),
            discount_percentage=_required(data, "discount_percentage"),
            allocations=_parse_allocations(data.get("allocations")),
            description=data.get("description") or "",
            kind=data.get("kind") or "flash",
            season=data.get("season"),
            banner_color=data.get("banner_color"),
        )
        sale_id = bus.handle(cmd).pop(0)
        return jsonify({"sale_id": sale_id}), 201

    @app.route("/sales/<sale_id>/status", methods=["PATCH"])
    def update_status_endpoint(sale_id: str):
        """
        PATCH /sales/<sale_id>/status
        Body JSON : { status: "cancelled" }

        Les statuts active / ended sont dérivés par le scheduler.
        """
        status = _required(_json_body(), "status")
        if status != "cancelled":
            raise errors.InvalidRequest(
                "Seul le statut 'cancelled' peut être demandé par un opérateur"
            )
        bus.handle(commands.CancelSale(sale_id=sale_id))
        return jsonify({"sale_id": sale_id, "status": "cancelled"}), 200

    @app.route("/sales/<sale_id>/allocations/<allocation_id>", methods=["PATCH"])
    def reprice_endpoint(sale_id: str, allocation_id: str):
        """PATCH /sales/<sale_id>/allocations/<allocation_id>  Body : { sale_price }"""
        cmd = commands.ChangeSalePrice(
            allocation_id=allocation_id,
            sale_price=_required(_json_body(), "sale_price"),
            sale_id=sale_id,
        )
        stored = bus.handle(cmd).pop(0)
        return jsonify({"allocation_id": allocation_id, "sale_price": str(stored)}), 200

    @app.route("/sales/<sale_id>/allocations/<allocation_id>/reserve", methods=["POST"])
    def reserve_endpoint(sale_id: str, allocation_id: str):
        """
        POST /sales/<sale_id>/allocations/<allocation_id>/reserve
        Body JSON : { buyer_id, quantity }
        """
        data = _json_body()
        quantity = data.get("quantity")
        if isinstance(quantity, bool) or not isinstance(quantity, int):
            raise errors.InvalidRequest("quantity doit être un entier")
        cmd = commands.Reserve(
            allocation_id=allocation_id,
            buyer_id=str(_required(data, "buyer_id")),
            quantity=quantity,
            sale_id=sale_id,
        )
        reservation = bus.handle(cmd).pop(0)
        return jsonify({
            "reserved_price": str(reservation.reserved_price),
            "reserved_quantity": reservation.reserved_quantity,
        }), 200

    @app.route("/sales", methods=["GET"])
    def list_sales_endpoint():
        status = request.args.get("status", "all")
        return jsonify({"sales": views.list_sales(status, bus.uow, clock())}), 200

    @app.route("/sales/active", methods=["GET"])
    def active_sales_endpoint():
        result = views.active_sales(bus.uow, cache, clock(), cache_ttl)
        return jsonify({"sales": result}), 200

    @app.route("/sales/upcoming", methods=["GET"])
    def upcoming_sales_endpoint():
        result = views.upcoming_sales(bus.uow, cache, clock(), cache_ttl)
        return jsonify({"sales": result}), 200

    @app.route("/sales/<sale_id>", methods=["GET"])
    def sale_detail_endpoint(sale_id: str):
        result = views.sale_detail(sale_id, bus.uow, cache, clock(), cache_ttl)
        if result is None:
            raise errors.NotFound(f"Vente inconnue : {sale_id}")
        return jsonify({"sale": result}), 200

    @app.route("/sales/<sale_id>/products", methods=["GET"])
    def sale_products_endpoint(sale_id: str):
        """GET /sales/<sale_id>/products?page=1&limit=20&sort=popularity"""
        result = views.sale_products(
            sale_id,
            page=_query_int("page", 1),
            limit=_query_int("limit", 20),
            sort=request.args.get("sort", "popularity"),
            uow=bus.uow,
            cache=cache,
            ttl=cache_ttl,
        )
        if result is None:
            raise errors.NotFound(f"Vente inconnue : {sale_id}")
        return jsonify(result), 200

    @app.route("/sales/<sale_id>/analytics", methods=["GET"])
    def sale_analytics_endpoint(sale_id: str):
        result = views.sale_analytics(sale_id, bus.uow)
        if result is None:
            raise errors.NotFound(f"Vente inconnue : {sale_id}")
        return jsonify(result), 200

    @app.route("/products/<product_id>/sale", methods=["GET"])
    def sale_for_product_endpoint(product_id: str):
        return jsonify(views.sale_for_product(product_id, bus.uow, clock())), 200

    return app


if __name__ == "__main__":
    logging.basicConfig(level=config.get_log_level())
    create_app().run()
