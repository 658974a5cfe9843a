"""
Mapping ORM avec SQLAlchemy (classical mapping).

On définit les tables séparément, puis on mappe les classes
du domaine sur ces tables. Cela permet au modèle de domaine
de rester ignorant de la persistance (persistence ignorance).

Deux tables appartiennent à d'autres sous-systèmes et ne sont
déclarées ici que pour être lues ou alimentées :
- `products` : le catalogue (lecture seule, pour l'affichage)
- `order_lines` : le sous-système de commandes (système de référence
  pour le plafond d'achat par acheteur)
"""

from datetime import datetime, timezone

from sqlalchemy import (
    Column,
    DateTime,
    Enum,
    ForeignKey,
    Index,
    Integer,
    MetaData,
    Numeric,
    String,
    Table,
    Text,
    event,
    inspect,
)
from sqlalchemy.orm import registry, relationship
from sqlalchemy.types import TypeDecorator

from flashsale.domain import model

metadata = MetaData()
mapper_registry = registry(metadata=metadata)


class UtcDateTime(TypeDecorator):
    """
    Datetime stocké en UTC naïf, relu en UTC "aware".

    Le domaine ne manipule que des datetimes avec fuseau ;
    SQLite ne conserve pas le fuseau, d'où la normalisation.
    """

    impl = DateTime
    cache_ok = True

    def process_bind_param(self, value, dialect):
        if value is not None and value.tzinfo is not None:
            value = value.astimezone(timezone.utc).replace(tzinfo=None)
        return value

    def process_result_value(self, value, dialect):
        if value is not None:
            value = value.replace(tzinfo=timezone.utc)
        return value


def _enum_values(enum_class):
    return [member.value for member in enum_class]


# --- Définition des tables ---

sales = Table(
    "sales",
    metadata,
    Column("id", String(36), primary_key=True),
    Column("title", String(255), nullable=False),
    Column("description", Text, nullable=False, server_default=""),
    Column(
        "kind",
        Enum(model.SaleKind, native_enum=False, values_callable=_enum_values, length=16),
        nullable=False,
    ),
    Column("season", String(64), nullable=True),
    Column("banner_color", String(32), nullable=True),
    Column("start_time", UtcDateTime, nullable=False),
    Column("end_time", UtcDateTime, nullable=False),
    Column("discount_percentage", Numeric(5, 2), nullable=False),
    Column(
        "status",
        Enum(model.SaleStatus, native_enum=False, values_callable=_enum_values, length=16),
        nullable=False,
    ),
    Column("created_at", UtcDateTime, nullable=False),
    Index("ix_sales_status_start", "status", "start_time"),
    Index("ix_sales_status_end", "status", "end_time"),
)

sale_allocations = Table(
    "sale_allocations",
    metadata,
    Column("id", String(36), primary_key=True),
    Column("sale_id", String(36), ForeignKey("sales.id"), nullable=False, index=True),
    Column("product_id", String(64), nullable=False, index=True),
    Column("original_price", Numeric(12, 2), nullable=False),
    Column("sale_price", Numeric(12, 2), nullable=False),
    Column("max_quantity", Integer, nullable=False),
    Column("quantity_sold", Integer, nullable=False, server_default="0"),
)

products = Table(
    "products",
    metadata,
    Column("id", String(64), primary_key=True),
    Column("name", String(255), nullable=False),
    Column("image_url", String(1024), nullable=True),
    Column("price", Numeric(12, 2), nullable=True),
)

order_lines = Table(
    "order_lines",
    metadata,
    Column("id", Integer, primary_key=True, autoincrement=True),
    Column("order_id", String(36), nullable=True),
    Column("buyer_id", String(64), nullable=False),
    Column("allocation_id", String(36), nullable=False),
    Column("quantity", Integer, nullable=False),
    Column("unit_price", Numeric(12, 2), nullable=False),
    Column("status", String(16), nullable=False, server_default="reserved"),
    Column("created_at", UtcDateTime, nullable=False, default=lambda: datetime.now(timezone.utc)),
    Index("ix_order_lines_buyer_allocation", "buyer_id", "allocation_id"),
)


def start_mappers() -> None:
    """
    Configure le mapping entre les classes du domaine et les tables SQL.

    Sans effet si le mapping est déjà en place (tests et entrypoints
    peuvent l'appeler chacun de leur côté).
    """
    if inspect(model.Sale, raiseerr=False) is not None:
        return
    allocations_mapper = mapper_registry.map_imperatively(
        model.Allocation,
        sale_allocations,
    )
    mapper_registry.map_imperatively(
        model.Sale,
        sales,
        properties={
            "allocations": relationship(
                allocations_mapper,
                order_by=sale_allocations.c.id,
            ),
        },
    )


@event.listens_for(model.Sale, "load")
def receive_load(sale: model.Sale, _: object) -> None:
    """Initialise la liste d'événements quand une Vente est chargée depuis la BDD."""
    sale.events = []
