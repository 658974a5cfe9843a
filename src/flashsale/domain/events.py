"""
Events du domaine.

Les events représentent des faits qui se sont produits dans le système.
Ils sont immuables et nommés au passé (quelque chose s'est passé).
"""

from dataclasses import dataclass
from decimal import Decimal


class Event:
    """Classe de base pour tous les events du domaine."""
    pass


@dataclass(frozen=True)
class SaleCreated(Event):
    """Une vente a été programmée par un opérateur."""

    sale_id: str


@dataclass(frozen=True)
class SaleActivated(Event):
    """Une vente programmée vient d'ouvrir."""

    sale_id: str
    title: str
    allocation_ids: tuple[str, ...]


@dataclass(frozen=True)
class SaleEnded(Event):
    sale_id: str


@dataclass(frozen=True)
class SaleCancelled(Event):
    sale_id: str


@dataclass(frozen=True)
class UnitsReserved(Event):
    """Des unités d'une allocation ont été réservées par un acheteur."""

    sale_id: str
    allocation_id: str
    buyer_id: str
    quantity: int
    unit_price: Decimal


@dataclass(frozen=True)
class AllocationRepriced(Event):
    sale_id: str
    allocation_id: str
    sale_price: Decimal
