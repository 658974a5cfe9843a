"""
Commands du domaine.

Les commands représentent des intentions : quelque chose que
le système doit faire. Contrairement aux events (faits passés),
les commands sont des demandes qui peuvent échouer.
"""

from dataclasses import dataclass, field
from datetime import datetime
from decimal import Decimal
from typing import Optional


class Command:
    """Classe de base pour toutes les commands."""
    pass


@dataclass(frozen=True)
class NewAllocation:
    """Un produit proposé dans une vente, avec son stock dédié."""

    product_id: str
    original_price: Decimal
    max_quantity: int
    sale_price: Optional[Decimal] = None


@dataclass(frozen=True)
class CreateSale(Command):
    """Demande de programmation d'une nouvelle vente."""

    title: str
    start_time: datetime
    end_time: datetime
    discount_percentage: Decimal
    allocations: tuple[NewAllocation, ...] = field(default_factory=tuple)
    description: str = ""
    kind: str = "flash"
    season: Optional[str] = None
    banner_color: Optional[str] = None


@dataclass(frozen=True)
class CancelSale(Command):
    sale_id: str


@dataclass(frozen=True)
class ChangeSalePrice(Command):
    """Demande de modification du prix de vente d'une allocation."""

    allocation_id: str
    sale_price: Decimal
    sale_id: Optional[str] = None


@dataclass(frozen=True)
class Reserve(Command):
    """
    Demande de réservation d'unités pour un acheteur.

    `sale_id` est optionnel : quand il est fourni, l'allocation
    doit appartenir à cette vente.
    """

    allocation_id: str
    buyer_id: str
    quantity: int
    sale_id: Optional[str] = None


@dataclass(frozen=True)
class PromoteScheduledSales(Command):
    now: datetime


@dataclass(frozen=True)
class CloseExpiredSales(Command):
    now: datetime
