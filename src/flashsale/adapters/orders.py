"""
Adapter vers le sous-système de commandes.

Le sous-système de commandes est le système de référence pour les
lignes de commande. Le moteur n'en a besoin que pour deux choses :
- savoir combien d'unités d'une allocation un acheteur a déjà réservées
  (plafond d'achat par acheteur)
- y inscrire la réservation, au prix figé, dans la même transaction
  que l'incrément du stock
"""

from __future__ import annotations

import abc
from decimal import Decimal

from sqlalchemy import func, insert, select
from sqlalchemy.orm import Session

from flashsale.adapters.orm import order_lines

# Statuts de ligne qui ne comptent plus dans le plafond d'achat.
RELEASED_STATUSES = ("cancelled", "refunded")


class AbstractOrderLines(abc.ABC):

    @abc.abstractmethod
    def sum_reserved_quantity(self, buyer_id: str, allocation_id: str) -> int:
        """Unités déjà réservées, hors lignes annulées ou remboursées."""
        raise NotImplementedError

    @abc.abstractmethod
    def record_reservation(
        self, allocation_id: str, buyer_id: str, quantity: int, price: Decimal
    ) -> None:
        raise NotImplementedError


class SqlAlchemyOrderLines(AbstractOrderLines):
    """Lit et alimente la table `order_lines` dans la session du unit of work."""

    def __init__(self, session: Session):
        self.session = session

    def sum_reserved_quantity(self, buyer_id: str, allocation_id: str) -> int:
        total = self.session.execute(
            select(func.coalesce(func.sum(order_lines.c.quantity), 0)).where(
                order_lines.c.buyer_id == buyer_id,
                order_lines.c.allocation_id == allocation_id,
                order_lines.c.status.not_in(RELEASED_STATUSES),
            )
        ).scalar_one()
        return int(total)

    def record_reservation(
        self, allocation_id: str, buyer_id: str, quantity: int, price: Decimal
    ) -> None:
        self.session.execute(
            insert(order_lines).values(
                allocation_id=allocation_id,
                buyer_id=buyer_id,
                quantity=quantity,
                unit_price=price,
            )
        )
