"""
Pattern Repository pour les ventes.

Le repository fournit une abstraction sur la couche de persistance.
Il n'applique aucune règle métier : tous les invariants vivent dans
le domaine et les handlers. Il fournit en revanche la primitive de
verrouillage de ligne dont dépend la réservation de stock.

Discipline de verrouillage (toujours dans cet ordre) :
1. l'allocation est verrouillée en écriture (FOR UPDATE)
2. la vente propriétaire est verrouillée en partage (FOR SHARE)

Les transitions du scheduler et l'annulation verrouillent la vente
en écriture : une clôture et un achat sur la même vente sont donc
sérialisés.
"""

from __future__ import annotations

import abc
import contextlib
import logging
from datetime import datetime
from typing import Iterator

from sqlalchemy import Float, cast
from sqlalchemy.exc import OperationalError
from sqlalchemy.orm import Session

from flashsale.domain import model
from flashsale.domain.errors import Busy

logger = logging.getLogger(__name__)


class AbstractSaleRepository(abc.ABC):
    """
    Interface abstraite du repository.

    Le pattern Template Method est utilisé : les méthodes publiques
    gèrent le tracking via `seen`, puis délèguent aux méthodes
    abstraites préfixées _ que les sous-classes implémentent.
    """

    seen: set[model.Sale]

    def __init__(self) -> None:
        # `seen` trace les agrégats consultés pendant la transaction,
        # ce qui permet au Unit of Work de collecter leurs événements.
        self.seen: set[model.Sale] = set()

    def add(self, sale: model.Sale) -> None:
        self._add(sale)
        self.seen.add(sale)

    def get(self, sale_id: str) -> model.Sale | None:
        """Lecture simple, sans verrou."""
        sale = self._get(sale_id)
        if sale:
            self.seen.add(sale)
        return sale

    def get_for_update(self, sale_id: str) -> model.Sale | None:
        """Charge une vente en la verrouillant en écriture."""
        sale = self._get_for_update(sale_id)
        if sale:
            self.seen.add(sale)
        return sale

    def lock_allocation(self, allocation_id: str) -> model.Sale | None:
        """
        Verrouille l'allocation (écriture) puis sa vente (partage),
        et retourne la vente propriétaire.

        Lève Busy si un verrou n'est pas obtenu dans le délai imparti.
        """
        sale = self._lock_allocation(allocation_id)
        if sale:
            self.seen.add(sale)
        return sale

    def due_for_activation(self, now: datetime) -> list[model.Sale]:
        """Ventes `scheduled` dont le début est atteint, verrouillées."""
        sales = self._due_for_activation(now)
        self.seen.update(sales)
        return sales

    def due_for_closing(self, now: datetime) -> list[model.Sale]:
        """Ventes `active` dont la fin est atteinte, verrouillées."""
        sales = self._due_for_closing(now)
        self.seen.update(sales)
        return sales

    @abc.abstractmethod
    def allocations_by_sale(self, sale_id: str) -> list[model.Allocation]:
        """Allocations d'une vente, triées par pourcentage vendu décroissant."""
        raise NotImplementedError

    @abc.abstractmethod
    def _add(self, sale: model.Sale) -> None:
        raise NotImplementedError

    @abc.abstractmethod
    def _get(self, sale_id: str) -> model.Sale | None:
        raise NotImplementedError

    @abc.abstractmethod
    def _get_for_update(self, sale_id: str) -> model.Sale | None:
        raise NotImplementedError

    @abc.abstractmethod
    def _lock_allocation(self, allocation_id: str) -> model.Sale | None:
        raise NotImplementedError

    @abc.abstractmethod
    def _due_for_activation(self, now: datetime) -> list[model.Sale]:
        raise NotImplementedError

    @abc.abstractmethod
    def _due_for_closing(self, now: datetime) -> list[model.Sale]:
        raise NotImplementedError


class SqlAlchemySaleRepository(AbstractSaleRepository):
    """
    Implémentation concrète du repository avec SQLAlchemy.

    Sur PostgreSQL, with_for_update() produit de vrais verrous de ligne.
    SQLite les ignore : le unit of work y ouvre chaque transaction
    en BEGIN IMMEDIATE, ce qui sérialise les écrivains.
    """

    def __init__(self, session: Session):
        super().__init__()
        self.session = session

    def _add(self, sale: model.Sale) -> None:
        self.session.add(sale)

    def _get(self, sale_id: str) -> model.Sale | None:
        return self.session.get(model.Sale, sale_id)

    def _get_for_update(self, sale_id: str) -> model.Sale | None:
        with lock_wait(f"vente {sale_id}"):
            return (
                self.session.query(model.Sale)
                .filter_by(id=sale_id)
                .with_for_update()
                .first()
            )

    def _lock_allocation(self, allocation_id: str) -> model.Sale | None:
        with lock_wait(f"allocation {allocation_id}"):
            allocation = (
                self.session.query(model.Allocation)
                .filter_by(id=allocation_id)
                .with_for_update()
                .first()
            )
            if allocation is None:
                return None
            return (
                self.session.query(model.Sale)
                .filter_by(id=allocation.sale_id)
                .with_for_update(read=True)
                .first()
            )

    def _due_for_activation(self, now: datetime) -> list[model.Sale]:
        with lock_wait("ventes à activer"):
            return (
                self.session.query(model.Sale)
                .filter(
                    model.Sale.status == model.SaleStatus.SCHEDULED,
                    model.Sale.start_time <= now,
                )
                .order_by(model.Sale.start_time)
                .with_for_update()
                .all()
            )

    def _due_for_closing(self, now: datetime) -> list[model.Sale]:
        with lock_wait("ventes à clôturer"):
            return (
                self.session.query(model.Sale)
                .filter(
                    model.Sale.status == model.SaleStatus.ACTIVE,
                    model.Sale.end_time <= now,
                )
                .order_by(model.Sale.end_time)
                .with_for_update()
                .all()
            )

    def allocations_by_sale(self, sale_id: str) -> list[model.Allocation]:
        sold_ratio = cast(model.Allocation.quantity_sold, Float) / model.Allocation.max_quantity
        return (
            self.session.query(model.Allocation)
            .filter_by(sale_id=sale_id)
            .order_by(sold_ratio.desc(), model.Allocation.id)
            .all()
        )


@contextlib.contextmanager
def lock_wait(what: str) -> Iterator[None]:
    """
    Convertit l'expiration d'une attente de verrou en refus Busy.

    PostgreSQL signale `lock_timeout` par SQLSTATE 55P03,
    SQLite par "database is locked" ; les autres OperationalError
    (base injoignable...) remontent telles quelles.
    """
    try:
        yield
    except OperationalError as exc:
        if not _is_lock_timeout(exc):
            raise
        logger.warning("Verrou non obtenu à temps : %s", what)
        raise Busy(f"Verrou non obtenu à temps ({what}), réessayez") from exc


def _is_lock_timeout(exc: OperationalError) -> bool:
    if getattr(exc.orig, "pgcode", None) == "55P03":
        return True
    message = str(exc.orig).lower()
    return "database is locked" in message or "lock timeout" in message
