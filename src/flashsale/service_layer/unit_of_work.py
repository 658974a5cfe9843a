"""
Pattern Unit of Work.

Le Unit of Work (UoW) gère la notion de transaction atomique.
Il coordonne l'écriture en base de données et la collecte
des événements émis par les agrégats au cours de la transaction.

Le UoW agit comme un context manager :
    with uow:
        # ... opérations sur le repository ...
        uow.commit()

Sans commit(), la sortie du bloc annule tout : un refus levé en
cours de réservation ne peut donc jamais laisser le stock modifié.
"""

from __future__ import annotations

import abc
import threading

from sqlalchemy import create_engine, event
from sqlalchemy.engine import Engine, make_url
from sqlalchemy.orm import Session, sessionmaker

from flashsale import config
from flashsale.adapters import orders, repository


def make_engine(
    uri: str | None = None,
    lock_timeout: float | None = None,
) -> Engine:
    """
    Construit le moteur SQLAlchemy pour une base donnée.

    `lock_timeout` borne l'attente d'un verrou de ligne :
    - PostgreSQL : SET LOCAL lock_timeout au début de chaque transaction
    - SQLite : délai d'attente du driver, et transactions ouvertes en
      BEGIN IMMEDIATE puisque SQLite n'a pas de verrou de ligne
    """
    uri = uri or config.get_database_uri()
    if lock_timeout is None:
        lock_timeout = config.get_lock_timeout()
    backend = make_url(uri).get_backend_name()

    if backend == "sqlite":
        engine = create_engine(
            uri,
            connect_args={"timeout": lock_timeout, "check_same_thread": False},
        )

        @event.listens_for(engine, "connect")
        def _disable_pysqlite_begin(dbapi_connection, connection_record):
            dbapi_connection.isolation_level = None

        @event.listens_for(engine, "begin")
        def _begin_immediate(conn):
            conn.exec_driver_sql("BEGIN IMMEDIATE")

    else:
        engine = create_engine(uri, isolation_level="READ COMMITTED", pool_pre_ping=True)

        if backend == "postgresql":
            timeout_ms = int(lock_timeout * 1000)

            @event.listens_for(engine, "begin")
            def _set_lock_timeout(conn):
                conn.exec_driver_sql(f"SET LOCAL lock_timeout = {timeout_ms}")

    return engine


def make_session_factory(engine: Engine | None = None) -> sessionmaker:
    """
    Les objets restent lisibles après commit : les handlers renvoient
    et loggent des valeurs une fois la transaction terminée.
    """
    return sessionmaker(bind=engine or make_engine(), expire_on_commit=False)


class AbstractUnitOfWork(abc.ABC):
    """
    Interface abstraite du Unit of Work.

    Fournit le repository `sales` et la passerelle `orders`
    vers les lignes de commande, et gère commit/rollback.
    """

    sales: repository.AbstractSaleRepository
    orders: orders.AbstractOrderLines

    def __enter__(self) -> AbstractUnitOfWork:
        return self

    def __exit__(self, *args: object) -> None:
        self.rollback()

    def commit(self) -> None:
        self._commit()

    def collect_new_events(self):
        """
        Collecte tous les événements émis par les ventes vues
        pendant cette transaction.
        """
        for sale in self.sales.seen:
            while sale.events:
                yield sale.events.pop(0)

    @abc.abstractmethod
    def _commit(self) -> None:
        raise NotImplementedError

    @abc.abstractmethod
    def rollback(self) -> None:
        raise NotImplementedError


class SqlAlchemyUnitOfWork(AbstractUnitOfWork):
    """
    Implémentation concrète du UoW avec SQLAlchemy.

    Le bus (et donc le UoW) est partagé par tous les threads du
    serveur HTTP : la session et les repositories sont rangés dans
    un stockage local au thread, chaque requête a sa propre transaction.
    """

    def __init__(self, session_factory: sessionmaker | None = None):
        self.session_factory = session_factory or make_session_factory()
        self._local = threading.local()

    @property
    def session(self) -> Session:
        return self._local.session

    @property
    def sales(self) -> repository.AbstractSaleRepository:
        return self._local.sales

    @property
    def orders(self) -> orders.AbstractOrderLines:
        return self._local.orders

    def __enter__(self) -> SqlAlchemyUnitOfWork:
        session = self.session_factory()
        # Ouvre la transaction tout de suite : sur SQLite, BEGIN IMMEDIATE
        # peut attendre le verrou de la base, y compris pour une lecture.
        try:
            with repository.lock_wait("ouverture de transaction"):
                session.connection()
        except Exception:
            session.close()
            raise
        self._local.session = session
        self._local.sales = repository.SqlAlchemySaleRepository(session)
        self._local.orders = orders.SqlAlchemyOrderLines(session)
        return super().__enter__()

    def __exit__(self, *args: object) -> None:
        super().__exit__(*args)
        self.session.close()

    def _commit(self) -> None:
        with repository.lock_wait("commit"):
            self.session.commit()

    def rollback(self) -> None:
        self.session.rollback()
