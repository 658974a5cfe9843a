"""
Configuration partagée pour les tests.

Le mapping ORM est démarré une seule fois pour toute la session de tests.
Cela permet aux tests d'intégration et e2e d'utiliser SQLAlchemy
sans interférer avec les tests unitaires.

Les tests d'intégration utilisent un fichier SQLite temporaire plutôt
qu'une base en mémoire : plusieurs connexions (donc plusieurs threads)
doivent voir la même base.
"""

import pytest

from flashsale.adapters import orm
from flashsale.service_layer import unit_of_work


@pytest.fixture(scope="session", autouse=True)
def mappers():
    """Démarre le mapping ORM une fois pour toute la session."""
    orm.start_mappers()


@pytest.fixture
def sqlite_engine(tmp_path):
    engine = unit_of_work.make_engine(f"sqlite:///{tmp_path / 'flashsale.db'}", lock_timeout=5)
    orm.metadata.create_all(engine)
    yield engine
    engine.dispose()


@pytest.fixture
def session_factory(sqlite_engine):
    return unit_of_work.make_session_factory(sqlite_engine)


@pytest.fixture
def session(session_factory):
    session = session_factory()
    yield session
    session.close()
