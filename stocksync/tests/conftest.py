import pytest
from sqlalchemy import create_engine
from sqlalchemy.orm import Session, sessionmaker

from stocksync.app.db.models.models_v1 import Base, Product
from stocksync.tests.fakes import FixedClock


@pytest.fixture
def clock() -> FixedClock:
    return FixedClock()


@pytest.fixture
def engine(tmp_path):
    """
    SQLite fichier, un par test.

    Fichier (et pas :memory:) : le scheduler ouvre ses propres sessions,
    parfois depuis un autre thread.
    """
    eng = create_engine(
        f"sqlite:///{tmp_path / 'stocksync.db'}",
        connect_args={"check_same_thread": False},
    )
    Base.metadata.create_all(bind=eng)
    try:
        yield eng
    finally:
        eng.dispose()


@pytest.fixture
def session_factory(engine):
    return sessionmaker(bind=engine, autoflush=False, autocommit=False)


@pytest.fixture
def db_session(session_factory) -> Session:
    session = session_factory()
    try:
        yield session
    finally:
        session.close()


@pytest.fixture
def products(db_session):
    """Catalogue minimal : SKU-A (Alpha Widget) et SKU-B (Beta Gasket)."""
    rows = [
        Product(sku="SKU-A", name="Alpha Widget", uom="unit"),
        Product(sku="SKU-B", name="Beta Gasket", uom="unit"),
    ]
    db_session.add_all(rows)
    db_session.commit()
    return {p.sku: p for p in rows}
