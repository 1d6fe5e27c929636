from decimal import Decimal

import pytest
from fastapi.testclient import TestClient
from sqlalchemy import create_engine
from sqlalchemy.orm import Session, sessionmaker

from backend.app.api.deps import get_db
from backend.app.db.base import Base
from backend.app.db.models import models_v1  # noqa: F401  (registers tables)
from backend.app.main import create_app
from backend.services import orders as order_service
from backend.services.locking import locked_transaction
from backend.services.specs import ProductSpec
from backend.services.stock_ledger import StockLedger


@pytest.fixture(scope="function")
def engine(tmp_path):
    """
    Isolated SQLite file per test.

    A file (not :memory:) so that several sessions, and several threads,
    see the same committed data.
    """
    eng = create_engine(
        f"sqlite+pysqlite:///{tmp_path / 'dispatch.db'}",
        connect_args={"check_same_thread": False},
    )
    Base.metadata.create_all(bind=eng)
    try:
        yield eng
    finally:
        eng.dispose()


@pytest.fixture(scope="function")
def session_factory(engine):
    return sessionmaker(bind=engine, autoflush=False, autocommit=False)


@pytest.fixture(scope="function")
def db_session(session_factory) -> Session:
    session = session_factory()
    try:
        yield session
    finally:
        session.close()


@pytest.fixture(scope="function")
def client(session_factory):
    app = create_app()

    def override_get_db():
        db = session_factory()
        try:
            yield db
        finally:
            db.close()

    app.dependency_overrides[get_db] = override_get_db
    with TestClient(app) as c:
        yield c


@pytest.fixture
def make_stock(db_session):
    def _make(spec: ProductSpec, quantity, **kwargs):
        with locked_transaction(db_session, specs=[spec]):
            entry = StockLedger(db_session).create_entry(spec, available_quantity=Decimal(str(quantity)), **kwargs)
        return entry

    return _make


@pytest.fixture
def make_order(db_session):
    """make_order((spec, qty), ..., approved=True) -> committed Order."""

    def _make(*lines, approved: bool = False, rate="45000", tax_rate=None):
        inputs = [
            order_service.OrderLineInput(
                spec=spec,
                ordered_quantity=Decimal(str(qty)),
                rate=Decimal(rate),
                tax_rate=tax_rate,
            )
            for spec, qty in lines
        ]
        with locked_transaction(db_session):
            order = order_service.create_order(db_session, lines=inputs, customer_name="Test Customer")
        if approved:
            with locked_transaction(db_session, order_ids=[order.id]):
                order_service.approve_order(db_session, order.id, approver="Plant Manager")
        return order

    return _make
