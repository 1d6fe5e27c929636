from decimal import Decimal

import pytest

from backend.app.core.error_catalog import (
    ConflictError,
    InsufficientStockError,
    NotFoundError,
    ValidationError,
)
from backend.app.db.models.core_types import StockStatus, TransactionType
from backend.services.locking import locked_transaction
from backend.services.specs import ProductSpec
from backend.services.stock_ledger import StockLedger, stock_status

SQ = ProductSpec.of("square-tubes", "40x40", "2")
OVAL = ProductSpec.of("oval-tubes", "30x15", "1.2")


def test_unknown_spec_has_nothing_available(db_session):
    assert StockLedger(db_session).get_available(SQ) == Decimal("0")


def test_decrement_records_transaction(db_session, make_stock):
    entry = make_stock(SQ, 60)
    ledger = StockLedger(db_session)

    with locked_transaction(db_session, specs=[SQ]):
        change = ledger.decrement(SQ, "25.5", reference="DO-2026-0001", remarks="test dispatch")

    assert change.old_quantity == Decimal("60.00")
    assert change.new_quantity == Decimal("34.50")
    assert change.change == Decimal("-25.50")
    assert ledger.get_available(SQ) == Decimal("34.50")

    history = ledger.transactions(entry.id)
    assert [t.type for t in history] == [TransactionType.stock_out, TransactionType.adjustment]
    assert history[0].reference == "DO-2026-0001"
    assert history[0].old_quantity == Decimal("60.00")
    assert history[0].new_quantity == Decimal("34.50")

    entry = ledger.get_entry(SQ)
    assert entry.last_transaction["type"] == TransactionType.stock_out
    assert entry.last_transaction["reference"] == "DO-2026-0001"


def test_decrement_beyond_available_is_rejected_without_change(db_session, make_stock):
    make_stock(SQ, 60)
    ledger = StockLedger(db_session)

    with pytest.raises(InsufficientStockError) as exc:
        with locked_transaction(db_session, specs=[SQ]):
            ledger.decrement(SQ, 60.01)

    assert exc.value.spec == SQ
    assert exc.value.requested == Decimal("60.01")
    assert exc.value.available == Decimal("60.00")
    assert exc.value.details["available"] == "60.00"
    assert ledger.get_available(SQ) == Decimal("60.00")


def test_decrement_of_unknown_spec_is_insufficient_stock(db_session):
    with pytest.raises(InsufficientStockError) as exc:
        with locked_transaction(db_session, specs=[SQ]):
            StockLedger(db_session).decrement(SQ, 1)
    assert exc.value.available == Decimal("0")


def test_non_positive_quantities_are_validation_errors(db_session, make_stock):
    make_stock(SQ, 10)
    ledger = StockLedger(db_session)
    for qty in (0, "-1"):
        with pytest.raises(ValidationError):
            ledger.decrement(SQ, qty)
        with pytest.raises(ValidationError):
            ledger.increment(SQ, qty)
    with pytest.raises(ValidationError):
        ledger.adjust(SQ, -5)


def test_increment_requires_known_spec(db_session, make_stock):
    make_stock(SQ, 10)
    ledger = StockLedger(db_session)

    with locked_transaction(db_session, specs=[SQ]):
        change = ledger.increment(SQ, 15, reference="GRN-7")
    assert change.new_quantity == Decimal("25.00")
    assert change.transaction_type == TransactionType.stock_in

    with pytest.raises(NotFoundError):
        ledger.increment(OVAL, 1)


def test_adjust_sets_absolute_quantity(db_session, make_stock):
    make_stock(SQ, 10)
    ledger = StockLedger(db_session)
    with locked_transaction(db_session, specs=[SQ]):
        change = ledger.adjust(SQ, "7.25", remarks="stock count")
    assert change.old_quantity == Decimal("10.00")
    assert ledger.get_available(SQ) == Decimal("7.25")


def test_create_entry_twice_conflicts(db_session, make_stock):
    make_stock(SQ, 10)
    with pytest.raises(ConflictError):
        make_stock(SQ, 5)


def test_inactive_entry_has_nothing_available(db_session, make_stock):
    entry = make_stock(SQ, 10)
    entry.is_active = False
    db_session.commit()

    ledger = StockLedger(db_session)
    assert ledger.get_available(SQ) == Decimal("0")
    with pytest.raises(InsufficientStockError):
        ledger.decrement(SQ, 1)
    assert ledger.list_entries() == []
    assert len(ledger.list_entries(include_inactive=True)) == 1


def test_stock_status_and_summary(db_session, make_stock):
    make_stock(SQ, 5, min_level=10, max_level=100, rate=Decimal("1000"))
    make_stock(OVAL, 90, min_level=10, max_level=100, rate=Decimal("2000"))
    ledger = StockLedger(db_session)

    assert stock_status(ledger.get_entry(SQ)) == StockStatus.low
    assert stock_status(ledger.get_entry(OVAL)) == StockStatus.high
    assert [e.size for e in ledger.list_entries(status=StockStatus.low)] == ["40x40"]

    summary = ledger.summary()
    assert summary["total_items"] == 2
    assert summary["total_stock"] == Decimal("95.00")
    assert summary["total_value"] == Decimal("185000.00")
    assert summary["low_stock_items"] == 1
    assert summary["high_stock_items"] == 1
    assert len(summary["by_type"]) == 2
