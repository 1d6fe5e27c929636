from datetime import timedelta
from decimal import Decimal

import pytest

from backend.app.core import config
from backend.app.core.error_catalog import (
    InsufficientStockError,
    InvalidStateError,
    NotFoundError,
    ValidationError,
)
from backend.app.db.models.core_types import DispatchStatus, OrderStatus
from backend.services import orders as order_service
from backend.services.dispatch import (
    DispatchFilters,
    DispatchRequestLine,
    approve_dispatch,
    cancel_dispatch,
    dispatch_order,
    execute_dispatch,
    get_dispatch,
    list_dispatches,
    mark_delivered,
    mark_dispatched,
)
from backend.services.locking import locked_transaction
from backend.services.numbering import next_number
from backend.services.specs import ProductSpec
from backend.services.stock_ledger import StockLedger

S = ProductSpec.of("square-tubes", "40x40", "2")
R = ProductSpec.of("rectangular-tubes", "60x40", "2.5")


def _req(spec, qty, rate=None):
    return DispatchRequestLine(spec=spec, quantity=Decimal(str(qty)), rate=None if rate is None else Decimal(rate))


def _restock(db, spec, qty):
    with locked_transaction(db, specs=[spec]):
        StockLedger(db).increment(spec, qty, reference="GRN")


def test_continuation_runs_through_to_completed_order(db_session, make_stock, make_order):
    make_stock(S, 60)
    order = make_order((S, 100), approved=True)

    first = dispatch_order(db_session, order.id, [_req(S, 60)])
    continuation = first.continuation
    assert continuation.status == DispatchStatus.approved

    _restock(db_session, S, 40)
    second = execute_dispatch(db_session, continuation.id, actor="dispatcher")

    assert second.dispatch.id == continuation.id
    assert second.dispatch.status == DispatchStatus.executed
    assert second.continuation is None
    assert second.fulfillment[S].remaining == Decimal("0.00")
    assert StockLedger(db_session).get_available(S) == Decimal("0.00")
    assert order_service.get_order(db_session, order.id).status == OrderStatus.dispatched

    for record in (first.dispatch, continuation):
        mark_dispatched(db_session, record.id)

    mark_delivered(db_session, first.dispatch.id)
    assert order_service.get_order(db_session, order.id).status == OrderStatus.dispatched

    mark_delivered(db_session, continuation.id)
    assert get_dispatch(db_session, continuation.id).status == DispatchStatus.delivered
    assert order_service.get_order(db_session, order.id).status == OrderStatus.completed


def test_pending_continuation_needs_approval_before_execution(db_session, make_stock, make_order):
    make_stock(S, 60)
    order = make_order((S, 100))
    continuation = dispatch_order(db_session, order.id, [_req(S, 60)]).continuation

    with pytest.raises(InvalidStateError):
        execute_dispatch(db_session, continuation.id)

    approved = approve_dispatch(db_session, continuation.id, approver="Sales Head", remarks="ok")
    assert approved.status == DispatchStatus.approved
    assert approved.approved_by == "Sales Head"
    assert approved.approved_quantity == Decimal("40.00")

    # no stock yet: nothing changes
    with pytest.raises(InsufficientStockError):
        execute_dispatch(db_session, continuation.id)
    assert get_dispatch(db_session, continuation.id).status == DispatchStatus.approved


def test_new_dispatch_supersedes_open_continuation(db_session, make_stock, make_order):
    make_stock(S, 30)
    order = make_order((S, 100))

    first = dispatch_order(db_session, order.id, [_req(S, 30)])
    _restock(db_session, S, 30)
    second = dispatch_order(db_session, order.id, [_req(S, 30)])

    old = get_dispatch(db_session, first.continuation.id)
    assert old.status == DispatchStatus.cancelled
    assert old.cancel_reason == f"Superseded by {second.dispatch.human_number}"
    assert [r.id for r in second.superseded] == [old.id]

    open_continuations = list_dispatches(
        db_session,
        DispatchFilters(order_id=order.id, status=DispatchStatus.pending, auto_generated=True),
    )
    assert [r.id for r in open_continuations] == [second.continuation.id]
    assert second.continuation.lines[0].dispatched_quantity == Decimal("40.00")


def test_request_is_validated_against_the_order(db_session, make_stock, make_order):
    make_stock(S, 500)
    make_stock(R, 500)
    order = make_order((S, 100))

    with pytest.raises(ValidationError):
        dispatch_order(db_session, order.id, [])
    with pytest.raises(ValidationError):
        dispatch_order(db_session, order.id, [_req(S, 0)])
    with pytest.raises(ValidationError):
        dispatch_order(db_session, order.id, [_req(R, 1)])
    with pytest.raises(ValidationError):
        dispatch_order(db_session, order.id, [_req(S, 60), _req(S, 41)])
    with pytest.raises(NotFoundError):
        dispatch_order(db_session, 9999, [_req(S, 1)])

    assert StockLedger(db_session).get_available(S) == Decimal("500.00")


def test_multi_line_shortfall_rejects_whole_request(db_session, make_stock, make_order):
    make_stock(S, 100)
    make_stock(R, 10)
    order = make_order((S, 100), (R, 50))

    with pytest.raises(InsufficientStockError) as exc:
        dispatch_order(db_session, order.id, [_req(S, 50), _req(R, 20)])

    assert exc.value.spec == R
    ledger = StockLedger(db_session)
    assert ledger.get_available(S) == Decimal("100.00")
    assert ledger.get_available(R) == Decimal("10.00")
    assert list_dispatches(db_session, DispatchFilters(order_id=order.id)) == []


def test_duplicate_request_lines_merge_and_totals_are_computed(db_session, make_stock, make_order):
    make_stock(S, 100)
    order = make_order((S, 100), rate="45000")

    result = dispatch_order(db_session, order.id, [_req(S, 20), _req(S, 30)])
    record = result.dispatch

    assert len(record.lines) == 1
    line = record.lines[0]
    assert line.dispatched_quantity == Decimal("50.00")
    assert line.total == Decimal("2250000.00")
    assert line.tax_rate == Decimal("18.00")
    assert record.subtotal == Decimal("2250000.00")
    assert record.tax_total == Decimal("405000.00")
    assert record.grand_total == Decimal("2655000.00")


def test_request_rate_overrides_order_rate(db_session, make_stock, make_order):
    make_stock(S, 10)
    order = make_order((S, 10), rate="45000", tax_rate=Decimal("0"))

    record = dispatch_order(db_session, order.id, [_req(S, "2.5", rate="40000")]).dispatch

    assert record.lines[0].rate == Decimal("40000.00")
    assert record.lines[0].total == Decimal("100000.00")
    assert record.tax_total == Decimal("0.00")


def test_rejected_and_cancelled_orders_cannot_be_dispatched(db_session, make_stock, make_order):
    make_stock(S, 100)
    rejected = make_order((S, 10))
    cancelled = make_order((S, 10))
    with locked_transaction(db_session):
        order_service.reject_order(db_session, rejected.id, approver="Sales Head")
        order_service.cancel_order(db_session, cancelled.id)

    for order in (rejected, cancelled):
        with pytest.raises(InvalidStateError):
            dispatch_order(db_session, order.id, [_req(S, 1)])
    assert StockLedger(db_session).get_available(S) == Decimal("100.00")


def test_fully_dispatched_order_accepts_no_more_dispatches(db_session, make_stock, make_order):
    make_stock(S, 100)
    order = make_order((S, 10))
    dispatch_order(db_session, order.id, [_req(S, 10)])

    with pytest.raises(InvalidStateError):
        dispatch_order(db_session, order.id, [_req(S, 1)])


def test_illegal_transitions_are_rejected(db_session, make_stock, make_order):
    make_stock(S, 60)
    order = make_order((S, 100))
    result = dispatch_order(db_session, order.id, [_req(S, 60)])

    with pytest.raises(InvalidStateError):
        mark_dispatched(db_session, result.continuation.id)
    with pytest.raises(InvalidStateError):
        approve_dispatch(db_session, result.dispatch.id, approver="x")
    with pytest.raises(InvalidStateError):
        mark_delivered(db_session, result.dispatch.id)

    mark_dispatched(db_session, result.dispatch.id)
    mark_delivered(db_session, result.dispatch.id)
    with pytest.raises(InvalidStateError):
        cancel_dispatch(db_session, result.dispatch.id)

    cancel_dispatch(db_session, result.continuation.id, reason="customer called")
    with pytest.raises(InvalidStateError):
        cancel_dispatch(db_session, result.continuation.id)


def test_list_dispatches_filters(db_session, make_stock, make_order):
    make_stock(S, 60)
    order = make_order((S, 100))
    other = make_order((S, 10))
    result = dispatch_order(db_session, order.id, [_req(S, 60)])

    assert {r.id for r in list_dispatches(db_session)} == {result.dispatch.id, result.continuation.id}
    assert list_dispatches(db_session, DispatchFilters(order_id=other.id)) == []
    manual = list_dispatches(db_session, DispatchFilters(auto_generated=False))
    assert [r.id for r in manual] == [result.dispatch.id]
    executed = list_dispatches(db_session, DispatchFilters(status=DispatchStatus.executed))
    assert [r.id for r in executed] == [result.dispatch.id]

    today = result.dispatch.dispatch_date
    assert len(list_dispatches(db_session, DispatchFilters(date_from=today, date_to=today))) == 2
    with pytest.raises(ValidationError):
        list_dispatches(db_session, DispatchFilters(date_from=today, date_to=today - timedelta(days=1)))


def test_continuation_failure_rolls_back_the_whole_dispatch(db_session, make_stock, make_order, monkeypatch):
    make_stock(S, 60)
    order = make_order((S, 100), approved=True)

    def numbering_down_for_continuations(db, prefix, **kwargs):
        if prefix == config.CONTINUATION_NUMBER_PREFIX:
            raise RuntimeError("continuation sequence unavailable")
        return next_number(db, prefix, **kwargs)

    monkeypatch.setattr("backend.services.dispatch.next_number", numbering_down_for_continuations)

    with pytest.raises(RuntimeError, match="continuation sequence unavailable"):
        dispatch_order(db_session, order.id, [_req(S, 60)])

    assert StockLedger(db_session).get_available(S) == Decimal("60.00")
    assert list_dispatches(db_session, DispatchFilters(order_id=order.id)) == []
    assert order_service.get_order(db_session, order.id).status == OrderStatus.approved

    monkeypatch.undo()
    result = dispatch_order(db_session, order.id, [_req(S, 60)])
    # the primary number allocated by the failed attempt was rolled back too
    assert result.dispatch.human_number.endswith("-0001")
    assert result.continuation.status == DispatchStatus.approved
