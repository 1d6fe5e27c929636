import json
import re
from datetime import date, timezone
from decimal import Decimal

import pytest
from sqlalchemy import select

from backend.app.core.error_catalog import InvalidStateError, NotFoundError, ValidationError
from backend.app.db.models.core_types import ApprovalStatus, OrderStatus
from backend.app.db.models.models_v1 import AuditLog, utcnow
from backend.services import orders as order_service
from backend.services.dispatch import DispatchRequestLine, dispatch_order
from backend.services.locking import locked_transaction
from backend.services.numbering import next_number
from backend.services.specs import ProductSpec

S = ProductSpec.of("round-tubes", "48.3", "3.2")


def test_create_order_defaults(db_session, make_order):
    order = make_order((S, 12), (S, 8))

    assert re.fullmatch(r"PO-\d{4}-0001", order.order_number)
    assert order.approval_status == ApprovalStatus.pending
    assert order.status == OrderStatus.pending
    assert [line.ordered_quantity for line in order.lines] == [Decimal("12.00"), Decimal("8.00")]
    assert all(line.tax_rate == Decimal("18.00") for line in order.lines)


def test_create_order_validation(db_session):
    with pytest.raises(ValidationError):
        order_service.create_order(db_session, lines=[])
    with pytest.raises(ValidationError):
        order_service.create_order(
            db_session,
            lines=[order_service.OrderLineInput(spec=S, ordered_quantity=Decimal("0"), rate=Decimal("1"))],
        )


def test_duplicate_order_number_is_rejected(db_session):
    line = order_service.OrderLineInput(spec=S, ordered_quantity=Decimal("1"), rate=Decimal("1"))
    with locked_transaction(db_session):
        order_service.create_order(db_session, lines=[line], order_number="PO-MANUAL-1")
    with pytest.raises(ValidationError):
        with locked_transaction(db_session):
            order_service.create_order(db_session, lines=[line], order_number="PO-MANUAL-1")


def test_approve_and_reject(db_session, make_order):
    approved = make_order((S, 5), approved=True)
    assert approved.approval_status == ApprovalStatus.approved
    assert approved.status == OrderStatus.approved
    assert approved.approved_by == "Plant Manager"

    with pytest.raises(InvalidStateError):
        with locked_transaction(db_session):
            order_service.approve_order(db_session, approved.id, approver="someone")

    rejected = make_order((S, 5))
    with locked_transaction(db_session):
        order_service.reject_order(db_session, rejected.id, approver="Sales Head")
    assert rejected.approval_status == ApprovalStatus.rejected
    assert rejected.status == OrderStatus.pending

    with pytest.raises(NotFoundError):
        order_service.get_order(db_session, 424242)


def test_approval_after_partial_dispatch_keeps_derived_status(db_session, make_stock, make_order):
    make_stock(S, 5)
    order = make_order((S, 10))
    dispatch_order(db_session, order.id, [DispatchRequestLine(spec=S, quantity=Decimal("5"))])

    with pytest.raises(InvalidStateError):
        with locked_transaction(db_session):
            order_service.reject_order(db_session, order.id, approver="Sales Head")

    with locked_transaction(db_session):
        order_service.approve_order(db_session, order.id, approver="Sales Head")
    order = order_service.get_order(db_session, order.id)
    assert order.approval_status == ApprovalStatus.approved
    assert order.status == OrderStatus.partial_dispatch


def test_cancel_order(db_session, make_order):
    order = make_order((S, 5))
    with locked_transaction(db_session):
        order_service.cancel_order(db_session, order.id, actor="sales")
    assert order_service.get_order(db_session, order.id).status == OrderStatus.cancelled

    with pytest.raises(InvalidStateError):
        with locked_transaction(db_session):
            order_service.cancel_order(db_session, order.id)


def test_list_orders_filters(db_session, make_order):
    make_order((S, 1))
    approved = make_order((S, 1), approved=True)

    rows = order_service.list_orders(db_session, approval_status=ApprovalStatus.approved)
    assert [o.id for o in rows] == [approved.id]
    assert len(order_service.list_orders(db_session)) == 2


def test_status_changes_are_audited(db_session, make_stock, make_order):
    make_stock(S, 5)
    order = make_order((S, 10))
    dispatch_order(db_session, order.id, [DispatchRequestLine(spec=S, quantity=Decimal("5"))])

    rows = (
        db_session.execute(
            select(AuditLog).where(AuditLog.action == "order.status_changed").where(AuditLog.entity_id == str(order.id))
        )
        .scalars()
        .all()
    )
    assert len(rows) == 1
    assert json.loads(rows[0].meta) == {"from": "pending", "to": "partial-dispatch"}


def test_numbers_are_sequential_per_prefix_and_year(db_session):
    with locked_transaction(db_session):
        first = next_number(db_session, "DO", today=date(2026, 3, 1))
        second = next_number(db_session, "DO", today=date(2026, 7, 9))
        other_prefix = next_number(db_session, "DC", today=date(2026, 7, 9))
        next_year = next_number(db_session, "DO", today=date(2027, 1, 2))

    assert (first, second) == ("DO-2026-0001", "DO-2026-0002")
    assert other_prefix == "DC-2026-0001"
    assert next_year == "DO-2027-0001"


def test_rolled_back_transaction_gives_number_back(db_session):
    with pytest.raises(RuntimeError):
        with locked_transaction(db_session):
            next_number(db_session, "DO", today=date(2026, 1, 1))
            raise RuntimeError("boom")

    with locked_transaction(db_session):
        assert next_number(db_session, "DO", today=date(2026, 1, 1)) == "DO-2026-0001"


def test_dispatch_numbers_stay_unique(db_session, make_stock, make_order):
    make_stock(S, 100)
    numbers = []
    for _ in range(5):
        order = make_order((S, 4))
        result = dispatch_order(db_session, order.id, [DispatchRequestLine(spec=S, quantity=Decimal("3"))])
        numbers.extend([result.dispatch.human_number, result.continuation.human_number])

    assert len(set(numbers)) == len(numbers) == 10


def test_timestamps_are_timezone_aware(db_session, make_order, monkeypatch):
    assert utcnow().tzinfo is timezone.utc

    stamps = []

    def recording_utcnow():
        stamps.append(utcnow())
        return stamps[-1]

    monkeypatch.setattr(order_service, "utcnow", recording_utcnow)
    order = make_order((S, 5))
    order_service.approve_order(db_session, order.id, approver="Sales Head")

    assert len(stamps) == 1
    assert stamps[0].tzinfo is timezone.utc
