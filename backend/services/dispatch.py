"""
Reconciliation orchestrator.

``dispatch_order`` takes an order, dispatches the requested quantities
against the stock ledger, recomputes what remains across the order's whole
dispatch history and, when something is still outstanding, creates a
continuation record for it. Stock decrements, the primary record, the
continuation record and the order status write-back are one transaction:
either all of them commit or none do.

Locking: the order lock and every involved spec lock are held from the
availability check until commit (see ``locking.locked_transaction``).
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from datetime import date
from decimal import Decimal
from typing import Iterable

from sqlalchemy import select
from sqlalchemy.orm import Session

from backend.app.core import config
from backend.app.core.error_catalog import (
    InsufficientStockError,
    InvalidStateError,
    NotFoundError,
    ValidationError,
)
from backend.app.core.logging import log_json
from backend.app.db.models.core_types import (
    ApprovalStatus,
    DISPATCH_TRANSITIONS,
    DispatchStatus,
    OrderStatus,
    TERMINAL_DISPATCH_STATUSES,
)
from backend.app.db.models.models_v1 import DispatchLine, DispatchRecord, Order, OrderLine, utcnow
from backend.services import audit, events
from backend.services.fulfillment import (
    Fulfillment,
    compute,
    counts_as_dispatched,
    outstanding,
)
from backend.services.locking import locked_transaction
from backend.services.numbering import next_number
from backend.services.orders import ensure_dispatchable, get_order, update_order_status
from backend.services.specs import ProductSpec, ZERO, q2
from backend.services.stock_ledger import StockChange, StockLedger

logger = logging.getLogger(__name__)

HUNDRED = Decimal("100")


@dataclass(frozen=True)
class DispatchRequestLine:
    spec: ProductSpec
    quantity: Decimal
    rate: Decimal | None = None


@dataclass
class DispatchResult:
    dispatch: DispatchRecord
    continuation: DispatchRecord | None
    fulfillment: Fulfillment
    stock_changes: list[StockChange] = field(default_factory=list)
    superseded: list[DispatchRecord] = field(default_factory=list)


@dataclass(frozen=True)
class DispatchFilters:
    order_id: int | None = None
    status: DispatchStatus | None = None
    date_from: date | None = None
    date_to: date | None = None
    auto_generated: bool | None = None


# ---------- Helpers ----------
def _merge_request(lines: Iterable[DispatchRequestLine]) -> dict[ProductSpec, DispatchRequestLine]:
    merged: dict[ProductSpec, DispatchRequestLine] = {}
    for ln in lines:
        qty = q2(ln.quantity)
        if qty <= ZERO:
            raise ValidationError(
                f"Dispatched quantity for {ln.spec} must be greater than zero",
                details={"spec": ln.spec.as_dict(), "quantity": format(qty, "f")},
            )
        if ln.rate is not None and q2(ln.rate) < ZERO:
            raise ValidationError(f"Rate for {ln.spec} cannot be negative", details={"spec": ln.spec.as_dict()})
        prior = merged.get(ln.spec)
        if prior is None:
            merged[ln.spec] = DispatchRequestLine(spec=ln.spec, quantity=qty, rate=ln.rate)
        else:
            merged[ln.spec] = DispatchRequestLine(
                spec=ln.spec,
                quantity=prior.quantity + qty,
                rate=prior.rate if prior.rate is not None else ln.rate,
            )
    if not merged:
        raise ValidationError("At least one item is required")
    return merged


def _order_lines_by_spec(order: Order) -> dict[ProductSpec, OrderLine]:
    # duplicate order lines for one spec: the first line carries rate and tax
    by_spec: dict[ProductSpec, OrderLine] = {}
    for line in order.lines:
        by_spec.setdefault(ProductSpec.from_row(line), line)
    return by_spec


def _order_dispatches(db: Session, order_id: int) -> list[DispatchRecord]:
    return (
        db.execute(
            select(DispatchRecord)
            .where(DispatchRecord.order_id == order_id)
            .order_by(DispatchRecord.id)
            .execution_options(populate_existing=True)
        )
        .scalars()
        .all()
    )


def _check_within_order(requested: dict[ProductSpec, Decimal], fulfillment: Fulfillment) -> None:
    for spec, qty in requested.items():
        line = fulfillment.get(spec)
        if line is None:
            raise ValidationError(f"{spec} is not on this order", details={"spec": spec.as_dict()})
        if qty > line.remaining:
            raise ValidationError(
                f"Cannot dispatch {qty} of {spec}: only {line.remaining} remains on the order",
                details={
                    "spec": spec.as_dict(),
                    "requested": format(qty, "f"),
                    "remaining": format(line.remaining, "f"),
                },
            )


def _check_stock(ledger: StockLedger, requested: dict[ProductSpec, Decimal]) -> None:
    """All-or-nothing: any shortfall rejects the request before the ledger is touched."""
    for spec, qty in sorted(requested.items()):
        available = ledger.get_available(spec)
        if qty > available:
            raise InsufficientStockError(spec, qty, available)


def _line_total(quantity: Decimal, rate: Decimal) -> Decimal:
    return q2(quantity * rate)


def _apply_totals(record: DispatchRecord) -> None:
    subtotal = ZERO
    tax = ZERO
    for line in record.lines:
        subtotal += line.total
        tax += q2(line.total * q2(line.tax_rate) / HUNDRED)
    record.subtotal = q2(subtotal)
    record.tax_total = q2(tax)
    record.grand_total = q2(subtotal + tax)


def _new_line(spec: ProductSpec, *, ordered, dispatched, remaining, rate, tax_rate) -> DispatchLine:
    return DispatchLine(
        product_type=spec.product_type,
        size=spec.size,
        thickness=spec.thickness,
        ordered_quantity=q2(ordered),
        dispatched_quantity=q2(dispatched),
        remaining_quantity=q2(remaining),
        rate=q2(rate),
        tax_rate=q2(tax_rate),
        total=_line_total(q2(dispatched), q2(rate)),
    )


def derive_order_status(order: Order, fulfillment: Fulfillment, records: Iterable[DispatchRecord]) -> OrderStatus:
    consumed = [r for r in records if counts_as_dispatched(r)]
    if not consumed:
        return OrderStatus.approved if order.approval_status == ApprovalStatus.approved else OrderStatus.pending
    if outstanding(fulfillment):
        return OrderStatus.partial_dispatch
    if all(r.status == DispatchStatus.delivered for r in consumed):
        return OrderStatus.completed
    return OrderStatus.dispatched


def _write_back_status(db: Session, order: Order, fulfillment: Fulfillment, records, *, actor: str | None) -> None:
    if order.status == OrderStatus.cancelled:
        return
    update_order_status(db, order, derive_order_status(order, fulfillment, records), actor=actor)


def _supersede_open_continuations(
    db: Session,
    records: Iterable[DispatchRecord],
    *,
    by: DispatchRecord,
) -> list[DispatchRecord]:
    superseded = []
    now = utcnow()
    for record in records:
        if record.id == by.id or not record.auto_generated:
            continue
        if record.status not in {DispatchStatus.pending, DispatchStatus.approved}:
            continue
        record.status = DispatchStatus.cancelled
        record.cancelled_at = now
        record.cancel_reason = f"Superseded by {by.human_number}"
        superseded.append(record)
        audit.record(
            db,
            action="dispatch.superseded",
            entity_type="dispatch",
            entity_id=record.id,
            meta={"by": by.human_number},
        )
    return superseded


def _create_continuation(
    db: Session,
    order: Order,
    parent: DispatchRecord,
    fulfillment: Fulfillment,
) -> DispatchRecord | None:
    remainder = outstanding(fulfillment)
    if not remainder:
        return None

    order_lines = _order_lines_by_spec(order)
    continuation = DispatchRecord(
        human_number=next_number(db, config.CONTINUATION_NUMBER_PREFIX),
        order_id=order.id,
        parent_dispatch_id=parent.id,
        status=DispatchStatus.pending,
        auto_generated=True,
        dispatch_date=date.today(),
        remarks=f"Remaining quantities after {parent.human_number}",
    )
    for line in remainder:
        source = order_lines[line.spec]
        continuation.lines.append(
            _new_line(
                line.spec,
                ordered=line.ordered,
                dispatched=line.remaining,
                remaining=line.remaining,
                rate=source.rate,
                tax_rate=source.tax_rate,
            )
        )
    _apply_totals(continuation)

    # approval cascades from the order, it is never re-evaluated here
    if order.approval_status == ApprovalStatus.approved:
        continuation.status = DispatchStatus.approved
        continuation.approved_by = config.AUTO_APPROVER
        continuation.approved_at = utcnow()
        continuation.approved_quantity = q2(sum((line.remaining for line in remainder), ZERO))
        continuation.approval_remarks = "Auto-approved due to order approval"

    db.add(continuation)
    db.flush()
    audit.record(
        db,
        action="dispatch.continuation_created",
        entity_type="dispatch",
        entity_id=continuation.id,
        actor=continuation.approved_by,
        meta={"parent": parent.human_number, "status": continuation.status},
    )
    log_json(
        logger,
        {
            "event": "continuation_created",
            "order_id": order.id,
            "dispatch": continuation.human_number,
            "parent": parent.human_number,
            "status": continuation.status,
            "remaining": {line.spec.key: line.remaining for line in remainder},
        },
    )
    return continuation


def _reconcile(
    db: Session,
    order: Order,
    record: DispatchRecord,
    history: list[DispatchRecord],
    *,
    actor: str | None,
) -> tuple[Fulfillment, DispatchRecord | None, list[DispatchRecord]]:
    """Steps after stock has moved: recompute, replace the continuation, derive status."""
    records = [r for r in history if r.id != record.id] + [record]
    after = compute(order, records)
    for line in record.lines:
        line.remaining_quantity = after[ProductSpec.from_row(line)].remaining

    superseded = _supersede_open_continuations(db, records, by=record)
    continuation = _create_continuation(db, order, record, after)
    if continuation is not None:
        records.append(continuation)

    _write_back_status(db, order, after, records, actor=actor)
    db.flush()
    return after, continuation, superseded


# ---------- Operations ----------
def dispatch_order(
    db: Session,
    order_id: int,
    requested_lines: Iterable[DispatchRequestLine],
    *,
    remarks: str | None = None,
    dispatch_date: date | None = None,
    actor: str | None = None,
) -> DispatchResult:
    merged = _merge_request(requested_lines)
    requested = {spec: ln.quantity for spec, ln in merged.items()}

    with locked_transaction(db, order_ids=[order_id], specs=merged.keys()):
        order = get_order(db, order_id, for_update=True)
        ensure_dispatchable(order)

        history = _order_dispatches(db, order.id)
        before = compute(order, history)
        _check_within_order(requested, before)

        ledger = StockLedger(db)
        _check_stock(ledger, requested)

        human_number = next_number(db, config.DISPATCH_NUMBER_PREFIX)
        changes = [
            ledger.decrement(
                spec,
                qty,
                reference=human_number,
                remarks=f"{human_number} dispatch - {qty} of {spec}",
            )
            for spec, qty in sorted(requested.items())
        ]

        order_lines = _order_lines_by_spec(order)
        record = DispatchRecord(
            human_number=human_number,
            order_id=order.id,
            status=DispatchStatus.executed,
            auto_generated=False,
            dispatch_date=dispatch_date or date.today(),
            remarks=remarks,
        )
        for spec, ln in merged.items():
            source = order_lines[spec]
            record.lines.append(
                _new_line(
                    spec,
                    ordered=before[spec].ordered,
                    dispatched=ln.quantity,
                    remaining=before[spec].remaining - ln.quantity,
                    rate=source.rate if ln.rate is None else ln.rate,
                    tax_rate=source.tax_rate,
                )
            )
        _apply_totals(record)
        db.add(record)
        db.flush()

        after, continuation, superseded = _reconcile(db, order, record, history, actor=actor)

        audit.record(
            db,
            action="dispatch.executed",
            entity_type="dispatch",
            entity_id=record.id,
            actor=actor,
            meta={"human_number": human_number, "order_id": order.id},
        )

    log_json(
        logger,
        {
            "event": "dispatch_committed",
            "order_id": order.id,
            "dispatch": record.human_number,
            "continuation": continuation.human_number if continuation else None,
            "order_status": order.status,
        },
    )
    events.publish(events.DispatchExecuted(dispatch_id=record.id, human_number=record.human_number, order_id=order.id))
    return DispatchResult(
        dispatch=record,
        continuation=continuation,
        fulfillment=after,
        stock_changes=changes,
        superseded=superseded,
    )


def get_dispatch(db: Session, dispatch_id: int, *, for_update: bool = False) -> DispatchRecord:
    stmt = select(DispatchRecord).where(DispatchRecord.id == dispatch_id).execution_options(populate_existing=True)
    if for_update:
        stmt = stmt.with_for_update()
    record = db.execute(stmt).scalar_one_or_none()
    if not record:
        raise NotFoundError("Dispatch record not found", details={"dispatch_id": dispatch_id})
    return record


def list_dispatches(db: Session, filters: DispatchFilters | None = None) -> list[DispatchRecord]:
    filters = filters or DispatchFilters()
    if filters.date_from and filters.date_to and filters.date_from > filters.date_to:
        raise ValidationError("date_from must not be after date_to")

    stmt = select(DispatchRecord).order_by(DispatchRecord.created_at.desc(), DispatchRecord.id.desc())
    if filters.order_id is not None:
        stmt = stmt.where(DispatchRecord.order_id == filters.order_id)
    if filters.status is not None:
        stmt = stmt.where(DispatchRecord.status == filters.status)
    if filters.date_from is not None:
        stmt = stmt.where(DispatchRecord.dispatch_date >= filters.date_from)
    if filters.date_to is not None:
        stmt = stmt.where(DispatchRecord.dispatch_date <= filters.date_to)
    if filters.auto_generated is not None:
        stmt = stmt.where(DispatchRecord.auto_generated.is_(filters.auto_generated))
    return db.execute(stmt).scalars().all()


def order_fulfillment(db: Session, order_id: int) -> Fulfillment:
    order = get_order(db, order_id)
    return compute(order, _order_dispatches(db, order.id))


def _require_transition(record: DispatchRecord, target: DispatchStatus) -> None:
    allowed = DISPATCH_TRANSITIONS.get(record.status, set())
    if target not in allowed:
        raise InvalidStateError(
            f"Dispatch {record.human_number} cannot move from {record.status.value} to {target.value}",
            details={"dispatch_id": record.id, "status": record.status, "target": target},
        )


def approve_dispatch(
    db: Session,
    dispatch_id: int,
    *,
    approver: str,
    remarks: str | None = None,
) -> DispatchRecord:
    order_id = get_dispatch(db, dispatch_id).order_id
    with locked_transaction(db, order_ids=[order_id]):
        record = get_dispatch(db, dispatch_id, for_update=True)
        _require_transition(record, DispatchStatus.approved)
        record.status = DispatchStatus.approved
        record.approved_by = approver
        record.approved_at = utcnow()
        record.approved_quantity = q2(sum((q2(ln.dispatched_quantity) for ln in record.lines), ZERO))
        record.approval_remarks = remarks
        db.flush()
        audit.record(db, action="dispatch.approved", entity_type="dispatch", entity_id=record.id, actor=approver)
    return record


def execute_dispatch(db: Session, dispatch_id: int, *, actor: str | None = None) -> DispatchResult:
    """Execute an approved (typically continuation) record: its quantities leave the ledger now."""
    record = get_dispatch(db, dispatch_id)
    specs = [ProductSpec.from_row(line) for line in record.lines]

    with locked_transaction(db, order_ids=[record.order_id], specs=specs):
        record = get_dispatch(db, dispatch_id, for_update=True)
        _require_transition(record, DispatchStatus.executed)

        order = get_order(db, record.order_id, for_update=True)
        ensure_dispatchable(order)

        history = _order_dispatches(db, order.id)
        others = [r for r in history if r.id != record.id]
        before = compute(order, others)

        requested: dict[ProductSpec, Decimal] = {}
        for line in record.lines:
            spec = ProductSpec.from_row(line)
            requested[spec] = requested.get(spec, ZERO) + q2(line.dispatched_quantity)
        _check_within_order(requested, before)

        ledger = StockLedger(db)
        _check_stock(ledger, requested)
        changes = [
            ledger.decrement(
                spec,
                qty,
                reference=record.human_number,
                remarks=f"{record.human_number} dispatch - {qty} of {spec}",
            )
            for spec, qty in sorted(requested.items())
        ]

        record.status = DispatchStatus.executed
        record.dispatch_date = date.today()
        db.flush()

        after, continuation, superseded = _reconcile(db, order, record, history, actor=actor)
        audit.record(
            db,
            action="dispatch.executed",
            entity_type="dispatch",
            entity_id=record.id,
            actor=actor,
            meta={"human_number": record.human_number, "order_id": order.id},
        )

    events.publish(events.DispatchExecuted(dispatch_id=record.id, human_number=record.human_number, order_id=order.id))
    return DispatchResult(
        dispatch=record,
        continuation=continuation,
        fulfillment=after,
        stock_changes=changes,
        superseded=superseded,
    )


def _advance(db: Session, dispatch_id: int, target: DispatchStatus, *, actor: str | None) -> DispatchRecord:
    order_id = get_dispatch(db, dispatch_id).order_id
    with locked_transaction(db, order_ids=[order_id]):
        record = get_dispatch(db, dispatch_id, for_update=True)
        _require_transition(record, target)
        record.status = target
        db.flush()

        order = get_order(db, record.order_id, for_update=True)
        history = _order_dispatches(db, order.id)
        _write_back_status(db, order, compute(order, history), history, actor=actor)
        audit.record(
            db,
            action=f"dispatch.{target.value}",
            entity_type="dispatch",
            entity_id=record.id,
            actor=actor,
        )
    return record


def mark_dispatched(db: Session, dispatch_id: int, *, actor: str | None = None) -> DispatchRecord:
    return _advance(db, dispatch_id, DispatchStatus.dispatched, actor=actor)


def mark_delivered(db: Session, dispatch_id: int, *, actor: str | None = None) -> DispatchRecord:
    return _advance(db, dispatch_id, DispatchStatus.delivered, actor=actor)


def cancel_dispatch(
    db: Session,
    dispatch_id: int,
    *,
    reason: str | None = None,
    actor: str | None = None,
) -> DispatchRecord:
    """
    Cancel a record. Its quantities stop counting as dispatched, but the
    stock it consumed is NOT returned to the ledger: restoring stock is a
    separate, explicit ``StockLedger.increment``.
    """
    order_id = get_dispatch(db, dispatch_id).order_id
    with locked_transaction(db, order_ids=[order_id]):
        record = get_dispatch(db, dispatch_id, for_update=True)
        if record.status in TERMINAL_DISPATCH_STATUSES:
            raise InvalidStateError(
                f"Dispatch {record.human_number} is {record.status.value} and cannot be cancelled",
                details={"dispatch_id": record.id, "status": record.status},
            )
        consumed_stock = counts_as_dispatched(record)
        record.status = DispatchStatus.cancelled
        record.cancelled_at = utcnow()
        record.cancel_reason = reason
        db.flush()

        order = get_order(db, record.order_id, for_update=True)
        history = _order_dispatches(db, order.id)
        _write_back_status(db, order, compute(order, history), history, actor=actor)
        audit.record(
            db,
            action="dispatch.cancelled",
            entity_type="dispatch",
            entity_id=record.id,
            actor=actor,
            meta={"reason": reason, "stock_restored": False},
        )

    if consumed_stock:
        log_json(
            logger,
            {
                "event": "dispatch_cancelled_stock_not_restored",
                "dispatch": record.human_number,
                "order_id": record.order_id,
                "lines": {ProductSpec.from_row(ln).key: q2(ln.dispatched_quantity) for ln in record.lines},
            },
            level=logging.WARNING,
        )
    return record
