"""
Order source.

Orders are created once (approval pending) and approved or rejected by an
external approver. Once dispatching has begun the order status is derived by
the dispatch engine and written back through ``update_order_status``.

None of these functions commit; callers run them inside
``locked_transaction``.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from decimal import Decimal
from typing import Iterable

from sqlalchemy import select
from sqlalchemy.orm import Session

from backend.app.core import config
from backend.app.core.error_catalog import InvalidStateError, NotFoundError, ValidationError
from backend.app.core.logging import log_json
from backend.app.db.models.core_types import ApprovalStatus, OrderStatus
from backend.app.db.models.models_v1 import Order, OrderLine, utcnow
from backend.services import audit
from backend.services.numbering import next_number
from backend.services.specs import ProductSpec, ZERO, q2

logger = logging.getLogger(__name__)

# Orders that can no longer receive dispatches
CLOSED_ORDER_STATUSES = {
    OrderStatus.dispatched,
    OrderStatus.completed,
    OrderStatus.cancelled,
}

CANCELLABLE_ORDER_STATUSES = {
    OrderStatus.pending,
    OrderStatus.approved,
    OrderStatus.partial_dispatch,
}


@dataclass(frozen=True)
class OrderLineInput:
    spec: ProductSpec
    ordered_quantity: Decimal
    rate: Decimal
    tax_rate: Decimal | None = None


def create_order(
    db: Session,
    *,
    lines: Iterable[OrderLineInput],
    customer_name: str | None = None,
    order_number: str | None = None,
) -> Order:
    lines = list(lines)
    if not lines:
        raise ValidationError("At least one item is required")

    for ln in lines:
        if q2(ln.ordered_quantity) <= ZERO:
            raise ValidationError(
                f"Ordered quantity for {ln.spec} must be greater than zero",
                details={"spec": ln.spec.as_dict()},
            )
        if q2(ln.rate) < ZERO:
            raise ValidationError(f"Rate for {ln.spec} cannot be negative", details={"spec": ln.spec.as_dict()})

    if order_number:
        exists = db.execute(select(Order.id).where(Order.order_number == order_number)).scalar_one_or_none()
        if exists:
            raise ValidationError("Order number already exists", details={"order_number": order_number})
    else:
        order_number = next_number(db, config.ORDER_NUMBER_PREFIX)

    order = Order(
        order_number=order_number,
        customer_name=customer_name,
        approval_status=ApprovalStatus.pending,
        status=OrderStatus.pending,
    )
    for ln in lines:
        order.lines.append(
            OrderLine(
                product_type=ln.spec.product_type,
                size=ln.spec.size,
                thickness=ln.spec.thickness,
                ordered_quantity=q2(ln.ordered_quantity),
                rate=q2(ln.rate),
                tax_rate=q2(config.DEFAULT_TAX_RATE if ln.tax_rate is None else ln.tax_rate),
            )
        )
    db.add(order)
    db.flush()

    audit.record(db, action="order.created", entity_type="order", entity_id=order.id, meta={"order_number": order_number})
    return order


def get_order(db: Session, order_id: int, *, for_update: bool = False) -> Order:
    stmt = select(Order).where(Order.id == order_id).execution_options(populate_existing=True)
    if for_update:
        stmt = stmt.with_for_update()
    order = db.execute(stmt).scalar_one_or_none()
    if not order:
        raise NotFoundError("Order not found", details={"order_id": order_id})
    return order


def list_orders(
    db: Session,
    *,
    status: OrderStatus | None = None,
    approval_status: ApprovalStatus | None = None,
) -> list[Order]:
    stmt = select(Order).order_by(Order.id.desc())
    if status is not None:
        stmt = stmt.where(Order.status == status)
    if approval_status is not None:
        stmt = stmt.where(Order.approval_status == approval_status)
    return db.execute(stmt).scalars().all()


def update_order_status(db: Session, order: Order, status: OrderStatus, *, actor: str | None = None) -> Order:
    """Callback used by the dispatch engine to write back the derived status."""
    if order.status == status:
        return order
    previous = order.status
    order.status = status
    db.flush()
    audit.record(
        db,
        action="order.status_changed",
        entity_type="order",
        entity_id=order.id,
        actor=actor,
        meta={"from": previous, "to": status},
    )
    log_json(logger, {"event": "order_status_changed", "order_id": order.id, "from": previous, "to": status})
    return order


def _require_pending_approval(order: Order) -> None:
    if order.approval_status != ApprovalStatus.pending:
        raise InvalidStateError(
            f"Order {order.order_number} is already {order.approval_status.value}",
            details={"order_id": order.id, "approval_status": order.approval_status},
        )
    if order.status == OrderStatus.cancelled:
        raise InvalidStateError("Order is cancelled", details={"order_id": order.id})


def approve_order(db: Session, order_id: int, *, approver: str) -> Order:
    order = get_order(db, order_id, for_update=True)
    _require_pending_approval(order)

    order.approval_status = ApprovalStatus.approved
    order.approved_by = approver
    order.approved_at = utcnow()
    # a dispatch may already have happened while approval was pending
    if order.status == OrderStatus.pending:
        order.status = OrderStatus.approved
    db.flush()
    audit.record(db, action="order.approved", entity_type="order", entity_id=order.id, actor=approver)
    return order


def reject_order(db: Session, order_id: int, *, approver: str) -> Order:
    order = get_order(db, order_id, for_update=True)
    _require_pending_approval(order)
    if order.status != OrderStatus.pending:
        raise InvalidStateError(
            "Cannot reject an order that has already been dispatched against",
            details={"order_id": order.id, "status": order.status},
        )

    order.approval_status = ApprovalStatus.rejected
    order.approved_by = approver
    order.approved_at = utcnow()
    db.flush()
    audit.record(db, action="order.rejected", entity_type="order", entity_id=order.id, actor=approver)
    return order


def cancel_order(db: Session, order_id: int, *, actor: str | None = None) -> Order:
    order = get_order(db, order_id, for_update=True)
    if order.approval_status == ApprovalStatus.rejected or order.status not in CANCELLABLE_ORDER_STATUSES:
        raise InvalidStateError(
            f"Order {order.order_number} cannot be cancelled",
            details={"order_id": order.id, "status": order.status},
        )
    previous = order.status
    order.status = OrderStatus.cancelled
    db.flush()
    audit.record(
        db,
        action="order.cancelled",
        entity_type="order",
        entity_id=order.id,
        actor=actor,
        meta={"from": previous},
    )
    return order


def ensure_dispatchable(order: Order) -> None:
    if order.approval_status == ApprovalStatus.rejected:
        raise InvalidStateError(
            f"Order {order.order_number} was rejected",
            details={"order_id": order.id, "approval_status": order.approval_status},
        )
    if order.status in CLOSED_ORDER_STATUSES:
        raise InvalidStateError(
            f"Order {order.order_number} is {order.status.value}",
            details={"order_id": order.id, "status": order.status},
        )
