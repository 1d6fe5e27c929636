from __future__ import annotations

from datetime import date
from decimal import Decimal

from fastapi import APIRouter, Depends
from pydantic import BaseModel, Field
from sqlalchemy.orm import Session

from backend.app.api.deps import get_db
from backend.app.db.models.core_types import ApprovalStatus, OrderStatus, ProductType
from backend.app.schemas.dispatches import DispatchRead, DispatchResultRead
from backend.app.schemas.orders import FulfillmentLineRead, FulfillmentRead, OrderRead
from backend.services import orders as order_service
from backend.services.dispatch import DispatchRequestLine, dispatch_order, order_fulfillment
from backend.services.fulfillment import Fulfillment, is_fully_dispatched
from backend.services.locking import locked_transaction
from backend.services.specs import ProductSpec

router = APIRouter(prefix="/orders")


class OrderLineCreate(BaseModel):
    product_type: ProductType
    size: str = Field(min_length=1, max_length=50)
    thickness: Decimal = Field(gt=0)
    ordered_quantity: Decimal = Field(gt=0)
    rate: Decimal = Field(ge=0)
    tax_rate: Decimal | None = Field(default=None, ge=0)


class OrderCreate(BaseModel):
    order_number: str | None = Field(default=None, min_length=1, max_length=64)
    customer_name: str | None = Field(default=None, max_length=200)
    lines: list[OrderLineCreate] = Field(min_length=1)


class ApprovalPayload(BaseModel):
    approver: str = Field(min_length=1, max_length=128)


class CancelPayload(BaseModel):
    actor: str | None = None


class DispatchLineCreate(BaseModel):
    product_type: ProductType
    size: str = Field(min_length=1, max_length=50)
    thickness: Decimal = Field(gt=0)
    quantity: Decimal = Field(gt=0)
    rate: Decimal | None = Field(default=None, ge=0)


class DispatchCreate(BaseModel):
    lines: list[DispatchLineCreate] = Field(min_length=1)
    remarks: str | None = Field(default=None, max_length=500)
    dispatch_date: date | None = None
    actor: str | None = None


def fulfillment_lines(fulfillment: Fulfillment) -> list[FulfillmentLineRead]:
    return [
        FulfillmentLineRead(
            product_type=line.spec.product_type,
            size=line.spec.size,
            thickness=line.spec.thickness,
            ordered=line.ordered,
            dispatched=line.dispatched,
            remaining=line.remaining,
        )
        for line in sorted(fulfillment.values(), key=lambda l: l.spec)
    ]


@router.get("", response_model=list[OrderRead])
def list_orders(
    status: OrderStatus | None = None,
    approval_status: ApprovalStatus | None = None,
    db: Session = Depends(get_db),
):
    return order_service.list_orders(db, status=status, approval_status=approval_status)


@router.get("/{order_id}", response_model=OrderRead)
def get_order(order_id: int, db: Session = Depends(get_db)):
    return order_service.get_order(db, order_id)


@router.post("", response_model=OrderRead, status_code=201)
def create_order(payload: OrderCreate, db: Session = Depends(get_db)):
    lines = [
        order_service.OrderLineInput(
            spec=ProductSpec.of(ln.product_type, ln.size, ln.thickness),
            ordered_quantity=ln.ordered_quantity,
            rate=ln.rate,
            tax_rate=ln.tax_rate,
        )
        for ln in payload.lines
    ]
    with locked_transaction(db):
        order = order_service.create_order(
            db,
            lines=lines,
            customer_name=payload.customer_name,
            order_number=payload.order_number,
        )
    db.refresh(order)
    return order


@router.post("/{order_id}/approve", response_model=OrderRead)
def approve_order(order_id: int, payload: ApprovalPayload, db: Session = Depends(get_db)):
    with locked_transaction(db, order_ids=[order_id]):
        order = order_service.approve_order(db, order_id, approver=payload.approver)
    db.refresh(order)
    return order


@router.post("/{order_id}/reject", response_model=OrderRead)
def reject_order(order_id: int, payload: ApprovalPayload, db: Session = Depends(get_db)):
    with locked_transaction(db, order_ids=[order_id]):
        order = order_service.reject_order(db, order_id, approver=payload.approver)
    db.refresh(order)
    return order


@router.post("/{order_id}/cancel", response_model=OrderRead)
def cancel_order(order_id: int, payload: CancelPayload | None = None, db: Session = Depends(get_db)):
    with locked_transaction(db, order_ids=[order_id]):
        order = order_service.cancel_order(db, order_id, actor=payload.actor if payload else None)
    db.refresh(order)
    return order


@router.get("/{order_id}/fulfillment", response_model=FulfillmentRead)
def get_fulfillment(order_id: int, db: Session = Depends(get_db)):
    fulfillment = order_fulfillment(db, order_id)
    order = order_service.get_order(db, order_id)
    return FulfillmentRead(
        order_id=order.id,
        status=order.status,
        fully_dispatched=is_fully_dispatched(fulfillment),
        lines=fulfillment_lines(fulfillment),
    )


@router.post("/{order_id}/dispatch", response_model=DispatchResultRead, status_code=201)
def create_dispatch(order_id: int, payload: DispatchCreate, db: Session = Depends(get_db)):
    """
    Dispatch against an order.

    - all-or-nothing: any spec short on stock rejects the whole request (409)
    - remaining quantities land on an auto-generated continuation record
    """
    requested = [
        DispatchRequestLine(
            spec=ProductSpec.of(ln.product_type, ln.size, ln.thickness),
            quantity=ln.quantity,
            rate=ln.rate,
        )
        for ln in payload.lines
    ]
    result = dispatch_order(
        db,
        order_id,
        requested,
        remarks=payload.remarks,
        dispatch_date=payload.dispatch_date,
        actor=payload.actor,
    )
    order = order_service.get_order(db, order_id)
    return DispatchResultRead(
        dispatch=DispatchRead.model_validate(result.dispatch),
        continuation=DispatchRead.model_validate(result.continuation) if result.continuation else None,
        superseded=[r.human_number for r in result.superseded],
        order_status=order.status,
        fulfillment=fulfillment_lines(result.fulfillment),
    )
