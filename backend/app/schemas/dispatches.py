from __future__ import annotations

from datetime import date, datetime
from decimal import Decimal

from pydantic import BaseModel

from backend.app.db.models.core_types import DispatchStatus, OrderStatus, ProductType
from backend.app.schemas.orders import FulfillmentLineRead


class DispatchLineRead(BaseModel):
    product_type: ProductType
    size: str
    thickness: Decimal
    ordered_quantity: Decimal
    dispatched_quantity: Decimal
    remaining_quantity: Decimal
    rate: Decimal
    tax_rate: Decimal
    total: Decimal

    class Config:
        from_attributes = True


class DispatchRead(BaseModel):
    id: int
    human_number: str
    order_id: int
    parent_dispatch_id: int | None = None
    status: DispatchStatus
    auto_generated: bool
    dispatch_date: date
    remarks: str | None = None

    subtotal: Decimal
    tax_total: Decimal
    grand_total: Decimal

    approved_by: str | None = None
    approved_at: datetime | None = None
    approved_quantity: Decimal | None = None
    approval_remarks: str | None = None

    cancelled_at: datetime | None = None
    cancel_reason: str | None = None

    created_at: datetime
    lines: list[DispatchLineRead] = []

    class Config:
        from_attributes = True


class DispatchResultRead(BaseModel):
    dispatch: DispatchRead
    continuation: DispatchRead | None = None
    superseded: list[str] = []
    order_status: OrderStatus
    fulfillment: list[FulfillmentLineRead]
