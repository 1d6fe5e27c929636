from __future__ import annotations

from datetime import datetime
from decimal import Decimal

from pydantic import BaseModel

from backend.app.db.models.core_types import ApprovalStatus, OrderStatus, ProductType


class OrderLineRead(BaseModel):
    id: int
    product_type: ProductType
    size: str
    thickness: Decimal
    ordered_quantity: Decimal
    rate: Decimal
    tax_rate: Decimal

    class Config:
        from_attributes = True


class OrderRead(BaseModel):
    id: int
    order_number: str
    customer_name: str | None = None
    approval_status: ApprovalStatus
    status: OrderStatus
    approved_by: str | None = None
    approved_at: datetime | None = None
    created_at: datetime
    updated_at: datetime | None = None

    lines: list[OrderLineRead] = []

    class Config:
        from_attributes = True


class FulfillmentLineRead(BaseModel):
    product_type: ProductType
    size: str
    thickness: Decimal
    ordered: Decimal
    dispatched: Decimal
    remaining: Decimal  # always ordered - dispatched


class FulfillmentRead(BaseModel):
    order_id: int
    status: OrderStatus
    fully_dispatched: bool
    lines: list[FulfillmentLineRead]
