from __future__ import annotations

from datetime import datetime
from decimal import Decimal

from pydantic import BaseModel

from backend.app.db.models.core_types import ProductType, StockStatus, StockUnit, TransactionType


class StockEntryRead(BaseModel):
    id: int
    product_type: ProductType
    size: str
    thickness: Decimal

    available_quantity: Decimal
    min_level: Decimal
    max_level: Decimal
    rate: Decimal
    unit: StockUnit
    hsn_code: str
    is_active: bool

    stock_status: StockStatus | None = None  # derived from min/max levels, never stored
    last_transaction: dict | None = None
    updated_at: datetime | None = None

    class Config:
        from_attributes = True


class StockTransactionRead(BaseModel):
    id: int
    type: TransactionType
    quantity: Decimal
    old_quantity: Decimal
    new_quantity: Decimal
    reference: str | None = None
    remarks: str | None = None
    happened_at: datetime

    class Config:
        from_attributes = True


class StockChangeRead(BaseModel):
    entry: StockEntryRead
    transaction_type: TransactionType
    old_quantity: Decimal
    new_quantity: Decimal
    change: Decimal


class StockTypeSummary(BaseModel):
    product_type: ProductType
    count: int
    total_stock: Decimal


class StockSummaryRead(BaseModel):
    total_items: int
    total_stock: Decimal
    total_value: Decimal
    low_stock_items: int
    high_stock_items: int
    by_type: list[StockTypeSummary]
