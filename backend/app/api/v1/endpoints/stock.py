from __future__ import annotations

from decimal import Decimal

from fastapi import APIRouter, Depends, Query
from pydantic import BaseModel, Field
from sqlalchemy.orm import Session

from backend.app.api.deps import get_db
from backend.app.db.models.core_types import ProductType, StockStatus, StockUnit
from backend.app.db.models.models_v1 import StockEntry
from backend.app.schemas.stock import (
    StockChangeRead,
    StockEntryRead,
    StockSummaryRead,
    StockTransactionRead,
)
from backend.services.locking import locked_transaction
from backend.services.specs import ProductSpec
from backend.services.stock_ledger import StockChange, StockLedger, stock_status

router = APIRouter(prefix="/stock")


class StockEntryCreate(BaseModel):
    product_type: ProductType
    size: str = Field(min_length=1, max_length=50)
    thickness: Decimal = Field(gt=0)
    available_quantity: Decimal = Field(default=Decimal("0"), ge=0)
    min_level: Decimal = Field(default=Decimal("0"), ge=0)
    max_level: Decimal = Field(default=Decimal("10000"), ge=0)
    rate: Decimal = Field(default=Decimal("45000"), ge=0)
    unit: StockUnit = StockUnit.tons
    hsn_code: str = Field(default="7306", max_length=16)


class StockIncrement(BaseModel):
    quantity: Decimal = Field(gt=0)
    reference: str | None = Field(default=None, max_length=128)
    remarks: str | None = Field(default=None, max_length=255)


class StockAdjust(BaseModel):
    new_quantity: Decimal = Field(ge=0)
    reference: str | None = Field(default=None, max_length=128)
    remarks: str | None = Field(default=None, max_length=255)


def entry_out(entry: StockEntry) -> StockEntryRead:
    return StockEntryRead.model_validate(entry).model_copy(update={"stock_status": stock_status(entry)})


def change_out(entry: StockEntry, change: StockChange) -> StockChangeRead:
    return StockChangeRead(
        entry=entry_out(entry),
        transaction_type=change.transaction_type,
        old_quantity=change.old_quantity,
        new_quantity=change.new_quantity,
        change=change.change,
    )


@router.get("", response_model=list[StockEntryRead])
def list_stock(
    product_type: ProductType | None = None,
    status: StockStatus | None = None,
    include_inactive: bool = False,
    db: Session = Depends(get_db),
):
    """
    Stock (READ ONLY)
    - one entry per product spec, shared by every order
    - stock_status is derived from min/max levels
    """
    entries = StockLedger(db).list_entries(
        product_type=product_type,
        status=status,
        include_inactive=include_inactive,
    )
    return [entry_out(e) for e in entries]


@router.get("/summary", response_model=StockSummaryRead)
def stock_summary(db: Session = Depends(get_db)):
    return StockLedger(db).summary()


@router.get("/lookup", response_model=StockEntryRead)
def lookup_stock(
    product_type: ProductType,
    size: str = Query(min_length=1, max_length=50),
    thickness: Decimal = Query(gt=0),
    db: Session = Depends(get_db),
):
    spec = ProductSpec.of(product_type, size, thickness)
    return entry_out(StockLedger(db).get_entry(spec))


@router.post("", response_model=StockEntryRead, status_code=201)
def create_stock_entry(payload: StockEntryCreate, db: Session = Depends(get_db)):
    spec = ProductSpec.of(payload.product_type, payload.size, payload.thickness)
    ledger = StockLedger(db)
    with locked_transaction(db, specs=[spec]):
        entry = ledger.create_entry(
            spec,
            available_quantity=payload.available_quantity,
            min_level=payload.min_level,
            max_level=payload.max_level,
            rate=payload.rate,
            unit=payload.unit,
            hsn_code=payload.hsn_code,
        )
    db.refresh(entry)
    return entry_out(entry)


@router.get("/{entry_id}/transactions", response_model=list[StockTransactionRead])
def stock_transactions(entry_id: int, db: Session = Depends(get_db)):
    return StockLedger(db).transactions(entry_id)


@router.post("/{entry_id}/increment", response_model=StockChangeRead)
def increment_stock(entry_id: int, payload: StockIncrement, db: Session = Depends(get_db)):
    """Compensating receipt, e.g. goods returned after a cancelled dispatch."""
    ledger = StockLedger(db)
    spec = ProductSpec.from_row(ledger.get_entry_by_id(entry_id))
    with locked_transaction(db, specs=[spec]):
        change = ledger.increment(spec, payload.quantity, reference=payload.reference, remarks=payload.remarks)
    return change_out(ledger.get_entry_by_id(entry_id), change)


@router.post("/{entry_id}/adjust", response_model=StockChangeRead)
def adjust_stock(entry_id: int, payload: StockAdjust, db: Session = Depends(get_db)):
    ledger = StockLedger(db)
    spec = ProductSpec.from_row(ledger.get_entry_by_id(entry_id))
    with locked_transaction(db, specs=[spec]):
        change = ledger.adjust(spec, payload.new_quantity, reference=payload.reference, remarks=payload.remarks)
    return change_out(ledger.get_entry_by_id(entry_id), change)
