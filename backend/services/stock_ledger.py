"""
Stock ledger.

One StockEntry per product spec, shared by every order. All mutators run
inside the spec's critical section and take a row lock, so two dispatches
against the same spec can never both pass the availability check on a stale
quantity. The ``version`` column adds optimistic detection on backends where
FOR UPDATE is a no-op (SQLite): a stale write fails with ConflictError.

The ledger never commits. Callers wrap their work in
``locked_transaction(db, specs=[...])`` so the spec lock is held until the
transaction is committed.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from decimal import Decimal

from sqlalchemy import func, select
from sqlalchemy.orm import Session
from sqlalchemy.orm.exc import StaleDataError

from backend.app.core import config
from backend.app.core.error_catalog import (
    ConflictError,
    InsufficientStockError,
    NotFoundError,
    ValidationError,
)
from backend.app.core.logging import log_json
from backend.app.db.models.core_types import (
    ProductType,
    StockStatus,
    StockUnit,
    TransactionType,
)
from backend.app.db.models.models_v1 import StockEntry, StockTransaction, utcnow
from backend.services.locking import KeyedLocks, spec_locks
from backend.services.specs import ProductSpec, ZERO, q2

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class StockChange:
    spec: ProductSpec
    transaction_type: TransactionType
    old_quantity: Decimal
    new_quantity: Decimal
    reference: str | None

    @property
    def change(self) -> Decimal:
        return self.new_quantity - self.old_quantity


def stock_status(entry: StockEntry) -> StockStatus:
    available = q2(entry.available_quantity)
    if available <= q2(entry.min_level):
        return StockStatus.low
    if available >= q2(entry.max_level) * config.HIGH_STOCK_WATERMARK:
        return StockStatus.high
    return StockStatus.normal


class StockLedger:
    def __init__(self, db: Session, locks: KeyedLocks = spec_locks):
        self.db = db
        self.locks = locks

    # ---------- READS ----------
    def _find(self, spec: ProductSpec, *, for_update: bool = False) -> StockEntry | None:
        stmt = (
            select(StockEntry)
            .where(StockEntry.product_type == spec.product_type)
            .where(StockEntry.size == spec.size)
            .where(StockEntry.thickness == spec.thickness)
            .execution_options(populate_existing=True)
        )
        if for_update:
            stmt = stmt.with_for_update()
        return self.db.execute(stmt).scalar_one_or_none()

    def get_available(self, spec: ProductSpec) -> Decimal:
        """Available quantity; unknown or inactive specs have nothing available."""
        entry = self._find(spec)
        if entry is None or not entry.is_active:
            return ZERO
        return q2(entry.available_quantity)

    def get_entry(self, spec: ProductSpec) -> StockEntry:
        entry = self._find(spec)
        if entry is None:
            raise NotFoundError(f"No stock entry for {spec}", details={"spec": spec.as_dict()})
        return entry

    def get_entry_by_id(self, entry_id: int) -> StockEntry:
        entry = self.db.get(StockEntry, entry_id)
        if entry is None:
            raise NotFoundError("Stock entry not found", details={"stock_entry_id": entry_id})
        return entry

    def list_entries(
        self,
        *,
        product_type: ProductType | None = None,
        status: StockStatus | None = None,
        include_inactive: bool = False,
    ) -> list[StockEntry]:
        stmt = select(StockEntry).order_by(
            StockEntry.product_type, StockEntry.size, StockEntry.thickness
        )
        if product_type is not None:
            stmt = stmt.where(StockEntry.product_type == product_type)
        if not include_inactive:
            stmt = stmt.where(StockEntry.is_active.is_(True))
        entries = self.db.execute(stmt).scalars().all()
        if status is not None:
            entries = [e for e in entries if stock_status(e) == status]
        return entries

    def transactions(self, entry_id: int) -> list[StockTransaction]:
        self.get_entry_by_id(entry_id)
        return (
            self.db.execute(
                select(StockTransaction)
                .where(StockTransaction.stock_entry_id == entry_id)
                .order_by(StockTransaction.id.desc())
            )
            .scalars()
            .all()
        )

    def summary(self) -> dict:
        entries = self.list_entries()
        by_type = (
            self.db.execute(
                select(
                    StockEntry.product_type,
                    func.count(StockEntry.id),
                    func.coalesce(func.sum(StockEntry.available_quantity), 0),
                )
                .where(StockEntry.is_active.is_(True))
                .group_by(StockEntry.product_type)
            )
            .all()
        )
        return {
            "total_items": len(entries),
            "total_stock": sum((q2(e.available_quantity) for e in entries), ZERO),
            "total_value": sum((q2(q2(e.available_quantity) * q2(e.rate)) for e in entries), ZERO),
            "low_stock_items": sum(1 for e in entries if stock_status(e) == StockStatus.low),
            "high_stock_items": sum(1 for e in entries if stock_status(e) == StockStatus.high),
            "by_type": [
                {"product_type": ptype, "count": int(count), "total_stock": q2(total)}
                for ptype, count, total in by_type
            ],
        }

    # ---------- WRITES ----------
    def create_entry(
        self,
        spec: ProductSpec,
        *,
        available_quantity=ZERO,
        min_level=ZERO,
        max_level=Decimal("10000"),
        rate=Decimal("45000"),
        unit: StockUnit = StockUnit.tons,
        hsn_code: str = "7306",
        reference: str | None = None,
    ) -> StockEntry:
        opening = q2(available_quantity)
        if opening < ZERO:
            raise ValidationError("Available quantity cannot be negative")
        if q2(min_level) < ZERO or q2(max_level) < ZERO:
            raise ValidationError("Stock levels cannot be negative")

        with self.locks.hold(spec.key):
            if self._find(spec, for_update=True) is not None:
                raise ConflictError(
                    "Stock entry already exists for this product specification",
                    details={"spec": spec.as_dict()},
                )
            entry = StockEntry(
                product_type=spec.product_type,
                size=spec.size,
                thickness=spec.thickness,
                available_quantity=ZERO,
                min_level=q2(min_level),
                max_level=q2(max_level),
                rate=q2(rate),
                unit=unit,
                hsn_code=hsn_code,
                is_active=True,
            )
            self.db.add(entry)
            self._flush()
            if opening > ZERO:
                self._apply(
                    entry,
                    spec,
                    TransactionType.adjustment,
                    quantity=opening,
                    new_quantity=opening,
                    reference=reference,
                    remarks="Opening balance",
                )
            return entry

    def decrement(
        self,
        spec: ProductSpec,
        quantity,
        *,
        reference: str | None = None,
        remarks: str | None = None,
    ) -> StockChange:
        qty = self._positive(quantity)
        with self.locks.hold(spec.key):
            entry = self._find(spec, for_update=True)
            available = q2(entry.available_quantity) if entry is not None and entry.is_active else ZERO
            if entry is None or qty > available:
                raise InsufficientStockError(spec, qty, available)
            return self._apply(
                entry,
                spec,
                TransactionType.stock_out,
                quantity=qty,
                new_quantity=available - qty,
                reference=reference,
                remarks=remarks,
            )

    def increment(
        self,
        spec: ProductSpec,
        quantity,
        *,
        reference: str | None = None,
        remarks: str | None = None,
    ) -> StockChange:
        """Compensating receipt. Never triggered by dispatch cancellation."""
        qty = self._positive(quantity)
        with self.locks.hold(spec.key):
            entry = self._require_for_update(spec)
            return self._apply(
                entry,
                spec,
                TransactionType.stock_in,
                quantity=qty,
                new_quantity=q2(entry.available_quantity) + qty,
                reference=reference,
                remarks=remarks,
            )

    def adjust(
        self,
        spec: ProductSpec,
        new_quantity,
        *,
        reference: str | None = None,
        remarks: str | None = None,
    ) -> StockChange:
        target = q2(new_quantity)
        if target < ZERO:
            raise ValidationError("Adjusted quantity cannot be negative")
        with self.locks.hold(spec.key):
            entry = self._require_for_update(spec)
            return self._apply(
                entry,
                spec,
                TransactionType.adjustment,
                quantity=target,
                new_quantity=target,
                reference=reference,
                remarks=remarks,
            )

    # ---------- Helpers ----------
    @staticmethod
    def _positive(quantity) -> Decimal:
        qty = q2(quantity)
        if qty <= ZERO:
            raise ValidationError("Quantity must be greater than zero", details={"quantity": format(qty, "f")})
        return qty

    def _require_for_update(self, spec: ProductSpec) -> StockEntry:
        entry = self._find(spec, for_update=True)
        if entry is None:
            raise NotFoundError(f"No stock entry for {spec}", details={"spec": spec.as_dict()})
        return entry

    def _flush(self) -> None:
        try:
            self.db.flush()
        except StaleDataError as exc:
            raise ConflictError(
                "Stock entry was modified concurrently",
                details={"type": exc.__class__.__name__},
            ) from exc

    def _apply(
        self,
        entry: StockEntry,
        spec: ProductSpec,
        txn_type: TransactionType,
        *,
        quantity: Decimal,
        new_quantity: Decimal,
        reference: str | None,
        remarks: str | None,
    ) -> StockChange:
        old_quantity = q2(entry.available_quantity)
        now = utcnow()

        entry.available_quantity = new_quantity
        entry.last_transaction_type = txn_type
        entry.last_transaction_quantity = quantity
        entry.last_transaction_at = now
        entry.last_transaction_reference = reference
        entry.last_transaction_remarks = remarks or ""

        self.db.add(
            StockTransaction(
                stock_entry_id=entry.id,
                type=txn_type,
                quantity=quantity,
                old_quantity=old_quantity,
                new_quantity=new_quantity,
                reference=reference,
                remarks=remarks or "",
                happened_at=now,
            )
        )
        self._flush()

        log_json(
            logger,
            {
                "event": "stock_moved",
                "spec": spec.key,
                "type": txn_type.value,
                "quantity": quantity,
                "old_quantity": old_quantity,
                "new_quantity": new_quantity,
                "reference": reference,
            },
        )
        return StockChange(
            spec=spec,
            transaction_type=txn_type,
            old_quantity=old_quantity,
            new_quantity=new_quantity,
            reference=reference,
        )
