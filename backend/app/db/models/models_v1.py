from __future__ import annotations

from datetime import date, datetime, timezone
from decimal import Decimal

from sqlalchemy import (
    String,
    Integer,
    BigInteger,
    DateTime,
    Date,
    Boolean,
    ForeignKey,
    Numeric,
    Text,
    Enum,
    UniqueConstraint,
    Index,
    CheckConstraint,
)
from sqlalchemy.orm import Mapped, mapped_column, relationship

from backend.app.db.base import Base
from backend.app.db.models.core_types import (
    ProductType,
    StockUnit,
    TransactionType,
    ApprovalStatus,
    OrderStatus,
    DispatchStatus,
)

# Quantities are tons with two decimals; money uses the same precision
QTY = Numeric(14, 2)
MONEY = Numeric(14, 2)
PK = BigInteger().with_variant(Integer, "sqlite")


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def _enum(enum_cls, name: str) -> Enum:
    # stored as VARCHAR so one migration runs on both PostgreSQL and SQLite
    return Enum(
        enum_cls,
        name=name,
        native_enum=False,
        length=32,
        values_callable=lambda e: [m.value for m in e],
    )


# ---------- ORDERS ----------
class Order(Base):
    __tablename__ = "orders"
    id: Mapped[int] = mapped_column(PK, primary_key=True)
    order_number: Mapped[str] = mapped_column(String(64), unique=True, nullable=False)
    customer_name: Mapped[str | None] = mapped_column(String(255))

    approval_status: Mapped[ApprovalStatus] = mapped_column(
        _enum(ApprovalStatus, "approval_status"),
        default=ApprovalStatus.pending,
        nullable=False,
    )
    status: Mapped[OrderStatus] = mapped_column(
        _enum(OrderStatus, "order_status"),
        default=OrderStatus.pending,
        nullable=False,
    )
    approved_by: Mapped[str | None] = mapped_column(String(128))
    approved_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True))

    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=utcnow, nullable=False)
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        default=utcnow,
        onupdate=utcnow,
        nullable=False,
    )

    lines: Mapped[list["OrderLine"]] = relationship(
        back_populates="order",
        cascade="all, delete-orphan",
        order_by="OrderLine.id",
    )
    dispatches: Mapped[list["DispatchRecord"]] = relationship(
        back_populates="order",
        order_by="DispatchRecord.id",
    )

    __table_args__ = (Index("ix_orders_status", "status"),)


class OrderLine(Base):
    __tablename__ = "order_lines"
    id: Mapped[int] = mapped_column(PK, primary_key=True)
    order_id: Mapped[int] = mapped_column(ForeignKey("orders.id", ondelete="CASCADE"), nullable=False, index=True)

    product_type: Mapped[ProductType] = mapped_column(_enum(ProductType, "product_type"), nullable=False)
    size: Mapped[str] = mapped_column(String(50), nullable=False)
    thickness: Mapped[Decimal] = mapped_column(Numeric(5, 2), nullable=False)

    ordered_quantity: Mapped[Decimal] = mapped_column(QTY, nullable=False)
    rate: Mapped[Decimal] = mapped_column(MONEY, nullable=False)
    tax_rate: Mapped[Decimal] = mapped_column(Numeric(5, 2), nullable=False)

    order: Mapped[Order] = relationship(back_populates="lines")

    __table_args__ = (
        CheckConstraint("ordered_quantity > 0", name="ck_order_line_qty_pos"),
        CheckConstraint("rate >= 0", name="ck_order_line_rate_nonneg"),
        CheckConstraint("tax_rate >= 0", name="ck_order_line_tax_nonneg"),
    )


# ---------- DISPATCH ----------
class DispatchRecord(Base):
    __tablename__ = "dispatch_records"
    id: Mapped[int] = mapped_column(PK, primary_key=True)
    human_number: Mapped[str] = mapped_column(String(64), nullable=False)
    order_id: Mapped[int] = mapped_column(ForeignKey("orders.id", ondelete="RESTRICT"), nullable=False, index=True)
    parent_dispatch_id: Mapped[int | None] = mapped_column(ForeignKey("dispatch_records.id", ondelete="SET NULL"))

    status: Mapped[DispatchStatus] = mapped_column(
        _enum(DispatchStatus, "dispatch_status"),
        default=DispatchStatus.pending,
        nullable=False,
    )
    auto_generated: Mapped[bool] = mapped_column(Boolean, default=False, nullable=False)
    dispatch_date: Mapped[date] = mapped_column(Date, default=date.today, nullable=False)
    remarks: Mapped[str | None] = mapped_column(Text)

    subtotal: Mapped[Decimal] = mapped_column(MONEY, default=Decimal("0.00"), nullable=False)
    tax_total: Mapped[Decimal] = mapped_column(MONEY, default=Decimal("0.00"), nullable=False)
    grand_total: Mapped[Decimal] = mapped_column(MONEY, default=Decimal("0.00"), nullable=False)

    approved_by: Mapped[str | None] = mapped_column(String(128))
    approved_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True))
    approved_quantity: Mapped[Decimal] = mapped_column(QTY, default=Decimal("0.00"), nullable=False)
    approval_remarks: Mapped[str | None] = mapped_column(String(255))

    cancelled_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True))
    cancel_reason: Mapped[str | None] = mapped_column(String(255))

    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=utcnow, nullable=False)
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        default=utcnow,
        onupdate=utcnow,
        nullable=False,
    )

    order: Mapped[Order] = relationship(back_populates="dispatches")
    lines: Mapped[list["DispatchLine"]] = relationship(
        back_populates="dispatch",
        cascade="all, delete-orphan",
        order_by="DispatchLine.id",
    )

    __table_args__ = (
        UniqueConstraint("human_number", name="uq_dispatch_human_number"),
        Index("ix_dispatch_order_created", "order_id", "created_at"),
        Index("ix_dispatch_status", "status"),
    )


class DispatchLine(Base):
    __tablename__ = "dispatch_lines"
    id: Mapped[int] = mapped_column(PK, primary_key=True)
    dispatch_id: Mapped[int] = mapped_column(ForeignKey("dispatch_records.id", ondelete="CASCADE"), nullable=False, index=True)

    product_type: Mapped[ProductType] = mapped_column(_enum(ProductType, "product_type"), nullable=False)
    size: Mapped[str] = mapped_column(String(50), nullable=False)
    thickness: Mapped[Decimal] = mapped_column(Numeric(5, 2), nullable=False)

    ordered_quantity: Mapped[Decimal] = mapped_column(QTY, nullable=False)
    dispatched_quantity: Mapped[Decimal] = mapped_column(QTY, nullable=False)
    remaining_quantity: Mapped[Decimal] = mapped_column(QTY, nullable=False)
    rate: Mapped[Decimal] = mapped_column(MONEY, nullable=False)
    tax_rate: Mapped[Decimal] = mapped_column(Numeric(5, 2), nullable=False)
    total: Mapped[Decimal] = mapped_column(MONEY, nullable=False)

    dispatch: Mapped[DispatchRecord] = relationship(back_populates="lines")

    __table_args__ = (
        CheckConstraint("dispatched_quantity > 0", name="ck_dispatch_line_qty_pos"),
        CheckConstraint("remaining_quantity >= 0", name="ck_dispatch_line_remaining_nonneg"),
        CheckConstraint("total >= 0", name="ck_dispatch_line_total_nonneg"),
    )


class DocumentSequence(Base):
    __tablename__ = "document_sequences"
    prefix: Mapped[str] = mapped_column(String(16), primary_key=True)
    year: Mapped[int] = mapped_column(Integer, primary_key=True)
    last_value: Mapped[int] = mapped_column(Integer, default=0, nullable=False)
    version: Mapped[int] = mapped_column(Integer, default=1, nullable=False)

    __mapper_args__ = {"version_id_col": version}


# ---------- INVENTORY ----------
class StockEntry(Base):
    __tablename__ = "stock_entries"
    id: Mapped[int] = mapped_column(PK, primary_key=True)

    product_type: Mapped[ProductType] = mapped_column(_enum(ProductType, "product_type"), nullable=False)
    size: Mapped[str] = mapped_column(String(50), nullable=False)
    thickness: Mapped[Decimal] = mapped_column(Numeric(5, 2), nullable=False)

    available_quantity: Mapped[Decimal] = mapped_column(QTY, default=Decimal("0.00"), nullable=False)
    min_level: Mapped[Decimal] = mapped_column(QTY, default=Decimal("0.00"), nullable=False)
    max_level: Mapped[Decimal] = mapped_column(QTY, default=Decimal("10000.00"), nullable=False)
    rate: Mapped[Decimal] = mapped_column(MONEY, default=Decimal("45000.00"), nullable=False)
    unit: Mapped[StockUnit] = mapped_column(
        _enum(StockUnit, "stock_unit"),
        default=StockUnit.tons,
        nullable=False,
    )
    hsn_code: Mapped[str] = mapped_column(String(16), default="7306", nullable=False)
    is_active: Mapped[bool] = mapped_column(Boolean, default=True, nullable=False)

    last_transaction_type: Mapped[TransactionType | None] = mapped_column(
        _enum(TransactionType, "transaction_type")
    )
    last_transaction_quantity: Mapped[Decimal | None] = mapped_column(QTY)
    last_transaction_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True))
    last_transaction_reference: Mapped[str | None] = mapped_column(String(128))
    last_transaction_remarks: Mapped[str | None] = mapped_column(String(255))

    version: Mapped[int] = mapped_column(Integer, default=1, nullable=False)
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        default=utcnow,
        onupdate=utcnow,
        nullable=False,
    )

    transactions: Mapped[list["StockTransaction"]] = relationship(
        back_populates="entry",
        order_by="StockTransaction.id",
    )

    __mapper_args__ = {"version_id_col": version}
    __table_args__ = (
        UniqueConstraint("product_type", "size", "thickness", name="uq_stock_entry_spec"),
        CheckConstraint("available_quantity >= 0", name="ck_stock_available_nonneg"),
        CheckConstraint("min_level >= 0", name="ck_stock_min_level_nonneg"),
        CheckConstraint("max_level >= 0", name="ck_stock_max_level_nonneg"),
    )

    @property
    def last_transaction(self) -> dict | None:
        if self.last_transaction_type is None:
            return None
        return {
            "type": self.last_transaction_type,
            "quantity": self.last_transaction_quantity,
            "timestamp": self.last_transaction_at,
            "reference": self.last_transaction_reference,
            "remarks": self.last_transaction_remarks,
        }


class StockTransaction(Base):
    __tablename__ = "stock_transactions"
    id: Mapped[int] = mapped_column(PK, primary_key=True)
    stock_entry_id: Mapped[int] = mapped_column(
        ForeignKey("stock_entries.id", ondelete="RESTRICT"),
        nullable=False,
        index=True,
    )
    type: Mapped[TransactionType] = mapped_column(
        _enum(TransactionType, "transaction_type"),
        nullable=False,
    )
    quantity: Mapped[Decimal] = mapped_column(QTY, nullable=False)
    old_quantity: Mapped[Decimal] = mapped_column(QTY, nullable=False)
    new_quantity: Mapped[Decimal] = mapped_column(QTY, nullable=False)
    reference: Mapped[str | None] = mapped_column(String(128))
    remarks: Mapped[str | None] = mapped_column(String(255))
    happened_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=utcnow, nullable=False)

    entry: Mapped[StockEntry] = relationship(back_populates="transactions")

    __table_args__ = (
        CheckConstraint("quantity >= 0", name="ck_stock_txn_qty_nonneg"),
        CheckConstraint("new_quantity >= 0", name="ck_stock_txn_new_nonneg"),
        Index("ix_stock_txn_entry_time", "stock_entry_id", "happened_at"),
    )


# ---------- AUDIT ----------
class AuditLog(Base):
    __tablename__ = "audit_log"
    id: Mapped[int] = mapped_column(PK, primary_key=True)
    actor: Mapped[str | None] = mapped_column(String(128))
    action: Mapped[str] = mapped_column(String(64), nullable=False)
    entity_type: Mapped[str] = mapped_column(String(64), nullable=False)
    entity_id: Mapped[str] = mapped_column(String(64), nullable=False)
    meta: Mapped[str | None] = mapped_column(Text)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=utcnow, nullable=False)

    __table_args__ = (Index("ix_audit_entity", "entity_type", "entity_id"),)
