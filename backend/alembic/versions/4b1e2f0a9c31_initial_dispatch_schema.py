"""initial dispatch schema

Revision ID: 4b1e2f0a9c31
Revises:
Create Date: 2026-10-19
"""

from __future__ import annotations

from typing import Sequence, Union

import sqlalchemy as sa
from alembic import op

# revision identifiers, used by Alembic.
revision: str = "4b1e2f0a9c31"
down_revision: Union[str, Sequence[str], None] = None
branch_labels: Union[str, Sequence[str], None] = None
depends_on: Union[str, Sequence[str], None] = None

PK = sa.BigInteger().with_variant(sa.Integer(), "sqlite")
QTY = sa.Numeric(14, 2)


def _enum(name: str, *values: str) -> sa.Enum:
    return sa.Enum(*values, name=name, native_enum=False, length=32)


PRODUCT_TYPE = (
    "square-tubes",
    "rectangular-tubes",
    "round-tubes",
    "oval-tubes",
    "custom-steel-products",
)
TRANSACTION_TYPE = ("in", "out", "adjustment")


def _spec_columns() -> list[sa.Column]:
    return [
        sa.Column("product_type", _enum("product_type", *PRODUCT_TYPE), nullable=False),
        sa.Column("size", sa.String(50), nullable=False),
        sa.Column("thickness", sa.Numeric(5, 2), nullable=False),
    ]


def upgrade() -> None:
    op.create_table(
        "orders",
        sa.Column("id", PK, primary_key=True),
        sa.Column("order_number", sa.String(64), nullable=False, unique=True),
        sa.Column("customer_name", sa.String(255)),
        sa.Column("approval_status", _enum("approval_status", "pending", "approved", "rejected"), nullable=False),
        sa.Column(
            "status",
            _enum(
                "order_status",
                "pending",
                "approved",
                "dispatched",
                "partial-dispatch",
                "completed",
                "cancelled",
            ),
            nullable=False,
        ),
        sa.Column("approved_by", sa.String(128)),
        sa.Column("approved_at", sa.DateTime(timezone=True)),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("updated_at", sa.DateTime(timezone=True), nullable=False),
    )
    op.create_index("ix_orders_status", "orders", ["status"])

    op.create_table(
        "order_lines",
        sa.Column("id", PK, primary_key=True),
        sa.Column("order_id", PK, sa.ForeignKey("orders.id", ondelete="CASCADE"), nullable=False),
        *_spec_columns(),
        sa.Column("ordered_quantity", QTY, nullable=False),
        sa.Column("rate", QTY, nullable=False),
        sa.Column("tax_rate", sa.Numeric(5, 2), nullable=False),
        sa.CheckConstraint("ordered_quantity > 0", name="ck_order_line_qty_pos"),
        sa.CheckConstraint("rate >= 0", name="ck_order_line_rate_nonneg"),
        sa.CheckConstraint("tax_rate >= 0", name="ck_order_line_tax_nonneg"),
    )
    op.create_index("ix_order_lines_order_id", "order_lines", ["order_id"])

    op.create_table(
        "dispatch_records",
        sa.Column("id", PK, primary_key=True),
        sa.Column("human_number", sa.String(64), nullable=False),
        sa.Column("order_id", PK, sa.ForeignKey("orders.id", ondelete="RESTRICT"), nullable=False),
        sa.Column("parent_dispatch_id", PK, sa.ForeignKey("dispatch_records.id", ondelete="SET NULL")),
        sa.Column(
            "status",
            _enum(
                "dispatch_status",
                "pending",
                "approved",
                "executed",
                "dispatched",
                "delivered",
                "cancelled",
            ),
            nullable=False,
        ),
        sa.Column("auto_generated", sa.Boolean(), nullable=False),
        sa.Column("dispatch_date", sa.Date(), nullable=False),
        sa.Column("remarks", sa.Text()),
        sa.Column("subtotal", QTY, nullable=False),
        sa.Column("tax_total", QTY, nullable=False),
        sa.Column("grand_total", QTY, nullable=False),
        sa.Column("approved_by", sa.String(128)),
        sa.Column("approved_at", sa.DateTime(timezone=True)),
        sa.Column("approved_quantity", QTY, nullable=False),
        sa.Column("approval_remarks", sa.String(255)),
        sa.Column("cancelled_at", sa.DateTime(timezone=True)),
        sa.Column("cancel_reason", sa.String(255)),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("updated_at", sa.DateTime(timezone=True), nullable=False),
        sa.UniqueConstraint("human_number", name="uq_dispatch_human_number"),
    )
    op.create_index("ix_dispatch_records_order_id", "dispatch_records", ["order_id"])
    op.create_index("ix_dispatch_order_created", "dispatch_records", ["order_id", "created_at"])
    op.create_index("ix_dispatch_status", "dispatch_records", ["status"])

    op.create_table(
        "dispatch_lines",
        sa.Column("id", PK, primary_key=True),
        sa.Column("dispatch_id", PK, sa.ForeignKey("dispatch_records.id", ondelete="CASCADE"), nullable=False),
        *_spec_columns(),
        sa.Column("ordered_quantity", QTY, nullable=False),
        sa.Column("dispatched_quantity", QTY, nullable=False),
        sa.Column("remaining_quantity", QTY, nullable=False),
        sa.Column("rate", QTY, nullable=False),
        sa.Column("tax_rate", sa.Numeric(5, 2), nullable=False),
        sa.Column("total", QTY, nullable=False),
        sa.CheckConstraint("dispatched_quantity > 0", name="ck_dispatch_line_qty_pos"),
        sa.CheckConstraint("remaining_quantity >= 0", name="ck_dispatch_line_remaining_nonneg"),
        sa.CheckConstraint("total >= 0", name="ck_dispatch_line_total_nonneg"),
    )
    op.create_index("ix_dispatch_lines_dispatch_id", "dispatch_lines", ["dispatch_id"])

    op.create_table(
        "document_sequences",
        sa.Column("prefix", sa.String(16), primary_key=True),
        sa.Column("year", sa.Integer(), primary_key=True),
        sa.Column("last_value", sa.Integer(), nullable=False),
        sa.Column("version", sa.Integer(), nullable=False),
    )

    op.create_table(
        "stock_entries",
        sa.Column("id", PK, primary_key=True),
        *_spec_columns(),
        sa.Column("available_quantity", QTY, nullable=False),
        sa.Column("min_level", QTY, nullable=False),
        sa.Column("max_level", QTY, nullable=False),
        sa.Column("rate", QTY, nullable=False),
        sa.Column("unit", _enum("stock_unit", "tons", "kg", "pieces"), nullable=False),
        sa.Column("hsn_code", sa.String(16), nullable=False),
        sa.Column("is_active", sa.Boolean(), nullable=False),
        sa.Column("last_transaction_type", _enum("transaction_type", *TRANSACTION_TYPE)),
        sa.Column("last_transaction_quantity", QTY),
        sa.Column("last_transaction_at", sa.DateTime(timezone=True)),
        sa.Column("last_transaction_reference", sa.String(128)),
        sa.Column("last_transaction_remarks", sa.String(255)),
        sa.Column("version", sa.Integer(), nullable=False),
        sa.Column("updated_at", sa.DateTime(timezone=True), nullable=False),
        sa.UniqueConstraint("product_type", "size", "thickness", name="uq_stock_entry_spec"),
        sa.CheckConstraint("available_quantity >= 0", name="ck_stock_available_nonneg"),
        sa.CheckConstraint("min_level >= 0", name="ck_stock_min_level_nonneg"),
        sa.CheckConstraint("max_level >= 0", name="ck_stock_max_level_nonneg"),
    )

    op.create_table(
        "stock_transactions",
        sa.Column("id", PK, primary_key=True),
        sa.Column("stock_entry_id", PK, sa.ForeignKey("stock_entries.id", ondelete="RESTRICT"), nullable=False),
        sa.Column("type", _enum("transaction_type", *TRANSACTION_TYPE), nullable=False),
        sa.Column("quantity", QTY, nullable=False),
        sa.Column("old_quantity", QTY, nullable=False),
        sa.Column("new_quantity", QTY, nullable=False),
        sa.Column("reference", sa.String(128)),
        sa.Column("remarks", sa.String(255)),
        sa.Column("happened_at", sa.DateTime(timezone=True), nullable=False),
        sa.CheckConstraint("quantity >= 0", name="ck_stock_txn_qty_nonneg"),
        sa.CheckConstraint("new_quantity >= 0", name="ck_stock_txn_new_nonneg"),
    )
    op.create_index("ix_stock_transactions_stock_entry_id", "stock_transactions", ["stock_entry_id"])
    op.create_index("ix_stock_txn_entry_time", "stock_transactions", ["stock_entry_id", "happened_at"])

    op.create_table(
        "audit_log",
        sa.Column("id", PK, primary_key=True),
        sa.Column("actor", sa.String(128)),
        sa.Column("action", sa.String(64), nullable=False),
        sa.Column("entity_type", sa.String(64), nullable=False),
        sa.Column("entity_id", sa.String(64), nullable=False),
        sa.Column("meta", sa.Text()),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False),
    )
    op.create_index("ix_audit_entity", "audit_log", ["entity_type", "entity_id"])


def downgrade() -> None:
    op.drop_index("ix_audit_entity", table_name="audit_log")
    op.drop_table("audit_log")
    op.drop_index("ix_stock_txn_entry_time", table_name="stock_transactions")
    op.drop_index("ix_stock_transactions_stock_entry_id", table_name="stock_transactions")
    op.drop_table("stock_transactions")
    op.drop_table("stock_entries")
    op.drop_table("document_sequences")
    op.drop_index("ix_dispatch_lines_dispatch_id", table_name="dispatch_lines")
    op.drop_table("dispatch_lines")
    op.drop_index("ix_dispatch_status", table_name="dispatch_records")
    op.drop_index("ix_dispatch_order_created", table_name="dispatch_records")
    op.drop_index("ix_dispatch_records_order_id", table_name="dispatch_records")
    op.drop_table("dispatch_records")
    op.drop_index("ix_order_lines_order_id", table_name="order_lines")
    op.drop_table("order_lines")
    op.drop_index("ix_orders_status", table_name="orders")
    op.drop_table("orders")
