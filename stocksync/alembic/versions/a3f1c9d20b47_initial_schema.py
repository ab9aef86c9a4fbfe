"""initial schema: catalogue, miroirs portails, ledger stock, journal de sync

Revision ID: a3f1c9d20b47
Revises:
Create Date: 2026-10-18 09:12:41.337204
"""
from __future__ import annotations

from typing import Sequence, Union

import sqlalchemy as sa
from alembic import op

# revision identifiers, used by Alembic.
revision: str = "a3f1c9d20b47"
down_revision: Union[str, Sequence[str], None] = None
branch_labels: Union[str, Sequence[str], None] = None
depends_on: Union[str, Sequence[str], None] = None

# SQLAlchemy persiste le NOM des membres d'enum (pas leur valeur)
PO_STATUS = sa.Enum(
    "pending",
    "processing",
    "shipped",
    "complete",
    "cancelled",
    "denied",
    "canceled_reversal",
    "failed",
    "refunded",
    "reversed",
    "chargeback",
    "expired",
    "voided",
    name="po_status",
)
INVOICE_STATUS = sa.Enum("pending", "completed", "closed", "cancelled", name="invoice_status")
INVOICE_TYPE = sa.Enum("pending", "closed", name="invoice_type")
MOVEMENT_TYPE = sa.Enum("inbound", "outbound", "adjust", name="movement_type")
REF_TYPE = sa.Enum("purchase_order", "invoice", "adjustment", name="ref_type")
SYNC_STATUS = sa.Enum("running", "success", "partial", "failed", name="sync_status")

PK = sa.BigInteger().with_variant(sa.Integer(), "sqlite")


def _timestamps() -> list[sa.Column]:
    return [
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("updated_at", sa.DateTime(timezone=True), nullable=False),
    ]


def _line_columns() -> list[sa.Column]:
    return [
        sa.Column("line_no", sa.Integer(), nullable=False),
        sa.Column("sku", sa.String(64), nullable=False),
        sa.Column("name", sa.String(255), nullable=False),
        sa.Column("description", sa.Text()),
        sa.Column("quantity", sa.Integer(), nullable=False),
        sa.Column("unit_price", sa.Numeric(14, 2), nullable=False, server_default="0"),
        sa.Column("line_total", sa.Numeric(14, 2), nullable=False, server_default="0"),
        sa.Column("needs_mapping", sa.Boolean(), nullable=False, server_default=sa.false()),
    ]


def _stock_columns() -> list[sa.Column]:
    return [
        sa.Column("stock_processed", sa.Boolean(), nullable=False, server_default=sa.false()),
        sa.Column("stock_processed_at", sa.DateTime(timezone=True)),
        sa.Column("stock_processing_error", sa.Text()),
        sa.Column("last_synced_at", sa.DateTime(timezone=True)),
        sa.Column("raw_data", sa.JSON()),
    ]


def upgrade() -> None:
    # ---------- MASTER DATA ----------
    op.create_table(
        "products",
        sa.Column("id", PK, primary_key=True),
        sa.Column("sku", sa.String(64), nullable=False, unique=True),
        sa.Column("name", sa.String(255), nullable=False),
        sa.Column("uom", sa.String(32), nullable=False, server_default="unit"),
        sa.Column("barcode", sa.String(64), unique=True),
        sa.Column("active", sa.Boolean(), nullable=False, server_default=sa.true()),
        sa.Column("is_temporary", sa.Boolean(), nullable=False, server_default=sa.false()),
        sa.Column("merged_into_id", PK, sa.ForeignKey("products.id", ondelete="SET NULL")),
        sa.Column("source", sa.String(32)),
        sa.Column("external_code", sa.String(128)),
        sa.Column("last_purchase_price", sa.Numeric(14, 2)),
        sa.Column("last_sale_price", sa.Numeric(14, 2)),
        *_timestamps(),
    )
    op.create_index("ix_products_active_temp", "products", ["active", "is_temporary"])

    op.create_table(
        "product_aliases",
        sa.Column("id", PK, primary_key=True),
        sa.Column("product_id", PK, sa.ForeignKey("products.id", ondelete="CASCADE"), nullable=False),
        sa.Column("alias", sa.String(255), nullable=False, unique=True),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False),
    )
    op.create_index("ix_product_aliases_product_id", "product_aliases", ["product_id"])

    # ---------- PROCUREMENT ----------
    op.create_table(
        "purchase_orders",
        sa.Column("id", PK, primary_key=True),
        sa.Column("order_number", sa.String(64), nullable=False, unique=True),
        sa.Column("po_number", sa.String(64)),
        sa.Column("status", PO_STATUS, nullable=False, server_default="pending"),
        sa.Column("order_date", sa.Date()),
        sa.Column("vendor_name", sa.String(255)),
        sa.Column("subtotal", sa.Numeric(14, 2), nullable=False, server_default="0"),
        sa.Column("tax", sa.Numeric(14, 2), nullable=False, server_default="0"),
        sa.Column("shipping", sa.Numeric(14, 2), nullable=False, server_default="0"),
        sa.Column("total", sa.Numeric(14, 2), nullable=False, server_default="0"),
        sa.Column("detail_url", sa.String(512)),
        *_stock_columns(),
        *_timestamps(),
    )
    op.create_index("ix_purchase_orders_pending_stock", "purchase_orders", ["stock_processed", "status"])

    op.create_table(
        "purchase_order_lines",
        sa.Column("id", PK, primary_key=True),
        sa.Column("order_id", PK, sa.ForeignKey("purchase_orders.id", ondelete="CASCADE"), nullable=False),
        *_line_columns(),
        sa.UniqueConstraint("order_id", "line_no", name="uq_po_line_order_line_no"),
    )
    op.create_index("ix_purchase_order_lines_order_id", "purchase_order_lines", ["order_id"])
    op.create_index("ix_purchase_order_lines_sku", "purchase_order_lines", ["sku"])

    # ---------- SALES ----------
    op.create_table(
        "sales_invoices",
        sa.Column("id", PK, primary_key=True),
        sa.Column("invoice_number", sa.String(64), nullable=False, unique=True),
        sa.Column("invoice_type", INVOICE_TYPE, nullable=False, server_default="pending"),
        sa.Column("status", INVOICE_STATUS, nullable=False, server_default="pending"),
        sa.Column("invoice_date", sa.Date()),
        sa.Column("date_completed", sa.Date()),
        sa.Column("customer_name", sa.String(255)),
        sa.Column("entered_by", sa.String(128)),
        sa.Column("assigned_to", sa.String(128)),
        sa.Column("is_complete", sa.Boolean(), nullable=False, server_default=sa.false()),
        sa.Column("is_posted", sa.Boolean(), nullable=False, server_default=sa.false()),
        sa.Column("subtotal", sa.Numeric(14, 2), nullable=False, server_default="0"),
        sa.Column("tax", sa.Numeric(14, 2), nullable=False, server_default="0"),
        sa.Column("total", sa.Numeric(14, 2), nullable=False, server_default="0"),
        sa.Column("detail_url", sa.String(512)),
        *_stock_columns(),
        *_timestamps(),
    )
    op.create_index("ix_sales_invoices_pending_stock", "sales_invoices", ["stock_processed", "status"])

    op.create_table(
        "sales_invoice_lines",
        sa.Column("id", PK, primary_key=True),
        sa.Column("invoice_id", PK, sa.ForeignKey("sales_invoices.id", ondelete="CASCADE"), nullable=False),
        *_line_columns(),
        sa.UniqueConstraint("invoice_id", "line_no", name="uq_invoice_line_invoice_line_no"),
    )
    op.create_index("ix_sales_invoice_lines_invoice_id", "sales_invoice_lines", ["invoice_id"])
    op.create_index("ix_sales_invoice_lines_sku", "sales_invoice_lines", ["sku"])

    # ---------- INVENTORY ----------
    op.create_table(
        "stock_movements",
        sa.Column("id", PK, primary_key=True),
        sa.Column("sku", sa.String(64), nullable=False),
        sa.Column("movement_type", MOVEMENT_TYPE, nullable=False),
        sa.Column("quantity", sa.Integer(), nullable=False),
        sa.Column("ref_type", REF_TYPE, nullable=False),
        sa.Column("ref_id", sa.BigInteger()),
        sa.Column("source_ref", sa.String(64)),
        sa.Column("source", sa.String(32), nullable=False),
        sa.Column("note", sa.String(512)),
        sa.Column("happened_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("created_by", sa.String(128), nullable=False, server_default="system"),
        sa.Column("idempotency_key", sa.String(128), nullable=False, unique=True),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False),
        sa.CheckConstraint("quantity <> 0", name="ck_stock_movement_qty_nonzero"),
    )
    op.create_index("ix_stock_movements_sku", "stock_movements", ["sku"])
    op.create_index("ix_stock_movements_sku_time", "stock_movements", ["sku", "happened_at"])
    op.create_index("ix_stock_movements_ref", "stock_movements", ["ref_type", "ref_id"])

    op.create_table(
        "stock_summaries",
        sa.Column("id", PK, primary_key=True),
        sa.Column("sku", sa.String(64), nullable=False, unique=True),
        sa.Column("product_id", PK, sa.ForeignKey("products.id", ondelete="SET NULL")),
        sa.Column("available_qty", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("reserved_qty", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("total_in_qty", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("total_out_qty", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("low_stock_threshold", sa.Integer(), nullable=False, server_default="10"),
        sa.Column("last_movement_at", sa.DateTime(timezone=True)),
        sa.Column("updated_at", sa.DateTime(timezone=True), nullable=False),
        sa.CheckConstraint("reserved_qty >= 0", name="ck_stock_summary_reserved_nonneg"),
        sa.CheckConstraint("total_in_qty >= 0", name="ck_stock_summary_in_nonneg"),
        sa.CheckConstraint("total_out_qty >= 0", name="ck_stock_summary_out_nonneg"),
    )

    # ---------- AUDIT ----------
    op.create_table(
        "sync_logs",
        sa.Column("id", PK, primary_key=True),
        sa.Column("source", sa.String(32), nullable=False),
        sa.Column("status", SYNC_STATUS, nullable=False, server_default="running"),
        sa.Column("triggered_by", sa.String(128), nullable=False, server_default="scheduler"),
        sa.Column("started_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("ended_at", sa.DateTime(timezone=True)),
        sa.Column("duration_ms", sa.Integer()),
        sa.Column("records_found", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("records_inserted", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("records_updated", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("records_failed", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("records_processed", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("error_message", sa.Text()),
        sa.Column("error_stack", sa.Text()),
        sa.Column("details", sa.JSON()),
    )
    op.create_index("ix_sync_logs_source_started", "sync_logs", ["source", "started_at"])


def downgrade() -> None:
    op.drop_index("ix_sync_logs_source_started", table_name="sync_logs")
    op.drop_table("sync_logs")
    op.drop_table("stock_summaries")
    op.drop_index("ix_stock_movements_ref", table_name="stock_movements")
    op.drop_index("ix_stock_movements_sku_time", table_name="stock_movements")
    op.drop_index("ix_stock_movements_sku", table_name="stock_movements")
    op.drop_table("stock_movements")
    op.drop_table("sales_invoice_lines")
    op.drop_table("sales_invoices")
    op.drop_table("purchase_order_lines")
    op.drop_table("purchase_orders")
    op.drop_table("product_aliases")
    op.drop_table("products")

    bind = op.get_bind()
    for enum_type in (SYNC_STATUS, REF_TYPE, MOVEMENT_TYPE, INVOICE_TYPE, INVOICE_STATUS, PO_STATUS):
        enum_type.drop(bind, checkfirst=True)
