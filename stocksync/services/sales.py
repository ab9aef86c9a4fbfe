"""
Sales service (RouteStar).

Factures -> miroir sales_invoices -> mouvements OUT.
Deux flux côté portail : factures en attente, puis factures clôturées.
"""

from __future__ import annotations

import structlog

from stocksync.app.db.models.models_v1 import SalesInvoice, SalesInvoiceLine
from stocksync.app.db.models.core_types import InvoiceStatus, InvoiceType, MovementType, RefType, SyncSource
from stocksync.app.schemas.raw import RawDetail, RawInvoice
from stocksync.services.identity import normalize_alias
from stocksync.services.sync import SyncOrchestrator

logger = structlog.get_logger(__name__)

ELIGIBLE_INVOICE_STATUSES = frozenset({
    InvoiceStatus.completed,
    InvoiceStatus.closed,
})

INVOICE_STATUS_MAP = {
    "complete": InvoiceStatus.completed,
    "completed": InvoiceStatus.completed,
    "pending": InvoiceStatus.pending,
    "closed": InvoiceStatus.closed,
    "cancelled": InvoiceStatus.cancelled,
    "canceled": InvoiceStatus.cancelled,
}


def normalize_invoice_status(value: str | None, default: InvoiceStatus = InvoiceStatus.pending) -> InvoiceStatus:
    if not value:
        return default
    status = INVOICE_STATUS_MAP.get(normalize_alias(value))
    if status is None:
        logger.warning("Unknown invoice status, defaulting to Pending", status=value)
        return InvoiceStatus.pending
    return status


class SalesInvoiceSync(SyncOrchestrator):
    source = SyncSource.routestar
    model = SalesInvoice
    line_model = SalesInvoiceLine
    raw_model = RawInvoice
    key_attr = "invoice_number"
    line_fk_attr = "invoice_id"
    date_attr = "invoice_date"
    feeds = (InvoiceType.pending.value, InvoiceType.closed.value)
    eligible_statuses = ELIGIBLE_INVOICE_STATUSES
    movement_type = MovementType.outbound
    ref_type = RefType.invoice

    def list_values(self, raw: RawInvoice, feed: str) -> dict:
        invoice_type = InvoiceType(feed)
        # une facture du flux "closed" sans statut affiché est clôturée
        default = InvoiceStatus.closed if invoice_type == InvoiceType.closed else InvoiceStatus.pending
        return {
            "invoice_type": invoice_type,
            "status": normalize_invoice_status(raw.status, default=default),
            "invoice_date": raw.invoice_date,
            "date_completed": raw.date_completed,
            "customer_name": raw.customer_name or None,
            "entered_by": raw.entered_by,
            "assigned_to": raw.assigned_to,
            "is_complete": raw.is_complete,
            "is_posted": raw.is_posted,
            "total": raw.total,
            "detail_url": raw.detail_url,
        }

    def apply_detail(self, record: SalesInvoice, detail: RawDetail) -> None:
        record.subtotal = detail.subtotal
        record.tax = detail.tax
        record.total = detail.total or record.total

    def movement_note(self, record: SalesInvoice) -> str:
        return f"Sale: {record.customer_name or 'Unknown'} - {record.invoice_number}"
