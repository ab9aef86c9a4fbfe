"""
Procurement service (CustomerConnect).

Commandes fournisseur -> miroir purchase_orders -> mouvements IN.
Toute la logique stock reste dans :
    stocksync.services.inventory
"""

from __future__ import annotations

import structlog

from stocksync.app.db.models.models_v1 import PurchaseOrder, PurchaseOrderLine
from stocksync.app.db.models.core_types import MovementType, POStatus, RefType, SyncSource
from stocksync.app.schemas.raw import RawDetail, RawOrder
from stocksync.services.identity import normalize_alias
from stocksync.services.sync import SyncOrchestrator

logger = structlog.get_logger(__name__)

# Commandes qui font réellement entrer du stock
ELIGIBLE_PO_STATUSES = frozenset({
    POStatus.complete,
    POStatus.processing,
    POStatus.shipped,
})

ORDER_STATUS_MAP = {
    "pending": POStatus.pending,
    "processing": POStatus.processing,
    "shipped": POStatus.shipped,
    "complete": POStatus.complete,
    "completed": POStatus.complete,
    "cancelled": POStatus.cancelled,
    "canceled": POStatus.cancelled,
    "denied": POStatus.denied,
    "canceled reversal": POStatus.canceled_reversal,
    "failed": POStatus.failed,
    "refunded": POStatus.refunded,
    "reversed": POStatus.reversed,
    "chargeback": POStatus.chargeback,
    "expired": POStatus.expired,
    "voided": POStatus.voided,
}


def map_order_status(value: str | None) -> POStatus:
    """Statut portail -> POStatus. Inconnu : Pending (jamais éligible)."""
    if not value:
        return POStatus.pending
    status = ORDER_STATUS_MAP.get(normalize_alias(value))
    if status is None:
        logger.warning("Unknown order status, defaulting to Pending", status=value)
        return POStatus.pending
    return status


class PurchaseOrderSync(SyncOrchestrator):
    source = SyncSource.customerconnect
    model = PurchaseOrder
    line_model = PurchaseOrderLine
    raw_model = RawOrder
    key_attr = "order_number"
    line_fk_attr = "order_id"
    date_attr = "order_date"
    feeds = ("orders",)
    eligible_statuses = ELIGIBLE_PO_STATUSES
    movement_type = MovementType.inbound
    ref_type = RefType.purchase_order

    def list_values(self, raw: RawOrder, feed: str) -> dict:
        return {
            "status": map_order_status(raw.status),
            "order_date": raw.order_date,
            "vendor_name": raw.vendor_name or None,
            "po_number": raw.po_number or None,
            "total": raw.total,
            "detail_url": raw.detail_url,
        }

    def apply_detail(self, record: PurchaseOrder, detail: RawDetail) -> None:
        record.po_number = detail.po_number or record.po_number
        record.vendor_name = detail.vendor_name or record.vendor_name
        record.subtotal = detail.subtotal
        record.tax = detail.tax
        record.shipping = detail.shipping
        record.total = detail.total or record.total

    def movement_note(self, record: PurchaseOrder) -> str:
        note = f"Purchase: {record.vendor_name or 'Unknown'} - Order #{record.order_number}"
        if record.po_number:
            note += f" (PO: {record.po_number})"
        return note
