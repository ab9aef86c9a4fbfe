import enum


class SyncSource(str, enum.Enum):
    customerconnect = "customerconnect"
    routestar = "routestar"
    catalog = "catalog"


class MovementType(str, enum.Enum):
    inbound = "IN"
    outbound = "OUT"
    adjust = "ADJUST"


class RefType(str, enum.Enum):
    purchase_order = "PURCHASE_ORDER"
    invoice = "INVOICE"
    adjustment = "ADJUSTMENT"


class POStatus(str, enum.Enum):
    pending = "Pending"
    processing = "Processing"
    shipped = "Shipped"
    complete = "Complete"
    cancelled = "Cancelled"
    denied = "Denied"
    canceled_reversal = "Canceled Reversal"
    failed = "Failed"
    refunded = "Refunded"
    reversed = "Reversed"
    chargeback = "Chargeback"
    expired = "Expired"
    voided = "Voided"


class InvoiceStatus(str, enum.Enum):
    pending = "Pending"
    completed = "Completed"
    closed = "Closed"
    cancelled = "Cancelled"


class InvoiceType(str, enum.Enum):
    pending = "pending"
    closed = "closed"


class SyncStatus(str, enum.Enum):
    running = "RUNNING"
    success = "SUCCESS"
    partial = "PARTIAL"
    failed = "FAILED"


class FetchDirection(str, enum.Enum):
    newest = "new"
    oldest = "old"
