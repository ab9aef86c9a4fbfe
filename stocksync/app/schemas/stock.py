from datetime import datetime

from pydantic import BaseModel

from stocksync.app.db.models.core_types import MovementType, RefType


class StockSummaryRead(BaseModel):
    sku: str
    product_id: int | None

    available_qty: int  # peut être négatif
    reserved_qty: int
    total_in_qty: int
    total_out_qty: int
    low_stock_threshold: int
    is_low_stock: bool

    last_movement_at: datetime | None
    updated_at: datetime

    class Config:
        from_attributes = True


class StockMovementRead(BaseModel):
    id: int
    sku: str
    movement_type: MovementType
    quantity: int
    ref_type: RefType
    ref_id: int | None
    source_ref: str | None
    source: str
    note: str | None
    happened_at: datetime
    created_by: str
    idempotency_key: str

    class Config:
        from_attributes = True


class MovementTotalsRead(BaseModel):
    sku: str
    total_in: int
    total_out: int
    total_adjust: int
    current_stock: int
    movement_count: int
