from datetime import datetime
from typing import Any

from pydantic import BaseModel, Field

from stocksync.app.db.models.core_types import FetchDirection, SyncStatus


class FullSyncRequest(BaseModel):
    limit: int | None = Field(default=50, ge=0)  # 0 / null = tout
    process_stock: bool = True
    direction: FetchDirection = FetchDirection.newest
    force_details: bool = False
    details_limit: int | None = Field(default=None, ge=0)


class DetailBackfillRequest(BaseModel):
    limit: int | None = Field(default=None, ge=0)
    force_all: bool = False


class SyncLogRead(BaseModel):
    id: int
    source: str
    status: SyncStatus
    triggered_by: str
    started_at: datetime
    ended_at: datetime | None
    duration_ms: int | None

    records_found: int
    records_inserted: int
    records_updated: int
    records_failed: int
    records_processed: int

    error_message: str | None
    details: dict[str, Any] | None

    class Config:
        from_attributes = True
