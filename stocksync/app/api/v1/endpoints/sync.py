from __future__ import annotations

from dataclasses import asdict

from fastapi import APIRouter, Depends, HTTPException
from sqlalchemy.orm import Session

from stocksync.app.api.deps import get_actor, get_db, get_scheduler
from stocksync.app.db.models.core_types import SyncSource, SyncStatus
from stocksync.app.schemas.sync import DetailBackfillRequest, FullSyncRequest, SyncLogRead
from stocksync.services.errors import (
    RecordNotFoundError,
    SourceNotConfiguredError,
    SourceUnavailableError,
    SyncAbortedError,
    SyncInProgressError,
)
from stocksync.services.scheduler import SyncScheduler
from stocksync.services.sync import SyncOptions
from stocksync.services.sync_log import latest_run, recent_runs, run_stats

router = APIRouter(prefix="/sync")


# ---------- Helpers ----------
def _http_error(exc: Exception) -> HTTPException:
    if isinstance(exc, SyncInProgressError):
        return HTTPException(status_code=409, detail=str(exc))
    if isinstance(exc, SourceNotConfiguredError):
        return HTTPException(status_code=503, detail=str(exc))
    if isinstance(exc, RecordNotFoundError):
        return HTTPException(status_code=404, detail=str(exc))
    if isinstance(exc, SyncAbortedError):
        partial = exc.partial
        counts = partial.counts() if hasattr(partial, "counts") else None
        return HTTPException(status_code=502, detail={"message": str(exc), "counts": counts})
    if isinstance(exc, SourceUnavailableError):
        return HTTPException(status_code=502, detail=str(exc))
    return HTTPException(status_code=500, detail=str(exc))


# ---------- Runs ----------
@router.post("/{source}/full")
def full_sync(
    source: SyncSource,
    payload: FullSyncRequest | None = None,
    scheduler: SyncScheduler = Depends(get_scheduler),
    actor: str = Depends(get_actor),
):
    payload = payload or FullSyncRequest()
    options = SyncOptions(
        limit=payload.limit,
        process_stock=payload.process_stock,
        direction=payload.direction,
        force_details=payload.force_details,
        details_limit=payload.details_limit,
    )
    try:
        result = scheduler.run_now(source.value, options, triggered_by=actor, actor=actor)
    except (SyncInProgressError, SourceNotConfiguredError, SyncAbortedError) as exc:
        raise _http_error(exc)

    return {
        "source": source.value,
        "counts": result.counts(),
        "listing": asdict(result.listing) if result.listing else None,
        "details": asdict(result.details) if result.details else None,
        "stock": asdict(result.stock) if result.stock else None,
    }


@router.post("/{source}/details")
def backfill_details(
    source: SyncSource,
    payload: DetailBackfillRequest | None = None,
    scheduler: SyncScheduler = Depends(get_scheduler),
    actor: str = Depends(get_actor),
):
    payload = payload or DetailBackfillRequest()
    try:
        result = scheduler.backfill_details(
            source.value,
            limit=payload.limit,
            force_all=payload.force_all,
            triggered_by=actor,
        )
    except (SyncInProgressError, SourceNotConfiguredError, SyncAbortedError) as exc:
        raise _http_error(exc)
    return asdict(result)


@router.post("/{source}/stock")
def process_stock(
    source: SyncSource,
    scheduler: SyncScheduler = Depends(get_scheduler),
    actor: str = Depends(get_actor),
):
    try:
        result = scheduler.process_stock(source.value, actor=actor, triggered_by=actor)
    except (SyncInProgressError, SourceNotConfiguredError) as exc:
        raise _http_error(exc)
    return asdict(result)


@router.post("/{source}/records/{key}/retry")
def retry_record(
    source: SyncSource,
    key: str,
    scheduler: SyncScheduler = Depends(get_scheduler),
):
    try:
        scheduler.requeue(source.value, key)
    except (SyncInProgressError, SourceNotConfiguredError, RecordNotFoundError) as exc:
        raise _http_error(exc)
    return {"source": source.value, "key": key, "requeued": True}


@router.post("/catalog/refresh")
def refresh_catalog(
    scheduler: SyncScheduler = Depends(get_scheduler),
    actor: str = Depends(get_actor),
):
    try:
        result = scheduler.refresh_catalog_now(triggered_by=actor)
    except (SyncInProgressError, SourceNotConfiguredError, SourceUnavailableError) as exc:
        raise _http_error(exc)
    return asdict(result)


# ---------- Historique ----------
@router.get("/logs", response_model=list[SyncLogRead])
def list_logs(
    source: SyncSource | None = None,
    status: SyncStatus | None = None,
    limit: int = 50,
    offset: int = 0,
    db: Session = Depends(get_db),
):
    if limit < 1 or limit > 500:
        raise HTTPException(status_code=400, detail="limit must be between 1 and 500")
    return recent_runs(
        db,
        source=source.value if source else None,
        status=status,
        limit=limit,
        offset=max(offset, 0),
    )


@router.get("/status")
def sync_status(db: Session = Depends(get_db)):
    """Dernier run connu par source (lecture seule, pas besoin du scheduler)."""
    out = {}
    for source in SyncSource:
        last = latest_run(db, source.value)
        out[source.value] = SyncLogRead.model_validate(last) if last else None
    return out


@router.get("/stats")
def sync_stats(
    source: SyncSource | None = None,
    days: int = 7,
    db: Session = Depends(get_db),
):
    if days < 1:
        raise HTTPException(status_code=400, detail="days must be >= 1")
    return run_stats(db, source=source.value if source else None, days=days)
