"""
Journal des runs de synchronisation (table sync_logs).

Chaque run gardé écrit une ligne : RUNNING au départ, puis SUCCESS
(aucun échec), PARTIAL (des échecs) ou FAILED (le run a levé).
Le journal utilise sa propre session : il survit au rollback du run.
"""

from __future__ import annotations

import time
import traceback
from contextlib import contextmanager
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from typing import Any, Callable, Iterator

import structlog
from sqlalchemy import case, func, select
from sqlalchemy.orm import Session

from stocksync.app.db.base import utcnow
from stocksync.app.db.models.models_v1 import SyncLog
from stocksync.app.db.models.core_types import SyncStatus
from stocksync.services.errors import RecordNotFoundError, SyncAbortedError

logger = structlog.get_logger(__name__)

COUNT_FIELDS = ("found", "inserted", "updated", "failed", "processed")


@dataclass
class RunHandle:
    log_id: int
    source: str
    counts: dict[str, int] = field(default_factory=dict)
    details: dict[str, Any] | None = None

    def record(self, counts: dict[str, int], details: dict[str, Any] | None = None) -> None:
        self.counts = {k: int(counts.get(k, 0)) for k in COUNT_FIELDS}
        if details is not None:
            self.details = details


def _get(db: Session, log_id: int) -> SyncLog:
    log = db.get(SyncLog, log_id)
    if not log:
        raise RecordNotFoundError("SyncLog", str(log_id))
    return log


def _apply_counts(log: SyncLog, counts: dict[str, int] | None) -> None:
    counts = counts or {}
    log.records_found = int(counts.get("found", 0))
    log.records_inserted = int(counts.get("inserted", 0))
    log.records_updated = int(counts.get("updated", 0))
    log.records_failed = int(counts.get("failed", 0))
    log.records_processed = int(counts.get("processed", 0))


def start_run(db: Session, source: str, triggered_by: str = "scheduler", clock: Callable[[], datetime] = utcnow) -> SyncLog:
    log = SyncLog(source=source, status=SyncStatus.running, triggered_by=triggered_by, started_at=clock())
    db.add(log)
    db.commit()
    return log


def finish_run(
    db: Session,
    log_id: int,
    *,
    counts: dict[str, int] | None = None,
    details: dict[str, Any] | None = None,
    duration_ms: int | None = None,
    clock: Callable[[], datetime] = utcnow,
) -> SyncLog:
    log = _get(db, log_id)
    _apply_counts(log, counts)
    log.status = SyncStatus.partial if log.records_failed > 0 else SyncStatus.success
    log.details = details
    log.ended_at = clock()
    log.duration_ms = duration_ms
    db.commit()
    return log


def fail_run(
    db: Session,
    log_id: int,
    exc: BaseException,
    *,
    counts: dict[str, int] | None = None,
    duration_ms: int | None = None,
    clock: Callable[[], datetime] = utcnow,
) -> SyncLog:
    log = _get(db, log_id)
    _apply_counts(log, counts)
    log.status = SyncStatus.failed
    log.error_message = str(exc)[:2000]
    log.error_stack = "".join(traceback.format_exception(type(exc), exc, exc.__traceback__))
    log.ended_at = clock()
    log.duration_ms = duration_ms
    db.commit()
    return log


@contextmanager
def recorded_run(
    session_factory: Callable[[], Session],
    source: str,
    triggered_by: str = "scheduler",
    clock: Callable[[], datetime] = utcnow,
) -> Iterator[RunHandle]:
    with session_factory() as db:
        log = start_run(db, source, triggered_by, clock)
        handle = RunHandle(log_id=log.id, source=source)
    started = time.monotonic()
    logger.info("Sync run started", source=source, run_id=handle.log_id, triggered_by=triggered_by)

    try:
        yield handle
    except Exception as exc:
        counts = handle.counts
        if not counts and isinstance(exc, SyncAbortedError) and hasattr(exc.partial, "counts"):
            counts = exc.partial.counts()
        with session_factory() as db:
            fail_run(
                db,
                handle.log_id,
                exc,
                counts=counts,
                duration_ms=int((time.monotonic() - started) * 1000),
                clock=clock,
            )
        logger.error("Sync run failed", source=source, run_id=handle.log_id, error=str(exc))
        raise

    with session_factory() as db:
        log = finish_run(
            db,
            handle.log_id,
            counts=handle.counts,
            details=handle.details,
            duration_ms=int((time.monotonic() - started) * 1000),
            clock=clock,
        )
        status = log.status
    logger.info("Sync run finished", source=source, run_id=handle.log_id, status=status.value, **handle.counts)


# ---------- LECTURE ----------
def latest_run(db: Session, source: str) -> SyncLog | None:
    return (
        db.execute(
            select(SyncLog)
            .where(SyncLog.source == source)
            .order_by(SyncLog.started_at.desc(), SyncLog.id.desc())
            .limit(1)
        )
        .scalars()
        .first()
    )


def recent_runs(
    db: Session,
    *,
    source: str | None = None,
    status: SyncStatus | None = None,
    limit: int = 50,
    offset: int = 0,
) -> list[SyncLog]:
    stmt = select(SyncLog)
    if source:
        stmt = stmt.where(SyncLog.source == source)
    if status:
        stmt = stmt.where(SyncLog.status == status)
    stmt = stmt.order_by(SyncLog.started_at.desc(), SyncLog.id.desc()).limit(limit).offset(offset)
    return list(db.execute(stmt).scalars().all())


def run_stats(
    db: Session,
    *,
    source: str | None = None,
    days: int = 7,
    now: datetime | None = None,
) -> list[dict[str, Any]]:
    since = (now or utcnow()) - timedelta(days=days)
    stmt = (
        select(
            SyncLog.source,
            func.count(SyncLog.id),
            func.sum(case((SyncLog.status == SyncStatus.success, 1), else_=0)),
            func.sum(case((SyncLog.status == SyncStatus.partial, 1), else_=0)),
            func.sum(case((SyncLog.status == SyncStatus.failed, 1), else_=0)),
            func.coalesce(func.sum(SyncLog.records_inserted), 0),
            func.coalesce(func.sum(SyncLog.records_updated), 0),
            func.coalesce(func.sum(SyncLog.records_failed), 0),
            func.avg(SyncLog.duration_ms),
        )
        .where(SyncLog.started_at >= since)
        .group_by(SyncLog.source)
        .order_by(SyncLog.source)
    )
    if source:
        stmt = stmt.where(SyncLog.source == source)

    out = []
    for row in db.execute(stmt).all():
        src, total, ok, partial, failed, inserted, updated, rec_failed, avg_ms = row
        out.append(
            {
                "source": src,
                "total_runs": int(total),
                "successful_runs": int(ok or 0),
                "partial_runs": int(partial or 0),
                "failed_runs": int(failed or 0),
                "records_inserted": int(inserted),
                "records_updated": int(updated),
                "records_failed": int(rec_failed),
                "avg_duration_ms": round(float(avg_ms), 1) if avg_ms is not None else None,
            }
        )
    return out
