"""
Sync scheduler.

Un thread daemon par source (le second décalé d'un demi-intervalle) et un
thread quotidien pour le catalogue. Chaque source a son propre SourceGuard :
un run planifié ou manuel ne démarre jamais si un autre est en vol pour la
même source.

Le stop() empêche les nouveaux runs ; un run en cours va jusqu'au bout.
"""

from __future__ import annotations

import threading
from contextlib import contextmanager
from dataclasses import asdict
from datetime import datetime, timedelta
from typing import Any, Callable, Iterator, Mapping
from zoneinfo import ZoneInfo

import structlog
from pydantic import ValidationError
from sqlalchemy.orm import Session

from stocksync.app.db.base import utcnow
from stocksync.app.db.models.core_types import SyncSource
from stocksync.app.schemas.raw import RawCatalogItem
from stocksync.services.errors import (
    SourceNotConfiguredError,
    SourceUnavailableError,
    SyncAbortedError,
    SyncInProgressError,
)
from stocksync.services.identity import CatalogRefreshResult, IdentityResolver
from stocksync.services.procurement import PurchaseOrderSync
from stocksync.services.sales import SalesInvoiceSync
from stocksync.services.sources import UNAVAILABLE_ERRORS, RetryingAdapter, SourceAdapter, load_adapter
from stocksync.services.sync import (
    DetailSyncResult,
    FullSyncResult,
    StockProcessResult,
    SyncOptions,
    SyncOrchestrator,
)
from stocksync.services.sync_log import latest_run, recorded_run

logger = structlog.get_logger(__name__)

MAX_DETAIL_ITEMS = 50


class SourceGuard:
    """Verrou non bloquant par source : occupé -> SyncInProgressError immédiat."""

    def __init__(self, source: str):
        self.source = source
        self._lock = threading.Lock()

    @contextmanager
    def hold(self) -> Iterator[None]:
        if not self._lock.acquire(blocking=False):
            raise SyncInProgressError(self.source)
        try:
            yield
        finally:
            self._lock.release()

    @property
    def is_held(self) -> bool:
        return self._lock.locked()


def next_daily_run(now: datetime, hour: int, minute: int, tz: ZoneInfo) -> datetime:
    local_now = now.astimezone(tz)
    target = local_now.replace(hour=hour, minute=minute, second=0, microsecond=0)
    if target <= local_now:
        target = (local_now + timedelta(days=1)).replace(hour=hour, minute=minute, second=0, microsecond=0)
    return target


def _run_details(result: FullSyncResult | DetailSyncResult | StockProcessResult) -> dict[str, Any]:
    errors = [asdict(e) for e in result.errors][:MAX_DETAIL_ITEMS]
    events = [asdict(e) for e in getattr(result, "events", [])][:MAX_DETAIL_ITEMS]
    return {"errors": errors, "events": events}


class SyncScheduler:
    def __init__(
        self,
        session_factory: Callable[[], Session],
        orchestrators: Mapping[str, SyncOrchestrator],
        *,
        interval_minutes: int = 30,
        default_options: SyncOptions | None = None,
        catalog_adapter: SourceAdapter | None = None,
        resolver: IdentityResolver | None = None,
        catalog_hour: int = 3,
        catalog_minute: int = 0,
        timezone: str = "America/New_York",
        clock: Callable[[], datetime] = utcnow,
    ):
        self._session_factory = session_factory
        self._orchestrators = dict(orchestrators)
        self.interval_minutes = interval_minutes
        self.default_options = default_options or SyncOptions()
        self._catalog_adapter = catalog_adapter
        self._resolver = resolver or IdentityResolver(clock=clock)
        self._catalog_hour = catalog_hour
        self._catalog_minute = catalog_minute
        self._tz = ZoneInfo(timezone)
        self._clock = clock

        self._stop_event = threading.Event()
        self._threads: list[threading.Thread] = []
        self._guards = {source: SourceGuard(source) for source in self._orchestrators}
        self._guards[SyncSource.catalog.value] = SourceGuard(SyncSource.catalog.value)

        # pauses de courtoisie interrompues par stop()
        for orchestrator in self._orchestrators.values():
            orchestrator.pause = self._stop_event.wait

    # ---------- lifecycle ----------
    @property
    def is_running(self) -> bool:
        return any(t.is_alive() for t in self._threads)

    @property
    def sources(self) -> list[str]:
        return list(self._orchestrators)

    def first_waits(self) -> dict[str, float]:
        """Délai avant le premier run de chaque source (secondes), décalé d'un demi-intervalle une source sur deux."""
        interval = self.interval_minutes * 60
        return {
            source: interval / 2 if n % 2 else interval
            for n, source in enumerate(self._orchestrators)
        }

    def start(self) -> None:
        if self.is_running:
            logger.info("Scheduler already running")
            return

        self._stop_event.clear()
        interval = self.interval_minutes * 60
        self._threads = []
        for source, first_wait in self.first_waits().items():
            self._threads.append(
                threading.Thread(
                    target=self._sync_loop,
                    args=(source, first_wait, interval),
                    name=f"sync-{source}",
                    daemon=True,
                )
            )
        if self._catalog_adapter is not None:
            self._threads.append(
                threading.Thread(target=self._catalog_loop, name="catalog-refresh", daemon=True)
            )
        for thread in self._threads:
            thread.start()

        logger.info(
            "Scheduler started",
            interval_minutes=self.interval_minutes,
            sources=self.sources,
            catalog_refresh=f"{self._catalog_hour:02d}:{self._catalog_minute:02d} {self._tz.key}"
            if self._catalog_adapter is not None
            else None,
        )

    def stop(self, timeout: float = 30.0) -> None:
        self._stop_event.set()
        for thread in self._threads:
            if thread.is_alive():
                thread.join(timeout=timeout)
        self._threads = []
        logger.info("Scheduler stopped")

    def _sync_loop(self, source: str, first_wait: float, interval: float) -> None:
        wait = first_wait
        while not self._stop_event.wait(timeout=wait):
            try:
                self.run_now(source, triggered_by="scheduler")
            except SyncInProgressError:
                logger.info("Scheduled sync skipped, previous run still in flight", source=source)
            except Exception:
                logger.exception("Scheduled sync failed", source=source)
            wait = interval

    def _catalog_loop(self) -> None:
        while True:
            now = self._clock()
            target = next_daily_run(now, self._catalog_hour, self._catalog_minute, self._tz)
            if self._stop_event.wait(timeout=(target - now).total_seconds()):
                return
            try:
                self.refresh_catalog_now(triggered_by="scheduler")
            except SyncInProgressError:
                logger.info("Catalog refresh skipped, previous run still in flight")
            except Exception:
                logger.exception("Scheduled catalog refresh failed")

    # ---------- runs gardés ----------
    def _orchestrator(self, source: str) -> SyncOrchestrator:
        orchestrator = self._orchestrators.get(source)
        if orchestrator is None:
            raise SourceNotConfiguredError(source)
        return orchestrator

    def run_now(
        self,
        source: str,
        options: SyncOptions | None = None,
        *,
        triggered_by: str = "manual",
        actor: str = "system",
    ) -> FullSyncResult:
        orchestrator = self._orchestrator(source)
        with self._guards[source].hold():
            with recorded_run(self._session_factory, source, triggered_by, self._clock) as run:
                with self._session_factory() as db:
                    try:
                        result = orchestrator.full_sync(db, options or self.default_options, actor=actor)
                    except SyncAbortedError as exc:
                        run.record(exc.partial.counts(), _run_details(exc.partial))
                        raise
                run.record(result.counts(), _run_details(result))
        return result

    def backfill_details(
        self,
        source: str,
        *,
        limit: int | None = None,
        force_all: bool = False,
        triggered_by: str = "manual",
    ) -> DetailSyncResult:
        orchestrator = self._orchestrator(source)
        with self._guards[source].hold():
            with recorded_run(self._session_factory, source, triggered_by, self._clock) as run:
                with self._session_factory() as db:
                    try:
                        result = orchestrator.backfill_details(db, limit=limit, force_all=force_all)
                    except SyncAbortedError as exc:
                        partial = exc.partial
                        run.record({"found": partial.total, "updated": partial.synced, "failed": partial.skipped})
                        raise
                run.record(
                    {"found": result.total, "updated": result.synced, "failed": result.skipped},
                    _run_details(result),
                )
        return result

    def process_stock(
        self,
        source: str,
        *,
        actor: str = "system",
        triggered_by: str = "manual",
    ) -> StockProcessResult:
        orchestrator = self._orchestrator(source)
        with self._guards[source].hold():
            with recorded_run(self._session_factory, source, triggered_by, self._clock) as run:
                with self._session_factory() as db:
                    result = orchestrator.process_eligible(db, actor=actor)
                run.record(
                    {"found": result.total, "processed": result.processed, "failed": result.skipped},
                    _run_details(result),
                )
        return result

    def requeue(self, source: str, key: str) -> None:
        orchestrator = self._orchestrator(source)
        with self._guards[source].hold():
            with self._session_factory() as db:
                orchestrator.requeue(db, key)

    def refresh_catalog_now(self, *, triggered_by: str = "manual") -> CatalogRefreshResult:
        if self._catalog_adapter is None:
            raise SourceNotConfiguredError(SyncSource.catalog.value)

        source = SyncSource.catalog.value
        with self._guards[source].hold():
            with recorded_run(self._session_factory, source, triggered_by, self._clock) as run:
                try:
                    raws = self._catalog_adapter.fetch_catalog(None)
                except UNAVAILABLE_ERRORS as exc:
                    if isinstance(exc, SourceUnavailableError):
                        raise
                    raise SourceUnavailableError(str(exc)) from exc

                items: list[RawCatalogItem] = []
                invalid: list[str] = []
                for raw in raws:
                    try:
                        items.append(RawCatalogItem.model_validate(raw))
                    except ValidationError as exc:
                        invalid.append(str(exc))

                with self._session_factory() as db:
                    result = self._resolver.refresh_catalog(db, items)
                result.total += len(invalid)
                result.skipped += len(invalid)
                result.errors.extend(invalid[: max(0, MAX_DETAIL_ITEMS - len(result.errors))])

                run.record(
                    {
                        "found": result.total,
                        "inserted": result.created,
                        "updated": result.updated,
                        "failed": result.skipped,
                    },
                    {"errors": result.errors[:MAX_DETAIL_ITEMS]},
                )
        return result

    # ---------- status ----------
    def status(self) -> dict[str, Any]:
        sources: dict[str, Any] = {}
        with self._session_factory() as db:
            for source, guard in self._guards.items():
                if source == SyncSource.catalog.value and self._catalog_adapter is None:
                    continue
                last = latest_run(db, source)
                sources[source] = {
                    "state": "running" if guard.is_held else "idle",
                    "last_run": None
                    if last is None
                    else {
                        "id": last.id,
                        "status": last.status.value,
                        "started_at": last.started_at,
                        "ended_at": last.ended_at,
                        "records_found": last.records_found,
                        "records_failed": last.records_failed,
                    },
                }
        return {
            "scheduler_running": self.is_running,
            "interval_minutes": self.interval_minutes,
            "sources": sources,
        }


def build_scheduler(settings, session_factory: Callable[[], Session]) -> SyncScheduler | None:
    """Scheduler câblé depuis la config. Aucun adapter déclaré -> None."""
    resolver = IdentityResolver()
    orchestrators: dict[str, SyncOrchestrator] = {}
    catalog_adapter = None

    def _wrap(path: str, name: str) -> RetryingAdapter:
        return RetryingAdapter(
            load_adapter(path),
            attempts=settings.source_retry_attempts,
            delay=settings.source_retry_delay_seconds,
            name=name,
        )

    if settings.customerconnect_adapter:
        orchestrators[SyncSource.customerconnect.value] = PurchaseOrderSync(
            _wrap(settings.customerconnect_adapter, SyncSource.customerconnect.value),
            resolver,
            detail_delay=settings.customerconnect_detail_delay_seconds,
            max_errors=settings.max_reported_errors,
        )
    if settings.routestar_adapter:
        adapter = _wrap(settings.routestar_adapter, SyncSource.routestar.value)
        orchestrators[SyncSource.routestar.value] = SalesInvoiceSync(
            adapter,
            resolver,
            detail_delay=settings.routestar_detail_delay_seconds,
            max_errors=settings.max_reported_errors,
        )
        catalog_adapter = adapter

    if not orchestrators:
        return None

    limit = settings.sync_list_limit
    return SyncScheduler(
        session_factory,
        orchestrators,
        interval_minutes=settings.sync_interval_minutes,
        default_options=SyncOptions(limit=limit or None, process_stock=settings.sync_process_stock),
        catalog_adapter=catalog_adapter,
        resolver=resolver,
        catalog_hour=settings.catalog_refresh_hour,
        catalog_minute=settings.catalog_refresh_minute,
        timezone=settings.scheduler_timezone,
    )
