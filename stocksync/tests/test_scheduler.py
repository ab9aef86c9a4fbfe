import threading
from datetime import datetime, timezone
from zoneinfo import ZoneInfo

import pytest
from sqlalchemy import func, select

from stocksync.app.core.config import Settings
from stocksync.app.db.models.core_types import SyncStatus
from stocksync.app.db.models.models_v1 import SyncLog
from stocksync.services.errors import SourceNotConfiguredError, SyncAbortedError, SyncInProgressError
from stocksync.services.procurement import PurchaseOrderSync
from stocksync.services.sales import SalesInvoiceSync
from stocksync.services.scheduler import SourceGuard, SyncScheduler, build_scheduler, next_daily_run
from stocksync.services.sources import RetryingAdapter
from stocksync.services.sync import SyncOptions
from stocksync.services.sync_log import latest_run, recent_runs, run_stats
from stocksync.tests.fakes import FakePortal

ORDER = {"orderNumber": "1001", "status": "Complete", "orderDate": "01/15/2026", "vendorName": "Acme"}
DETAIL = {"lineItems": [{"sku": "SKU-A", "name": "Alpha Widget", "quantity": 5}]}


class BlockingPortal(FakePortal):
    """fetch_list reste bloqué jusqu'à release.set()."""

    def __init__(self, **kwargs):
        super().__init__(**kwargs)
        self.entered = threading.Event()
        self.release = threading.Event()

    def fetch_list(self, limit, direction, feed):
        self.entered.set()
        self.release.wait(timeout=10)
        return super().fetch_list(limit, direction, feed)


@pytest.fixture
def portal():
    return FakePortal(feeds={"orders": [ORDER]}, details={"1001": DETAIL})


@pytest.fixture
def scheduler(session_factory, portal, clock):
    return SyncScheduler(
        session_factory,
        {"customerconnect": PurchaseOrderSync(portal, clock=clock)},
        interval_minutes=60,
        clock=clock,
    )


def _logs(db):
    return db.execute(select(SyncLog).order_by(SyncLog.id)).scalars().all()


def test_source_guard_is_exclusive():
    guard = SourceGuard("customerconnect")
    with guard.hold():
        assert guard.is_held
        with pytest.raises(SyncInProgressError):
            with guard.hold():
                pass
    assert not guard.is_held


def test_successful_run_is_logged(scheduler, db_session, products):
    result = scheduler.run_now("customerconnect", triggered_by="alice")

    assert result.stock.movements == 1
    log = latest_run(db_session, "customerconnect")
    assert log.status == SyncStatus.success
    assert log.triggered_by == "alice"
    assert (log.records_found, log.records_inserted, log.records_failed, log.records_processed) == (1, 1, 0, 1)
    assert log.ended_at is not None
    assert log.duration_ms is not None
    assert log.details == {"errors": [], "events": []}


def test_run_with_record_failures_is_partial(scheduler, portal, db_session, products):
    portal.feeds["orders"] = [ORDER, {"orderNumber": "1002", "total": "lots"}]

    scheduler.run_now("customerconnect")

    log = latest_run(db_session, "customerconnect")
    assert log.status == SyncStatus.partial
    assert log.records_failed == 1
    assert log.details["errors"][0]["key"] == "1002"


def test_unavailable_source_marks_run_failed(scheduler, portal, db_session):
    portal.fail_on["fetch_list"] = ConnectionError("portal down")

    with pytest.raises(SyncAbortedError):
        scheduler.run_now("customerconnect")

    log = latest_run(db_session, "customerconnect")
    assert log.status == SyncStatus.failed
    assert "portal down" in log.error_message
    assert "SyncAbortedError" in log.error_stack
    assert log.ended_at is not None


def test_second_run_for_same_source_is_rejected(session_factory, clock, db_session):
    """
    GIVEN
    - un run customerconnect bloqué dans fetch_list

    THEN
    - tout autre run customerconnect échoue immédiatement (SyncInProgressError)
    - aucune ligne de journal pour le run refusé
    """
    # ---------- ARRANGE ----------
    portal = BlockingPortal(feeds={"orders": [ORDER]}, details={"1001": DETAIL})
    scheduler = SyncScheduler(
        session_factory,
        {"customerconnect": PurchaseOrderSync(portal, clock=clock)},
        clock=clock,
    )
    outcome = {}

    def first_run():
        outcome["result"] = scheduler.run_now("customerconnect")

    worker = threading.Thread(target=first_run)
    worker.start()
    assert portal.entered.wait(timeout=5)

    try:
        # ---------- ACT / ASSERT ----------
        with pytest.raises(SyncInProgressError):
            scheduler.run_now("customerconnect")
        with pytest.raises(SyncInProgressError):
            scheduler.process_stock("customerconnect")
        assert scheduler.status()["sources"]["customerconnect"]["state"] == "running"
    finally:
        portal.release.set()
        worker.join(timeout=10)

    assert outcome["result"].listing.created == 1
    assert scheduler.status()["sources"]["customerconnect"]["state"] == "idle"
    assert db_session.execute(select(func.count(SyncLog.id))).scalar_one() == 1


def test_unknown_source_is_not_configured(scheduler):
    with pytest.raises(SourceNotConfiguredError):
        scheduler.run_now("routestar")
    with pytest.raises(SourceNotConfiguredError):
        scheduler.refresh_catalog_now()


def test_backfill_and_stock_steps_are_logged(scheduler, db_session, products):
    scheduler.run_now("customerconnect", SyncOptions(process_stock=False))
    details = scheduler.backfill_details("customerconnect", force_all=True)
    stock = scheduler.process_stock("customerconnect", actor="bob")

    assert details.synced == 1
    assert stock.processed == 1
    logs = _logs(db_session)
    assert [l.status for l in logs] == [SyncStatus.success] * 3
    assert logs[2].records_processed == 1


def test_requeue_goes_through_the_guard(scheduler, db_session, products):
    scheduler.run_now("customerconnect")
    scheduler.requeue("customerconnect", "1001")

    assert scheduler.process_stock("customerconnect").movements == 0
    # requeue n'écrit pas de journal
    assert len(_logs(db_session)) == 2


def test_catalog_refresh(session_factory, clock, db_session, products):
    catalog = FakePortal(
        catalog=[
            {"itemName": "SKU-Z", "description": "Zeta Bolt", "salesPrice": "$4.00"},
            {"itemName": "SKU-A", "description": "Alpha Widget"},
            {"description": "no item name"},
        ]
    )
    scheduler = SyncScheduler(session_factory, {}, catalog_adapter=catalog, clock=clock)

    result = scheduler.refresh_catalog_now(triggered_by="alice")

    assert (result.created, result.updated, result.skipped, result.total) == (1, 1, 1, 3)
    log = latest_run(db_session, "catalog")
    assert log.status == SyncStatus.partial
    assert (log.records_found, log.records_inserted, log.records_updated) == (3, 1, 1)
    assert "catalog" in scheduler.status()["sources"]


def test_status_reports_last_run(scheduler, products):
    assert scheduler.status()["sources"]["customerconnect"]["last_run"] is None

    scheduler.run_now("customerconnect")
    status = scheduler.status()

    assert status["scheduler_running"] is False
    assert status["interval_minutes"] == 60
    assert "catalog" not in status["sources"]
    last = status["sources"]["customerconnect"]["last_run"]
    assert last["status"] == "SUCCESS"
    assert last["records_found"] == 1


def test_start_and_stop(scheduler):
    scheduler.start()
    try:
        assert scheduler.is_running
    finally:
        scheduler.stop(timeout=5)
    assert not scheduler.is_running


def test_run_history_and_stats(scheduler, portal, db_session, clock, products):
    scheduler.run_now("customerconnect")
    portal.fail_on["fetch_list"] = TimeoutError("slow")
    with pytest.raises(SyncAbortedError):
        scheduler.run_now("customerconnect")

    failed = recent_runs(db_session, status=SyncStatus.failed)
    assert len(failed) == 1

    stats = run_stats(db_session, now=clock())
    assert len(stats) == 1
    row = stats[0]
    assert row["source"] == "customerconnect"
    assert (row["total_runs"], row["successful_runs"], row["failed_runs"]) == (2, 1, 1)
    assert row["records_inserted"] == 1


def test_next_daily_run():
    tz = ZoneInfo("America/New_York")
    # 15:00 UTC = 10:00 à New York (heure d'hiver)
    now = datetime(2026, 3, 2, 15, 0, tzinfo=timezone.utc)

    assert next_daily_run(now, 3, 0, tz) == datetime(2026, 3, 3, 3, 0, tzinfo=tz)
    assert next_daily_run(now, 12, 30, tz) == datetime(2026, 3, 2, 12, 30, tzinfo=tz)
    assert next_daily_run(now, 10, 0, tz) == datetime(2026, 3, 3, 10, 0, tzinfo=tz)


def test_build_scheduler_from_settings(session_factory):
    settings = Settings(
        customerconnect_adapter="stocksync.tests.fakes:FakePortal",
        routestar_adapter="stocksync.tests.fakes:FakePortal",
        sync_interval_minutes=15,
    )

    scheduler = build_scheduler(settings, session_factory)

    assert scheduler.sources == ["customerconnect", "routestar"]
    assert scheduler.interval_minutes == 15
    assert isinstance(scheduler._orchestrators["routestar"].adapter, RetryingAdapter)
    assert "catalog" in scheduler.status()["sources"]


def test_build_scheduler_without_adapters(session_factory):
    assert build_scheduler(Settings(customerconnect_adapter=None, routestar_adapter=None), session_factory) is None


def test_guard_is_released_when_the_run_raises(scheduler, portal, db_session, products):
    guard = SourceGuard("customerconnect")
    with pytest.raises(RuntimeError):
        with guard.hold():
            raise RuntimeError("boom")
    assert not guard.is_held
    with guard.hold():
        assert guard.is_held

    portal.fail_on["fetch_list"] = ConnectionError("portal down")
    with pytest.raises(SyncAbortedError):
        scheduler.run_now("customerconnect")

    # le run suivant est accepté
    del portal.fail_on["fetch_list"]
    result = scheduler.run_now("customerconnect")

    assert result.listing.created == 1
    assert [l.status for l in _logs(db_session)] == [SyncStatus.failed, SyncStatus.success]


def test_second_source_timer_is_offset_by_half_an_interval(session_factory, clock, monkeypatch):
    scheduler = SyncScheduler(
        session_factory,
        {
            "customerconnect": PurchaseOrderSync(FakePortal(), clock=clock),
            "routestar": SalesInvoiceSync(FakePortal(), clock=clock),
        },
        interval_minutes=30,
        clock=clock,
    )
    started = {}
    monkeypatch.setattr(
        scheduler,
        "_sync_loop",
        lambda source, first_wait, interval: started.setdefault(source, (first_wait, interval)),
    )

    assert scheduler.first_waits() == {"customerconnect": 1800, "routestar": 900}

    scheduler.start()
    scheduler.stop(timeout=5)

    assert started == {"customerconnect": (1800, 1800), "routestar": (900, 1800)}
