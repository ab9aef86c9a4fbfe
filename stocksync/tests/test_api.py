import pytest
from fastapi.testclient import TestClient

from stocksync.app.api.deps import get_db
from stocksync.app.main import app
from stocksync.services.procurement import PurchaseOrderSync
from stocksync.services.scheduler import SyncScheduler
from stocksync.tests.fakes import FakePortal

ORDER = {"orderNumber": "1001", "status": "Complete", "orderDate": "01/15/2026", "vendorName": "Acme"}


@pytest.fixture
def portal():
    return FakePortal(
        feeds={"orders": [ORDER]},
        details={
            "1001": {
                "lineItems": [
                    {"sku": "SKU-A", "name": "Alpha Widget", "quantity": 5},
                    {"code": "V-9", "name": "Foo Widget", "quantity": 2},
                ]
            }
        },
    )


@pytest.fixture
def scheduler(session_factory, portal, clock):
    return SyncScheduler(
        session_factory,
        {"customerconnect": PurchaseOrderSync(portal, clock=clock)},
        clock=clock,
    )


@pytest.fixture
def client(session_factory, scheduler):
    def override_get_db():
        db = session_factory()
        try:
            yield db
        finally:
            db.close()

    app.dependency_overrides[get_db] = override_get_db
    app.state.scheduler = scheduler
    try:
        # pas de "with" : le lifespan (scheduler réel) ne tourne pas
        yield TestClient(app)
    finally:
        app.dependency_overrides.clear()
        app.state.scheduler = None


@pytest.fixture
def catalog(client):
    for sku, name in (("sku-a", "Alpha Widget"), ("SKU-B", "Beta Gasket")):
        r = client.post("/v1/products", json={"sku": sku, "name": name})
        assert r.status_code == 200, r.text
    return client


def _adjust(client, sku="SKU-A", quantity=12, key=None, actor="alice"):
    headers = {"X-Actor": actor}
    if key is not None:
        headers["Idempotency-Key"] = key
    return client.post(
        "/v1/stock-movements/adjustments",
        json={"sku": sku, "quantity": quantity, "reason": "inventaire"},
        headers=headers,
    )


def test_health(client):
    assert client.get("/v1/health").json() == {"status": "ok"}


def test_create_product(client):
    r = client.post("/v1/products", json={"sku": "  sku-a ", "name": "Alpha Widget"})
    assert r.status_code == 200
    assert r.json()["sku"] == "SKU-A"

    assert client.post("/v1/products", json={"sku": "SKU-A", "name": "Again"}).status_code == 409
    assert client.post("/v1/products", json={"sku": "temp-x-1", "name": "Nope"}).status_code == 400

    listed = client.get("/v1/products").json()
    assert [p["sku"] for p in listed] == ["SKU-A"]


def test_adjustment_endpoint_is_idempotent(catalog):
    first = _adjust(catalog, key="adj-1")
    replay = _adjust(catalog, key="adj-1")

    assert first.status_code == 200
    assert first.json()["replayed"] is False
    assert replay.json()["replayed"] is True
    assert replay.json()["id"] == first.json()["id"]

    summary = catalog.get("/v1/stock/SKU-A").json()
    assert summary["available_qty"] == 12
    assert summary["is_low_stock"] is False

    moves = catalog.get("/v1/stock/SKU-A/movements").json()
    assert len(moves) == 1
    assert moves[0]["movement_type"] == "ADJUST"
    assert moves[0]["created_by"] == "alice"


def test_adjustment_errors(catalog):
    assert _adjust(catalog, quantity=0).status_code == 422
    assert _adjust(catalog, sku="NOPE").status_code == 404
    assert _adjust(catalog, key="   ").status_code == 400


def test_stock_reads(catalog):
    _adjust(catalog, sku="SKU-A", quantity=3)
    _adjust(catalog, sku="SKU-B", quantity=40)

    low = catalog.get("/v1/stock", params={"low_stock_only": True}).json()
    assert [s["sku"] for s in low] == ["SKU-A"]

    totals = catalog.get("/v1/stock/sku-a/totals").json()
    assert totals["total_adjust"] == 3
    assert totals["current_stock"] == 3

    assert catalog.get("/v1/stock/UNKNOWN").status_code == 404
    assert catalog.get("/v1/stock", params={"limit": 0}).status_code == 400
    assert catalog.post("/v1/stock/recalculate").json() == {"recalculated": 2}
    assert catalog.post("/v1/stock/SKU-B/recalculate").json()["available_qty"] == 40


def test_recalculate_unknown_sku_is_404(catalog):
    assert catalog.post("/v1/stock/NOPE-404/recalculate").status_code == 404
    assert catalog.get("/v1/stock/NOPE-404").status_code == 404
    assert catalog.get("/v1/stock").json() == []


def test_full_sync_endpoint(catalog):
    r = catalog.post("/v1/sync/customerconnect/full", json={"limit": 10}, headers={"X-Actor": "bob"})

    assert r.status_code == 200, r.text
    body = r.json()
    assert body["counts"] == {"found": 1, "inserted": 1, "updated": 0, "failed": 0, "processed": 1}
    assert body["stock"]["movements"] == 2
    assert body["details"]["events"][0]["kind"] == "unmapped_item"

    logs = catalog.get("/v1/sync/logs").json()
    assert len(logs) == 1
    assert (logs[0]["status"], logs[0]["triggered_by"]) == ("SUCCESS", "bob")

    status = catalog.get("/v1/sync/status").json()
    assert status["customerconnect"]["records_found"] == 1
    assert status["routestar"] is None

    stats = catalog.get("/v1/sync/stats").json()
    assert stats[0]["source"] == "customerconnect"


def test_sync_error_mapping(client, portal, scheduler):
    assert client.post("/v1/sync/routestar/full").status_code == 503
    assert client.post("/v1/sync/catalog/refresh").status_code == 503
    assert client.post("/v1/sync/nowhere/full").status_code == 422

    with scheduler._guards["customerconnect"].hold():
        assert client.post("/v1/sync/customerconnect/full").status_code == 409

    portal.fail_on["fetch_list"] = ConnectionError("portal down")
    r = client.post("/v1/sync/customerconnect/full")
    assert r.status_code == 502
    assert r.json()["detail"]["counts"]["found"] == 0


def test_retry_record_endpoint(catalog):
    catalog.post("/v1/sync/customerconnect/full")

    r = catalog.post("/v1/sync/customerconnect/records/1001/retry")
    assert r.json() == {"source": "customerconnect", "key": "1001", "requeued": True}
    assert catalog.post("/v1/sync/customerconnect/records/9999/retry").status_code == 404

    stock = catalog.post("/v1/sync/customerconnect/stock").json()
    assert (stock["processed"], stock["movements"]) == (1, 0)


def test_unmapped_and_remap(catalog):
    catalog.post("/v1/sync/customerconnect/full", json={"process_stock": False})

    unmapped = catalog.get("/v1/products/unmapped").json()
    assert len(unmapped) == 1
    temp_sku = unmapped[0]["sku"]
    assert temp_sku.startswith("TEMP-FOO-")

    r = catalog.post("/v1/products/remap", json={"temp_sku": temp_sku, "real_sku": "SKU-B"}, headers={"X-Actor": "alice"})
    assert r.status_code == 200, r.text
    assert r.json() == {"sku": "SKU-B", "merged": True, "lines_rewritten": 1}
    assert catalog.get("/v1/products/unmapped").json() == []

    # les lignes réécrites passent en stock sous le vrai SKU
    catalog.post("/v1/sync/customerconnect/stock")
    assert catalog.get("/v1/stock/SKU-B").json()["available_qty"] == 2

    assert catalog.post("/v1/products/remap", json={"temp_sku": "TEMP-NOPE-1", "real_sku": "SKU-B"}).status_code == 404
    assert catalog.post("/v1/products/remap", json={"temp_sku": temp_sku, "real_sku": "TEMP-X-2"}).status_code == 400


def test_details_backfill_endpoint(catalog):
    catalog.post("/v1/sync/customerconnect/full", json={"process_stock": False})

    r = catalog.post("/v1/sync/customerconnect/details", json={"force_all": True})
    assert r.status_code == 200
    assert r.json()["synced"] == 1


def test_scheduler_endpoints(client):
    status = client.get("/v1/scheduler/status").json()
    assert status["scheduler_running"] is False
    assert status["sources"]["customerconnect"]["state"] == "idle"

    try:
        assert client.post("/v1/scheduler/start").json() == {"scheduler_running": True}
    finally:
        assert client.post("/v1/scheduler/stop").json() == {"scheduler_running": False}

    app.state.scheduler = None
    assert client.get("/v1/scheduler/status").status_code == 503
