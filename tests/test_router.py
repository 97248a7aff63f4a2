from types import SimpleNamespace

import pytest
from fastapi import FastAPI
from fastapi.testclient import TestClient

from routers import fbt
from settings import BackfillSettings, CleanupSettings
from services.fbt.errors import PoisonRecordError, TransientStoreError
from services.fbt.service import get_fbt_service


class FakeService:
    def __init__(self):
        self.calls = []
        self.backfill = SimpleNamespace(settings=BackfillSettings(batch_size=50))
        self.stats_backfill = SimpleNamespace(settings=BackfillSettings(batch_size=50))
        self.cleanup = SimpleNamespace(settings=CleanupSettings())
        self.order_error = None
        self.recommendation_error = None

    async def recommendations_for(self, product_id, limit=None, cart_product_ids=None):
        self.calls.append(("recommendations", product_id, limit, cart_product_ids))
        if self.recommendation_error:
            raise self.recommendation_error
        return [11, 12]

    async def process_completed_order(self, order_id):
        if self.order_error:
            raise self.order_error
        return {"order_id": order_id, "status": "processed", "products": [1, 2], "pairs": 1, "reason": None}

    async def schedule_completed_order(self, order_id):
        return {"order_id": order_id, "scheduled": True}

    async def process_orders_batch(self, order_ids):
        self.calls.append(("batch", list(order_ids)))
        return {"requested": len(order_ids), "processed": len(order_ids), "skipped": 0, "errors": 0, "pairs": 0, "failed_order_ids": []}

    async def start_backfill(self, rebuild=False):
        self.calls.append(("start", rebuild))
        return {"job_name": "fbt_backfill", "state": "running", "total": 3, "remaining": 3, "last_processed_id": 0}

    async def run_backfill_batch(self, batch_size=None, cursor=None):
        self.calls.append(("process", batch_size, cursor))
        return {"processed": 2, "errors": 0, "skipped": 0, "last_order_id": 9, "remaining": 1, "completed": False}

    async def backfill_status(self):
        return {"job_name": "fbt_backfill", "state": "completed", "completed": True}

    async def start_stats_backfill(self, rebuild=False):
        return {"job_name": "fbt_stats_backfill", "state": "running", "total": 45, "remaining": 45}

    async def run_stats_backfill_batch(self, batch_size=None, cursor=None):
        return {"processed": 1, "errors": 0, "skipped": 0, "last_order_id": 4, "remaining": 0, "completed": True}

    async def stats_backfill_status(self):
        return {"job_name": "fbt_stats_backfill", "state": "not_started", "completed": False}

    async def run_cleanup(self, settings=None):
        self.calls.append(("cleanup", settings))
        return {"low_count_deleted": 1, "orphaned_deleted": 0, "stale_deleted": 0, "stats_deleted": 0, "cache_expired_deleted": 2}

    async def purge_product(self, product_id):
        return {"product_id": product_id, "pairs_deleted": 4, "stats_deleted": 1}


@pytest.fixture
def fake_service():
    return FakeService()


@pytest.fixture
def client(fake_service):
    app = FastAPI()
    app.include_router(fbt.router)
    app.dependency_overrides[get_fbt_service] = lambda: fake_service
    return TestClient(app)


def test_recommendations_parse_limit_and_cart(client, fake_service):
    response = client.get("/api/fbt/recommendations/5", params={"limit": "99", "cart": "3, 4,x"})
    assert response.status_code == 200
    assert response.json() == {"productId": 5, "recommendations": [11, 12]}
    assert fake_service.calls[-1] == ("recommendations", 5, 20, [3, 4])


def test_recommendations_fail_open(client, fake_service):
    fake_service.recommendation_error = RuntimeError("boom")
    response = client.get("/api/fbt/recommendations/5")
    assert response.status_code == 200
    assert response.json()["recommendations"] == []


def test_order_hook_returns_camel_case(client):
    response = client.post("/api/fbt/orders/7/completed")
    assert response.status_code == 200
    assert response.json()["orderId"] == 7
    assert response.json()["pairs"] == 1

    deferred = client.post("/api/fbt/orders/7/completed", params={"defer": "true"})
    assert deferred.json() == {"orderId": 7, "scheduled": True}


@pytest.mark.parametrize(
    "error, status",
    [
        (PoisonRecordError(7, "line item without product or variation id"), 422),
        (TransientStoreError("db down"), 503),
        (RuntimeError("unexpected"), 500),
    ],
)
def test_order_hook_error_mapping(client, fake_service, error, status):
    fake_service.order_error = error
    assert client.post("/api/fbt/orders/7/completed").status_code == status


def test_orders_batch_validates_body(client, fake_service):
    assert client.post("/api/fbt/orders/batch", json={"orderIds": []}).status_code == 422
    response = client.post("/api/fbt/orders/batch", json={"orderIds": [1, 2]})
    assert response.status_code == 200
    assert response.json()["failedOrderIds"] == []
    assert fake_service.calls[-1] == ("batch", [1, 2])


def test_backfill_endpoints(client, fake_service):
    started = client.post("/api/fbt/backfill/start", json={"rebuild": True, "batchSize": 5})
    assert started.status_code == 200
    assert started.json()["batchSize"] == 10
    assert started.json()["batchesCount"] == 1
    assert started.json()["lastProcessedId"] == 0
    assert ("start", True) in fake_service.calls

    processed = client.post("/api/fbt/backfill/process", json={"batchSize": 25, "lastOrderId": 3})
    assert processed.json()["lastOrderId"] == 9
    assert fake_service.calls[-1] == ("process", 25, 3)

    assert client.get("/api/fbt/backfill/status").json()["completed"] is True
    assert client.get("/api/fbt/stats-backfill/status").json()["state"] == "not_started"
    assert client.post("/api/fbt/stats-backfill/process", json={}).json()["completed"] is True


def test_start_reports_batches_needed_at_clamped_size(client):
    started = client.post("/api/fbt/stats-backfill/start", json={"batchSize": 20}).json()
    assert (started["batchSize"], started["batchesCount"]) == (20, 3)

    defaulted = client.post("/api/fbt/stats-backfill/start", json={}).json()
    assert (defaulted["batchSize"], defaulted["batchesCount"]) == (50, 1)


def test_cleanup_overrides_and_purge(client, fake_service):
    response = client.post("/api/fbt/cleanup", json={"minPairCount": 4})
    assert response.json()["lowCountDeleted"] == 1
    assert response.json()["cacheExpiredDeleted"] == 2
    settings = fake_service.calls[-1][1]
    assert settings.min_pair_count == 4
    assert settings.retention_days == CleanupSettings().retention_days

    purged = client.delete("/api/fbt/products/8")
    assert purged.json() == {"productId": 8, "pairsDeleted": 4, "statsDeleted": 1}
