from datetime import date, datetime, timedelta
from zoneinfo import ZoneInfo

import pytest
from fastapi import FastAPI
from fastapi.testclient import TestClient

from config import ConfigurationError, MarketplaceAccount
from routes import forecast_api, register_forecast_routes, register_sync_routes
from routes import sync_routes
from services.db import SalesDb
from services.ingestion import SyncPipeline

ACCOUNT = MarketplaceAccount(id="1", name="main", vendor_id="A0001", access_key="ak", secret_key="sk")


class RevenueOnlyClient:
    def __init__(self, account):
        self.calls = []

    def get_revenue_history(self, recognition_from, recognition_to, token=None):
        self.calls.append((recognition_from, recognition_to))
        return {"data": [{"orderId": "R1", "saleDate": recognition_from.isoformat(), "items": []}], "hasNext": False}


@pytest.fixture()
def db(tmp_path):
    store = SalesDb(tmp_path / "sales.db")
    store.ensure_schema()
    store.execute_write("INSERT INTO products (id, sku, name, category) VALUES ('p1', 'S1', 'Kimchi', 'Food')")
    store.execute_write("INSERT INTO products (id, sku, name, category) VALUES ('p2', 'S2', 'Mug', NULL)")
    store.execute_write("INSERT INTO inventory (product_id, location, quantity) VALUES ('p2', 'coupang', 9)")
    sold_at = datetime.now(ZoneInfo("Asia/Seoul")) - timedelta(days=2)
    store.execute_write("INSERT INTO sales (product_id, quantity, sold_at) VALUES ('p1', 4, ?)", (sold_at.isoformat(),))
    return store


def _client(db) -> TestClient:
    app = FastAPI()
    app.state.sales_db = db
    app.state.sync_pipeline = SyncPipeline(db, client_factory=RevenueOnlyClient, sleep=lambda s: None)
    register_forecast_routes(app)
    register_sync_routes(app)
    return TestClient(app)


def test_forecast_endpoint(db):
    resp = _client(db).get("/api/forecast")
    assert resp.status_code == 200
    body = resp.json()
    assert body["summary"] == {"total": 2, "at_risk": 1}
    assert [item["product_id"] for item in body["items"]] == ["p1", "p2"]
    assert body["items"][0]["sales"]["d7"] == 4
    assert body["items"][1]["category"] == "Uncategorized"
    assert body["items"][1]["coupang_qty"] == 9
    assert body["categories"] == ["Food"]


def test_forecast_filters(db):
    client = _client(db)
    body = client.get("/api/forecast", params={"only_risk": "true"}).json()
    assert [item["product_id"] for item in body["items"]] == ["p1"]
    assert body["summary"] == {"total": 1, "at_risk": 1}
    body = client.get("/api/forecast", params={"category": "Uncategorized"}).json()
    assert [item["product_id"] for item in body["items"]] == ["p2"]


def test_forecast_store_failure_is_503(db, monkeypatch):
    def broken(*args, **kwargs):
        raise forecast_api.StoreError("disk gone")

    monkeypatch.setattr(forecast_api, "generate_forecast", broken)
    resp = _client(db).get("/api/forecast")
    assert resp.status_code == 503


def test_forecast_without_store_is_503():
    app = FastAPI()
    register_forecast_routes(app)
    assert TestClient(app).get("/api/forecast").status_code == 503


def test_sync_revenue_and_logs(db, monkeypatch):
    monkeypatch.setattr(sync_routes, "require_marketplace_accounts", lambda: [ACCOUNT])
    client = _client(db)

    resp = client.post("/api/sync/revenue", json={"from": "2026-01-10", "to": "2026-01-11"})
    assert resp.status_code == 200
    body = resp.json()
    assert body["ok"] is True
    assert body["synced"] == 1
    assert body["from"] == "2026-01-10"

    logs = client.get("/api/sync/logs").json()["logs"]
    assert logs[0]["sync_type"] == "revenue"
    assert logs[0]["status"] == "success"


def test_sync_default_range(db, monkeypatch):
    monkeypatch.setattr(sync_routes, "require_marketplace_accounts", lambda: [ACCOUNT])
    monkeypatch.setattr(sync_routes, "default_range", lambda: (date(2026, 1, 1), date(2026, 1, 4)))
    body = _client(db).post("/api/sync/revenue").json()
    assert (body["from"], body["to"]) == ("2026-01-01", "2026-01-04")


def test_sync_unknown_source(db):
    assert _client(db).post("/api/sync/nope").status_code == 404


def test_sync_reversed_range(db, monkeypatch):
    monkeypatch.setattr(sync_routes, "require_marketplace_accounts", lambda: [ACCOUNT])
    resp = _client(db).post("/api/sync/revenue", json={"from": "2026-01-11", "to": "2026-01-10"})
    assert resp.status_code == 400


def test_sync_without_accounts(db, monkeypatch):
    def missing():
        raise ConfigurationError("No marketplace accounts configured")

    monkeypatch.setattr(sync_routes, "require_marketplace_accounts", missing)
    resp = _client(db).post("/api/sync/revenue", json={"from": "2026-01-10", "to": "2026-01-11"})
    assert resp.status_code == 400
    assert "No marketplace accounts" in resp.json()["detail"]
