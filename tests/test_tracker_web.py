import asyncio
from datetime import timedelta

import pytest
from fastapi.testclient import TestClient

from conftest import RAY_MINT, USDC_MINT, FakeMarketData, InMemoryTokenStore
from token_tracker import format_timestamp, parse_timestamp, utcnow
from tracker_web import RefreshBusyError, TrackerService, create_app


@pytest.fixture
def app_client(store, market_data):
    app = create_app(store=store, market_data=market_data, auto_refresh_seconds=0)
    with TestClient(app) as client:
        yield client


def _make_overdue(store, address, minutes=16):
    # rewind every timestamp of a stored row so intervals become due now
    row = store.rows[address]
    for col in ("created_at", "next_15m", "next_30m", "next_1h"):
        if row[col] is not None:
            row[col] = format_timestamp(parse_timestamp(row[col]) - timedelta(minutes=minutes))


def test_add_and_list(app_client):
    resp = app_client.post("/api/tokens/add", json={"address": RAY_MINT})
    assert resp.status_code == 200
    body = resp.json()
    assert body["success"] is True
    assert body["token"]["address"] == RAY_MINT
    assert set(body["token"]["history"]) == {"initial"}

    listed = app_client.get("/api/tokens/list").json()
    assert [t["address"] for t in listed] == [RAY_MINT]
    assert app_client.get("/api/tokens/list", params={"address": USDC_MINT}).json() == []


def test_add_invalid_address_is_400(app_client, store):
    resp = app_client.post("/api/tokens/add", json={"address": "nope"})
    assert resp.status_code == 400
    assert "Invalid Solana address" in resp.json()["detail"]
    assert store.rows == {}


def test_add_duplicate_is_409(app_client):
    assert app_client.post("/api/tokens/add", json={"address": RAY_MINT}).status_code == 200
    assert app_client.post("/api/tokens/add", json={"address": RAY_MINT}).status_code == 409


def test_add_dependency_failure_is_502(app_client, market_data, store):
    market_data.failing.add(RAY_MINT)
    assert app_client.post("/api/tokens/add", json={"address": RAY_MINT}).status_code == 502
    assert store.rows == {}


def test_add_only_accepts_post(app_client):
    assert app_client.get("/api/tokens/add").status_code == 405


def test_update_applies_overdue_intervals(app_client, store):
    app_client.post("/api/tokens/add", json={"address": RAY_MINT})
    assert app_client.post("/api/tokens/update").json()["updated"] == 0

    _make_overdue(store, RAY_MINT, minutes=16)
    body = app_client.post("/api/tokens/update").json()
    assert body == {"updated": 1, "selected": 1, "failed": {}}

    token = app_client.get(f"/api/token/{RAY_MINT}").json()
    assert token["next_due"]["15m"] is None
    assert "update_15m" in token["history"]

    status = app_client.get("/status").json()
    assert status["tracker_status"]["last_refresh_result"]["updated"] == 1


def test_update_reports_partial_failure(app_client, store, market_data):
    app_client.post("/api/tokens/add", json={"address": RAY_MINT})
    app_client.post("/api/tokens/add", json={"address": USDC_MINT})
    _make_overdue(store, RAY_MINT)
    _make_overdue(store, USDC_MINT)
    market_data.failing.add(USDC_MINT)

    body = app_client.get("/api/tokens/update").json()
    assert body["updated"] == 1
    assert list(body["failed"]) == [USDC_MINT]


def test_token_detail_404(app_client):
    assert app_client.get(f"/api/token/{RAY_MINT}").status_code == 404


def test_service_endpoints(app_client):
    assert app_client.get("/health").json()["status"] == "healthy"
    env = app_client.get("/api/env-test").json()
    assert set(env) >= {"supabase_url", "supabase_key", "helius_keys"}
    assert isinstance(env["supabase_key"], bool)


def test_concurrent_refresh_is_rejected():
    class BlockingMarketData(FakeMarketData):
        def __init__(self):
            super().__init__()
            self.started = asyncio.Event()
            self.release = asyncio.Event()

        async def fetch_snapshot(self, address):
            self.started.set()
            await self.release.wait()
            return await super().fetch_snapshot(address)

    async def scenario():
        store = InMemoryTokenStore()
        market_data = BlockingMarketData()
        service = TrackerService(store, market_data)
        past = utcnow() - timedelta(minutes=20)
        store.insert({
            "address": RAY_MINT,
            "created_at": past.isoformat(),
            "next_15m": (past + timedelta(minutes=15)).isoformat(),
            "next_30m": (past + timedelta(minutes=30)).isoformat(),
            "next_1h": (past + timedelta(hours=1)).isoformat(),
            "data": {},
        })

        first = asyncio.create_task(service.refresh())
        await market_data.started.wait()
        with pytest.raises(RefreshBusyError):
            await service.refresh()
        market_data.release.set()
        report = await first
        return report

    report = asyncio.run(scenario())
    assert report.updated == 1
