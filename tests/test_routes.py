"""HTTP 路由测试（TestClient，无需真实数据库与上游接口）"""

from unittest.mock import AsyncMock, patch

import pytest
from fastapi.testclient import TestClient

from price_service.config import settings
from price_service.exceptions import TerminalProviderError
from price_service.layers.acquisition import AcquisitionLayer
from price_service.layers.cache import CacheLayer, MemoryBackend
from price_service.layers.coalescer import RequestCoalescer
from price_service.layers.staleness import StalenessPolicy
from price_service.services.refresh_service import RefreshScheduler
from price_service.services.stock_service import StockService

from conftest import TODAY, FakeProvider, SleepRecorder, daily_records

SECRET = "s3cret"


def _history(symbol, horizon):
    if symbol == "DEAD":
        raise TerminalProviderError("eodhd", "无数据")
    return daily_records(TODAY, 40)


def _quote(symbol):
    if symbol == "DEAD":
        raise TerminalProviderError("eodhd", "无数据")
    return {"price": 4.35, "previous_close": 4.30}


@pytest.fixture
def client(monkeypatch):
    backend = MemoryBackend()
    policy = StalenessPolicy(tz="Asia/Kuala_Lumpur", holidays=[])
    cache = CacheLayer(backend=backend, policy=policy, use_redis=False)
    provider = FakeProvider("eodhd", quote=_quote, history=_history)
    acq = AcquisitionLayer(
        providers={"eodhd": provider},
        cache=cache,
        quote_order=["eodhd"],
        history_order=["eodhd"],
        sleep=SleepRecorder(),
    )
    coalescer = RequestCoalescer()

    monkeypatch.setattr("price_service.layers.cache._cache", cache)
    monkeypatch.setattr("price_service.layers.acquisition._acquisition", acq)
    monkeypatch.setattr(
        "price_service.services.stock_service._stock_service",
        StockService(cache=cache, policy=policy, coalescer=coalescer, acquisition=acq),
    )
    monkeypatch.setattr(
        "price_service.services.refresh_service._scheduler",
        RefreshScheduler(cache=cache, acquisition=acq, coalescer=coalescer, batch_delay=0.0),
    )
    monkeypatch.setattr(settings, "CRON_SECRET", SECRET)
    monkeypatch.setattr(settings, "SYMBOL_UNIVERSE", [])

    with patch("price_service.main.init_mongodb", new_callable=AsyncMock, return_value=False), \
         patch("price_service.main.init_redis", new_callable=AsyncMock, return_value=False), \
         patch("price_service.main.close_connections", new_callable=AsyncMock), \
         patch("price_service.routers.health.check_health", new_callable=AsyncMock, return_value={
             "mongodb": {"status": "disabled"},
             "redis": {"status": "disabled"},
         }):
        from price_service.main import app
        with TestClient(app) as c:
            c.provider = provider
            c.backend = backend
            yield c


class TestHealthRoutes:
    def test_health(self, client):
        r = client.get("/health")
        assert r.status_code == 200 and r.json()["data"]["status"] == "ok"
        assert "X-Process-Time" in r.headers

    def test_liveness_and_readiness(self, client):
        assert client.get("/healthz").json()["status"] == "ok"
        assert client.get("/readyz").json()["ready"] is True

    def test_root(self, client):
        body = client.get("/").json()
        assert "version" in body and "docs" in body


class TestStockRoutes:
    def test_quote(self, client):
        r = client.get("/api/stocks/5398/quote")
        assert r.status_code == 200
        data = r.json()["data"]
        assert data["price"] == 4.35 and data["source"] == "eodhd"
        assert data["stale"] is False

    def test_quote_unavailable(self, client):
        assert client.get("/api/stocks/DEAD/quote").status_code == 503

    def test_history(self, client):
        r = client.get("/api/stocks/5398/history", params={"horizon": "1mo"})
        assert r.status_code == 200
        data = r.json()["data"]
        assert data["horizon"] == "1mo"
        assert data["count"] == 40
        assert data["bars"][-1]["date"] == TODAY.isoformat()

    def test_history_invalid_horizon(self, client):
        r = client.get("/api/stocks/5398/history", params={"horizon": "2w"})
        assert r.status_code == 400

    def test_history_unavailable(self, client):
        assert client.get("/api/stocks/DEAD/history").status_code == 503


class TestRefreshRoutes:
    def test_requires_secret(self, client):
        assert client.post("/api/refresh/trigger").status_code == 401
        assert client.post("/api/refresh/trigger", headers={"Authorization": "Bearer wrong"}).status_code == 401

    def test_trigger_with_bearer(self, client):
        client.post("/api/refresh/universe", json={"symbols": ["5398", "DEAD"]},
                    headers={"x-cron-secret": SECRET})
        r = client.post(
            "/api/refresh/trigger",
            json={"kind": "quote", "batch_size": 5},
            headers={"Authorization": f"Bearer {SECRET}"},
        )
        assert r.status_code == 200
        report = r.json()["data"]
        assert report["selected"] == 2
        assert report["updated"] == 1
        assert report["failed_symbols"] == ["DEAD"]
        assert report["remaining"] == 0

    def test_trigger_get_with_query_secret(self, client):
        r = client.get("/api/refresh/trigger", params={"secret": SECRET, "symbol": ["5398"], "kind": "history"})
        assert r.status_code == 200
        assert r.json()["data"]["updated"] == 1
        assert client.provider.calls["history"] == 1

    def test_trigger_get_invalid_horizon(self, client):
        r = client.get("/api/refresh/trigger", params={"secret": SECRET, "kind": "history", "horizon": "2w"})
        assert r.status_code == 422

    def test_empty_universe_is_up_to_date(self, client):
        r = client.post("/api/refresh/trigger", headers={"x-cron-secret": SECRET})
        assert r.status_code == 200
        assert r.json()["data"]["up_to_date"] is True

    def test_status(self, client):
        client.post("/api/refresh/universe", json={"symbols": ["5398"]}, headers={"x-cron-secret": SECRET})
        data = client.get("/api/refresh/status", params={"kind": "quote"}).json()["data"]
        assert data["registered"] == 1 and data["stale"] == 1

    def test_universe_requires_secret(self, client):
        assert client.post("/api/refresh/universe", json={"symbols": ["5398"]}).status_code == 401


class TestInfoRoutes:
    def test_cache_stats(self, client):
        data = client.get("/api/cache/stats").json()["data"]
        assert "memory" in data and data["redis"]["status"] == "disabled"

    def test_providers(self, client):
        data = client.get("/api/providers").json()["data"]
        assert data["count"] == 1
        assert data["providers"][0]["id"] == "eodhd"
