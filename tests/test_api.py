"""Integration tests for the operator HTTP API."""

from contextlib import asynccontextmanager

import pytest
from httpx import ASGITransport, AsyncClient

from scrapecascade.config import BudgetConfig, RateLimitConfig
from scrapecascade.main import create_app

from tests.conftest import FakeProvider, FakeRedis, fail, make_engine, ok, provider_config


@asynccontextmanager
async def _serve(engine, redis=None):
    app = create_app(engine=engine)
    app.state.redis = redis
    async with AsyncClient(transport=ASGITransport(app=app), base_url="http://test") as ac:
        yield ac
    await engine.close()


class TestHealthEndpoints:
    @pytest.mark.asyncio
    async def test_liveness_returns_healthy(self, client: AsyncClient):
        """GET /health returns 200 with status healthy."""
        resp = await client.get("/health")
        assert resp.status_code == 200
        assert resp.json()["status"] == "healthy"

    @pytest.mark.asyncio
    async def test_readiness_ok(self, client: AsyncClient):
        resp = await client.get("/health/ready")
        assert resp.status_code == 200
        data = resp.json()
        assert data["status"] == "ready"
        assert data["checks"] == {"engine": "ok", "providers": "ok"}

    @pytest.mark.asyncio
    async def test_readiness_503_when_no_provider_enabled(self):
        engine = make_engine([FakeProvider(provider_config("off", enabled=False))])
        async with _serve(engine) as client:
            resp = await client.get("/health/ready")
        assert resp.status_code == 503
        assert resp.json()["checks"]["providers"] == "no active provider"

    @pytest.mark.asyncio
    async def test_readiness_503_when_redis_unreachable(self):
        redis = FakeRedis()
        redis.available = False
        engine = make_engine([FakeProvider(provider_config("free"))])
        async with _serve(engine, redis=redis) as client:
            resp = await client.get("/health/ready")
        assert resp.status_code == 503
        data = resp.json()
        assert data["status"] == "not ready"
        assert data["checks"]["redis"] == "error: unreachable"

    @pytest.mark.asyncio
    async def test_metrics_exposed(self, client: AsyncClient):
        resp = await client.get("/metrics")
        assert resp.status_code == 200
        assert "cascade_requests_total" in resp.text


class TestFetchEndpoint:
    @pytest.mark.asyncio
    async def test_fetch_success(self, client: AsyncClient):
        resp = await client.post("/v1/fetch", json={"url": "example.com"})
        assert resp.status_code == 200
        data = resp.json()
        assert data["success"] is True
        assert data["provider"] == "free"
        assert data["url"] == "https://example.com"
        assert len(data["attempts"]) == 1
        assert resp.headers["X-Request-ID"]

    @pytest.mark.asyncio
    async def test_second_fetch_served_from_cache(self, client: AsyncClient):
        await client.post("/v1/fetch", json={"url": "https://example.com"})
        resp = await client.post("/v1/fetch", json={"url": "https://example.com"})
        data = resp.json()
        assert data["cached"] is True
        assert data["cost"] == 0

    @pytest.mark.asyncio
    async def test_rate_limited_maps_to_429(self):
        engine = make_engine(
            [FakeProvider(provider_config("free"))],
            rate_limit=RateLimitConfig(tokens_per_interval=1, interval_ms=60000, max_burst=1),
        )
        async with _serve(engine) as client:
            await client.post("/v1/fetch", json={"url": "https://a.example.com"})
            resp = await client.post("/v1/fetch", json={"url": "https://b.example.com"})
        assert resp.status_code == 429
        assert resp.json()["error"] == "RATE_LIMITED"
        assert resp.headers["Retry-After"] == "60"

    @pytest.mark.asyncio
    async def test_budget_exceeded_maps_to_402(self):
        paid = FakeProvider(provider_config("paid", cost=0.05))
        engine = make_engine(
            [paid], budget=BudgetConfig(hourly_limit=10, daily_limit=10, monthly_limit=10)
        )
        engine.budget.windows["month"].spent = 9.98
        async with _serve(engine) as client:
            resp = await client.post(
                "/v1/fetch",
                json={"url": "https://example.com"},
                headers={"X-Request-ID": "trace-1"},
            )
        assert resp.status_code == 402
        data = resp.json()
        assert data["error"] == "BUDGET_EXCEEDED"
        assert data["window"] == "monthly"
        assert data["request_id"] == "trace-1"
        assert paid.calls == []

    @pytest.mark.asyncio
    async def test_no_eligible_provider_maps_to_503(self, client: AsyncClient):
        resp = await client.post(
            "/v1/fetch",
            json={"url": "https://example.com", "options": {"force_provider": "nope"}},
        )
        assert resp.status_code == 503
        data = resp.json()
        assert data["error"] == "PROVIDER_UNAVAILABLE"
        assert data["reasons"] == {"nope": "unknown provider"}

    @pytest.mark.asyncio
    async def test_exhausted_maps_to_502(self):
        engine = make_engine([
            FakeProvider(provider_config("a", priority=1), [fail(403)]),
            FakeProvider(provider_config("b", priority=2), [fail(500)]),
        ])
        async with _serve(engine) as client:
            resp = await client.post("/v1/fetch", json={"url": "https://example.com"})
        assert resp.status_code == 502
        data = resp.json()
        assert data["error"] == "CASCADE_EXHAUSTED"
        assert [a["provider"] for a in data["attempts"]] == ["a", "b"]
        assert [a["status_code"] for a in data["attempts"]] == [403, 500]

    @pytest.mark.asyncio
    async def test_invalid_body_rejected(self, client: AsyncClient):
        resp = await client.post(
            "/v1/fetch", json={"url": "https://example.com", "options": {"max_cost": -1}}
        )
        assert resp.status_code == 422


class TestOperatorEndpoints:
    @pytest.mark.asyncio
    async def test_stats(self, client: AsyncClient):
        await client.post("/v1/fetch", json={"url": "https://example.com"})
        resp = await client.get("/v1/stats")
        assert resp.status_code == 200
        data = resp.json()
        assert data["requests"] == {"success": 1}
        assert set(data["budget"]) == {"hourly", "daily", "monthly"}
        assert "projections" in data

    @pytest.mark.asyncio
    async def test_housekeeping(self, client: AsyncClient):
        resp = await client.post("/v1/housekeeping")
        assert resp.status_code == 200
        assert set(resp.json()) == {
            "cache_expired", "dedup_swept", "windows_reset", "circuits_closed",
        }


@pytest.mark.asyncio
async def test_paid_provider_cost_reported():
    paid = FakeProvider(provider_config("paid", cost=0.02), [ok(cost=0.015)])
    async with _serve(make_engine([paid])) as client:
        resp = await client.post("/v1/fetch", json={"url": "https://example.com"})
    assert resp.json()["cost"] == pytest.approx(0.015)
