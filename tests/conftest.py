"""Shared fakes: deterministic clocks, scripted providers and an engine builder."""

import asyncio
from datetime import datetime, timedelta, timezone

import pytest
import pytest_asyncio
from httpx import ASGITransport, AsyncClient

from scrapecascade.config import (
    BudgetConfig,
    CacheConfig,
    CascadeConfig,
    DedupConfig,
    PerformanceConfig,
    ProviderConfig,
    RateLimitConfig,
)
from scrapecascade.core.events import EventBus
from scrapecascade.schemas.result import ProviderResponse
from scrapecascade.services.engine import CascadeEngine
from scrapecascade.services.providers.base import Provider

T0 = datetime(2026, 3, 15, 12, 30, tzinfo=timezone.utc)


class FakeClock:
    """Monotonic clock that only moves when told to."""

    def __init__(self, start: float = 1000.0):
        self.now = start

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds


class FakeUTC:
    """Wall clock for budget windows."""

    def __init__(self, start: datetime = T0):
        self.current = start

    def __call__(self) -> datetime:
        return self.current

    def advance(self, **kwargs) -> None:
        self.current += timedelta(**kwargs)


class FakeRedis:
    """Minimal fake Redis for snapshot tests."""

    def __init__(self):
        self._store: dict[str, str] = {}
        self.available = True

    async def get(self, key: str):
        if not self.available:
            return None
        return self._store.get(key)

    async def set(self, key: str, value: str, ex: int = None):
        if not self.available:
            return False
        self._store[key] = value
        return True

    async def delete(self, *keys):
        removed = 0
        for key in keys:
            removed += self._store.pop(key, None) is not None
        return removed

    async def ping(self):
        return self.available


def ok(content: str = "<html>ok</html>", status: int = 200, cost: float | None = None,
       url: str = "https://example.com") -> ProviderResponse:
    return ProviderResponse(success=True, status_code=status, url=url, content=content, cost=cost)


def fail(status: int = 403, error: str | None = None) -> ProviderResponse:
    return ProviderResponse(
        success=False,
        status_code=status,
        url="https://example.com",
        error=error or f"Non-success status {status}",
    )


class FakeProvider(Provider):
    """Replays scripted outcomes; the last one repeats once the script runs out.

    An outcome is a ProviderResponse to return or an exception to raise.
    """

    def __init__(self, config: ProviderConfig, outcomes=None, delay: float = 0.0):
        super().__init__(config)
        self.outcomes = list(outcomes or [ok()])
        self.delay = delay
        self.calls = []
        self.closed = False

    async def fetch(self, descriptor, timeout):
        self.calls.append(descriptor)
        if self.delay:
            await asyncio.sleep(self.delay)
        outcome = self.outcomes.pop(0) if len(self.outcomes) > 1 else self.outcomes[0]
        if isinstance(outcome, BaseException):
            raise outcome
        return outcome

    async def aclose(self):
        self.closed = True


def provider_config(name: str, priority: int = 1, cost: float = 0.0, **kwargs) -> ProviderConfig:
    kwargs.setdefault("timeout_ms", 5000)
    return ProviderConfig(name=name, priority=priority, cost_per_request=cost, **kwargs)


def make_engine(
    providers: list[FakeProvider],
    *,
    cache: CacheConfig | None = None,
    dedup: DedupConfig | None = None,
    rate_limit: RateLimitConfig | None = None,
    budget: BudgetConfig | None = None,
    performance: PerformanceConfig | None = None,
    clock: FakeClock | None = None,
    now: FakeUTC | None = None,
    bus: EventBus | None = None,
) -> CascadeEngine:
    config = CascadeConfig(
        providers=tuple(p.config for p in providers),
        cache=cache or CacheConfig(),
        # No grace period: sequential calls in a test never coalesce
        dedup=dedup or DedupConfig(grace_ms=0),
        rate_limit=rate_limit
        or RateLimitConfig(tokens_per_interval=1000, interval_ms=1000, max_burst=1000),
        budget=budget or BudgetConfig(),
        performance=performance or PerformanceConfig(retry_delay_ms=0),
    )
    return CascadeEngine(
        config,
        providers={p.name: p for p in providers},
        bus=bus,
        clock=clock or FakeClock(),
        now=now or FakeUTC(),
        metrics_enabled=False,
    )


class Recorder:
    """Collects every event published on a bus."""

    def __init__(self, bus: EventBus):
        self.events = []
        bus.subscribe("*", self.events.append)

    def names(self) -> list[str]:
        return [e.name for e in self.events]

    def of(self, name: str) -> list:
        return [e for e in self.events if e.name == name]


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def utc():
    return FakeUTC()


@pytest_asyncio.fixture
async def app_engine():
    free = FakeProvider(provider_config("free", priority=1, cost=0.0))
    engine = make_engine([free])
    yield engine
    await engine.close()


@pytest_asyncio.fixture
async def client(app_engine):
    from scrapecascade.main import create_app

    app = create_app(engine=app_engine)
    async with AsyncClient(transport=ASGITransport(app=app), base_url="http://test") as ac:
        yield ac
