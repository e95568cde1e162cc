"""CascadeEngine: the single entry point that wires every component together.

    engine = CascadeEngine(config)
    result = await engine.fetch(RequestDescriptor(url="https://example.com"))

Flow for one fetch:
    fingerprint -> cache -> coalescer -> rate limiter -> registry order
    (budget-filtered) -> scheduler -> cache put -> settle joiners

Terminal outcomes are a CascadeResult or one of RateLimitedError,
BudgetExceededError, ProviderUnavailableError, CascadeExhaustedError.
"""

from __future__ import annotations

import asyncio
import logging
import time
from datetime import datetime
from typing import Awaitable, Callable

import httpx

from scrapecascade.config import CascadeConfig
from scrapecascade.core import events
from scrapecascade.core.events import EventBus
from scrapecascade.core.exceptions import (
    CascadeError,
    CascadeExhaustedError,
    ProviderUnavailableError,
)
from scrapecascade.core.request_id import ensure_request_id
from scrapecascade.schemas.request import FetchOptions, RequestDescriptor
from scrapecascade.schemas.result import CascadeResult
from scrapecascade.services.budget import BudgetGovernor, _utcnow
from scrapecascade.services.cache import CacheEntry, ResponseCache
from scrapecascade.services.coalescer import Claim, InFlightCoalescer
from scrapecascade.services.fingerprint import compute_cache_key, compute_dedup_key
from scrapecascade.services.providers import Provider, build_provider
from scrapecascade.services.rate_limiter import RateLimiter
from scrapecascade.services.registry import OrderPlan, ProviderRegistry
from scrapecascade.services.reporter import MetricsReporter
from scrapecascade.services.scheduler import CascadeOutcome, CascadeScheduler

logger = logging.getLogger(__name__)


class CascadeEngine:
    """Cost-aware cascading fetch engine.

    Every collaborator with a notion of time or I/O can be injected:
    `providers` replaces the built-in HTTP clients, `clock`/`now`/`sleep`
    make timing deterministic in tests, and `bus` lets the host subscribe to
    engine events before the first request.
    """

    def __init__(
        self,
        config: CascadeConfig | None = None,
        *,
        providers: dict[str, Provider] | None = None,
        bus: EventBus | None = None,
        http_client: httpx.AsyncClient | None = None,
        clock: Callable[[], float] = time.monotonic,
        now: Callable[[], datetime] = _utcnow,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
        metrics_enabled: bool = True,
    ):
        self.config = config or CascadeConfig()
        self.bus = bus or EventBus()
        self._clock = clock
        cfg = self.config

        self.cache = ResponseCache(
            max_entries=cfg.cache.max_entries,
            ttl_ms=cfg.cache.ttl_ms,
            max_age_ms=cfg.cache.max_age_ms,
            bus=self.bus,
            clock=clock,
        )
        self.coalescer = InFlightCoalescer(
            window_ms=cfg.dedup.window_ms,
            grace_ms=cfg.dedup.grace_ms,
            bus=self.bus,
            clock=clock,
        )
        self.rate_limiter = RateLimiter(
            tokens_per_interval=cfg.rate_limit.tokens_per_interval,
            interval_ms=cfg.rate_limit.interval_ms,
            max_burst=cfg.rate_limit.max_burst,
            bus=self.bus,
            clock=clock,
        )
        self.budget = BudgetGovernor(
            hourly_limit=cfg.budget.hourly_limit,
            daily_limit=cfg.budget.daily_limit,
            monthly_limit=cfg.budget.monthly_limit,
            alert_thresholds=cfg.budget.alert_thresholds,
            bus=self.bus,
            now=now,
        )
        self.registry = ProviderRegistry(
            cfg.providers, performance=cfg.performance, bus=self.bus, clock=clock
        )

        if providers is None:
            providers = {
                p.name: build_provider(p, client=http_client)
                for p in cfg.providers
                if p.kind != "custom"
            }
        self.providers = providers
        self.scheduler = CascadeScheduler(
            self.registry,
            self.budget,
            self.providers,
            performance=cfg.performance,
            bus=self.bus,
            sleep=sleep,
            clock=clock,
        )
        self.reporter = MetricsReporter(
            self.bus,
            budget=self.budget,
            cache=self.cache,
            registry=self.registry,
            coalescer=self.coalescer,
            rate_limiter=self.rate_limiter,
            now=now,
            prometheus=metrics_enabled,
        )

        self._revalidating: set[str] = set()
        self._background: set[asyncio.Task] = set()

        logger.info(
            f"CascadeEngine ready: providers={[p.name for p in cfg.providers if p.enabled]}, "
            f"cache={'on' if cfg.cache.enabled else 'off'}, "
            f"budget=${cfg.budget.hourly_limit}/h ${cfg.budget.daily_limit}/d "
            f"${cfg.budget.monthly_limit}/mo"
        )

    # ------------------------------------------------------------------
    # Fetch
    # ------------------------------------------------------------------

    async def fetch(
        self,
        request: RequestDescriptor | str,
        options: FetchOptions | None = None,
    ) -> CascadeResult:
        if isinstance(request, str):
            request = RequestDescriptor(url=request)
        options = options or FetchOptions()
        ensure_request_id()
        start = self._clock()

        cache_key = compute_cache_key(request)
        use_cache = self.config.cache.enabled and not options.bypass_cache

        if use_cache:
            entry = self._cache_lookup(cache_key)
            if entry is not None and not entry.stale:
                result = entry.payload.model_copy(
                    update={
                        "cached": True,
                        "deduped": False,
                        "stale": False,
                        "cost": 0.0,
                        "attempts": [],
                        "response_time_ms": self._elapsed_ms(start),
                    }
                )
                self._complete(result, "cached", saved=entry.cost)
                return result
            if entry is not None and self.config.cache.stale_policy == "serve_stale":
                result = entry.payload.model_copy(
                    update={
                        "cached": True,
                        "deduped": False,
                        "stale": True,
                        "cost": 0.0,
                        "attempts": [],
                        "response_time_ms": self._elapsed_ms(start),
                    }
                )
                self._schedule_revalidation(request, options, cache_key)
                self._complete(result, "stale", saved=entry.cost)
                return result

        claim = self.coalescer.acquire(compute_dedup_key(request))
        if not claim.is_leader:
            try:
                leader_result = await claim.wait()
            except CascadeError as e:
                self._complete_error(request, e, deduped=True)
                raise
            result = leader_result.model_copy(
                update={"deduped": True, "response_time_ms": self._elapsed_ms(start)}
            )
            self._complete(result, "deduped", saved=leader_result.cost)
            return result

        # The cascade runs in its own task; cancelling the leader's caller
        # leaves it running for the joiners and the cache
        task = asyncio.create_task(self._lead(claim, request, options, cache_key, start))
        self._background.add(task)
        task.add_done_callback(self._background.discard)
        return await asyncio.shield(task)

    async def _lead(
        self,
        claim: Claim,
        request: RequestDescriptor,
        options: FetchOptions,
        cache_key: str,
        start: float,
    ) -> CascadeResult:
        try:
            result = await self._execute(request, options, cache_key, start)
        except asyncio.CancelledError:
            # Only close() cancels a running leader
            self.coalescer.settle(
                claim,
                error=CascadeError(f"Engine closed before {request.url} completed"),
            )
            raise
        except CascadeError as e:
            self.coalescer.settle(claim, error=e)
            self._complete_error(request, e)
            raise
        except Exception as e:
            self.coalescer.settle(claim, error=e)
            raise
        self.coalescer.settle(claim, result=result)
        self._complete(result, "success")
        return result

    async def _execute(
        self,
        request: RequestDescriptor,
        options: FetchOptions,
        cache_key: str,
        start: float,
    ) -> CascadeResult:
        self.rate_limiter.try_acquire()

        plan = self.registry.compute_order(options, self.budget)
        if not plan.providers:
            self._raise_unavailable(plan)

        logger.info(f"Cascade for {request.method} {request.url}: order={plan.names}")
        outcome = await self.scheduler.run(request, plan, options)

        if outcome.success:
            response = outcome.response
            result = CascadeResult(
                success=True,
                provider=outcome.provider,
                url=response.url or request.url,
                status_code=response.status_code,
                content=response.content,
                headers=response.headers,
                cookies=response.cookies,
                cost=outcome.cost,
                response_time_ms=self._elapsed_ms(start),
                attempts=outcome.attempts,
            )
            if self.config.cache.enabled:
                self._cache_store(cache_key, result)
            return result

        if not outcome.attempts:
            self._raise_unavailable(plan, outcome)

        last = outcome.attempts[-1]
        raise CascadeExhaustedError(
            CascadeResult(
                success=False,
                provider=last.provider,
                url=request.url,
                status_code=last.status_code,
                cost=0.0,
                response_time_ms=self._elapsed_ms(start),
                attempts=outcome.attempts,
            )
        )

    def _raise_unavailable(self, plan: OrderPlan, outcome: CascadeOutcome | None = None):
        """Raise the typed error explaining why nothing could be attempted."""
        budget_blocked = dict(plan.budget_blocked)
        reasons = dict(plan.excluded)
        if outcome is not None:
            budget_blocked.update(outcome.budget_blocked)
            reasons.update(outcome.skipped)

        if budget_blocked:
            # Report the window that blocks even the cheapest candidate
            cheapest = min(self.registry.get(name).estimated_cost for name in budget_blocked)
            self.budget.check(cheapest)
        raise ProviderUnavailableError(reasons)

    # ------------------------------------------------------------------
    # Cache helpers
    # ------------------------------------------------------------------

    def _cache_lookup(self, cache_key: str) -> CacheEntry | None:
        try:
            entry = self.cache.get(cache_key)
        except Exception as e:
            logger.warning(f"Cache lookup failed, treating as miss: {e}")
            return None
        if entry is not None and not isinstance(entry.payload, CascadeResult):
            logger.warning(f"Corrupt cache entry {cache_key[:12]}, treating as miss")
            self.cache.invalidate(cache_key)
            return None
        return entry

    def _cache_store(self, cache_key: str, result: CascadeResult) -> None:
        try:
            self.cache.put(cache_key, result, result.cost)
        except Exception as e:
            logger.warning(f"Cache store failed: {e}")

    def _schedule_revalidation(
        self, request: RequestDescriptor, options: FetchOptions, cache_key: str
    ) -> None:
        if cache_key in self._revalidating:
            return
        self._revalidating.add(cache_key)
        refresh = options.model_copy(update={"bypass_cache": True})
        task = asyncio.create_task(self._revalidate(request, refresh, cache_key))
        self._background.add(task)
        task.add_done_callback(self._background.discard)

    async def _revalidate(
        self, request: RequestDescriptor, options: FetchOptions, cache_key: str
    ) -> None:
        try:
            await self.fetch(request, options)
            logger.debug(f"Revalidated stale entry {cache_key[:12]}")
        except CascadeError as e:
            logger.info(f"Background revalidation of {request.url} failed: {e}")
        finally:
            self._revalidating.discard(cache_key)

    # ------------------------------------------------------------------
    # Completion events
    # ------------------------------------------------------------------

    def _elapsed_ms(self, start: float) -> float:
        return round((self._clock() - start) * 1000, 2)

    def _complete(self, result: CascadeResult, outcome: str, saved: float = 0.0) -> None:
        self.bus.emit(
            events.REQUEST_COMPLETE,
            url=result.url,
            outcome=outcome,
            success=result.success,
            provider=result.provider,
            cost=result.cost,
            saved_cost=saved,
            cached=result.cached,
            deduped=result.deduped,
            stale=result.stale,
            attempts=len(result.attempts),
            response_time_ms=result.response_time_ms,
        )

    def _complete_error(
        self, request: RequestDescriptor, error: CascadeError, deduped: bool = False
    ) -> None:
        self.bus.emit(
            events.REQUEST_COMPLETE,
            url=request.url,
            outcome=error.code.lower(),
            success=False,
            provider=None,
            cost=0.0,
            saved_cost=0.0,
            cached=False,
            deduped=deduped,
            stale=False,
            attempts=len(error.attempts) if isinstance(error, CascadeExhaustedError) else 0,
            response_time_ms=0.0,
        )

    # ------------------------------------------------------------------
    # Housekeeping / lifecycle
    # ------------------------------------------------------------------

    def run_housekeeping(self) -> dict:
        """Sweep expired state. Idempotent and safe to call on any schedule."""
        report = {
            "cache_expired": self.cache.sweep(),
            "dedup_swept": self.coalescer.sweep(),
            "windows_reset": self.budget.reset_expired_windows(),
            "circuits_closed": self.registry.refresh(),
        }
        if any(report.values()):
            logger.debug(f"Housekeeping: {report}")
        return report

    async def housekeeping_loop(self, interval: float = 30.0) -> None:
        """Run `run_housekeeping()` every `interval` seconds until cancelled."""
        while True:
            await asyncio.sleep(interval)
            try:
                self.run_housekeeping()
            except Exception as e:
                logger.error(f"Housekeeping failed: {e}")

    def stats(self) -> dict:
        return self.reporter.summary()

    async def close(self) -> None:
        for task in list(self._background):
            task.cancel()
        if self._background:
            await asyncio.gather(*self._background, return_exceptions=True)
        self.coalescer.close()
        for provider in self.providers.values():
            await provider.aclose()
        logger.info("CascadeEngine closed")
