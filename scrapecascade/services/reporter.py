"""Observational aggregation of engine events.

The reporter subscribes to the EventBus and keeps its own counters (requests
by outcome, per-provider attempts, cache activity, savings) plus a short
history of request timestamps for spend projection. It mirrors everything
into prometheus_client collectors. It never blocks or alters a request.
"""

from __future__ import annotations

import logging
import threading
from collections import defaultdict, deque
from datetime import datetime
from typing import Callable

from scrapecascade.core import events, metrics
from scrapecascade.core.events import Event, EventBus
from scrapecascade.services.budget import BudgetGovernor, _utcnow, window_bounds
from scrapecascade.services.cache import ResponseCache
from scrapecascade.services.coalescer import InFlightCoalescer
from scrapecascade.services.rate_limiter import RateLimiter
from scrapecascade.services.registry import ProviderRegistry

logger = logging.getLogger(__name__)

HOUR = 3600.0
DAY = 86400.0
MAX_RECENT_ALERTS = 50


class MetricsReporter:
    def __init__(
        self,
        bus: EventBus,
        budget: BudgetGovernor | None = None,
        cache: ResponseCache | None = None,
        registry: ProviderRegistry | None = None,
        coalescer: InFlightCoalescer | None = None,
        rate_limiter: RateLimiter | None = None,
        now: Callable[[], datetime] = _utcnow,
        prometheus: bool = True,
    ):
        self._budget = budget
        self._cache = cache
        self._registry = registry
        self._coalescer = coalescer
        self._rate_limiter = rate_limiter
        self._now = now
        self._prometheus = prometheus
        self._lock = threading.Lock()

        self.requests: dict[str, int] = defaultdict(int)
        self.providers: dict[str, dict[str, float]] = defaultdict(
            lambda: {"attempts": 0, "successes": 0, "failures": 0, "spend": 0.0}
        )
        self.cache_events: dict[str, int] = defaultdict(int)
        self.savings = {"cache": 0.0, "dedup": 0.0}
        self.total_spend = 0.0
        self.alerts: deque[dict] = deque(maxlen=MAX_RECENT_ALERTS)
        # (timestamp, cost) per completed request, last 24h
        self._history: deque[tuple[float, float]] = deque()

        bus.subscribe("*", self._on_event)

    # ------------------------------------------------------------------
    # Event handling
    # ------------------------------------------------------------------

    def _on_event(self, event: Event) -> None:
        handler = self._HANDLERS.get(event.name)
        if handler is not None:
            handler(self, event.payload)

    def _on_request_complete(self, p: dict) -> None:
        outcome = p["outcome"]
        saved = p.get("saved_cost", 0.0)
        with self._lock:
            self.requests[outcome] += 1
            if outcome in ("success", "cached", "stale", "deduped"):
                # Only the executing request spends; joiners repeat the leader's cost
                cost = p.get("cost", 0.0) if outcome == "success" else 0.0
                self._history.append((self._now().timestamp(), cost))
            if saved > 0 and outcome in ("cached", "stale"):
                self.savings["cache"] += saved
            elif saved > 0 and outcome == "deduped":
                self.savings["dedup"] += saved
        if self._prometheus:
            metrics.cascade_requests_total.labels(outcome=outcome).inc()
            if saved > 0 and outcome in ("cached", "stale", "deduped"):
                source = "dedup" if outcome == "deduped" else "cache"
                metrics.cascade_savings_usd_total.labels(source=source).inc(saved)

    def _on_attempt(self, p: dict) -> None:
        with self._lock:
            self.providers[p["provider"]]["attempts"] += 1

    def _on_success(self, p: dict) -> None:
        cost = p.get("cost", 0.0)
        with self._lock:
            stats = self.providers[p["provider"]]
            stats["successes"] += 1
            stats["spend"] += cost
            self.total_spend += cost
        if self._prometheus:
            metrics.cascade_provider_attempts_total.labels(
                provider=p["provider"], result="success"
            ).inc()
            metrics.cascade_attempt_duration_seconds.labels(provider=p["provider"]).observe(
                p.get("duration_ms", 0.0) / 1000
            )
            self._export_spend()

    def _on_failure(self, p: dict) -> None:
        with self._lock:
            self.providers[p["provider"]]["failures"] += 1
        if self._prometheus:
            metrics.cascade_provider_attempts_total.labels(
                provider=p["provider"], result="failure"
            ).inc()
            metrics.cascade_attempt_duration_seconds.labels(provider=p["provider"]).observe(
                p.get("duration_ms", 0.0) / 1000
            )

    def _on_cache_event(self, kind: str, p: dict) -> None:
        with self._lock:
            self.cache_events[kind] += 1
        if self._prometheus:
            metrics.cascade_cache_events_total.labels(event=kind).inc()

    def _on_budget_alert(self, p: dict) -> None:
        with self._lock:
            self.alerts.append(
                {
                    "window": p["window"],
                    "threshold": p["threshold"],
                    "current": p["current"],
                    "budget": p["budget"],
                    "at": self._now().isoformat(),
                }
            )
        if self._prometheus:
            metrics.cascade_budget_alerts_total.labels(
                window=p["window"], threshold=f"{p['threshold']:g}"
            ).inc()

    def _on_circuit(self, opened: bool, p: dict) -> None:
        if self._prometheus:
            metrics.cascade_circuit_open.labels(provider=p["provider"]).set(1 if opened else 0)

    def _on_window_reset(self, p: dict) -> None:
        if self._prometheus:
            self._export_spend()

    _HANDLERS: dict[str, Callable[["MetricsReporter", dict], None]] = {
        events.REQUEST_COMPLETE: _on_request_complete,
        events.PROVIDER_ATTEMPT: _on_attempt,
        events.PROVIDER_SUCCESS: _on_success,
        events.PROVIDER_FAILURE: _on_failure,
        events.CACHE_HIT: lambda self, p: self._on_cache_event("hit", p),
        events.CACHE_MISS: lambda self, p: self._on_cache_event("miss", p),
        events.CACHE_STALE: lambda self, p: self._on_cache_event("stale", p),
        events.CACHE_EVICT: lambda self, p: self._on_cache_event("evict", p),
        events.REQUEST_DEDUPED: lambda self, p: self._on_cache_event("dedup", p),
        events.BUDGET_ALERT: _on_budget_alert,
        events.CIRCUIT_OPENED: lambda self, p: self._on_circuit(True, p),
        events.CIRCUIT_CLOSED: lambda self, p: self._on_circuit(False, p),
        events.WINDOW_RESET: _on_window_reset,
    }

    def _export_spend(self) -> None:
        if self._budget is None:
            return
        for w in self._budget.windows.values():
            metrics.cascade_spend_usd.labels(window=w.label).set(w.spent)

    # ------------------------------------------------------------------
    # Projection
    # ------------------------------------------------------------------

    def projections(self) -> dict:
        """Extrapolate spend linearly from the last hour's request rate.

        day:   requests so far today plus the last hour's rate for every hour
               left in the UTC day, times the last hour's average cost
        month: spend so far this month plus the last 24h's cost for every day
               left in the UTC month
        """
        now = self._now()
        ts = now.timestamp()
        with self._lock:
            while self._history and self._history[0][0] <= ts - DAY:
                self._history.popleft()
            last_hour = [(t, c) for t, c in self._history if t > ts - HOUR]
            last_day = list(self._history)

        hourly_requests = len(last_hour)
        hourly_spend = sum(c for _, c in last_hour)
        daily_spend = sum(c for _, c in last_day)
        avg_cost = hourly_spend / hourly_requests if hourly_requests else 0.0

        day_start, day_end = window_bounds("day", now)
        _, month_end = window_bounds("month", now)
        hours_left = (day_end - now).total_seconds() / HOUR
        days_left = (month_end - now).total_seconds() / DAY

        today_requests = sum(1 for t, _ in last_day if t >= day_start.timestamp())
        projected_day = (today_requests + hourly_requests * hours_left) * avg_cost

        month_spent = 0.0
        if self._budget is not None:
            month_spent = self._budget.window("month").spent
        projected_month = month_spent + daily_spend * days_left

        return {
            "requests_last_hour": hourly_requests,
            "requests_last_day": len(last_day),
            "avg_cost_per_request": round(avg_cost, 6),
            "day": round(projected_day, 4),
            "month": round(projected_month, 4),
        }

    # ------------------------------------------------------------------
    # Summary
    # ------------------------------------------------------------------

    def summary(self) -> dict:
        with self._lock:
            data = {
                "requests": dict(self.requests),
                "providers": {name: dict(s) for name, s in self.providers.items()},
                "cache_events": dict(self.cache_events),
                "savings": {
                    "cache": round(self.savings["cache"], 6),
                    "dedup": round(self.savings["dedup"], 6),
                    "total": round(self.savings["cache"] + self.savings["dedup"], 6),
                },
                "total_spend": round(self.total_spend, 6),
                "recent_alerts": list(self.alerts),
            }
        data["projections"] = self.projections()
        if self._budget is not None:
            data["budget"] = self._budget.summary()
        if self._cache is not None:
            data["cache"] = self._cache.stats()
        if self._registry is not None:
            data["profiles"] = {p.name: p.to_dict() for p in self._registry.profiles}
        if self._coalescer is not None:
            data["in_flight"] = self._coalescer.stats()
        if self._rate_limiter is not None:
            data["rate_limit"] = self._rate_limiter.get_status()
        return data
