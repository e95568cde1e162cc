"""Provider registry with reliability scoring and circuit breaking.

States: ACTIVE → COOLING | BLACKLISTED → ACTIVE
- ACTIVE: eligible for ordering
- COOLING: success-rate EMA fell below 1 - circuit_breaker_threshold;
  excluded until circuit_breaker_timeout elapses
- BLACKLISTED: blacklist_threshold consecutive failures; excluded until
  blacklist_cooldown elapses

When a cooldown elapses the provider goes back to ACTIVE optimistically
(half-open): consecutive failures reset and the EMA is lifted to the
threshold floor, so one more failure sends it straight back out.
"""

from __future__ import annotations

import logging
import threading
import time
from dataclasses import dataclass, field
from typing import Callable

from scrapecascade.config import PerformanceConfig, ProviderConfig
from scrapecascade.core import events
from scrapecascade.core.events import EventBus
from scrapecascade.schemas.request import FetchOptions
from scrapecascade.services.budget import BudgetGovernor

logger = logging.getLogger(__name__)

STATE_ACTIVE = "active"
STATE_COOLING = "cooling"
STATE_BLACKLISTED = "blacklisted"


@dataclass
class ProviderProfile:
    name: str
    priority: int
    cost_per_request: float  # USD
    max_cost: float | None
    enabled: bool
    max_retries: int
    timeout_ms: int
    success_rate_ema: float
    avg_latency_ema: float
    consecutive_failures: int = 0
    state: str = STATE_ACTIVE
    cooldown_until: float = 0.0
    _lock: threading.Lock = field(default_factory=threading.Lock, repr=False)

    @classmethod
    def from_config(cls, cfg: ProviderConfig) -> "ProviderProfile":
        return cls(
            name=cfg.name,
            priority=cfg.priority,
            cost_per_request=cfg.usd_cost,
            max_cost=cfg.to_usd(cfg.max_cost) if cfg.max_cost is not None else None,
            enabled=cfg.enabled,
            max_retries=cfg.max_retries,
            timeout_ms=cfg.timeout_ms,
            success_rate_ema=cfg.initial_success_rate,
            avg_latency_ema=cfg.initial_latency_ms,
        )

    @property
    def estimated_cost(self) -> float:
        """Amount reserved against the budget before calling this provider."""
        if self.max_cost is not None:
            return max(self.max_cost, self.cost_per_request)
        return self.cost_per_request

    def to_dict(self) -> dict:
        return {
            "name": self.name,
            "priority": self.priority,
            "cost_per_request": self.cost_per_request,
            "max_cost": self.max_cost,
            "enabled": self.enabled,
            "success_rate_ema": round(self.success_rate_ema, 4),
            "avg_latency_ema": round(self.avg_latency_ema, 1),
            "consecutive_failures": self.consecutive_failures,
            "state": self.state,
            "cooldown_until": self.cooldown_until,
        }


@dataclass
class OrderPlan:
    """Providers to try, in order, plus why the others were left out."""

    providers: list[ProviderProfile]
    excluded: dict[str, str] = field(default_factory=dict)
    budget_blocked: dict[str, str] = field(default_factory=dict)  # name -> window label

    @property
    def names(self) -> list[str]:
        return [p.name for p in self.providers]


class ProviderRegistry:
    def __init__(
        self,
        providers: tuple[ProviderConfig, ...] | list[ProviderConfig],
        performance: PerformanceConfig | None = None,
        bus: EventBus | None = None,
        clock: Callable[[], float] = time.monotonic,
    ):
        perf = performance or PerformanceConfig()
        self._alpha = perf.ema_alpha
        self._floor = 1 - perf.circuit_breaker_threshold
        self._cooling_period = perf.circuit_breaker_timeout_ms / 1000
        self._blacklist_threshold = perf.blacklist_threshold
        self._blacklist_period = perf.blacklist_cooldown_ms / 1000
        self._bus = bus
        self._clock = clock
        # Insertion order is the tie-break for equal (priority, cost)
        self._profiles: dict[str, ProviderProfile] = {
            cfg.name: ProviderProfile.from_config(cfg) for cfg in providers
        }

    def __contains__(self, name: str) -> bool:
        return name in self._profiles

    def get(self, name: str) -> ProviderProfile:
        return self._profiles[name]

    @property
    def profiles(self) -> list[ProviderProfile]:
        return list(self._profiles.values())

    # ------------------------------------------------------------------
    # Scoring
    # ------------------------------------------------------------------

    def record_outcome(self, name: str, success: bool, duration_ms: float) -> ProviderProfile:
        """Fold one attempt into the provider's statistics and state."""
        profile = self._profiles[name]
        now = self._clock()
        opened = None

        with profile._lock:
            outcome = 1.0 if success else 0.0
            profile.success_rate_ema = (
                self._alpha * outcome + (1 - self._alpha) * profile.success_rate_ema
            )
            profile.avg_latency_ema = (
                self._alpha * duration_ms + (1 - self._alpha) * profile.avg_latency_ema
            )
            if success:
                profile.consecutive_failures = 0
            else:
                profile.consecutive_failures += 1

            if (
                profile.state != STATE_BLACKLISTED
                and profile.consecutive_failures >= self._blacklist_threshold
            ):
                profile.state = STATE_BLACKLISTED
                profile.cooldown_until = now + self._blacklist_period
                opened = ("consecutive_failures", self._blacklist_period)
            elif profile.state == STATE_ACTIVE and profile.success_rate_ema < self._floor:
                profile.state = STATE_COOLING
                profile.cooldown_until = now + self._cooling_period
                opened = ("success_rate", self._cooling_period)

            stats = profile.to_dict()

        if opened is not None:
            reason, period = opened
            logger.warning(
                f"Circuit OPENED for provider {name} ({reason}, "
                f"ema={stats['success_rate_ema']}, failures={stats['consecutive_failures']}, "
                f"cooldown={period:.0f}s)"
            )
            self._emit(events.CIRCUIT_OPENED, provider=name, reason=reason, state=stats["state"])
        self._emit(events.PROVIDER_STATS_UPDATE, provider=name, stats=stats)
        return profile

    def refresh(self) -> list[str]:
        """Return cooled-down providers to ACTIVE. Idempotent; timestamp-derived."""
        now = self._clock()
        closed = []
        for profile in self._profiles.values():
            with profile._lock:
                if profile.state == STATE_ACTIVE or now < profile.cooldown_until:
                    continue
                profile.state = STATE_ACTIVE
                profile.consecutive_failures = 0
                profile.success_rate_ema = max(profile.success_rate_ema, self._floor)
                profile.cooldown_until = 0.0
                closed.append(profile.name)

        for name in closed:
            logger.info(f"Circuit CLOSED for provider {name} (half-open retry)")
            self._emit(events.CIRCUIT_CLOSED, provider=name)
        return closed

    # ------------------------------------------------------------------
    # Ordering
    # ------------------------------------------------------------------

    def compute_order(
        self,
        options: FetchOptions | None = None,
        budget: BudgetGovernor | None = None,
    ) -> OrderPlan:
        """Filter ineligible providers and sort the rest by (priority, cost).

        Deterministic: the same profiles and options always give the same
        order, and equal keys keep configuration order.
        """
        options = options or FetchOptions()
        self.refresh()

        plan = OrderPlan(providers=[])
        if options.force_provider and options.force_provider not in self._profiles:
            plan.excluded[options.force_provider] = "unknown provider"
            return plan

        candidates = []
        for profile in self._profiles.values():
            if options.force_provider and profile.name != options.force_provider:
                continue
            reason = self._exclusion_reason(profile, options)
            if reason is None and budget is not None:
                window = budget.can_afford(profile.estimated_cost)
                if window is not None:
                    plan.budget_blocked[profile.name] = window
                    reason = f"{window} budget"
            if reason is not None:
                plan.excluded[profile.name] = reason
                continue
            candidates.append(profile)

        # sorted() is stable, so config order breaks ties
        plan.providers = sorted(candidates, key=lambda p: (p.priority, p.cost_per_request))
        return plan

    def _exclusion_reason(self, profile: ProviderProfile, options: FetchOptions) -> str | None:
        if not profile.enabled:
            return "disabled"
        if profile.state != STATE_ACTIVE:
            return profile.state
        if profile.success_rate_ema < self._floor:
            return "success rate below circuit threshold"
        if options.max_cost is not None and profile.estimated_cost > options.max_cost:
            return "exceeds max cost"
        if (
            options.priority_hint == "low"
            and options.max_cost is None
            and profile.cost_per_request > 0
        ):
            return "paid provider skipped for low priority"
        return None

    # ------------------------------------------------------------------
    # Persistence
    # ------------------------------------------------------------------

    def snapshot(self) -> dict:
        data = {}
        for profile in self._profiles.values():
            with profile._lock:
                data[profile.name] = {
                    "success_rate_ema": profile.success_rate_ema,
                    "avg_latency_ema": profile.avg_latency_ema,
                    "consecutive_failures": profile.consecutive_failures,
                }
        return data

    def restore(self, data: dict) -> None:
        """Load statistics saved by `snapshot()`. Circuit state is not restored."""
        for name, saved in data.items():
            profile = self._profiles.get(name)
            if profile is None:
                continue
            try:
                ema = min(1.0, max(0.0, float(saved["success_rate_ema"])))
                latency = max(0.0, float(saved["avg_latency_ema"]))
                failures = max(0, int(saved.get("consecutive_failures", 0)))
            except (KeyError, TypeError, ValueError) as e:
                logger.warning(f"Ignoring corrupt provider snapshot for {name}: {e}")
                continue
            with profile._lock:
                # Never restore below the floor: a restart acts as a half-open retry
                profile.success_rate_ema = max(ema, self._floor)
                profile.avg_latency_ema = latency
                profile.consecutive_failures = min(failures, self._blacklist_threshold - 1)

    def _emit(self, name: str, **payload) -> None:
        if self._bus is not None:
            self._bus.emit(name, **payload)
