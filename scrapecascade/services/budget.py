"""Multi-window spend governance.

Three independent windows (hourly, daily, monthly) aligned to UTC calendar
boundaries. A request must reserve its estimated cost in all three windows at
once before a paid provider is called:

    reservation = governor.check_and_reserve(0.025)   # or BudgetExceededError
    ... provider call ...
    governor.record_actual_cost(actual, reservation)  # success only
    governor.release(reservation)                     # failure

`spent` only grows inside a window and returns to zero at the boundary.
Window resets are derived from timestamps, so `reset_expired_windows()` is
safe to call any number of times from any scheduler.
"""

from __future__ import annotations

import logging
import threading
from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from typing import Callable

from scrapecascade.core import events
from scrapecascade.core.events import EventBus
from scrapecascade.core.exceptions import BudgetExceededError

logger = logging.getLogger(__name__)

WINDOW_KINDS = ("hour", "day", "month")
WINDOW_LABELS = {"hour": "hourly", "day": "daily", "month": "monthly"}

# Float slack so a reservation landing exactly on the limit is allowed
_EPSILON = 1e-9


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


def window_bounds(kind: str, now: datetime) -> tuple[datetime, datetime]:
    """Return (period_start, reset_at) of the window containing `now`."""
    if kind == "hour":
        start = now.replace(minute=0, second=0, microsecond=0)
        return start, start + timedelta(hours=1)
    if kind == "day":
        start = now.replace(hour=0, minute=0, second=0, microsecond=0)
        return start, start + timedelta(days=1)
    if kind == "month":
        start = now.replace(day=1, hour=0, minute=0, second=0, microsecond=0)
        if start.month == 12:
            return start, start.replace(year=start.year + 1, month=1)
        return start, start.replace(month=start.month + 1)
    raise ValueError(f"Unknown window kind: {kind}")


@dataclass
class BudgetWindow:
    kind: str
    limit: float
    period_start: datetime
    reset_at: datetime
    spent: float = 0.0
    reserved: float = 0.0
    alerted_thresholds: set[float] = field(default_factory=set)

    @property
    def label(self) -> str:
        return WINDOW_LABELS[self.kind]

    @property
    def percent_used(self) -> float:
        if self.limit <= 0:
            return 100.0 if self.spent > 0 else 0.0
        return self.spent / self.limit * 100

    def would_exceed(self, amount: float) -> bool:
        return self.spent + self.reserved + amount > self.limit + _EPSILON

    def to_dict(self) -> dict:
        return {
            "kind": self.kind,
            "limit": self.limit,
            "spent": round(self.spent, 6),
            "reserved": round(self.reserved, 6),
            "remaining": round(max(0.0, self.limit - self.spent - self.reserved), 6),
            "percent_used": round(self.percent_used, 2),
            "period_start": self.period_start.isoformat(),
            "reset_at": self.reset_at.isoformat(),
            "alerted_thresholds": sorted(self.alerted_thresholds),
        }


@dataclass
class Reservation:
    amount: float
    settled: bool = False


class BudgetGovernor:
    def __init__(
        self,
        hourly_limit: float,
        daily_limit: float,
        monthly_limit: float,
        alert_thresholds: tuple[float, ...] | list[float] = (50, 75, 90, 100),
        bus: EventBus | None = None,
        now: Callable[[], datetime] = _utcnow,
    ):
        self._now = now
        self._bus = bus
        self._thresholds = tuple(sorted(alert_thresholds))
        self._lock = threading.Lock()
        # Charges reported above a reservation, kept out of window spend
        self.overshoot = 0.0

        current = now()
        limits = {"hour": hourly_limit, "day": daily_limit, "month": monthly_limit}
        self.windows: dict[str, BudgetWindow] = {}
        for kind in WINDOW_KINDS:
            start, reset_at = window_bounds(kind, current)
            self.windows[kind] = BudgetWindow(
                kind=kind, limit=limits[kind], period_start=start, reset_at=reset_at
            )

    def window(self, label_or_kind: str) -> BudgetWindow:
        for w in self.windows.values():
            if label_or_kind in (w.kind, w.label):
                return w
        raise KeyError(label_or_kind)

    # ------------------------------------------------------------------
    # Housekeeping
    # ------------------------------------------------------------------

    def reset_expired_windows(self) -> list[str]:
        """Zero every window whose boundary has passed. Idempotent."""
        with self._lock:
            reset = self._reset_expired_locked(self._now())
        for label in reset:
            logger.info(f"Budget window reset: {label}")
            self._emit(events.WINDOW_RESET, window=label)
        return reset

    def _reset_expired_locked(self, now: datetime) -> list[str]:
        reset = []
        for w in self.windows.values():
            if now >= w.reset_at:
                w.period_start, w.reset_at = window_bounds(w.kind, now)
                w.spent = 0.0
                # In-flight reservations belong to whichever window settles them
                w.alerted_thresholds.clear()
                reset.append(w.label)
        return reset

    # ------------------------------------------------------------------
    # Admission
    # ------------------------------------------------------------------

    def can_afford(self, amount: float) -> str | None:
        """Return the label of the first window `amount` would breach, or None."""
        with self._lock:
            self._reset_expired_locked(self._now())
            for w in self.windows.values():
                if w.would_exceed(amount):
                    return w.label
        return None

    def check(self, estimated_cost: float) -> None:
        """Raise BudgetExceededError if `estimated_cost` would breach a window."""
        self._admit(estimated_cost, reserve=False)

    def check_and_reserve(self, estimated_cost: float) -> Reservation:
        """Reserve `estimated_cost` in every window, or none of them."""
        self._admit(estimated_cost, reserve=True)
        return Reservation(amount=estimated_cost)

    def _admit(self, estimated_cost: float, reserve: bool) -> None:
        if estimated_cost < 0:
            raise ValueError("estimated_cost must be >= 0")

        denied = None
        with self._lock:
            reset = self._reset_expired_locked(self._now())
            for w in self.windows.values():
                if w.would_exceed(estimated_cost):
                    denied = (w.label, w.limit, w.spent + w.reserved)
                    break
            if denied is None and reserve:
                for w in self.windows.values():
                    w.reserved += estimated_cost

        for label in reset:
            self._emit(events.WINDOW_RESET, window=label)

        if denied is not None:
            label, limit, committed = denied
            logger.warning(
                f"Budget blocked: {label} committed ${committed:.4f} + "
                f"${estimated_cost:.4f} > ${limit:.2f}"
            )
            self._emit(
                events.BUDGET_EXCEEDED,
                window=label,
                limit=limit,
                spent=committed,
                requested=estimated_cost,
            )
            raise BudgetExceededError(label, limit=limit, spent=committed, requested=estimated_cost)

    def release(self, reservation: Reservation) -> None:
        """Give back an unused reservation (the attempt failed)."""
        with self._lock:
            if reservation.settled:
                return
            reservation.settled = True
            for w in self.windows.values():
                w.reserved = max(0.0, w.reserved - reservation.amount)

    def record_actual_cost(self, cost: float, reservation: Reservation | None = None) -> None:
        """Book the real cost of a successful attempt in every window.

        The reservation (if any) is released at the same time, so the
        difference between estimate and actual is reconciled in one step.

        A reservation is the ceiling for its attempt: anything a provider
        reports above it is not booked, it is logged and added to
        `overshoot` so spend stays within the limits that admitted it.
        """
        cost = max(0.0, cost)
        overshoot = 0.0
        if (
            reservation is not None
            and not reservation.settled
            and cost > reservation.amount + _EPSILON
        ):
            overshoot = cost - reservation.amount
            cost = reservation.amount
        alerts: list[tuple[str, float, float, float]] = []

        with self._lock:
            reset = self._reset_expired_locked(self._now())
            for w in self.windows.values():
                if reservation is not None and not reservation.settled:
                    w.reserved = max(0.0, w.reserved - reservation.amount)
                before = w.percent_used
                w.spent += cost
                after = w.percent_used
                for threshold in self._thresholds:
                    if threshold in w.alerted_thresholds:
                        continue
                    if before < threshold <= after:
                        w.alerted_thresholds.add(threshold)
                        alerts.append((w.label, threshold, w.spent, w.limit))
            if reservation is not None:
                reservation.settled = True
            self.overshoot += overshoot

        if overshoot:
            logger.warning(
                f"Provider charged ${overshoot:.4f} above its ${cost:.4f} reservation, "
                f"not booked against the budget"
            )
        for label in reset:
            self._emit(events.WINDOW_RESET, window=label)
        for label, threshold, spent, limit in alerts:
            logger.warning(
                f"Budget alert: {label} spend ${spent:.4f} crossed {threshold:g}% of ${limit:.2f}"
            )
            self._emit(
                events.BUDGET_ALERT,
                window=label,
                threshold=threshold,
                current=spent,
                budget=limit,
                percent=spent / limit * 100 if limit else 100.0,
            )

    # ------------------------------------------------------------------
    # Introspection / persistence
    # ------------------------------------------------------------------

    def summary(self) -> dict:
        with self._lock:
            return {w.label: w.to_dict() for w in self.windows.values()}

    def snapshot(self) -> dict:
        with self._lock:
            return {
                w.kind: {
                    "spent": w.spent,
                    "period_start": w.period_start.isoformat(),
                    "alerted_thresholds": sorted(w.alerted_thresholds),
                }
                for w in self.windows.values()
            }

    def restore(self, data: dict) -> None:
        """Load spend saved by `snapshot()`; windows from a past period are ignored."""
        with self._lock:
            for kind, saved in data.items():
                w = self.windows.get(kind)
                if w is None:
                    continue
                try:
                    saved_start = datetime.fromisoformat(saved["period_start"])
                    spent = float(saved["spent"])
                except (KeyError, TypeError, ValueError) as e:
                    logger.warning(f"Ignoring corrupt budget snapshot for {kind}: {e}")
                    continue
                if saved_start != w.period_start:
                    continue
                w.spent = max(w.spent, spent)
                w.alerted_thresholds = set(saved.get("alerted_thresholds", []))

    def _emit(self, name: str, **payload) -> None:
        if self._bus is not None:
            self._bus.emit(name, **payload)
