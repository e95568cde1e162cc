"""Event sink the engine publishes into.

Consumers (metrics reporter, dashboards, log shippers) are wired in by the
host with `subscribe()`; the engine never knows who is listening.

Events:
- cacheHit / cacheMiss / cacheStale / cacheEvict
- requestDeduped / requestComplete
- providerAttempt / providerSuccess / providerFailure / providerStatsUpdate
- budgetAlert / budgetExceeded / windowReset
- rateLimited
- circuitOpened / circuitClosed
"""

from __future__ import annotations

import logging
import time
from dataclasses import dataclass, field
from typing import Any, Callable

logger = logging.getLogger(__name__)

CACHE_HIT = "cacheHit"
CACHE_MISS = "cacheMiss"
CACHE_STALE = "cacheStale"
CACHE_EVICT = "cacheEvict"
REQUEST_DEDUPED = "requestDeduped"
REQUEST_COMPLETE = "requestComplete"
PROVIDER_ATTEMPT = "providerAttempt"
PROVIDER_SUCCESS = "providerSuccess"
PROVIDER_FAILURE = "providerFailure"
PROVIDER_STATS_UPDATE = "providerStatsUpdate"
BUDGET_ALERT = "budgetAlert"
BUDGET_EXCEEDED = "budgetExceeded"
WINDOW_RESET = "windowReset"
RATE_LIMITED = "rateLimited"
CIRCUIT_OPENED = "circuitOpened"
CIRCUIT_CLOSED = "circuitClosed"

EVENT_NAMES = frozenset({
    CACHE_HIT,
    CACHE_MISS,
    CACHE_STALE,
    CACHE_EVICT,
    REQUEST_DEDUPED,
    REQUEST_COMPLETE,
    PROVIDER_ATTEMPT,
    PROVIDER_SUCCESS,
    PROVIDER_FAILURE,
    PROVIDER_STATS_UPDATE,
    BUDGET_ALERT,
    BUDGET_EXCEEDED,
    WINDOW_RESET,
    RATE_LIMITED,
    CIRCUIT_OPENED,
    CIRCUIT_CLOSED,
})


@dataclass(frozen=True)
class Event:
    name: str
    payload: dict[str, Any] = field(default_factory=dict)
    timestamp: float = field(default_factory=time.time)


Listener = Callable[[Event], None]


class EventBus:
    """Synchronous fan-out of engine events to registered listeners.

    Listeners run inline in registration order. A failing listener is logged
    and recorded in `errors`; it never breaks the publisher or the listeners
    after it.
    """

    def __init__(self):
        self._listeners: dict[str, list[Listener]] = {name: [] for name in EVENT_NAMES}
        self._wildcard: list[Listener] = []
        self._errors: dict[str, list[str]] = {}

    def subscribe(self, event_name: str, listener: Listener) -> None:
        """Register a listener for one event, or for every event with "*"."""
        if not callable(listener):
            raise TypeError(f"Listener must be callable, got {type(listener)}")
        if event_name == "*":
            self._wildcard.append(listener)
            return
        if event_name not in EVENT_NAMES:
            raise ValueError(
                f"Invalid event: {event_name}. "
                f"Valid: {', '.join(sorted(EVENT_NAMES))}"
            )
        self._listeners[event_name].append(listener)

    def unsubscribe(self, event_name: str, listener: Listener | None = None) -> None:
        """Remove a listener (or all listeners for an event)."""
        if event_name == "*":
            bucket = self._wildcard
        elif event_name in EVENT_NAMES:
            bucket = self._listeners[event_name]
        else:
            return
        if listener is None:
            bucket.clear()
        else:
            bucket[:] = [cb for cb in bucket if cb is not listener]

    def emit(self, event_name: str, **payload: Any) -> None:
        if event_name not in EVENT_NAMES:
            raise ValueError(f"Unknown event: {event_name}")

        listeners = self._listeners[event_name] + self._wildcard
        if not listeners:
            return

        event = Event(name=event_name, payload=payload)
        for listener in listeners:
            try:
                listener(event)
            except Exception as e:
                error_msg = f"Listener {getattr(listener, '__name__', listener)!r} failed on {event_name}: {e}"
                logger.warning(error_msg)
                self._errors.setdefault(event_name, []).append(error_msg)

    @property
    def errors(self) -> dict[str, list[str]]:
        return self._errors

    def has_listeners(self, event_name: str) -> bool:
        return bool(self._listeners.get(event_name)) or bool(self._wildcard)

    def clear(self) -> None:
        for name in EVENT_NAMES:
            self._listeners[name] = []
        self._wildcard = []
        self._errors = {}
