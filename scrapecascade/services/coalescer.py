"""In-flight request coalescing.

At most one execution runs per dedup key. The first caller becomes the
leader and must call `settle()`; everyone arriving while the leader runs (or
within the grace period right after it settles) joins and receives the
leader's outcome (result or exception) without touching a provider.

All state changes happen synchronously on the event loop thread, so
`acquire()` and `settle()` are atomic with respect to each other.
"""

from __future__ import annotations

import asyncio
import logging
import time
from dataclasses import dataclass, field
from typing import Callable

from scrapecascade.core import events
from scrapecascade.core.events import EventBus
from scrapecascade.schemas.result import CascadeResult

logger = logging.getLogger(__name__)


@dataclass
class _Outcome:
    result: CascadeResult | None = None
    error: BaseException | None = None


@dataclass
class InFlightEntry:
    dedup_key: str
    broadcaster: asyncio.Future
    started_at: float
    joiner_count: int = 0
    settled_at: float | None = None
    _expiry: asyncio.TimerHandle | None = field(default=None, repr=False)

    @property
    def settled(self) -> bool:
        return self.settled_at is not None


@dataclass
class Claim:
    """Result of `InFlightCoalescer.acquire()`."""

    dedup_key: str
    is_leader: bool
    entry: InFlightEntry

    async def wait(self) -> CascadeResult:
        """Wait for the leader's outcome.

        Cancelling the waiter only cancels this wait; the leader and other
        joiners are unaffected.
        """
        outcome: _Outcome = await asyncio.shield(self.entry.broadcaster)
        if outcome.error is not None:
            raise outcome.error
        return outcome.result


class InFlightCoalescer:
    def __init__(
        self,
        window_ms: int = 5000,
        grace_ms: int = 50,
        bus: EventBus | None = None,
        clock: Callable[[], float] = time.monotonic,
    ):
        self._window = window_ms / 1000
        self._grace = grace_ms / 1000
        self._bus = bus
        self._clock = clock
        self._entries: dict[str, InFlightEntry] = {}

    def __len__(self) -> int:
        return len(self._entries)

    def _is_joinable(self, entry: InFlightEntry, now: float) -> bool:
        if not entry.settled:
            # A running leader is always joined: two live executions for
            # one key are never allowed, however long the leader takes.
            return True
        return (
            now - entry.settled_at <= self._grace
            and now - entry.started_at <= self._window
        )

    def acquire(self, dedup_key: str) -> Claim:
        now = self._clock()
        entry = self._entries.get(dedup_key)

        if entry is not None and self._is_joinable(entry, now):
            entry.joiner_count += 1
            logger.debug(
                f"Coalesced request onto in-flight {dedup_key[:12]} "
                f"(joiners={entry.joiner_count})"
            )
            if self._bus is not None:
                self._bus.emit(
                    events.REQUEST_DEDUPED,
                    key=dedup_key,
                    count=entry.joiner_count + 1,
                )
            return Claim(dedup_key=dedup_key, is_leader=False, entry=entry)

        if entry is not None:
            self._drop(dedup_key, entry)

        loop = asyncio.get_running_loop()
        entry = InFlightEntry(
            dedup_key=dedup_key,
            broadcaster=loop.create_future(),
            started_at=now,
        )
        self._entries[dedup_key] = entry
        return Claim(dedup_key=dedup_key, is_leader=True, entry=entry)

    def settle(
        self,
        claim: Claim,
        result: CascadeResult | None = None,
        error: BaseException | None = None,
    ) -> None:
        """Publish the leader's outcome to every joiner. One-shot."""
        if not claim.is_leader:
            raise ValueError("Only the leader may settle an in-flight entry")

        entry = claim.entry
        if entry.settled:
            return

        entry.settled_at = self._clock()
        if not entry.broadcaster.done():
            entry.broadcaster.set_result(_Outcome(result=result, error=error))

        if self._grace > 0:
            loop = asyncio.get_running_loop()
            entry._expiry = loop.call_later(self._grace, self._drop, claim.dedup_key, entry)
        else:
            self._drop(claim.dedup_key, entry)

    def _drop(self, dedup_key: str, entry: InFlightEntry) -> None:
        if entry._expiry is not None:
            entry._expiry.cancel()
            entry._expiry = None
        # Only remove if a newer leader hasn't replaced this entry
        if self._entries.get(dedup_key) is entry:
            del self._entries[dedup_key]

    def sweep(self) -> int:
        """Remove settled entries past their grace period. Idempotent."""
        now = self._clock()
        stale = [
            (key, entry)
            for key, entry in self._entries.items()
            if entry.settled and now - entry.settled_at > self._grace
        ]
        for key, entry in stale:
            self._drop(key, entry)
        return len(stale)

    def close(self) -> None:
        """Cancel pending expiry timers and forget every settled entry."""
        for key, entry in list(self._entries.items()):
            if entry.settled:
                self._drop(key, entry)

    def stats(self) -> dict:
        return {
            "in_flight": sum(1 for e in self._entries.values() if not e.settled),
            "settling": sum(1 for e in self._entries.values() if e.settled),
            "joiners": sum(e.joiner_count for e in self._entries.values()),
        }
