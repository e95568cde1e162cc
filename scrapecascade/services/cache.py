"""Bounded in-process response cache with TTL and LRU eviction.

- `ttl_ms`: hard expiry; an entry older than this is gone
- `max_age_ms` (<= ttl_ms): freshness; an older entry is still returned by
  `get()` but flagged stale so the engine can refetch or serve-and-revalidate
- capacity: past `max_entries` the least recently used entries are evicted

Every eviction publishes a cacheEvict event (reason "capacity" or
"expired") separately from hit/miss accounting, so memory pressure can be
told apart from poor hit rates.
"""

from __future__ import annotations

import logging
import threading
import time
from collections import OrderedDict
from dataclasses import dataclass
from typing import Callable

from scrapecascade.core import events
from scrapecascade.core.events import EventBus
from scrapecascade.schemas.result import CascadeResult

logger = logging.getLogger(__name__)


@dataclass
class CacheEntry:
    key: str
    payload: CascadeResult
    cost: float
    stored_at: float
    hit_count: int = 0
    stale: bool = False


class ResponseCache:
    def __init__(
        self,
        max_entries: int = 1000,
        ttl_ms: int = 3_600_000,
        max_age_ms: int | None = None,
        bus: EventBus | None = None,
        clock: Callable[[], float] = time.monotonic,
    ):
        max_age_ms = ttl_ms if max_age_ms is None else max_age_ms
        if max_age_ms > ttl_ms:
            raise ValueError("max_age_ms must not exceed ttl_ms")
        self._max_entries = max_entries
        self._ttl = ttl_ms / 1000
        self._max_age = max_age_ms / 1000
        self._bus = bus
        self._clock = clock
        self._entries: OrderedDict[str, CacheEntry] = OrderedDict()
        self._lock = threading.Lock()

        self.hits = 0
        self.stale_hits = 0
        self.misses = 0
        self.evictions = 0

    def __len__(self) -> int:
        return len(self._entries)

    def __contains__(self, key: str) -> bool:
        return key in self._entries

    def get(self, key: str) -> CacheEntry | None:
        """Return the entry for `key`, or None if absent or past TTL.

        A returned entry has `stale=True` when older than max_age.
        """
        now = self._clock()
        expired = None
        with self._lock:
            entry = self._entries.get(key)
            if entry is not None and now - entry.stored_at > self._ttl:
                expired = self._entries.pop(key)
                self.evictions += 1
                entry = None

            if entry is None:
                self.misses += 1
            else:
                entry.stale = now - entry.stored_at > self._max_age
                # A stale entry still needs a refetch, so it is not a hit
                if entry.stale:
                    self.stale_hits += 1
                else:
                    self.hits += 1
                    entry.hit_count += 1
                self._entries.move_to_end(key)

        if expired is not None:
            self._emit_evict(expired, "expired")
        if entry is None:
            self._emit(events.CACHE_MISS, key=key)
        elif entry.stale:
            self._emit(events.CACHE_STALE, key=key, age_ms=(now - entry.stored_at) * 1000)
        else:
            self._emit(events.CACHE_HIT, key=key, saved_cost=entry.cost, hits=entry.hit_count)
        return entry

    def put(self, key: str, payload: CascadeResult, cost: float) -> CacheEntry:
        """Store a successful result, replacing any previous entry."""
        entry = CacheEntry(key=key, payload=payload, cost=cost, stored_at=self._clock())
        evicted: list[CacheEntry] = []
        with self._lock:
            self._entries[key] = entry
            self._entries.move_to_end(key)
            while len(self._entries) > self._max_entries:
                _, old = self._entries.popitem(last=False)
                evicted.append(old)
            self.evictions += len(evicted)

        for old in evicted:
            self._emit_evict(old, "capacity")
        return entry

    def invalidate(self, key: str) -> bool:
        with self._lock:
            return self._entries.pop(key, None) is not None

    def sweep(self) -> int:
        """Drop every entry past its TTL. Idempotent; returns the count removed."""
        now = self._clock()
        with self._lock:
            expired = [
                k for k, e in self._entries.items() if now - e.stored_at > self._ttl
            ]
            removed = [self._entries.pop(k) for k in expired]
            self.evictions += len(removed)

        for entry in removed:
            self._emit_evict(entry, "expired")
        if removed:
            logger.debug(f"Cache sweep removed {len(removed)} expired entries")
        return len(removed)

    def clear(self) -> None:
        with self._lock:
            self._entries.clear()

    def stats(self) -> dict:
        lookups = self.hits + self.stale_hits + self.misses
        return {
            "size": len(self._entries),
            "max_entries": self._max_entries,
            "hits": self.hits,
            "stale_hits": self.stale_hits,
            "misses": self.misses,
            "evictions": self.evictions,
            "hit_rate": self.hits / lookups if lookups else 0.0,
            "bytes": sum(len(e.payload.content) for e in self._entries.values()),
        }

    def _emit_evict(self, entry: CacheEntry, reason: str) -> None:
        self._emit(
            events.CACHE_EVICT,
            key=entry.key,
            reason=reason,
            size=len(entry.payload.content),
        )

    def _emit(self, name: str, **payload) -> None:
        if self._bus is not None:
            self._bus.emit(name, **payload)
