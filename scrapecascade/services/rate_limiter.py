"""Token-bucket admission gate.

Tokens refill continuously at tokens_per_interval / interval and are capped
at max_burst. Refill is computed lazily from elapsed time on every check, so
there is no background timer and a long idle period simply refills the
bucket to its cap.

The limiter never sleeps: an empty bucket raises RateLimitedError with the
time until the next token. Backing off is the caller's job.
"""

import logging
import threading
import time
from dataclasses import dataclass, field
from typing import Callable

from scrapecascade.core import events
from scrapecascade.core.events import EventBus
from scrapecascade.core.exceptions import RateLimitedError

logger = logging.getLogger(__name__)


@dataclass
class TokenBucket:
    max_tokens: float
    refill_rate: float  # tokens per second
    tokens: float
    last_refill: float
    _lock: threading.Lock = field(default_factory=threading.Lock, repr=False)

    def refill(self, now: float) -> None:
        """Top up tokens based on time since the last refill."""
        elapsed = max(0.0, now - self.last_refill)
        self.tokens = min(self.max_tokens, self.tokens + elapsed * self.refill_rate)
        self.last_refill = now

    def wait_time(self) -> float:
        if self.tokens >= 1:
            return 0.0
        return (1 - self.tokens) / self.refill_rate


class RateLimiter:
    def __init__(
        self,
        tokens_per_interval: int = 60,
        interval_ms: int = 60000,
        max_burst: int = 10,
        bus: EventBus | None = None,
        clock: Callable[[], float] = time.monotonic,
    ):
        self._clock = clock
        self._bus = bus
        self._bucket = TokenBucket(
            max_tokens=float(max_burst),
            refill_rate=tokens_per_interval / (interval_ms / 1000),
            tokens=float(max_burst),
            last_refill=clock(),
        )
        self._admitted = 0
        self._throttled = 0

        logger.info(
            f"RateLimiter: {tokens_per_interval} tokens / {interval_ms}ms, "
            f"burst={max_burst}"
        )

    def try_acquire(self) -> None:
        """Consume one token or raise RateLimitedError immediately."""
        bucket = self._bucket
        with bucket._lock:
            bucket.refill(self._clock())
            if bucket.tokens >= 1:
                bucket.tokens -= 1
                self._admitted += 1
                return
            retry_after = bucket.wait_time()
            self._throttled += 1

        logger.info(f"Rate limited, next token in {retry_after:.2f}s")
        if self._bus is not None:
            self._bus.emit(events.RATE_LIMITED, tokens_remaining=0, retry_after=retry_after)
        raise RateLimitedError(retry_after)

    @property
    def available_tokens(self) -> float:
        bucket = self._bucket
        with bucket._lock:
            bucket.refill(self._clock())
            return bucket.tokens

    def get_status(self) -> dict:
        total = self._admitted + self._throttled
        return {
            "available_tokens": round(self.available_tokens, 2),
            "max_tokens": self._bucket.max_tokens,
            "refill_rate_per_sec": self._bucket.refill_rate,
            "admitted": self._admitted,
            "throttled": self._throttled,
            "throttle_rate": self._throttled / total if total else 0.0,
        }
