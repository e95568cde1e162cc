"""Degrading Redis client behind the optional state snapshot.

Snapshots are a convenience: when Redis is down, reads return None and writes
return False, and the engine keeps running on in-process state. Repeated
connection failures open a short circuit so a dead Redis is not retried on
every shutdown/startup call.
"""

import asyncio
import logging
import time
from typing import Awaitable, Callable

import redis.asyncio as aioredis

from scrapecascade.config import settings

logger = logging.getLogger(__name__)

# Errors that mean "Redis is unreachable", as opposed to a bad command
_UNREACHABLE = (aioredis.ConnectionError, aioredis.TimeoutError, OSError)


class ResilientRedis:
    """Async Redis wrapper exposing only what SnapshotStore needs.

    - get / set / delete / ping never raise for connectivity problems
    - after `failure_threshold` consecutive failures calls are skipped for
      `cooldown` seconds, then one probe is let through
    - a failed call drops the client and backs off (1s, 2s, 4s, ... capped)
      before the next one rebuilds it
    """

    MAX_BACKOFF = 30.0

    def __init__(
        self,
        url: str | None = None,
        max_connections: int | None = None,
        *,
        failure_threshold: int = 5,
        cooldown: float = 10.0,
        client_factory: Callable[[], aioredis.Redis] | None = None,
        clock: Callable[[], float] = time.monotonic,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ):
        self._url = url or settings.REDIS_URL
        self._max_connections = max_connections or settings.REDIS_MAX_CONNECTIONS
        self._factory = client_factory or self._create_client
        self._clock = clock
        self._sleep = sleep
        self.failure_threshold = failure_threshold
        self.cooldown = cooldown

        self._client: aioredis.Redis | None = None
        self._failures = 0
        self._skip_until = 0.0
        self._backoff = 1.0

    def _create_client(self) -> aioredis.Redis:
        return aioredis.from_url(
            self._url,
            encoding="utf-8",
            decode_responses=True,
            max_connections=self._max_connections,
            socket_connect_timeout=5,
            socket_timeout=5,
        )

    @property
    def client(self) -> aioredis.Redis:
        if self._client is None:
            self._client = self._factory()
        return self._client

    @property
    def circuit_open(self) -> bool:
        return self._failures >= self.failure_threshold and self._clock() < self._skip_until

    async def _call(self, op_name: str, method: str, *args, default=None, **kwargs):
        if self.circuit_open:
            return default
        try:
            result = await getattr(self.client, method)(*args, **kwargs)
        except _UNREACHABLE as e:
            logger.warning(f"Redis {op_name} failed, continuing without snapshot: {e}")
            await self._on_failure()
            return default
        self._failures = 0
        self._backoff = 1.0
        return result

    async def _on_failure(self) -> None:
        self._failures += 1
        if self._failures >= self.failure_threshold:
            self._skip_until = self._clock() + self.cooldown
            logger.warning(
                f"Redis unreachable {self._failures} times in a row, "
                f"skipping it for {self.cooldown:.0f}s"
            )
        await self._drop_client()
        await self._sleep(self._backoff)
        self._backoff = min(self._backoff * 2, self.MAX_BACKOFF)

    async def _drop_client(self) -> None:
        client, self._client = self._client, None
        if client is None:
            return
        try:
            await client.aclose()
        except (aioredis.RedisError, OSError) as e:
            logger.debug(f"Closing broken Redis client failed: {e}")

    async def get(self, key: str) -> str | None:
        return await self._call("get", "get", key)

    async def set(self, key: str, value: str, ex: int | None = None) -> bool:
        return bool(await self._call("set", "set", key, value, ex=ex, default=False))

    async def delete(self, *keys: str) -> int:
        return await self._call("delete", "delete", *keys, default=0)

    async def ping(self) -> bool:
        return bool(await self._call("ping", "ping", default=False))

    async def close(self) -> None:
        await self._drop_client()
