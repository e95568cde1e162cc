"""Optional Redis snapshot of provider statistics and budget spend.

Nothing here is needed for correctness: a missing or unreachable Redis just
means the engine starts with configured defaults. Keys:

    {prefix}:profiles  -> JSON of ProviderRegistry.snapshot()
    {prefix}:budget    -> JSON of BudgetGovernor.snapshot()
"""

import json
import logging

from scrapecascade.core.redis import ResilientRedis
from scrapecascade.services.budget import BudgetGovernor
from scrapecascade.services.registry import ProviderRegistry

logger = logging.getLogger(__name__)


class SnapshotStore:
    def __init__(
        self,
        redis: ResilientRedis,
        registry: ProviderRegistry,
        budget: BudgetGovernor,
        prefix: str = "scrapecascade:state",
        ttl_seconds: int | None = None,
    ):
        self._redis = redis
        self._registry = registry
        self._budget = budget
        self._prefix = prefix
        self._ttl = ttl_seconds

    @property
    def profiles_key(self) -> str:
        return f"{self._prefix}:profiles"

    @property
    def budget_key(self) -> str:
        return f"{self._prefix}:budget"

    async def save(self) -> bool:
        """Write both snapshots. Returns False if Redis refused either write."""
        profiles_ok = await self._redis.set(
            self.profiles_key, json.dumps(self._registry.snapshot()), ex=self._ttl
        )
        budget_ok = await self._redis.set(
            self.budget_key, json.dumps(self._budget.snapshot()), ex=self._ttl
        )
        saved = bool(profiles_ok) and bool(budget_ok)
        if not saved:
            logger.warning("State snapshot not saved (Redis unavailable)")
        return saved

    async def load(self) -> dict[str, bool]:
        """Restore whatever snapshots exist. Corrupt data is ignored."""
        restored = {"profiles": False, "budget": False}

        data = await self._read(self.profiles_key)
        if data is not None:
            self._registry.restore(data)
            restored["profiles"] = True

        data = await self._read(self.budget_key)
        if data is not None:
            self._budget.restore(data)
            restored["budget"] = True

        if any(restored.values()):
            logger.info(f"Restored engine state from Redis: {restored}")
        return restored

    async def _read(self, key: str) -> dict | None:
        raw = await self._redis.get(key)
        if not raw:
            return None
        try:
            data = json.loads(raw)
        except (json.JSONDecodeError, TypeError) as e:
            logger.warning(f"Ignoring unreadable snapshot {key}: {e}")
            return None
        if not isinstance(data, dict):
            logger.warning(f"Ignoring malformed snapshot {key}")
            return None
        return data

    async def clear(self) -> None:
        await self._redis.delete(self.profiles_key, self.budget_key)
