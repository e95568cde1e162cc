from __future__ import annotations

import logging
from abc import ABC, abstractmethod

import httpx

from scrapecascade.config import ProviderConfig
from scrapecascade.schemas.request import RequestDescriptor
from scrapecascade.schemas.result import ProviderResponse

logger = logging.getLogger(__name__)


def is_success_status(status_code: int) -> bool:
    return 200 <= status_code < 400


class Provider(ABC):
    """One extraction backend the cascade can call.

    `fetch()` returns a ProviderResponse for anything the backend answered
    (including non-success statuses) and raises for transport failures or
    backend-level errors. The scheduler turns both into AttemptRecords.
    """

    def __init__(self, config: ProviderConfig, client: httpx.AsyncClient | None = None):
        self.config = config
        self._client = client
        self._owns_client = client is None

    @property
    def name(self) -> str:
        return self.config.name

    def _get_client(self) -> httpx.AsyncClient:
        if self._client is None or self._client.is_closed:
            self._client = httpx.AsyncClient(follow_redirects=True)
            self._owns_client = True
        return self._client

    @abstractmethod
    async def fetch(self, descriptor: RequestDescriptor, timeout: float) -> ProviderResponse:
        """Fetch `descriptor` through this backend within `timeout` seconds."""

    async def aclose(self) -> None:
        if self._owns_client and self._client is not None and not self._client.is_closed:
            await self._client.aclose()
        self._client = None
