"""FlareSolverr: self-hosted Cloudflare challenge solver (free tier)."""

import logging

from scrapecascade.core.exceptions import ProviderAttemptFailed
from scrapecascade.schemas.request import RequestDescriptor
from scrapecascade.schemas.result import ProviderResponse
from scrapecascade.services.providers.base import Provider, is_success_status

logger = logging.getLogger(__name__)


class FlareSolverrProvider(Provider):
    async def fetch(self, descriptor: RequestDescriptor, timeout: float) -> ProviderResponse:
        method = descriptor.method.upper()
        payload: dict = {
            "cmd": "request.post" if method == "POST" else "request.get",
            "url": descriptor.url,
            "maxTimeout": int(timeout * 1000),
        }
        if descriptor.headers:
            payload["headers"] = dict(descriptor.headers)
        if method == "POST" and descriptor.body:
            payload["postData"] = descriptor.body.decode("utf-8", errors="replace")

        client = self._get_client()
        # Give FlareSolverr a little longer than its own maxTimeout to answer
        resp = await client.post(self.config.endpoint, json=payload, timeout=timeout + 5)
        resp.raise_for_status()
        data = resp.json()

        if data.get("status") != "ok" or not data.get("solution"):
            raise ProviderAttemptFailed(
                self.name, data.get("message") or "FlareSolverr returned no solution"
            )

        solution = data["solution"]
        status = int(solution.get("status") or 0)
        return ProviderResponse(
            success=is_success_status(status),
            status_code=status,
            url=solution.get("url") or descriptor.url,
            content=solution.get("response") or "",
            headers={k.lower(): str(v) for k, v in (solution.get("headers") or {}).items()},
            cookies=list(solution.get("cookies") or []),
            cost=0.0,
            error=None if is_success_status(status) else f"Non-success status {status}",
        )
