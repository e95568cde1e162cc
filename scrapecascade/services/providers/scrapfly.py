"""Scrapfly: anti-scraping protection (ASP) with residential proxies.

Billing is in credits, reported in the JSON body and converted to USD with
the provider's `usd_per_credit`.
"""

import logging

from scrapecascade.core.exceptions import ProviderAttemptFailed
from scrapecascade.schemas.request import RequestDescriptor
from scrapecascade.schemas.result import ProviderResponse
from scrapecascade.services.providers.base import Provider, is_success_status

logger = logging.getLogger(__name__)


class ScrapflyProvider(Provider):
    asp = True
    render_js = True
    proxy_pool = "public_residential_pool"

    def _build_params(self, descriptor: RequestDescriptor) -> dict:
        params = {
            "key": self.config.api_key,
            "url": descriptor.url,
            "asp": str(self.asp).lower(),
            "render_js": str(self.render_js).lower(),
            "proxy_pool": self.proxy_pool,
        }
        for name, value in descriptor.headers.items():
            params[f"headers[{name.lower()}]"] = value
        return params

    async def fetch(self, descriptor: RequestDescriptor, timeout: float) -> ProviderResponse:
        params = self._build_params(descriptor)
        client = self._get_client()

        if descriptor.method.upper() == "POST":
            resp = await client.post(
                self.config.endpoint, params=params, content=descriptor.body, timeout=timeout
            )
        else:
            resp = await client.get(self.config.endpoint, params=params, timeout=timeout)

        try:
            data = resp.json()
        except ValueError:
            raise ProviderAttemptFailed(
                self.name, f"Unreadable response (HTTP {resp.status_code})", resp.status_code
            )

        cost = self._extract_cost(data)
        result = data.get("result") or {}
        if not result:
            return ProviderResponse(
                success=False,
                status_code=resp.status_code,
                url=descriptor.url,
                cost=cost,
                error=data.get("message") or f"HTTP {resp.status_code}",
            )

        status = int(result.get("status_code") or 0)
        success = bool(result.get("success", True)) and is_success_status(status)
        return ProviderResponse(
            success=success,
            status_code=status,
            url=result.get("url") or descriptor.url,
            content=result.get("content") or "",
            headers={k.lower(): str(v) for k, v in (result.get("response_headers") or {}).items()},
            cookies=list(result.get("cookies") or []),
            cost=cost,
            error=None if success else (result.get("error") or {}).get("message")
            or f"Non-success status {status}",
        )

    def _extract_cost(self, data: dict) -> float | None:
        cost = (data.get("context") or {}).get("cost") or data.get("cost") or {}
        total = cost.get("total") if isinstance(cost, dict) else None
        if total is None:
            return None
        return self.config.to_usd(float(total))
