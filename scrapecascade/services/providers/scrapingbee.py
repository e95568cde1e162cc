"""ScrapingBee: premium/stealth proxy with JavaScript rendering.

Billing is in credits, reported per response in the `spb-cost` header and
converted to USD with the provider's `usd_per_credit`.
"""

import json
import logging

from scrapecascade.schemas.request import RequestDescriptor
from scrapecascade.schemas.result import ProviderResponse
from scrapecascade.services.providers.base import Provider, is_success_status

logger = logging.getLogger(__name__)

_ORIGINAL_HEADER_PREFIX = "spb-original-"


class ScrapingBeeProvider(Provider):
    premium_proxy = True
    stealth_proxy = True
    render_js = True
    block_ads = True
    wait_ms = 15000

    def _build_params(self, descriptor: RequestDescriptor) -> dict:
        params = {
            "api_key": self.config.api_key,
            "url": descriptor.url,
            "render_js": str(self.render_js).lower(),
            "premium_proxy": str(self.premium_proxy).lower(),
            "stealth_proxy": str(self.stealth_proxy).lower(),
            "block_ads": str(self.block_ads).lower(),
            "wait": self.wait_ms,
        }
        if descriptor.headers:
            params["forward_headers"] = "true"
        return params

    async def fetch(self, descriptor: RequestDescriptor, timeout: float) -> ProviderResponse:
        params = self._build_params(descriptor)
        # Forwarded headers are sent prefixed with Spb-
        headers = {f"Spb-{k}": v for k, v in descriptor.headers.items()}

        client = self._get_client()
        if descriptor.method.upper() == "POST":
            resp = await client.post(
                self.config.endpoint,
                params=params,
                headers=headers,
                content=descriptor.body,
                timeout=timeout,
            )
        else:
            resp = await client.get(
                self.config.endpoint, params=params, headers=headers, timeout=timeout
            )

        cost = self._credits_to_usd(resp.headers.get("spb-cost"))
        if not is_success_status(resp.status_code):
            return ProviderResponse(
                success=False,
                status_code=resp.status_code,
                url=descriptor.url,
                cost=cost,
                error=_error_message(resp.status_code, resp.text),
            )

        # A 200 from the API still wraps whatever the target site answered
        status = _initial_status(resp.headers.get("spb-initial-status-code"), resp.status_code)
        if not is_success_status(status):
            return ProviderResponse(
                success=False,
                status_code=status,
                url=resp.headers.get("spb-resolved-url") or descriptor.url,
                cost=cost,
                error=f"Non-success status {status}",
            )

        logger.debug(
            f"ScrapingBee cost={resp.headers.get('spb-cost')} credits, "
            f"remaining={resp.headers.get('spb-credits-remaining')}"
        )
        return ProviderResponse(
            success=True,
            status_code=status,
            url=resp.headers.get("spb-resolved-url") or descriptor.url,
            content=resp.text,
            headers=_original_headers(resp.headers),
            cookies=_parse_cookies(resp.headers.get("spb-cookies")),
            cost=cost,
        )

    def _credits_to_usd(self, header: str | None) -> float | None:
        if not header:
            return None
        try:
            return self.config.to_usd(float(header))
        except ValueError:
            logger.debug(f"Unparseable spb-cost header: {header!r}")
            return None


def _initial_status(header: str | None, fallback: int) -> int:
    try:
        return int(header) if header else fallback
    except ValueError:
        logger.debug(f"Unparseable spb-initial-status-code header: {header!r}")
        return fallback


def _original_headers(headers) -> dict[str, str]:
    return {
        key.lower()[len(_ORIGINAL_HEADER_PREFIX):]: value
        for key, value in headers.items()
        if key.lower().startswith(_ORIGINAL_HEADER_PREFIX)
    }


def _parse_cookies(raw: str | None) -> list[dict]:
    if not raw:
        return []
    try:
        data = json.loads(raw)
    except json.JSONDecodeError:
        # name=value;name2=value2
        cookies = []
        for part in raw.split(";"):
            if "=" in part:
                name, value = part.split("=", 1)
                cookies.append({"name": name.strip(), "value": value.strip()})
        return cookies
    return data if isinstance(data, list) else []


def _error_message(status: int, body: str) -> str:
    messages = {
        400: "Bad request, check parameters",
        401: "Invalid API key",
        402: "Out of credits",
        403: "Forbidden",
        404: "Target page not found",
        429: "Too many concurrent requests",
        500: "ScrapingBee internal error",
    }
    detail = messages.get(status, f"HTTP {status}")
    snippet = (body or "").strip()[:200]
    return f"{detail}: {snippet}" if snippet else detail
