import httpx

from scrapecascade.config import ProviderConfig
from scrapecascade.services.providers.base import Provider, is_success_status
from scrapecascade.services.providers.flaresolverr import FlareSolverrProvider
from scrapecascade.services.providers.scrapfly import ScrapflyProvider
from scrapecascade.services.providers.scrapingbee import ScrapingBeeProvider

PROVIDER_CLASSES: dict[str, type[Provider]] = {
    "flaresolverr": FlareSolverrProvider,
    "scrapingbee": ScrapingBeeProvider,
    "scrapfly": ScrapflyProvider,
}


def build_provider(config: ProviderConfig, client: httpx.AsyncClient | None = None) -> Provider:
    """Instantiate the client for a configured provider kind."""
    cls = PROVIDER_CLASSES.get(config.kind)
    if cls is None:
        raise ValueError(
            f"No built-in client for provider {config.name!r} (kind={config.kind}); "
            "pass an instance via CascadeEngine(providers=...)"
        )
    return cls(config, client=client)


__all__ = [
    "Provider",
    "FlareSolverrProvider",
    "ScrapingBeeProvider",
    "ScrapflyProvider",
    "PROVIDER_CLASSES",
    "build_provider",
    "is_success_status",
]
