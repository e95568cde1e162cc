"""Cost-aware cascading fetch engine."""

from scrapecascade.config import CascadeConfig, ProviderConfig
from scrapecascade.core.events import Event, EventBus
from scrapecascade.core.exceptions import (
    BudgetExceededError,
    CascadeError,
    CascadeExhaustedError,
    ProviderAttemptFailed,
    ProviderUnavailableError,
    RateLimitedError,
)
from scrapecascade.schemas.request import FetchOptions, RequestDescriptor
from scrapecascade.schemas.result import AttemptRecord, CascadeResult, ProviderResponse
from scrapecascade.services.engine import CascadeEngine

__version__ = "0.1.0"

__all__ = [
    "CascadeEngine",
    "CascadeConfig",
    "ProviderConfig",
    "RequestDescriptor",
    "FetchOptions",
    "CascadeResult",
    "AttemptRecord",
    "ProviderResponse",
    "EventBus",
    "Event",
    "CascadeError",
    "RateLimitedError",
    "BudgetExceededError",
    "ProviderUnavailableError",
    "ProviderAttemptFailed",
    "CascadeExhaustedError",
]
