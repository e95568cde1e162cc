"""Error taxonomy for the cascade engine.

Terminal errors (surface to the caller):
- RateLimitedError: no rate-limit token available
- BudgetExceededError: the request would breach a spend ceiling
- ProviderUnavailableError: every provider was filtered out before any attempt
- CascadeExhaustedError: every attempted provider failed

ProviderAttemptFailed is raised by provider clients for a single failed
attempt and is absorbed by the scheduler.
"""

from __future__ import annotations

from typing import TYPE_CHECKING

if TYPE_CHECKING:
    from scrapecascade.schemas.result import AttemptRecord, CascadeResult


class CascadeError(Exception):
    """Base class for all engine errors."""

    code = "CASCADE_ERROR"


class RateLimitedError(CascadeError):
    """Raised when the token bucket is empty."""

    code = "RATE_LIMITED"

    def __init__(self, retry_after: float = 0):
        self.retry_after = retry_after
        super().__init__(f"Rate limit exceeded, retry after {retry_after:.2f}s")


class BudgetExceededError(CascadeError):
    """Raised when a reservation would push a budget window past its limit."""

    code = "BUDGET_EXCEEDED"

    def __init__(
        self,
        window: str,
        limit: float = 0.0,
        spent: float = 0.0,
        requested: float = 0.0,
    ):
        self.window = window
        self.limit = limit
        self.spent = spent
        self.requested = requested
        super().__init__(
            f"{window} budget exceeded: spent ${spent:.4f} + requested "
            f"${requested:.4f} > limit ${limit:.2f}"
        )


class ProviderUnavailableError(CascadeError):
    """Raised when no provider is eligible for a request."""

    code = "PROVIDER_UNAVAILABLE"

    def __init__(self, reasons: dict[str, str] | None = None):
        self.reasons = reasons or {}
        detail = ", ".join(f"{name}: {why}" for name, why in self.reasons.items())
        super().__init__(f"No eligible provider ({detail or 'none configured'})")


class ProviderAttemptFailed(CascadeError):
    """One provider's attempt failed (network, timeout or non-success status)."""

    code = "PROVIDER_ATTEMPT_FAILED"

    def __init__(self, provider: str, message: str, status_code: int = 0):
        self.provider = provider
        self.status_code = status_code
        super().__init__(f"{provider}: {message}")


class CascadeExhaustedError(CascadeError):
    """Raised when every attempted provider failed."""

    code = "CASCADE_EXHAUSTED"

    def __init__(self, result: CascadeResult):
        self.result = result
        tried = " → ".join(a.provider for a in result.attempts) or "none"
        super().__init__(
            f"All providers failed for {result.url} after "
            f"{len(result.attempts)} attempts ({tried})"
        )

    @property
    def url(self) -> str:
        return self.result.url

    @property
    def attempts(self) -> list[AttemptRecord]:
        return self.result.attempts
