from dataclasses import dataclass, field
from typing import Any

from pydantic import BaseModel, Field


class AttemptRecord(BaseModel):
    provider: str
    success: bool
    status_code: int = 0
    cost: float = 0.0
    duration_ms: float = 0.0
    error: str | None = None

    model_config = {"frozen": True}


class CascadeResult(BaseModel):
    success: bool
    provider: str
    url: str
    status_code: int = 0
    content: str = ""
    headers: dict[str, str] = Field(default_factory=dict)
    cookies: list[dict[str, Any]] = Field(default_factory=list)
    cost: float = 0.0
    response_time_ms: float = 0.0
    cached: bool = False
    deduped: bool = False
    stale: bool = False
    attempts: list[AttemptRecord] = Field(default_factory=list)

    model_config = {"frozen": True}


@dataclass
class ProviderResponse:
    """What a provider client hands back for one attempt.

    `cost` is already converted to USD; None means "use the configured
    per-request cost".
    """

    success: bool
    status_code: int
    url: str
    content: str = ""
    headers: dict[str, str] = field(default_factory=dict)
    cookies: list[dict[str, Any]] = field(default_factory=list)
    cost: float | None = None
    error: str | None = None
