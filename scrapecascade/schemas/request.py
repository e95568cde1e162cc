from typing import Literal

from pydantic import BaseModel, Field, field_validator


def _normalize_url(url: str) -> str:
    """Prepend https:// if no protocol is present."""
    url = url.strip()
    if url and not url.startswith(("http://", "https://", "//")):
        url = f"https://{url}"
    return url


class RequestDescriptor(BaseModel):
    """A logical fetch request. Frozen once built."""

    url: str
    method: str = "GET"
    headers: dict[str, str] = Field(default_factory=dict)
    body: bytes = b""

    model_config = {"frozen": True}

    @field_validator("url", mode="before")
    @classmethod
    def _add_protocol(cls, v: str) -> str:
        return _normalize_url(v)

    @field_validator("headers", mode="before")
    @classmethod
    def _copy_headers(cls, v: dict[str, str] | None) -> dict[str, str]:
        # Own copy so later mutation of the caller's dict can't leak in
        return dict(v or {})

    @field_validator("body", mode="before")
    @classmethod
    def _encode_body(cls, v: bytes | str | None) -> bytes:
        if v is None:
            return b""
        if isinstance(v, str):
            return v.encode("utf-8")
        return v


class FetchOptions(BaseModel):
    force_provider: str | None = None
    bypass_cache: bool = False
    max_cost: float | None = Field(default=None, ge=0)
    priority_hint: Literal["low", "normal", "high"] = "normal"

    model_config = {"frozen": True}


class FetchRequest(BaseModel):
    """Body of POST /v1/fetch."""

    url: str
    method: str = "GET"
    headers: dict[str, str] | None = None
    body: str | None = None
    options: FetchOptions = Field(default_factory=FetchOptions)

    def to_descriptor(self) -> RequestDescriptor:
        return RequestDescriptor(
            url=self.url,
            method=self.method,
            headers=self.headers or {},
            body=self.body,
        )
