"""Request fingerprinting for caching and in-flight deduplication.

Two keys are derived from a RequestDescriptor:
- cache key: SHA-256 over method, url, allow-listed headers and body.
  Long-lived, so it must be collision resistant.
- dedup key: MD5 over method, url and body (headers ignored). Only needs to
  be unique inside the short dedup window.

Both are pure functions of the descriptor, so the same logical request maps
to the same keys across processes and restarts.
"""

import base64
import hashlib
import json

from scrapecascade.schemas.request import RequestDescriptor

# Headers that change what the origin returns; everything else is noise
SIGNIFICANT_HEADERS = (
    "authorization",
    "content-type",
    "accept",
    "user-agent",
    "referer",
)


def _normalize_headers(headers: dict[str, str]) -> dict[str, str]:
    normalized = {}
    for key, value in headers.items():
        lower = key.lower()
        if lower in SIGNIFICANT_HEADERS:
            normalized[lower] = value
    return normalized


def _serialize_body(body: bytes) -> str:
    return base64.b64encode(body).decode("ascii") if body else ""


def compute_cache_key(descriptor: RequestDescriptor) -> str:
    """Strong cache key: includes the significant headers."""
    normalized = {
        "url": descriptor.url.lower(),
        "method": descriptor.method.upper(),
        "headers": _normalize_headers(descriptor.headers),
        "body": _serialize_body(descriptor.body),
    }
    key_data = json.dumps(normalized, sort_keys=True, separators=(",", ":"))
    return hashlib.sha256(key_data.encode()).hexdigest()


def compute_dedup_key(descriptor: RequestDescriptor) -> str:
    """Loose dedup key: headers are ignored entirely."""
    normalized = {
        "url": descriptor.url.lower(),
        "method": descriptor.method.upper(),
        "body": _serialize_body(descriptor.body),
    }
    key_data = json.dumps(normalized, sort_keys=True, separators=(",", ":"))
    return hashlib.md5(key_data.encode(), usedforsecurity=False).hexdigest()
