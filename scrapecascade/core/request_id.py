"""Request ID propagation for log correlation.

Every cascade runs under an ID stored in a contextvars.ContextVar so all log
lines for one fetch (and its provider attempts) can be tied together. The
operator API reads X-Request-ID from the incoming request or generates one.
"""

import contextvars
import uuid

from starlette.middleware.base import BaseHTTPMiddleware
from starlette.requests import Request
from starlette.responses import Response

# Context variable accessible from anywhere in the same async task
request_id_var: contextvars.ContextVar[str] = contextvars.ContextVar(
    "request_id", default=""
)


class RequestIDMiddleware(BaseHTTPMiddleware):
    async def dispatch(self, request: Request, call_next) -> Response:
        rid = request.headers.get("X-Request-ID") or str(uuid.uuid4())
        token = request_id_var.set(rid)
        try:
            response = await call_next(request)
            response.headers["X-Request-ID"] = rid
            return response
        finally:
            request_id_var.reset(token)


def get_request_id() -> str:
    """Get the current request ID (empty string outside a request context)."""
    return request_id_var.get()


def ensure_request_id() -> str:
    """Return the current request ID, generating a short one if unset."""
    rid = request_id_var.get()
    if not rid:
        rid = uuid.uuid4().hex[:12]
        request_id_var.set(rid)
    return rid
