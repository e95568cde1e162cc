import logging
import math

from fastapi import APIRouter, Request
from fastapi.responses import JSONResponse

from scrapecascade.core.exceptions import (
    BudgetExceededError,
    CascadeError,
    CascadeExhaustedError,
    ProviderUnavailableError,
    RateLimitedError,
)
from scrapecascade.core.request_id import get_request_id
from scrapecascade.schemas.request import FetchRequest
from scrapecascade.services.engine import CascadeEngine

router = APIRouter()
logger = logging.getLogger(__name__)

ERROR_STATUS = {
    RateLimitedError: 429,
    BudgetExceededError: 402,
    ProviderUnavailableError: 503,
    CascadeExhaustedError: 502,
}


def get_engine(request: Request) -> CascadeEngine:
    return request.app.state.engine


def _error_response(error: CascadeError) -> JSONResponse:
    status_code = ERROR_STATUS.get(type(error), 500)
    body = {
        "success": False,
        "error": error.code,
        "message": str(error),
        "request_id": get_request_id() or None,
    }
    headers = {}

    if isinstance(error, RateLimitedError):
        body["retry_after"] = round(error.retry_after, 3)
        headers["Retry-After"] = str(max(1, math.ceil(error.retry_after)))
    elif isinstance(error, BudgetExceededError):
        body["window"] = error.window
        body["limit"] = error.limit
        body["spent"] = round(error.spent, 6)
        body["requested"] = round(error.requested, 6)
    elif isinstance(error, ProviderUnavailableError):
        body["reasons"] = error.reasons
    elif isinstance(error, CascadeExhaustedError):
        body["attempts"] = [a.model_dump() for a in error.attempts]

    return JSONResponse(content=body, status_code=status_code, headers=headers)


@router.post(
    "/fetch",
    summary="Fetch a URL through the provider cascade",
    description="Serve from cache when possible, coalesce with an identical in-flight request, "
    "otherwise try providers in (priority, cost) order until one succeeds. Governance "
    "rejections map to 429 (rate limited), 402 (budget exceeded), 503 (no eligible provider) "
    "and 502 (every provider failed).",
)
async def fetch(body: FetchRequest, request: Request):
    engine = get_engine(request)
    try:
        result = await engine.fetch(body.to_descriptor(), body.options)
    except CascadeError as e:
        logger.info(f"Fetch {body.url} rejected: {e.code}")
        return _error_response(e)
    return result.model_dump()


@router.get(
    "/stats",
    summary="Engine statistics",
    description="Spend per budget window, savings from cache and coalescing, per-provider "
    "counters and reliability profiles, spend projections, cache and rate-limit status.",
)
async def stats(request: Request):
    return get_engine(request).stats()


@router.post(
    "/housekeeping",
    summary="Run housekeeping now",
    description="Sweep expired cache and in-flight entries, reset elapsed budget windows and "
    "return cooled-down providers to service. Safe to call at any time.",
)
async def housekeeping(request: Request):
    return get_engine(request).run_housekeeping()
