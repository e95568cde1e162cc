import logging

from fastapi import APIRouter, Request
from fastapi.responses import JSONResponse, Response

from scrapecascade.config import settings
from scrapecascade.core.metrics import get_metrics, get_metrics_content_type
from scrapecascade.services.registry import STATE_ACTIVE

router = APIRouter()
logger = logging.getLogger(__name__)


@router.get(
    "/health",
    summary="Liveness check",
    description="Basic liveness probe that returns HTTP 200 if the application process is running.",
)
async def liveness():
    """Liveness probe: returns 200 if the process is running."""
    return {"status": "healthy"}


@router.get(
    "/health/ready",
    summary="Readiness check",
    description="Readiness probe that verifies the engine is initialised and at least one provider "
    "is eligible. Redis is reported but only required when state snapshots are enabled. "
    "Returns HTTP 503 if a required check fails.",
)
async def readiness(request: Request):
    """Readiness probe: engine, providers and (optionally) Redis."""
    checks = {}
    required = ["engine", "providers"]

    engine = getattr(request.app.state, "engine", None)
    if engine is None:
        checks["engine"] = "not initialized"
        checks["providers"] = "unknown"
    else:
        checks["engine"] = "ok"
        active = [
            p.name for p in engine.registry.profiles if p.enabled and p.state == STATE_ACTIVE
        ]
        checks["providers"] = "ok" if active else "no active provider"

    redis = getattr(request.app.state, "redis", None)
    if redis is not None:
        required.append("redis")
        checks["redis"] = "ok" if await redis.ping() else "error: unreachable"

    all_ok = all(checks[name] == "ok" for name in required)
    return JSONResponse(
        content={"status": "ready" if all_ok else "not ready", "checks": checks},
        status_code=200 if all_ok else 503,
    )


@router.get(
    "/metrics",
    summary="Prometheus metrics",
    description="Expose engine metrics in Prometheus exposition format. Returns HTTP 404 if "
    "metrics collection is disabled in the application configuration.",
)
async def metrics():
    """Prometheus metrics endpoint."""
    if not settings.METRICS_ENABLED:
        return Response(content="Metrics disabled", status_code=404)

    return Response(
        content=get_metrics(),
        media_type=get_metrics_content_type(),
    )
