import asyncio
import logging
from contextlib import asynccontextmanager

import sentry_sdk
from fastapi import FastAPI
from fastapi.middleware.gzip import GZipMiddleware

from scrapecascade.api.health import router as health_router
from scrapecascade.api.router import api_router
from scrapecascade.config import settings
from scrapecascade.core.logging_config import configure_logging
from scrapecascade.core.redis import ResilientRedis
from scrapecascade.core.request_id import RequestIDMiddleware
from scrapecascade.services.engine import CascadeEngine
from scrapecascade.services.snapshot import SnapshotStore

# Configure structured logging (must happen before any logger is created)
configure_logging(log_format=settings.LOG_FORMAT, log_level=settings.LOG_LEVEL)

# Initialize Sentry error tracking
if settings.SENTRY_DSN:
    sentry_sdk.init(
        dsn=settings.SENTRY_DSN,
        traces_sample_rate=settings.SENTRY_TRACES_SAMPLE_RATE,
        environment=settings.SENTRY_ENVIRONMENT,
        release=f"scrapecascade@{settings.APP_VERSION}",
        send_default_pii=False,
    )

logger = logging.getLogger(__name__)

HOUSEKEEPING_INTERVAL = 30.0


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Build the engine on startup; persist state and release clients on shutdown."""
    logger.info(f"Starting {settings.APP_NAME} v{settings.APP_VERSION}")

    if getattr(app.state, "engine", None) is None:
        app.state.engine = CascadeEngine(
            settings.to_engine_config(), metrics_enabled=settings.METRICS_ENABLED
        )
    engine: CascadeEngine = app.state.engine

    snapshots = None
    if settings.SNAPSHOT_ENABLED:
        app.state.redis = ResilientRedis()
        snapshots = SnapshotStore(
            app.state.redis,
            engine.registry,
            engine.budget,
            ttl_seconds=settings.SNAPSHOT_TTL_SECONDS,
        )
        await snapshots.load()

    housekeeping = asyncio.create_task(engine.housekeeping_loop(HOUSEKEEPING_INTERVAL))

    yield

    logger.info("Shutting down...")
    housekeeping.cancel()
    try:
        await housekeeping
    except asyncio.CancelledError:
        pass
    if snapshots is not None:
        await snapshots.save()
        await app.state.redis.close()
    await engine.close()


def create_app(engine: CascadeEngine | None = None) -> FastAPI:
    app = FastAPI(
        title=settings.APP_NAME,
        version=settings.APP_VERSION,
        description="Cost-aware cascading fetch engine. Routes each request through a "
        "prioritized cascade of anti-bot extraction providers under hard spend ceilings.",
        docs_url="/docs",
        redoc_url="/redoc",
        lifespan=lifespan,
    )
    app.state.engine = engine
    app.state.redis = None

    # Request ID middleware (must be added before other middleware)
    app.add_middleware(RequestIDMiddleware)
    app.add_middleware(GZipMiddleware, minimum_size=500)

    app.include_router(api_router)
    # Health & metrics routes (no /v1 prefix)
    app.include_router(health_router)

    @app.get("/")
    async def root():
        return {
            "app": settings.APP_NAME,
            "version": settings.APP_VERSION,
            "docs": "/docs",
            "status": "running",
        }

    return app


app = create_app()
