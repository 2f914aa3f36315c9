"""
FastAPI application entry point.

Run with:
    uvicorn backend.app.main:app --reload --port 8000

Or from the project root:
    python -m uvicorn backend.app.main:app --reload
"""

from contextlib import asynccontextmanager

from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse

# ── Core infrastructure ──
from backend.app.core.config import settings
from backend.app.core.logging_config import setup_logging, get_logger
from backend.app.core.errors import register_error_handlers
from backend.app.core.middleware import RequestLoggingMiddleware
from backend.app.core.health import HealthStatus, run_health_check

# ── Broadcast service & routers ──
from backend.app.broadcasts.service import get_broadcast_service
from backend.app.api.v1.broadcasts import (
    inbox_router,
    recipients_router,
    router as broadcast_router,
)

setup_logging()
logger = get_logger(__name__)


# ── Application lifespan (startup / shutdown) ──

@asynccontextmanager
async def lifespan(app: FastAPI):
    """Build the service, run the scheduler loop, drain dispatch on exit."""
    logger.info(
        "Starting %s v%s [%s] store=%s",
        settings.APP_NAME, settings.APP_VERSION, settings.ENVIRONMENT,
        settings.STORE_BACKEND,
    )
    service = get_broadcast_service()
    if settings.SCHEDULER_ENABLED:
        await service.scheduler.start()
    yield
    logger.info("Shutting down %s", settings.APP_NAME)
    await service.scheduler.stop()
    service.shutdown()


# ── Create application ──

app = FastAPI(
    title=settings.APP_NAME,
    description=(
        "Broadcast delivery for tourist safety operations. "
        "Resolves audiences (all tourists, explicit lists, radius around a "
        "point, roles), fans each broadcast out over push, email, SMS and "
        "in-app channels with per-channel concurrency limits and retries, "
        "tracks every delivery through to acknowledgment, and releases, "
        "expires and re-notifies on a schedule."
    ),
    version=settings.APP_VERSION,
    docs_url="/docs",
    redoc_url="/redoc",
    lifespan=lifespan,
)

# ── Middleware stack (outermost first) ──

app.add_middleware(
    CORSMiddleware,
    allow_origins=settings.CORS_ORIGINS if not settings.CORS_ALLOW_ALL else ["*"],
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)
app.add_middleware(RequestLoggingMiddleware)

# ── Error handlers ──
register_error_handlers(app)

# ── Register routers ──
app.include_router(broadcast_router)
app.include_router(recipients_router)
app.include_router(inbox_router)


# ── Root & health endpoints ──

@app.get("/", tags=["root"])
async def root():
    return {
        "service": settings.APP_NAME,
        "version": settings.APP_VERSION,
        "environment": settings.ENVIRONMENT,
        "modules": [
            "audience-resolution",
            "channel-adapters",
            "delivery-dispatch",
            "broadcast-lifecycle",
            "scheduler",
            "delivery-tracking",
        ],
        "docs": "/docs",
    }


@app.get("/health", tags=["health"])
async def health_check():
    """Deep health probe — checks all subsystems."""
    report = await run_health_check(get_broadcast_service())
    return report.to_dict()


@app.get("/health/live", tags=["health"])
async def liveness():
    """Kubernetes liveness probe — is the process alive?"""
    return {"status": "alive"}


@app.get("/health/ready", tags=["health"])
async def readiness():
    """Kubernetes readiness probe — can we serve traffic?"""
    report = await run_health_check(get_broadcast_service())
    if report.status is HealthStatus.UNHEALTHY:
        return JSONResponse(status_code=503, content=report.to_dict())
    return report.to_dict()
