"""
Parking Reservation Scheduler - Main Application Entry Point

A parking reservation engine demonstrating:
- Capacity-safe unit allocation with optimistic locking on the lot
- Waitlists that offer freed spaces in join order
- Recurring reservations materialized by a background scheduler
- Notification delivery with exponential backoff
- Structured logging, Prometheus metrics and Redis-backed caching
"""

from contextlib import asynccontextmanager
from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse

from parking_scheduler.core.clock import system_clock
from parking_scheduler.core.config import get_settings
from parking_scheduler.core.errors import ParkingSchedulerError
from parking_scheduler.core.logging import setup_logging, get_logger
from parking_scheduler.core.metrics import metrics_endpoint
from parking_scheduler.api.router import api_router
from parking_scheduler.api.middleware import RequestLoggingMiddleware
from parking_scheduler.db.session import async_session_factory
from parking_scheduler.infrastructure.redis_client import get_redis, close_redis
from parking_scheduler.services.cache_service import get_cache_stats
from parking_scheduler.services.orchestrator import Orchestrator
from parking_scheduler.services.strategy_factory import get_channel

settings = get_settings()
logger = get_logger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Application lifecycle: startup and shutdown hooks."""
    setup_logging()

    logger.info(
        "application_starting",
        app=settings.APP_NAME,
        version=settings.APP_VERSION,
        environment=settings.ENVIRONMENT,
        timezone=settings.TIMEZONE,
    )

    redis_client = await get_redis()
    if redis_client:
        logger.info("redis_ready")
    else:
        logger.warning("redis_unavailable", message="Running without cache")

    orchestrator = Orchestrator(async_session_factory, get_channel(), system_clock)
    app.state.orchestrator = orchestrator
    if settings.SCHEDULER_ENABLED:
        orchestrator.start()

    yield

    await orchestrator.stop()
    await close_redis()
    logger.info("application_shutdown")


app = FastAPI(
    title=settings.APP_NAME,
    version=settings.APP_VERSION,
    description="Parking reservations with capacity-safe allocation, waitlists and recurring bookings",
    lifespan=lifespan,
    docs_url="/docs",
    redoc_url="/redoc",
)

app.add_middleware(
    CORSMiddleware,
    allow_origins=["*"],  # Restrict in production
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)
app.add_middleware(RequestLoggingMiddleware)

app.include_router(api_router)


@app.exception_handler(ParkingSchedulerError)
async def domain_error_handler(request: Request, exc: ParkingSchedulerError):
    logger.info("domain_error", error=type(exc).__name__, detail=exc.detail, status_code=exc.status_code)
    return JSONResponse(
        status_code=exc.status_code,
        content={"detail": exc.detail, "error": type(exc).__name__},
    )


@app.get("/health", tags=["Health"])
async def health_check(request: Request):
    """Health check endpoint for Docker and load balancers."""
    orchestrator = getattr(request.app.state, "orchestrator", None)
    return {
        "status": "healthy",
        "version": settings.APP_VERSION,
        "environment": settings.ENVIRONMENT,
        "scheduler": "running" if orchestrator and orchestrator.running else "stopped",
        "cache": await get_cache_stats(),
    }


@app.get("/metrics", tags=["Health"], include_in_schema=False)
async def metrics():
    return metrics_endpoint()


@app.get("/", tags=["Root"])
async def root():
    return {
        "message": f"Welcome to {settings.APP_NAME}",
        "version": settings.APP_VERSION,
        "docs": "/docs",
    }
