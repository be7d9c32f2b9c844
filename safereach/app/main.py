"""
FastAPI Application Entry Point.

This is the main application file for the SafeReach journey tracking API.
"""

import logging
from contextlib import asynccontextmanager
from fastapi import FastAPI, HTTPException
from fastapi.exceptions import RequestValidationError

from safereach.app.core.config import settings
from safereach.app.core.logging import configure_logging
from safereach.app.core.observability import ObservabilityMiddleware
from safereach.app.core.redis_client import close_redis, ping_redis
from safereach.app.api.v1.router import router as api_v1_router
from safereach.app.db.session import engine, Base, AsyncSessionLocal
from safereach.app.core.exceptions import (
    AppException,
    app_exception_handler,
    http_exception_handler,
    validation_exception_handler,
    generic_exception_handler
)
from safereach.app.services import checkin_scheduler as scheduler_module
from safereach.app.services import route_estimator as estimator_module
from safereach.app.services.checkin_scheduler import CheckInScheduler
from safereach.app.services.realtime import realtime_channel
from safereach.app.services.route_estimator import build_http_client, build_route_estimator

# Import models to ensure they are registered with Base
from safereach.app.models.traveler import Traveler
from safereach.app.models.contact import Contact
from safereach.app.models.journey import Journey
from safereach.app.models.journey_contact import JourneyContact
from safereach.app.models.journey_step import JourneyStep
from safereach.app.models.journey_location import JourneyLocation
from safereach.app.models.journey_checkin import JourneyCheckIn
from safereach.app.models.notification_log import NotificationLogEntry

logger = logging.getLogger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI):
    """
    Lifespan context manager for application startup/shutdown.

    1. Creates database tables on startup.
    2. Wires the route estimator and the check-in scheduler.
    3. Restarts check-in timers for journeys still in progress.
    4. Stops timers and closes connections on shutdown.
    """
    configure_logging()

    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)

    http_client = build_http_client()
    estimator_module.route_estimator = build_route_estimator(http_client)
    scheduler = CheckInScheduler(AsyncSessionLocal, realtime_channel)
    scheduler_module.checkin_scheduler = scheduler
    await scheduler.resume()

    logger.info("%s started (realtime backend: %s)", settings.app_name, settings.realtime_backend)
    yield

    await scheduler.shutdown()
    await realtime_channel.close()
    await close_redis()
    await http_client.aclose()
    scheduler_module.checkin_scheduler = None
    estimator_module.route_estimator = None
    await engine.dispose()


# Initialize FastAPI application
app = FastAPI(
    title=settings.app_name,
    version=settings.api_version,
    debug=settings.debug,
    description="Journey tracking with check-ins and emergency alerts for trusted contacts",
    lifespan=lifespan,
)

app.add_middleware(ObservabilityMiddleware)

# Register global exception handlers
app.add_exception_handler(AppException, app_exception_handler)
app.add_exception_handler(HTTPException, http_exception_handler)
app.add_exception_handler(RequestValidationError, validation_exception_handler)
app.add_exception_handler(Exception, generic_exception_handler)


@app.get("/health", tags=["Health"])
async def health_check():
    """
    Health check endpoint.

    Returns:
        dict: Status and application information
    """
    health = {
        "status": "healthy",
        "app_name": settings.app_name,
        "version": settings.api_version,
        "realtime_backend": settings.realtime_backend,
    }
    if settings.realtime_backend == "redis":
        redis_ok = await ping_redis()
        health["redis"] = "ok" if redis_ok else "unreachable"
        if not redis_ok:
            health["status"] = "degraded"
    return health


# Include API v1 router
app.include_router(api_v1_router, prefix=f"/{settings.api_version}")


@app.get("/", tags=["Root"])
async def root():
    """
    Root endpoint.

    Returns:
        dict: Welcome message and API documentation links
    """
    return {
        "message": "Welcome to the SafeReach Journey Tracking API",
        "docs": "/docs",
        "health": "/health",
    }
