"""FastAPI application for MedBook."""

import logging
from contextlib import asynccontextmanager
from typing import Optional

from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse

from medbook import __version__
from medbook.api.middleware import RequestLoggingMiddleware
from medbook.api.routes import appointments, availability, bookings, commissions, health, schedules, webhooks
from medbook.config import get_settings
from medbook.scheduling import BookingError, SchedulingService

logger = logging.getLogger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Application lifespan handler."""
    logger.info("Starting MedBook API")

    if getattr(app.state, "scheduling", None) is None:
        from medbook.core.database import get_session_factory
        from medbook.observability import ObservabilityLogger

        settings = get_settings()
        ObservabilityLogger.configure(settings.observability_log_dir, enabled=settings.observability_enabled)
        app.state.scheduling = SchedulingService.from_settings(settings, get_session_factory())
        if not settings.has_stripe_key:
            logger.warning("STRIPE_SECRET_KEY is not set; online booking will be refused")

    logger.info("MedBook API started successfully")

    yield

    logger.info("Shutting down MedBook API")


def create_app(service: Optional[SchedulingService] = None) -> FastAPI:
    """Create and configure the FastAPI application.

    Pass ``service`` to run against an already-built booking core (tests,
    embedding); otherwise one is built from settings at startup.
    """
    settings = get_settings()

    app = FastAPI(
        title="MedBook API",
        description="Capacity-based appointment booking with online payment",
        version=__version__,
        lifespan=lifespan,
    )
    if service is not None:
        app.state.scheduling = service

    app.add_middleware(
        CORSMiddleware,
        allow_origins=settings.cors_origins,
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )
    app.add_middleware(RequestLoggingMiddleware)

    app.include_router(health.router, tags=["health"])
    app.include_router(availability.router, prefix="/api/v1", tags=["availability"])
    app.include_router(bookings.router, prefix="/api/v1", tags=["bookings"])
    app.include_router(appointments.router, prefix="/api/v1", tags=["appointments"])
    app.include_router(schedules.router, prefix="/api/v1", tags=["schedules"])
    app.include_router(commissions.router, prefix="/api/v1", tags=["commissions"])
    app.include_router(webhooks.router, prefix="/api/v1", tags=["webhooks"])

    @app.exception_handler(BookingError)
    async def booking_error_handler(request: Request, exc: BookingError):
        logger.info(f"{request.method} {request.url.path} -> {exc.code}: {exc.message}")
        return JSONResponse(status_code=exc.status_code, content={"error": exc.to_dict()})

    @app.exception_handler(Exception)
    async def global_exception_handler(request: Request, exc: Exception):
        logger.exception(f"Unhandled exception: {exc}")
        return JSONResponse(
            status_code=500,
            content={
                "error": "Internal server error",
                "detail": str(exc) if settings.log_level == "DEBUG" else None,
            },
        )

    return app
