"""Health check endpoints."""

from fastapi import APIRouter, Request
from sqlalchemy import text

from medbook import __version__

router = APIRouter()


@router.get("/health")
async def health_check() -> dict:
    """Basic health check."""
    return {
        "status": "healthy",
        "service": "medbook",
        "version": __version__,
    }


@router.get("/health/ready")
async def readiness_check(request: Request) -> dict:
    """Readiness check - verifies the database and payment provider."""
    errors = []
    service = request.app.state.scheduling

    try:
        async with service.session_factory() as session:
            await session.execute(text("SELECT 1"))
    except Exception as e:
        errors.append(f"Database check failed: {e}")

    if not service.payments.is_configured:
        errors.append("Payment provider not configured")

    if errors:
        return {
            "status": "not_ready",
            "errors": errors,
        }

    return {"status": "ready"}


@router.get("/health/live")
async def liveness_check() -> dict:
    """Liveness check - basic process health."""
    return {"status": "alive"}
