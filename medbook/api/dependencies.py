"""FastAPI dependencies: booking service, sessions and the backend JWT."""

from __future__ import annotations

import uuid
from collections.abc import AsyncGenerator

from fastapi import Depends, HTTPException, Request
from sqlalchemy.ext.asyncio import AsyncSession

from medbook.core.auth import actor_from_claims, decode_token
from medbook.scheduling import SchedulingService
from medbook.scheduling.models import Actor, ActorRole


def get_service(request: Request) -> SchedulingService:
    return request.app.state.scheduling


async def get_session(
    service: SchedulingService = Depends(get_service),
) -> AsyncGenerator[AsyncSession, None]:
    """Session from the booking service's factory; commits on success."""
    async with service.session_factory() as session:
        try:
            yield session
            await session.commit()
        except Exception:
            await session.rollback()
            raise


async def get_current_actor(request: Request) -> Actor:
    """Resolve the caller from ``Authorization: Bearer <jwt>``."""
    auth_header = request.headers.get("Authorization")
    if auth_header and auth_header.startswith("Bearer "):
        claims = decode_token(auth_header[7:])
        if claims:
            actor = actor_from_claims(claims)
            if actor is not None:
                return actor
    raise HTTPException(status_code=401, detail="Not authenticated")


async def require_staff(actor: Actor = Depends(get_current_actor)) -> Actor:
    """Require a doctor or admin."""
    if not actor.is_staff:
        raise HTTPException(status_code=403, detail="Staff access required")
    return actor


async def require_admin(actor: Actor = Depends(get_current_actor)) -> Actor:
    if actor.role != ActorRole.ADMIN:
        raise HTTPException(status_code=403, detail="Admin access required")
    return actor


def parse_uuid(value: str, name: str = "ID") -> uuid.UUID:
    try:
        return uuid.UUID(value)
    except ValueError:
        raise HTTPException(status_code=400, detail=f"Invalid {name}: {value}")
