"""Backend JWT handling.

The web proxy authenticates users and mints a short-lived HS256 token
carrying ``sub`` (user id) and ``role``. This module only issues tokens for
tests and tooling and decodes them into an ``Actor``.
"""

from __future__ import annotations

from datetime import datetime, timedelta, timezone

from jose import JWTError, jwt

from medbook.config import get_settings
from medbook.scheduling.models import Actor, ActorRole


def create_access_token(user_id: str, role: str, expires_minutes: int = 15) -> str:
    settings = get_settings()
    expire = datetime.now(timezone.utc) + timedelta(minutes=expires_minutes)
    payload = {
        "sub": user_id,
        "role": role,
        "exp": expire,
    }
    return jwt.encode(payload, settings.jwt_secret, algorithm=settings.jwt_algorithm)


def decode_token(token: str) -> dict | None:
    """Decode and validate a JWT. Returns claims dict or None on any error."""
    settings = get_settings()
    try:
        return jwt.decode(token, settings.jwt_secret, algorithms=[settings.jwt_algorithm])
    except JWTError:
        return None


def actor_from_claims(claims: dict) -> Actor | None:
    subject = claims.get("sub")
    role = str(claims.get("role", "")).upper()
    if not subject or role not in ActorRole.__members__ or role == ActorRole.SYSTEM.value:
        return None
    return Actor(id=str(subject), role=ActorRole(role))
