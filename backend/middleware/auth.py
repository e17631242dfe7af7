"""
Actor authentication helpers.

Identity and sessions live in the identity service; this module only turns
its short-lived JWT access tokens into an Actor descriptor:

  Authorization: Bearer <jwt>
    sub               -> student id
    role              -> student | delivery | admin
    delivery_approved -> admin approval flag for delivery agents
"""
import logging
from datetime import datetime, timezone, timedelta
from fastapi import HTTPException, Header
from typing import Optional

import jwt

from config import settings
from domain.actors import Actor
from domain.enums import Role

logger = logging.getLogger(__name__)


def _now_utc() -> datetime:
    return datetime.now(timezone.utc)


def _parse_bearer_token(authorization: Optional[str]) -> Optional[str]:
    if not authorization:
        return None
    parts = authorization.split(" ", 1)
    if len(parts) != 2 or parts[0].lower() != "bearer":
        return None
    token = parts[1].strip()
    return token or None


def decode_access_token(token: str) -> dict:
    if not settings.jwt_secret:
        raise HTTPException(
            status_code=500,
            detail="Server auth misconfigured (JWT secret missing).",
        )
    try:
        payload = jwt.decode(
            token,
            settings.jwt_secret,
            algorithms=["HS256"],
            issuer=settings.jwt_issuer,
            options={"require": ["exp", "iat", "iss", "sub"]},
        )
        return payload
    except jwt.ExpiredSignatureError:
        raise HTTPException(status_code=401, detail="Access token expired.")
    except jwt.InvalidTokenError:
        raise HTTPException(status_code=401, detail="Invalid access token.")


def issue_access_token(*, student_id: str, role: str = "student", delivery_approved: bool = False) -> str:
    now = _now_utc()
    exp = now.replace(microsecond=0) + timedelta(minutes=settings.jwt_access_ttl_minutes)
    payload = {
        "iss": settings.jwt_issuer,
        "sub": student_id,
        "role": role,
        "delivery_approved": delivery_approved,
        "iat": int(now.timestamp()),
        "exp": int(exp.timestamp()),
    }
    if not settings.jwt_secret:
        raise HTTPException(
            status_code=500,
            detail="Server auth misconfigured (JWT secret missing).",
        )
    return jwt.encode(payload, settings.jwt_secret, algorithm="HS256")


def actor_from_claims(payload: dict) -> Actor:
    """Build the Actor descriptor from verified token claims."""
    try:
        role = Role(payload.get("role", Role.STUDENT.value))
    except ValueError:
        logger.warning(f"Token for {str(payload.get('sub'))[:8]}... carries unknown role {payload.get('role')!r}")
        raise HTTPException(status_code=403, detail="Unknown role in access token.")
    return Actor(
        actor_id=str(payload["sub"]),
        role=role,
        delivery_approved=bool(payload.get("delivery_approved", False)),
    )


async def require_actor(
    authorization: Optional[str] = Header(None, alias="Authorization"),
) -> Actor:
    """FastAPI dependency: the authenticated actor, or 401."""
    token = _parse_bearer_token(authorization)
    if not token:
        raise HTTPException(
            status_code=401,
            detail="Authentication required. Provide Authorization: Bearer <token>.",
        )
    return actor_from_claims(decode_access_token(token))
