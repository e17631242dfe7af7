"""
Tests for actor authentication.

Tests: require_actor - bearer parsing, token validation, role claims.
"""
import pytest
from datetime import datetime, timedelta, timezone

import jwt
from fastapi import HTTPException

from config import settings
from domain.actors import Actor, require_delivery_role
from domain.enums import Role
from domain.errors import PermissionDeniedError, RoleNotApprovedError
from middleware.auth import actor_from_claims, issue_access_token, require_actor


class TestRequireActor:
    """Tests for the require_actor dependency."""

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_valid_token_yields_actor(self):
        token = issue_access_token(student_id="10001001", role="delivery", delivery_approved=True)
        actor = await require_actor(authorization=f"Bearer {token}")

        assert actor == Actor(actor_id="10001001", role=Role.DELIVERY, delivery_approved=True)

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_missing_header_raises_401(self):
        with pytest.raises(HTTPException) as exc_info:
            await require_actor(authorization=None)
        assert exc_info.value.status_code == 401
        assert "Authentication required" in exc_info.value.detail

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_non_bearer_scheme_raises_401(self):
        with pytest.raises(HTTPException) as exc_info:
            await require_actor(authorization="Basic dXNlcjpwYXNz")
        assert exc_info.value.status_code == 401

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_expired_token_raises_401(self):
        past = datetime.now(timezone.utc) - timedelta(hours=2)
        token = jwt.encode(
            {
                "iss": settings.jwt_issuer,
                "sub": "10001001",
                "iat": int(past.timestamp()),
                "exp": int((past + timedelta(minutes=5)).timestamp()),
            },
            settings.jwt_secret,
            algorithm="HS256",
        )
        with pytest.raises(HTTPException) as exc_info:
            await require_actor(authorization=f"Bearer {token}")
        assert exc_info.value.status_code == 401
        assert "expired" in exc_info.value.detail.lower()

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_wrong_secret_raises_401(self):
        now = datetime.now(timezone.utc)
        token = jwt.encode(
            {
                "iss": settings.jwt_issuer,
                "sub": "10001001",
                "iat": int(now.timestamp()),
                "exp": int((now + timedelta(minutes=5)).timestamp()),
            },
            "not-the-secret",
            algorithm="HS256",
        )
        with pytest.raises(HTTPException) as exc_info:
            await require_actor(authorization=f"Bearer {token}")
        assert exc_info.value.status_code == 401


class TestActorClaims:
    """Role claim decoding and capability checks."""

    @pytest.mark.unit
    def test_missing_role_defaults_to_student(self):
        actor = actor_from_claims({"sub": "10001001"})
        assert actor.role == Role.STUDENT
        assert actor.delivery_approved is False

    @pytest.mark.unit
    def test_unknown_role_raises_403(self):
        with pytest.raises(HTTPException) as exc_info:
            actor_from_claims({"sub": "10001001", "role": "superuser"})
        assert exc_info.value.status_code == 403

    @pytest.mark.unit
    def test_delivery_role_guard(self):
        require_delivery_role(Actor(actor_id="1", role=Role.DELIVERY))

        with pytest.raises(PermissionDeniedError):
            require_delivery_role(Actor(actor_id="1", role=Role.STUDENT))
        with pytest.raises(RoleNotApprovedError):
            require_delivery_role(Actor(actor_id="1", role=Role.DELIVERY), approved=True)
