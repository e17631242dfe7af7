"""
Shared FastAPI dependencies.

Routers import the DB session, the authenticated actor, the payment gateway
and pagination from this single place.
"""

from __future__ import annotations

from typing import TypedDict

from fastapi import Depends, Query

from domain.actors import Actor, require_delivery_role
from middleware.auth import require_actor
from services.paystack_client import PaystackClient, paystack_client


class Pagination(TypedDict):
    limit: int
    offset: int


def pagination_params(
    limit: int = Query(20, ge=1, le=100),
    offset: int = Query(0, ge=0, le=100_000),
) -> Pagination:
    return {"limit": limit, "offset": offset}


def get_gateway() -> PaystackClient:
    """Payment gateway client. Overridden with a fake in tests."""
    return paystack_client


async def require_delivery_agent(actor: Actor = Depends(require_actor)) -> Actor:
    """Require role `delivery` (approval is checked per operation)."""
    require_delivery_role(actor)
    return actor
