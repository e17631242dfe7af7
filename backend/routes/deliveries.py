"""
Delivery endpoints - open jobs, race-safe accept, completion, customer rating.
"""

import logging
from fastapi import APIRouter, Depends, Query
from pydantic import BaseModel, Field
from sqlalchemy.ext.asyncio import AsyncSession

from database import get_db
from deps import Pagination, pagination_params, require_delivery_agent
from domain.actors import Actor
from domain.responses import success_response, paginated_response
from middleware.auth import require_actor
from models import DeliverySnapshot
from services import delivery_service

logger = logging.getLogger(__name__)
router = APIRouter(prefix="/deliveries", tags=["deliveries"])


class RatingRequest(BaseModel):
    rating: int = Field(..., ge=1, le=5)
    review: str | None = Field(default=None, max_length=1000)


@router.get("/available")
async def list_available(
    page: Pagination = Depends(pagination_params),
    actor: Actor = Depends(require_delivery_agent),
    db: AsyncSession = Depends(get_db),
):
    deliveries, busy = await delivery_service.list_available(
        db, actor, limit=page["limit"], offset=page["offset"]
    )
    return success_response(
        data=[DeliverySnapshot.model_validate(d).model_dump(mode="json") for d in deliveries],
        meta={"has_unfinished_delivery": busy, "count": len(deliveries)},
    )


@router.get("/mine")
async def list_mine(
    status: str | None = Query(None),
    page: Pagination = Depends(pagination_params),
    actor: Actor = Depends(require_delivery_agent),
    db: AsyncSession = Depends(get_db),
):
    deliveries, total = await delivery_service.list_for_agent(
        db, actor, status=status, limit=page["limit"], offset=page["offset"]
    )
    return paginated_response(
        items=[DeliverySnapshot.model_validate(d).model_dump(mode="json") for d in deliveries],
        limit=page["limit"],
        offset=page["offset"],
        total=total,
    )


@router.get("/stats")
async def get_stats(
    actor: Actor = Depends(require_delivery_agent),
    db: AsyncSession = Depends(get_db),
):
    stats = await delivery_service.stats(db, actor)
    return success_response(data=stats.model_dump())


@router.post("/{delivery_id}/accept")
async def accept_delivery(
    delivery_id: int,
    actor: Actor = Depends(require_actor),
    db: AsyncSession = Depends(get_db),
):
    snapshot = await delivery_service.accept(db, actor, delivery_id)
    return success_response(data=snapshot.model_dump(mode="json"))


@router.post("/{delivery_id}/complete")
async def complete_delivery(
    delivery_id: int,
    actor: Actor = Depends(require_actor),
    db: AsyncSession = Depends(get_db),
):
    snapshot = await delivery_service.complete(db, actor, delivery_id)
    return success_response(data=snapshot.model_dump(mode="json"))


@router.post("/{delivery_id}/cancel")
async def cancel_delivery(
    delivery_id: int,
    actor: Actor = Depends(require_actor),
    db: AsyncSession = Depends(get_db),
):
    snapshot = await delivery_service.cancel(db, actor, delivery_id)
    return success_response(data=snapshot.model_dump(mode="json"))


@router.post("/{delivery_id}/rating")
async def rate_delivery(
    delivery_id: int,
    request: RatingRequest,
    actor: Actor = Depends(require_actor),
    db: AsyncSession = Depends(get_db),
):
    snapshot = await delivery_service.rate(
        db, actor, delivery_id, rating=request.rating, review=request.review
    )
    return success_response(data=snapshot.model_dump(mode="json"))
