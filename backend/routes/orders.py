"""
Order endpoints - list own orders, order detail, cancel before payment.
"""

import logging
from fastapi import APIRouter, Depends, Query
from sqlalchemy.ext.asyncio import AsyncSession

from database import get_db
from deps import Pagination, pagination_params
from domain.actors import Actor
from domain.responses import success_response, paginated_response
from middleware.auth import require_actor
from models import DeliverySnapshot, OrderSnapshot
from services import order_service

logger = logging.getLogger(__name__)
router = APIRouter(prefix="/orders", tags=["orders"])


@router.get("")
async def list_orders(
    role: str = Query("any", pattern="^(buyer|seller|any)$"),
    status: str | None = Query(None),
    page: Pagination = Depends(pagination_params),
    actor: Actor = Depends(require_actor),
    db: AsyncSession = Depends(get_db),
):
    orders, total = await order_service.list_orders(
        db, actor, role=role, status=status, limit=page["limit"], offset=page["offset"]
    )
    return paginated_response(
        items=[OrderSnapshot.model_validate(o).model_dump(mode="json") for o in orders],
        limit=page["limit"],
        offset=page["offset"],
        total=total,
    )


@router.get("/{order_id}")
async def get_order(
    order_id: int,
    actor: Actor = Depends(require_actor),
    db: AsyncSession = Depends(get_db),
):
    order = await order_service.get_order(db, actor, order_id)
    data = OrderSnapshot.model_validate(order).model_dump(mode="json")
    data["delivery"] = (
        DeliverySnapshot.model_validate(order.delivery).model_dump(mode="json") if order.delivery else None
    )
    return success_response(data=data)


@router.post("/{order_id}/cancel")
async def cancel_order(
    order_id: int,
    actor: Actor = Depends(require_actor),
    db: AsyncSession = Depends(get_db),
):
    snapshot = await order_service.cancel_order(db, actor, order_id)
    return success_response(data=snapshot.model_dump(mode="json"))
