"""
Order queries and buyer cancellation.
"""

import logging
from datetime import datetime

from sqlalchemy import select, update, func, or_
from sqlalchemy.ext.asyncio import AsyncSession

from database import unit_of_work
from db_models import Delivery, Order
from domain import constants
from domain.actors import Actor
from domain.enums import OrderStatus
from domain.errors import InvalidTransitionError, NotFoundError, PermissionDeniedError, ValidationError
from models import OrderSnapshot
from services.event_bus import publish

logger = logging.getLogger(__name__)

ORDER_ROLES = ("buyer", "seller", "any")


async def list_orders(
    db: AsyncSession,
    actor: Actor,
    *,
    role: str = "any",
    status: str | None = None,
    limit: int = 20,
    offset: int = 0,
) -> tuple[list[Order], int]:
    """Orders the actor bought (role=buyer), sold (role=seller) or either."""
    if role not in ORDER_ROLES:
        raise ValidationError(f"role must be one of {', '.join(ORDER_ROLES)}", field="role")

    if role == "buyer":
        conditions = [Order.buyer_id == actor.actor_id]
    elif role == "seller":
        conditions = [Order.seller_id == actor.actor_id]
    else:
        conditions = [or_(Order.buyer_id == actor.actor_id, Order.seller_id == actor.actor_id)]
    if status:
        conditions.append(Order.status == status)

    res = await db.execute(
        select(Order)
        .where(*conditions)
        .order_by(Order.created_at.desc(), Order.id.desc())
        .limit(limit)
        .offset(offset)
    )
    total = await db.execute(select(func.count(Order.id)).where(*conditions))
    return list(res.scalars().all()), total.scalar() or 0


def _can_view(actor: Actor, order: Order) -> bool:
    if actor.is_admin or actor.actor_id in (order.buyer_id, order.seller_id):
        return True
    delivery: Delivery | None = order.delivery
    return delivery is not None and delivery.delivery_agent_id == actor.actor_id


async def get_order(db: AsyncSession, actor: Actor, order_id: int) -> Order:
    order = await db.get(Order, order_id, populate_existing=True)
    if not order:
        raise NotFoundError("Order", str(order_id))
    if not _can_view(actor, order):
        raise PermissionDeniedError("You do not have access to this order")
    return order


async def cancel_order(db: AsyncSession, actor: Actor, order_id: int) -> OrderSnapshot:
    """Buyer (or admin) cancels an order that has not been paid yet."""
    async with unit_of_work(db):
        order = await db.get(Order, order_id)
        if not order:
            raise NotFoundError("Order", str(order_id))
        if not actor.is_admin and order.buyer_id != actor.actor_id:
            raise PermissionDeniedError("Only the buyer can cancel this order")

        result = await db.execute(
            update(Order)
            .where(Order.id == order_id, Order.status == OrderStatus.PENDING_PAYMENT.value)
            .values(status=OrderStatus.CANCELLED.value, cancelled_at=datetime.utcnow())
            .execution_options(synchronize_session=False)
        )
        order = await db.get(Order, order_id, populate_existing=True)
        if result.rowcount != 1:
            raise InvalidTransitionError("Order", order.order_number, order.status, OrderStatus.CANCELLED.value)

    snapshot = OrderSnapshot.model_validate(order)
    publish(constants.ORDER_CANCELLED, snapshot.model_dump(mode="json"))
    logger.info(f"Order {order.order_number} cancelled by {actor.actor_id[:8]}")
    return snapshot
