"""
Delivery Dispatcher: lifecycle of agent-carried delivery jobs.

    pending --accept(agent)--> in_progress --complete--> completed
    pending --cancel--> cancelled

Every transition is one conditional UPDATE guarded by the expected prior
state (`WHERE status = 'pending'`, ...). Success means exactly one affected
row; the database serializes racing agents on the row, so at most one agent
ever moves a job out of `pending`. Rows read after a failed update are only
used to pick the right error, never to decide a write.

Completion also moves the owning order awaiting_delivery → delivered in the
same transaction, so a completed delivery never sits next to an undelivered order.
"""

import logging
from datetime import datetime

from sqlalchemy import select, update, func, exists
from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy.orm import aliased

from config import settings
from database import unit_of_work
from db_models import Delivery, Order
from domain import constants
from domain.actors import Actor, require_delivery_role
from domain.enums import DeliveryOption, DeliveryStatus, OrderStatus
from domain.errors import (
    AgentBusyError,
    AlreadyAssignedError,
    ConflictError,
    InvalidTransitionError,
    NotAssignedAgentError,
    NotFoundError,
    PermissionDeniedError,
    ValidationError,
)
from models import DeliverySnapshot, DeliveryStats, OrderSnapshot
from services.event_bus import publish
from services.fulfillment_metrics import get_fulfillment_metrics

logger = logging.getLogger(__name__)

ACTIVE_STATUSES = (DeliveryStatus.IN_PROGRESS.value,)


# ════════════════════════════════════════════════════════════════════
# Creation (runs inside the payment confirmation transaction)
# ════════════════════════════════════════════════════════════════════


async def create(
    db: AsyncSession,
    order: Order,
    *,
    pickup_hall_id: int | None = None,
    pickup_room_number: str | None = None,
) -> Delivery:
    """
    Insert a pending, unassigned delivery for an order that just became confirmed.

    Does not commit: the caller's unit of work owns the transaction.
    """
    if order.delivery_option != DeliveryOption.DELIVERY.value:
        raise ValidationError(f"Order {order.order_number} is a pickup order")
    if order.status != OrderStatus.CONFIRMED.value:
        raise InvalidTransitionError("Order", order.order_number, order.status, "awaiting_delivery")

    delivery = Delivery(
        order_id=order.id,
        customer_id=order.buyer_id,
        seller_id=order.seller_id,
        pickup_hall_id=pickup_hall_id,
        pickup_room_number=pickup_room_number,
        delivery_hall_id=order.delivery_hall_id,
        delivery_room_number=order.delivery_room_number,
        fee=order.delivery_fee,
        status=DeliveryStatus.PENDING.value,
        notes=order.special_instructions or "Delivery request created",
    )
    db.add(delivery)
    await db.flush()
    return delivery


# ════════════════════════════════════════════════════════════════════
# Queries
# ════════════════════════════════════════════════════════════════════


async def _agent_has_active_job(db: AsyncSession, agent_id: str) -> bool:
    res = await db.execute(
        select(func.count(Delivery.id)).where(
            Delivery.delivery_agent_id == agent_id,
            Delivery.status.in_(ACTIVE_STATUSES),
        )
    )
    return (res.scalar() or 0) > 0


async def list_available(
    db: AsyncSession,
    actor: Actor,
    *,
    limit: int = 20,
    offset: int = 0,
) -> tuple[list[Delivery], bool]:
    """
    Pending deliveries nobody has accepted yet, newest first.

    Returns (deliveries, has_unfinished_delivery). With single-active-job mode
    an agent holding an in-progress job sees an empty list.
    """
    require_delivery_role(actor)

    if settings.single_active_delivery and await _agent_has_active_job(db, actor.actor_id):
        return [], True

    res = await db.execute(
        select(Delivery)
        .where(
            Delivery.status == DeliveryStatus.PENDING.value,
            Delivery.delivery_agent_id.is_(None),
        )
        .order_by(Delivery.created_at.desc(), Delivery.id.desc())
        .limit(limit)
        .offset(offset)
    )
    return list(res.scalars().all()), False


async def list_for_agent(
    db: AsyncSession,
    actor: Actor,
    *,
    status: str | None = None,
    limit: int = 10,
    offset: int = 0,
) -> tuple[list[Delivery], int]:
    """The agent's own deliveries plus the total count for pagination."""
    require_delivery_role(actor)

    conditions = [Delivery.delivery_agent_id == actor.actor_id]
    if status:
        conditions.append(Delivery.status == status)

    res = await db.execute(
        select(Delivery)
        .where(*conditions)
        .order_by(Delivery.created_at.desc(), Delivery.id.desc())
        .limit(limit)
        .offset(offset)
    )
    total = await db.execute(select(func.count(Delivery.id)).where(*conditions))
    return list(res.scalars().all()), total.scalar() or 0


async def stats(db: AsyncSession, actor: Actor) -> DeliveryStats:
    require_delivery_role(actor)
    agent = Delivery.delivery_agent_id == actor.actor_id
    completed = Delivery.status == DeliveryStatus.COMPLETED.value

    total = (await db.execute(select(func.count(Delivery.id)).where(agent))).scalar() or 0
    done = (await db.execute(select(func.count(Delivery.id)).where(agent, completed))).scalar() or 0
    active = (
        await db.execute(
            select(func.count(Delivery.id)).where(agent, Delivery.status.in_(ACTIVE_STATUSES))
        )
    ).scalar() or 0
    avg_rating = (
        await db.execute(select(func.avg(Delivery.rating)).where(agent, Delivery.rating.is_not(None)))
    ).scalar()
    earnings = (
        await db.execute(select(func.coalesce(func.sum(Delivery.fee), 0)).where(agent, completed))
    ).scalar()

    return DeliveryStats(
        total_deliveries=total,
        completed_deliveries=done,
        active_deliveries=active,
        average_rating=round(float(avg_rating), 2) if avg_rating is not None else 0.0,
        total_earnings=int(earnings or 0),
    )


async def get_delivery(db: AsyncSession, delivery_id: int) -> Delivery:
    delivery = await db.get(Delivery, delivery_id, populate_existing=True)
    if not delivery:
        raise NotFoundError("Delivery", str(delivery_id))
    return delivery


# ════════════════════════════════════════════════════════════════════
# Transitions
# ════════════════════════════════════════════════════════════════════


async def accept(db: AsyncSession, actor: Actor, delivery_id: int) -> DeliverySnapshot:
    """
    Race-safe acceptance: at most one agent moves a delivery out of `pending`.

    Raises:
        RoleNotApprovedError / PermissionDeniedError: before any state is touched
        AlreadyAssignedError: another agent won, or the job was cancelled
        AgentBusyError: agent already holds an in-progress job (single-active-job mode)
        NotFoundError: unknown delivery
    """
    require_delivery_role(actor, approved=True)
    now = datetime.utcnow()

    async with unit_of_work(db):
        stmt = update(Delivery).where(
            Delivery.id == delivery_id,
            Delivery.status == DeliveryStatus.PENDING.value,
            Delivery.delivery_agent_id.is_(None),
        )
        if settings.single_active_delivery:
            held = aliased(Delivery)
            stmt = stmt.where(
                ~exists().where(
                    held.delivery_agent_id == actor.actor_id,
                    held.status.in_(ACTIVE_STATUSES),
                )
            )
        result = await db.execute(
            stmt.values(
                status=DeliveryStatus.IN_PROGRESS.value,
                delivery_agent_id=actor.actor_id,
                assigned_at=now,
                started_at=now,
            ).execution_options(synchronize_session=False)
        )

        if result.rowcount != 1:
            delivery = await db.get(Delivery, delivery_id, populate_existing=True)
            if delivery is None:
                raise NotFoundError("Delivery", str(delivery_id))
            if (
                settings.single_active_delivery
                and delivery.status == DeliveryStatus.PENDING.value
                and await _agent_has_active_job(db, actor.actor_id)
            ):
                raise AgentBusyError(actor.actor_id)
            get_fulfillment_metrics().record_race_lost()
            logger.info(f"Delivery {delivery_id}: accept lost by {actor.actor_id[:8]} (status={delivery.status})")
            raise AlreadyAssignedError(delivery_id)

        delivery = await get_delivery(db, delivery_id)

    snapshot = DeliverySnapshot.model_validate(delivery)
    publish(constants.DELIVERY_ACCEPTED, snapshot.model_dump(mode="json"))
    logger.info(f"Delivery {delivery_id}: accepted by {actor.actor_id[:8]}")
    return snapshot


async def complete(db: AsyncSession, actor: Actor, delivery_id: int) -> DeliverySnapshot:
    """
    Finish an in-progress delivery and mark its order delivered, atomically.

    Raises:
        NotAssignedAgentError: caller is not the recorded agent, or the job is not in progress
        NotFoundError: unknown delivery
    """
    require_delivery_role(actor, approved=True)
    now = datetime.utcnow()

    async with unit_of_work(db):
        result = await db.execute(
            update(Delivery)
            .where(
                Delivery.id == delivery_id,
                Delivery.status == DeliveryStatus.IN_PROGRESS.value,
                Delivery.delivery_agent_id == actor.actor_id,
            )
            .values(status=DeliveryStatus.COMPLETED.value, completed_at=now)
            .execution_options(synchronize_session=False)
        )
        if result.rowcount != 1:
            delivery = await db.get(Delivery, delivery_id, populate_existing=True)
            if delivery is None:
                raise NotFoundError("Delivery", str(delivery_id))
            logger.info(
                f"Delivery {delivery_id}: complete refused for {actor.actor_id[:8]} (status={delivery.status})"
            )
            raise NotAssignedAgentError(delivery_id)

        delivery = await get_delivery(db, delivery_id)
        order_update = await db.execute(
            update(Order)
            .where(
                Order.id == delivery.order_id,
                Order.status == OrderStatus.AWAITING_DELIVERY.value,
            )
            .values(status=OrderStatus.DELIVERED.value, delivered_at=now)
            .execution_options(synchronize_session=False)
        )
        if order_update.rowcount != 1:
            # Rolls back the delivery update too
            raise ConflictError(
                f"Order for delivery {delivery_id} is not awaiting delivery",
                details={"order_id": delivery.order_id},
            )
        order = await db.get(Order, delivery.order_id, populate_existing=True)

    snapshot = DeliverySnapshot.model_validate(delivery)
    publish(constants.DELIVERY_COMPLETED, snapshot.model_dump(mode="json"))
    publish(constants.ORDER_DELIVERED, OrderSnapshot.model_validate(order).model_dump(mode="json"))
    logger.info(f"Delivery {delivery_id}: completed by {actor.actor_id[:8]}, order {order.order_number} delivered")
    return snapshot


async def cancel(db: AsyncSession, actor: Actor, delivery_id: int) -> DeliverySnapshot:
    """
    Cancel a job nobody has accepted yet. Admins and the delivery's customer only.

    The order stays awaiting_delivery for manual follow-up.
    """
    now = datetime.utcnow()
    async with unit_of_work(db):
        conditions = [
            Delivery.id == delivery_id,
            Delivery.status == DeliveryStatus.PENDING.value,
        ]
        if not actor.is_admin:
            conditions.append(Delivery.customer_id == actor.actor_id)

        result = await db.execute(
            update(Delivery)
            .where(*conditions)
            .values(status=DeliveryStatus.CANCELLED.value, cancelled_at=now)
            .execution_options(synchronize_session=False)
        )
        if result.rowcount != 1:
            delivery = await db.get(Delivery, delivery_id, populate_existing=True)
            if delivery is None:
                raise NotFoundError("Delivery", str(delivery_id))
            if not actor.is_admin and delivery.customer_id != actor.actor_id:
                raise PermissionDeniedError("Only the customer or an admin can cancel this delivery")
            raise AlreadyAssignedError(delivery_id)

        delivery = await get_delivery(db, delivery_id)

    snapshot = DeliverySnapshot.model_validate(delivery)
    publish(constants.DELIVERY_CANCELLED, snapshot.model_dump(mode="json"))
    logger.info(f"Delivery {delivery_id}: cancelled by {actor.actor_id[:8]}")
    return snapshot


async def rate(
    db: AsyncSession,
    actor: Actor,
    delivery_id: int,
    *,
    rating: int,
    review: str | None = None,
) -> DeliverySnapshot:
    """The customer rates a completed delivery, once."""
    if rating < 1 or rating > 5:
        raise ValidationError("Rating must be between 1 and 5", field="rating")

    async with unit_of_work(db):
        result = await db.execute(
            update(Delivery)
            .where(
                Delivery.id == delivery_id,
                Delivery.customer_id == actor.actor_id,
                Delivery.status == DeliveryStatus.COMPLETED.value,
                Delivery.rating.is_(None),
            )
            .values(rating=rating, review=review)
            .execution_options(synchronize_session=False)
        )
        if result.rowcount != 1:
            delivery = await db.get(Delivery, delivery_id, populate_existing=True)
            if delivery is None:
                raise NotFoundError("Delivery", str(delivery_id))
            if delivery.customer_id != actor.actor_id:
                raise PermissionDeniedError("Only the customer can rate this delivery")
            if delivery.rating is not None:
                raise ConflictError(f"Delivery {delivery_id} has already been rated")
            raise InvalidTransitionError("Delivery", delivery_id, delivery.status, "rated")

        delivery = await get_delivery(db, delivery_id)

    return DeliverySnapshot.model_validate(delivery)
