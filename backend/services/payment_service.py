"""
Payment Reconciler: gateway sessions and idempotent confirmation.

Two independent paths can confirm one payment:

    client  → GET /payments/verify?reference=...   (asks the gateway)
    gateway → POST /payments/webhook               (signed push)

Both converge on apply_successful_charge(), which moves the transaction
initiated → verified with a conditional update. Whichever path lands second
affects zero rows and reports "already verified"; the orders are confirmed
exactly once and at most one delivery is created per order.
"""

import json
import logging
import secrets
import time
from datetime import datetime

from sqlalchemy import select, update
from sqlalchemy.ext.asyncio import AsyncSession

from config import settings
from database import unit_of_work
from db_models import Order, PaymentTransaction
from domain import constants
from domain.enums import DeliveryOption, OrderStatus, PaymentStatus
from domain.errors import (
    ConflictError,
    InvalidSignatureError,
    InvalidTransitionError,
    NotFoundError,
    PaymentMismatchError,
    ValidationError,
)
from models import DeliverySnapshot, OrderSnapshot, PaymentOutcome, PaymentSnapshot
from services import catalog_service, delivery_service
from services.event_bus import publish
from services.fulfillment_metrics import get_fulfillment_metrics
from services.paystack_client import paystack_client, verify_webhook_signature

logger = logging.getLogger(__name__)

REFERENCE_PREFIX = "MKT"


def generate_reference() -> str:
    return f"{REFERENCE_PREFIX}-{int(time.time() * 1000)}-{secrets.token_hex(4).upper()}"


def _gateway_metadata(data: dict) -> dict:
    """Gateways echo metadata back either as an object or as a JSON string."""
    meta = data.get("metadata") or {}
    if isinstance(meta, str):
        try:
            meta = json.loads(meta)
        except ValueError:
            return {}
    return meta if isinstance(meta, dict) else {}


def _outcome(payment: PaymentTransaction, orders: list[Order], **kwargs) -> PaymentOutcome:
    return PaymentOutcome(
        reference=payment.reference,
        success=payment.status == PaymentStatus.VERIFIED.value,
        payment_status=payment.status,
        order_statuses={o.id: o.status for o in orders},
        **kwargs,
    )


async def _load_orders(db: AsyncSession, order_ids: list[int]) -> list[Order]:
    if not order_ids:
        return []
    res = await db.execute(
        select(Order)
        .where(Order.id.in_(order_ids))
        .order_by(Order.id)
        .execution_options(populate_existing=True)
    )
    return list(res.scalars().all())


async def _get_owned_payment(db: AsyncSession, *, reference: str, buyer_id: str) -> PaymentTransaction:
    res = await db.execute(
        select(PaymentTransaction)
        .where(PaymentTransaction.reference == reference)
        .execution_options(populate_existing=True)
    )
    payment = res.scalar_one_or_none()
    # Another buyer's reference is reported exactly like an unknown one
    if payment is None or payment.buyer_id != buyer_id:
        raise NotFoundError("Payment", reference)
    return payment


# ════════════════════════════════════════════════════════════════════
# Initiation
# ════════════════════════════════════════════════════════════════════


async def initiate(
    db: AsyncSession,
    *,
    buyer_id: str,
    amount: int,
    email: str,
    order_ids: list[int] | None = None,
    batch_id: str | None = None,
    gateway=None,
) -> PaymentSnapshot:
    """
    Open a gateway checkout session for pending orders of one buyer.

    The PaymentTransaction row is written only after the gateway accepted the
    session, so a gateway failure or timeout leaves nothing behind.

    Raises:
        ValidationError: no orders named, missing email, amount != sum of totals
        NotFoundError: an order is unknown or belongs to another buyer
        InvalidTransitionError: an order is no longer pending_payment
        GatewayError / GatewayTimeoutError: session could not be opened
    """
    gateway = gateway or paystack_client
    if not order_ids and not batch_id:
        raise ValidationError("Provide order_ids or a checkout batch id", field="order_ids")
    if not email:
        raise ValidationError("Email is required by the payment gateway", field="email")

    async with unit_of_work(db):
        query = select(Order).where(Order.buyer_id == buyer_id)
        if order_ids:
            query = query.where(Order.id.in_(order_ids))
        else:
            query = query.where(Order.checkout_batch_id == batch_id)
        orders = list((await db.execute(query.order_by(Order.id))).scalars().all())

    if order_ids:
        missing = set(order_ids) - {o.id for o in orders}
        if missing:
            raise NotFoundError("Order", ", ".join(str(i) for i in sorted(missing)))
    elif not orders:
        raise NotFoundError("Checkout batch", batch_id)

    for order in orders:
        if order.status != OrderStatus.PENDING_PAYMENT.value:
            raise InvalidTransitionError("Order", order.order_number, order.status, "paid")

    expected = sum(o.total_price for o in orders)
    if amount != expected:
        raise ValidationError(
            f"Amount {amount} does not match the order total {expected}", field="amount"
        )

    ids = [o.id for o in orders]
    reference = generate_reference()
    data = await gateway.initialize_transaction(
        email=email,
        amount=expected,
        reference=reference,
        currency=settings.currency,
        metadata={"buyer_id": buyer_id, "order_ids": ids},
    )

    async with unit_of_work(db):
        payment = PaymentTransaction(
            reference=data.get("reference") or reference,
            buyer_id=buyer_id,
            order_ids=json.dumps(ids),
            amount=expected,
            currency=settings.currency,
            status=PaymentStatus.INITIATED.value,
            authorization_url=data.get("authorization_url"),
            access_code=data.get("access_code"),
        )
        db.add(payment)
        await db.flush()

    logger.info(f"Payment {payment.reference} initiated for {buyer_id[:8]}: {expected} over {len(ids)} order(s)")
    return PaymentSnapshot.model_validate(payment)


# ════════════════════════════════════════════════════════════════════
# Shared confirmation
# ════════════════════════════════════════════════════════════════════


def _mismatch_reason(
    payment: PaymentTransaction,
    *,
    amount: int,
    correlation_id: str | None,
    currency: str | None,
) -> str | None:
    if amount != payment.amount:
        return f"amount {amount} != expected {payment.amount}"
    if correlation_id != payment.buyer_id:
        return "buyer id in gateway metadata does not match"
    if currency and currency.upper() != payment.currency.upper():
        return f"currency {currency} != expected {payment.currency}"
    return None


async def apply_successful_charge(
    db: AsyncSession,
    *,
    reference: str,
    amount: int,
    correlation_id: str | None,
    source: str,
    currency: str | None = None,
) -> PaymentOutcome:
    """
    Apply a gateway-confirmed charge exactly once.

    Args:
        amount: charged amount in minor units, as reported by the gateway
        correlation_id: buyer id echoed back in the gateway metadata
        source: "verify" or "webhook" (kept on the row)

    Raises:
        NotFoundError: unknown reference
        PaymentMismatchError: amount/buyer/currency mismatch; the transaction is
            marked failed (committed) and its orders stay pending_payment
    """
    now = datetime.utcnow()
    metrics = get_fulfillment_metrics()
    mismatch: str | None = None
    already_verified = False
    confirmed_ids: list[int] = []
    deliveries = []

    async with unit_of_work(db):
        res = await db.execute(
            select(PaymentTransaction)
            .where(PaymentTransaction.reference == reference)
            .with_for_update()
            .execution_options(populate_existing=True)
        )
        payment = res.scalar_one_or_none()
        if payment is None:
            raise NotFoundError("Payment", reference)
        order_ids = json.loads(payment.order_ids)

        if payment.status == PaymentStatus.VERIFIED.value:
            already_verified = True
        elif payment.status == PaymentStatus.INITIATED.value:
            mismatch = _mismatch_reason(payment, amount=amount, correlation_id=correlation_id, currency=currency)
            if mismatch:
                await db.execute(
                    update(PaymentTransaction)
                    .where(
                        PaymentTransaction.id == payment.id,
                        PaymentTransaction.status == PaymentStatus.INITIATED.value,
                    )
                    .values(status=PaymentStatus.FAILED.value, failure_reason=mismatch, failed_at=now)
                    .execution_options(synchronize_session=False)
                )
            else:
                result = await db.execute(
                    update(PaymentTransaction)
                    .where(
                        PaymentTransaction.id == payment.id,
                        PaymentTransaction.status == PaymentStatus.INITIATED.value,
                    )
                    .values(status=PaymentStatus.VERIFIED.value, verified_via=source, verified_at=now)
                    .execution_options(synchronize_session=False)
                )
                if result.rowcount != 1:
                    already_verified = True
                else:
                    confirmed_ids, deliveries = await _confirm_orders(db, order_ids, now)

        payment = (
            await db.execute(
                select(PaymentTransaction)
                .where(PaymentTransaction.id == payment.id)
                .execution_options(populate_existing=True)
            )
        ).scalar_one()
        orders = await _load_orders(db, order_ids)

    payment_snapshot = PaymentSnapshot.model_validate(payment)

    if mismatch and payment.status == PaymentStatus.FAILED.value:
        logger.warning(f"Payment {reference} ({source}) rejected: {mismatch}")
        publish(constants.PAYMENT_FAILED, payment_snapshot.model_dump(mode="json"))
        raise PaymentMismatchError(reference, mismatch)

    if already_verified:
        metrics.record_duplicate_confirmation()
        logger.info(f"Payment {reference} ({source}): already verified")
        return _outcome(payment, orders, already_verified=True)

    if payment.status != PaymentStatus.VERIFIED.value:
        logger.info(f"Payment {reference} ({source}): no-op, status is {payment.status}")
        return _outcome(payment, orders)

    publish(constants.PAYMENT_VERIFIED, payment_snapshot.model_dump(mode="json"))
    for order in orders:
        if order.id in confirmed_ids:
            publish(constants.ORDER_CONFIRMED, OrderSnapshot.model_validate(order).model_dump(mode="json"))
    for delivery in deliveries:
        publish(constants.DELIVERY_CREATED, DeliverySnapshot.model_validate(delivery).model_dump(mode="json"))

    logger.info(
        f"Payment {reference} verified via {source}: "
        f"{len(confirmed_ids)} order(s) confirmed, {len(deliveries)} delivery job(s) created"
    )
    return _outcome(payment, orders)


async def _confirm_orders(db: AsyncSession, order_ids: list[int], now: datetime):
    """
    pending_payment → confirmed for the payment's orders, then open a delivery
    job for each delivery order (confirmed → awaiting_delivery).

    Runs inside apply_successful_charge's transaction.
    """
    pending = list(
        (
            await db.execute(
                select(Order.id)
                .where(Order.id.in_(order_ids), Order.status == OrderStatus.PENDING_PAYMENT.value)
                .with_for_update()
            )
        ).scalars().all()
    )
    skipped = set(order_ids) - set(pending)
    if skipped:
        # Paid for but cancelled in between; left for a manual refund
        logger.warning(f"Orders {sorted(skipped)} no longer pending_payment at confirmation")
    if not pending:
        return [], []

    result = await db.execute(
        update(Order)
        .where(Order.id.in_(pending), Order.status == OrderStatus.PENDING_PAYMENT.value)
        .values(status=OrderStatus.CONFIRMED.value, confirmed_at=now)
        .execution_options(synchronize_session=False)
    )
    if result.rowcount != len(pending):
        raise ConflictError("Orders changed during payment confirmation, please retry")

    deliveries = []
    for order in await _load_orders(db, pending):
        if order.delivery_option != DeliveryOption.DELIVERY.value:
            continue
        pickup = None
        if order.items:
            pickup = await catalog_service.get_listing(db, order.items[0].product_id)
        deliveries.append(
            await delivery_service.create(
                db,
                order,
                pickup_hall_id=pickup.hall_id if pickup else None,
                pickup_room_number=pickup.room_number if pickup else None,
            )
        )
        moved = await db.execute(
            update(Order)
            .where(Order.id == order.id, Order.status == OrderStatus.CONFIRMED.value)
            .values(status=OrderStatus.AWAITING_DELIVERY.value)
            .execution_options(synchronize_session=False)
        )
        if moved.rowcount != 1:
            raise ConflictError(f"Order {order.order_number} changed during payment confirmation")

    return pending, deliveries


# ════════════════════════════════════════════════════════════════════
# Entry points
# ════════════════════════════════════════════════════════════════════


async def verify(db: AsyncSession, *, reference: str, buyer_id: str, gateway=None) -> PaymentOutcome:
    """
    Client-driven verification: ask the gateway, then reconcile.

    Gateway status "success" applies the charge; "failed" marks the payment
    failed; anything else (abandoned, pending, ...) leaves it initiated.
    """
    gateway = gateway or paystack_client

    async with unit_of_work(db):
        payment = await _get_owned_payment(db, reference=reference, buyer_id=buyer_id)
        orders = await _load_orders(db, json.loads(payment.order_ids))

    if payment.status == PaymentStatus.VERIFIED.value:
        get_fulfillment_metrics().record_duplicate_confirmation()
        return _outcome(payment, orders, already_verified=True)
    if payment.status == PaymentStatus.FAILED.value:
        return _outcome(payment, orders)

    data = await gateway.verify_transaction(reference)
    gateway_status = data.get("status")

    if gateway_status == "success":
        outcome = await apply_successful_charge(
            db,
            reference=reference,
            amount=amount,
            correlation_id=_gateway_metadata(data).get("buyer_id"),
            currency=data.get("currency"),
            source="verify",
        )
        outcome.gateway_status = gateway_status
        return outcome

    if gateway_status == "failed":
        reason = f"Gateway reported failed: {data.get('gateway_response') or 'no reason given'}"
        async with unit_of_work(db):
            result = await db.execute(
                update(PaymentTransaction)
                .where(
                    PaymentTransaction.id == payment.id,
                    PaymentTransaction.status == PaymentStatus.INITIATED.value,
                )
                .values(status=PaymentStatus.FAILED.value, failure_reason=reason, failed_at=datetime.utcnow())
                .execution_options(synchronize_session=False)
            )
            payment = await _get_owned_payment(db, reference=reference, buyer_id=buyer_id)
        if result.rowcount == 1:
            logger.warning(f"Payment {reference}: {reason}")
            publish(constants.PAYMENT_FAILED, PaymentSnapshot.model_validate(payment).model_dump(mode="json"))
        return _outcome(payment, orders, gateway_status=gateway_status)

    logger.info(f"Payment {reference}: gateway status {gateway_status!r}, still initiated")
    return _outcome(payment, orders, gateway_status=gateway_status)


async def handle_webhook(db: AsyncSession, *, raw_body: bytes, signature: str | None) -> PaymentOutcome | None:
    """
    Gateway push. The signature is checked over the raw bytes before anything is parsed.

    Returns None for events that are acknowledged but ignored (non-charge
    events, unknown references).
    """
    if not verify_webhook_signature(raw_body, signature or ""):
        logger.warning("Webhook rejected: invalid signature")
        raise InvalidSignatureError()

    try:
        event = json.loads(raw_body)
    except ValueError:
        raise ValidationError("Webhook body is not valid JSON")
    if not isinstance(event, dict):
        raise ValidationError("Webhook body must be a JSON object")

    if event.get("event") != constants.PAYSTACK_CHARGE_SUCCESS:
        logger.info(f"Webhook event {event.get('event')!r} ignored")
        return None

    data = event.get("data") or {}
    if not isinstance(data, dict):
        raise ValidationError("Webhook data must be a JSON object")
    try:
        amount = int(data.get("amount") or 0)
    except (TypeError, ValueError):
        raise ValidationError("Webhook amount must be an integer", field="amount")
    reference = data.get("reference")
    if not reference:
        logger.warning("Webhook charge.success without reference ignored")
        return None
    if not isinstance(reference, str):
        raise ValidationError("Webhook reference must be a string", field="reference")

    try:
        return await apply_successful_charge(
            db,
            reference=reference,
            amount=amount,
            correlation_id=_gateway_metadata(data).get("buyer_id"),
            currency=data.get("currency"),
            source="webhook",
        )
    except NotFoundError:
        logger.warning(f"Webhook for unknown reference {reference} ignored")
        return None


async def get_payment(db: AsyncSession, *, reference: str, buyer_id: str) -> PaymentSnapshot:
    async with unit_of_work(db):
        payment = await _get_owned_payment(db, reference=reference, buyer_id=buyer_id)
    return PaymentSnapshot.model_validate(payment)
