"""
Checkout Splitter: turns a buyer's multi-seller cart into one order per seller.

All orders of one checkout call and the deletion of exactly the billed cart
rows happen in a single database transaction. Either every targeted seller
group becomes an order and its cart rows disappear, or nothing is written.
"""

import logging
import secrets
import string
import time
import uuid
from collections import OrderedDict

from sqlalchemy import delete
from sqlalchemy.ext.asyncio import AsyncSession

from config import settings
from database import unit_of_work
from db_models import CartItem, Order, OrderItem
from domain import constants
from domain.enums import DeliveryOption, OrderStatus
from domain.errors import EmptyCartError, InvalidCartItemError, ValidationError
from models import CheckoutResult, OrderSnapshot
from services import cart_service, catalog_service
from services.event_bus import publish

logger = logging.getLogger(__name__)

_ORDER_SUFFIX_ALPHABET = string.ascii_uppercase + string.digits


def generate_order_number() -> str:
    """Human-readable unique order number: ORD-<epoch ms>-<5 chars>."""
    suffix = "".join(secrets.choice(_ORDER_SUFFIX_ALPHABET) for _ in range(5))
    return f"{constants.ORDER_NUMBER_PREFIX}-{int(time.time() * 1000)}-{suffix}"


def group_by_seller(items: list[CartItem]) -> "OrderedDict[str, list[CartItem]]":
    groups: "OrderedDict[str, list[CartItem]]" = OrderedDict()
    for item in items:
        groups.setdefault(item.seller_id, []).append(item)
    return groups


def _parse_delivery_option(delivery_option: str) -> DeliveryOption:
    try:
        return DeliveryOption(delivery_option)
    except ValueError:
        raise ValidationError(
            'Invalid delivery_option. Must be "pickup" or "delivery"', field="delivery_option"
        )


async def checkout(
    db: AsyncSession,
    *,
    buyer_id: str,
    delivery_option: str,
    seller_id: str | None = None,
    delivery_hall_id: int | None = None,
    delivery_room_number: str | None = None,
    special_instructions: str | None = None,
) -> CheckoutResult:
    """
    Create one pending_payment order per seller group of the buyer's cart.

    Args:
        seller_id: only check out this seller's items; other sellers stay in the cart

    Raises:
        EmptyCartError: nothing to check out (no orders created)
        InvalidCartItemError: a line can no longer be billed (whole checkout aborted)
    """
    option = _parse_delivery_option(delivery_option)
    fee = settings.delivery_fee if option == DeliveryOption.DELIVERY else 0
    batch_id = uuid.uuid4().hex

    orders: list[Order] = []
    async with unit_of_work(db):
        items = await cart_service.list_items(db, buyer_id=buyer_id, seller_id=seller_id)
        if not items:
            raise EmptyCartError(seller_id)

        listings = await catalog_service.get_listings(db, [i.product_id for i in items])

        for group_seller_id, lines in group_by_seller(items).items():
            subtotal = 0
            order_items = []
            for line in lines:
                listing = listings.get(line.product_id)
                if listing is None or not listing.purchasable:
                    raise InvalidCartItemError(
                        f"Product {line.product_id} not found or not available", product_id=line.product_id
                    )
                if not listing.has_stock_for(line.quantity):
                    raise InvalidCartItemError(
                        f"Product {listing.title} only has {listing.quantity} units available. "
                        f"Cannot checkout {line.quantity} units.",
                        product_id=line.product_id,
                    )
                subtotal += line.unit_price * line.quantity
                order_items.append(
                    OrderItem(product_id=line.product_id, quantity=line.quantity, unit_price=line.unit_price)
                )

            if subtotal < 0:
                raise InvalidCartItemError(f"Negative total for seller {group_seller_id}")

            order = Order(
                order_number=generate_order_number(),
                checkout_batch_id=batch_id,
                buyer_id=buyer_id,
                seller_id=group_seller_id,
                subtotal=subtotal,
                delivery_option=option.value,
                delivery_fee=fee,
                total_price=subtotal + fee,
                status=OrderStatus.PENDING_PAYMENT.value,
                delivery_hall_id=delivery_hall_id if option == DeliveryOption.DELIVERY else None,
                delivery_room_number=delivery_room_number if option == DeliveryOption.DELIVERY else None,
                special_instructions=special_instructions,
                items=order_items,
            )
            db.add(order)
            orders.append(order)

        await db.flush()

        billed_ids = [i.id for i in items]
        result = await db.execute(
            delete(CartItem)
            .where(CartItem.buyer_id == buyer_id, CartItem.id.in_(billed_ids))
            .execution_options(synchronize_session=False)
        )
        if result.rowcount != len(billed_ids):
            # Cart changed under us (concurrent checkout/removal); bill nothing
            raise InvalidCartItemError("Cart changed during checkout, please retry")
        for item in items:
            db.expunge(item)

    snapshots = [OrderSnapshot.model_validate(o) for o in orders]
    for snap in snapshots:
        publish(constants.ORDER_CREATED, snap.model_dump(mode="json"))

    logger.info(
        f"Checkout {batch_id[:8]} for {buyer_id[:8]}: {len(orders)} order(s) "
        f"({option.value}, seller filter={seller_id or '-'})"
    )
    return CheckoutResult(
        checkout_batch_id=batch_id,
        orders=snapshots,
        total_amount=sum(s.total_price for s in snapshots),
    )
