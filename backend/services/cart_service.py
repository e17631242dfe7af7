"""
Cart service: buyer cart lines with a price snapshot.

The unit price is captured when a product is first added and is the price
checkout bills; catalog price changes never reprice an existing line.
"""

import logging
from collections import OrderedDict
from datetime import datetime

from sqlalchemy import select, delete
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession

from database import unit_of_work
from db_models import CartItem
from domain.errors import ConflictError, NotFoundError, PermissionDeniedError, ValidationError
from models import CartItemSnapshot, CartSnapshot, SellerGroup
from services import catalog_service

logger = logging.getLogger(__name__)


async def list_items(db: AsyncSession, *, buyer_id: str, seller_id: str | None = None) -> list[CartItem]:
    query = select(CartItem).where(CartItem.buyer_id == buyer_id)
    if seller_id is not None:
        query = query.where(CartItem.seller_id == seller_id)
    res = await db.execute(query.order_by(CartItem.added_at.desc(), CartItem.id.desc()))
    return list(res.scalars().unique().all())


async def get_cart(db: AsyncSession, *, buyer_id: str) -> CartSnapshot:
    """Cart grouped by seller, with per-seller subtotals and overall totals."""
    items = await list_items(db, buyer_id=buyer_id)

    groups: "OrderedDict[str, list[CartItemSnapshot]]" = OrderedDict()
    for row in items:
        groups.setdefault(row.seller_id, []).append(CartItemSnapshot.from_row(row))

    sellers = [
        SellerGroup(
            seller_id=seller_id,
            items=lines,
            subtotal=sum(line.line_total for line in lines),
            item_count=sum(line.quantity for line in lines),
        )
        for seller_id, lines in groups.items()
    ]
    return CartSnapshot(
        buyer_id=buyer_id,
        sellers=sellers,
        total_price=sum(g.subtotal for g in sellers),
        total_items=sum(g.item_count for g in sellers),
    )


async def _get_owned_item(db: AsyncSession, *, buyer_id: str, item_id: int) -> CartItem:
    res = await db.execute(
        select(CartItem).where(CartItem.id == item_id, CartItem.buyer_id == buyer_id)
    )
    item = res.scalars().unique().one_or_none()
    if not item:
        raise NotFoundError("Cart item", str(item_id))
    return item


async def _find_line(db: AsyncSession, buyer_id: str, product_id: int) -> CartItem | None:
    res = await db.execute(
        select(CartItem).where(CartItem.buyer_id == buyer_id, CartItem.product_id == product_id)
    )
    return res.scalars().unique().one_or_none()


async def _upsert_line(db: AsyncSession, buyer_id: str, listing, quantity: int) -> CartItem:
    async with unit_of_work(db):
        item = await _find_line(db, buyer_id, listing.product_id)
        new_quantity = quantity + (item.quantity if item else 0)
        if not listing.has_stock_for(new_quantity):
            raise ValidationError(
                f"Only {listing.quantity} units available. Cannot add {new_quantity} units to cart."
            )

        if item:
            item.quantity = new_quantity
            item.added_at = datetime.utcnow()
        else:
            item = CartItem(
                buyer_id=buyer_id,
                product_id=listing.product_id,
                seller_id=listing.seller_id,
                quantity=quantity,
                unit_price=listing.price,
            )
            db.add(item)
        await db.flush()
    return item


async def add_item(
    db: AsyncSession,
    *,
    buyer_id: str,
    product_id: int,
    quantity: int = 1,
) -> CartItem:
    """
    Add a product to the cart, or bump the quantity of the existing line.

    Raises:
        ValidationError: bad quantity, product not purchasable, not enough stock
        NotFoundError: unknown product
        PermissionDeniedError: buyer is the seller
        ConflictError: the line kept changing under concurrent adds
    """
    if quantity < 1:
        raise ValidationError("Quantity must be at least 1", field="quantity")

    listing = await catalog_service.get_listing(db, product_id)
    if not listing:
        raise NotFoundError("Product", str(product_id))
    if listing.seller_id == buyer_id:
        raise PermissionDeniedError("You cannot add your own product to cart")
    if not listing.purchasable:
        raise ValidationError("Product is not available for purchase")

    try:
        item = await _upsert_line(db, buyer_id, listing, quantity)
    except IntegrityError:
        # Race: a concurrent first add inserted the line. Bump that row instead.
        logger.info(f"Cart {buyer_id[:8]}: concurrent add of product {product_id}, retrying as update")
        try:
            item = await _upsert_line(db, buyer_id, listing, quantity)
        except IntegrityError as exc:
            raise ConflictError("Cart line changed concurrently, try again") from exc

    logger.info(f"Cart {buyer_id[:8]}: product {product_id} x{item.quantity}")
    return item


async def update_quantity(
    db: AsyncSession,
    *,
    buyer_id: str,
    item_id: int,
    quantity: int,
) -> CartItem | None:
    """Set a line's quantity. Zero removes the line (returns None)."""
    if quantity < 0:
        raise ValidationError("Invalid quantity", field="quantity")

    async with unit_of_work(db):
        item = await _get_owned_item(db, buyer_id=buyer_id, item_id=item_id)
        if quantity == 0:
            await db.delete(item)
            return None

        listing = await catalog_service.get_listing(db, item.product_id)
        if listing and not listing.has_stock_for(quantity):
            raise ValidationError(f"Only {listing.quantity} units available.")
        item.quantity = quantity
        await db.flush()
    return item


async def remove_item(db: AsyncSession, *, buyer_id: str, item_id: int) -> None:
    async with unit_of_work(db):
        item = await _get_owned_item(db, buyer_id=buyer_id, item_id=item_id)
        await db.delete(item)


async def clear_cart(db: AsyncSession, *, buyer_id: str) -> int:
    async with unit_of_work(db):
        res = await db.execute(delete(CartItem).where(CartItem.buyer_id == buyer_id))
    return res.rowcount or 0
