"""
Cart endpoints: buyer cart CRUD and multi-seller checkout.
"""

import logging
from fastapi import APIRouter, Depends
from pydantic import BaseModel, Field
from sqlalchemy.ext.asyncio import AsyncSession

from database import get_db
from domain.actors import Actor
from domain.responses import success_response
from middleware.auth import require_actor
from models import CartItemSnapshot
from services import cart_service, checkout_service

logger = logging.getLogger(__name__)
router = APIRouter(prefix="/cart", tags=["cart"])


class AddItemRequest(BaseModel):
    product_id: int = Field(..., gt=0, alias="productId")
    quantity: int = Field(1, ge=1, le=100)


class UpdateQuantityRequest(BaseModel):
    quantity: int = Field(..., ge=0, le=100)


class CheckoutRequest(BaseModel):
    delivery_option: str = Field(..., alias="deliveryOption")
    seller_id: str | None = Field(default=None, alias="sellerId")
    delivery_hall_id: int | None = Field(default=None, alias="deliveryHallId")
    delivery_room_number: str | None = Field(default=None, alias="deliveryRoomNumber", max_length=20)
    special_instructions: str | None = Field(default=None, alias="specialInstructions", max_length=500)


@router.get("")
async def get_cart(
    actor: Actor = Depends(require_actor),
    db: AsyncSession = Depends(get_db),
):
    cart = await cart_service.get_cart(db, buyer_id=actor.actor_id)
    return success_response(data=cart.model_dump(mode="json"))


@router.delete("")
async def clear_cart(
    actor: Actor = Depends(require_actor),
    db: AsyncSession = Depends(get_db),
):
    removed = await cart_service.clear_cart(db, buyer_id=actor.actor_id)
    return success_response(data={"removed": removed})


@router.post("/items")
async def add_item(
    request: AddItemRequest,
    actor: Actor = Depends(require_actor),
    db: AsyncSession = Depends(get_db),
):
    item = await cart_service.add_item(
        db, buyer_id=actor.actor_id, product_id=request.product_id, quantity=request.quantity
    )
    return success_response(data=CartItemSnapshot.from_row(item).model_dump(mode="json"))


@router.patch("/items/{item_id}")
async def update_item(
    item_id: int,
    request: UpdateQuantityRequest,
    actor: Actor = Depends(require_actor),
    db: AsyncSession = Depends(get_db),
):
    item = await cart_service.update_quantity(
        db, buyer_id=actor.actor_id, item_id=item_id, quantity=request.quantity
    )
    if item is None:
        return success_response(data={"id": item_id, "removed": True})
    return success_response(data=CartItemSnapshot.from_row(item).model_dump(mode="json"))


@router.delete("/items/{item_id}")
async def remove_item(
    item_id: int,
    actor: Actor = Depends(require_actor),
    db: AsyncSession = Depends(get_db),
):
    await cart_service.remove_item(db, buyer_id=actor.actor_id, item_id=item_id)
    return success_response(data={"id": item_id, "removed": True})


@router.post("/checkout")
async def checkout(
    request: CheckoutRequest,
    actor: Actor = Depends(require_actor),
    db: AsyncSession = Depends(get_db),
):
    result = await checkout_service.checkout(
        db,
        buyer_id=actor.actor_id,
        delivery_option=request.delivery_option,
        seller_id=request.seller_id,
        delivery_hall_id=request.delivery_hall_id,
        delivery_room_number=request.delivery_room_number,
        special_instructions=request.special_instructions,
    )
    return success_response(
        data=result.model_dump(mode="json"),
        meta={"order_count": len(result.orders)},
    )
