"""
Pydantic snapshot models for responses and event payloads.

Snapshots are built straight from ORM rows (from_attributes) after a
transition commits, so API responses and fulfillment events carry the same
post-transition view of an entity.
"""
import json

from pydantic import BaseModel, ConfigDict, Field, field_validator
from typing import List, Optional
from datetime import datetime


class SnapshotBase(BaseModel):
    """Shared base - allows construction by Python name or alias, and from ORM rows."""
    model_config = ConfigDict(populate_by_name=True, from_attributes=True)


# ── Cart ────────────────────────────────────────────────────────────

class CartItemSnapshot(SnapshotBase):
    id: int
    product_id: int
    seller_id: str
    quantity: int
    unit_price: int
    line_total: int = 0
    added_at: Optional[datetime] = None

    @classmethod
    def from_row(cls, row) -> "CartItemSnapshot":
        snap = cls.model_validate(row)
        snap.line_total = row.unit_price * row.quantity
        return snap


class SellerGroup(BaseModel):
    seller_id: str
    items: List[CartItemSnapshot]
    subtotal: int
    item_count: int


class CartSnapshot(BaseModel):
    buyer_id: str
    sellers: List[SellerGroup]
    total_price: int
    total_items: int


# ── Orders ──────────────────────────────────────────────────────────

class OrderItemSnapshot(SnapshotBase):
    product_id: int
    quantity: int
    unit_price: int


class OrderSnapshot(SnapshotBase):
    id: int
    order_number: str
    checkout_batch_id: str
    buyer_id: str
    seller_id: str
    subtotal: int
    delivery_option: str
    delivery_fee: int
    total_price: int
    status: str
    delivery_hall_id: Optional[int] = None
    delivery_room_number: Optional[str] = None
    special_instructions: Optional[str] = None
    items: List[OrderItemSnapshot] = Field(default_factory=list)
    created_at: Optional[datetime] = None
    confirmed_at: Optional[datetime] = None
    delivered_at: Optional[datetime] = None
    cancelled_at: Optional[datetime] = None


class CheckoutResult(BaseModel):
    checkout_batch_id: str
    orders: List[OrderSnapshot]
    total_amount: int


# ── Payments ────────────────────────────────────────────────────────

class PaymentSnapshot(SnapshotBase):
    reference: str
    buyer_id: str
    order_ids: List[int] = Field(default_factory=list)
    amount: int
    currency: str
    status: str
    verified_via: Optional[str] = None
    failure_reason: Optional[str] = None
    authorization_url: Optional[str] = None
    access_code: Optional[str] = None
    created_at: Optional[datetime] = None
    verified_at: Optional[datetime] = None
    failed_at: Optional[datetime] = None

    @field_validator("order_ids", mode="before")
    @classmethod
    def _parse_order_ids(cls, v):
        # Stored as a JSON list in a text column
        if isinstance(v, str):
            return json.loads(v) if v else []
        return v


class PaymentOutcome(BaseModel):
    """Result of a verify/webhook reconciliation attempt."""
    reference: str
    success: bool
    payment_status: str
    already_verified: bool = False
    order_statuses: dict[int, str] = Field(default_factory=dict)
    gateway_status: Optional[str] = None


# ── Deliveries ──────────────────────────────────────────────────────

class DeliverySnapshot(SnapshotBase):
    id: int
    order_id: int
    customer_id: str
    seller_id: str
    delivery_agent_id: Optional[str] = None
    pickup_hall_id: Optional[int] = None
    pickup_room_number: Optional[str] = None
    delivery_hall_id: Optional[int] = None
    delivery_room_number: Optional[str] = None
    fee: int
    status: str
    notes: Optional[str] = None
    rating: Optional[int] = None
    review: Optional[str] = None
    created_at: Optional[datetime] = None
    assigned_at: Optional[datetime] = None
    started_at: Optional[datetime] = None
    completed_at: Optional[datetime] = None
    cancelled_at: Optional[datetime] = None


class DeliveryStats(BaseModel):
    total_deliveries: int
    completed_deliveries: int
    active_deliveries: int
    average_rating: float
    total_earnings: int
