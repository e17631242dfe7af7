"""
SQLAlchemy ORM models for the Campus Marketplace (Ledger Store).

Tables:
    products              - catalog rows the core reads (price, seller, availability)
    cart_items            - buyer cart lines with a price snapshot
    orders                - one single-seller order per checkout seller group
    order_items           - product lines of an order
    payment_transactions  - gateway payment attempts (one reference each)
    deliveries            - agent-carried fulfillment jobs, 1:1 with orders

Money columns are integer minor units (pesewas).
"""
from datetime import datetime

from sqlalchemy import (
    Column, Integer, BigInteger, String, DateTime, Text, ForeignKey,
    UniqueConstraint, Index, CheckConstraint,
)
from sqlalchemy.orm import relationship

from database import Base


# ════════════════════════════════════════════════════════════════════
# Catalog (read-only collaborator)
# ════════════════════════════════════════════════════════════════════

class Product(Base):
    """Listing owned by a seller. The core only reads it."""
    __tablename__ = "products"

    id = Column(Integer, primary_key=True, autoincrement=True)
    seller_id = Column(String(20), nullable=False, index=True)
    title = Column(String(200), nullable=False)
    price = Column(BigInteger, nullable=False, default=0)
    quantity = Column(Integer, nullable=True)  # null => untracked stock
    status = Column(String(20), nullable=False, default="available")  # available | sold | reserved | deleted
    hall_id = Column(Integer, nullable=True)
    room_number = Column(String(20), nullable=True)
    created_at = Column(DateTime, default=datetime.utcnow)


# ════════════════════════════════════════════════════════════════════
# Cart
# ════════════════════════════════════════════════════════════════════

class CartItem(Base):
    __tablename__ = "cart_items"

    id = Column(Integer, primary_key=True, autoincrement=True)
    buyer_id = Column(String(20), nullable=False, index=True)
    product_id = Column(Integer, ForeignKey("products.id"), nullable=False, index=True)
    seller_id = Column(String(20), nullable=False, index=True)
    quantity = Column(Integer, nullable=False, default=1)
    unit_price = Column(BigInteger, nullable=False)  # snapshot taken at add time
    added_at = Column(DateTime, default=datetime.utcnow)

    product = relationship("Product", lazy="joined")

    __table_args__ = (
        UniqueConstraint("buyer_id", "product_id", name="uq_cart_buyer_product"),
        CheckConstraint("quantity >= 1", name="ck_cart_quantity_positive"),
        Index("ix_cart_buyer_seller", "buyer_id", "seller_id"),
    )


# ════════════════════════════════════════════════════════════════════
# Orders
# ════════════════════════════════════════════════════════════════════

class Order(Base):
    """
    Single-seller, single-buyer purchase.

    Lifecycle:
        pending_payment → confirmed → (delivery) awaiting_delivery → delivered
        pending_payment → cancelled
    """
    __tablename__ = "orders"

    id = Column(Integer, primary_key=True, autoincrement=True)
    order_number = Column(String(50), unique=True, nullable=False, index=True)
    checkout_batch_id = Column(String(40), nullable=False, index=True)
    buyer_id = Column(String(20), nullable=False, index=True)
    seller_id = Column(String(20), nullable=False, index=True)
    subtotal = Column(BigInteger, nullable=False, default=0)
    delivery_option = Column(String(20), nullable=False)  # pickup | delivery
    delivery_fee = Column(BigInteger, nullable=False, default=0)
    total_price = Column(BigInteger, nullable=False, default=0)
    status = Column(String(30), nullable=False, default="pending_payment", index=True)
    delivery_hall_id = Column(Integer, nullable=True)
    delivery_room_number = Column(String(20), nullable=True)
    special_instructions = Column(Text, nullable=True)
    created_at = Column(DateTime, default=datetime.utcnow, index=True)
    confirmed_at = Column(DateTime, nullable=True)
    delivered_at = Column(DateTime, nullable=True)
    cancelled_at = Column(DateTime, nullable=True)

    items = relationship("OrderItem", back_populates="order", lazy="selectin")
    delivery = relationship("Delivery", back_populates="order", uselist=False, lazy="selectin")

    __table_args__ = (
        CheckConstraint("total_price >= 0", name="ck_order_total_non_negative"),
        CheckConstraint("delivery_option IN ('pickup', 'delivery')", name="ck_order_delivery_option"),
        Index("ix_orders_buyer_created", "buyer_id", "created_at"),
        Index("ix_orders_seller_status", "seller_id", "status"),
    )


class OrderItem(Base):
    __tablename__ = "order_items"

    id = Column(Integer, primary_key=True, autoincrement=True)
    order_id = Column(Integer, ForeignKey("orders.id"), nullable=False, index=True)
    product_id = Column(Integer, ForeignKey("products.id"), nullable=False, index=True)
    quantity = Column(Integer, nullable=False, default=1)
    unit_price = Column(BigInteger, nullable=False, default=0)

    order = relationship("Order", back_populates="items")


# ════════════════════════════════════════════════════════════════════
# Payments
# ════════════════════════════════════════════════════════════════════

class PaymentTransaction(Base):
    """
    One gateway payment attempt covering one order or a checkout batch.

    Lifecycle:
        initiated → verified   (client verify or webhook, whichever lands first)
        initiated → failed     (gateway failure or amount/buyer mismatch, kept for audit)
    """
    __tablename__ = "payment_transactions"

    id = Column(Integer, primary_key=True, autoincrement=True)
    reference = Column(String(100), unique=True, nullable=False, index=True)  # gateway reference (dedup key)
    buyer_id = Column(String(20), nullable=False, index=True)
    order_ids = Column(Text, nullable=False)  # JSON list of order ids
    amount = Column(BigInteger, nullable=False)
    currency = Column(String(10), nullable=False, default="GHS")
    status = Column(String(20), nullable=False, default="initiated", index=True)
    verified_via = Column(String(20), nullable=True)  # verify | webhook
    failure_reason = Column(Text, nullable=True)
    authorization_url = Column(Text, nullable=True)
    access_code = Column(String(100), nullable=True)
    created_at = Column(DateTime, default=datetime.utcnow)
    verified_at = Column(DateTime, nullable=True)
    failed_at = Column(DateTime, nullable=True)


# ════════════════════════════════════════════════════════════════════
# Deliveries
# ════════════════════════════════════════════════════════════════════

class Delivery(Base):
    """
    Fulfillment job for a delivery order.

    Lifecycle:
        pending → in_progress → completed
        pending → cancelled
    delivery_agent_id is written once, by the conditional update that wins accept().
    """
    __tablename__ = "deliveries"

    id = Column(Integer, primary_key=True, autoincrement=True)
    order_id = Column(Integer, ForeignKey("orders.id"), unique=True, nullable=False, index=True)
    customer_id = Column(String(20), nullable=False, index=True)
    seller_id = Column(String(20), nullable=False, index=True)
    delivery_agent_id = Column(String(20), nullable=True, index=True)
    pickup_hall_id = Column(Integer, nullable=True)
    pickup_room_number = Column(String(20), nullable=True)
    delivery_hall_id = Column(Integer, nullable=True)
    delivery_room_number = Column(String(20), nullable=True)
    fee = Column(BigInteger, nullable=False, default=0)
    status = Column(String(20), nullable=False, default="pending", index=True)
    notes = Column(Text, nullable=True)
    rating = Column(Integer, nullable=True)
    review = Column(Text, nullable=True)
    created_at = Column(DateTime, default=datetime.utcnow, index=True)
    assigned_at = Column(DateTime, nullable=True)
    started_at = Column(DateTime, nullable=True)
    completed_at = Column(DateTime, nullable=True)
    cancelled_at = Column(DateTime, nullable=True)

    order = relationship("Order", back_populates="delivery")

    __table_args__ = (
        CheckConstraint("rating IS NULL OR (rating >= 1 AND rating <= 5)", name="ck_delivery_rating_range"),
        Index("ix_deliveries_status_agent", "status", "delivery_agent_id"),
    )
