"""
Domain enums for the fulfillment state machines and actor roles.
"""

from enum import Enum


class OrderStatus(str, Enum):
    PENDING_PAYMENT = "pending_payment"
    CONFIRMED = "confirmed"
    AWAITING_DELIVERY = "awaiting_delivery"
    DELIVERED = "delivered"
    CANCELLED = "cancelled"


class DeliveryOption(str, Enum):
    PICKUP = "pickup"
    DELIVERY = "delivery"


class PaymentStatus(str, Enum):
    INITIATED = "initiated"
    VERIFIED = "verified"
    FAILED = "failed"


class DeliveryStatus(str, Enum):
    PENDING = "pending"
    IN_PROGRESS = "in_progress"
    COMPLETED = "completed"
    CANCELLED = "cancelled"


class Role(str, Enum):
    STUDENT = "student"
    DELIVERY = "delivery"
    ADMIN = "admin"
