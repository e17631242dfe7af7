"""
Domain constants used across services/routers.
"""

# Fulfillment event names (payload = post-transition snapshot)
ORDER_CREATED = "order.created"
ORDER_CONFIRMED = "order.confirmed"
ORDER_CANCELLED = "order.cancelled"
ORDER_DELIVERED = "order.delivered"
PAYMENT_VERIFIED = "payment.verified"
PAYMENT_FAILED = "payment.failed"
DELIVERY_CREATED = "delivery.created"
DELIVERY_ACCEPTED = "delivery.accepted"
DELIVERY_COMPLETED = "delivery.completed"
DELIVERY_CANCELLED = "delivery.cancelled"

# Product statuses that may still be bought
PURCHASABLE_PRODUCT_STATUSES = ("available", "sold")

# Order number prefix: ORD-<epoch ms>-<5 chars>
ORDER_NUMBER_PREFIX = "ORD"

# Gateway webhook
PAYSTACK_SIGNATURE_HEADER = "x-paystack-signature"
PAYSTACK_CHARGE_SUCCESS = "charge.success"
