"""
Default fulfillment subscribers.

The notification service is an external collaborator; this hook turns events
into the (recipient, title, body) messages it expects and hands them to a
sender. The default sender only logs, so a missing push provider never
affects the workflow.
"""
import logging
from typing import Callable, Optional

from domain import constants
from services.event_bus import FulfillmentEvent, FulfillmentEventBus, WILDCARD
from services.fulfillment_metrics import get_fulfillment_metrics

logger = logging.getLogger(__name__)

Sender = Callable[[str, str, str], None]


def _log_sender(recipient_id: str, title: str, body: str) -> None:
    logger.info(f"  notify {recipient_id[:8]}: {title} - {body}")


def build_notifications(event: FulfillmentEvent) -> list[tuple[str, str, str]]:
    """Map one event to (recipient_id, title, body) notifications."""
    p = event.payload
    name = event.name

    if name == constants.ORDER_CREATED:
        return [(p["seller_id"], "New order", f"Order {p['order_number']} is awaiting payment")]
    if name == constants.ORDER_CONFIRMED:
        return [
            (p["buyer_id"], "Payment received", f"Order {p['order_number']} is confirmed"),
            (p["seller_id"], "Order paid", f"Order {p['order_number']} has been paid"),
        ]
    if name == constants.ORDER_CANCELLED:
        return [(p["seller_id"], "Order cancelled", f"Order {p['order_number']} was cancelled")]
    if name == constants.DELIVERY_ACCEPTED:
        return [(p["customer_id"], "Delivery on the way", f"An agent picked up delivery #{p['id']}")]
    if name == constants.DELIVERY_COMPLETED:
        return [
            (p["customer_id"], "Delivered", f"Delivery #{p['id']} has been completed"),
            (p["seller_id"], "Delivered", f"Delivery #{p['id']} reached the buyer"),
        ]
    if name == constants.PAYMENT_FAILED:
        return [(p["buyer_id"], "Payment problem", f"Payment {p['reference']} could not be confirmed")]
    return []


def make_notification_subscriber(sender: Optional[Sender] = None):
    send = sender or _log_sender

    def notify(event: FulfillmentEvent) -> None:
        for recipient_id, title, body in build_notifications(event):
            send(recipient_id, title, body)

    return notify


def register_default_subscribers(bus: FulfillmentEventBus, sender: Optional[Sender] = None) -> None:
    """Wire metrics + notifications onto the bus. Called from the app lifespan."""
    bus.subscribe(WILDCARD, get_fulfillment_metrics().record_event)
    notify = make_notification_subscriber(sender)
    for name in (
        constants.ORDER_CREATED,
        constants.ORDER_CONFIRMED,
        constants.ORDER_CANCELLED,
        constants.PAYMENT_FAILED,
        constants.DELIVERY_ACCEPTED,
        constants.DELIVERY_COMPLETED,
    ):
        bus.subscribe(name, notify)
