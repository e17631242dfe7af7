"""
Fulfillment metrics for throughput and contention monitoring.

Simple in-memory counters fed by the services and the event bus; exposed on
/fulfillment/status. Can be replaced with Prometheus later.
"""
import logging
import time
from dataclasses import dataclass, field

from domain import constants

logger = logging.getLogger(__name__)


@dataclass
class FulfillmentMetrics:
    """In-memory counters for the checkout → payment → delivery workflow."""

    orders_created: int = 0
    orders_confirmed: int = 0
    orders_delivered: int = 0
    orders_cancelled: int = 0
    payments_verified: int = 0
    payments_failed: int = 0
    duplicate_confirmations: int = 0
    deliveries_created: int = 0
    deliveries_accepted: int = 0
    acceptance_races_lost: int = 0
    deliveries_completed: int = 0
    deliveries_cancelled: int = 0
    started_at: float = field(default_factory=time.monotonic)

    def record_duplicate_confirmation(self) -> None:
        self.duplicate_confirmations += 1

    def record_race_lost(self) -> None:
        self.acceptance_races_lost += 1

    def record_event(self, event) -> None:
        """Event bus subscriber: count committed transitions by event name."""
        counter = _EVENT_COUNTERS.get(event.name)
        if counter:
            setattr(self, counter, getattr(self, counter) + 1)

    def reset(self) -> None:
        for name in _RESETTABLE:
            setattr(self, name, 0)
        self.started_at = time.monotonic()

    def to_dict(self) -> dict:
        return {
            "orders_created": self.orders_created,
            "orders_confirmed": self.orders_confirmed,
            "orders_delivered": self.orders_delivered,
            "orders_cancelled": self.orders_cancelled,
            "payments_verified": self.payments_verified,
            "payments_failed": self.payments_failed,
            "duplicate_confirmations": self.duplicate_confirmations,
            "deliveries_created": self.deliveries_created,
            "deliveries_accepted": self.deliveries_accepted,
            "acceptance_races_lost": self.acceptance_races_lost,
            "deliveries_completed": self.deliveries_completed,
            "deliveries_cancelled": self.deliveries_cancelled,
            "uptime_seconds": round(time.monotonic() - self.started_at, 1),
        }


_EVENT_COUNTERS = {
    constants.ORDER_CREATED: "orders_created",
    constants.ORDER_CONFIRMED: "orders_confirmed",
    constants.ORDER_DELIVERED: "orders_delivered",
    constants.ORDER_CANCELLED: "orders_cancelled",
    constants.PAYMENT_VERIFIED: "payments_verified",
    constants.PAYMENT_FAILED: "payments_failed",
    constants.DELIVERY_CREATED: "deliveries_created",
    constants.DELIVERY_ACCEPTED: "deliveries_accepted",
    constants.DELIVERY_COMPLETED: "deliveries_completed",
    constants.DELIVERY_CANCELLED: "deliveries_cancelled",
}

_RESETTABLE = list(_EVENT_COUNTERS.values()) + ["duplicate_confirmations", "acceptance_races_lost"]


# Singleton metrics instance
_metrics: FulfillmentMetrics | None = None


def get_fulfillment_metrics() -> FulfillmentMetrics:
    global _metrics
    if _metrics is None:
        _metrics = FulfillmentMetrics()
    return _metrics
