"""
Tests for the fulfillment event bus and its default subscribers.
"""
import asyncio

import pytest

from domain import constants
from services.event_bus import FulfillmentEvent, FulfillmentEventBus, WILDCARD
from services.fulfillment_metrics import FulfillmentMetrics
from services.notification_hooks import build_notifications, register_default_subscribers


@pytest.mark.asyncio
async def test_publish_only_enqueues():
    bus = FulfillmentEventBus(queue_size=10)
    seen = []
    bus.subscribe(constants.ORDER_CREATED, seen.append)

    bus.publish(constants.ORDER_CREATED, {"id": 1})
    assert seen == []

    assert await bus.drain() == 1
    assert [e.payload["id"] for e in seen] == [1]


@pytest.mark.asyncio
async def test_overflow_is_dropped_not_raised():
    bus = FulfillmentEventBus(queue_size=2)
    for i in range(5):
        bus.publish(constants.ORDER_CREATED, {"id": i})

    assert bus.published_count == 2
    assert bus.dropped_count == 3


@pytest.mark.asyncio
async def test_failing_subscriber_does_not_stop_others():
    bus = FulfillmentEventBus(queue_size=10)
    seen = []

    def broken(event):
        raise RuntimeError("push provider down")

    bus.subscribe(constants.DELIVERY_COMPLETED, broken)
    bus.subscribe(constants.DELIVERY_COMPLETED, seen.append)
    bus.publish(constants.DELIVERY_COMPLETED, {"id": 9})
    await bus.drain()

    assert len(seen) == 1
    assert bus.failed_count == 1


@pytest.mark.asyncio
async def test_slow_subscriber_is_timed_out():
    bus = FulfillmentEventBus(queue_size=10, handler_timeout=0.05)

    async def slow(event):
        await asyncio.sleep(1)

    bus.subscribe(constants.ORDER_CONFIRMED, slow)
    bus.publish(constants.ORDER_CONFIRMED, {"id": 1})
    await bus.drain()

    assert bus.failed_count == 1


@pytest.mark.asyncio
async def test_wildcard_receives_every_event():
    bus = FulfillmentEventBus(queue_size=10)
    names = []
    bus.subscribe(WILDCARD, lambda e: names.append(e.name))

    bus.publish(constants.ORDER_CREATED, {})
    bus.publish(constants.PAYMENT_VERIFIED, {})
    await bus.drain()

    assert names == [constants.ORDER_CREATED, constants.PAYMENT_VERIFIED]


@pytest.mark.asyncio
async def test_worker_dispatches_in_background():
    bus = FulfillmentEventBus(queue_size=10)
    delivered = asyncio.Event()

    async def handler(event):
        delivered.set()

    bus.subscribe(constants.ORDER_DELIVERED, handler)
    await bus.start()
    try:
        assert bus.running
        bus.publish(constants.ORDER_DELIVERED, {"id": 3})
        await asyncio.wait_for(delivered.wait(), timeout=1)
    finally:
        await bus.stop()
    assert not bus.running


@pytest.mark.asyncio
async def test_stop_drains_pending_events():
    bus = FulfillmentEventBus(queue_size=10)
    seen = []
    bus.subscribe(constants.ORDER_CANCELLED, seen.append)

    await bus.start()
    await bus.stop()
    bus.publish(constants.ORDER_CANCELLED, {"id": 5})
    await bus.stop()

    assert len(seen) == 1


@pytest.mark.asyncio
async def test_default_subscribers_count_and_notify():
    bus = FulfillmentEventBus(queue_size=10)
    sent = []
    register_default_subscribers(bus, sender=lambda *msg: sent.append(msg))

    bus.publish(
        constants.ORDER_CONFIRMED,
        {"id": 1, "order_number": "ORD-1-ABCDE", "buyer_id": "10001001", "seller_id": "20002001"},
    )
    await bus.drain()

    assert [recipient for recipient, _, _ in sent] == ["10001001", "20002001"]


def test_metrics_count_by_event_name():
    metrics = FulfillmentMetrics()
    metrics.record_event(FulfillmentEvent(name=constants.DELIVERY_ACCEPTED, payload={}))
    metrics.record_event(FulfillmentEvent(name="unknown.event", payload={}))
    metrics.record_race_lost()

    data = metrics.to_dict()
    assert data["deliveries_accepted"] == 1
    assert data["acceptance_races_lost"] == 1


def test_unmapped_events_produce_no_notifications():
    assert build_notifications(FulfillmentEvent(name=constants.PAYMENT_VERIFIED, payload={})) == []
