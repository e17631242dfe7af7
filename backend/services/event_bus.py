"""
Fulfillment Event Bus - in-process publish hook for post-transition events.

Services publish named events ("order.created", "delivery.completed", ...)
after their transaction commits. Delivery to subscribers is best-effort and
out-of-band:

    - publish() only enqueues; it never blocks and never raises
    - a background asyncio task dispatches to subscribers
    - each subscriber call is bounded by EVENT_HANDLER_TIMEOUT_SECONDS
    - subscriber errors are logged and counted, never propagated

Notifications, leaderboard recomputation, etc. are advisory; they cannot
roll back or delay the originating state transition.
"""
import asyncio
import inspect
import logging
from collections import defaultdict
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Awaitable, Callable, Optional, Union

from config import settings

logger = logging.getLogger(__name__)

WILDCARD = "*"


@dataclass(frozen=True)
class FulfillmentEvent:
    name: str
    payload: dict
    occurred_at: datetime = field(default_factory=datetime.utcnow)


Handler = Callable[[FulfillmentEvent], Union[None, Awaitable[None]]]


class FulfillmentEventBus:
    """Bounded in-memory queue plus one dispatcher task."""

    def __init__(self, queue_size: int | None = None, handler_timeout: float | None = None):
        self._queue_size = queue_size or settings.event_queue_size
        self._handler_timeout = handler_timeout or settings.event_handler_timeout_seconds
        self._subscribers: dict[str, list[Handler]] = defaultdict(list)
        self._queue: Optional[asyncio.Queue] = None
        self._worker: Optional[asyncio.Task] = None
        self.published_count = 0
        self.dispatched_count = 0
        self.dropped_count = 0
        self.failed_count = 0

    # ── Subscription ───────────────────────────────────────────────

    def subscribe(self, event_name: str, handler: Handler) -> None:
        """Register a handler for one event name, or "*" for every event."""
        self._subscribers[event_name].append(handler)

    def unsubscribe(self, event_name: str, handler: Handler) -> None:
        handlers = self._subscribers.get(event_name, [])
        if handler in handlers:
            handlers.remove(handler)

    def clear_subscribers(self) -> None:
        self._subscribers.clear()

    # ── Publishing ─────────────────────────────────────────────────

    def _get_queue(self) -> asyncio.Queue:
        if self._queue is None:
            self._queue = asyncio.Queue(maxsize=self._queue_size)
        return self._queue

    def publish(self, event_name: str, payload: dict[str, Any]) -> None:
        """Enqueue an event. Overflow is dropped with a warning."""
        event = FulfillmentEvent(name=event_name, payload=payload)
        try:
            self._get_queue().put_nowait(event)
            self.published_count += 1
        except asyncio.QueueFull:
            self.dropped_count += 1
            logger.warning(f"Event queue full, dropping {event_name}")

    # ── Dispatch ───────────────────────────────────────────────────

    async def _call(self, handler: Handler, event: FulfillmentEvent) -> None:
        try:
            result = handler(event)
            if inspect.isawaitable(result):
                await asyncio.wait_for(result, timeout=self._handler_timeout)
        except asyncio.TimeoutError:
            self.failed_count += 1
            logger.warning(
                f"Subscriber {getattr(handler, '__name__', handler)!s} timed out on {event.name}"
            )
        except Exception as e:
            self.failed_count += 1
            logger.error(
                f"Subscriber {getattr(handler, '__name__', handler)!s} failed on {event.name}: {e}",
                exc_info=True,
            )

    async def _dispatch(self, event: FulfillmentEvent) -> None:
        handlers = list(self._subscribers.get(event.name, [])) + list(self._subscribers.get(WILDCARD, []))
        for handler in handlers:
            await self._call(handler, event)
        self.dispatched_count += 1

    async def drain(self) -> int:
        """Dispatch everything currently queued. Returns the number of events handled."""
        queue = self._get_queue()
        handled = 0
        while not queue.empty():
            event = queue.get_nowait()
            try:
                await self._dispatch(event)
            finally:
                queue.task_done()
            handled += 1
        return handled

    async def _worker_loop(self) -> None:
        queue = self._get_queue()
        while True:
            event = await queue.get()
            try:
                await self._dispatch(event)
            except asyncio.CancelledError:
                raise
            except Exception as e:
                logger.error(f"Event dispatch error for {event.name}: {e}")
            finally:
                queue.task_done()

    # ── Lifecycle ──────────────────────────────────────────────────

    @property
    def running(self) -> bool:
        return self._worker is not None and not self._worker.done()

    async def start(self) -> None:
        """Start the dispatcher as a background asyncio task."""
        if self.running:
            logger.warning("Event bus already running")
            return
        # Fresh queue bound to the running loop; carry over anything still pending
        previous = self._queue
        self._queue = asyncio.Queue(maxsize=self._queue_size)
        if previous is not None:
            while not previous.empty():
                self._queue.put_nowait(previous.get_nowait())
        self._worker = asyncio.create_task(self._worker_loop())
        logger.info("Fulfillment event bus started")

    async def stop(self) -> None:
        """Cancel the dispatcher, then deliver whatever is still queued."""
        if self._worker and not self._worker.done():
            self._worker.cancel()
            try:
                await self._worker
            except asyncio.CancelledError:
                pass
        self._worker = None
        remaining = await self.drain()
        if remaining:
            logger.info(f"Event bus drained {remaining} event(s) on shutdown")
        logger.info("Fulfillment event bus stopped")

    def get_status(self) -> dict:
        return {
            "running": self.running,
            "queued": self._queue.qsize() if self._queue is not None else 0,
            "published": self.published_count,
            "dispatched": self.dispatched_count,
            "dropped": self.dropped_count,
            "subscriberFailures": self.failed_count,
            "subscriptions": {name: len(h) for name, h in self._subscribers.items() if h},
        }


# Process-wide bus
event_bus = FulfillmentEventBus()


def publish(event_name: str, payload: dict[str, Any]) -> None:
    """Publish on the process-wide bus."""
    event_bus.publish(event_name, payload)
