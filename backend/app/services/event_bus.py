"""
In-process event channels.

Each subscriber owns a bounded ``asyncio.Queue``. When a subscriber falls
behind, the channel's overflow policy decides what happens:

- ``drop_oldest``: discard the oldest queued item and enqueue the new one
- ``block``: the publisher waits until the subscriber has room
"""

import asyncio
import logging
from typing import Any, Generic, List, Optional, TypeVar

logger = logging.getLogger(__name__)

T = TypeVar("T")

OVERFLOW_DROP_OLDEST = "drop_oldest"
OVERFLOW_BLOCK = "block"

REFUND_STATUS_CHANGED = "refund_status_changed"
CANCELLATION_PROGRESS = "cancellation_progress"
CANCELLATION_STATUS_CHANGED = "cancellation_status_changed"


class Subscription(Generic[T]):
    """A subscriber's view of a channel. Iterate it to receive items."""

    def __init__(self, channel: "EventChannel[T]", maxsize: int):
        self._channel = channel
        self._queue: asyncio.Queue = asyncio.Queue(maxsize=maxsize)
        self.dropped = 0
        self.closed = False

    @property
    def pending(self) -> int:
        return self._queue.qsize()

    async def get(self) -> T:
        return await self._queue.get()

    def get_nowait(self) -> Optional[T]:
        """Return the next queued item, or None when nothing is queued."""
        try:
            return self._queue.get_nowait()
        except asyncio.QueueEmpty:
            return None

    def drain(self) -> List[T]:
        """Return everything currently queued."""
        items = []
        while not self._queue.empty():
            items.append(self._queue.get_nowait())
        return items

    def close(self) -> None:
        if not self.closed:
            self.closed = True
            self._channel._unsubscribe(self)

    def __aiter__(self):
        return self

    async def __anext__(self) -> T:
        if self.closed and self._queue.empty():
            raise StopAsyncIteration
        return await self._queue.get()

    async def _deliver(self, item: T, overflow: str) -> None:
        if overflow == OVERFLOW_BLOCK:
            await self._queue.put(item)
            return

        while True:
            try:
                self._queue.put_nowait(item)
                return
            except asyncio.QueueFull:
                self._queue.get_nowait()
                self.dropped += 1


class EventChannel(Generic[T]):
    """Named fan-out channel with bounded per-subscriber queues."""

    def __init__(self, name: str, maxsize: int = 100, overflow: str = OVERFLOW_DROP_OLDEST):
        if overflow not in (OVERFLOW_DROP_OLDEST, OVERFLOW_BLOCK):
            raise ValueError(f"Unknown overflow policy: {overflow}")
        if maxsize < 1:
            raise ValueError("Channel queue size must be at least 1")
        self.name = name
        self.maxsize = maxsize
        self.overflow = overflow
        self._subscribers: List[Subscription[T]] = []

    @property
    def subscriber_count(self) -> int:
        return len(self._subscribers)

    def subscribe(self) -> Subscription[T]:
        subscription: Subscription[T] = Subscription(self, self.maxsize)
        self._subscribers.append(subscription)
        return subscription

    def _unsubscribe(self, subscription: Subscription[T]) -> None:
        if subscription in self._subscribers:
            self._subscribers.remove(subscription)

    async def publish(self, item: T) -> None:
        for subscription in list(self._subscribers):
            before = subscription.dropped
            await subscription._deliver(item, self.overflow)
            if subscription.dropped > before:
                logger.debug(f"Channel {self.name}: subscriber lagging, dropped oldest item")


class EventBus:
    """Holds the channels the refund core publishes on."""

    def __init__(self, maxsize: int = 100, overflow: str = OVERFLOW_DROP_OLDEST):
        self.refund_status_changed: EventChannel[Any] = EventChannel(REFUND_STATUS_CHANGED, maxsize, overflow)
        self.cancellation_progress: EventChannel[Any] = EventChannel(CANCELLATION_PROGRESS, maxsize, overflow)
        self.cancellation_status_changed: EventChannel[Any] = EventChannel(
            CANCELLATION_STATUS_CHANGED, maxsize, overflow
        )

    def channel(self, name: str) -> EventChannel:
        channels = {
            REFUND_STATUS_CHANGED: self.refund_status_changed,
            CANCELLATION_PROGRESS: self.cancellation_progress,
            CANCELLATION_STATUS_CHANGED: self.cancellation_status_changed,
        }
        if name not in channels:
            raise KeyError(f"Unknown channel: {name}")
        return channels[name]
