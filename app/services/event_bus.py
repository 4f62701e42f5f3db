"""
In-process publish/subscribe for domain events.

Writers publish synchronously and return immediately; each subscriber owns an
unbounded queue on its own event loop and pulls at its own pace. Nothing is
persisted: events published while nobody listens on a topic are dropped, and
a closed subscription loses whatever was still queued.

Publishers may run on a threadpool worker (sync endpoints) while subscribers
live on an event loop, so delivery is handed to each subscriber's loop with
``call_soon_threadsafe``.
"""
import asyncio
import logging
import threading
from collections import defaultdict
from typing import Any, Dict, Set

logger = logging.getLogger(__name__)

MESSAGE_ADDED = "message_added"
GROUP_ADDED = "group_added"

_CLOSED = object()


class EventSubscription:
    """
    Async iterator over events published to one topic.

    Closing the subscription detaches it from the bus and ends iteration.
    """

    def __init__(self, bus: "EventBus", topic: str):
        self.bus = bus
        self.topic = topic
        self._loop = asyncio.get_running_loop()
        self._queue: asyncio.Queue = asyncio.Queue()
        self.closed = False

    def _deliver(self, payload: Any) -> None:
        # Runs on the subscriber's loop
        if not self.closed:
            self._queue.put_nowait(payload)

    def push(self, payload: Any) -> None:
        """Hand an event to this subscriber from any thread."""
        try:
            self._loop.call_soon_threadsafe(self._deliver, payload)
        except RuntimeError:
            # Loop already closed; the channel is gone
            self.bus.unsubscribe(self)

    def __aiter__(self):
        return self

    async def __anext__(self) -> Any:
        if self.closed:
            raise StopAsyncIteration
        payload = await self._queue.get()
        if payload is _CLOSED:
            raise StopAsyncIteration
        return payload

    def close(self) -> None:
        """Unsubscribe and wake any pending consumer."""
        if self.closed:
            return
        self.bus.unsubscribe(self)
        self.closed = True
        try:
            self._loop.call_soon_threadsafe(self._queue.put_nowait, _CLOSED)
        except RuntimeError:
            # Loop already closed; nothing left to wake
            logger.debug(f"Closed subscription on {self.topic} after its loop stopped")


class EventBus:
    """Topic-keyed fan-out of events to live subscriptions."""

    def __init__(self):
        self._subscribers: Dict[str, Set[EventSubscription]] = defaultdict(set)
        self._lock = threading.Lock()

    def subscribe(self, topic: str) -> EventSubscription:
        """
        Start receiving events for a topic.

        Must be called from a running event loop; events are delivered to
        that loop.
        """
        subscription = EventSubscription(self, topic)
        with self._lock:
            self._subscribers[topic].add(subscription)
        logger.debug(f"Subscribed to topic {topic} ({self.subscriber_count(topic)} subscribers)")
        return subscription

    def unsubscribe(self, subscription: EventSubscription) -> None:
        with self._lock:
            subscribers = self._subscribers.get(subscription.topic)
            if subscribers is not None:
                subscribers.discard(subscription)
                if not subscribers:
                    del self._subscribers[subscription.topic]

    def publish(self, topic: str, payload: Any) -> int:
        """
        Fan an event out to every current subscriber of the topic.

        Args:
            topic: Topic name (e.g. MESSAGE_ADDED)
            payload: Event object, shared by all subscribers and not copied

        Returns:
            Number of subscriptions the event was handed to
        """
        with self._lock:
            targets = list(self._subscribers.get(topic, ()))
        for subscription in targets:
            subscription.push(payload)
        logger.debug(f"Published {topic} to {len(targets)} subscribers")
        return len(targets)

    def subscriber_count(self, topic: str) -> int:
        with self._lock:
            return len(self._subscribers.get(topic, ()))


# Global event bus instance
event_bus = EventBus()
