"""
Publish/subscribe channel.

DispatchChannel is the interface services depend on: publish(topic, event)
and subscribe(topic) returning an async iterator. LocalDispatchChannel is the
in-process implementation: each subscription owns an unbounded asyncio.Queue
and publish() fans an event out to every live subscription on its topic.

Delivery is at-least-once from the consumer's point of view (a reconnecting
remote client may see an event twice), so consumers dedupe by order id.
"""

import asyncio
import logging
from abc import ABC, abstractmethod
from typing import AsyncIterator, Dict, Set, Optional

from .events import Event

log = logging.getLogger(__name__)

_CLOSED = object()


class Subscription:
    """Async iterator over the events published to one topic."""

    def __init__(self, channel: "LocalDispatchChannel", topic: str):
        self.channel = channel
        self.topic = topic
        self.queue: asyncio.Queue = asyncio.Queue()
        self.closed = False

    def put(self, event: Event):
        if not self.closed:
            self.queue.put_nowait(event)

    def close(self):
        if not self.closed:
            self.closed = True
            self.queue.put_nowait(_CLOSED)
            self.channel._remove(self)

    async def get(self, timeout: Optional[float] = None) -> Event:
        """Next event. Raises StopAsyncIteration once closed."""
        if timeout is None:
            item = await self.queue.get()
        else:
            item = await asyncio.wait_for(self.queue.get(), timeout)
        if item is _CLOSED:
            raise StopAsyncIteration
        return item

    def __aiter__(self):
        return self

    async def __anext__(self) -> Event:
        return await self.get()


class DispatchChannel(ABC):

    @abstractmethod
    async def publish(self, topic: str, event: Event) -> int:
        """Deliver `event` to the subscribers of `topic`. Returns the fan-out."""

    @abstractmethod
    def subscribe(self, topic: str) -> AsyncIterator[Event]:
        """Async iterator over the events published to `topic` from now on."""


class LocalDispatchChannel(DispatchChannel):
    """Topic-based fan-out within one process."""

    def __init__(self):
        self._subscriptions: Dict[str, Set[Subscription]] = {}

    def subscribe(self, topic: str) -> Subscription:
        subscription = Subscription(self, topic)
        self._subscriptions.setdefault(topic, set()).add(subscription)
        log.debug(f"Subscribed to {topic} ({len(self._subscriptions[topic])} subscribers)")
        return subscription

    def _remove(self, subscription: Subscription):
        subscribers = self._subscriptions.get(subscription.topic)
        if subscribers:
            subscribers.discard(subscription)

    async def publish(self, topic: str, event: Event) -> int:
        """Deliver `event` to every subscriber of `topic`. Returns the fan-out."""
        subscribers = list(self._subscriptions.get(topic, ()))
        for subscription in subscribers:
            subscription.put(event)
        log.debug(f"Published {event.EVENT} {event.order_id[:18]}... to {topic} "
                  f"({len(subscribers)} subscribers)")
        return len(subscribers)

    def close(self):
        for subscribers in list(self._subscriptions.values()):
            for subscription in list(subscribers):
                subscription.close()
