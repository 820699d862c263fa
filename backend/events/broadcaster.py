"""
Event Broadcaster — topic-scoped pub/sub for analysis and conflict events.

Implementations:
  - InMemoryBroadcaster: single-process fan-out over asyncio queues
  - RedisBroadcaster: cross-process fan-out over Redis pub/sub

Publishers call publish() after the state change it describes has been
committed. Each subscription sees events from one publisher in publish order.
"""

import asyncio
from abc import ABC, abstractmethod
from functools import lru_cache
from typing import Any

import redis.asyncio as aioredis
import structlog

from core.config import get_settings
from core.errors import DependencyFailure
from events.contracts import Event, EventName

logger = structlog.get_logger()

_CLOSED = object()


class Subscription(ABC):
    """Cancellable handle returned by subscribe(); async-iterable over events."""

    def __init__(self, topics: tuple[str, ...]):
        self.topics = topics
        self.cancelled = False

    @abstractmethod
    async def get(self, timeout: float | None = None) -> Event:
        """Wait for the next event. Raises asyncio.TimeoutError on timeout."""
        ...

    @abstractmethod
    async def cancel(self) -> None: ...

    def __aiter__(self):
        return self

    async def __anext__(self) -> Event:
        if self.cancelled:
            raise StopAsyncIteration
        try:
            return await self.get()
        except LookupError:
            raise StopAsyncIteration from None


class EventBroadcaster(ABC):
    @abstractmethod
    async def publish(self, topic: str, name: EventName, payload: dict[str, Any]) -> int:
        """Publish one event; returns the number of subscribers reached."""
        ...

    @abstractmethod
    async def subscribe(self, *topics: str) -> Subscription: ...

    async def close(self) -> None:
        return None


# ──────────────────────────────────────────────────────────────────────────
# In-process
# ──────────────────────────────────────────────────────────────────────────


class _MemorySubscription(Subscription):
    def __init__(self, broker: "InMemoryBroadcaster", topics: tuple[str, ...]):
        super().__init__(topics)
        self._broker = broker
        self._queue: asyncio.Queue = asyncio.Queue()

    def _deliver(self, event: Event) -> None:
        self._queue.put_nowait(event)

    async def get(self, timeout: float | None = None) -> Event:
        if timeout is None:
            item = await self._queue.get()
        else:
            item = await asyncio.wait_for(self._queue.get(), timeout)
        if item is _CLOSED:
            raise LookupError("subscription cancelled")
        return item

    def pending(self) -> list[Event]:
        """Drain events already delivered without waiting."""
        drained = []
        while not self._queue.empty():
            item = self._queue.get_nowait()
            if item is not _CLOSED:
                drained.append(item)
        return drained

    async def cancel(self) -> None:
        if self.cancelled:
            return
        self.cancelled = True
        self._broker._remove(self)
        self._queue.put_nowait(_CLOSED)


class InMemoryBroadcaster(EventBroadcaster):
    def __init__(self):
        self._subscribers: dict[str, list[_MemorySubscription]] = {}

    async def publish(self, topic: str, name: EventName, payload: dict[str, Any]) -> int:
        event = Event(name=name, topic=topic, payload=payload)
        subscribers = list(self._subscribers.get(topic, []))
        for subscription in subscribers:
            subscription._deliver(event)
        logger.debug("events.published", topic=topic, event=name.value, subscribers=len(subscribers))
        return len(subscribers)

    async def subscribe(self, *topics: str) -> Subscription:
        subscription = _MemorySubscription(self, tuple(topics))
        for topic in topics:
            self._subscribers.setdefault(topic, []).append(subscription)
        return subscription

    def _remove(self, subscription: _MemorySubscription) -> None:
        for topic in subscription.topics:
            remaining = [s for s in self._subscribers.get(topic, []) if s is not subscription]
            if remaining:
                self._subscribers[topic] = remaining
            else:
                self._subscribers.pop(topic, None)


# ──────────────────────────────────────────────────────────────────────────
# Redis pub/sub
# ──────────────────────────────────────────────────────────────────────────


class _RedisSubscription(Subscription):
    def __init__(self, pubsub, topics: tuple[str, ...]):
        super().__init__(topics)
        self._pubsub = pubsub

    async def get(self, timeout: float | None = None) -> Event:
        async def _next() -> Event:
            while True:
                if self.cancelled:
                    raise LookupError("subscription cancelled")
                message = await self._pubsub.get_message(ignore_subscribe_messages=True, timeout=1.0)
                if message is None or message["type"] != "message":
                    continue
                data = message["data"]
                return Event.from_message(data.decode() if isinstance(data, bytes) else data)

        if timeout is None:
            return await _next()
        return await asyncio.wait_for(_next(), timeout)

    async def cancel(self) -> None:
        if self.cancelled:
            return
        self.cancelled = True
        await self._pubsub.unsubscribe()
        await self._pubsub.aclose()


class RedisBroadcaster(EventBroadcaster):
    def __init__(self, redis_url: str, channel_prefix: str = ""):
        self._redis = aioredis.from_url(redis_url)
        self._prefix = channel_prefix

    def _channel(self, topic: str) -> str:
        return f"{self._prefix}{topic}"

    async def publish(self, topic: str, name: EventName, payload: dict[str, Any]) -> int:
        event = Event(name=name, topic=topic, payload=payload)
        try:
            subscribers = await self._redis.publish(self._channel(topic), event.to_message())
        except aioredis.RedisError as exc:
            raise DependencyFailure(f"Event publish failed: {exc}", topic=topic, event=name.value) from exc
        logger.debug("events.published", topic=topic, event=name.value, subscribers=subscribers)
        return subscribers

    async def subscribe(self, *topics: str) -> Subscription:
        pubsub = self._redis.pubsub()
        await pubsub.subscribe(*(self._channel(t) for t in topics))
        return _RedisSubscription(pubsub, tuple(topics))

    async def close(self) -> None:
        await self._redis.aclose()


def build_broadcaster(settings) -> EventBroadcaster:
    if settings.event_backend == "memory":
        return InMemoryBroadcaster()
    return RedisBroadcaster(settings.redis_url, settings.event_channel_prefix)


@lru_cache
def get_broadcaster() -> EventBroadcaster:
    """Process-wide broadcaster selected by ``event_backend``."""
    return build_broadcaster(get_settings())
