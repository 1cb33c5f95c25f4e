"""Broadcast channels for cache invalidation events.

Provides fire-and-forget pub/sub between sessions:
- InMemoryBroadcastChannel: sessions sharing one process (and tests)
- RedisBroadcastChannel: sessions spread across processes, via Redis Pub/Sub

Delivery is at-most-once with no ordering guarantee across subscribers.
Publishers see TransportFailure when a publish cannot be handed off;
nothing is retried.
"""

from __future__ import annotations

import asyncio
import logging
from abc import ABC, abstractmethod
from collections.abc import Awaitable, Callable
from typing import TYPE_CHECKING

import redis.asyncio as redis
from redis.exceptions import RedisError

from shopcache.errors import TransportFailure
from shopcache.events.schemas import InvalidationEvent

if TYPE_CHECKING:
    from redis.asyncio import Redis
    from redis.asyncio.client import PubSub

logger = logging.getLogger(__name__)

ChannelHandler = Callable[[InvalidationEvent], Awaitable[None]]


class ChannelSubscription:
    """Handle for one active subscription. Unsubscribing twice is safe."""

    def __init__(self, topic: str, unsubscribe: Callable[[], Awaitable[None]]):
        self.topic = topic
        self._unsubscribe = unsubscribe
        self._active = True

    @property
    def active(self) -> bool:
        return self._active

    async def unsubscribe(self) -> None:
        if not self._active:
            return
        self._active = False
        await self._unsubscribe()


def _handler_name(handler: Callable[..., object]) -> str:
    return getattr(handler, "__qualname__", handler.__class__.__name__)


class BroadcastChannel(ABC):
    """Abstract broadcast channel interface."""

    @abstractmethod
    async def publish(self, topic: str, event: InvalidationEvent) -> None:
        """Publish an event to every subscriber of a topic.

        Raises:
            TransportFailure: If the event could not be handed to the transport
        """
        ...

    @abstractmethod
    async def subscribe(self, topic: str, handler: ChannelHandler) -> ChannelSubscription:
        """Subscribe a handler to a topic.

        Raises:
            TransportFailure: If the subscription could not be established
        """
        ...

    @abstractmethod
    async def close(self) -> None:
        """Drop every subscription and release connections."""
        ...


class InMemoryBroadcastHub:
    """Fan-out point shared by in-memory channels.

    Every channel attached to the same hub receives the others' events, the
    way browser tabs sharing one realtime server would.
    """

    def __init__(self) -> None:
        self._subscribers: dict[str, list[ChannelHandler]] = {}

    def add(self, topic: str, handler: ChannelHandler) -> None:
        self._subscribers.setdefault(topic, []).append(handler)

    def discard(self, topic: str, handler: ChannelHandler) -> None:
        handlers = self._subscribers.get(topic, [])
        if handler in handlers:
            handlers.remove(handler)

    def subscriber_count(self, topic: str) -> int:
        return len(self._subscribers.get(topic, []))

    async def deliver(self, topic: str, data: bytes) -> int:
        """Hand encoded event bytes to every subscriber. Returns the count."""
        handlers = list(self._subscribers.get(topic, []))
        for handler in handlers:
            try:
                # Each subscriber decodes its own copy, as it would off the wire
                await handler(InvalidationEvent.from_bytes(data))
            except Exception:
                logger.exception(f"Broadcast handler {_handler_name(handler)} failed")
        return len(handlers)

    def channel(self) -> InMemoryBroadcastChannel:
        return InMemoryBroadcastChannel(self)


class InMemoryBroadcastChannel(BroadcastChannel):
    """In-process broadcast channel.

    Delivery runs inside publish(), so by the time publish returns every
    subscriber on the hub has handled the event.
    """

    def __init__(self, hub: InMemoryBroadcastHub | None = None):
        self.hub = hub or InMemoryBroadcastHub()
        self._subscriptions: list[ChannelSubscription] = []
        self._closed = False

    async def publish(self, topic: str, event: InvalidationEvent) -> None:
        if self._closed:
            raise TransportFailure(topic, "channel is closed")
        count = await self.hub.deliver(topic, event.to_bytes())
        logger.debug(f"Delivered invalidation {event.event_id} to {count} subscribers")

    async def subscribe(self, topic: str, handler: ChannelHandler) -> ChannelSubscription:
        if self._closed:
            raise TransportFailure(topic, "channel is closed")
        self.hub.add(topic, handler)

        async def _unsubscribe() -> None:
            self.hub.discard(topic, handler)

        subscription = ChannelSubscription(topic, _unsubscribe)
        self._subscriptions.append(subscription)
        return subscription

    async def close(self) -> None:
        for subscription in self._subscriptions:
            await subscription.unsubscribe()
        self._subscriptions.clear()
        self._closed = True


class RedisBroadcastChannel(BroadcastChannel):
    """Broadcast channel over Redis Pub/Sub.

    A single PubSub connection carries every subscribed topic; a listener
    task dispatches incoming messages to the handlers of their topic.

    Example:
        channel = RedisBroadcastChannel(url="redis://localhost:6379/0")
        await channel.subscribe("shopcache:cache_invalidation", handle)
        await channel.publish("shopcache:cache_invalidation", event)
        await channel.close()
    """

    def __init__(self, client: Redis | None = None, url: str = "redis://localhost:6379/0"):
        self._redis = client
        self._owns_client = client is None
        self._url = url
        self._handlers: dict[str, list[ChannelHandler]] = {}
        self._pubsub: PubSub | None = None
        self._task: asyncio.Task[None] | None = None
        self._running = False

    async def _get_redis(self) -> Redis:
        """Get Redis client, creating it on first use."""
        if self._redis is None:
            self._redis = redis.from_url(self._url, decode_responses=False)
        return self._redis

    async def publish(self, topic: str, event: InvalidationEvent) -> None:
        try:
            client = await self._get_redis()
            count = await client.publish(topic, event.to_bytes())
        except (RedisError, OSError) as e:
            raise TransportFailure(topic, str(e)) from e
        logger.debug(f"Published invalidation {event.event_id} to {count} subscribers")

    async def subscribe(self, topic: str, handler: ChannelHandler) -> ChannelSubscription:
        try:
            if self._pubsub is None:
                client = await self._get_redis()
                self._pubsub = client.pubsub()
            if topic not in self._handlers:
                await self._pubsub.subscribe(topic)
        except (RedisError, OSError) as e:
            raise TransportFailure(topic, str(e)) from e

        self._handlers.setdefault(topic, []).append(handler)
        logger.info(f"Subscribed {_handler_name(handler)} to {topic}")

        if not self._running:
            self._running = True
            self._task = asyncio.create_task(self._listen_loop())

        async def _unsubscribe() -> None:
            await self._remove_handler(topic, handler)

        return ChannelSubscription(topic, _unsubscribe)

    async def _remove_handler(self, topic: str, handler: ChannelHandler) -> None:
        handlers = self._handlers.get(topic, [])
        if handler in handlers:
            handlers.remove(handler)
        if handlers or topic not in self._handlers:
            return

        del self._handlers[topic]
        if self._pubsub is not None:
            try:
                await self._pubsub.unsubscribe(topic)
            except (RedisError, OSError) as e:
                logger.warning(f"Failed to unsubscribe from {topic}: {e}")

    async def _listen_loop(self) -> None:
        """Main loop for receiving broadcast messages."""
        while self._running and self._pubsub:
            try:
                message = await self._pubsub.get_message(
                    ignore_subscribe_messages=True,
                    timeout=1.0,
                )

                if message is None:
                    continue

                if message["type"] == "message":
                    await self._dispatch(message["channel"], message["data"])

            except asyncio.CancelledError:
                break
            except Exception as e:
                logger.error(f"Error in broadcast listener: {e}")
                await asyncio.sleep(1)

    async def _dispatch(self, channel: bytes | str, data: bytes) -> None:
        topic = channel.decode() if isinstance(channel, bytes) else channel
        try:
            event = InvalidationEvent.from_bytes(data)
        except ValueError as e:
            logger.error(f"Failed to parse broadcast message on {topic}: {e}")
            return

        for handler in list(self._handlers.get(topic, [])):
            try:
                await handler(event)
            except Exception:
                logger.exception(f"Broadcast handler {_handler_name(handler)} failed")

    async def close(self) -> None:
        self._running = False

        if self._task:
            self._task.cancel()
            try:
                await self._task
            except asyncio.CancelledError:
                pass
            self._task = None

        if self._pubsub is not None:
            try:
                await self._pubsub.unsubscribe()
                await self._pubsub.aclose()
            except (RedisError, OSError) as e:
                logger.warning(f"Error closing broadcast subscription: {e}")
            self._pubsub = None

        self._handlers.clear()

        if self._owns_client and self._redis is not None:
            await self._redis.aclose()
            self._redis = None

        logger.info("Closed broadcast channel")
