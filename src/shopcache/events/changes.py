"""Change-data-capture feeds for watched backend resources.

A change feed reports insert/update/delete events per resource so caches
can be invalidated even for writes that never went through the admin
console:
- InMemoryChangeFeed: emit() fans out to subscribers (tests, single process)
- RedisStreamChangeFeed: one Redis Stream per resource, tailed with XREAD

Writers (a DB trigger relay, a CDC connector, or the admin service itself)
append to the stream with publish_change().
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
from shopcache.events.channel import ChannelSubscription
from shopcache.events.schemas import ChangeEvent

if TYPE_CHECKING:
    from redis.asyncio import Redis

logger = logging.getLogger(__name__)

ChangeHandler = Callable[[ChangeEvent], Awaitable[None]]

# Stream configuration
STREAM_PREFIX = "shopcache:changes"
BATCH_SIZE = 10
BLOCK_MS = 1000  # Block for 1 second when waiting for changes
MAX_STREAM_LENGTH = 10000


class ChangeFeed(ABC):
    """Abstract change feed interface."""

    @abstractmethod
    async def subscribe(self, resource: str, handler: ChangeHandler) -> ChannelSubscription:
        """Receive every change made to a resource.

        Raises:
            TransportFailure: If the subscription could not be established
        """
        ...

    @abstractmethod
    async def close(self) -> None:
        """Stop every subscription."""
        ...


class InMemoryChangeFeed(ChangeFeed):
    """In-process change feed driven by emit()."""

    def __init__(self) -> None:
        self._handlers: dict[str, list[ChangeHandler]] = {}

    async def subscribe(self, resource: str, handler: ChangeHandler) -> ChannelSubscription:
        self._handlers.setdefault(resource, []).append(handler)

        async def _unsubscribe() -> None:
            handlers = self._handlers.get(resource, [])
            if handler in handlers:
                handlers.remove(handler)

        return ChannelSubscription(resource, _unsubscribe)

    def subscriber_count(self, resource: str) -> int:
        return len(self._handlers.get(resource, []))

    async def emit(self, event: ChangeEvent) -> int:
        """Deliver a change to the subscribers of its resource. Returns the count."""
        handlers = list(self._handlers.get(event.resource, []))
        for handler in handlers:
            try:
                await handler(event)
            except Exception:
                logger.exception(f"Change handler for {event.resource} failed")
        return len(handlers)

    async def close(self) -> None:
        self._handlers.clear()


class RedisStreamChangeFeed(ChangeFeed):
    """Change feed backed by Redis Streams.

    Each resource has its own stream ({prefix}:{resource}). Subscribers tail
    it from the moment they subscribe; history is not replayed, so a session
    only hears about changes made while it is watching.

    Example:
        feed = RedisStreamChangeFeed(url="redis://localhost:6379/0")
        await feed.subscribe("menu_items", handle_change)

        # Elsewhere, after writing to the database
        await feed.publish_change(ChangeEvent(ChangeType.UPDATE, "menu_items", row))
    """

    def __init__(
        self,
        client: Redis | None = None,
        url: str = "redis://localhost:6379/0",
        stream_prefix: str = STREAM_PREFIX,
        block_ms: int = BLOCK_MS,
    ):
        self._redis = client
        self._owns_client = client is None
        self._url = url
        self.stream_prefix = stream_prefix
        self.block_ms = block_ms
        self._tasks: dict[ChannelSubscription, asyncio.Task[None]] = {}

    async def _get_redis(self) -> Redis:
        """Get Redis client, creating it on first use."""
        if self._redis is None:
            self._redis = redis.from_url(self._url, decode_responses=False)
        return self._redis

    def stream_name(self, resource: str) -> str:
        return f"{self.stream_prefix}:{resource}"

    async def publish_change(self, event: ChangeEvent) -> str:
        """Append a change to its resource stream. Returns the stream entry ID."""
        try:
            client = await self._get_redis()
            message_id = await client.xadd(
                self.stream_name(event.resource),
                {"data": event.to_bytes()},
                maxlen=MAX_STREAM_LENGTH,
                approximate=True,
            )
        except (RedisError, OSError) as e:
            raise TransportFailure(self.stream_name(event.resource), str(e)) from e
        return message_id.decode() if isinstance(message_id, bytes) else str(message_id)

    async def subscribe(self, resource: str, handler: ChangeHandler) -> ChannelSubscription:
        stream = self.stream_name(resource)
        try:
            client = await self._get_redis()
            # Start after the newest entry present right now
            latest = await client.xrevrange(stream, count=1)
        except (RedisError, OSError) as e:
            raise TransportFailure(stream, str(e)) from e

        last_id: bytes | str = latest[0][0] if latest else "0-0"

        async def _unsubscribe() -> None:
            task = self._tasks.pop(subscription, None)
            if task is not None:
                task.cancel()
                try:
                    await task
                except asyncio.CancelledError:
                    pass

        subscription = ChannelSubscription(resource, _unsubscribe)
        self._tasks[subscription] = asyncio.create_task(
            self._tail_loop(client, stream, last_id, handler)
        )
        logger.info(f"Watching change stream {stream}")
        return subscription

    async def _tail_loop(
        self,
        client: Redis,
        stream: str,
        last_id: bytes | str,
        handler: ChangeHandler,
    ) -> None:
        """Read new stream entries and hand them to the handler."""
        while True:
            try:
                messages = await client.xread(
                    streams={stream: last_id},
                    count=BATCH_SIZE,
                    block=self.block_ms,
                )

                if not messages:
                    continue

                for _stream_name, entries in messages:
                    for message_id, message_data in entries:
                        last_id = message_id
                        await self._process_entry(stream, message_id, message_data, handler)

            except asyncio.CancelledError:
                break
            except Exception as e:
                logger.error(f"Error tailing change stream {stream}: {e}")
                await asyncio.sleep(1)  # Back off on error

    async def _process_entry(
        self,
        stream: str,
        message_id: bytes | str,
        message_data: dict[bytes, bytes],
        handler: ChangeHandler,
    ) -> None:
        data = message_data.get(b"data")
        if not data:
            logger.warning(f"Change {message_id!r} on {stream} has no data field")
            return

        try:
            event = ChangeEvent.from_bytes(data)
        except ValueError as e:
            logger.error(f"Failed to parse change {message_id!r} on {stream}: {e}")
            return

        try:
            await handler(event)
        except Exception:
            logger.exception(f"Change handler for {stream} failed")

    async def close(self) -> None:
        for subscription in list(self._tasks):
            await subscription.unsubscribe()

        if self._owns_client and self._redis is not None:
            await self._redis.aclose()
            self._redis = None
