"""Runtime wiring for invalidation transports."""

from __future__ import annotations

import logging

from shopcache.config import Settings
from shopcache.events.changes import ChangeFeed, InMemoryChangeFeed, RedisStreamChangeFeed
from shopcache.events.channel import (
    BroadcastChannel,
    InMemoryBroadcastChannel,
    InMemoryBroadcastHub,
    RedisBroadcastChannel,
)

logger = logging.getLogger(__name__)

_MEMORY_NAMES = {"memory", "inmemory", "in_memory"}


def create_broadcast_channel(
    settings: Settings, hub: InMemoryBroadcastHub | None = None
) -> BroadcastChannel:
    """Create a broadcast channel based on configuration."""
    backend = settings.transport_backend.lower()

    if backend in _MEMORY_NAMES:
        return InMemoryBroadcastChannel(hub)

    if backend == "redis":
        return RedisBroadcastChannel(url=settings.redis_url)

    raise ValueError("Unsupported transport_backend. Supported values: memory, redis.")


def create_change_feed(settings: Settings) -> ChangeFeed:
    """Create a change feed based on configuration."""
    backend = settings.transport_backend.lower()

    if backend in _MEMORY_NAMES:
        return InMemoryChangeFeed()

    if backend == "redis":
        return RedisStreamChangeFeed(
            url=settings.redis_url,
            stream_prefix=settings.change_stream_prefix,
            block_ms=settings.change_stream_block_ms,
        )

    raise ValueError("Unsupported transport_backend. Supported values: memory, redis.")
