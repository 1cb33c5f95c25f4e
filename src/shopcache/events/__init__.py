"""Invalidation transports.

Two remote capabilities feed the invalidation bus:
- a broadcast channel carrying InvalidationEvents between sessions
- a change-data-capture feed reporting writes to watched resources

Each has an in-memory implementation for single-process use and tests, and
a Redis implementation (Pub/Sub and Streams) for multi-process deployments.
"""

from shopcache.events.changes import (
    ChangeFeed,
    ChangeHandler,
    InMemoryChangeFeed,
    RedisStreamChangeFeed,
)
from shopcache.events.channel import (
    BroadcastChannel,
    ChannelHandler,
    ChannelSubscription,
    InMemoryBroadcastChannel,
    InMemoryBroadcastHub,
    RedisBroadcastChannel,
)
from shopcache.events.runtime import create_broadcast_channel, create_change_feed
from shopcache.events.schemas import ChangeEvent, ChangeType, InvalidationEvent, Origin

__all__ = [
    # Event types
    "InvalidationEvent",
    "ChangeEvent",
    "ChangeType",
    "Origin",
    # Broadcast
    "BroadcastChannel",
    "ChannelHandler",
    "ChannelSubscription",
    "InMemoryBroadcastHub",
    "InMemoryBroadcastChannel",
    "RedisBroadcastChannel",
    "create_broadcast_channel",
    # Change data capture
    "ChangeFeed",
    "ChangeHandler",
    "InMemoryChangeFeed",
    "RedisStreamChangeFeed",
    "create_change_feed",
]
