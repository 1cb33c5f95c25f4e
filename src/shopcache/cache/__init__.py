"""Storefront caching layer.

Provides:
- KeyValueCache: TTL and schema-versioned entries over memory, durable and
  session backends, with memory fallback on storage failure
- ImageCache: single-flight, size-capped image preloading with priority tiers
- ChangeInvalidationBus: cross-session invalidation driven by admin writes
  and change-data-capture streams

Key naming convention: cache_{logical_key}
"""

from shopcache.cache.backends import (
    BackendKind,
    FileBackend,
    MemoryBackend,
    RedisBackend,
    SessionBackend,
    StorageBackend,
    create_backends,
)
from shopcache.cache.entry import CacheEntry
from shopcache.cache.images import (
    ImageCache,
    ImageCacheRecord,
    ImageCacheStats,
    ImageEncoding,
    Priority,
    format_bytes,
)
from shopcache.cache.invalidation import BusStatus, ChangeInvalidationBus, Subscription
from shopcache.cache.keys import (
    RELATED_CACHE_KEYS,
    RESOURCE_CACHE_KEYS,
    CacheDurations,
    CacheKeys,
)
from shopcache.cache.store import CacheStats, KeyValueCache

__all__ = [
    # Keys
    "CacheKeys",
    "CacheDurations",
    "RESOURCE_CACHE_KEYS",
    "RELATED_CACHE_KEYS",
    # Storage
    "CacheEntry",
    "BackendKind",
    "StorageBackend",
    "MemoryBackend",
    "FileBackend",
    "SessionBackend",
    "RedisBackend",
    "create_backends",
    "KeyValueCache",
    "CacheStats",
    # Images
    "ImageCache",
    "ImageCacheRecord",
    "ImageCacheStats",
    "ImageEncoding",
    "Priority",
    "format_bytes",
    # Invalidation
    "ChangeInvalidationBus",
    "Subscription",
    "BusStatus",
]
