"""Tiered key/value cache with TTL and schema-version semantics.

Wraps each value in a CacheEntry and stores it in one of three backends
(memory, durable, session). Reads check expiry and version lazily: a stale
entry is deleted the moment it is looked up, and a startup sweep clears
expired leftovers from stores that outlive the process.

Caching is an optimization, so storage problems never reach the caller:
- a failed write falls back to the memory backend
- a failed read is a miss (and an unreadable blob is removed)
- housekeeping (delete, clear, sweep) logs and carries on

Example:
    cache = KeyValueCache({BackendKind.MEMORY: MemoryBackend()})
    cache.set("menu_items", items, ttl=CacheDurations.SHORT)
    items = cache.get("menu_items")  # None once expired or invalidated
"""

from __future__ import annotations

import logging
import time
from collections.abc import Callable, Iterable, Mapping
from dataclasses import dataclass
from typing import Any, Literal, TypeVar

from shopcache.cache.backends import BackendKind, MemoryBackend, StorageBackend
from shopcache.cache.entry import CacheEntry
from shopcache.cache.keys import CacheDurations, CacheKeys
from shopcache.errors import Outcome, StorageFailure
from shopcache.observability.metrics import MetricsRegistry

logger = logging.getLogger(__name__)

T = TypeVar("T")

BackendSelector = BackendKind | str | None
ClearScope = BackendKind | str | Literal["all"]

DEFAULT_VERSION = "1.0.0"


@dataclass(frozen=True, slots=True)
class CacheStats:
    """Number of reserved-prefix keys per backend."""

    memory: int = 0
    durable: int = 0
    session: int = 0

    @property
    def total(self) -> int:
        return self.memory + self.durable + self.session


class KeyValueCache:
    """Key/value cache over interchangeable storage backends."""

    def __init__(
        self,
        backends: Mapping[BackendKind, StorageBackend] | None = None,
        *,
        default_ttl: float = CacheDurations.MEDIUM,
        version: str = DEFAULT_VERSION,
        default_backend: BackendKind | str = BackendKind.DURABLE,
        clock: Callable[[], float] = time.time,
        metrics: MetricsRegistry | None = None,
        sweep_on_startup: bool = True,
    ):
        if default_ttl <= 0:
            raise ValueError("default_ttl must be positive")

        self._backends: dict[BackendKind, StorageBackend] = dict(backends or {})
        self._backends.setdefault(BackendKind.MEMORY, MemoryBackend())

        self.default_ttl = default_ttl
        self.default_backend = BackendKind(default_backend)
        self._version = version
        self._clock = clock
        self._metrics = metrics or MetricsRegistry(enabled=False)

        # Entries held in memory because their selected backend rejected the
        # write, one store per selected backend so they never share a slot
        # with each other or with real memory entries
        self._fallbacks: dict[BackendKind, MemoryBackend] = {
            kind: MemoryBackend() for kind in self._backends
        }

        if sweep_on_startup:
            self.sweep_expired()

    @property
    def version(self) -> str:
        return self._version

    @property
    def backends(self) -> Mapping[BackendKind, StorageBackend]:
        return self._backends

    def _resolve(self, backend: BackendSelector) -> BackendKind:
        if backend is None:
            kind = self.default_backend
        else:
            kind = BackendKind(backend)
        if kind not in self._backends:
            logger.debug(f"Backend {kind.value} not configured, using memory")
            return BackendKind.MEMORY
        return kind

    def _attempt(self, store: StorageBackend, key: str, operation: Callable[[], T]) -> Outcome[T]:
        """Run a backend operation, capturing any failure as an Outcome."""
        try:
            return Outcome.success(operation())
        except StorageFailure as e:
            return Outcome.failure(e)
        except Exception as e:
            return Outcome.failure(StorageFailure(store.name, key, repr(e)))

    def _list(self, store: StorageBackend) -> Outcome[list[str]]:
        return self._attempt(store, CacheKeys.PREFIX, lambda: store.list_keys(CacheKeys.PREFIX))

    # -------------------------------------------------------------------------
    # Core operations
    # -------------------------------------------------------------------------

    def set(
        self,
        key: str,
        value: Any,
        ttl: float | None = None,
        version: str | None = None,
        backend: BackendSelector = None,
    ) -> BackendKind:
        """Store a value.

        Returns the backend that actually holds the entry, which is the memory
        backend when the selected one rejected the write.
        """
        ttl = self.default_ttl if ttl is None else ttl
        if ttl <= 0:
            raise ValueError("ttl must be positive")

        now = self._clock()
        entry = CacheEntry(
            data=value,
            created_at=now,
            expires_at=now + ttl,
            schema_version=version if version is not None else self._version,
        )

        kind = self._resolve(backend)
        store = self._backends[kind]
        storage_key = CacheKeys.storage_key(key)

        outcome = self._attempt(store, storage_key, lambda: store.write(storage_key, entry))
        if outcome.ok:
            self._fallbacks[kind].remove(storage_key)
            return kind

        logger.warning(f"Cache storage failed, falling back to memory: {outcome.error}")
        self._metrics.storage_fallbacks_total.labels(backend=kind.value).inc()
        self._fallbacks[kind].write(storage_key, entry)

        # Drop any older copy still sitting in the failing backend
        self._attempt(store, storage_key, lambda: store.remove(storage_key))
        return BackendKind.MEMORY

    def _lookup(self, key: str, backend: BackendSelector) -> CacheEntry[Any] | None:
        """Find a live entry; the single staleness check shared by get and has."""
        kind = self._resolve(backend)
        storage_key = CacheKeys.storage_key(key)

        fallback = self._fallbacks[kind]
        store = fallback if fallback.read(storage_key) is not None else self._backends[kind]

        outcome = self._attempt(store, storage_key, lambda: store.read(storage_key))
        if not outcome.ok:
            logger.warning(f"Cache retrieval failed: {outcome.error}")
            self._metrics.cache_misses_total.labels(backend=kind.value, reason="error").inc()
            self.delete(key, backend=kind)
            return None

        entry = outcome.value
        if entry is None:
            self._metrics.cache_misses_total.labels(backend=kind.value, reason="absent").inc()
            return None

        if entry.is_expired(self._clock()):
            self._evict(key, kind, "expired")
            return None

        if entry.schema_version != self._version:
            self._evict(key, kind, "version")
            return None

        self._metrics.cache_hits_total.labels(backend=kind.value).inc()
        return entry

    def _evict(self, key: str, kind: BackendKind, reason: str) -> None:
        logger.debug(f"Evicting {reason} cache entry: {key}")
        self._metrics.cache_misses_total.labels(backend=kind.value, reason=reason).inc()
        self._metrics.cache_evictions_total.labels(backend=kind.value, reason=reason).inc()
        self.delete(key, backend=kind)

    def get(self, key: str, backend: BackendSelector = None) -> Any | None:
        """Get a cached value, or None if missing, expired or from another version."""
        entry = self._lookup(key, backend)
        return None if entry is None else entry.data

    def has(self, key: str, backend: BackendSelector = None) -> bool:
        """Check whether a live entry exists."""
        return self._lookup(key, backend) is not None

    def delete(self, key: str, backend: BackendSelector = None) -> None:
        """Delete a cached entry. Deleting a missing key is a no-op."""
        kind = self._resolve(backend)
        store = self._backends[kind]
        storage_key = CacheKeys.storage_key(key)

        outcome = self._attempt(store, storage_key, lambda: store.remove(storage_key))
        if not outcome.ok:
            logger.warning(f"Cache deletion failed: {outcome.error}")

        self._fallbacks[kind].remove(storage_key)

    def invalidate(self, key: str) -> None:
        """Delete a key from every configured backend."""
        for kind in self._backends:
            self.delete(key, backend=kind)

    # -------------------------------------------------------------------------
    # Bulk operations
    # -------------------------------------------------------------------------

    def _scope(self, scope: ClearScope) -> Iterable[BackendKind]:
        if scope == "all":
            return list(self._backends)
        kind = BackendKind(scope)
        return [kind] if kind in self._backends else []

    def clear(self, scope: ClearScope = "all") -> int:
        """Remove every reserved-prefix key from the scoped backends.

        Keys without the reserved prefix are left alone. Returns the number of
        keys removed.
        """
        removed = 0
        for kind in self._scope(scope):
            fallback = self._fallbacks[kind]
            for storage_key in fallback.list_keys(CacheKeys.PREFIX):
                fallback.remove(storage_key)
                removed += 1

            store = self._backends[kind]
            listed = self._list(store)
            if not listed.ok:
                logger.warning(f"Cache clearing failed: {listed.error}")
                continue

            for storage_key in listed.value or []:
                outcome = self._attempt(store, storage_key, lambda: store.remove(storage_key))
                if outcome.ok:
                    removed += 1
                else:
                    logger.warning(f"Cache clearing failed: {outcome.error}")

        logger.debug(f"Cleared {removed} cache entries ({scope})")
        return removed

    def update_version(self, new_version: str) -> None:
        """Switch to a new schema version, dropping everything cached."""
        logger.info(f"Cache version changed {self._version} -> {new_version}")
        self._version = new_version
        self.clear("all")

    def sweep_expired(self) -> int:
        """Remove expired and unreadable entries from every backend.

        Durable stores outlive the process and accumulate garbage; this runs
        at startup by default. Returns the number of entries removed.
        """
        now = self._clock()
        removed = 0

        stores = [*self._backends.values(), *self._fallbacks.values()]
        for store in stores:
            listed = self._list(store)
            if not listed.ok:
                logger.warning(f"Failed to sweep {store.name} cache: {listed.error}")
                continue

            for storage_key in listed.value or []:
                read = self._attempt(store, storage_key, lambda: store.read(storage_key))
                if read.ok and (read.value is None or not read.value.is_expired(now)):
                    continue
                if self._attempt(store, storage_key, lambda: store.remove(storage_key)).ok:
                    removed += 1

        if removed:
            logger.info(f"Swept {removed} expired cache entries")
        return removed

    # -------------------------------------------------------------------------
    # Introspection
    # -------------------------------------------------------------------------

    def keys(self, backend: BackendSelector = None) -> list[str]:
        """Logical keys stored in a backend, without checking staleness."""
        kind = self._resolve(backend)
        store = self._backends[kind]
        listed = self._list(store)
        if not listed.ok:
            logger.warning(f"Failed to list cache keys: {listed.error}")
            return []
        return [
            logical
            for storage_key in listed.value or []
            if (logical := CacheKeys.logical_key(storage_key)) is not None
        ]

    def stats(self) -> CacheStats:
        """Count reserved-prefix keys per backend."""
        counts = {kind: 0 for kind in BackendKind}
        for kind in self._backends:
            counts[kind] = len(self.keys(kind))
        return CacheStats(
            memory=counts[BackendKind.MEMORY],
            durable=counts[BackendKind.DURABLE],
            session=counts[BackendKind.SESSION],
        )
