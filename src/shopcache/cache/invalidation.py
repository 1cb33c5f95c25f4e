"""Real-time cache invalidation across sessions.

The bus keeps every open session consistent with writes made through the
admin console. Two paths feed it:

1. Explicit broadcasts: an admin mutation calls broadcast_invalidation()
   after writing to the backend. The keys are deleted locally first, then
   the event is published so every other session deletes them too.
2. Change-data-capture: setup_resource_invalidation() watches a backend
   resource and turns each change into the same broadcast, catching writes
   that never went through the admin console.

Both paths can deliver the same invalidation twice; deleting a key is
idempotent, so the redundancy costs one extra no-op delete.

Cross-session delivery is best effort (no acks, no retries). Every entry
still carries a TTL, so a missed invalidation only delays freshness until
the entry expires.

Example:
    bus = ChangeInvalidationBus(cache, channel, change_feed)
    await bus.start()

    subscription = bus.on_invalidated(CacheKeys.MENU_ITEMS, reload_menu)
    await bus.broadcast_invalidation([CacheKeys.MENU_ITEMS])
    subscription.cancel()

    await bus.teardown()
"""

from __future__ import annotations

import inspect
import logging
import time
from collections.abc import Awaitable, Callable, Iterable, Mapping
from dataclasses import dataclass
from typing import Any, TypeVar
from uuid import uuid4

from shopcache.cache.backends import BackendKind
from shopcache.cache.keys import RELATED_CACHE_KEYS, RESOURCE_CACHE_KEYS, CacheDurations
from shopcache.cache.store import KeyValueCache
from shopcache.errors import TransportFailure
from shopcache.events.changes import ChangeFeed
from shopcache.events.channel import BroadcastChannel, ChannelSubscription
from shopcache.events.schemas import ChangeEvent, InvalidationEvent, Origin
from shopcache.observability.metrics import MetricsRegistry

logger = logging.getLogger(__name__)

T = TypeVar("T")

# Pub/Sub topic shared by every session
INVALIDATION_TOPIC = "shopcache:cache_invalidation"

InvalidationCallback = Callable[[Any], Awaitable[None] | None]


class Subscription:
    """A callback registered for one cache key.

    Cancel it when the consumer goes away; a forgotten subscription keeps
    firing for a consumer that no longer exists.

    Usage:
        with bus.on_invalidated("menu_items", reload_menu):
            ...  # reload_menu fires on invalidation inside this block
    """

    def __init__(self, bus: ChangeInvalidationBus, key: str, callback: InvalidationCallback):
        self.key = key
        self.callback = callback
        self._bus = bus
        self._cancelled = False

    @property
    def cancelled(self) -> bool:
        return self._cancelled

    def cancel(self) -> None:
        if self._cancelled:
            return
        self._cancelled = True
        self._bus.off(self.key, self.callback)

    def __enter__(self) -> Subscription:
        return self

    def __exit__(self, *args: Any) -> None:
        self.cancel()


@dataclass(frozen=True, slots=True)
class BusStatus:
    """Snapshot of the bus state."""

    listening: bool
    admin_mode: bool
    watched_resources: tuple[str, ...]
    callbacks: dict[str, int]


class ChangeInvalidationBus:
    """Pub/sub facade deleting cache entries when records change."""

    def __init__(
        self,
        cache: KeyValueCache,
        channel: BroadcastChannel,
        change_feed: ChangeFeed | None = None,
        *,
        topic: str = INVALIDATION_TOPIC,
        instance_id: str | None = None,
        related_keys: Mapping[str, Iterable[str]] = RELATED_CACHE_KEYS,
        resource_keys: Mapping[str, Iterable[str]] = RESOURCE_CACHE_KEYS,
        admin_mode: bool = False,
        metrics: MetricsRegistry | None = None,
        clock: Callable[[], float] = time.time,
    ):
        self.cache = cache
        self.channel = channel
        self.change_feed = change_feed
        self.topic = topic
        self.instance_id = instance_id or uuid4().hex[:8]
        self._related = {key: tuple(values) for key, values in related_keys.items()}
        self._resource_keys = {name: tuple(keys) for name, keys in resource_keys.items()}
        self._admin_mode = admin_mode
        self._metrics = metrics or MetricsRegistry(enabled=False)
        self._clock = clock

        self._callbacks: dict[str, list[InvalidationCallback]] = {}
        self._global: ChannelSubscription | None = None
        # None marks a watch whose subscription is still being set up
        self._watched: dict[str, ChannelSubscription | None] = {}

    # -------------------------------------------------------------------------
    # Lifecycle
    # -------------------------------------------------------------------------

    @property
    def listening(self) -> bool:
        return self._global is not None

    async def start(self) -> bool:
        """Subscribe to the global invalidation topic.

        Returns whether the bus is listening. A failed subscription leaves
        the bus usable for local invalidation only.
        """
        if self._global is not None:
            return True

        try:
            self._global = await self.channel.subscribe(self.topic, self._on_broadcast)
        except TransportFailure as e:
            logger.error(f"Cache invalidation will stay local to this session: {e}")
            return False

        logger.info(f"Listening for cache invalidations on {self.topic}")
        return True

    async def teardown(self) -> None:
        """Unsubscribe every channel and forget every callback. Safe to repeat."""
        subscriptions = [sub for sub in self._watched.values() if sub is not None]
        if self._global is not None:
            subscriptions.append(self._global)

        for subscription in subscriptions:
            try:
                await subscription.unsubscribe()
            except Exception as e:
                logger.warning(f"Failed to unsubscribe from {subscription.topic}: {e}")

        self._global = None
        self._watched.clear()
        self._callbacks.clear()
        logger.debug("Cache invalidation bus torn down")

    # -------------------------------------------------------------------------
    # Mode and callbacks
    # -------------------------------------------------------------------------

    @property
    def admin_mode(self) -> bool:
        return self._admin_mode

    def set_admin_mode(self, is_admin: bool) -> None:
        """Toggle cascade-on-receipt.

        An admin session already sees the result of its own writes, so it
        skips invalidating derived keys when admin events arrive.
        """
        self._admin_mode = is_admin
        mode = "ADMIN (no cascade)" if is_admin else "VIEWER (cascade on admin changes)"
        logger.info(f"Cache invalidation mode: {mode}")

    def on_invalidated(self, key: str, callback: InvalidationCallback) -> Subscription:
        """Register a callback fired with the event payload when key is invalidated."""
        self._callbacks.setdefault(key, []).append(callback)
        return Subscription(self, key, callback)

    def off(self, key: str, callback: InvalidationCallback) -> None:
        """Unregister a callback. Unknown callbacks are ignored."""
        callbacks = self._callbacks.get(key)
        if not callbacks or callback not in callbacks:
            return
        callbacks.remove(callback)
        if not callbacks:
            del self._callbacks[key]

    # -------------------------------------------------------------------------
    # Invalidation
    # -------------------------------------------------------------------------

    async def broadcast_invalidation(
        self,
        keys: Iterable[str],
        payload: Any = None,
        origin: Origin | str = Origin.ADMIN,
    ) -> bool:
        """Invalidate keys here, then tell every other session.

        Local deletion completes before the publish starts, so a read right
        after this call never sees stale data even if the publish is lost.
        Returns whether the event was handed to the transport.
        """
        if isinstance(keys, str):
            raise TypeError("keys must be an iterable of cache keys, not a single string")

        event = InvalidationEvent(
            affected_keys=frozenset(keys),
            origin=Origin(origin),
            payload=payload,
            sender=self.instance_id,
            emitted_at=self._clock(),
        )
        if not event.affected_keys:
            return False

        await self._apply(event)

        try:
            await self.channel.publish(self.topic, event)
        except Exception as e:
            logger.error(f"Failed to broadcast cache invalidation: {e}")
            self._metrics.publish_failures_total.inc()
            return False

        self._metrics.invalidations_sent_total.labels(origin=event.origin.value).inc()
        logger.info(f"Broadcasted cache invalidation for keys: {sorted(event.affected_keys)}")
        return True

    async def _on_broadcast(self, event: InvalidationEvent) -> None:
        """Handle an invalidation published by another session."""
        if event.sender == self.instance_id:
            return

        keys = sorted(event.affected_keys)
        logger.debug(f"Received cache invalidation from {event.sender}: {keys}")
        self._metrics.invalidations_received_total.labels(origin=event.origin.value).inc()
        await self._apply(event)

    def resource_keys(self, resource: str) -> tuple[str, ...]:
        """Cache keys built from a backend resource (empty if unmapped)."""
        return self._resource_keys.get(resource, ())

    def related_keys(self, keys: Iterable[str]) -> list[str]:
        """Derived keys that follow the given source keys (one level)."""
        sources = list(keys)
        related: list[str] = []
        for key in sources:
            for derived in self._related.get(key, ()):
                if derived not in sources and derived not in related:
                    related.append(derived)
        return related

    async def _apply(self, event: InvalidationEvent) -> None:
        keys = sorted(event.affected_keys)
        related: list[str] = []
        if event.origin is Origin.ADMIN and not self._admin_mode:
            related = self.related_keys(keys)

        # Every deletion happens before the first callback can suspend
        for key in keys:
            self.cache.invalidate(key)
            logger.debug(f"Invalidated cache for key: {key}")
        for key in related:
            self.cache.invalidate(key)
            logger.debug(f"Invalidated related cache key: {key}")

        for key in keys + related:
            await self._notify(key, event.payload)

    async def _notify(self, key: str, payload: Any) -> None:
        for callback in list(self._callbacks.get(key, [])):
            try:
                result = callback(payload)
                if inspect.isawaitable(result):
                    await result
            except Exception:
                logger.exception(f"Error in cache invalidation callback for {key}")

    # -------------------------------------------------------------------------
    # Change-data-capture
    # -------------------------------------------------------------------------

    async def setup_resource_invalidation(
        self, resource: str, cache_keys: Iterable[str] | None = None
    ) -> bool:
        """Watch a backend resource and invalidate its cache keys on every change.

        Calling again for a resource already watched is a no-op. Without
        explicit keys, the keys mapped to the resource are used. Changes are
        re-broadcast with admin origin: only privileged write paths are
        expected to modify watched resources.
        """
        if resource in self._watched:
            return True
        if self.change_feed is None:
            logger.warning(f"No change feed configured, cannot watch {resource}")
            return False

        keys = tuple(cache_keys) if cache_keys is not None else self.resource_keys(resource)
        if not keys:
            logger.warning(f"No cache keys mapped to resource {resource}")
            return False

        async def _on_change(change: ChangeEvent) -> None:
            logger.info(f"Resource {resource} changed: {change.event_type.value}")
            for key in keys:
                self.cache.invalidate(key)
            await self.broadcast_invalidation(keys, payload=change.to_dict(), origin=Origin.ADMIN)

        self._watched[resource] = None
        try:
            subscription = await self.change_feed.subscribe(resource, _on_change)
        except TransportFailure as e:
            del self._watched[resource]
            logger.error(f"Failed to watch resource {resource}: {e}")
            return False

        if resource not in self._watched:
            # Torn down while the subscription was being set up
            await subscription.unsubscribe()
            return False

        self._watched[resource] = subscription
        logger.info(f"Watching {resource} for changes -> {list(keys)}")
        return True

    async def setup_admin_invalidation(self) -> int:
        """Watch every resource in the resource table. Returns how many are watched."""
        for resource, keys in self._resource_keys.items():
            await self.setup_resource_invalidation(resource, keys)
        watched = sum(1 for sub in self._watched.values() if sub is not None)
        logger.info(f"Admin cache invalidation setup complete ({watched} resources)")
        return watched

    async def unwatch_resource(self, resource: str) -> None:
        """Stop watching a resource. Unknown resources are ignored."""
        subscription = self._watched.pop(resource, None)
        if subscription is not None:
            await subscription.unsubscribe()

    def is_watching(self, resource: str) -> bool:
        return self._watched.get(resource) is not None

    # -------------------------------------------------------------------------
    # Freshness
    # -------------------------------------------------------------------------

    async def force_refresh(
        self,
        key: str,
        fetch: Callable[[], Awaitable[T]],
        ttl: float = CacheDurations.SHORT,
        backend: BackendKind | str | None = None,
    ) -> T:
        """Bypass the cache: drop the key, fetch fresh data and cache it briefly.

        Errors raised by fetch propagate to the caller; the key stays absent.
        """
        self.cache.invalidate(key)
        try:
            fresh = await fetch()
        except Exception as e:
            logger.error(f"Failed to force refresh for {key}: {e}")
            raise

        self.cache.set(key, fresh, ttl=ttl, backend=backend)
        return fresh

    def status(self) -> BusStatus:
        return BusStatus(
            listening=self.listening,
            admin_mode=self._admin_mode,
            watched_resources=tuple(
                sorted(name for name, sub in self._watched.items() if sub is not None)
            ),
            callbacks={key: len(callbacks) for key, callbacks in self._callbacks.items()},
        )
