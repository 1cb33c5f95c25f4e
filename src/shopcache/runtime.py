"""Wiring of the caching layer from configuration.

CacheRuntime builds one KeyValueCache, ImageCache and ChangeInvalidationBus
per session, so nothing lives in module globals and tests can run many
isolated stacks side by side.

Example:
    async with CacheRuntime(Settings(transport_backend="memory")) as runtime:
        runtime.cache.set(CacheKeys.MENU_ITEMS, items)
        await runtime.admin.invalidate_menu_items()
"""

from __future__ import annotations

import logging
import time
from collections.abc import Callable, Mapping
from typing import Any

import httpx

from shopcache.admin import AdminCacheInvalidator
from shopcache.cache.backends import BackendKind, StorageBackend, create_backends
from shopcache.cache.images import ImageCache
from shopcache.cache.invalidation import ChangeInvalidationBus
from shopcache.cache.store import KeyValueCache
from shopcache.config import Settings
from shopcache.events.changes import ChangeFeed
from shopcache.events.channel import BroadcastChannel
from shopcache.events.runtime import create_broadcast_channel, create_change_feed
from shopcache.observability.metrics import MetricsRegistry, get_metrics

logger = logging.getLogger(__name__)


class CacheRuntime:
    """One session's cache stack and its lifecycle."""

    def __init__(
        self,
        settings: Settings | None = None,
        *,
        backends: Mapping[BackendKind, StorageBackend] | None = None,
        channel: BroadcastChannel | None = None,
        change_feed: ChangeFeed | None = None,
        http_client: httpx.AsyncClient | None = None,
        metrics: MetricsRegistry | None = None,
        clock: Callable[[], float] = time.time,
    ):
        self.settings = settings or Settings()
        self.metrics = metrics or get_metrics(enabled=self.settings.enable_metrics)

        self.cache = KeyValueCache(
            backends if backends is not None else create_backends(self.settings),
            default_ttl=self.settings.default_ttl,
            version=self.settings.schema_version,
            default_backend=self.settings.default_backend,
            clock=clock,
            metrics=self.metrics,
            sweep_on_startup=self.settings.sweep_on_startup,
        )
        self.images = ImageCache(
            self.cache,
            http_client,
            max_bytes=self.settings.image_max_bytes,
            default_encoding=self.settings.image_default_encoding,
            medium_chunk_size=self.settings.image_medium_chunk_size,
            low_priority_delay=self.settings.image_low_priority_delay,
            timeout=self.settings.image_fetch_timeout,
            metrics=self.metrics,
        )

        self.channel = channel or create_broadcast_channel(self.settings)
        self.change_feed = change_feed or create_change_feed(self.settings)
        self.bus = ChangeInvalidationBus(
            self.cache,
            self.channel,
            self.change_feed,
            topic=self.settings.broadcast_topic,
            instance_id=self.settings.instance_id,
            metrics=self.metrics,
            clock=clock,
        )
        self.admin = AdminCacheInvalidator(self.bus)
        self._started = False

    @property
    def started(self) -> bool:
        return self._started

    async def start(self, *, admin_mode: bool = False, watch_resources: bool = False) -> None:
        """Start listening for invalidations.

        Args:
            admin_mode: Skip cascading on admin events (admin sessions)
            watch_resources: Also watch every mapped resource's change feed
        """
        if self._started:
            return

        self.bus.set_admin_mode(admin_mode)
        await self.bus.start()
        if watch_resources:
            await self.bus.setup_admin_invalidation()

        self._started = True
        logger.info(f"Cache runtime started (instance {self.bus.instance_id})")

    async def stop(self) -> None:
        """Tear down the bus and release transports, clients and backends."""
        await self.bus.teardown()
        await self.images.aclose()
        await self.change_feed.close()
        await self.channel.close()

        for backend in self.cache.backends.values():
            try:
                backend.close()
            except Exception as e:
                logger.warning(f"Failed to close {backend.name} cache storage: {e}")

        self._started = False
        logger.info("Cache runtime stopped")

    async def __aenter__(self) -> CacheRuntime:
        await self.start()
        return self

    async def __aexit__(self, *args: Any) -> None:
        await self.stop()
