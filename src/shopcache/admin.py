"""Cache invalidation helpers for admin write paths.

Admin screens call these right after a successful write so every open
session drops the affected cache keys immediately instead of waiting for
their TTL.

Example:
    admin = AdminCacheInvalidator(bus)
    item = await admin.with_cache_invalidation(
        lambda: repo.update_menu_item(item_id, changes), "menu_items"
    )
"""

from __future__ import annotations

import logging
from collections.abc import Awaitable, Callable
from typing import Any, TypeVar

from shopcache.cache.invalidation import ChangeInvalidationBus
from shopcache.events.schemas import Origin

logger = logging.getLogger(__name__)

T = TypeVar("T")


class AdminCacheInvalidator:
    """Broadcasts admin-origin invalidations for backend resources."""

    def __init__(self, bus: ChangeInvalidationBus):
        self.bus = bus

    async def invalidate_resource(self, resource: str, payload: Any = None) -> bool:
        """Invalidate every cache key built from a resource.

        Returns False for resources with no mapped keys, or when the
        broadcast could not be published (local keys are dropped regardless).
        """
        keys = self.bus.resource_keys(resource)
        if not keys:
            logger.warning(f"No cache keys mapped to resource {resource}")
            return False

        published = await self.bus.broadcast_invalidation(
            keys, payload=payload, origin=Origin.ADMIN
        )
        logger.info(f"{resource} cache invalidated, changes are live")
        return published

    async def invalidate_menu_items(self) -> bool:
        return await self.invalidate_resource("menu_items")

    async def invalidate_header_settings(self) -> bool:
        return await self.invalidate_resource("header_settings")

    async def invalidate_carousel_images(self) -> bool:
        return await self.invalidate_resource("carousel_images")

    async def invalidate_help_settings(self) -> bool:
        return await self.invalidate_resource("help_settings")

    async def invalidate_help_items(self) -> bool:
        return await self.invalidate_resource("help_items")

    async def with_cache_invalidation(
        self,
        operation: Callable[[], Awaitable[T]],
        resource: str,
        success_message: str | None = None,
    ) -> T:
        """Run a write, then invalidate the resource's cache keys.

        A failing write propagates unchanged and invalidates nothing.
        """
        try:
            result = await operation()
        except Exception as e:
            logger.error(f"Failed to update {resource}: {e}")
            raise

        await self.invalidate_resource(resource)
        if success_message:
            logger.info(f"{success_message} - cache invalidated, changes are live")
        return result

    @staticmethod
    def success_message(item_type: str) -> str:
        return f"{item_type} updated successfully! Changes are now live on the website."
