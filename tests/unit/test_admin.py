"""Tests for admin write-path invalidation helpers."""

from unittest.mock import AsyncMock, MagicMock

import pytest

from shopcache.admin import AdminCacheInvalidator
from shopcache.cache.backends import BackendKind
from shopcache.cache.invalidation import ChangeInvalidationBus
from shopcache.cache.keys import CacheKeys
from shopcache.cache.store import KeyValueCache
from shopcache.events.channel import InMemoryBroadcastHub


@pytest.fixture
def hub() -> InMemoryBroadcastHub:
    return InMemoryBroadcastHub()


@pytest.fixture
async def viewer_bus(hub: InMemoryBroadcastHub, clock):
    cache = KeyValueCache(default_backend=BackendKind.MEMORY, clock=clock, sweep_on_startup=False)
    bus = ChangeInvalidationBus(cache, hub.channel(), instance_id="viewer")
    await bus.start()
    yield bus
    await bus.teardown()


@pytest.fixture
def invalidator(hub: InMemoryBroadcastHub, memory_cache: KeyValueCache) -> AdminCacheInvalidator:
    bus = ChangeInvalidationBus(memory_cache, hub.channel(), instance_id="admin", admin_mode=True)
    return AdminCacheInvalidator(bus)


class TestAdminCacheInvalidator:
    """Test admin invalidation helpers."""

    @pytest.mark.parametrize(
        ("method", "key"),
        [
            ("invalidate_menu_items", CacheKeys.MENU_ITEMS),
            ("invalidate_header_settings", CacheKeys.HEADER_SETTINGS),
            ("invalidate_carousel_images", CacheKeys.CAROUSEL_IMAGES),
            ("invalidate_help_settings", CacheKeys.HELP_SETTINGS),
            ("invalidate_help_items", CacheKeys.HELP_ITEMS),
        ],
    )
    async def test_resource_helpers_reach_viewers(
        self,
        invalidator: AdminCacheInvalidator,
        viewer_bus: ChangeInvalidationBus,
        method: str,
        key: str,
    ) -> None:
        viewer_bus.cache.set(key, "stale")

        assert await getattr(invalidator, method)()

        assert viewer_bus.cache.get(key) is None

    async def test_unknown_resource_is_noop(self, invalidator: AdminCacheInvalidator) -> None:
        invalidator.bus.broadcast_invalidation = AsyncMock()  # type: ignore[method-assign]
        assert await invalidator.invalidate_resource("orders") is False
        invalidator.bus.broadcast_invalidation.assert_not_called()

    async def test_with_cache_invalidation_returns_result(
        self, invalidator: AdminCacheInvalidator, viewer_bus: ChangeInvalidationBus
    ) -> None:
        viewer_bus.cache.set(CacheKeys.MENU_ITEMS, [1, 2, 3])

        result = await invalidator.with_cache_invalidation(
            AsyncMock(return_value={"id": 4}), "menu_items", success_message="Menu item added"
        )

        assert result == {"id": 4}
        assert viewer_bus.cache.get(CacheKeys.MENU_ITEMS) is None

    async def test_failed_write_invalidates_nothing(
        self, invalidator: AdminCacheInvalidator, viewer_bus: ChangeInvalidationBus
    ) -> None:
        viewer_bus.cache.set(CacheKeys.MENU_ITEMS, [1, 2, 3])
        callback = MagicMock()
        viewer_bus.on_invalidated(CacheKeys.MENU_ITEMS, callback)

        with pytest.raises(RuntimeError):
            await invalidator.with_cache_invalidation(
                AsyncMock(side_effect=RuntimeError("constraint violation")), "menu_items"
            )

        assert viewer_bus.cache.get(CacheKeys.MENU_ITEMS) == [1, 2, 3]
        callback.assert_not_called()

    def test_success_message(self) -> None:
        assert AdminCacheInvalidator.success_message("Menu item") == (
            "Menu item updated successfully! Changes are now live on the website."
        )
