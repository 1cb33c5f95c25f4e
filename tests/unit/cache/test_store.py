"""Tests for the tiered key/value cache."""

from pathlib import Path
from typing import Any

import pytest

from shopcache.cache.backends import (
    BackendKind,
    FileBackend,
    MemoryBackend,
    SessionBackend,
    StorageBackend,
)
from shopcache.cache.entry import CacheEntry
from shopcache.cache.keys import CacheDurations
from shopcache.cache.store import KeyValueCache
from shopcache.errors import StorageFailure


class BrokenBackend(StorageBackend):
    """Durable backend whose every operation fails."""

    kind = BackendKind.DURABLE

    def read(self, key: str) -> CacheEntry[Any] | None:
        raise StorageFailure(self.name, key, "disk unavailable")

    def write(self, key: str, entry: CacheEntry[Any]) -> None:
        raise StorageFailure(self.name, key, "disk unavailable")

    def remove(self, key: str) -> None:
        raise StorageFailure(self.name, key, "disk unavailable")

    def list_keys(self, prefix: str = "") -> list[str]:
        raise StorageFailure(self.name, prefix, "disk unavailable")


@pytest.fixture
def tiered_cache(tmp_path: Path, clock) -> KeyValueCache:
    """Create a cache over memory, file and session backends."""
    return KeyValueCache(
        {
            BackendKind.MEMORY: MemoryBackend(),
            BackendKind.DURABLE: FileBackend(tmp_path, origin="shop", quota_bytes=4096),
            BackendKind.SESSION: SessionBackend("s1"),
        },
        clock=clock,
        sweep_on_startup=False,
    )


class TestSetGet:
    """Test basic storage semantics."""

    def test_set_then_get(self, memory_cache: KeyValueCache) -> None:
        memory_cache.set("menu_items", [1, 2, 3])
        assert memory_cache.get("menu_items") == [1, 2, 3]
        assert memory_cache.has("menu_items")

    def test_missing_key(self, memory_cache: KeyValueCache) -> None:
        assert memory_cache.get("missing") is None
        assert not memory_cache.has("missing")

    def test_non_positive_ttl_rejected(self, memory_cache: KeyValueCache) -> None:
        with pytest.raises(ValueError):
            memory_cache.set("a", 1, ttl=0)

    def test_keys_are_stored_with_reserved_prefix(self, tiered_cache: KeyValueCache) -> None:
        tiered_cache.set("menu_items", [1])
        durable = tiered_cache.backends[BackendKind.DURABLE]
        assert durable.list_keys() == ["cache_menu_items"]

    def test_durable_is_default_backend(self, tiered_cache: KeyValueCache) -> None:
        assert tiered_cache.set("a", 1) is BackendKind.DURABLE
        assert tiered_cache.get("a") == 1
        assert tiered_cache.get("a", backend=BackendKind.MEMORY) is None

    def test_backends_are_independent(self, tiered_cache: KeyValueCache) -> None:
        tiered_cache.set("a", "session", backend=BackendKind.SESSION)
        tiered_cache.set("a", "memory", backend=BackendKind.MEMORY)
        assert tiered_cache.get("a", backend="session") == "session"
        assert tiered_cache.get("a", backend="memory") == "memory"

    def test_unconfigured_backend_resolves_to_memory(self, memory_cache: KeyValueCache) -> None:
        assert memory_cache.set("a", 1, backend=BackendKind.SESSION) is BackendKind.MEMORY
        assert memory_cache.get("a", backend=BackendKind.MEMORY) == 1


class TestExpiry:
    """Test TTL semantics."""

    def test_entry_expires_after_ttl(self, memory_cache: KeyValueCache, clock) -> None:
        memory_cache.set("a", 1, ttl=60)
        clock.advance(60)
        assert memory_cache.get("a") == 1
        clock.advance(1)
        assert memory_cache.get("a") is None

    def test_expired_entry_is_removed_on_lookup(self, memory_cache: KeyValueCache, clock) -> None:
        memory_cache.set("a", 1, ttl=60)
        clock.advance(61)
        assert not memory_cache.has("a")
        assert memory_cache.keys(BackendKind.MEMORY) == []

    def test_has_and_get_agree(self, memory_cache: KeyValueCache, clock) -> None:
        memory_cache.set("a", 1, ttl=10)
        memory_cache.set("b", 2, ttl=100)
        clock.advance(50)
        for key in ("a", "b", "c"):
            assert memory_cache.has(key) == (memory_cache.get(key) is not None)

    def test_default_ttl(self, clock) -> None:
        cache = KeyValueCache(
            default_backend=BackendKind.MEMORY,
            default_ttl=CacheDurations.SHORT,
            clock=clock,
            sweep_on_startup=False,
        )
        cache.set("a", 1)
        clock.advance(CacheDurations.SHORT + 1)
        assert cache.get("a") is None


class TestVersioning:
    """Test schema version semantics."""

    def test_entry_from_other_version_is_a_miss(self, clock) -> None:
        cache = KeyValueCache(
            default_backend=BackendKind.MEMORY, version="2.0.0", clock=clock, sweep_on_startup=False
        )
        cache.set("a", 1, version="1.0.0")
        assert cache.get("a") is None
        assert cache.keys() == []

    def test_update_version_clears_everything(self, tiered_cache: KeyValueCache) -> None:
        tiered_cache.set("a", 1)
        tiered_cache.set("b", 2, backend=BackendKind.SESSION)
        tiered_cache.update_version("2.0.0")
        assert tiered_cache.version == "2.0.0"
        assert tiered_cache.stats().total == 0

    def test_new_entries_use_new_version(self, memory_cache: KeyValueCache) -> None:
        memory_cache.update_version("3.0.0")
        memory_cache.set("a", 1)
        assert memory_cache.get("a") == 1


class TestDelete:
    """Test deletion and invalidation."""

    def test_delete_is_idempotent(self, memory_cache: KeyValueCache) -> None:
        memory_cache.set("a", 1)
        memory_cache.delete("a")
        memory_cache.delete("a")
        assert memory_cache.get("a") is None

    def test_invalidate_removes_from_every_backend(self, tiered_cache: KeyValueCache) -> None:
        for kind in BackendKind:
            tiered_cache.set("menu_items", [1], backend=kind)
        tiered_cache.invalidate("menu_items")
        for kind in BackendKind:
            assert tiered_cache.get("menu_items", backend=kind) is None


class TestClear:
    """Test bulk clearing."""

    def test_clear_leaves_foreign_keys(self, tmp_path: Path, clock) -> None:
        durable = FileBackend(tmp_path, origin="shop")
        foreign = CacheEntry(data="theme", created_at=1.0, expires_at=2.0, schema_version="x")
        durable.write("theme", foreign)
        cache = KeyValueCache({BackendKind.DURABLE: durable}, clock=clock, sweep_on_startup=False)
        cache.set("a", 1)

        assert cache.clear() == 1
        assert durable.list_keys() == ["theme"]

    def test_clear_single_backend(self, tiered_cache: KeyValueCache) -> None:
        tiered_cache.set("a", 1, backend=BackendKind.MEMORY)
        tiered_cache.set("a", 1, backend=BackendKind.SESSION)
        assert tiered_cache.clear(BackendKind.SESSION) == 1
        assert tiered_cache.get("a", backend=BackendKind.MEMORY) == 1
        assert tiered_cache.get("a", backend=BackendKind.SESSION) is None


class TestStorageFailures:
    """Test degradation when storage misbehaves."""

    def test_quota_failure_falls_back_to_memory(self, tiered_cache: KeyValueCache) -> None:
        stored_in = tiered_cache.set("big", "x" * 8192)
        assert stored_in is BackendKind.MEMORY
        assert tiered_cache.get("big") == "x" * 8192
        assert tiered_cache.keys(BackendKind.DURABLE) == []

    def test_unserializable_value_falls_back_to_memory(self, tiered_cache: KeyValueCache) -> None:
        assert tiered_cache.set("blob", b"\x89PNG") is BackendKind.MEMORY
        assert tiered_cache.get("blob") == b"\x89PNG"

    def test_fallback_is_dropped_on_delete(self, tiered_cache: KeyValueCache) -> None:
        tiered_cache.set("big", "x" * 8192)
        tiered_cache.delete("big")
        assert tiered_cache.get("big") is None
        assert tiered_cache.get("big", backend=BackendKind.MEMORY) is None

    def test_successful_write_replaces_fallback(self, tiered_cache: KeyValueCache) -> None:
        tiered_cache.set("a", "x" * 8192)
        assert tiered_cache.set("a", "small") is BackendKind.DURABLE
        assert tiered_cache.get("a") == "small"
        assert tiered_cache.keys(BackendKind.MEMORY) == []

    def test_fallback_keeps_memory_entry_separate(self, clock) -> None:
        cache = KeyValueCache(
            {BackendKind.SESSION: SessionBackend("s1", quota_bytes=64)},
            clock=clock,
            sweep_on_startup=False,
        )
        cache.set("k", "memory-value", backend=BackendKind.MEMORY)
        assert cache.set("k", "x" * 500, backend=BackendKind.SESSION) is BackendKind.MEMORY

        assert cache.get("k", backend=BackendKind.MEMORY) == "memory-value"
        assert cache.get("k", backend=BackendKind.SESSION) == "x" * 500

        cache.delete("k", backend=BackendKind.SESSION)
        assert cache.get("k", backend=BackendKind.SESSION) is None
        assert cache.get("k", backend=BackendKind.MEMORY) == "memory-value"

    def test_memory_entry_not_visible_through_other_backend(self, clock) -> None:
        cache = KeyValueCache(
            {BackendKind.SESSION: SessionBackend("s1", quota_bytes=64)},
            clock=clock,
            sweep_on_startup=False,
        )
        cache.set("k", "x" * 500, backend=BackendKind.SESSION)
        cache.set("k", "memory-only", backend=BackendKind.MEMORY)
        assert cache.get("k", backend=BackendKind.SESSION) == "x" * 500

        cache.delete("k", backend=BackendKind.SESSION)
        cache.set("j", "memory-only", backend=BackendKind.MEMORY)
        assert cache.get("j", backend=BackendKind.SESSION) is None

    def test_clearing_memory_keeps_other_fallbacks(self, tiered_cache: KeyValueCache) -> None:
        tiered_cache.set("big", "x" * 8192)
        tiered_cache.set("big", "mem", backend=BackendKind.MEMORY)

        assert tiered_cache.clear(BackendKind.MEMORY) == 1
        assert tiered_cache.get("big") == "x" * 8192
        assert tiered_cache.clear(BackendKind.DURABLE) == 1
        assert tiered_cache.get("big") is None

    def test_broken_backend_never_raises(self, clock) -> None:
        cache = KeyValueCache(
            {BackendKind.DURABLE: BrokenBackend()}, clock=clock, sweep_on_startup=False
        )
        assert cache.set("a", 1) is BackendKind.MEMORY
        assert cache.get("a") == 1
        cache.delete("a")
        assert cache.get("a") is None
        assert cache.clear() == 0
        assert cache.sweep_expired() == 0
        assert cache.keys(BackendKind.DURABLE) == []

    def test_unreadable_entry_is_a_miss_and_removed(self, tmp_path: Path, clock) -> None:
        durable = FileBackend(tmp_path, origin="shop")
        cache = KeyValueCache({BackendKind.DURABLE: durable}, clock=clock, sweep_on_startup=False)
        cache.set("a", 1)
        durable._path("cache_a").write_bytes(b"garbage")

        assert cache.get("a") is None
        assert durable.list_keys() == []


class TestSweep:
    """Test expired-entry sweeping."""

    def test_sweep_removes_expired_and_unreadable(self, tiered_cache: KeyValueCache, clock) -> None:
        tiered_cache.set("short", 1, ttl=10)
        tiered_cache.set("long", 2, ttl=1000)
        tiered_cache.set("mem", 3, ttl=10, backend=BackendKind.MEMORY)
        durable = tiered_cache.backends[BackendKind.DURABLE]
        assert isinstance(durable, FileBackend)
        durable._path("cache_corrupt").parent.mkdir(parents=True, exist_ok=True)
        durable._path("cache_corrupt").write_bytes(b"{")

        clock.advance(11)
        assert tiered_cache.sweep_expired() == 3
        assert tiered_cache.get("long") == 2

    def test_sweep_on_startup(self, tmp_path: Path, clock) -> None:
        durable = FileBackend(tmp_path, origin="shop")
        KeyValueCache({BackendKind.DURABLE: durable}, clock=clock).set("a", 1, ttl=10)
        clock.advance(11)

        KeyValueCache({BackendKind.DURABLE: durable}, clock=clock)
        assert durable.list_keys() == []


class TestStats:
    """Test introspection."""

    def test_stats_counts_per_backend(self, tiered_cache: KeyValueCache) -> None:
        tiered_cache.set("a", 1)
        tiered_cache.set("b", 2)
        tiered_cache.set("c", 3, backend=BackendKind.SESSION)
        stats = tiered_cache.stats()
        assert (stats.memory, stats.durable, stats.session) == (0, 2, 1)
        assert stats.total == 3

    def test_keys_are_logical(self, tiered_cache: KeyValueCache) -> None:
        tiered_cache.set("menu_items", [1])
        assert tiered_cache.keys() == ["menu_items"]
