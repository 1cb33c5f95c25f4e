"""Tests for cache storage backends."""

from pathlib import Path
from unittest.mock import MagicMock

import pytest
import redis

from shopcache.cache.backends import (
    BackendKind,
    FileBackend,
    MemoryBackend,
    RedisBackend,
    SessionBackend,
    create_backends,
)
from shopcache.cache.entry import CacheEntry
from shopcache.config import Settings
from shopcache.errors import StorageFailure, StorageQuotaExceeded


def make_entry(data: object = "value", ttl: float = 60.0) -> CacheEntry:
    return CacheEntry(data=data, created_at=1000.0, expires_at=1000.0 + ttl, schema_version="1.0.0")


class TestMemoryBackend:
    """Test volatile in-memory backend."""

    def test_holds_entry_objects(self) -> None:
        backend = MemoryBackend()
        entry = make_entry(b"raw bytes are fine in memory")
        backend.write("cache_a", entry)
        assert backend.read("cache_a") is entry

    def test_remove_missing_key_is_noop(self) -> None:
        backend = MemoryBackend()
        backend.remove("cache_missing")
        assert len(backend) == 0

    def test_list_keys_by_prefix(self) -> None:
        backend = MemoryBackend()
        backend.write("cache_a", make_entry())
        backend.write("other", make_entry())
        assert backend.list_keys("cache_") == ["cache_a"]


class TestFileBackend:
    """Test filesystem-backed durable storage."""

    @pytest.fixture
    def backend(self, tmp_path: Path) -> FileBackend:
        return FileBackend(tmp_path, origin="https://shop.example.com", quota_bytes=2048)

    def test_write_then_read(self, backend: FileBackend) -> None:
        backend.write("cache_menu_items", make_entry([1, 2, 3]))
        entry = backend.read("cache_menu_items")
        assert entry is not None
        assert entry.data == [1, 2, 3]

    def test_survives_new_instance(self, tmp_path: Path) -> None:
        """Entries outlive the process that wrote them."""
        FileBackend(tmp_path, origin="shop").write("cache_a", make_entry("kept"))
        entry = FileBackend(tmp_path, origin="shop").read("cache_a")
        assert entry is not None
        assert entry.data == "kept"

    def test_origins_are_isolated(self, tmp_path: Path) -> None:
        FileBackend(tmp_path, origin="one").write("cache_a", make_entry())
        assert FileBackend(tmp_path, origin="two").read("cache_a") is None

    def test_read_missing_key(self, backend: FileBackend) -> None:
        assert backend.read("cache_missing") is None

    def test_list_keys_decodes_names(self, backend: FileBackend) -> None:
        backend.write("cache_a/b", make_entry())
        backend.write("unrelated", make_entry())
        assert backend.list_keys("cache_") == ["cache_a/b"]

    def test_quota_exceeded(self, backend: FileBackend) -> None:
        with pytest.raises(StorageQuotaExceeded) as exc_info:
            backend.write("cache_big", make_entry("x" * 4096))
        assert exc_info.value.quota == 2048
        assert backend.read("cache_big") is None

    def test_overwrite_does_not_count_old_copy(self, backend: FileBackend) -> None:
        backend.write("cache_a", make_entry("x" * 1200))
        backend.write("cache_a", make_entry("y" * 1200))
        entry = backend.read("cache_a")
        assert entry is not None
        assert entry.data == "y" * 1200

    def test_unserializable_value_raises_storage_failure(self, backend: FileBackend) -> None:
        with pytest.raises(StorageFailure):
            backend.write("cache_blob", make_entry(b"\x89PNG"))

    def test_unreadable_blob_raises_storage_failure(self, backend: FileBackend) -> None:
        backend.write("cache_a", make_entry())
        backend._path("cache_a").write_bytes(b"{corrupt")
        with pytest.raises(StorageFailure):
            backend.read("cache_a")

    def test_remove(self, backend: FileBackend) -> None:
        backend.write("cache_a", make_entry())
        backend.remove("cache_a")
        backend.remove("cache_a")
        assert backend.list_keys() == []


class TestSessionBackend:
    """Test session-scoped storage."""

    def test_round_trip(self, session_backend: SessionBackend) -> None:
        session_backend.write("cache_a", make_entry({"k": "v"}))
        entry = session_backend.read("cache_a")
        assert entry is not None
        assert entry.data == {"k": "v"}

    def test_quota(self, session_backend: SessionBackend) -> None:
        with pytest.raises(StorageQuotaExceeded):
            session_backend.write("cache_big", make_entry("x" * 8192))

    def test_close_drops_data_and_rejects_writes(self, session_backend: SessionBackend) -> None:
        session_backend.write("cache_a", make_entry())
        session_backend.close()
        assert session_backend.read("cache_a") is None
        with pytest.raises(StorageFailure):
            session_backend.write("cache_a", make_entry())


class TestRedisBackend:
    """Test Redis-backed durable storage."""

    @pytest.fixture
    def client(self) -> MagicMock:
        return MagicMock(spec=redis.Redis)

    @pytest.fixture
    def backend(self, client: MagicMock) -> RedisBackend:
        return RedisBackend(client, namespace="shop", origin="example.com")

    def test_write_sets_expiry(self, backend: RedisBackend, client: MagicMock) -> None:
        entry = make_entry("v", ttl=30.0)
        backend.write("cache_a", entry)
        client.set.assert_called_once_with("shop:example.com:cache_a", entry.to_bytes(), px=30000)

    def test_read(self, backend: RedisBackend, client: MagicMock) -> None:
        client.get.return_value = make_entry("v").to_bytes()
        entry = backend.read("cache_a")
        assert entry is not None
        assert entry.data == "v"
        client.get.assert_called_once_with("shop:example.com:cache_a")

    def test_read_missing(self, backend: RedisBackend, client: MagicMock) -> None:
        client.get.return_value = None
        assert backend.read("cache_a") is None

    def test_list_keys_strips_namespace(self, backend: RedisBackend, client: MagicMock) -> None:
        client.scan_iter.return_value = iter(
            [b"shop:example.com:cache_a", b"shop:example.com:cache_b"]
        )
        assert backend.list_keys("cache_") == ["cache_a", "cache_b"]
        client.scan_iter.assert_called_once_with(match="shop:example.com:cache_*")

    def test_redis_errors_become_storage_failures(
        self, backend: RedisBackend, client: MagicMock
    ) -> None:
        client.set.side_effect = redis.ConnectionError("connection refused")
        with pytest.raises(StorageFailure) as exc_info:
            backend.write("cache_a", make_entry())
        assert exc_info.value.backend == "durable"


class TestCreateBackends:
    """Test backend wiring from settings."""

    def test_file_durable_backend(self, tmp_path: Path) -> None:
        settings = Settings(durable_backend="file", storage_root=str(tmp_path))
        backends = create_backends(settings)
        assert set(backends) == set(BackendKind)
        assert isinstance(backends[BackendKind.DURABLE], FileBackend)
        assert isinstance(backends[BackendKind.SESSION], SessionBackend)

    def test_unknown_durable_backend(self) -> None:
        with pytest.raises(ValueError):
            create_backends(Settings(durable_backend="indexeddb"))
