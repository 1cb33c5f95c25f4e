"""Storage backends behind the key/value cache.

Three interchangeable kinds share one interface:
- memory: volatile in-process map holding entry objects
- durable: per-origin storage that survives restarts (files or Redis)
- session: serialized storage scoped to one session id

Serializing backends hold their own orjson-encoded copy of each entry and
raise StorageFailure on quota, serialization or I/O problems. Callers decide
how to degrade; backends never swallow errors.
"""

from __future__ import annotations

import base64
import logging
import re
from abc import ABC, abstractmethod
from enum import Enum
from pathlib import Path
from typing import TYPE_CHECKING, Any

import redis

from shopcache.cache.entry import CacheEntry
from shopcache.errors import StorageFailure, StorageQuotaExceeded

if TYPE_CHECKING:
    from shopcache.config import Settings

logger = logging.getLogger(__name__)


class BackendKind(str, Enum):
    """Kind of storage behind a cache operation."""

    MEMORY = "memory"
    DURABLE = "durable"
    SESSION = "session"


class StorageBackend(ABC):
    """Abstract storage backend interface."""

    kind: BackendKind

    @property
    def name(self) -> str:
        return self.kind.value

    @abstractmethod
    def read(self, key: str) -> CacheEntry[Any] | None:
        """Read an entry, or None if the key is not stored.

        Raises:
            StorageFailure: If the stored blob is unreadable or the store is down
        """
        ...

    @abstractmethod
    def write(self, key: str, entry: CacheEntry[Any]) -> None:
        """Store an entry, replacing any previous one.

        Raises:
            StorageFailure: On quota, serialization or I/O failure
        """
        ...

    @abstractmethod
    def remove(self, key: str) -> None:
        """Remove a key. Removing a missing key is not an error."""
        ...

    @abstractmethod
    def list_keys(self, prefix: str = "") -> list[str]:
        """List stored keys starting with prefix."""
        ...

    def close(self) -> None:
        """Release resources held by the backend."""


class MemoryBackend(StorageBackend):
    """Volatile in-memory backend. Never fails a write."""

    kind = BackendKind.MEMORY

    def __init__(self) -> None:
        self._entries: dict[str, CacheEntry[Any]] = {}

    def read(self, key: str) -> CacheEntry[Any] | None:
        return self._entries.get(key)

    def write(self, key: str, entry: CacheEntry[Any]) -> None:
        self._entries[key] = entry

    def remove(self, key: str) -> None:
        self._entries.pop(key, None)

    def list_keys(self, prefix: str = "") -> list[str]:
        return [key for key in self._entries if key.startswith(prefix)]

    def __len__(self) -> int:
        return len(self._entries)


class SerializedBackend(StorageBackend):
    """Base for backends that store orjson-encoded entries."""

    def read(self, key: str) -> CacheEntry[Any] | None:
        raw = self._read_raw(key)
        if raw is None:
            return None
        try:
            return CacheEntry.from_bytes(raw)
        except ValueError as e:
            raise StorageFailure(self.name, key, f"unreadable entry: {e}") from e

    def write(self, key: str, entry: CacheEntry[Any]) -> None:
        try:
            raw = entry.to_bytes()
        except TypeError as e:
            raise StorageFailure(self.name, key, f"serialization failed: {e}") from e
        self._write_raw(key, raw, entry)

    @abstractmethod
    def _read_raw(self, key: str) -> bytes | None: ...

    @abstractmethod
    def _write_raw(self, key: str, raw: bytes, entry: CacheEntry[Any]) -> None: ...


class FileBackend(SerializedBackend):
    """Durable per-origin storage on the local filesystem.

    Stores one file per key under {root}/{origin}/, named by the Base64URL
    encoding of the key. Enforces a byte quota across the origin directory.
    """

    kind = BackendKind.DURABLE
    SUFFIX = ".json"

    def __init__(
        self,
        root: str | Path,
        origin: str = "localhost",
        quota_bytes: int = 5 * 1024 * 1024,
    ):
        self.root = Path(root)
        self.origin = origin
        self.quota_bytes = quota_bytes
        self.directory = self.root / _safe_origin(origin)

    def _path(self, key: str) -> Path:
        encoded = base64.urlsafe_b64encode(key.encode("utf-8")).decode("ascii").rstrip("=")
        return self.directory / f"{encoded}{self.SUFFIX}"

    @staticmethod
    def _decode_name(name: str) -> str | None:
        stem = name[: -len(FileBackend.SUFFIX)]
        padded = stem + "=" * (-len(stem) % 4)
        try:
            return base64.urlsafe_b64decode(padded.encode("ascii")).decode("utf-8")
        except (ValueError, UnicodeDecodeError):
            return None

    def usage_bytes(self) -> int:
        """Total bytes currently stored for this origin."""
        if not self.directory.exists():
            return 0
        return sum(p.stat().st_size for p in self.directory.glob(f"*{self.SUFFIX}"))

    def _read_raw(self, key: str) -> bytes | None:
        path = self._path(key)
        try:
            return path.read_bytes()
        except FileNotFoundError:
            return None
        except OSError as e:
            raise StorageFailure(self.name, key, str(e)) from e

    def _write_raw(self, key: str, raw: bytes, entry: CacheEntry[Any]) -> None:
        path = self._path(key)
        try:
            existing = path.stat().st_size if path.exists() else 0
            needed = self.usage_bytes() - existing + len(raw)
            if needed > self.quota_bytes:
                raise StorageQuotaExceeded(self.name, key, needed, self.quota_bytes)

            self.directory.mkdir(parents=True, exist_ok=True)
            # Write to a temp file then rename so readers never see partial blobs
            tmp_path = path.with_suffix(".tmp")
            tmp_path.write_bytes(raw)
            tmp_path.replace(path)
        except OSError as e:
            raise StorageFailure(self.name, key, str(e)) from e

    def remove(self, key: str) -> None:
        try:
            self._path(key).unlink(missing_ok=True)
        except OSError as e:
            raise StorageFailure(self.name, key, str(e)) from e

    def list_keys(self, prefix: str = "") -> list[str]:
        if not self.directory.exists():
            return []
        keys = []
        for path in self.directory.glob(f"*{self.SUFFIX}"):
            key = self._decode_name(path.name)
            if key is not None and key.startswith(prefix):
                keys.append(key)
        return keys


class SessionBackend(SerializedBackend):
    """Session-scoped storage: serialized blobs that live until the session closes."""

    kind = BackendKind.SESSION

    def __init__(self, session_id: str, quota_bytes: int = 5 * 1024 * 1024):
        self.session_id = session_id
        self.quota_bytes = quota_bytes
        self._blobs: dict[str, bytes] = {}
        self._closed = False

    def usage_bytes(self) -> int:
        return sum(len(raw) for raw in self._blobs.values())

    def _read_raw(self, key: str) -> bytes | None:
        return self._blobs.get(key)

    def _write_raw(self, key: str, raw: bytes, entry: CacheEntry[Any]) -> None:
        if self._closed:
            raise StorageFailure(self.name, key, f"session {self.session_id} is closed")

        existing = len(self._blobs.get(key, b""))
        needed = self.usage_bytes() - existing + len(raw)
        if needed > self.quota_bytes:
            raise StorageQuotaExceeded(self.name, key, needed, self.quota_bytes)
        self._blobs[key] = raw

    def remove(self, key: str) -> None:
        self._blobs.pop(key, None)

    def list_keys(self, prefix: str = "") -> list[str]:
        return [key for key in self._blobs if key.startswith(prefix)]

    def close(self) -> None:
        """End the session, dropping everything it stored."""
        self._blobs.clear()
        self._closed = True


class RedisBackend(SerializedBackend):
    """Durable storage shared by every process pointing at the same Redis.

    Keys are namespaced as {namespace}:{origin}:{key}. Each entry is also
    given a Redis expiry matching its own, so abandoned entries age out even
    if no process sweeps them.
    """

    kind = BackendKind.DURABLE

    def __init__(
        self,
        client: redis.Redis,
        namespace: str = "shopcache",
        origin: str = "localhost",
    ):
        self.client = client
        self.namespace = namespace
        self.origin = origin
        self._key_prefix = f"{namespace}:{_safe_origin(origin)}:"

    @classmethod
    def from_url(cls, url: str, namespace: str = "shopcache", origin: str = "localhost"):
        client = redis.Redis.from_url(url, decode_responses=False)
        return cls(client, namespace=namespace, origin=origin)

    def _redis_key(self, key: str) -> str:
        return f"{self._key_prefix}{key}"

    def _read_raw(self, key: str) -> bytes | None:
        try:
            raw = self.client.get(self._redis_key(key))
        except redis.RedisError as e:
            raise StorageFailure(self.name, key, str(e)) from e
        return raw if raw is None or isinstance(raw, bytes) else str(raw).encode("utf-8")

    def _write_raw(self, key: str, raw: bytes, entry: CacheEntry[Any]) -> None:
        ttl_ms = max(1, int((entry.expires_at - entry.created_at) * 1000))
        try:
            self.client.set(self._redis_key(key), raw, px=ttl_ms)
        except redis.RedisError as e:
            raise StorageFailure(self.name, key, str(e)) from e

    def remove(self, key: str) -> None:
        try:
            self.client.delete(self._redis_key(key))
        except redis.RedisError as e:
            raise StorageFailure(self.name, key, str(e)) from e

    def list_keys(self, prefix: str = "") -> list[str]:
        pattern = f"{_escape_glob(self._key_prefix + prefix)}*"
        keys = []
        try:
            for redis_key in self.client.scan_iter(match=pattern):
                text = redis_key.decode("utf-8") if isinstance(redis_key, bytes) else redis_key
                keys.append(text[len(self._key_prefix) :])
        except redis.RedisError as e:
            raise StorageFailure(self.name, prefix, str(e)) from e
        return keys

    def close(self) -> None:
        self.client.close()


def _safe_origin(origin: str) -> str:
    """Make an origin usable as a directory or key segment."""
    return re.sub(r"[^A-Za-z0-9._-]", "_", origin) or "default"


def _escape_glob(text: str) -> str:
    return re.sub(r"([*?\[\]\\])", r"\\\1", text)


def create_backends(settings: Settings) -> dict[BackendKind, StorageBackend]:
    """Create the three backends based on configuration."""
    durable_kind = settings.durable_backend.lower()

    durable: StorageBackend
    if durable_kind in {"file", "files", "filesystem"}:
        durable = FileBackend(
            settings.storage_root,
            origin=settings.storage_origin,
            quota_bytes=settings.storage_quota_bytes,
        )
    elif durable_kind == "redis":
        durable = RedisBackend.from_url(
            settings.redis_url,
            namespace=settings.redis_namespace,
            origin=settings.storage_origin,
        )
    else:
        raise ValueError("Unsupported durable_backend. Supported values: file, redis.")

    logger.info("Durable cache storage: %s", type(durable).__name__)
    return {
        BackendKind.MEMORY: MemoryBackend(),
        BackendKind.DURABLE: durable,
        BackendKind.SESSION: SessionBackend(
            settings.session_id, quota_bytes=settings.session_quota_bytes
        ),
    }
