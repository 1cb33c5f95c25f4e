"""Error taxonomy for the caching layer.

Failures are grouped by where they come from:
- StorageFailure: a backend read/write failed (quota, serialization, unavailable)
- TransportFailure: publishing to or subscribing on a remote channel failed
- FetchFailure: an image or data fetch returned a non-success status or raised
- OversizeFailure: a resource exceeded its configured size cap

Internal operations report these through an Outcome value. Only the public
cache API turns a failed Outcome into a miss or a no-op, so failure paths stay
testable without inspecting log output.
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import Generic, TypeVar

T = TypeVar("T")


class CacheError(Exception):
    """Base class for caching layer failures."""


class StorageFailure(CacheError):
    """A storage backend could not complete an operation."""

    def __init__(self, backend: str, key: str, reason: str):
        self.backend = backend
        self.key = key
        self.reason = reason
        super().__init__(f"{backend} storage failed for {key!r}: {reason}")


class StorageQuotaExceeded(StorageFailure):
    """A write would push a backend over its byte quota."""

    def __init__(self, backend: str, key: str, needed: int, quota: int):
        self.needed = needed
        self.quota = quota
        super().__init__(backend, key, f"quota exceeded ({needed} > {quota} bytes)")


class TransportFailure(CacheError):
    """Publishing or subscribing on a remote channel failed."""

    def __init__(self, topic: str, reason: str):
        self.topic = topic
        self.reason = reason
        super().__init__(f"Transport failed on {topic!r}: {reason}")


class FetchFailure(CacheError):
    """A remote resource could not be fetched."""

    def __init__(self, url: str, reason: str, status_code: int | None = None):
        self.url = url
        self.reason = reason
        self.status_code = status_code
        super().__init__(f"Failed to fetch {url}: {reason}")


class OversizeFailure(CacheError):
    """A resource exceeded its size cap and was not cached."""

    def __init__(self, url: str, size: int, limit: int):
        self.url = url
        self.size = size
        self.limit = limit
        super().__init__(f"Resource too large to cache: {url} ({size} > {limit} bytes)")


@dataclass(frozen=True, slots=True)
class Outcome(Generic[T]):
    """Result of an internal operation: a value or the error that prevented it."""

    value: T | None = None
    error: CacheError | None = None

    @property
    def ok(self) -> bool:
        return self.error is None

    @classmethod
    def success(cls, value: T | None = None) -> Outcome[T]:
        return cls(value=value)

    @classmethod
    def failure(cls, error: CacheError) -> Outcome[T]:
        return cls(error=error)
