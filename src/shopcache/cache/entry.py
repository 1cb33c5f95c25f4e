"""Cache entry value object."""

from __future__ import annotations

from dataclasses import dataclass
from typing import Any, Generic, TypeVar

import orjson

T = TypeVar("T")


@dataclass(frozen=True, slots=True)
class CacheEntry(Generic[T]):
    """One cached value plus its metadata.

    Timestamps are seconds since the epoch as reported by the owning cache's
    clock. Entries are never mutated in place; a new `set` replaces the entry.
    """

    data: T
    created_at: float
    expires_at: float
    schema_version: str

    def __post_init__(self) -> None:
        if self.expires_at <= self.created_at:
            raise ValueError("expires_at must be later than created_at")

    def is_expired(self, now: float) -> bool:
        return now > self.expires_at

    def to_bytes(self) -> bytes:
        """Serialize to JSON bytes.

        Raises orjson.JSONEncodeError (a TypeError) for payloads that are not
        JSON-serializable, such as raw image bytes.
        """
        return orjson.dumps(
            {
                "data": self.data,
                "createdAt": self.created_at,
                "expiresAt": self.expires_at,
                "version": self.schema_version,
            }
        )

    @classmethod
    def from_bytes(cls, raw: bytes) -> CacheEntry[Any]:
        """Deserialize from JSON bytes.

        Raises ValueError when the blob is not a well-formed entry.
        """
        parsed = orjson.loads(raw)
        if not isinstance(parsed, dict):
            raise ValueError("cache entry must be a JSON object")
        try:
            return cls(
                data=parsed["data"],
                created_at=float(parsed["createdAt"]),
                expires_at=float(parsed["expiresAt"]),
                schema_version=str(parsed["version"]),
            )
        except (KeyError, TypeError) as e:
            raise ValueError(f"malformed cache entry: {e}") from e
