"""Event schemas for cache invalidation.

InvalidationEvent travels over the broadcast channel between sessions.
ChangeEvent is what the backend's change-data-capture stream emits for a
watched resource. Both are transient: they exist only while in transport.
"""

from __future__ import annotations

import time
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Literal
from uuid import uuid4

import orjson


class Origin(str, Enum):
    """Whether the triggering write came from a privileged write path."""

    ADMIN = "admin"
    VIEWER = "viewer"


class ChangeType(str, Enum):
    """Type of record change reported by the change stream."""

    INSERT = "insert"
    UPDATE = "update"
    DELETE = "delete"


@dataclass(frozen=True, slots=True)
class InvalidationEvent:
    """Cache invalidation broadcast to every session."""

    affected_keys: frozenset[str]
    origin: Origin = Origin.ADMIN
    payload: Any = None
    sender: str = ""
    emitted_at: float = field(default_factory=time.time)
    kind: Literal["invalidate"] = "invalidate"
    event_id: str = field(default_factory=lambda: str(uuid4()))

    def to_bytes(self) -> bytes:
        """Serialize to JSON bytes.

        Payload values orjson cannot encode natively are sent as strings.
        """
        return orjson.dumps(
            {
                "kind": self.kind,
                "keys": sorted(self.affected_keys),
                "origin": self.origin.value,
                "payload": self.payload,
                "sender": self.sender,
                "timestamp": self.emitted_at,
                "event_id": self.event_id,
            },
            default=str,
        )

    @classmethod
    def from_bytes(cls, data: bytes | str) -> InvalidationEvent:
        """Deserialize from JSON bytes.

        Raises ValueError for anything that is not an invalidation event.
        """
        parsed = orjson.loads(data)
        if not isinstance(parsed, dict) or parsed.get("kind") != "invalidate":
            raise ValueError("not an invalidation event")
        try:
            return cls(
                affected_keys=frozenset(str(key) for key in parsed["keys"]),
                origin=Origin(parsed.get("origin", Origin.ADMIN.value)),
                payload=parsed.get("payload"),
                sender=str(parsed.get("sender", "")),
                emitted_at=float(parsed.get("timestamp", time.time())),
                event_id=str(parsed.get("event_id") or uuid4()),
            )
        except (KeyError, TypeError) as e:
            raise ValueError(f"malformed invalidation event: {e}") from e


@dataclass(frozen=True, slots=True)
class ChangeEvent:
    """A record change on a watched backend resource."""

    event_type: ChangeType
    resource: str
    payload: dict[str, Any] = field(default_factory=dict)

    def to_dict(self) -> dict[str, Any]:
        return {
            "eventType": self.event_type.value,
            "resource": self.resource,
            "payload": self.payload,
        }

    def to_bytes(self) -> bytes:
        return orjson.dumps(self.to_dict(), default=str)

    @classmethod
    def from_bytes(cls, data: bytes | str) -> ChangeEvent:
        """Deserialize from JSON bytes.

        Raises ValueError for malformed change records.
        """
        parsed = orjson.loads(data)
        if not isinstance(parsed, dict):
            raise ValueError("change event must be a JSON object")
        try:
            return cls(
                event_type=ChangeType(str(parsed["eventType"]).lower()),
                resource=str(parsed["resource"]),
                payload=dict(parsed.get("payload") or {}),
            )
        except (KeyError, TypeError) as e:
            raise ValueError(f"malformed change event: {e}") from e
