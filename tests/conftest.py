"""Global pytest configuration and fixtures."""

from __future__ import annotations

import pytest

from shopcache.cache.backends import BackendKind, MemoryBackend, SessionBackend
from shopcache.cache.store import KeyValueCache


class FakeClock:
    """Controllable clock in seconds."""

    def __init__(self, start: float = 1_700_000_000.0) -> None:
        self.now = start

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds


@pytest.fixture
def clock() -> FakeClock:
    """Create a clock frozen at a fixed instant."""
    return FakeClock()


@pytest.fixture
def memory_cache(clock: FakeClock) -> KeyValueCache:
    """Create a cache holding everything in memory."""
    return KeyValueCache(
        {BackendKind.MEMORY: MemoryBackend()},
        default_backend=BackendKind.MEMORY,
        clock=clock,
        sweep_on_startup=False,
    )


@pytest.fixture
def session_backend() -> SessionBackend:
    """Create a session backend with a small quota."""
    return SessionBackend("test-session", quota_bytes=4096)
