"""Prometheus metrics for the caching layer.

Provides:
- Cache metrics (hits, misses, storage fallbacks, evictions)
- Invalidation metrics (events sent, received, publish failures)
- Image preload metrics (fetches by outcome, bytes cached)

Each registry owns its own CollectorRegistry so several cache stacks (and
tests) can coexist in one process. Until initialize() runs, or when metrics
are disabled, every metric is a no-op.

Usage:
    from shopcache.observability.metrics import get_metrics

    metrics = get_metrics()
    metrics.cache_hits_total.labels(backend="memory").inc()
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from typing import Any

from prometheus_client import CollectorRegistry, Counter, Gauge, generate_latest

logger = logging.getLogger(__name__)

PREFIX = "shopcache_"

# attribute -> (metric type, help text, label names)
_DEFINITIONS: dict[str, tuple[type[Counter] | type[Gauge], str, tuple[str, ...]]] = {
    "cache_hits_total": (Counter, "Cache hits", ("backend",)),
    "cache_misses_total": (Counter, "Cache misses", ("backend", "reason")),
    "cache_evictions_total": (
        Counter,
        "Entries removed because they expired or carried a stale version",
        ("backend", "reason"),
    ),
    "storage_fallbacks_total": (
        Counter,
        "Writes that fell back to the memory backend",
        ("backend",),
    ),
    "invalidations_sent_total": (Counter, "Invalidation events published", ("origin",)),
    "invalidations_received_total": (
        Counter,
        "Invalidation events received from other sessions",
        ("origin",),
    ),
    "publish_failures_total": (Counter, "Invalidation events that could not be published", ()),
    "image_fetches_total": (Counter, "Image fetches by outcome", ("outcome",)),
    "image_bytes_cached": (Gauge, "Bytes of image payload held in the memory backend", ()),
}


class NoOpMetric:
    """Stands in for any counter or gauge when metrics are off."""

    def labels(self, **kwargs: Any) -> NoOpMetric:
        return self

    def inc(self, amount: float = 1) -> None:
        pass

    def dec(self, amount: float = 1) -> None:
        pass

    def set(self, value: float) -> None:
        pass


_NOOP = NoOpMetric()


@dataclass
class MetricsRegistry:
    """Registry for Prometheus metrics."""

    enabled: bool = True

    # Cache metrics
    cache_hits_total: Any = _NOOP
    cache_misses_total: Any = _NOOP
    cache_evictions_total: Any = _NOOP
    storage_fallbacks_total: Any = _NOOP

    # Invalidation metrics
    invalidations_sent_total: Any = _NOOP
    invalidations_received_total: Any = _NOOP
    publish_failures_total: Any = _NOOP

    # Image metrics
    image_fetches_total: Any = _NOOP
    image_bytes_cached: Any = _NOOP

    _initialized: bool = field(default=False, repr=False)
    _registry: CollectorRegistry | None = field(default=None, repr=False)

    def initialize(self) -> None:
        """Create the Prometheus collectors. Safe to call more than once."""
        if self._initialized:
            return
        self._initialized = True

        if not self.enabled:
            logger.info("Metrics are disabled")
            return

        self._registry = CollectorRegistry()
        for attribute, (metric_type, documentation, labels) in _DEFINITIONS.items():
            metric = metric_type(
                f"{PREFIX}{attribute}", documentation, labels, registry=self._registry
            )
            setattr(self, attribute, metric)

        logger.debug(f"Prometheus metrics initialized ({len(_DEFINITIONS)} collectors)")

    def generate_latest(self) -> bytes:
        """Render the registry in Prometheus exposition format."""
        if self._registry is None:
            return b"# Metrics disabled\n"
        return generate_latest(self._registry)


def get_metrics(enabled: bool = True) -> MetricsRegistry:
    """Create and initialize a metrics registry."""
    metrics = MetricsRegistry(enabled=enabled)
    metrics.initialize()
    return metrics
