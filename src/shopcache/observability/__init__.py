"""Observability for the caching layer.

Provides structured logging and Prometheus metrics:
- JSON structured logging with session and correlation IDs
- Cache, invalidation and image preload counters
"""

from shopcache.observability.logging import (
    ConsoleFormatter,
    JsonFormatter,
    LogContext,
    configure_logging,
    correlation_id_var,
    session_id_var,
)
from shopcache.observability.metrics import MetricsRegistry, NoOpMetric, get_metrics

__all__ = [
    # Logging
    "configure_logging",
    "JsonFormatter",
    "ConsoleFormatter",
    "LogContext",
    "session_id_var",
    "correlation_id_var",
    # Metrics
    "MetricsRegistry",
    "NoOpMetric",
    "get_metrics",
]
