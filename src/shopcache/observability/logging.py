"""Structured logging for cache and invalidation activity.

Provides:
- JSON lines for log aggregation, encoded with orjson
- Session and correlation IDs so one viewer's cache activity can be followed
  across preloads, misses and incoming invalidations
- A readable console format for development

Usage:
    from shopcache.observability.logging import LogContext, configure_logging

    configure_logging(json_format=True, level="INFO")

    logger = logging.getLogger(__name__)
    with LogContext(session_id="tab-1"):
        logger.info("Cache miss")  # Includes session_id
"""

from __future__ import annotations

import contextvars
import logging
import sys
from datetime import datetime, timezone
from typing import Any

import orjson

session_id_var: contextvars.ContextVar[str] = contextvars.ContextVar("session_id", default="")
correlation_id_var: contextvars.ContextVar[str] = contextvars.ContextVar(
    "correlation_id", default=""
)

_CONTEXT_VARS: dict[str, contextvars.ContextVar[str]] = {
    "session_id": session_id_var,
    "correlation_id": correlation_id_var,
}

# Attributes every LogRecord carries; anything else came in via extra=
_STANDARD_ATTRS = frozenset(vars(logging.LogRecord("", 0, "", 0, "", (), None))) | {
    "message",
    "asctime",
}

# Libraries that log every request or command at INFO
_NOISY_LOGGERS = ("httpx", "httpcore", "redis")


def current_context() -> dict[str, str]:
    """Context variables that are set in the current task."""
    return {name: value for name, var in _CONTEXT_VARS.items() if (value := var.get())}


class JsonFormatter(logging.Formatter):
    """One JSON object per line.

    Output format:
    {"timestamp": "2026-01-10T12:34:56.789+00:00", "level": "WARNING",
     "logger": "shopcache.cache.store", "message": "Cache storage failed ...",
     "session_id": "tab-1", "key": "menu_items"}
    """

    def format(self, record: logging.LogRecord) -> str:
        entry: dict[str, Any] = {
            "timestamp": datetime.fromtimestamp(record.created, timezone.utc).isoformat(),
            "level": record.levelname,
            "logger": record.name,
            "message": record.getMessage(),
            "location": f"{record.module}:{record.funcName}:{record.lineno}",
        }
        entry.update(current_context())

        if record.exc_info and record.exc_info[0] is not None:
            entry["exception"] = {
                "type": record.exc_info[0].__name__,
                "message": str(record.exc_info[1]),
                "traceback": self.formatException(record.exc_info),
            }

        entry.update(
            (key, value)
            for key, value in vars(record).items()
            if key not in _STANDARD_ATTRS and not key.startswith("_")
        )
        # Values orjson can't encode natively (sets, exceptions) are logged as strings
        return orjson.dumps(entry, default=str).decode()


class ConsoleFormatter(logging.Formatter):
    """Human-readable single line per record.

    Output format:
    2026-01-10 12:34:56 | INFO     | shopcache.cache.store | Swept 3 entries | session=tab-1
    """

    LEVEL_COLORS = {
        logging.DEBUG: "36",
        logging.INFO: "32",
        logging.WARNING: "33",
        logging.ERROR: "31",
        logging.CRITICAL: "35",
    }

    def __init__(self, use_colors: bool = True) -> None:
        super().__init__()
        self.use_colors = use_colors and sys.stderr.isatty()

    def format(self, record: logging.LogRecord) -> str:
        when = datetime.fromtimestamp(record.created).strftime("%Y-%m-%d %H:%M:%S")
        level = f"{record.levelname:8}"
        if self.use_colors and record.levelno in self.LEVEL_COLORS:
            level = f"\033[{self.LEVEL_COLORS[record.levelno]}m{level}\033[0m"

        parts = [when, level, record.name, record.getMessage()]
        context = current_context()
        if "session_id" in context:
            parts.append(f"session={context['session_id'][:8]}")

        line = " | ".join(parts)
        if record.exc_info:
            line = f"{line}\n{self.formatException(record.exc_info)}"
        return line


def configure_logging(
    json_format: bool = True,
    level: str = "INFO",
    use_colors: bool = True,
) -> None:
    """Route every log record to stderr with one of the formatters above.

    Replaces any handlers already installed on the root logger.
    """
    handler = logging.StreamHandler(sys.stderr)
    handler.setFormatter(JsonFormatter() if json_format else ConsoleFormatter(use_colors))
    logging.basicConfig(level=level.upper(), handlers=[handler], force=True)

    for name in _NOISY_LOGGERS:
        logging.getLogger(name).setLevel(logging.WARNING)


class LogContext:
    """Context manager for adding temporary log context.

    Usage:
        with LogContext(session_id="tab-1", correlation_id="abc"):
            logger.info("Preloading images")
    """

    def __init__(self, **kwargs: Any) -> None:
        self.extra = kwargs
        self._tokens: dict[str, contextvars.Token[str]] = {}

    def __enter__(self) -> LogContext:
        for name, var in _CONTEXT_VARS.items():
            if name in self.extra:
                self._tokens[name] = var.set(str(self.extra[name]))
        return self

    def __exit__(self, *args: Any) -> None:
        for name, token in self._tokens.items():
            _CONTEXT_VARS[name].reset(token)
        self._tokens.clear()
