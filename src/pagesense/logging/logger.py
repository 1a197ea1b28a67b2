"""Structured logging for PageSense using structlog.

Perception modules log through the standard library; structlog events from
the pipeline facade go through the same stdlib handlers, so one
configuration covers both.
"""

import logging
import os
import sys
from pathlib import Path
from typing import Any, cast

import structlog

from ..config import get_settings

DISABLE_ENV = "PAGESENSE_DISABLE_CONSOLE_LOGGING"


def _console_disabled() -> bool:
    return os.getenv(DISABLE_ENV) == "1"


def _processors(structured: bool, add_timestamp: bool, colors: bool) -> list[Any]:
    chain: list[Any] = [
        structlog.stdlib.filter_by_level,
        structlog.stdlib.add_logger_name,
        structlog.stdlib.add_log_level,
    ]
    if add_timestamp:
        chain.append(structlog.processors.TimeStamper(fmt="iso"))
    chain += [
        structlog.processors.StackInfoRenderer(),
        structlog.processors.format_exc_info,
    ]
    if structured:
        chain.append(structlog.processors.JSONRenderer())
    else:
        chain.append(structlog.dev.ConsoleRenderer(colors=colors))
    return chain


def _handlers(console: bool, log_file: Path | None) -> list[logging.Handler]:
    handlers: list[logging.Handler] = []
    if console:
        # stderr only; stdout belongs to callers printing payloads
        handlers.append(logging.StreamHandler(sys.stderr))
    if log_file:
        log_file.parent.mkdir(parents=True, exist_ok=True)
        handlers.append(logging.FileHandler(log_file, encoding="utf-8"))
    for handler in handlers:
        handler.setFormatter(logging.Formatter("%(message)s"))
    return handlers


def setup_logging(
    level: str = "INFO",
    log_file: Path | None = None,
    structured: bool = False,
    console: bool = True,
    add_timestamp: bool = True,
    colorize: bool = False,
) -> None:
    """Configure structlog and the stdlib root logger.

    Args:
        level: Log level name
        log_file: Also write records to this file
        structured: Render JSON lines instead of console text
        console: Write to stderr (forced off by PAGESENSE_DISABLE_CONSOLE_LOGGING=1)
        add_timestamp: Prefix ISO timestamps
        colorize: Colored console output
    """
    if _console_disabled():
        console, log_file = False, None

    structlog.configure(
        processors=_processors(structured, add_timestamp, colorize and console),
        context_class=dict,
        logger_factory=structlog.stdlib.LoggerFactory(),
        cache_logger_on_first_use=True,
    )

    handlers = _handlers(console, log_file)
    if not handlers:
        handlers, level = [logging.NullHandler()], "CRITICAL"
    logging.basicConfig(
        format="%(message)s",
        level=getattr(logging, level.upper()),
        handlers=handlers,
        force=True,
    )


_configured = False


def _configure_once() -> None:
    global _configured
    if _configured:
        return
    _configured = True

    if _console_disabled():
        setup_logging(console=False)
        logging.disable(logging.CRITICAL)
        return

    try:
        settings = get_settings()
    except ValueError:
        # Invalid PAGESENSE_* values must not break logging
        setup_logging()
        return
    setup_logging(level=settings.log_level, structured=settings.structured_logs)


def get_logger(name: str) -> structlog.BoundLogger:
    """Return a structlog logger, configuring logging on first use."""
    _configure_once()
    return cast(structlog.BoundLogger, structlog.get_logger(name))


class PerformanceLogger:
    """Collects operation timings and logs each one at debug level."""

    def __init__(self, base_logger: structlog.BoundLogger | None = None) -> None:
        self.logger = base_logger or get_logger(__name__)
        self.metrics: dict[str, list[float]] = {}

    def log_timing(self, operation: str, duration: float, **context: Any) -> None:
        """Record ``duration`` seconds for ``operation``."""
        self.metrics.setdefault(operation, []).append(duration)
        self.logger.debug("operation_timed", operation=operation, duration=duration, **context)

    def get_stats(self, operation: str | None = None) -> dict[str, Any]:
        """
        Summaries of recorded timings.

        Returns the summary for ``operation`` (empty when nothing was
        recorded), or a summary per operation when no name is given.
        """
        if operation is not None:
            return _summarize(self.metrics.get(operation, []))
        return {op: _summarize(values) for op, values in self.metrics.items()}


def _summarize(values: list[float]) -> dict[str, float]:
    if not values:
        return {}
    total = sum(values)
    return {
        "count": len(values),
        "mean": total / len(values),
        "min": min(values),
        "max": max(values),
        "total": total,
    }
