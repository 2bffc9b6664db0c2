"""Structured logging for the idempotency coordinator.

Logs are emitted through structlog as event names with structured fields,
so a single claim can be followed across processes by its key and scope::

    {
        "event": "record.claimed",
        "key": "stripe:charge:order_id=456",
        "scope": "stripe",
        "version": 1,
        "timestamp": "2024-01-01T00:00:00.000000Z",
        "level": "info"
    }

Examples:
    Configure logging once at startup::

        from idempotent_coordinator.observability.logging import configure_logging

        configure_logging(level="INFO", json_output=True)

    Bind the key for everything logged inside a block::

        with record_context(key="order-1", scope="stripe"):
            logger.info("charge.submitted")
"""

import logging
import sys
from collections.abc import Iterator
from contextlib import contextmanager
from typing import Any

import structlog


def configure_logging(
    level: str = "INFO",
    json_output: bool = True,
) -> None:
    """Configure structlog and the standard library root logger.

    Args:
        level: Log level (DEBUG, INFO, WARNING, ERROR, CRITICAL)
        json_output: If True, emit JSON logs; if False, use console format
    """
    numeric_level = getattr(logging, level.upper())

    logging.basicConfig(
        format="%(message)s",
        stream=sys.stdout,
        level=numeric_level,
    )

    processors: list[object] = [
        structlog.contextvars.merge_contextvars,
        structlog.processors.add_log_level,
        structlog.processors.TimeStamper(fmt="iso", utc=True),
        structlog.processors.StackInfoRenderer(),
        structlog.processors.format_exc_info,
    ]

    if json_output:
        processors.append(structlog.processors.JSONRenderer())
    else:
        processors.append(structlog.dev.ConsoleRenderer(colors=True))

    structlog.configure(
        processors=processors,  # type: ignore[arg-type]
        wrapper_class=structlog.make_filtering_bound_logger(numeric_level),
        context_class=dict,
        logger_factory=structlog.PrintLoggerFactory(),
        cache_logger_on_first_use=True,
    )


def get_logger(name: str) -> Any:
    """Get a structured logger instance.

    Args:
        name: Logger name (typically __name__ from the calling module)
    """
    return structlog.get_logger(name)


@contextmanager
def record_context(key: str, scope: str | None = None) -> Iterator[None]:
    """Bind ``key`` and ``scope`` to every log line emitted inside the block."""
    with structlog.contextvars.bound_contextvars(idempotency_key=key, idempotency_scope=scope):
        yield
