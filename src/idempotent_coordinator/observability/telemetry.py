"""Telemetry sink for coordinator events.

The coordinator reports what happened to each key as named events with
``{key, scope}`` metadata. Every event is counted in Prometheus and logged at
debug level; applications attach handlers to forward events elsewhere
(tracing spans, audit logs, test assertions).

Event names are the configured prefix plus the event's dotted parts, e.g.
``("idempotency", "execute", "start")``.

Examples:
    >>> telemetry = Telemetry(prefix=("payments", "idempotency"))
    >>> seen = []
    >>> telemetry.attach(lambda name, measurements, metadata: seen.append(name))
    >>> telemetry.emit("cache_hit", key="order-1", scope="stripe")
    >>> seen
    [('payments', 'idempotency', 'cache_hit')]
"""

from collections.abc import Callable
from typing import Any

from idempotent_coordinator.observability.logging import get_logger
from idempotent_coordinator.observability.metrics import record_event

logger = get_logger(__name__)

TelemetryHandler = Callable[[tuple[str, ...], dict[str, Any], dict[str, Any]], None]


class Telemetry:
    """Dispatches coordinator events to attached handlers.

    Handlers are called synchronously in attach order with
    ``(event_name, measurements, metadata)``. A handler that raises is logged
    and skipped; it never affects the operation being coordinated.

    Attributes:
        prefix: Leading parts of every event name.
    """

    def __init__(self, prefix: tuple[str, ...] = ("idempotency",)) -> None:
        self.prefix = prefix
        self._handlers: list[TelemetryHandler] = []

    def attach(self, handler: TelemetryHandler) -> None:
        if handler not in self._handlers:
            self._handlers.append(handler)

    def detach(self, handler: TelemetryHandler) -> None:
        if handler in self._handlers:
            self._handlers.remove(handler)

    def emit(
        self,
        event: str,
        *,
        key: str,
        scope: str | None = None,
        **measurements: Any,
    ) -> None:
        name = (*self.prefix, *event.split("."))
        metadata = {"key": key, "scope": scope}
        measurements = {"count": 1, **measurements}

        record_event(event)
        logger.debug(event, key=key, scope=scope, **measurements)

        for handler in list(self._handlers):
            try:
                handler(name, measurements, metadata)
            except Exception:
                logger.exception("telemetry.handler_failed", telemetry_event=event, key=key)
