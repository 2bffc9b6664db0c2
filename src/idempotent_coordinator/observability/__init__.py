"""Observability utilities for the idempotency coordinator.

This package provides:
- Structured logging with key/scope context (structlog)
- Prometheus metrics for events, durations, claims and maintenance
- The telemetry sink the coordinator emits named events through
"""

from idempotent_coordinator.observability.logging import (
    configure_logging,
    get_logger,
    record_context,
)
from idempotent_coordinator.observability.metrics import (
    record_event,
    record_execute_duration,
    record_maintenance,
)
from idempotent_coordinator.observability.telemetry import Telemetry, TelemetryHandler

__all__ = [
    "configure_logging",
    "get_logger",
    "record_context",
    "record_event",
    "record_execute_duration",
    "record_maintenance",
    "Telemetry",
    "TelemetryHandler",
]
