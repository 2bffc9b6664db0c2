"""Core coordination logic.

This package contains:
- Coordinator: the ``execute`` orchestration (lookup, claim, run, settle)
- Maintenance: stale-claim recovery and TTL cleanup sweeps
- Middleware: framework-agnostic request wrapping

Everything here is framework-agnostic; adapters for HTTP clients and ASGI
applications live in ``idempotent_coordinator.adapters``.
"""

from idempotent_coordinator.core.coordinator import MAX_DISPATCH_ATTEMPTS, Coordinator
from idempotent_coordinator.core.maintenance import (
    MaintenanceReport,
    cleanup_expired,
    recover_stale,
    run_maintenance,
    start_maintenance_task,
    stop_maintenance_task,
)
from idempotent_coordinator.core.middleware import (
    IdempotencyMiddleware,
    Request,
    Response,
    ResponseError,
)

__all__ = [
    "MAX_DISPATCH_ATTEMPTS",
    "Coordinator",
    "IdempotencyMiddleware",
    "MaintenanceReport",
    "Request",
    "Response",
    "ResponseError",
    "cleanup_expired",
    "recover_stale",
    "run_maintenance",
    "start_maintenance_task",
    "stop_maintenance_task",
]
