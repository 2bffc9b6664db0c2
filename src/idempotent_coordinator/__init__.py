"""
Idempotency coordination for Python services.

Runs retryable, side-effecting operations at most once per idempotency key,
with the outcome cached in a shared record store so that every retry, from
any process, observes the same result.
"""

from idempotent_coordinator.codec import CachedError
from idempotent_coordinator.config import IdempotencyConfig
from idempotent_coordinator.core import (
    Coordinator,
    IdempotencyMiddleware,
    MaintenanceReport,
    Request,
    Response,
    ResponseError,
    run_maintenance,
)
from idempotent_coordinator.exceptions import (
    IdempotencyConflictError,
    IdempotencyError,
    InProgressError,
    StorageError,
    WaitTimeoutError,
)
from idempotent_coordinator.keys import generate_key, hash_key
from idempotent_coordinator.models import IdempotencyRecord, RecordState
from idempotent_coordinator.outcome import Err, Ok, Outcome
from idempotent_coordinator.recoverable import (
    PermanentError,
    Recoverable,
    RecoverableClassifier,
    TransientError,
)
from idempotent_coordinator.storage import MemoryRecordStore, RecordStore, SQLRecordStore, build_store

__version__ = "0.1.0"

__all__ = [
    "__version__",
    "CachedError",
    "Coordinator",
    "Err",
    "IdempotencyConfig",
    "IdempotencyConflictError",
    "IdempotencyError",
    "IdempotencyMiddleware",
    "IdempotencyRecord",
    "InProgressError",
    "MaintenanceReport",
    "MemoryRecordStore",
    "Ok",
    "Outcome",
    "PermanentError",
    "RecordState",
    "RecordStore",
    "Recoverable",
    "RecoverableClassifier",
    "Request",
    "Response",
    "ResponseError",
    "SQLRecordStore",
    "StorageError",
    "TransientError",
    "WaitTimeoutError",
    "build_store",
    "generate_key",
    "hash_key",
    "run_maintenance",
]
