"""Custom exceptions for the idempotency coordinator.

This module defines the exception hierarchy used by the record stores and
the coordinator to signal races, contention, caller-visible coordination
outcomes and backend failures.

Races at creation and claiming (``AlreadyExistsError``,
``AlreadyProcessingError``, ``StaleRecordError``) are raised by stores and
resolved inside ``Coordinator.execute``. Callers of ``execute`` only ever see
``InProgressError``, ``WaitTimeoutError``, ``IdempotencyConflictError`` and
backend failures.

Examples:
    Handling a duplicate that is still running::

        from idempotent_coordinator.exceptions import InProgressError

        try:
            outcome = await coordinator.execute(key, charge_card)
        except InProgressError as e:
            logger.info("charge.in_progress", key=e.key, version=e.record.version)
            return Response(status_code=409)

    Handling a storage error::

        from idempotent_coordinator.exceptions import StorageError

        try:
            record = await store.get(key)
        except StorageError as e:
            logger.error("storage.unavailable", error=str(e))
            raise
"""

from typing import Any


class IdempotencyError(Exception):
    """Base exception for all idempotency-related errors.

    Attributes:
        message: Human-readable error description.
    """

    def __init__(self, message: str) -> None:
        self.message = message
        super().__init__(message)


def _describe(key: str, scope: str | None) -> str:
    return f"{scope}:{key}" if scope is not None else key


class AlreadyExistsError(IdempotencyError):
    """A record for ``(key, scope)`` already exists.

    Raised by ``RecordStore.create`` when the uniqueness constraint rejects
    the insert. This is a benign race between two creators, not a caller error.

    Attributes:
        key: The idempotency key.
        scope: The key's scope, or None.
    """

    def __init__(self, key: str, scope: str | None = None) -> None:
        super().__init__(f"Idempotency record already exists for {_describe(key, scope)}")
        self.key = key
        self.scope = scope


class AlreadyProcessingError(IdempotencyError):
    """The claim was lost because another holder is processing the record.

    Attributes:
        record: The live record as re-read after the failed claim.
    """

    def __init__(self, record: Any) -> None:
        super().__init__(
            f"Idempotency record {_describe(record.key, record.scope)} is already processing"
        )
        self.record = record


class StaleRecordError(IdempotencyError):
    """The claim was lost because the record moved on since it was read.

    The record was settled, re-pended under a new version, or deleted.
    Callers should re-read the record and dispatch on its fresh state.

    Attributes:
        key: The idempotency key.
        scope: The key's scope, or None.
    """

    def __init__(self, key: str, scope: str | None = None) -> None:
        super().__init__(f"Idempotency record {_describe(key, scope)} is stale")
        self.key = key
        self.scope = scope


class RecordNotFoundError(IdempotencyError):
    """A record expected to exist has been deleted.

    Attributes:
        key: The idempotency key.
        scope: The key's scope, or None.
    """

    def __init__(self, key: str, scope: str | None = None) -> None:
        super().__init__(f"Idempotency record {_describe(key, scope)} not found")
        self.key = key
        self.scope = scope


class InProgressError(IdempotencyError):
    """Another caller is currently executing the operation for this key.

    With ``on_duplicate="return"`` the live record is attached so the caller
    can poll it independently. With ``on_duplicate="error"`` ``record`` is None.

    Attributes:
        key: The idempotency key.
        scope: The key's scope, or None.
        record: The in-progress record, or None.

    Examples:
        Polling after an in-progress response::

            try:
                await coordinator.execute(key, fn, on_duplicate="return")
            except InProgressError as e:
                if e.record is not None:
                    retry_after = e.record.locked_until
    """

    def __init__(self, key: str, scope: str | None = None, record: Any = None) -> None:
        super().__init__(f"Operation for {_describe(key, scope)} is in progress")
        self.key = key
        self.scope = scope
        self.record = record


class WaitTimeoutError(IdempotencyError):
    """Waiting for a concurrent execution to settle timed out.

    Attributes:
        key: The idempotency key.
        scope: The key's scope, or None.
        waited_seconds: How long the caller polled before giving up.
    """

    def __init__(self, key: str, scope: str | None, waited_seconds: float) -> None:
        super().__init__(
            f"Timed out after {waited_seconds:.2f}s waiting for {_describe(key, scope)}"
        )
        self.key = key
        self.scope = scope
        self.waited_seconds = waited_seconds


class IdempotencyConflictError(IdempotencyError):
    """A creation or claim race could not be resolved.

    Raised when a record vanished between a failed insert or claim and the
    follow-up read, or when contention kept restarting dispatch. Fatal to
    the call; the caller may retry the whole ``execute``.

    Attributes:
        key: The idempotency key.
        scope: The key's scope, or None.
    """

    def __init__(self, key: str, scope: str | None = None, reason: str | None = None) -> None:
        message = f"Idempotency conflict for {_describe(key, scope)}"
        if reason:
            message = f"{message}: {reason}"
        super().__init__(message)
        self.key = key
        self.scope = scope


class InvalidRecordError(IdempotencyError):
    """Record attributes failed validation.

    Attributes:
        errors: Validation error details as reported by pydantic.
    """

    def __init__(self, message: str, errors: list[Any] | None = None) -> None:
        super().__init__(message)
        self.errors = errors or []


class CodecError(IdempotencyError):
    """A payload could not be encoded or decoded."""


class StorageError(IdempotencyError):
    """Storage backend operation failed.

    Raised for failures of the underlying backend (connection loss,
    timeouts, driver errors). Stores must not leak backend-specific
    exceptions.

    Attributes:
        message: Human-readable error description.
        cause: The underlying exception that caused the storage error.

    Examples:
        Raising a storage error::

            try:
                await conn.execute(stmt)
            except SQLAlchemyError as e:
                raise StorageError(f"Failed to update record: {e}", cause=e) from e
    """

    def __init__(self, message: str, cause: Exception | None = None) -> None:
        super().__init__(message)
        self.cause = cause
