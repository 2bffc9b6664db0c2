"""Record store protocol for the idempotency coordinator.

This module defines the interface every storage backend implements. The
coordinator's correctness rests on one primitive: an atomic conditional
update of a single record that reports whether it matched. Everything else
is plain reads, inserts guarded by a uniqueness constraint, and bulk
predicate updates/deletes.

Examples:
    Manual control without the coordinator::

        record = await store.get("order_123_charge", scope="stripe")
        if record is None:
            record = await store.create("order_123_charge", scope="stripe")
            record = await store.start_processing(record)
            charge = await stripe_client.create_charge(amount=1000)
            await store.complete(record, charge)

Atomicity Requirements:
    All RecordStore implementations MUST guarantee:

    1. **Unique creation**: ``create()`` fails with AlreadyExistsError when a
       record for ``(key, scope)`` exists, even under concurrent inserts. A
       None scope is one namespace, not a wildcard.

    2. **Compare-and-swap claim**: ``start_processing()`` updates the record
       only if its stored ``version`` equals the caller's snapshot and its
       state is pending or processing. At most one of several concurrent
       claims on the same snapshot succeeds.

    3. **Claim-holder writes**: ``complete()``, ``fail()`` and ``release()``
       are called only by the holder of a successful claim and need no
       version check.

    4. **Predicate sweeps**: ``recover_stale()`` and ``cleanup_expired()``
       act on whatever rows match at execution time, as one statement.

    5. **Backend errors**: failures of the backend are raised as
       StorageError, never as driver-specific exceptions.
"""

from datetime import UTC, datetime
from typing import Any, Protocol, runtime_checkable

from idempotent_coordinator.models import IdempotencyRecord


def utc_now() -> datetime:
    """Default store clock: the current time as an aware UTC datetime."""
    return datetime.now(UTC)


@runtime_checkable
class RecordStore(Protocol):
    """Protocol defining the interface for idempotency record stores.

    All methods are async and must be safe to call concurrently from many
    tasks, threads and processes sharing the same backend.
    """

    async def get(self, key: str, scope: str | None = None) -> IdempotencyRecord | None:
        """Retrieve the record for ``(key, scope)``, or None if absent."""
        ...

    async def create(
        self,
        key: str,
        *,
        scope: str | None = None,
        ttl_seconds: int | None = None,
        metadata: dict[str, Any] | None = None,
    ) -> IdempotencyRecord:
        """Insert a new PENDING record expiring ``ttl_seconds`` from now.

        Raises:
            AlreadyExistsError: A record for ``(key, scope)`` already exists.
            InvalidRecordError: The attributes fail validation.
        """
        ...

    async def start_processing(self, record: IdempotencyRecord) -> IdempotencyRecord:
        """Claim ``record`` with a compare-and-swap on its version.

        On success the returned record is PROCESSING with ``version + 1``,
        ``started_at = now`` and ``locked_until = now + lock_timeout``.

        Raises:
            AlreadyProcessingError: The live record is PROCESSING under
                another claim. Carries the live record.
            StaleRecordError: The live record moved to another state or
                version, or was deleted.
        """
        ...

    async def complete(self, record: IdempotencyRecord, response: Any) -> IdempotencyRecord:
        """Settle a claimed record as COMPLETED with the encoded ``response``.

        Raises:
            RecordNotFoundError: The record was deleted.
            CodecError: The response cannot be encoded.
        """
        ...

    async def fail(self, record: IdempotencyRecord, error: Any) -> IdempotencyRecord:
        """Settle a claimed record as FAILED with the encoded ``error``.

        Raises:
            RecordNotFoundError: The record was deleted.
            CodecError: The error cannot be encoded.
        """
        ...

    async def release(self, record: IdempotencyRecord) -> IdempotencyRecord:
        """Return a claimed record to PENDING so a later caller may retry.

        Raises:
            RecordNotFoundError: The record was deleted.
        """
        ...

    async def recover_stale(self) -> int:
        """Return every PROCESSING record whose claim expired to PENDING.

        Returns:
            The number of records recovered.
        """
        ...

    async def cleanup_expired(self) -> int:
        """Delete every record whose ``expires_at`` has passed, in any state.

        Returns:
            The number of records removed.
        """
        ...

    async def close(self) -> None:
        """Release backend resources."""
        ...
