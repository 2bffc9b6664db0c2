"""In-memory record store with asyncio concurrency control.

This module provides a single-process implementation of the RecordStore
interface. A single asyncio.Lock makes every operation atomic, standing in
for the row-level atomicity a relational database provides.

The MemoryRecordStore is suitable for:
    - Single-process applications
    - Development and testing

For coordination across processes or machines use SQLRecordStore.

Isolation:
    - Records are keyed by ``(key, scope)``; None is its own scope
    - Callers always receive deep copies, so a caller's snapshot (and its
      version) never changes underneath it

Examples:
    Basic usage::

        from idempotent_coordinator.storage.memory import MemoryRecordStore

        store = MemoryRecordStore()
        record = await store.create("payment-123", scope="stripe")
        claimed = await store.start_processing(record)
        await store.complete(claimed, {"id": "ch_1"})

    Concurrent claims on one snapshot::

        record = await store.create("payment-123")
        results = await asyncio.gather(
            store.start_processing(record),
            store.start_processing(record),
            return_exceptions=True,
        )
        # Exactly one claim succeeds; the other raises AlreadyProcessingError
"""

import asyncio
from collections.abc import Callable
from datetime import datetime, timedelta
from typing import Any

from pydantic import ValidationError

from idempotent_coordinator import codec
from idempotent_coordinator.config import IdempotencyConfig
from idempotent_coordinator.exceptions import (
    AlreadyExistsError,
    AlreadyProcessingError,
    InvalidRecordError,
    RecordNotFoundError,
    StaleRecordError,
)
from idempotent_coordinator.keys import generate_uuid7
from idempotent_coordinator.models import IdempotencyRecord, RecordState
from idempotent_coordinator.observability.logging import get_logger
from idempotent_coordinator.storage.base import RecordStore, utc_now

logger = get_logger(__name__)

_RecordKey = tuple[str, str | None]


class MemoryRecordStore(RecordStore):
    """In-memory record store.

    Attributes:
        config: Supplies the default TTL and the claim timeout.
        _records: Mapping of ``(key, scope)`` to the stored record.
        _lock: Lock serializing every read-modify-write.
        _clock: Returns the current aware UTC time.
    """

    def __init__(
        self,
        config: IdempotencyConfig | None = None,
        clock: Callable[[], datetime] = utc_now,
    ) -> None:
        self.config = config or IdempotencyConfig()
        self._records: dict[_RecordKey, IdempotencyRecord] = {}
        self._lock = asyncio.Lock()
        self._clock = clock

    def __len__(self) -> int:
        return len(self._records)

    async def get(self, key: str, scope: str | None = None) -> IdempotencyRecord | None:
        async with self._lock:
            record = self._records.get((key, scope))
            return record.model_copy(deep=True) if record is not None else None

    async def create(
        self,
        key: str,
        *,
        scope: str | None = None,
        ttl_seconds: int | None = None,
        metadata: dict[str, Any] | None = None,
    ) -> IdempotencyRecord:
        now = self._clock()
        ttl = ttl_seconds if ttl_seconds is not None else self.config.default_ttl_seconds
        try:
            record = IdempotencyRecord(
                id=generate_uuid7(),
                key=key,
                scope=scope,
                state=RecordState.PENDING,
                metadata=metadata or {},
                expires_at=now + timedelta(seconds=ttl),
                inserted_at=now,
                updated_at=now,
            )
        except ValidationError as e:
            raise InvalidRecordError(f"Invalid idempotency record for key {key!r}", e.errors()) from e

        async with self._lock:
            if (key, scope) in self._records:
                raise AlreadyExistsError(key, scope)
            self._records[(key, scope)] = record
            return record.model_copy(deep=True)

    async def start_processing(self, record: IdempotencyRecord) -> IdempotencyRecord:
        now = self._clock()
        async with self._lock:
            live = self._records.get((record.key, record.scope))
            if (
                live is not None
                and live.id == record.id
                and live.version == record.version
                and live.state in (RecordState.PENDING, RecordState.PROCESSING)
            ):
                claimed = live.transition(
                    state=RecordState.PROCESSING,
                    version=live.version + 1,
                    started_at=now,
                    locked_until=now + timedelta(seconds=self.config.lock_timeout_seconds),
                    updated_at=now,
                )
                self._records[(record.key, record.scope)] = claimed
                return claimed.model_copy(deep=True)

            if live is not None and live.id == record.id and live.state is RecordState.PROCESSING:
                raise AlreadyProcessingError(live.model_copy(deep=True))
            raise StaleRecordError(record.key, record.scope)

    async def complete(self, record: IdempotencyRecord, response: Any) -> IdempotencyRecord:
        encoded = codec.encode(response)
        now = self._clock()
        return await self._update(
            record,
            state=RecordState.COMPLETED,
            response=encoded,
            error=None,
            completed_at=now,
            locked_until=None,
            updated_at=now,
        )

    async def fail(self, record: IdempotencyRecord, error: Any) -> IdempotencyRecord:
        encoded = codec.encode(error)
        now = self._clock()
        return await self._update(
            record,
            state=RecordState.FAILED,
            response=None,
            error=encoded,
            completed_at=now,
            locked_until=None,
            updated_at=now,
        )

    async def release(self, record: IdempotencyRecord) -> IdempotencyRecord:
        return await self._update(
            record,
            state=RecordState.PENDING,
            locked_until=None,
            started_at=None,
            updated_at=self._clock(),
        )

    async def recover_stale(self) -> int:
        now = self._clock()
        recovered = 0
        async with self._lock:
            for record_key, record in list(self._records.items()):
                if record.state is RecordState.PROCESSING and record.is_lock_expired(now):
                    self._records[record_key] = record.transition(
                        state=RecordState.PENDING,
                        locked_until=None,
                        started_at=None,
                        updated_at=now,
                    )
                    recovered += 1
        return recovered

    async def cleanup_expired(self) -> int:
        now = self._clock()
        async with self._lock:
            expired = [rk for rk, record in self._records.items() if record.is_expired(now)]
            for record_key in expired:
                del self._records[record_key]
        return len(expired)

    async def close(self) -> None:
        async with self._lock:
            self._records.clear()

    async def _update(self, record: IdempotencyRecord, **changes: Any) -> IdempotencyRecord:
        async with self._lock:
            live = self._records.get((record.key, record.scope))
            if live is None or live.id != record.id:
                raise RecordNotFoundError(record.key, record.scope)
            updated = live.transition(**changes)
            self._records[(record.key, record.scope)] = updated
            return updated.model_copy(deep=True)
