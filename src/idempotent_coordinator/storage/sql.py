"""Relational record store built on SQLAlchemy's async engine.

This is the store for real deployments: any number of processes on any
number of machines coordinate through one table. Correctness relies on the
database executing ``UPDATE ... WHERE id = :id AND version = :v AND state IN
(...)`` atomically and reporting the affected row count.

Table layout (``idempotency_records``):

- unique constraint ``uq_idempotency_records_key_scope`` on ``(key, scope)``
- index on ``locked_until`` for ``recover_stale``
- index on ``expires_at`` for ``cleanup_expired``

A None scope is stored as the reserved empty string, because most databases
do not treat NULLs as equal inside unique constraints.

Examples:
    Setting up a store::

        from sqlalchemy.ext.asyncio import create_async_engine
        from idempotent_coordinator.storage.sql import SQLRecordStore, create_schema

        engine = create_async_engine("postgresql+asyncpg://app@db/app")
        await create_schema(engine)
        store = SQLRecordStore(engine)

    From a URL::

        store = SQLRecordStore.from_url("sqlite+aiosqlite:///./idempotency.db")
"""

from collections.abc import Callable
from datetime import UTC, datetime, timedelta
from typing import Any

from pydantic import ValidationError
from sqlalchemy import (
    JSON,
    Column,
    DateTime,
    Index,
    Integer,
    MetaData,
    String,
    Table,
    TypeDecorator,
    UniqueConstraint,
    delete,
    insert,
    select,
    update,
)
from sqlalchemy.engine import Dialect, RowMapping
from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncConnection, AsyncEngine, create_async_engine

from idempotent_coordinator import codec
from idempotent_coordinator.config import IdempotencyConfig
from idempotent_coordinator.exceptions import (
    AlreadyExistsError,
    AlreadyProcessingError,
    InvalidRecordError,
    RecordNotFoundError,
    StaleRecordError,
    StorageError,
)
from idempotent_coordinator.keys import generate_uuid7
from idempotent_coordinator.models import IdempotencyRecord, RecordState
from idempotent_coordinator.observability.logging import get_logger
from idempotent_coordinator.storage.base import RecordStore, utc_now

logger = get_logger(__name__)

# Stored in place of a None scope so the unique constraint covers unscoped keys
NULL_SCOPE = ""


class UTCDateTime(TypeDecorator[datetime]):
    """Stores naive UTC datetimes and returns aware UTC datetimes."""

    impl = DateTime
    cache_ok = True

    def process_bind_param(self, value: datetime | None, dialect: Dialect) -> datetime | None:
        if value is None:
            return None
        if value.tzinfo is None:
            raise ValueError("Naive datetimes are not accepted; use timezone-aware UTC values")
        return value.astimezone(UTC).replace(tzinfo=None)

    def process_result_value(self, value: datetime | None, dialect: Dialect) -> datetime | None:
        if value is None:
            return None
        if value.tzinfo is None:
            return value.replace(tzinfo=UTC)
        return value.astimezone(UTC)


metadata = MetaData()

idempotency_records = Table(
    "idempotency_records",
    metadata,
    Column("id", String(36), primary_key=True),
    Column("key", String(255), nullable=False),
    Column("scope", String(255), nullable=False, default=NULL_SCOPE),
    Column("state", String(16), nullable=False),
    Column("version", Integer, nullable=False, default=0),
    Column("response", JSON(none_as_null=True), nullable=True),
    Column("error", JSON(none_as_null=True), nullable=True),
    Column("metadata", JSON, nullable=False),
    Column("started_at", UTCDateTime, nullable=True),
    Column("completed_at", UTCDateTime, nullable=True),
    Column("locked_until", UTCDateTime, nullable=True),
    Column("expires_at", UTCDateTime, nullable=False),
    Column("inserted_at", UTCDateTime, nullable=False),
    Column("updated_at", UTCDateTime, nullable=False),
    UniqueConstraint("key", "scope", name="uq_idempotency_records_key_scope"),
    Index("ix_idempotency_records_locked_until", "locked_until"),
    Index("ix_idempotency_records_expires_at", "expires_at"),
)


async def create_schema(engine: AsyncEngine) -> None:
    """Create the idempotency table and its indexes if they do not exist."""
    async with engine.begin() as conn:
        await conn.run_sync(metadata.create_all)


async def drop_schema(engine: AsyncEngine) -> None:
    """Drop the idempotency table."""
    async with engine.begin() as conn:
        await conn.run_sync(metadata.drop_all)


def _scope_to_db(scope: str | None) -> str:
    return NULL_SCOPE if scope is None else scope


def _row_to_record(row: RowMapping) -> IdempotencyRecord:
    return IdempotencyRecord(
        id=row["id"],
        key=row["key"],
        scope=None if row["scope"] == NULL_SCOPE else row["scope"],
        state=RecordState(row["state"]),
        version=row["version"],
        response=row["response"],
        error=row["error"],
        metadata=row["metadata"] or {},
        started_at=row["started_at"],
        completed_at=row["completed_at"],
        locked_until=row["locked_until"],
        expires_at=row["expires_at"],
        inserted_at=row["inserted_at"],
        updated_at=row["updated_at"],
    )


class SQLRecordStore(RecordStore):
    """Record store backed by a relational database.

    Each operation runs in its own short transaction; no connection or lock
    is held between calls.

    Attributes:
        engine: The async engine shared with the application.
        config: Supplies the default TTL and the claim timeout.
        _clock: Returns the current aware UTC time.
    """

    def __init__(
        self,
        engine: AsyncEngine,
        config: IdempotencyConfig | None = None,
        clock: Callable[[], datetime] = utc_now,
    ) -> None:
        self.engine = engine
        self.config = config or IdempotencyConfig()
        self._clock = clock
        self._table = idempotency_records

    @classmethod
    def from_url(
        cls,
        url: str,
        config: IdempotencyConfig | None = None,
        **engine_kwargs: Any,
    ) -> "SQLRecordStore":
        """Create a store with its own engine for ``url``."""
        engine_kwargs.setdefault("pool_pre_ping", True)
        return cls(create_async_engine(url, **engine_kwargs), config=config)

    async def get(self, key: str, scope: str | None = None) -> IdempotencyRecord | None:
        t = self._table
        try:
            async with self.engine.connect() as conn:
                result = await conn.execute(
                    select(t).where(t.c.key == key, t.c.scope == _scope_to_db(scope))
                )
                row = result.mappings().one_or_none()
        except SQLAlchemyError as e:
            raise StorageError(f"Failed to read idempotency record {key!r}: {e}", cause=e) from e
        return _row_to_record(row) if row is not None else None

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

        values = {
            "id": record.id,
            "key": record.key,
            "scope": _scope_to_db(record.scope),
            "state": record.state.value,
            "version": record.version,
            "response": None,
            "error": None,
            "metadata": record.metadata,
            "expires_at": record.expires_at,
            "inserted_at": record.inserted_at,
            "updated_at": record.updated_at,
        }
        try:
            async with self.engine.begin() as conn:
                await conn.execute(insert(self._table).values(**values))
        except IntegrityError as e:
            raise AlreadyExistsError(key, scope) from e
        except SQLAlchemyError as e:
            raise StorageError(f"Failed to create idempotency record {key!r}: {e}", cause=e) from e
        return record

    async def start_processing(self, record: IdempotencyRecord) -> IdempotencyRecord:
        t = self._table
        now = self._clock()
        locked_until = now + timedelta(seconds=self.config.lock_timeout_seconds)
        stmt = (
            update(t)
            .where(
                t.c.id == record.id,
                t.c.version == record.version,
                t.c.state.in_([RecordState.PENDING.value, RecordState.PROCESSING.value]),
            )
            .values(
                state=RecordState.PROCESSING.value,
                started_at=now,
                locked_until=locked_until,
                version=record.version + 1,
                updated_at=now,
            )
        )
        try:
            async with self.engine.begin() as conn:
                result = await conn.execute(stmt)
                if result.rowcount == 1:
                    return record.transition(
                        state=RecordState.PROCESSING,
                        version=record.version + 1,
                        started_at=now,
                        locked_until=locked_until,
                        updated_at=now,
                    )
                live = await self._fetch_by_id(conn, record.id)
        except SQLAlchemyError as e:
            raise StorageError(f"Failed to claim idempotency record {record.key!r}: {e}", cause=e) from e

        if live is not None and live.state is RecordState.PROCESSING:
            raise AlreadyProcessingError(live)
        raise StaleRecordError(record.key, record.scope)

    async def complete(self, record: IdempotencyRecord, response: Any) -> IdempotencyRecord:
        now = self._clock()
        return await self._update(
            record,
            state=RecordState.COMPLETED,
            response=codec.encode(response),
            error=None,
            completed_at=now,
            locked_until=None,
            updated_at=now,
        )

    async def fail(self, record: IdempotencyRecord, error: Any) -> IdempotencyRecord:
        now = self._clock()
        return await self._update(
            record,
            state=RecordState.FAILED,
            response=None,
            error=codec.encode(error),
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
        t = self._table
        now = self._clock()
        stmt = (
            update(t)
            .where(t.c.state == RecordState.PROCESSING.value, t.c.locked_until < now)
            .values(state=RecordState.PENDING.value, locked_until=None, started_at=None, updated_at=now)
        )
        try:
            async with self.engine.begin() as conn:
                result = await conn.execute(stmt)
        except SQLAlchemyError as e:
            raise StorageError(f"Failed to recover stale idempotency records: {e}", cause=e) from e
        return result.rowcount or 0

    async def cleanup_expired(self) -> int:
        t = self._table
        try:
            async with self.engine.begin() as conn:
                result = await conn.execute(delete(t).where(t.c.expires_at < self._clock()))
        except SQLAlchemyError as e:
            raise StorageError(f"Failed to delete expired idempotency records: {e}", cause=e) from e
        return result.rowcount or 0

    async def close(self) -> None:
        await self.engine.dispose()

    async def _fetch_by_id(self, conn: AsyncConnection, record_id: str) -> IdempotencyRecord | None:
        t = self._table
        result = await conn.execute(select(t).where(t.c.id == record_id))
        row = result.mappings().one_or_none()
        return _row_to_record(row) if row is not None else None

    async def _update(self, record: IdempotencyRecord, **changes: Any) -> IdempotencyRecord:
        updated = record.transition(**changes)
        values = dict(changes)
        if "state" in values:
            values["state"] = values["state"].value
        try:
            async with self.engine.begin() as conn:
                result = await conn.execute(
                    update(self._table).where(self._table.c.id == record.id).values(**values)
                )
        except SQLAlchemyError as e:
            raise StorageError(f"Failed to update idempotency record {record.key!r}: {e}", cause=e) from e
        if result.rowcount == 0:
            raise RecordNotFoundError(record.key, record.scope)
        return updated
