"""Record stores for the idempotency coordinator.

All stores implement the RecordStore protocol defined in base.py.

Available Stores:
    - MemoryRecordStore: In-memory storage with asyncio concurrency control
    - SQLRecordStore: Relational storage through SQLAlchemy's async engine
"""

from sqlalchemy.ext.asyncio import AsyncEngine

from idempotent_coordinator.config import IdempotencyConfig
from idempotent_coordinator.storage.base import RecordStore, utc_now
from idempotent_coordinator.storage.memory import MemoryRecordStore
from idempotent_coordinator.storage.sql import SQLRecordStore, create_schema, drop_schema


def build_store(config: IdempotencyConfig, engine: AsyncEngine | None = None) -> RecordStore:
    """Build the store selected by ``config.storage_adapter``.

    Args:
        config: Configuration naming the adapter and its settings
        engine: Existing engine for the SQL store; when omitted one is
            created from ``config.database_url``

    Examples:
        >>> store = build_store(IdempotencyConfig(storage_adapter="memory"))
        >>> isinstance(store, MemoryRecordStore)
        True
    """
    if config.storage_adapter == "sql":
        if engine is not None:
            return SQLRecordStore(engine, config=config)
        return SQLRecordStore.from_url(config.database_url, config=config)
    return MemoryRecordStore(config=config)


__all__ = [
    "RecordStore",
    "MemoryRecordStore",
    "SQLRecordStore",
    "build_store",
    "create_schema",
    "drop_schema",
    "utc_now",
]
