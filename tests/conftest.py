"""
Pytest configuration and shared fixtures for idempotent_coordinator tests.
"""

from datetime import UTC, datetime, timedelta

import pytest
import pytest_asyncio
from sqlalchemy.ext.asyncio import create_async_engine

from idempotent_coordinator.config import IdempotencyConfig
from idempotent_coordinator.core.coordinator import Coordinator
from idempotent_coordinator.observability.telemetry import Telemetry
from idempotent_coordinator.storage.memory import MemoryRecordStore
from idempotent_coordinator.storage.sql import SQLRecordStore, create_schema


class FakeClock:
    """Controllable clock for TTL and claim-expiry tests."""

    def __init__(self, start: datetime | None = None) -> None:
        self.now = start or datetime(2025, 1, 1, 12, 0, 0, tzinfo=UTC)

    def __call__(self) -> datetime:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += timedelta(seconds=seconds)


class EventRecorder:
    """Telemetry handler collecting event names."""

    def __init__(self) -> None:
        self.events: list[tuple[tuple[str, ...], dict, dict]] = []

    def __call__(self, name: tuple[str, ...], measurements: dict, metadata: dict) -> None:
        self.events.append((name, measurements, metadata))

    @property
    def names(self) -> list[str]:
        return [".".join(name[1:]) for name, _, _ in self.events]


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture
def config() -> IdempotencyConfig:
    return IdempotencyConfig(wait_timeout_seconds=2.0, poll_interval_seconds=0.01)


@pytest.fixture
def store(config: IdempotencyConfig) -> MemoryRecordStore:
    """Fresh in-memory store on the real clock."""
    return MemoryRecordStore(config=config)


@pytest.fixture
def clocked_store(config: IdempotencyConfig, clock: FakeClock) -> MemoryRecordStore:
    """Fresh in-memory store on the fake clock."""
    return MemoryRecordStore(config=config, clock=clock)


@pytest.fixture
def events() -> EventRecorder:
    return EventRecorder()


@pytest.fixture
def telemetry(events: EventRecorder) -> Telemetry:
    telemetry = Telemetry()
    telemetry.attach(events)
    return telemetry


@pytest.fixture
def coordinator(
    store: MemoryRecordStore,
    config: IdempotencyConfig,
    telemetry: Telemetry,
) -> Coordinator:
    return Coordinator(store, config=config, telemetry=telemetry)


@pytest_asyncio.fixture
async def sql_store(tmp_path, config: IdempotencyConfig, clock: FakeClock):
    """SQL store over a temporary SQLite file on the fake clock."""
    engine = create_async_engine(f"sqlite+aiosqlite:///{tmp_path / 'idempotency.db'}")
    await create_schema(engine)
    store = SQLRecordStore(engine, config=config, clock=clock)
    yield store
    await store.close()
