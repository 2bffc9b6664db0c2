"""Scenario 3: Concurrent Execution

Many callers race on one key; the operation runs exactly once.

- "wait": every caller receives the single outcome
- "return": one caller runs, the others get InProgressError with the record
- Distinct keys never block each other
- The same guarantees hold on the SQL store
"""

import asyncio

import pytest

from idempotent_coordinator.core.coordinator import Coordinator
from idempotent_coordinator.exceptions import InProgressError
from idempotent_coordinator.outcome import Ok


class SlowCounter:
    def __init__(self, value, delay: float) -> None:
        self.value = value
        self.delay = delay
        self.calls = 0

    async def __call__(self) -> Ok:
        self.calls += 1
        await asyncio.sleep(self.delay)
        return Ok(self.value)


@pytest.mark.asyncio
async def test_waiters_share_one_execution(coordinator: Coordinator) -> None:
    slow_fn = SlowCounter(42, delay=0.2)

    results = await asyncio.gather(
        coordinator.execute("ord2", slow_fn, on_duplicate="wait"),
        coordinator.execute("ord2", slow_fn, on_duplicate="wait"),
    )

    assert results == [Ok(42), Ok(42)]
    assert slow_fn.calls == 1


@pytest.mark.asyncio
async def test_many_callers_counter_incremented_once(coordinator: Coordinator) -> None:
    counter = {"value": 0}

    async def increment() -> Ok:
        await asyncio.sleep(0.05)
        counter["value"] += 1
        return Ok(counter["value"])

    results = await asyncio.gather(
        *(coordinator.execute("ord1", increment, on_duplicate="wait") for _ in range(25))
    )

    assert counter["value"] == 1
    assert all(result == Ok(1) for result in results)


@pytest.mark.asyncio
async def test_return_policy_single_winner(coordinator: Coordinator) -> None:
    slow_fn = SlowCounter("charged", delay=0.1)

    results = await asyncio.gather(
        *(coordinator.execute("ord1", slow_fn, on_duplicate="return") for _ in range(10)),
        return_exceptions=True,
    )

    winners = [r for r in results if isinstance(r, Ok)]
    in_progress = [r for r in results if isinstance(r, InProgressError)]
    assert winners == [Ok("charged")]
    assert len(in_progress) == 9
    assert all(e.record is not None for e in in_progress)
    assert slow_fn.calls == 1


@pytest.mark.asyncio
async def test_distinct_keys_run_in_parallel(coordinator: Coordinator) -> None:
    slow_fn = SlowCounter("ok", delay=0.2)
    loop = asyncio.get_running_loop()

    started = loop.time()
    await asyncio.gather(*(coordinator.execute(f"ord{i}", slow_fn) for i in range(5)))
    elapsed = loop.time() - started

    assert slow_fn.calls == 5
    assert elapsed < 0.2 * 5


@pytest.mark.asyncio
async def test_waiters_on_sql_store(sql_store, config, telemetry) -> None:
    coordinator = Coordinator(sql_store, config, telemetry=telemetry)
    slow_fn = SlowCounter({"id": "ch_1"}, delay=0.2)

    results = await asyncio.gather(
        *(coordinator.execute("ord1", slow_fn, on_duplicate="wait") for _ in range(5))
    )

    assert results == [Ok({"id": "ch_1"})] * 5
    assert slow_fn.calls == 1
