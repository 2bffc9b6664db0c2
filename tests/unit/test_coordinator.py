"""Unit tests for Coordinator.execute.

This test suite covers:
    - Fresh execution and cache replay of successes and permanent failures
    - Transient failures and exceptions releasing the claim
    - The return / error / wait duplicate policies
    - Creation and claim races, including the conflict edge cases
    - Telemetry emitted along each path
"""

import asyncio
import uuid
from datetime import datetime, timezone
from decimal import Decimal

import pytest

from idempotent_coordinator.codec import CachedError
from idempotent_coordinator.core.coordinator import MAX_DISPATCH_ATTEMPTS, Coordinator
from idempotent_coordinator.exceptions import (
    AlreadyExistsError,
    CodecError,
    IdempotencyConflictError,
    InProgressError,
    InvalidRecordError,
    RecordNotFoundError,
    StaleRecordError,
    WaitTimeoutError,
)
from idempotent_coordinator.keys import generate_key, hash_key
from idempotent_coordinator.models import RecordState
from idempotent_coordinator.outcome import Err, Ok
from idempotent_coordinator.recoverable import PermanentError, TransientError
from idempotent_coordinator.storage.memory import MemoryRecordStore


class CardDeclined(PermanentError):
    pass


class GatewayTimeout(TransientError):
    pass


class Counter:
    """Operation that counts its calls and returns a fixed outcome."""

    def __init__(self, outcome=None, delay: float = 0.0) -> None:
        self.calls = 0
        self.outcome = outcome if outcome is not None else Ok({"id": "ch_1"})
        self.delay = delay

    async def __call__(self):
        self.calls += 1
        if self.delay:
            await asyncio.sleep(self.delay)
        return self.outcome


# ============================================================================
# Fresh execution and replay
# ============================================================================


@pytest.mark.asyncio
async def test_fresh_execution_completes_record(coordinator: Coordinator, store, events) -> None:
    fn = Counter()
    outcome = await coordinator.execute("order-1", fn, scope="stripe", metadata={"user": 7})

    assert outcome == Ok({"id": "ch_1"})
    assert fn.calls == 1

    record = await store.get("order-1", "stripe")
    assert record.state is RecordState.COMPLETED
    assert record.metadata == {"user": 7}
    assert events.names == ["execute.start", "completed", "execute.stop"]


@pytest.mark.asyncio
async def test_completed_record_is_replayed(coordinator: Coordinator, events) -> None:
    first = Counter(Ok({"id": "ch_1"}))
    second = Counter(Ok({"id": "ch_2"}))

    await coordinator.execute("order-1", first)
    outcome = await coordinator.execute("order-1", second)

    assert outcome == Ok({"id": "ch_1"})
    assert second.calls == 0
    assert "cache_hit" in events.names


@pytest.mark.asyncio
async def test_sync_operation(coordinator: Coordinator) -> None:
    outcome = await coordinator.execute("order-1", lambda: Ok(42))
    assert outcome == Ok(42)
    assert await coordinator.execute("order-1", lambda: Ok(0)) == Ok(42)


@pytest.mark.asyncio
async def test_keys_are_scoped(coordinator: Coordinator) -> None:
    fn = Counter()
    await coordinator.execute("order-1", fn, scope="stripe")
    await coordinator.execute("order-1", fn, scope="paypal")
    await coordinator.execute("order-1", fn)
    assert fn.calls == 3


@pytest.mark.asyncio
async def test_custom_ttl(coordinator: Coordinator, store) -> None:
    await coordinator.execute("order-1", Counter(), ttl_seconds=60)
    record = await store.get("order-1")
    assert (record.expires_at - record.inserted_at).total_seconds() == 60


# ============================================================================
# Failures
# ============================================================================


@pytest.mark.asyncio
async def test_permanent_error_is_cached(coordinator: Coordinator, store, events) -> None:
    fn = Counter(Err(CardDeclined("insufficient funds")))

    first = await coordinator.execute("order-1", fn)
    second = await coordinator.execute("order-1", fn)

    assert isinstance(first.error, CardDeclined)
    assert isinstance(second, Err)
    assert isinstance(second.error, CachedError)
    assert second.error.message == "insufficient funds"
    assert fn.calls == 1
    assert (await store.get("order-1")).state is RecordState.FAILED
    assert events.names.count("failed") == 1
    assert "cache_hit_failed" in events.names


@pytest.mark.asyncio
async def test_transient_error_releases(coordinator: Coordinator, store, events) -> None:
    fn = Counter(Err(GatewayTimeout("upstream timeout")))

    first = await coordinator.execute("order-1", fn)
    assert isinstance(first.error, GatewayTimeout)
    assert (await store.get("order-1")).state is RecordState.PENDING
    assert "released" in events.names

    fn.outcome = Ok("recovered")
    assert await coordinator.execute("order-1", fn) == Ok("recovered")
    assert fn.calls == 2


@pytest.mark.asyncio
async def test_unclassified_error_is_transient(coordinator: Coordinator, store) -> None:
    fn = Counter(Err({"code": "rate_limited"}))
    await coordinator.execute("order-1", fn)
    await coordinator.execute("order-1", fn)
    assert fn.calls == 2


@pytest.mark.asyncio
async def test_raising_classifier_means_transient(store, config, telemetry) -> None:
    class BrokenClassifier:
        def is_retryable(self, error) -> bool:
            raise RuntimeError("classifier down")

    coordinator = Coordinator(store, config, classifier=BrokenClassifier(), telemetry=telemetry)
    await coordinator.execute("order-1", Counter(Err(CardDeclined())))
    assert (await store.get("order-1")).state is RecordState.PENDING


@pytest.mark.asyncio
async def test_exception_releases_and_propagates(coordinator: Coordinator, store, events) -> None:
    async def boom():
        raise ConnectionError("socket closed")

    with pytest.raises(ConnectionError):
        await coordinator.execute("order-1", boom)

    record = await store.get("order-1")
    assert record.state is RecordState.PENDING
    assert record.locked_until is None
    assert events.names == ["execute.start", "error", "released", "execute.stop"]

    assert await coordinator.execute("order-1", Counter()) == Ok({"id": "ch_1"})


@pytest.mark.asyncio
async def test_cancellation_releases(coordinator: Coordinator, store) -> None:
    started = asyncio.Event()

    async def slow():
        started.set()
        await asyncio.sleep(10)
        return Ok("never")

    task = asyncio.create_task(coordinator.execute("order-1", slow))
    await started.wait()
    task.cancel()
    with pytest.raises(asyncio.CancelledError):
        await task

    assert (await store.get("order-1")).state is RecordState.PENDING


@pytest.mark.asyncio
async def test_non_outcome_return_is_type_error(coordinator: Coordinator, store) -> None:
    with pytest.raises(TypeError, match="must return Ok or Err"):
        await coordinator.execute("order-1", lambda: {"id": "ch_1"})
    assert (await store.get("order-1")).state is RecordState.PENDING


@pytest.mark.asyncio
async def test_record_deleted_mid_run_still_returns(store, config, telemetry) -> None:
    class VanishingStore(MemoryRecordStore):
        async def complete(self, record, response):
            raise RecordNotFoundError(record.key, record.scope)

    coordinator = Coordinator(VanishingStore(config), config, telemetry=telemetry)
    assert await coordinator.execute("order-1", Counter(Ok(1))) == Ok(1)


@pytest.mark.asyncio
async def test_rich_values_complete_once(coordinator: Coordinator, store) -> None:
    charge = {
        "id": "ch_1",
        "created": datetime(2024, 5, 1, 12, 0, tzinfo=timezone.utc),
        "amount": Decimal("10.50"),
        "customer": uuid.UUID(int=1),
        "tags": {"priority"},
    }
    fn = Counter(Ok(charge))

    first = await coordinator.execute("order-1", fn)
    second = await coordinator.execute("order-1", fn)

    assert fn.calls == 1
    assert first == second
    assert first.value["created"] == "2024-05-01T12:00:00Z"
    assert first.value["amount"] == "10.50"
    assert first.value["customer"] == str(uuid.UUID(int=1))
    assert first.value["tags"] == ["priority"]
    assert (await store.get("order-1")).state is RecordState.COMPLETED


@pytest.mark.asyncio
async def test_unencodable_value_fails_record(coordinator: Coordinator, store, events) -> None:
    fn = Counter(Ok({"callback": object()}))

    first = await coordinator.execute("order-1", fn)
    second = await coordinator.execute("order-1", fn)

    assert fn.calls == 1
    assert isinstance(first.error, CodecError)
    assert isinstance(second.error, CachedError)
    assert second.error.type_name.endswith(".CodecError")
    assert (await store.get("order-1")).state is RecordState.FAILED
    assert events.names.count("failed") == 1
    assert "released" not in events.names


@pytest.mark.asyncio
async def test_invalid_options(coordinator: Coordinator) -> None:
    with pytest.raises(InvalidRecordError):
        await coordinator.execute("order-1", Counter(), scope="")
    with pytest.raises(InvalidRecordError):
        await coordinator.execute("order-1", Counter(), on_duplicate="ignore")  # type: ignore[arg-type]


@pytest.mark.asyncio
async def test_invalid_key(coordinator: Coordinator) -> None:
    with pytest.raises(InvalidRecordError):
        await coordinator.execute("k" * 256, Counter())


@pytest.mark.asyncio
async def test_long_params_need_hash_key(coordinator: Coordinator) -> None:
    params = {"note": "n" * 300}

    with pytest.raises(InvalidRecordError):
        await coordinator.execute(generate_key("refund", params), Counter())
    assert await coordinator.execute(hash_key("refund", params), Counter()) == Ok({"id": "ch_1"})


# ============================================================================
# Duplicate policies
# ============================================================================


async def hold_claim(store: MemoryRecordStore, key: str = "order-1"):
    return await store.start_processing(await store.create(key))


@pytest.mark.asyncio
async def test_return_policy_exposes_record(coordinator: Coordinator, store, events) -> None:
    held = await hold_claim(store)
    fn = Counter()

    with pytest.raises(InProgressError) as exc_info:
        await coordinator.execute("order-1", fn, on_duplicate="return")

    assert exc_info.value.record.id == held.id
    assert exc_info.value.record.state is RecordState.PROCESSING
    assert fn.calls == 0
    assert "in_progress" in events.names


@pytest.mark.asyncio
async def test_error_policy_hides_record(coordinator: Coordinator, store) -> None:
    await hold_claim(store)
    with pytest.raises(InProgressError) as exc_info:
        await coordinator.execute("order-1", Counter(), on_duplicate="error")
    assert exc_info.value.record is None


@pytest.mark.asyncio
async def test_wait_policy_times_out(coordinator: Coordinator, store, events) -> None:
    await hold_claim(store)
    with pytest.raises(WaitTimeoutError) as exc_info:
        await coordinator.execute(
            "order-1", Counter(), on_duplicate="wait", wait_timeout_seconds=0.05
        )
    assert exc_info.value.waited_seconds >= 0.05
    assert "wait_timeout" in events.names


@pytest.mark.asyncio
async def test_wait_policy_returns_settled_outcome(coordinator: Coordinator, store) -> None:
    held = await hold_claim(store)

    async def finish_later():
        await asyncio.sleep(0.05)
        await store.complete(held, {"id": "from-holder"})

    fn = Counter()
    finisher = asyncio.create_task(finish_later())
    outcome = await coordinator.execute("order-1", fn, on_duplicate="wait")
    await finisher

    assert outcome == Ok({"id": "from-holder"})
    assert fn.calls == 0


@pytest.mark.asyncio
async def test_wait_policy_claims_released_record(coordinator: Coordinator, store) -> None:
    held = await hold_claim(store)

    async def release_later():
        await asyncio.sleep(0.05)
        await store.release(held)

    fn = Counter(Ok("second attempt"))
    releaser = asyncio.create_task(release_later())
    outcome = await coordinator.execute("order-1", fn, on_duplicate="wait")
    await releaser

    assert outcome == Ok("second attempt")
    assert fn.calls == 1


@pytest.mark.asyncio
async def test_wait_policy_recreates_vanished_record(coordinator: Coordinator, store, clock) -> None:
    await hold_claim(store)

    async def expire_later():
        await asyncio.sleep(0.05)
        store._records.clear()

    fn = Counter(Ok("fresh"))
    expirer = asyncio.create_task(expire_later())
    outcome = await coordinator.execute("order-1", fn, on_duplicate="wait")
    await expirer

    assert outcome == Ok("fresh")
    assert fn.calls == 1


@pytest.mark.asyncio
async def test_default_policy_from_config(store, telemetry) -> None:
    from idempotent_coordinator.config import IdempotencyConfig

    config = IdempotencyConfig(on_duplicate="error")
    coordinator = Coordinator(store, config, telemetry=telemetry)
    await hold_claim(store)

    with pytest.raises(InProgressError) as exc_info:
        await coordinator.execute("order-1", Counter())
    assert exc_info.value.record is None


# ============================================================================
# Races
# ============================================================================


@pytest.mark.asyncio
async def test_lost_create_race_replays_winner(config, telemetry) -> None:
    class RacingStore(MemoryRecordStore):
        async def create(self, key, **kwargs):
            winner = await super().create(key, **kwargs)
            claimed = await self.start_processing(winner)
            await self.complete(claimed, "winner")
            raise AlreadyExistsError(key, kwargs.get("scope"))

    coordinator = Coordinator(RacingStore(config), config, telemetry=telemetry)
    fn = Counter()
    assert await coordinator.execute("order-1", fn) == Ok("winner")
    assert fn.calls == 0


@pytest.mark.asyncio
async def test_vanished_after_create_race_is_conflict(config, telemetry) -> None:
    class PhantomStore(MemoryRecordStore):
        async def create(self, key, **kwargs):
            raise AlreadyExistsError(key, kwargs.get("scope"))

    coordinator = Coordinator(PhantomStore(config), config, telemetry=telemetry)
    with pytest.raises(IdempotencyConflictError, match="vanished"):
        await coordinator.execute("order-1", Counter())


@pytest.mark.asyncio
async def test_stale_claim_redispatches(config, telemetry) -> None:
    class OvertakenStore(MemoryRecordStore):
        async def start_processing(self, record):
            if not getattr(self, "overtaken", False):
                self.overtaken = True
                claimed = await super().start_processing(record)
                await self.complete(claimed, "other process")
                raise StaleRecordError(record.key, record.scope)
            return await super().start_processing(record)

    coordinator = Coordinator(OvertakenStore(config), config, telemetry=telemetry)
    fn = Counter()
    assert await coordinator.execute("order-1", fn) == Ok("other process")
    assert fn.calls == 0


@pytest.mark.asyncio
async def test_endless_stale_claims_are_bounded(config, telemetry) -> None:
    class AlwaysStaleStore(MemoryRecordStore):
        claims = 0

        async def start_processing(self, record):
            self.claims += 1
            raise StaleRecordError(record.key, record.scope)

    store = AlwaysStaleStore(config)
    coordinator = Coordinator(store, config, telemetry=telemetry)

    with pytest.raises(IdempotencyConflictError, match="attempts"):
        await coordinator.execute("order-1", Counter())
    assert store.claims == MAX_DISPATCH_ATTEMPTS


@pytest.mark.asyncio
async def test_concurrent_waiters_run_once(coordinator: Coordinator) -> None:
    fn = Counter(Ok(42), delay=0.1)

    results = await asyncio.gather(
        *(coordinator.execute("order-1", fn, on_duplicate="wait") for _ in range(10))
    )

    assert results == [Ok(42)] * 10
    assert fn.calls == 1
