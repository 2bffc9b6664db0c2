"""Execution coordinator: runs an operation at most once per idempotency key.

``Coordinator.execute`` looks the key up, claims the record, runs the
operation and settles the record, resolving every creation and claim race
against other callers (in this process or any other sharing the store).

Dispatch on the record found for ``(key, scope)``::

    completed  -> Ok(cached response), no call
    failed     -> Err(cached error), no call
    processing -> on_duplicate policy (return / error / wait)
    pending    -> claim, then run
    not found  -> create, then claim; a lost insert re-reads and re-dispatches

Running a claimed record:

1. ``Ok(value)`` completes the record; every later caller replays ``value``.
   The fresh caller receives the codec's copy of ``value`` too, so all
   callers see the same shape. A value the codec cannot encode fails the
   record with the ``CodecError``.
2. ``Err(reason)`` is classified. Permanent errors fail the record and are
   replayed; transient ones release it so a later call runs again.
3. An exception (including cancellation) releases the claim and propagates.

Examples:
    Charging a card once::

        from idempotent_coordinator import Coordinator, Err, Ok
        from idempotent_coordinator.storage import MemoryRecordStore

        coordinator = Coordinator(MemoryRecordStore())

        async def charge() -> Ok | Err:
            result = await gateway.charge(order_id="456", amount=1000)
            return Ok(result) if result["paid"] else Err(CardDeclined())

        outcome = await coordinator.execute("charge:order_id=456", charge, scope="stripe")

    Waiting for a concurrent caller instead of failing fast::

        outcome = await coordinator.execute(key, charge, on_duplicate="wait")
"""

import asyncio
import inspect
import time
from collections.abc import Awaitable, Callable
from typing import Any

from pydantic import ValidationError

from idempotent_coordinator import codec
from idempotent_coordinator.config import DuplicatePolicy, IdempotencyConfig
from idempotent_coordinator.exceptions import (
    AlreadyExistsError,
    AlreadyProcessingError,
    CodecError,
    IdempotencyConflictError,
    InProgressError,
    InvalidRecordError,
    RecordNotFoundError,
    StaleRecordError,
    WaitTimeoutError,
)
from idempotent_coordinator.models import ExecuteOptions, IdempotencyRecord, RecordState
from idempotent_coordinator.observability.logging import get_logger, record_context
from idempotent_coordinator.observability.metrics import (
    decrement_active_claims,
    increment_active_claims,
    record_execute_duration,
)
from idempotent_coordinator.observability.telemetry import Telemetry
from idempotent_coordinator.outcome import Err, Ok, Outcome
from idempotent_coordinator.recoverable import Classifier, RecoverableClassifier
from idempotent_coordinator.storage.base import RecordStore

logger = get_logger(__name__)

Operation = Callable[[], Outcome | Awaitable[Outcome]]

# Creation and claim races restarted before giving up with a conflict
MAX_DISPATCH_ATTEMPTS = 5


class Coordinator:
    """Coordinates idempotent execution of operations against a record store.

    The coordinator holds no lock of its own; exclusivity comes entirely
    from the store's conditional claim, so any number of coordinators may
    share one store.

    Attributes:
        store: Record store shared by all cooperating callers
        config: Defaults for TTL, duplicate policy and waiting
        classifier: Decides whether an ``Err`` reason is worth retrying
        telemetry: Sink for coordinator events
    """

    def __init__(
        self,
        store: RecordStore,
        config: IdempotencyConfig | None = None,
        classifier: Classifier | None = None,
        telemetry: Telemetry | None = None,
    ) -> None:
        self.store = store
        self.config = config or IdempotencyConfig()
        self.classifier = classifier or RecoverableClassifier()
        self.telemetry = telemetry or Telemetry(prefix=self.config.telemetry_prefix_parts)

    async def execute(
        self,
        key: str,
        fn: Operation,
        *,
        scope: str | None = None,
        ttl_seconds: int | None = None,
        on_duplicate: DuplicatePolicy | None = None,
        wait_timeout_seconds: float | None = None,
        metadata: dict[str, Any] | None = None,
    ) -> Outcome:
        """Run ``fn`` at most once for ``(key, scope)`` and return its outcome.

        Args:
            key: Idempotency key identifying the logical operation
            fn: Zero-argument callable returning ``Ok``/``Err``, directly or
                as an awaitable
            scope: Namespace for the key, e.g. the downstream provider
            ttl_seconds: Lifetime of a newly created record
            on_duplicate: Policy when another caller holds the claim
                ("return", "error" or "wait"); defaults to the config
            wait_timeout_seconds: Upper bound for the "wait" policy
            metadata: Context stored on a newly created record

        Returns:
            The fresh outcome of ``fn``, or the cached outcome of an
            earlier call with the same key.

        Raises:
            InProgressError: Another caller holds the claim ("return"/"error").
            WaitTimeoutError: The claim holder did not settle in time ("wait").
            IdempotencyConflictError: A creation or claim race could not be
                resolved.
            InvalidRecordError: The key or options are invalid.
            StorageError: The store failed.
            TypeError: ``fn`` returned something other than ``Ok``/``Err``.
        """
        try:
            options = ExecuteOptions(
                scope=scope,
                ttl_seconds=ttl_seconds,
                on_duplicate=on_duplicate or self.config.on_duplicate,
                wait_timeout_seconds=(
                    wait_timeout_seconds
                    if wait_timeout_seconds is not None
                    else self.config.wait_timeout_seconds
                ),
                poll_interval_seconds=self.config.poll_interval_seconds,
                metadata=metadata or {},
            )
        except ValidationError as e:
            raise InvalidRecordError(f"Invalid execute options for key {key!r}", e.errors()) from e

        start = time.perf_counter()
        self.telemetry.emit("execute.start", key=key, scope=scope)
        with record_context(key, scope):
            try:
                return await self._dispatch(key, fn, options)
            finally:
                duration = time.perf_counter() - start
                record_execute_duration(duration)
                self.telemetry.emit("execute.stop", key=key, scope=scope, duration=duration)

    async def _dispatch(self, key: str, fn: Operation, options: ExecuteOptions) -> Outcome:
        scope = options.scope
        record = await self.store.get(key, scope)
        restarts = 0
        wait_deadline: float | None = None

        while True:
            if restarts >= MAX_DISPATCH_ATTEMPTS:
                raise IdempotencyConflictError(
                    key, scope, reason=f"unresolved after {MAX_DISPATCH_ATTEMPTS} attempts"
                )

            if record is None:
                try:
                    record = await self.store.create(
                        key,
                        scope=scope,
                        ttl_seconds=options.ttl_seconds,
                        metadata=options.metadata,
                    )
                    logger.debug("record.created", record_id=record.id)
                except AlreadyExistsError:
                    logger.debug("record.create_lost")
                    restarts += 1
                    record = await self.store.get(key, scope)
                    if record is None:
                        raise IdempotencyConflictError(
                            key, scope, reason="record vanished after a concurrent create"
                        ) from None
                    continue

            if record.state is RecordState.COMPLETED:
                self.telemetry.emit("cache_hit", key=key, scope=scope)
                return Ok(codec.decode(record.response))

            if record.state is RecordState.FAILED:
                self.telemetry.emit("cache_hit_failed", key=key, scope=scope)
                return Err(codec.decode(record.error))

            if record.state is RecordState.PROCESSING:
                if wait_deadline is None:
                    wait_deadline = time.monotonic() + options.wait_timeout_seconds
                record = await self._handle_in_progress(record, options, wait_deadline)
                continue

            try:
                claimed = await self.store.start_processing(record)
            except AlreadyProcessingError as e:
                logger.debug("record.claim_lost", version=e.record.version)
                if wait_deadline is None:
                    wait_deadline = time.monotonic() + options.wait_timeout_seconds
                record = await self._handle_in_progress(e.record, options, wait_deadline)
                continue
            except StaleRecordError:
                logger.debug("record.claim_stale")
                restarts += 1
                record = await self.store.get(key, scope)
                if record is None:
                    raise IdempotencyConflictError(
                        key, scope, reason="record vanished after a stale claim"
                    ) from None
                continue

            logger.info("record.claimed", record_id=claimed.id, version=claimed.version)
            return await self._run(claimed, fn)

    async def _handle_in_progress(
        self,
        record: IdempotencyRecord,
        options: ExecuteOptions,
        wait_deadline: float,
    ) -> IdempotencyRecord | None:
        """Apply the duplicate policy to a record another caller is processing.

        Returns the record to re-dispatch on ("wait" only): settled, pending
        again, or None if it was deleted.
        """
        if options.on_duplicate == "return":
            self.telemetry.emit("in_progress", key=record.key, scope=record.scope)
            raise InProgressError(record.key, record.scope, record=record)

        if options.on_duplicate == "error":
            self.telemetry.emit("in_progress", key=record.key, scope=record.scope)
            raise InProgressError(record.key, record.scope)

        return await self._wait_for_completion(record, options, wait_deadline)

    async def _wait_for_completion(
        self,
        record: IdempotencyRecord,
        options: ExecuteOptions,
        deadline: float,
    ) -> IdempotencyRecord | None:
        started = deadline - options.wait_timeout_seconds
        while True:
            remaining = deadline - time.monotonic()
            if remaining <= 0:
                waited = time.monotonic() - started
                self.telemetry.emit(
                    "wait_timeout", key=record.key, scope=record.scope, waited=waited
                )
                raise WaitTimeoutError(record.key, record.scope, waited)

            await asyncio.sleep(min(options.poll_interval_seconds, remaining))

            live = await self.store.get(record.key, record.scope)
            if live is None:
                logger.debug("wait.record_vanished")
                return None
            if live.state is not RecordState.PROCESSING:
                return live

    async def _run(self, claimed: IdempotencyRecord, fn: Operation) -> Outcome:
        increment_active_claims()
        try:
            try:
                outcome = fn()
                if inspect.isawaitable(outcome):
                    outcome = await outcome
            except BaseException as e:
                self.telemetry.emit("error", key=claimed.key, scope=claimed.scope)
                logger.warning("operation.raised", error_type=type(e).__name__, error=str(e))
                await self._release_quietly(claimed)
                raise

            if isinstance(outcome, Ok):
                return await self._settle(claimed, outcome, self.store.complete, "completed")

            if isinstance(outcome, Err):
                if self._is_retryable(outcome.error):
                    await self.store.release(claimed)
                    self.telemetry.emit("released", key=claimed.key, scope=claimed.scope)
                    logger.info("record.released", error_type=type(outcome.error).__name__)
                    return outcome
                return await self._settle(claimed, outcome, self.store.fail, "failed")

            await self._release_quietly(claimed)
            raise TypeError(
                f"Operation for key {claimed.key!r} must return Ok or Err, "
                f"got {type(outcome).__name__}"
            )
        finally:
            decrement_active_claims()

    async def _settle(
        self,
        claimed: IdempotencyRecord,
        outcome: Ok | Err,
        write: Callable[[IdempotencyRecord, Any], Awaitable[IdempotencyRecord]],
        event: str,
    ) -> Outcome:
        try:
            if isinstance(outcome, Ok):
                outcome = Ok(codec.normalize(outcome.value))
            else:
                codec.encode(outcome.error)
        except CodecError as e:
            # The operation already ran; releasing would run it again
            logger.error("record.unencodable_outcome", error=e.message)
            outcome, write, event = Err(e), self.store.fail, "failed"

        payload = outcome.value if isinstance(outcome, Ok) else outcome.error
        try:
            await write(claimed, payload)
        except RecordNotFoundError:
            # Deleted mid-run; the caller still gets the fresh outcome
            logger.warning("record.vanished_before_settle", state=event)
            return outcome
        except Exception:
            await self._release_quietly(claimed)
            raise

        self.telemetry.emit(event, key=claimed.key, scope=claimed.scope)
        logger.info(f"record.{event}")
        return outcome

    def _is_retryable(self, error: Any) -> bool:
        try:
            return bool(self.classifier.is_retryable(error))
        except Exception:
            logger.exception("classifier.failed", error_type=type(error).__name__)
            return True

    async def _release_quietly(self, claimed: IdempotencyRecord) -> None:
        try:
            await self.store.release(claimed)
        except Exception:
            logger.exception("record.release_failed", record_id=claimed.id)
            return
        self.telemetry.emit("released", key=claimed.key, scope=claimed.scope)
