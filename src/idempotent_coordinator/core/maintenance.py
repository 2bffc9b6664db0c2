"""Maintenance sweeps over the record store.

Two independent, idempotent jobs keep the store healthy:

1. ``recover_stale`` returns abandoned claims (PROCESSING past
   ``locked_until``, e.g. after a crash) to PENDING so the next caller can
   run the operation.
2. ``cleanup_expired`` deletes records past ``expires_at``, in any state,
   which bounds storage growth and lets old keys be reused.

Both return the number of affected records and are safe to run
concurrently from several processes. Scheduling them is the application's
concern; ``start_maintenance_task`` runs both in a background loop for
applications without a scheduler.

Examples:
    One-off sweep (cron job, management command)::

        report = await run_maintenance(store)
        print(report.recovered, report.deleted)

    Background task tied to the application lifespan::

        from contextlib import asynccontextmanager
        from fastapi import FastAPI

        @asynccontextmanager
        async def lifespan(app: FastAPI):
            task = await start_maintenance_task(store, interval_seconds=300)
            yield
            await stop_maintenance_task(task)
"""

import asyncio
from dataclasses import dataclass

from idempotent_coordinator.observability.logging import get_logger
from idempotent_coordinator.observability.metrics import record_maintenance
from idempotent_coordinator.storage.base import RecordStore

logger = get_logger(__name__)


@dataclass(frozen=True)
class MaintenanceReport:
    """Counts from one pass of both sweeps."""

    recovered: int
    deleted: int


async def recover_stale(store: RecordStore) -> int:
    """Reset abandoned claims to PENDING.

    Returns:
        Number of records recovered
    """
    count = await store.recover_stale()
    record_maintenance("recover_stale", count)
    if count > 0:
        logger.info("maintenance.recovered", records_recovered=count)
    else:
        logger.debug("maintenance.recovered", records_recovered=0)
    return count


async def cleanup_expired(store: RecordStore) -> int:
    """Delete records whose TTL has passed.

    Returns:
        Number of records deleted
    """
    count = await store.cleanup_expired()
    record_maintenance("cleanup_expired", count)
    if count > 0:
        logger.info("maintenance.cleaned", records_removed=count)
    else:
        logger.debug("maintenance.cleaned", records_removed=0)
    return count


async def run_maintenance(store: RecordStore) -> MaintenanceReport:
    """Run both sweeps once, stale recovery first."""
    recovered = await recover_stale(store)
    deleted = await cleanup_expired(store)
    return MaintenanceReport(recovered=recovered, deleted=deleted)


async def maintenance_loop(
    store: RecordStore,
    interval_seconds: float = 300,
    stop_event: asyncio.Event | None = None,
) -> None:
    """Run both sweeps every ``interval_seconds`` until ``stop_event`` is set.

    A failing sweep is logged and the loop carries on with the next interval.

    Args:
        store: Record store to sweep
        interval_seconds: Time between sweeps (default 300s = 5 minutes)
        stop_event: Event to signal the loop to stop (optional)
    """
    if stop_event is None:
        stop_event = asyncio.Event()

    logger.info("maintenance.started", interval_seconds=interval_seconds)

    while not stop_event.is_set():
        try:
            await run_maintenance(store)
        except Exception as e:
            logger.error(
                "maintenance.failed",
                error=str(e),
                error_type=type(e).__name__,
            )

        try:
            await asyncio.wait_for(stop_event.wait(), timeout=interval_seconds)
        except TimeoutError:
            continue

    logger.info("maintenance.stopped")


async def start_maintenance_task(
    store: RecordStore,
    interval_seconds: float = 300,
) -> asyncio.Task[None]:
    """Start the maintenance loop as a background task.

    Returns:
        The asyncio Task running the loop; pass it to ``stop_maintenance_task``.
    """
    stop_event = asyncio.Event()
    task = asyncio.create_task(
        maintenance_loop(store=store, interval_seconds=interval_seconds, stop_event=stop_event)
    )
    task._stop_event = stop_event  # type: ignore[attr-defined]
    return task


async def stop_maintenance_task(task: asyncio.Task[None], timeout_seconds: float = 5.0) -> None:
    """Signal the loop to stop and wait for it, cancelling it if it hangs."""
    stop_event: asyncio.Event | None = getattr(task, "_stop_event", None)
    if stop_event:
        stop_event.set()

    try:
        await asyncio.wait_for(task, timeout=timeout_seconds)
    except TimeoutError:
        logger.warning("maintenance.stop_timeout", timeout_seconds=timeout_seconds)
        task.cancel()
        try:
            await task
        except asyncio.CancelledError:
            logger.debug("maintenance.cancelled")
