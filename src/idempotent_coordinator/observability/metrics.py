"""Prometheus metrics for the idempotency coordinator.

Metrics:

- ``idempotency_events_total{event}``: every telemetry event emitted by the
  coordinator (cache hits, completions, releases, timeouts, ...).
- ``idempotency_execute_duration_seconds``: wall time of ``execute`` calls,
  including cache hits and waits.
- ``idempotency_active_claims``: claims currently held by this process.
- ``idempotency_maintenance_runs_total{job}`` and
  ``idempotency_maintenance_records_total{job}``: maintenance sweeps and the
  rows they touched, for ``job`` in ``recover_stale`` / ``cleanup_expired``.

Examples:
    >>> record_event("cache_hit")
    >>> record_maintenance("cleanup_expired", records=42)
"""

from prometheus_client import Counter, Gauge, Histogram

events_total = Counter(
    "idempotency_events_total",
    "Telemetry events emitted by the idempotency coordinator",
    ["event"],
)

execute_duration_seconds = Histogram(
    "idempotency_execute_duration_seconds",
    "Duration of Coordinator.execute calls in seconds",
    buckets=[0.005, 0.01, 0.025, 0.05, 0.1, 0.25, 0.5, 1, 2.5, 5, 10, 30],
)

# Claims held by this process (PROCESSING records it is running)
active_claims = Gauge(
    "idempotency_active_claims",
    "Number of idempotency claims currently held by this process",
)

maintenance_runs = Counter(
    "idempotency_maintenance_runs_total",
    "Maintenance sweeps performed",
    ["job"],
)

maintenance_records = Counter(
    "idempotency_maintenance_records_total",
    "Records recovered or deleted by maintenance sweeps",
    ["job"],
)


def record_event(event: str) -> None:
    events_total.labels(event=event).inc()


def record_execute_duration(seconds: float) -> None:
    execute_duration_seconds.observe(seconds)


def increment_active_claims() -> None:
    """Called after a successful claim."""
    active_claims.inc()


def decrement_active_claims() -> None:
    """Called once the claim is completed, failed or released."""
    active_claims.dec()


def record_maintenance(job: str, records: int) -> None:
    """Record one maintenance sweep.

    Args:
        job: "recover_stale" or "cleanup_expired"
        records: Rows affected by the sweep
    """
    maintenance_runs.labels(job=job).inc()
    maintenance_records.labels(job=job).inc(records)
