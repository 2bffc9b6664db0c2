"""End-to-end scenarios for the idempotency coordinator.

Each scenario drives the public API the way an application would and checks
one aspect of at-most-once execution across retries, failures, concurrency,
expiry, crashes and HTTP integration.
"""
