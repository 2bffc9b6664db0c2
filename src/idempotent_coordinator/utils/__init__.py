"""Utility functions for the idempotency coordinator."""

from idempotent_coordinator.utils.headers import (
    IDEMPOTENCY_KEY_HEADER,
    REPLAY_HEADER,
    add_replay_headers,
    filter_response_headers,
    get_header_value,
    merge_headers,
)

__all__ = [
    "IDEMPOTENCY_KEY_HEADER",
    "REPLAY_HEADER",
    "add_replay_headers",
    "filter_response_headers",
    "get_header_value",
    "merge_headers",
]
