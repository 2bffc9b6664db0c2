"""Header utilities for the request middleware and its adapters.

This module provides functions for:
- Case-insensitive header lookup and merging
- Filtering hop-by-hop and volatile headers out of cached responses
- Marking responses as fresh or replayed
"""

IDEMPOTENCY_KEY_HEADER = "Idempotency-Key"
REPLAY_HEADER = "Idempotent-Replay"

# Removed before a response is cached; they describe the original
# connection, not the response
VOLATILE_HEADERS = {
    "date",
    "server",
    "connection",
    "transfer-encoding",
    "keep-alive",
    "trailer",
    "upgrade",
    "proxy-connection",
    "proxy-authenticate",
    "proxy-authorization",
}


def filter_response_headers(
    headers: dict[str, str],
    additional_volatile: list[str] | None = None,
) -> dict[str, str]:
    """Drop volatile headers from a response before it is cached.

    Args:
        headers: Original response headers
        additional_volatile: Additional header names to remove (case-insensitive)

    Example:
        >>> filter_response_headers({"Content-Type": "application/json", "Date": "Mon"})
        {'Content-Type': 'application/json'}
    """
    headers_to_remove = set(VOLATILE_HEADERS)
    if additional_volatile:
        headers_to_remove.update(h.lower() for h in additional_volatile)

    return {key: value for key, value in headers.items() if key.lower() not in headers_to_remove}


def get_header_value(
    headers: dict[str, str],
    header_name: str,
    default: str | None = None,
) -> str | None:
    """Get a header value with case-insensitive lookup.

    Example:
        >>> get_header_value({"Idempotency-Key": "abc"}, "idempotency-key")
        'abc'
    """
    header_name_lower = header_name.lower()
    for key, value in headers.items():
        if key.lower() == header_name_lower:
            return value
    return default


def merge_headers(*header_dicts: dict[str, str]) -> dict[str, str]:
    """Merge header dictionaries; later ones win regardless of key case.

    Example:
        >>> merge_headers({"idempotency-key": "a"}, {"Idempotency-Key": "b"})
        {'Idempotency-Key': 'b'}
    """
    canonical_keys: dict[str, str] = {}
    result: dict[str, str] = {}

    for headers in header_dicts:
        for key, value in headers.items():
            key_lower = key.lower()
            old_key = canonical_keys.get(key_lower)
            if old_key is not None:
                result.pop(old_key, None)
            canonical_keys[key_lower] = key
            result[key] = value

    return result


def add_replay_headers(
    headers: dict[str, str],
    idempotency_key: str,
    is_replay: bool = True,
) -> dict[str, str]:
    """Return a copy of ``headers`` carrying the key and the replay flag.

    Example:
        >>> add_replay_headers({}, "abc-123")
        {'Idempotent-Replay': 'true', 'Idempotency-Key': 'abc-123'}
    """
    return merge_headers(
        headers,
        {
            REPLAY_HEADER: "true" if is_replay else "false",
            IDEMPOTENCY_KEY_HEADER: idempotency_key,
        },
    )
