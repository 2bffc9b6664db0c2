"""Idempotency key generation.

Three ways to obtain a key:

1. ``generate_key()`` - a random, time-ordered UUIDv7 string.
2. ``generate_key(operation, params)`` - a readable deterministic key built
   from the operation name and sorted ``name=value`` pairs. Meant for small,
   non-sensitive parameters such as ids.
3. ``hash_key(operation, params)`` - a deterministic key embedding a
   truncated SHA-256 digest instead of raw values. Meant for large, nested
   or sensitive parameters.

Examples:
    >>> generate_key("create_order", {"user_id": 1, "cart_id": 2})
    'create_order:cart_id=2:user_id=1'
    >>> generate_key("charge", {"order_id": 456}, scope="stripe")
    'stripe:charge:order_id=456'
    >>> hash_key("create_customer", {"email": "user@example.com"})  # doctest: +SKIP
    'create_customer:5b0e1d2f...'
"""

import hashlib
import json
import os
import time
import uuid
from collections.abc import Iterable, Mapping
from typing import Any

from pydantic_core import to_jsonable_python

# Hex characters of the SHA-256 digest kept by hash_key (32 hex = 128 bits)
HASH_KEY_HEX_LENGTH = 32


def generate_uuid7() -> str:
    """Generate a UUIDv7 string (time-ordered).

    Layout:
    - 48-bit Unix timestamp in milliseconds
    - 4-bit version (0b0111)
    - 2-bit variant (0b10)
    - remaining bits random
    """
    ts_ms = int(time.time() * 1000)
    raw = bytearray(ts_ms.to_bytes(6, "big", signed=False) + os.urandom(10))
    raw[6] = (raw[6] & 0x0F) | 0x70
    raw[8] = (raw[8] & 0x3F) | 0x80
    return str(uuid.UUID(bytes=bytes(raw)))


def generate_key(
    operation: str | None = None,
    params: Mapping[str, Any] | Iterable[tuple[str, Any]] | None = None,
    *,
    scope: str | None = None,
) -> str:
    """Generate an idempotency key.

    Called without an operation, returns a fresh UUIDv7. Otherwise builds
    ``[scope:]operation[:name=value...]`` with parameters sorted by name so
    parameter order never changes the key. A ``scope`` entry inside
    ``params`` is treated as the scope prefix, not as a parameter.

    Records accept keys of at most ``MAX_KEY_LENGTH`` (255) characters and
    ``execute`` rejects longer ones with ``InvalidRecordError``. The key is
    never truncated here; use ``hash_key`` when parameters can be long.

    Args:
        operation: Operation name, e.g. "create_customer".
        params: Mapping or iterable of ``(name, value)`` pairs.
        scope: Optional namespace prefix, e.g. "stripe".

    Returns:
        The idempotency key.

    Examples:
        >>> generate_key("create_order", [("user_id", 1), ("cart_id", 2)])
        'create_order:cart_id=2:user_id=1'
        >>> generate_key("ping")
        'ping'
    """
    if operation is None:
        if params:
            raise ValueError("params require an operation name")
        return generate_uuid7()

    pairs = _normalize_params(params)
    embedded_scope = pairs.pop("scope", None)
    if scope is None and embedded_scope is not None:
        scope = str(embedded_scope)

    parts = [f"{name}={_format_value(value)}" for name, value in sorted(pairs.items())]
    base_key = ":".join([str(operation), *parts])
    return _with_scope(base_key, scope)


def hash_key(
    operation: str,
    params: Any,
    *,
    scope: str | None = None,
) -> str:
    """Generate a deterministic key from a digest of the operation and params.

    The digest is SHA-256 over the canonical JSON form of
    ``[operation, params]``, truncated to the first 32 hex characters
    (128 bits). The canonical form is the same in every process: mapping
    keys are coerced to ``str`` and sorted, set members are sorted, tuples
    become lists, and other leaves use pydantic's JSON form with ``str()``
    for anything it cannot represent.

    Args:
        operation: Operation name.
        params: Any structure of mappings, sequences, sets and scalars.
        scope: Optional namespace prefix.

    Returns:
        ``[scope:]operation:<32 hex chars>``
    """
    serialized = _canonical_json([str(operation), _canonicalize(params)])
    digest = hashlib.sha256(serialized.encode("utf-8")).hexdigest()[:HASH_KEY_HEX_LENGTH]
    return _with_scope(f"{operation}:{digest}", scope)


def _canonicalize(value: Any) -> Any:
    if isinstance(value, Mapping):
        return {str(name): _canonicalize(item) for name, item in value.items()}
    if isinstance(value, (set, frozenset)):
        return sorted((_canonicalize(item) for item in value), key=_canonical_json)
    if isinstance(value, (list, tuple)):
        return [_canonicalize(item) for item in value]
    return to_jsonable_python(value, bytes_mode="base64", fallback=str)


def _canonical_json(value: Any) -> str:
    return json.dumps(value, sort_keys=True, separators=(",", ":"))


def _normalize_params(
    params: Mapping[str, Any] | Iterable[tuple[str, Any]] | None,
) -> dict[str, Any]:
    if params is None:
        return {}
    if isinstance(params, Mapping):
        return {str(name): value for name, value in params.items()}
    return {str(name): value for name, value in params}


def _format_value(value: Any) -> str:
    if value is None:
        return ""
    if isinstance(value, bool):
        return "true" if value else "false"
    return str(value)


def _with_scope(base_key: str, scope: str | None) -> str:
    return f"{scope}:{base_key}" if scope is not None else base_key
