"""Versioned payload codec for cached responses and errors.

Settled outcomes are replayed to later callers, possibly in another process
or after a deploy, so they are stored as a stable JSON envelope rather than
as pickled objects::

    {"v": 1, "type": "<tag>", "data": <JSON>}

Built-in tags:

- ``json``: anything pydantic can dump in JSON mode. Models decode as plain
  dicts, tuples and sets as lists, and datetimes, decimals and UUIDs as
  strings. Bytes nested in a container become base64 text.
- ``bytes``: raw bytes as base64 text.
- ``exception``: any exception, stored as ``{type, message, details}`` and
  decoded as a ``CachedError``.

Additional types register a tag with ``register_type``. A registered class
provides ``to_cacheable() -> JSON`` and ``from_cacheable(data)``.

Examples:
    >>> envelope = encode({"id": "ch_1"})
    >>> envelope
    {'v': 1, 'type': 'json', 'data': {'id': 'ch_1'}}
    >>> decode(envelope)
    {'id': 'ch_1'}
"""

import base64
from typing import Any, Protocol, runtime_checkable

from pydantic import BaseModel, ValidationError
from pydantic_core import PydanticSerializationError, to_jsonable_python

from idempotent_coordinator.exceptions import CodecError

CODEC_VERSION = 1


@runtime_checkable
class Cacheable(Protocol):
    """Protocol for values with their own cacheable representation."""

    def to_cacheable(self) -> Any: ...

    @classmethod
    def from_cacheable(cls, data: Any) -> Any: ...


class Envelope(BaseModel):
    """The stored form of an encoded payload."""

    v: int
    type: str
    data: Any = None


class CachedError(Exception):
    """Replayed form of an exception that was cached as a permanent failure.

    Attributes:
        type_name: Fully qualified name of the original exception class.
        message: ``str()`` of the original exception.
        details: JSON-safe copy of the original exception's attributes.
    """

    def __init__(self, type_name: str, message: str, details: dict[str, Any] | None = None) -> None:
        super().__init__(message)
        self.type_name = type_name
        self.message = message
        self.details = details or {}

    def __eq__(self, other: object) -> bool:
        if not isinstance(other, CachedError):
            return NotImplemented
        return (self.type_name, self.message, self.details) == (
            other.type_name,
            other.message,
            other.details,
        )

    def __hash__(self) -> int:
        return hash((self.type_name, self.message))

    def __repr__(self) -> str:
        return f"CachedError(type_name={self.type_name!r}, message={self.message!r})"


_registry: dict[str, type] = {}

_BUILTIN_TAGS = {"json", "bytes", "exception"}


def register_type(tag: str, cls: type) -> None:
    """Register a cacheable class under a type tag.

    Registering the same class twice under the same tag is a no-op.

    Raises:
        ValueError: If the tag is built in or already taken by another class.
    """
    if tag in _BUILTIN_TAGS:
        raise ValueError(f"Type tag {tag!r} is reserved")
    existing = _registry.get(tag)
    if existing is not None and existing is not cls:
        raise ValueError(f"Type tag {tag!r} is already registered to {existing.__qualname__}")
    _registry[tag] = cls


def encode(value: Any) -> dict[str, Any]:
    """Encode a value into a versioned envelope.

    Raises:
        CodecError: If the value cannot be represented as JSON.
    """
    for tag, cls in _registry.items():
        if type(value) is cls:
            return _envelope(tag, _ensure_json(value.to_cacheable()))

    if isinstance(value, (bytes, bytearray, memoryview)):
        return _envelope("bytes", base64.b64encode(bytes(value)).decode("ascii"))

    if isinstance(value, BaseException):
        return _envelope("exception", _exception_data(value))

    return _envelope("json", _ensure_json(value))


def normalize(value: Any) -> Any:
    """Return ``value`` as a replay would decode it.

    Registered types come back as given, since they define their own round
    trip. Anything else is encoded and decoded, so a fresh caller sees the
    same value as every later caller.

    Raises:
        CodecError: If the value cannot be encoded.
    """
    envelope = encode(value)
    if envelope["type"] in _registry:
        return value
    return decode(envelope)


def decode(payload: dict[str, Any] | None) -> Any:
    """Decode an envelope produced by ``encode``.

    Raises:
        CodecError: If the envelope is malformed, from an unknown codec
            version, or uses an unregistered type tag.
    """
    if payload is None:
        raise CodecError("Cannot decode an empty payload")

    try:
        envelope = Envelope.model_validate(payload)
    except ValidationError as e:
        raise CodecError(f"Malformed payload envelope: {e}") from e

    if envelope.v != CODEC_VERSION:
        raise CodecError(f"Unsupported codec version {envelope.v} (expected {CODEC_VERSION})")

    if envelope.type == "json":
        return envelope.data

    if envelope.type == "bytes":
        try:
            return base64.b64decode(envelope.data, validate=True)
        except (TypeError, ValueError) as e:
            raise CodecError(f"Invalid base64 payload: {e}") from e

    if envelope.type == "exception":
        data = envelope.data or {}
        if not isinstance(data, dict):
            raise CodecError("Exception payload must be an object")
        return CachedError(
            type_name=str(data.get("type", "Exception")),
            message=str(data.get("message", "")),
            details=data.get("details") or {},
        )

    cls = _registry.get(envelope.type)
    if cls is None:
        raise CodecError(f"Unknown payload type tag {envelope.type!r}")
    return cls.from_cacheable(envelope.data)


def _envelope(tag: str, data: Any) -> dict[str, Any]:
    return {"v": CODEC_VERSION, "type": tag, "data": data}


def _ensure_json(value: Any) -> Any:
    try:
        return to_jsonable_python(value, bytes_mode="base64")
    except (PydanticSerializationError, TypeError, ValueError) as e:
        raise CodecError(f"Value of type {type(value).__name__} is not JSON-serializable: {e}") from e


def _exception_data(error: BaseException) -> dict[str, Any]:
    if isinstance(error, CachedError):
        return {"type": error.type_name, "message": error.message, "details": error.details}

    cls = type(error)
    details = to_jsonable_python(vars(error), bytes_mode="base64", fallback=str) if vars(error) else {}
    return {
        "type": f"{cls.__module__}.{cls.__qualname__}",
        "message": str(error),
        "details": details,
    }
