"""Core type definitions and models for the idempotency coordinator.

This module provides the data structures shared by the stores, the
coordinator and the request middleware: the record state enum, the
idempotency record itself, the stored HTTP response shape and the options
accepted by ``Coordinator.execute``.

Examples:
    Creating a pending record::

        from datetime import UTC, datetime, timedelta
        from idempotent_coordinator.models import IdempotencyRecord, RecordState

        now = datetime.now(UTC)
        record = IdempotencyRecord(
            id="0192b6f4-7c1e-7a51-9d1e-4b5b0f7d2c11",
            key="stripe:charge:order_id=456",
            scope="stripe",
            state=RecordState.PENDING,
            expires_at=now + timedelta(hours=24),
            inserted_at=now,
            updated_at=now,
        )

    Claiming it::

        claimed = record.transition(
            state=RecordState.PROCESSING,
            version=record.version + 1,
            started_at=now,
            locked_until=now + timedelta(seconds=30),
        )
"""

import base64
from datetime import datetime
from enum import Enum
from typing import Any

from pydantic import BaseModel, Field, field_validator, model_validator

from idempotent_coordinator.config import DuplicatePolicy

# Longest key or scope a record accepts
MAX_KEY_LENGTH = 255


class RecordState(str, Enum):
    """Lifecycle state of an idempotency record.

    Attributes:
        PENDING: Created or released; claimable by the next caller.
        PROCESSING: Claimed; exactly one caller is running the operation.
        COMPLETED: Settled with a cached response.
        FAILED: Settled with a cached permanent error.
    """

    PENDING = "pending"
    PROCESSING = "processing"
    COMPLETED = "completed"
    FAILED = "failed"

    @property
    def is_terminal(self) -> bool:
        return self in (RecordState.COMPLETED, RecordState.FAILED)


class StoredResponse(BaseModel):
    """A cacheable HTTP response.

    The body is base64-encoded to safely handle binary content and keep the
    stored payload plain JSON.

    Attributes:
        status: HTTP status code (e.g., 200, 201, 400).
        headers: HTTP response headers as key-value pairs.
        body_b64: Base64-encoded response body.
    """

    status: int = Field(
        ...,
        description="HTTP status code",
        ge=100,
        le=599,
        examples=[200, 201, 400, 500],
    )
    headers: dict[str, str] = Field(
        default_factory=dict,
        description="HTTP response headers",
    )
    body_b64: str = Field(
        ...,
        description="Base64-encoded response body",
        examples=["eyJyZXN1bHQiOiAic3VjY2VzcyJ9"],
    )

    @field_validator("body_b64")
    @classmethod
    def validate_base64(cls, v: str) -> str:
        """Validate that the body is properly base64-encoded.

        Raises:
            ValueError: If the string is not valid base64.
        """
        try:
            base64.b64decode(v, validate=True)
        except Exception as e:
            raise ValueError(f"Invalid base64 encoding: {e}") from e
        return v

    def get_body_bytes(self) -> bytes:
        """Decode and return the response body as bytes.

        Examples:
            >>> response = StoredResponse(status=200, headers={}, body_b64="SGVsbG8=")
            >>> response.get_body_bytes()
            b'Hello'
        """
        return base64.b64decode(self.body_b64)


class IdempotencyRecord(BaseModel):
    """Persistent record tracking one idempotent operation.

    Attributes:
        id: Store-assigned identifier (UUIDv7 string).
        key: Caller-supplied or derived idempotency key.
        scope: Namespace for the key (e.g. "stripe"), or None.
        state: Current lifecycle state.
        version: Optimistic-lock counter, incremented on every claim.
        response: Encoded response envelope; set only when COMPLETED.
        error: Encoded error envelope; set only when FAILED.
        metadata: Caller-supplied context, opaque to the coordinator.
        started_at: When the current claim was taken.
        completed_at: When the record was settled.
        locked_until: Claim expiry; set only when PROCESSING.
        expires_at: Absolute TTL; the record is deleted after this.
        inserted_at: Creation timestamp.
        updated_at: Last modification timestamp.
    """

    id: str = Field(..., min_length=1, description="Store-assigned record identifier")
    key: str = Field(
        ...,
        description="Idempotency key",
        min_length=1,
        max_length=MAX_KEY_LENGTH,
        examples=["stripe:charge:order_id=456", "0192b6f4-7c1e-7a51-9d1e-4b5b0f7d2c11"],
    )
    scope: str | None = Field(
        default=None,
        description="Namespace partitioning keys, e.g. per downstream provider",
        min_length=1,
        max_length=MAX_KEY_LENGTH,
        examples=["stripe", "sendgrid"],
    )
    state: RecordState = Field(
        default=RecordState.PENDING,
        description="Current lifecycle state",
    )
    version: int = Field(default=0, ge=0, description="Optimistic-lock counter")
    response: dict[str, Any] | None = Field(
        default=None,
        description="Encoded response envelope (COMPLETED only)",
    )
    error: dict[str, Any] | None = Field(
        default=None,
        description="Encoded error envelope (FAILED only)",
    )
    metadata: dict[str, Any] = Field(default_factory=dict, description="Caller context")
    started_at: datetime | None = None
    completed_at: datetime | None = None
    locked_until: datetime | None = None
    expires_at: datetime
    inserted_at: datetime
    updated_at: datetime

    @model_validator(mode="after")
    def validate_state_invariants(self) -> "IdempotencyRecord":
        """Reject records whose payload and lock fields disagree with their state.

        Raises:
            ValueError: If response, error or locked_until is present in a
                state that does not allow it, or missing where required.
        """
        completed = self.state is RecordState.COMPLETED
        failed = self.state is RecordState.FAILED
        processing = self.state is RecordState.PROCESSING

        if completed != (self.response is not None):
            raise ValueError("response must be set if and only if state is completed")
        if failed != (self.error is not None):
            raise ValueError("error must be set if and only if state is failed")
        if processing != (self.locked_until is not None):
            raise ValueError("locked_until must be set if and only if state is processing")
        return self

    def transition(self, **changes: Any) -> "IdempotencyRecord":
        """Return a validated copy of this record with ``changes`` applied.

        Raises:
            pydantic.ValidationError: If the resulting record breaks an invariant.
        """
        data = self.model_dump()
        data.update(changes)
        return type(self).model_validate(data)

    def is_lock_expired(self, now: datetime) -> bool:
        return self.locked_until is not None and self.locked_until < now

    def is_expired(self, now: datetime) -> bool:
        return self.expires_at < now


class ExecuteOptions(BaseModel):
    """Resolved options for a single ``Coordinator.execute`` call.

    Attributes:
        scope: Namespace for the key.
        ttl_seconds: Record lifetime; None uses the store default.
        on_duplicate: Policy when another caller holds the claim.
        wait_timeout_seconds: Upper bound for the "wait" policy.
        poll_interval_seconds: Delay between polls for the "wait" policy.
        metadata: Context stored on newly created records.
    """

    scope: str | None = Field(default=None, min_length=1, max_length=MAX_KEY_LENGTH)
    ttl_seconds: int | None = Field(default=None, ge=1)
    on_duplicate: DuplicatePolicy = "return"
    wait_timeout_seconds: float = Field(default=5.0, gt=0)
    poll_interval_seconds: float = Field(default=0.1, gt=0)
    metadata: dict[str, Any] = Field(default_factory=dict)

    model_config = {"frozen": True}
