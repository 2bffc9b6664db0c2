"""Configuration module for the idempotency coordinator.

This module provides the IdempotencyConfig class controlling record
lifetimes, claim timeouts, duplicate handling, request middleware gating and
storage backend selection.

Example:
    Basic usage with defaults:

        >>> config = IdempotencyConfig()
        >>> config.enabled_methods
        ['POST', 'PUT', 'PATCH']

    Custom configuration:

        >>> config = IdempotencyConfig(
        ...     default_ttl_seconds=3600,
        ...     on_duplicate="wait",
        ...     storage_adapter="sql",
        ...     database_url="postgresql+asyncpg://app@db/app",
        ... )

    Loading from environment:

        >>> import os
        >>> os.environ['IDEMPOTENCY_ON_DUPLICATE'] = 'wait'
        >>> os.environ['IDEMPOTENCY_LOCK_TIMEOUT_SECONDS'] = '60'
        >>> config = IdempotencyConfig.from_env()
"""

import os
from typing import Any, Literal

from pydantic import BaseModel, Field, field_validator, model_validator

# Valid HTTP methods for middleware gating
VALID_HTTP_METHODS = {
    "GET",
    "HEAD",
    "POST",
    "PUT",
    "DELETE",
    "CONNECT",
    "OPTIONS",
    "TRACE",
    "PATCH",
}

DuplicatePolicy = Literal["return", "wait", "error"]


class IdempotencyConfig(BaseModel):
    """Configuration for the idempotency coordinator.

    Attributes:
        default_ttl_seconds: Lifetime of a record before it becomes eligible
            for deletion by ``cleanup_expired``. Between 1 and 604800 (7 days).
            Default is 86400 (24 hours).
        lock_timeout_seconds: How long a claim stays valid. A ``processing``
            record whose claim is older than this is reclaimed by
            ``recover_stale``. Between 1 and 3600. Default is 30.
        on_duplicate: What ``execute`` does when another caller holds the
            claim: "return" raises InProgressError with the live record,
            "error" raises InProgressError without it, "wait" polls until the
            record settles. Default is "return".
        wait_timeout_seconds: Upper bound on the "wait" poll. Default 5.0.
        poll_interval_seconds: Delay between polls while waiting. Default 0.1.
        enabled_methods: HTTP methods the request middleware protects.
            Default covers create/replace/partial-update verbs.
        derive_missing_keys: Whether the request middleware derives a key
            from method, path and body when none is supplied. Default True.
        storage_adapter: Record store backend, "memory" or "sql".
        database_url: SQLAlchemy async URL used when storage_adapter is "sql".
        maintenance_interval_seconds: Interval for the maintenance loop.
        telemetry_prefix: Dotted prefix for emitted telemetry event names.

    Note:
        This class is immutable (frozen=True). Create a new instance if you
        need different settings.
    """

    default_ttl_seconds: int = Field(
        default=86400,
        description="Time-to-live in seconds for idempotency records (1-604800)",
    )
    lock_timeout_seconds: int = Field(
        default=30,
        description="Seconds a processing claim stays valid before it is considered stale",
    )
    on_duplicate: DuplicatePolicy = Field(
        default="return",
        description="Policy for in-progress duplicates: 'return', 'wait' or 'error'",
    )
    wait_timeout_seconds: float = Field(
        default=5.0,
        description="Maximum seconds to poll for a concurrent execution to settle",
    )
    poll_interval_seconds: float = Field(
        default=0.1,
        description="Seconds between polls while waiting",
    )
    enabled_methods: list[str] | str = Field(
        default=["POST", "PUT", "PATCH"],
        description="HTTP methods the request middleware wraps",
    )
    derive_missing_keys: bool = Field(
        default=True,
        description="Derive a key from method, path and body when none is given",
    )
    storage_adapter: Literal["memory", "sql"] = Field(
        default="memory",
        description="Type of storage backend for idempotency records",
    )
    database_url: str = Field(
        default="sqlite+aiosqlite:///./idempotency.db",
        description="SQLAlchemy async database URL for the sql storage adapter",
    )
    maintenance_interval_seconds: int = Field(
        default=300,
        description="Seconds between maintenance sweeps",
    )
    telemetry_prefix: str = Field(
        default="idempotency",
        description="Dotted prefix for telemetry event names",
    )

    model_config = {"frozen": True}

    @field_validator("enabled_methods", mode="before")
    @classmethod
    def validate_enabled_methods(cls, v: Any) -> list[str]:
        """Validate and normalize enabled HTTP methods.

        Args:
            v: List of HTTP method strings or comma-separated string.

        Returns:
            List of uppercase, validated HTTP methods.

        Raises:
            ValueError: If any method is not a valid HTTP method.

        Example:
            >>> config = IdempotencyConfig(enabled_methods=["post", "put"])
            >>> config.enabled_methods
            ['POST', 'PUT']
        """
        if isinstance(v, str):
            # Handle comma-separated string (from environment variables)
            v = [method.strip() for method in v.split(",") if method.strip()]

        if not isinstance(v, list):
            raise ValueError("enabled_methods must be a list or comma-separated string")

        methods = [method.upper() for method in v]

        invalid_methods = set(methods) - VALID_HTTP_METHODS
        if invalid_methods:
            raise ValueError(
                f"Invalid HTTP methods: {', '.join(sorted(invalid_methods))}. "
                f"Valid methods are: {', '.join(sorted(VALID_HTTP_METHODS))}"
            )

        return methods

    @field_validator("default_ttl_seconds")
    @classmethod
    def validate_default_ttl_seconds(cls, v: int) -> int:
        """Validate TTL is within acceptable range.

        Raises:
            ValueError: If TTL is not between 1 and 604800 (7 days).
        """
        if not (1 <= v <= 604800):
            raise ValueError(f"default_ttl_seconds must be between 1 and 604800 (7 days), got {v}")
        return v

    @field_validator("lock_timeout_seconds")
    @classmethod
    def validate_lock_timeout_seconds(cls, v: int) -> int:
        """Validate the claim timeout is within acceptable range.

        Raises:
            ValueError: If the timeout is not between 1 and 3600 (1 hour).
        """
        if not (1 <= v <= 3600):
            raise ValueError(f"lock_timeout_seconds must be between 1 and 3600 (1 hour), got {v}")
        return v

    @field_validator("wait_timeout_seconds")
    @classmethod
    def validate_wait_timeout_seconds(cls, v: float) -> float:
        if not (0 < v <= 300):
            raise ValueError(f"wait_timeout_seconds must be > 0 and <= 300 (5 minutes), got {v}")
        return v

    @field_validator("poll_interval_seconds")
    @classmethod
    def validate_poll_interval_seconds(cls, v: float) -> float:
        if v <= 0:
            raise ValueError(f"poll_interval_seconds must be > 0, got {v}")
        return v

    @field_validator("maintenance_interval_seconds")
    @classmethod
    def validate_maintenance_interval_seconds(cls, v: int) -> int:
        if v < 1:
            raise ValueError(f"maintenance_interval_seconds must be >= 1, got {v}")
        return v

    @field_validator("telemetry_prefix")
    @classmethod
    def validate_telemetry_prefix(cls, v: str) -> str:
        parts = v.split(".")
        if not all(parts):
            raise ValueError(f"telemetry_prefix must be a dotted name, got {v!r}")
        return v

    @model_validator(mode="after")
    def validate_wait_settings(self) -> "IdempotencyConfig":
        """Ensure at least one poll fits inside the wait timeout.

        Raises:
            ValueError: If poll_interval_seconds exceeds wait_timeout_seconds.
        """
        if self.poll_interval_seconds > self.wait_timeout_seconds:
            raise ValueError(
                "poll_interval_seconds must not exceed wait_timeout_seconds "
                f"({self.poll_interval_seconds} > {self.wait_timeout_seconds})"
            )
        return self

    @property
    def telemetry_prefix_parts(self) -> tuple[str, ...]:
        return tuple(self.telemetry_prefix.split("."))

    @classmethod
    def from_env(cls, prefix: str = "IDEMPOTENCY_") -> "IdempotencyConfig":
        """Create configuration from environment variables.

        Variable names are the uppercase field names with the prefix, e.g.
        ``IDEMPOTENCY_DEFAULT_TTL_SECONDS``. Missing variables keep their
        defaults.

        Args:
            prefix: Prefix for environment variable names. Default is "IDEMPOTENCY_".

        Returns:
            IdempotencyConfig instance populated from environment variables.

        Example:
            >>> import os
            >>> os.environ['IDEMPOTENCY_ENABLED_METHODS'] = 'POST,PUT'
            >>> os.environ['IDEMPOTENCY_WAIT_TIMEOUT_SECONDS'] = '2.5'
            >>> config = IdempotencyConfig.from_env()
            >>> config.wait_timeout_seconds
            2.5
        """
        config_dict: dict[str, Any] = {}

        # Map of field names to their types for proper conversion
        field_types = {
            "default_ttl_seconds": int,
            "lock_timeout_seconds": int,
            "on_duplicate": str,
            "wait_timeout_seconds": float,
            "poll_interval_seconds": float,
            "enabled_methods": list,
            "derive_missing_keys": bool,
            "storage_adapter": str,
            "database_url": str,
            "maintenance_interval_seconds": int,
            "telemetry_prefix": str,
        }

        for field_name, field_type in field_types.items():
            env_var = f"{prefix}{field_name.upper()}"
            env_value = os.environ.get(env_var)

            if env_value is None:
                continue

            if field_type is int:
                config_dict[field_name] = int(env_value)
            elif field_type is float:
                config_dict[field_name] = float(env_value)
            elif field_type is bool:
                config_dict[field_name] = env_value.strip().lower() in {"1", "true", "yes", "on"}
            else:
                # Lists stay comma-separated; the field validator splits them
                config_dict[field_name] = env_value

        return cls(**config_dict)

    @classmethod
    def from_dict(cls, config_dict: dict[str, Any]) -> "IdempotencyConfig":
        """Create configuration from a dictionary.

        Raises:
            ValidationError: If the dictionary contains invalid values.
        """
        return cls(**config_dict)
