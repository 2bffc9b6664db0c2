"""Framework-agnostic request middleware.

Wraps the execution of an HTTP request (inbound or outbound) in
``Coordinator.execute`` so that retries carrying the same idempotency key
produce exactly one side effect.

The middleware:
1. Decides whether the request needs idempotency (mutating methods only)
2. Takes the key from the request, or derives one from method, path and body
3. Runs the executor through the coordinator, scoped by the target host
4. Maps non-2xx responses to ``Err(ResponseError)`` so the classifier
   decides between caching (4xx) and releasing (5xx, 408, 429)

Responses and response errors are registered codec types, so a replay has
the same shape as the original.

Examples:
    Wrapping an outbound call::

        middleware = IdempotencyMiddleware(coordinator)

        request = Request(
            method="POST",
            path="/v1/charges",
            body=b'{"amount": 1000}',
            base_url="https://api.stripe.com",
            idempotency_key="charge:order_id=456",
        )

        async def send(req: Request) -> Ok | Err:
            return Ok(await http.send(req))

        outcome = await middleware.wrap(request, send)
"""

import base64
import hashlib
import inspect
from collections.abc import Awaitable, Callable
from dataclasses import dataclass, field, replace
from typing import Any
from urllib.parse import urlsplit

from idempotent_coordinator import codec
from idempotent_coordinator.config import DuplicatePolicy, IdempotencyConfig
from idempotent_coordinator.core.coordinator import Coordinator
from idempotent_coordinator.models import MAX_KEY_LENGTH, StoredResponse
from idempotent_coordinator.observability.logging import get_logger
from idempotent_coordinator.outcome import Err, Ok, Outcome
from idempotent_coordinator.utils.headers import (
    IDEMPOTENCY_KEY_HEADER,
    filter_response_headers,
    get_header_value,
    merge_headers,
)

logger = get_logger(__name__)

# Hex characters of the body digest used in derived keys
BODY_HASH_HEX_LENGTH = 16

# Hex characters kept when an over-long derived key is hashed
LONG_KEY_HASH_HEX_LENGTH = 32

RETRYABLE_CLIENT_STATUSES = {408, 429}


@dataclass
class Request:
    """Abstract request representation.

    Framework and client adapters convert their own request objects into
    this shape.

    Attributes:
        method: HTTP method (GET, POST, etc.)
        path: URL path
        query_string: Query string without leading '?'
        headers: Request headers
        body: Request body
        base_url: Scheme and host of the target, used to derive the scope
        idempotency_key: Explicit key; falls back to the Idempotency-Key header
        metadata: Caller context stored on the record
    """

    method: str
    path: str
    query_string: str = ""
    headers: dict[str, str] = field(default_factory=dict)
    body: bytes = b""
    base_url: str | None = None
    idempotency_key: str | None = None
    metadata: dict[str, Any] = field(default_factory=dict)

    def get_idempotency_key(self) -> str | None:
        if self.idempotency_key:
            return self.idempotency_key
        value = get_header_value(self.headers, IDEMPOTENCY_KEY_HEADER)
        return value.strip() if value and value.strip() else None


@dataclass
class Response:
    """Abstract response representation.

    Attributes:
        status: HTTP status code
        headers: Response headers
        body: Response body
        replayed: True when decoded from a cached record
    """

    status: int
    headers: dict[str, str] = field(default_factory=dict)
    body: bytes = b""
    replayed: bool = field(default=False, compare=False)

    @property
    def is_success(self) -> bool:
        return 200 <= self.status < 300

    def to_cacheable(self) -> dict[str, Any]:
        stored = StoredResponse(
            status=self.status,
            headers=filter_response_headers(self.headers),
            body_b64=base64.b64encode(self.body).decode("ascii"),
        )
        return stored.model_dump()

    @classmethod
    def from_cacheable(cls, data: Any) -> "Response":
        stored = StoredResponse.model_validate(data)
        return cls(
            status=stored.status,
            headers=dict(stored.headers),
            body=stored.get_body_bytes(),
            replayed=True,
        )


class ResponseError(Exception):
    """A non-2xx response, returned as the ``Err`` reason.

    Server errors, 408 and 429 are retryable; any other status is permanent
    and cached.

    Attributes:
        response: The response that failed.
    """

    def __init__(self, response: Response) -> None:
        super().__init__(f"HTTP {response.status}")
        self.response = response

    def __eq__(self, other: object) -> bool:
        if not isinstance(other, ResponseError):
            return NotImplemented
        return self.response == other.response

    def __hash__(self) -> int:
        return hash(self.response.status)

    def is_retryable(self) -> bool:
        status = self.response.status
        return status >= 500 or status in RETRYABLE_CLIENT_STATUSES

    def to_cacheable(self) -> dict[str, Any]:
        return self.response.to_cacheable()

    @classmethod
    def from_cacheable(cls, data: Any) -> "ResponseError":
        return cls(Response.from_cacheable(data))


codec.register_type("http_response", Response)
codec.register_type("http_response_error", ResponseError)

ExecutorResult = Outcome | Response
Executor = Callable[[Request], ExecutorResult | Awaitable[ExecutorResult]]


class IdempotencyMiddleware:
    """Applies idempotency to request executors.

    Attributes:
        coordinator: Coordinator running the wrapped executors
        config: Enabled methods and key-derivation default
    """

    def __init__(self, coordinator: Coordinator, config: IdempotencyConfig | None = None) -> None:
        self.coordinator = coordinator
        self.config = config or coordinator.config

    def should_apply(self, request: Request, enabled: bool | None = None) -> bool:
        """Whether ``request`` goes through the coordinator.

        ``enabled`` forces the answer; otherwise only the configured
        mutating methods (POST, PUT, PATCH by default) apply.
        """
        if enabled is not None:
            return enabled
        return request.method.upper() in self.config.enabled_methods

    def ensure_key(self, request: Request, scope: str | None = None) -> Request:
        """Return ``request`` with an idempotency key, deriving one if missing.

        The derived key is ``[scope:]method:path[:hash]`` where the hash is
        the first 16 hex characters of the SHA-256 of the body and, when
        present, the query string. Identical retries map to the same key;
        requests differing only in their query do not. A key longer than
        ``MAX_KEY_LENGTH`` keeps its method and replaces the rest with a
        32 hex digest of the full key.
        """
        if request.get_idempotency_key() is not None:
            return request
        return self._with_key(request, self._derive_key(request, scope))

    def _derive_key(self, request: Request, scope: str | None) -> str:
        method = request.method.lower()
        parts = [method, request.path]
        if request.body or request.query_string:
            digest = hashlib.sha256(request.body)
            if request.query_string:
                digest.update(b"?" + request.query_string.encode("utf-8"))
            parts.append(digest.hexdigest()[:BODY_HASH_HEX_LENGTH])
        key = ":".join(parts)
        if scope is not None:
            key = f"{scope}:{key}"

        if len(key) > MAX_KEY_LENGTH:
            digest = hashlib.sha256(key.encode("utf-8")).hexdigest()[:LONG_KEY_HASH_HEX_LENGTH]
            key = f"{scope}:{method}:{digest}" if scope is not None else f"{method}:{digest}"
        return key

    def _with_key(self, request: Request, key: str) -> Request:
        return replace(
            request,
            idempotency_key=key,
            headers=merge_headers(request.headers, {IDEMPOTENCY_KEY_HEADER: key}),
        )

    def derive_scope(self, request: Request) -> str | None:
        """The target host, e.g. ``api.stripe.com``, or None without a base URL."""
        if not request.base_url:
            return None
        return urlsplit(request.base_url).hostname or None

    async def wrap(
        self,
        request: Request,
        executor: Executor,
        *,
        scope: str | None = None,
        ttl_seconds: int | None = None,
        on_duplicate: DuplicatePolicy | None = None,
        enabled: bool | None = None,
        derive_key: bool | None = None,
    ) -> Outcome:
        """Run ``executor(request)`` with idempotency.

        Args:
            request: The request to execute
            executor: Returns ``Ok(Response)``, ``Err(reason)`` or a bare
                ``Response``, directly or as an awaitable
            scope: Key namespace; defaults to the target host
            ttl_seconds: Lifetime of a newly created record
            on_duplicate: Policy when the key is already being processed
            enabled: Force idempotency on or off regardless of method
            derive_key: Derive a missing key; defaults to the config

        Returns:
            ``Ok(Response)`` for 2xx responses, ``Err(ResponseError)`` for
            other statuses, or the executor's own ``Err``. Without
            idempotency the executor's result is returned unchanged.

        Raises:
            InProgressError, WaitTimeoutError, IdempotencyConflictError: As
                raised by ``Coordinator.execute``.
        """
        if not self.should_apply(request, enabled):
            return await self._call(executor, request)

        should_derive = derive_key if derive_key is not None else self.config.derive_missing_keys
        key = request.get_idempotency_key()
        if key is None:
            if not should_derive:
                return await self._call(executor, request)
            key = self._derive_key(request, scope)
            request = self._with_key(request, key)

        effective_scope = scope or self.derive_scope(request)

        async def run() -> Outcome:
            outcome = await self._call(executor, request)
            if isinstance(outcome, Ok) and isinstance(outcome.value, Response):
                if not outcome.value.is_success:
                    return Err(ResponseError(outcome.value))
            return outcome

        logger.debug("middleware.wrap", method=request.method, path=request.path, key=key)
        return await self.coordinator.execute(
            key,
            run,
            scope=effective_scope,
            ttl_seconds=ttl_seconds,
            on_duplicate=on_duplicate,
            metadata={
                "method": request.method,
                "path": request.path,
                "metadata": request.metadata,
            },
        )

    async def _call(self, executor: Executor, request: Request) -> Outcome:
        result = executor(request)
        if inspect.isawaitable(result):
            result = await result
        if isinstance(result, Response):
            return Ok(result)
        return result
