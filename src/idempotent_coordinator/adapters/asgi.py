"""ASGI middleware adapter for FastAPI and Starlette applications.

Makes endpoints idempotent for clients that send an ``Idempotency-Key``
header. The first request with a key runs the endpoint; retries with the
same key receive the stored response with ``Idempotent-Replay: true``.

The middleware:
1. Converts Starlette requests to the internal Request format
2. Runs the endpoint through the core middleware and coordinator
3. Converts outcomes and coordination errors back to HTTP responses

Coordination errors map to:

- ``InProgressError``: 409 with ``Retry-After``
- ``WaitTimeoutError``: 425 with ``Retry-After``
- ``IdempotencyConflictError``: 409
- any other ``IdempotencyError``: 500

Keys are never derived for inbound requests unless ``derive_keys=True``;
without a key the endpoint runs as usual.

Examples:
    FastAPI integration::

        from fastapi import FastAPI
        from idempotent_coordinator import Coordinator
        from idempotent_coordinator.adapters.asgi import ASGIIdempotencyMiddleware
        from idempotent_coordinator.storage import MemoryRecordStore

        app = FastAPI()
        coordinator = Coordinator(MemoryRecordStore())

        app.add_middleware(ASGIIdempotencyMiddleware, coordinator=coordinator)

        @app.post("/api/payments")
        async def create_payment(data: PaymentData):
            return {"status": "success"}
"""

from collections.abc import Awaitable, Callable
from typing import Any

from starlette.middleware.base import BaseHTTPMiddleware
from starlette.requests import Request as StarletteRequest
from starlette.responses import Response as StarletteResponse

from idempotent_coordinator.config import DuplicatePolicy, IdempotencyConfig
from idempotent_coordinator.core.coordinator import Coordinator
from idempotent_coordinator.core.middleware import (
    IdempotencyMiddleware,
    Request,
    Response,
    ResponseError,
)
from idempotent_coordinator.exceptions import (
    IdempotencyConflictError,
    IdempotencyError,
    InProgressError,
    WaitTimeoutError,
)
from idempotent_coordinator.observability.logging import get_logger
from idempotent_coordinator.outcome import Ok, Outcome
from idempotent_coordinator.utils.headers import add_replay_headers

logger = get_logger(__name__)


class ASGIIdempotencyMiddleware(BaseHTTPMiddleware):
    """ASGI middleware for idempotency handling.

    Attributes:
        coordinator: Coordinator shared with the rest of the application
        middleware: Core middleware instance
        scope: Fixed scope for every key, or None
        on_duplicate: Policy for requests whose key is being processed
        derive_keys: Derive keys for requests that carry none
    """

    def __init__(
        self,
        app: Any,
        coordinator: Coordinator,
        config: IdempotencyConfig | None = None,
        *,
        scope: str | None = None,
        on_duplicate: DuplicatePolicy | None = None,
        derive_keys: bool = False,
    ) -> None:
        super().__init__(app)
        self.coordinator = coordinator
        self.middleware = IdempotencyMiddleware(coordinator, config)
        self.scope = scope
        self.on_duplicate = on_duplicate
        self.derive_keys = derive_keys

    async def dispatch(
        self,
        request: StarletteRequest,
        call_next: Callable[[StarletteRequest], Awaitable[StarletteResponse]],
    ) -> StarletteResponse:
        internal_request = await self._convert_request(request)
        if not self.middleware.should_apply(internal_request):
            return await call_next(request)

        if internal_request.get_idempotency_key() is None:
            if not self.derive_keys:
                return await call_next(request)
            internal_request = self.middleware.ensure_key(internal_request, scope=self.scope)

        async def handler(_req: Request) -> Outcome:
            response = await call_next(request)

            body = b""
            async for chunk in response.body_iterator:  # type: ignore[attr-defined]
                body += chunk if isinstance(chunk, bytes) else str(chunk).encode("utf-8")

            return Ok(
                Response(
                    status=response.status_code,
                    headers=dict(response.headers),
                    body=body,
                )
            )

        try:
            outcome = await self.middleware.wrap(
                internal_request,
                handler,
                scope=self.scope,
                on_duplicate=self.on_duplicate,
                derive_key=self.derive_keys,
            )
        except IdempotencyError as e:
            return self._error_response(e)

        key = internal_request.get_idempotency_key()
        return self._convert_outcome(outcome, key)

    async def _convert_request(self, request: StarletteRequest) -> Request:
        body = await request.body()
        return Request(
            method=request.method,
            path=request.url.path,
            query_string=request.url.query or "",
            headers=dict(request.headers),
            body=body,
            base_url=str(request.base_url),
        )

    def _convert_outcome(self, outcome: Outcome, key: str | None) -> StarletteResponse:
        if isinstance(outcome, Ok):
            response = outcome.value
        elif isinstance(outcome.error, ResponseError):
            response = outcome.error.response
        else:
            logger.error("asgi.unexpected_error", error_type=type(outcome.error).__name__)
            return StarletteResponse(
                content=b"Idempotency error: request failed",
                status_code=500,
                media_type="text/plain",
            )

        headers = dict(response.headers)
        if key is not None:
            headers = add_replay_headers(headers, key, is_replay=response.replayed)
        headers.pop("content-length", None)
        return StarletteResponse(
            content=response.body,
            status_code=response.status,
            headers=headers,
        )

    def _error_response(self, error: IdempotencyError) -> StarletteResponse:
        if isinstance(error, InProgressError):
            return StarletteResponse(
                content=b"Request is currently being processed",
                status_code=409,
                headers={"retry-after": "5"},
                media_type="text/plain",
            )
        if isinstance(error, WaitTimeoutError):
            return StarletteResponse(
                content=b"Execution timeout - request still processing",
                status_code=425,
                headers={"retry-after": "10"},
                media_type="text/plain",
            )
        if isinstance(error, IdempotencyConflictError):
            return StarletteResponse(
                content=f"Request conflict: {error.message}".encode(),
                status_code=409,
                media_type="text/plain",
            )

        logger.error("asgi.idempotency_error", error_type=type(error).__name__, error=error.message)
        return StarletteResponse(
            content=f"Idempotency error: {error.message}".encode(),
            status_code=500,
            media_type="text/plain",
        )
