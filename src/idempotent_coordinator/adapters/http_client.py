"""httpx transport adding idempotency to outbound requests.

Wrap any httpx transport so that mutating requests to an external API run
at most once per idempotency key, and retries of a settled request are
answered from the record store without touching the network.

The key is taken from, in order: the ``idempotency_key`` request extension,
the ``Idempotency-Key`` header, or derived from method, path and body. The
scope defaults to the target host, so identical keys sent to different
providers never collide.

Examples:
    Client with idempotent POSTs::

        import httpx
        from idempotent_coordinator.adapters.http_client import IdempotentTransport

        transport = IdempotentTransport(middleware)
        async with httpx.AsyncClient(transport=transport, base_url="https://api.stripe.com") as client:
            response = await client.post(
                "/v1/charges",
                json={"amount": 1000},
                extensions={"idempotency_key": "charge:order_id=456"},
            )

Non-2xx responses are returned as responses, exactly as httpx would; 4xx
responses other than 408/429 are cached and replayed, server errors are not.
"""

from typing import Any

import httpx

from idempotent_coordinator.codec import CachedError
from idempotent_coordinator.config import DuplicatePolicy
from idempotent_coordinator.core.middleware import (
    IdempotencyMiddleware,
    Request,
    Response,
    ResponseError,
)
from idempotent_coordinator.outcome import Ok, Outcome
from idempotent_coordinator.utils.headers import (
    IDEMPOTENCY_KEY_HEADER,
    filter_response_headers,
)

# httpx decodes the body on read, so the cached body no longer matches these
_DECODED_BODY_HEADERS = ["content-encoding", "content-length"]


class IdempotentTransport(httpx.AsyncBaseTransport):
    """Async transport routing requests through ``IdempotencyMiddleware``.

    Attributes:
        middleware: Middleware applying the coordinator
        scope: Fixed scope for every request; defaults to the target host
        on_duplicate: Policy for requests whose key is being processed
        ttl_seconds: Lifetime of records created by this transport
    """

    def __init__(
        self,
        middleware: IdempotencyMiddleware,
        transport: httpx.AsyncBaseTransport | None = None,
        *,
        scope: str | None = None,
        on_duplicate: DuplicatePolicy | None = None,
        ttl_seconds: int | None = None,
    ) -> None:
        self.middleware = middleware
        self.scope = scope
        self.on_duplicate = on_duplicate
        self.ttl_seconds = ttl_seconds
        self._transport = transport or httpx.AsyncHTTPTransport()

    async def handle_async_request(self, request: httpx.Request) -> httpx.Response:
        body = await request.aread()
        internal = Request(
            method=request.method,
            path=request.url.path,
            query_string=request.url.query.decode("ascii"),
            headers=dict(request.headers),
            body=body,
            base_url=f"{request.url.scheme}://{request.url.netloc.decode('ascii')}",
            idempotency_key=request.extensions.get("idempotency_key"),
        )

        async def send(prepared: Request) -> Outcome:
            key = prepared.get_idempotency_key()
            if key is not None:
                request.headers[IDEMPOTENCY_KEY_HEADER] = key
            response = await self._transport.handle_async_request(request)
            try:
                content = await response.aread()
            finally:
                await response.aclose()
            return Ok(
                Response(
                    status=response.status_code,
                    headers=dict(response.headers),
                    body=content,
                )
            )

        outcome = await self.middleware.wrap(
            internal,
            send,
            scope=request.extensions.get("idempotency_scope", self.scope),
            ttl_seconds=self.ttl_seconds,
            on_duplicate=self.on_duplicate,
        )
        return self._to_httpx(outcome, request)

    async def aclose(self) -> None:
        await self._transport.aclose()

    def _to_httpx(self, outcome: Outcome, request: httpx.Request) -> httpx.Response:
        if isinstance(outcome, Ok):
            return self._build_response(outcome.value, request)

        error: Any = outcome.error
        if isinstance(error, ResponseError):
            return self._build_response(error.response, request)
        if isinstance(error, BaseException):
            raise error
        raise CachedError(type(error).__name__, str(error))

    def _build_response(self, response: Response, request: httpx.Request) -> httpx.Response:
        return httpx.Response(
            status_code=response.status,
            headers=filter_response_headers(response.headers, _DECODED_BODY_HEADERS),
            content=response.body,
            request=request,
            extensions={"idempotent_replay": response.replayed},
        )
