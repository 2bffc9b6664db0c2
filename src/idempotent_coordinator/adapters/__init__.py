"""Adapters connecting the request middleware to HTTP stacks.

- asgi.py: inbound ASGI middleware for FastAPI, Starlette, etc.
- http_client.py: outbound httpx transport

The adapters convert between library-specific request/response objects and
the middleware's internal representation.
"""

from idempotent_coordinator.adapters.asgi import ASGIIdempotencyMiddleware
from idempotent_coordinator.adapters.http_client import IdempotentTransport

__all__ = ["ASGIIdempotencyMiddleware", "IdempotentTransport"]
