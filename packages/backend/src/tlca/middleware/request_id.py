"""Request ID middleware: unique ID per request for tracing.

Learn: Every request gets an ID, either from the incoming X-Request-ID
header (for distributed tracing) or auto-generated. The ID is bound to
structlog's contextvars, so "auth.sign_in", "notifier.sent" and friends
all carry it, and it's returned in the response header.

One "http.request" line is logged per request with status and duration.
Query strings and bodies are never logged: they can carry tokens.
"""

import time
import uuid

import structlog
from starlette.middleware.base import BaseHTTPMiddleware
from starlette.requests import Request
from starlette.responses import Response

logger = structlog.get_logger()


class RequestIdMiddleware(BaseHTTPMiddleware):
    """Generate and propagate a unique request ID."""

    async def dispatch(self, request: Request, call_next) -> Response:
        request_id = request.headers.get("X-Request-ID") or str(uuid.uuid4())

        structlog.contextvars.clear_contextvars()
        structlog.contextvars.bind_contextvars(request_id=request_id)

        started = time.perf_counter()
        response: Response = await call_next(request)
        logger.info(
            "http.request",
            method=request.method,
            path=request.url.path,
            status=response.status_code,
            duration_ms=round((time.perf_counter() - started) * 1000, 1),
        )
        response.headers["X-Request-ID"] = request_id
        return response
