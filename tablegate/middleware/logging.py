# ABOUTME: Request context middleware for operational logging
# ABOUTME: Binds a request id into structlog contextvars and adds X-Request-ID / X-Response-Time headers

import time
import uuid

import structlog
from starlette.middleware.base import BaseHTTPMiddleware
from starlette.requests import Request


class RequestContextMiddleware(BaseHTTPMiddleware):
    """
    Tags every request with an id.

    The id is taken from an incoming X-Request-ID header when present so
    calls can be traced across services.
    """

    async def dispatch(self, request: Request, call_next):
        request_id = request.headers.get("x-request-id") or uuid.uuid4().hex
        structlog.contextvars.clear_contextvars()
        structlog.contextvars.bind_contextvars(request_id=request_id, path=request.url.path)

        start_time = time.time()
        response = await call_next(request)

        response.headers["X-Request-ID"] = request_id
        response.headers["X-Response-Time"] = f"{(time.time() - start_time) * 1000:.2f}ms"
        return response
