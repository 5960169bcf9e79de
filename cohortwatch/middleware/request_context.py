"""
Request Context Middleware.

Every request gets a request_id (taken from X-Request-ID or generated) and,
for institution-scoped routes, the institution_id from the path. Both are
bound into the structlog context so engine log lines emitted while serving
the request carry them, and the request_id is echoed back with the elapsed
time.
"""

import re
import time
import uuid

import structlog
from fastapi import Request, Response
from starlette.middleware.base import BaseHTTPMiddleware

logger = structlog.get_logger(__name__)

INSTITUTION_PATH = re.compile(r"^/api/v1/institutions/(?P<institution_id>[^/]+)")

# Probes are logged at debug level
QUIET_PATHS = frozenset({"/health"})


class RequestContextMiddleware(BaseHTTPMiddleware):
    """Binds request_id / institution_id and times the request."""

    async def dispatch(self, request: Request, call_next) -> Response:
        request_id = request.headers.get("X-Request-ID") or uuid.uuid4().hex
        request.state.request_id = request_id

        context = {"request_id": request_id, "method": request.method, "path": request.url.path}
        m = INSTITUTION_PATH.match(request.url.path)
        if m:
            context["institution_id"] = m.group("institution_id")

        structlog.contextvars.clear_contextvars()
        structlog.contextvars.bind_contextvars(**context)

        start = time.perf_counter()
        try:
            response = await call_next(request)
        finally:
            elapsed_ms = round((time.perf_counter() - start) * 1000, 2)

        response.headers["X-Request-ID"] = request_id
        response.headers["X-Response-Time"] = f"{elapsed_ms}ms"

        log = logger.debug if request.url.path in QUIET_PATHS else logger.info
        log("request_completed", status=response.status_code, elapsed_ms=elapsed_ms)
        return response
