"""
Error handling for the HTTP surface.

- CohortWatchError subclasses → their status code with a structured body
- Anything else → 500 with a generic message and an error_id for log
  correlation; tracebacks stay server-side
"""

import traceback
import uuid

import structlog
from fastapi import FastAPI, Request, Response
from fastapi.responses import JSONResponse
from starlette.middleware.base import BaseHTTPMiddleware

from cohortwatch.config import settings
from cohortwatch.exceptions import CohortWatchError

logger = structlog.get_logger(__name__)


async def cohortwatch_error_handler(request: Request, exc: CohortWatchError) -> JSONResponse:
    """
    Structured body for engine errors:
    {"error": {"code", "kind", "message", "details"}, "status": 404}
    """
    logger.info(
        "request_rejected",
        path=request.url.path,
        kind=exc.kind,
        status=exc.status_code,
        error=exc.message,
    )
    return JSONResponse(
        status_code=exc.status_code,
        content={"error": exc.to_dict(), "status": exc.status_code},
    )


class ErrorHandlerMiddleware(BaseHTTPMiddleware):
    """
    Outermost middleware; catches everything else.

    Returns:
    {
      "error": {"code": "E1000", "kind": "unexpected", "message": "..."},
      "error_id": "uuid for log correlation",
      "status": 500
    }
    """

    async def dispatch(self, request: Request, call_next) -> Response:
        try:
            return await call_next(request)
        except Exception as exc:
            error_id = str(uuid.uuid4())

            logger.error(
                "unhandled_exception",
                error_id=error_id,
                path=request.url.path,
                method=request.method,
                error=str(exc),
                traceback=traceback.format_exc(),
            )

            body: dict = {
                "error": {
                    "code": "E1000",
                    "kind": "unexpected",
                    "message": "An internal error occurred. Please try again later.",
                },
                "error_id": error_id,
                "status": 500,
            }
            if settings.debug:
                body["debug_hint"] = type(exc).__name__

            return JSONResponse(status_code=500, content=body)


def install_error_handlers(app: FastAPI) -> None:
    app.add_exception_handler(CohortWatchError, cohortwatch_error_handler)
    app.add_middleware(ErrorHandlerMiddleware)
