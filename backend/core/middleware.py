"""Request tracking and error rendering for the HTTP API.

Every response carries X-Request-ID (echoed or generated) and
X-Process-Time. Every error body has the same shape:

    {"detail": ..., "type": "<exception class>", "request_id": "..."}
"""

import time
from uuid import uuid4

import structlog
from fastapi import FastAPI, Request
from fastapi.encoders import jsonable_encoder
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse
from starlette.middleware.base import BaseHTTPMiddleware

from core.exceptions import EngineException

logger = structlog.get_logger(__name__)

REQUEST_ID_HEADER = "X-Request-ID"

# liveness probes would drown the request log
_QUIET_PATHS = ("/api/v1/health",)


class RequestTrackingMiddleware(BaseHTTPMiddleware):
    async def dispatch(self, request: Request, call_next):
        request_id = request.headers.get(REQUEST_ID_HEADER) or str(uuid4())
        request.state.request_id = request_id

        start = time.monotonic()
        with structlog.contextvars.bound_contextvars(request_id=request_id):
            response = await call_next(request)
            duration_ms = (time.monotonic() - start) * 1000

            if request.url.path not in _QUIET_PATHS:
                log = logger.warning if response.status_code >= 400 else logger.info
                log(
                    "Request handled",
                    method=request.method,
                    path=request.url.path,
                    status_code=response.status_code,
                    duration_ms=round(duration_ms, 2),
                )

        response.headers[REQUEST_ID_HEADER] = request_id
        response.headers["X-Process-Time"] = f"{duration_ms:.2f}ms"
        return response


def error_response(request: Request, status_code: int, detail, error_type: str) -> JSONResponse:
    return JSONResponse(
        status_code=status_code,
        content={
            "detail": detail,
            "type": error_type,
            "request_id": getattr(request.state, "request_id", None),
        },
    )


def setup_exception_handlers(app: FastAPI) -> None:
    """Render engine errors and request validation errors in the shared shape."""

    @app.exception_handler(EngineException)
    async def engine_exception_handler(request: Request, exc: EngineException):
        if exc.status_code >= 500:
            logger.error("Request failed", error=exc.message, error_type=type(exc).__name__)
        return error_response(request, exc.status_code, exc.message, type(exc).__name__)

    @app.exception_handler(RequestValidationError)
    async def request_validation_handler(request: Request, exc: RequestValidationError):
        return error_response(request, 422, jsonable_encoder(exc.errors()), "RequestValidationError")
