"""FastAPI middleware and exception handlers.

- X-Request-ID is echoed (or generated) and bound to the log context, so
  engine events emitted while serving a resume or cancel carry it
- X-Process-Time reports the request duration
- WorkflowError subclasses map to JSON bodies with ``error_code``
"""

import logging
import time
from uuid import uuid4

import structlog
from fastapi import FastAPI, Request
from fastapi.responses import JSONResponse
from starlette.middleware.base import BaseHTTPMiddleware

from app.config import get_settings
from core.exceptions import WorkflowError

logger = logging.getLogger(__name__)

_QUIET_PATHS = ("/api/health", "/api/v1/health", "/api/v1/health/health")


class RequestTrackingMiddleware(BaseHTTPMiddleware):
    """Request id, timing and one access log line per request."""

    async def dispatch(self, request: Request, call_next):
        request_id = request.headers.get("X-Request-ID") or str(uuid4())
        request.state.request_id = request_id
        tokens = structlog.contextvars.bind_contextvars(request_id=request_id)
        start_time = time.monotonic()

        try:
            response = await call_next(request)
        except Exception as exc:
            logger.error(
                f"Unhandled exception on {request.method} {request.url.path}: {exc}",
                exc_info=True,
            )
            detail = "Internal server error"
            if not get_settings().is_production:
                detail = str(exc) or detail
            response = JSONResponse(
                status_code=500,
                content={"detail": detail, "request_id": request_id},
            )
        finally:
            structlog.contextvars.reset_contextvars(**tokens)

        duration_ms = (time.monotonic() - start_time) * 1000
        response.headers["X-Request-ID"] = request_id
        response.headers["X-Process-Time"] = f"{duration_ms:.2f}ms"

        if request.url.path not in _QUIET_PATHS:
            level = logging.WARNING if response.status_code >= 400 else logging.INFO
            logger.log(
                level,
                f"{request.method} {request.url.path} -> {response.status_code} ({duration_ms:.0f}ms)",
            )
        return response


def setup_exception_handlers(app: FastAPI) -> None:
    """Register global exception handlers."""

    @app.exception_handler(WorkflowError)
    async def workflow_error_handler(request: Request, exc: WorkflowError):
        if exc.status_code >= 500:
            logger.error(f"{exc.error_code} on {request.url.path}: {exc.message}")
        content = {
            "detail": exc.message,
            "error_code": exc.error_code,
            "request_id": getattr(request.state, "request_id", None),
        }
        violations = getattr(exc, "violations", None)
        if violations:
            content["violations"] = violations
        return JSONResponse(status_code=exc.status_code, content=content)

    @app.exception_handler(ValueError)
    async def value_error_handler(request: Request, exc: ValueError):
        return JSONResponse(
            status_code=400,
            content={"detail": str(exc), "request_id": getattr(request.state, "request_id", None)},
        )
