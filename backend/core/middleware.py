"""FastAPI middleware for request tracking, timing, and error handling.

Adds:
- X-Request-ID header (generated if not provided)
- X-Process-Time header (request duration)
- Structured logging per request
- Global exception handlers mapping engine errors to JSON responses
"""

import time
from uuid import uuid4

import structlog
from fastapi import FastAPI, Request
from fastapi.responses import JSONResponse
from starlette.middleware.base import BaseHTTPMiddleware

from app.config import get_settings
from core.exceptions import ValidationError, WorkflowEngineError

logger = structlog.get_logger(__name__)

_QUIET_PATHS = ("/api/health", "/api/health/", "/api/v1/health", "/api/v1/health/")


class RequestTrackingMiddleware(BaseHTTPMiddleware):
    """Add request ID and timing to every request/response."""

    async def dispatch(self, request: Request, call_next):
        request_id = request.headers.get("X-Request-ID", str(uuid4()))
        request.state.request_id = request_id
        start_time = time.monotonic()

        with structlog.contextvars.bound_contextvars(request_id=request_id):
            try:
                response = await call_next(request)
            except Exception as exc:
                duration_ms = (time.monotonic() - start_time) * 1000
                logger.exception(
                    "Unhandled exception",
                    method=request.method,
                    path=request.url.path,
                    duration_ms=round(duration_ms, 2),
                    error=str(exc),
                )
                # In production, don't expose error details to client
                if get_settings().is_production:
                    error_detail = "Internal server error"
                else:
                    error_detail = str(exc) or "Internal server error"
                return JSONResponse(
                    status_code=500,
                    content={"detail": error_detail, "request_id": request_id},
                    headers={"X-Request-ID": request_id},
                )

            duration_ms = (time.monotonic() - start_time) * 1000
            response.headers["X-Request-ID"] = request_id
            response.headers["X-Process-Time"] = f"{duration_ms:.2f}ms"

            if request.url.path not in _QUIET_PATHS:
                log = logger.warning if response.status_code >= 400 else logger.info
                log(
                    f"{request.method} {request.url.path} -> {response.status_code}",
                    method=request.method,
                    path=request.url.path,
                    status_code=response.status_code,
                    duration_ms=round(duration_ms, 2),
                    client_ip=request.client.host if request.client else None,
                )

        return response


def setup_exception_handlers(app: FastAPI) -> None:
    """Register global exception handlers."""

    @app.exception_handler(ValidationError)
    async def validation_handler(request: Request, exc: ValidationError):
        content = {"detail": exc.message, "request_id": getattr(request.state, "request_id", None)}
        if exc.node_id:
            content["node_id"] = exc.node_id
        if exc.cycle:
            content["cycle"] = exc.cycle
        return JSONResponse(status_code=exc.status_code, content=content)

    @app.exception_handler(WorkflowEngineError)
    async def engine_error_handler(request: Request, exc: WorkflowEngineError):
        detail = exc.message
        if exc.status_code >= 500 and get_settings().is_production:
            detail = "Internal server error"
        return JSONResponse(
            status_code=exc.status_code,
            content={"detail": detail, "request_id": getattr(request.state, "request_id", None)},
        )

    @app.exception_handler(ValueError)
    async def value_error_handler(request: Request, exc: ValueError):
        return JSONResponse(
            status_code=400,
            content={"detail": str(exc), "request_id": getattr(request.state, "request_id", None)},
        )
