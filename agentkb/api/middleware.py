"""API middleware: CORS, request logging, and error handling.

Configures cross-origin resource sharing, logs every request through
structlog, and turns ``AgentKBError`` subclasses into JSON
``ErrorResponse`` bodies with a status code chosen by error type.

# ─── MIDDLEWARE EXECUTION ORDER ────────────────────────────────────────
#
# Starlette middleware is a stack (last added, first executed):
#
#   In main.py:
#     app.add_middleware(ErrorHandlingMiddleware)    # added 1st → inner
#     app.add_middleware(RequestLoggingMiddleware)   # added 2nd → outermost
#
#   Request flow:
#     Client → RequestLogging → ErrorHandling → route handler
#   Response flow:
#     Client ← RequestLogging ← ErrorHandling ← route handler
#
# So RequestLoggingMiddleware sees the *final* status code, including
# the 4xx/5xx that ErrorHandling substituted for an exception.
# ──────────────────────────────────────────────────────────────────────
"""

from __future__ import annotations

import time

import structlog
from fastapi import FastAPI, Request, Response
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from starlette.middleware.base import BaseHTTPMiddleware, RequestResponseEndpoint

from agentkb.api.schemas import ErrorResponse
from agentkb.utils.errors import (
    AgentKBError,
    EmbeddingModelMismatchError,
    FileCancelledError,
    IngestionValidationError,
    InvalidTransitionError,
    NotFoundError,
    TenantAccessError,
    TransientError,
)
from agentkb.utils.logging import get_logger

_logger: structlog.BoundLogger = get_logger(__name__)

# First match wins, so subclasses go before their bases.
_STATUS_CODES: tuple[tuple[type[AgentKBError], int], ...] = (
    (NotFoundError, 404),
    (TenantAccessError, 403),
    (IngestionValidationError, 422),
    (InvalidTransitionError, 409),
    (FileCancelledError, 409),
    (EmbeddingModelMismatchError, 409),
    (TransientError, 503),
)


def status_code_for(exc: AgentKBError) -> int:
    """Return the HTTP status code for *exc* (500 when unmapped)."""
    for error_type, status_code in _STATUS_CODES:
        if isinstance(exc, error_type):
            return status_code
    return 500


# ---------------------------------------------------------------------------
# CORS
# ---------------------------------------------------------------------------


def configure_cors(app: FastAPI, *, allowed_origins: list[str] | None = None) -> None:
    """Add CORS middleware to the FastAPI application.

    Parameters
    ----------
    app:
        The FastAPI application instance.
    allowed_origins:
        Explicit list of allowed origins.  Defaults to ``["*"]`` for
        development; override with specific origins in production.
    """
    origins = allowed_origins or ["*"]
    app.add_middleware(
        CORSMiddleware,
        allow_origins=origins,
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )


# ---------------------------------------------------------------------------
# Request Logging
# ---------------------------------------------------------------------------


class RequestLoggingMiddleware(BaseHTTPMiddleware):
    """Log every HTTP request with method, path, status code, and duration."""

    async def dispatch(
        self,
        request: Request,
        call_next: RequestResponseEndpoint,
    ) -> Response:
        start = time.perf_counter()
        response: Response | None = None

        try:
            response = await call_next(request)
            return response
        finally:
            duration_ms = round((time.perf_counter() - start) * 1000, 2)
            status_code = response.status_code if response else 500
            _logger.info(
                "http_request",
                method=request.method,
                path=str(request.url.path),
                status=status_code,
                duration_ms=duration_ms,
            )


# ---------------------------------------------------------------------------
# Error Handling
# ---------------------------------------------------------------------------


class ErrorHandlingMiddleware(BaseHTTPMiddleware):
    """Catch ``AgentKBError`` subclasses and return structured JSON errors.

    The body carries the exception class name and its message only.
    Provider names and stack traces stay in the server log.  Exceptions
    outside the hierarchy bubble up to FastAPI's default 500 handler.
    """

    async def dispatch(
        self,
        request: Request,
        call_next: RequestResponseEndpoint,
    ) -> Response:
        try:
            return await call_next(request)
        except AgentKBError as exc:
            status_code = status_code_for(exc)
            log = _logger.error if status_code >= 500 else _logger.warning
            log(
                "application_error",
                error_type=type(exc).__name__,
                message=exc.message,
                provider=exc.provider_name,
                path=str(request.url.path),
                status=status_code,
            )
            body = ErrorResponse(
                error=type(exc).__name__,
                detail=exc.message,
            )
            return JSONResponse(
                status_code=status_code,
                content=body.model_dump(),
            )
