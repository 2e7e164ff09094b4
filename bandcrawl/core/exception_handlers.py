"""Global exception handlers for consistent error responses.

Design:
- AppError subclasses → appropriate HTTP status (400, 403, 500)
- AdminLockoutError → 429 with minutes remaining
- Unexpected Exception → generic 500 (safety net)
- Error envelopes include request_id for distributed tracing
"""

import logging

from fastapi import Request
from fastapi.responses import JSONResponse

from bandcrawl.core.errors import (
    AdminLockoutError,
    AppError,
    AuthenticationAppError,
    WindowStoreError,
)
from bandcrawl.core.logging import get_request_id

logger = logging.getLogger(__name__)


def _status_for(exc: AppError) -> int:
    if isinstance(exc, AdminLockoutError):
        return 429
    if isinstance(exc, AuthenticationAppError):
        return 403
    if isinstance(exc, WindowStoreError):
        return 500
    return 400


async def app_error_handler(request: Request, exc: AppError) -> JSONResponse:
    """Handle domain application errors with consistent JSON format.

    Routes domain errors to appropriate HTTP status codes:
    - ValidationAppError → 400 Bad Request (client fault)
    - AuthenticationAppError → 403 Forbidden (authorization fault)
    - WindowStoreError → 500 (only when it escapes the limiter boundary)

    Args:
        request: FastAPI request object.
        exc: AppError instance (or subclass).

    Returns:
        JSONResponse with appropriate status code and error details.
    """
    status_code = _status_for(exc)

    logger.warning(
        "app_error_handled",
        extra={
            "error_code": exc.code,
            "error_message": exc.message,
            "status_code": status_code,
            "has_details": bool(exc.details),
            "request_path": request.url.path,
        },
    )

    error_content = {
        "code": exc.code,
        "message": exc.message,
        "request_id": get_request_id(),
    }

    # Include details only if present (optional structured context)
    if exc.details:
        error_content["details"] = exc.details

    return JSONResponse(
        status_code=status_code,
        content={"error": error_content},
    )


async def admin_lockout_handler(request: Request, exc: AdminLockoutError) -> JSONResponse:
    """Render an admin lockout as a 429 in the same shape as rate limit rejections."""
    minutes = (exc.details or {}).get("minutes_remaining", 1)

    logger.warning(
        "admin_lockout_rejected",
        extra={"minutes_remaining": minutes, "request_path": request.url.path},
    )

    return JSONResponse(
        status_code=429,
        content={
            "error": "Too many failed attempts",
            "message": exc.message,
            "locked": True,
            "minutesRemaining": minutes,
        },
        headers={"Retry-After": str(minutes * 60)},
    )


async def general_exception_handler(request: Request, exc: Exception) -> JSONResponse:
    """Fallback handler for unexpected errors (safety net).

    Logs detailed information for debugging while returning a generic
    message. No stack traces reach the client.
    """
    logger.error(
        "unhandled_exception",
        extra={
            "error_type": type(exc).__name__,
            "error_msg": str(exc),
            "request_path": request.url.path,
            "request_method": request.method,
        },
        exc_info=exc,
    )

    return JSONResponse(
        status_code=500,
        content={
            "error": {
                "code": "internal_server_error",
                "message": "An unexpected error occurred. Please try again later.",
                "request_id": get_request_id(),
            }
        },
    )


def setup_exception_handlers(app) -> None:
    """Register all exception handlers with the FastAPI app.

    Args:
        app: FastAPI application instance.
    """
    app.exception_handler(AdminLockoutError)(admin_lockout_handler)
    app.exception_handler(AppError)(app_error_handler)
    app.exception_handler(Exception)(general_exception_handler)
