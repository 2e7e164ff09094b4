"""HTTP middleware: CORS and security headers, rate limiting, request ids.

The chain composes as simple decorators around the route handler:

    cors_middleware -> rate_limit_middleware -> request_id_middleware -> route

- ``cors_middleware`` answers preflight requests, stamps CORS and security
  headers on every response and renders unhandled errors through
  ``general_exception_handler`` so every 500 shares one JSON envelope.
- ``rate_limit_middleware`` consults the limiter once per request; rejected
  requests never reach the handler.
- ``request_id_middleware`` propagates ``X-Request-ID`` and measures duration.

Usage:
    app.middleware("http")(request_id_middleware)
    app.middleware("http")(rate_limit_middleware)
    app.middleware("http")(cors_middleware)

Starlette runs the last registered middleware first.
"""

from __future__ import annotations

import logging
import time
import uuid

from fastapi import Request, Response

from bandcrawl.core.config import settings
from bandcrawl.core.exception_handlers import general_exception_handler
from bandcrawl.core.logging import clear_request_id, set_request_id
from bandcrawl.core.rate_limit import (
    get_rate_limiter,
    rate_limit_headers,
    rate_limit_response,
)

logger = logging.getLogger(__name__)

CORS_ALLOW_METHODS = "GET, POST, PUT, DELETE, OPTIONS"
CORS_ALLOW_HEADERS = "Content-Type, X-Admin-Key"
CORS_MAX_AGE = "86400"

SECURITY_HEADERS = {
    "X-Content-Type-Options": "nosniff",
    "X-Frame-Options": "DENY",
    "Referrer-Policy": "strict-origin-when-cross-origin",
}


def cors_headers() -> dict[str, str]:
    """CORS headers attached to every API response."""

    return {
        "Access-Control-Allow-Origin": settings.app.cors_allow_origin,
        "Access-Control-Allow-Methods": CORS_ALLOW_METHODS,
        "Access-Control-Allow-Headers": CORS_ALLOW_HEADERS,
        "Access-Control-Max-Age": CORS_MAX_AGE,
    }


def _response_headers() -> dict[str, str]:
    headers = cors_headers()
    if settings.app.security_headers_enabled:
        headers.update(SECURITY_HEADERS)
    return headers


async def cors_middleware(request: Request, call_next) -> Response:
    """Outermost middleware: preflight, CORS/security headers, error safety net.

    Args:
        request: The incoming HTTP request object.
        call_next: The next middleware/route handler in the stack.

    Returns:
        Response: A 204 for preflight requests, otherwise the downstream
            response with CORS and security headers set.
    """

    if request.method == "OPTIONS":
        return Response(status_code=204, headers=cors_headers())

    try:
        response: Response = await call_next(request)
    except Exception as exc:
        response = await _internal_error_response(request, exc)

    for name, value in _response_headers().items():
        response.headers[name] = value
    return response


async def _internal_error_response(request: Request, exc: Exception) -> Response:
    """Render an unhandled error through the global 500 handler.

    The request id context has already been cleared by the inner middleware,
    so it is restored from the request for the log line and the response.
    """

    header_name = settings.log.request_id_header
    request_id = getattr(request.state, "request_id", None) or request.headers.get(header_name)
    set_request_id(request_id)
    try:
        response = await general_exception_handler(request, exc)
    finally:
        clear_request_id()

    if request_id:
        response.headers[header_name] = request_id
    return response


async def rate_limit_middleware(request: Request, call_next) -> Response:
    """Apply the per-endpoint rate limit before dispatching to the route.

    Rejected requests short-circuit with a 429. Allowed requests proceed and
    the ``X-RateLimit-*`` headers are merged into the route's response.
    Disabled entirely when ``APP_RATE_LIMIT_ENABLED=false``.
    """

    if not settings.app.rate_limit_enabled:
        return await call_next(request)

    limiter = get_rate_limiter(request)
    result = await limiter.check(request)

    if not result.allowed:
        logger.warning(
            "rate_limit.exceeded",
            extra={
                "route": request.url.path,
                "limit": result.limit,
                "remaining": result.remaining,
                "reset_at": result.reset_at,
            },
        )
        return rate_limit_response(result, cors_headers(), now=limiter.now())

    response: Response = await call_next(request)
    for name, value in rate_limit_headers(result).items():
        response.headers[name] = value
    return response


async def request_id_middleware(request: Request, call_next) -> Response:
    """HTTP middleware for request ID generation and propagation.

    If the client provides an X-Request-ID header (configurable via
    LOG_REQUEST_ID_HEADER), that value is used. Otherwise, a new UUID
    is generated. The ID is propagated back in the response headers
    and stored in contextvars for log correlation.

    Side Effects:
        - Sets request_id in contextvars (accessible via get_request_id())
        - Clears request_id from contextvars after request completes
        - Adds X-Request-ID and X-Request-Duration-ms headers to the response
    """

    header_name = settings.log.request_id_header
    request_id = request.headers.get(header_name) or str(uuid.uuid4())
    set_request_id(request_id)
    request.state.request_id = request_id
    start = time.perf_counter()
    try:
        response: Response = await call_next(request)
    finally:
        clear_request_id()

    duration_ms = (time.perf_counter() - start) * 1000
    response.headers[header_name] = request_id
    response.headers.setdefault("X-Request-Duration-ms", f"{duration_ms:.2f}")
    return response
