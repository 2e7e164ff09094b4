"""Per-client, per-endpoint fixed-window rate limiting.

This module decides, per inbound request, whether the request may proceed and
reports remaining quota and reset time. Counters live in an injected
``AbstractWindowStore`` so the HTTP layer never touches a global cache.

Rate limiting strategy:
- Only paths under the API root are limited; admin and internal paths skip.
- Each path prefix has its own ``requests`` per ``window`` budget.
- Counters are keyed by client IP and the endpoint base path, so
  sub-resources under one endpoint share a bucket.
- Windows are fixed: a counter resets once ``window`` seconds have elapsed
  since the first request of the window.
- Store failures and timeouts fail open. The read-modify-write is not atomic,
  so concurrent requests may under-count.
"""

from __future__ import annotations

import asyncio
import hashlib
import json
import logging
import time
from dataclasses import dataclass, field
from typing import Callable, Mapping

from fastapi import Request
from fastapi.responses import JSONResponse

from bandcrawl.adapters.rate_limit.base import AbstractWindowStore
from bandcrawl.core.errors import WindowStoreError

logger = logging.getLogger(__name__)

RATE_LIMIT_KEY_PREFIX = "rate-limit:"
UNKNOWN_CLIENT = "unknown"
BASE_PATH_SEGMENTS = 4
FALLBACK_LIMIT_HEADER = 30


@dataclass(frozen=True)
class RateLimitRule:
    """Budget of ``requests`` per ``window`` seconds."""

    requests: int
    window: int

    def __post_init__(self) -> None:
        if self.requests < 1:
            raise ValueError("requests must be >= 1")
        if self.window < 1:
            raise ValueError("window must be >= 1")


# Checked in order; the first matching prefix wins.
DEFAULT_RATE_LIMITS: dict[str, RateLimitRule] = {
    "/api/events": RateLimitRule(requests=60, window=60),
    "/api/schedule": RateLimitRule(requests=30, window=60),
    "/api/feeds": RateLimitRule(requests=20, window=60),
    "/api/subscriptions": RateLimitRule(requests=10, window=60),
    "/api/metrics": RateLimitRule(requests=100, window=60),
    "/api/auth/activate": RateLimitRule(requests=10, window=60),
    "/api/auth/resend": RateLimitRule(requests=3, window=300),
}

DEFAULT_RULE = RateLimitRule(requests=30, window=60)

# Admin APIs use their own auth; "/_" is reserved for platform internals.
DEFAULT_SKIP_PREFIXES: tuple[str, ...] = ("/api/admin/", "/_")

API_ROOT = "/api/"


@dataclass(frozen=True)
class RateLimitPolicy:
    """Static mapping of path prefixes to rate limit rules."""

    rules: Mapping[str, RateLimitRule] = field(
        default_factory=lambda: dict(DEFAULT_RATE_LIMITS)
    )
    default: RateLimitRule = DEFAULT_RULE
    skip_prefixes: tuple[str, ...] = DEFAULT_SKIP_PREFIXES
    api_root: str = API_ROOT

    def resolve(self, path: str) -> RateLimitRule | None:
        """Return the rule that applies to ``path``, or None when exempt."""

        if any(path.startswith(prefix) for prefix in self.skip_prefixes):
            return None
        if not path.startswith(self.api_root):
            return None

        for prefix, rule in self.rules.items():
            if path.startswith(prefix):
                return rule
        return self.default


@dataclass(frozen=True)
class RateLimitResult:
    """Outcome of a rate limit check.

    Attributes:
        allowed: Whether the request may proceed.
        remaining: Requests left in the current window; -1 when the request
            was not rate limited at all.
        reset_at: UNIX epoch seconds when the current window ends (0 when
            not rate limited).
        limit: Configured requests per window, None when not rate limited.
    """

    allowed: bool
    remaining: int
    reset_at: int
    limit: int | None = None

    @property
    def skipped(self) -> bool:
        return self.remaining < 0


NOT_LIMITED = RateLimitResult(allowed=True, remaining=-1, reset_at=0)


@dataclass
class RateWindow:
    """Counter state for one ``(client, endpoint)`` key."""

    count: int
    window_start: int

    def is_expired(self, now: int, window: int) -> bool:
        return now - self.window_start >= window

    def dumps(self) -> str:
        return json.dumps({"count": self.count, "windowStart": self.window_start})

    @classmethod
    def loads(cls, raw: str) -> "RateWindow":
        """Parse a stored record.

        Raises:
            WindowStoreError: If the payload is not a valid window record.
        """
        try:
            data = json.loads(raw)
            return cls(count=int(data["count"]), window_start=int(data["windowStart"]))
        except (ValueError, TypeError, KeyError, OverflowError) as exc:
            raise WindowStoreError(
                code="window_store_corrupt_record",
                message="Stored rate limit window could not be decoded",
                details={"operation": "get"},
            ) from exc


def get_client_ip(request: Request) -> str:
    """Return the client IP as reported by the edge proxy.

    Prefers the trusted ``CF-Connecting-IP`` header, then the first entry of
    ``X-Forwarded-For``, then the ``"unknown"`` sentinel.
    """

    connecting_ip = request.headers.get("CF-Connecting-IP")
    if connecting_ip:
        return connecting_ip

    forwarded_for = request.headers.get("X-Forwarded-For")
    if forwarded_for:
        first_hop = forwarded_for.split(",")[0].strip()
        if first_hop:
            return first_hop

    return UNKNOWN_CLIENT


def normalize_base_path(path: str) -> str:
    """Collapse ``path`` to its endpoint base (``/api/<endpoint>/<id>``)."""

    return "/".join(path.split("/")[:BASE_PATH_SEGMENTS])


def build_rate_limit_key(client_ip: str, path: str) -> str:
    return f"{RATE_LIMIT_KEY_PREFIX}{client_ip}:{normalize_base_path(path)}"


def _hash_client(client_ip: str) -> str:
    """Hash the client IP for logging without exposing it."""
    return hashlib.sha256(client_ip.encode()).hexdigest()[:16]


class RateLimiter:
    """Fixed-window rate limit evaluator over an injected window store."""

    def __init__(
        self,
        store: AbstractWindowStore,
        *,
        policy: RateLimitPolicy | None = None,
        clock: Callable[[], float] = time.time,
        store_timeout_seconds: float | None = 0.5,
    ) -> None:
        """Initialize the evaluator.

        Args:
            store: Window store holding serialized counters.
            policy: Path prefix rules; defaults to ``DEFAULT_RATE_LIMITS``.
            clock: Time source function returning UNIX time in seconds.
            store_timeout_seconds: Bound for each store call. None disables
                the bound.
        """
        self.store = store
        self.policy = policy or RateLimitPolicy()
        self._clock = clock
        self._store_timeout = store_timeout_seconds

    def now(self) -> int:
        return int(self._clock())

    async def _bounded(self, awaitable):
        if self._store_timeout is None:
            return await awaitable
        return await asyncio.wait_for(awaitable, timeout=self._store_timeout)

    async def check(self, request: Request) -> RateLimitResult:
        """Count ``request`` against its endpoint budget.

        Args:
            request: Incoming HTTP request.

        Returns:
            RateLimitResult describing whether the request is allowed.
            ``NOT_LIMITED`` when the path is exempt or the store failed.
        """

        path = request.url.path
        rule = self.policy.resolve(path)
        if rule is None:
            return NOT_LIMITED

        client_ip = get_client_ip(request)
        key = build_rate_limit_key(client_ip, path)
        now = self.now()

        try:
            raw = await self._bounded(self.store.get(key))
            window = RateWindow(count=0, window_start=now)
            if raw is not None:
                window = RateWindow.loads(raw)
                if window.is_expired(now, rule.window):
                    window = RateWindow(count=0, window_start=now)

            window.count += 1
            await self._bounded(
                self.store.put(key, window.dumps(), ttl_seconds=rule.window)
            )
        except (WindowStoreError, asyncio.TimeoutError) as exc:
            logger.warning(
                "rate_limit.store_failed",
                extra={
                    "client_hash": _hash_client(client_ip),
                    "base_path": normalize_base_path(path),
                    "error_type": type(exc).__name__,
                    "error_msg": str(exc),
                },
            )
            return NOT_LIMITED

        return RateLimitResult(
            allowed=window.count <= rule.requests,
            remaining=max(0, rule.requests - window.count),
            reset_at=window.window_start + rule.window,
            limit=rule.requests,
        )


async def check_rate_limit(limiter: RateLimiter, request: Request) -> RateLimitResult:
    """Functional alias for ``RateLimiter.check``."""
    return await limiter.check(request)


def rate_limit_headers(result: RateLimitResult) -> dict[str, str]:
    """Build the ``X-RateLimit-*`` headers for ``result``.

    Returns an empty dict when the request was not rate limited.
    """

    if result.remaining < 0:
        return {}

    return {
        "X-RateLimit-Limit": str(result.limit or FALLBACK_LIMIT_HEADER),
        "X-RateLimit-Remaining": str(result.remaining),
        "X-RateLimit-Reset": str(result.reset_at),
    }


def rate_limit_response(
    result: RateLimitResult,
    cors_headers: Mapping[str, str] | None = None,
    *,
    now: int | None = None,
) -> JSONResponse:
    """Build the 429 response for a rejected request.

    Args:
        result: The rejecting rate limit result.
        cors_headers: CORS headers to merge into the response.
        now: Current UNIX time in seconds (defaults to the wall clock).

    Returns:
        JSONResponse with status 429 and a ``Retry-After`` of at least 1s.
    """

    current = int(time.time()) if now is None else now
    retry_after = max(1, result.reset_at - current)

    headers = {"Retry-After": str(retry_after)}
    headers.update(rate_limit_headers(result))
    headers.update(cors_headers or {})

    return JSONResponse(
        status_code=429,
        content={
            "error": "Too many requests",
            "message": "Rate limit exceeded. Please try again later.",
            "retryAfter": retry_after,
        },
        headers=headers,
    )


def get_rate_limiter(request: Request) -> RateLimiter:
    """Return the limiter installed on the application state."""
    return request.app.state.rate_limiter
