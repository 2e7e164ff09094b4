"""Admin key authentication for /api/admin endpoints.

Admin routes are exempt from per-IP rate limiting, so they are guarded by
their own credential and a failed-attempt lockout. Keys are validated
against a comma-separated list from environment variables.
"""

from __future__ import annotations

import hashlib
import hmac
import logging
from typing import Annotated

from fastapi import Header, HTTPException, Request, status

from bandcrawl.core.admin_lockout import AdminLockout
from bandcrawl.core.config import settings
from bandcrawl.core.errors import AdminLockoutError, AuthenticationAppError
from bandcrawl.core.rate_limit import get_client_ip

logger = logging.getLogger(__name__)


def parse_admin_keys(keys_string: str | None) -> set[str]:
    """Parse comma-separated admin keys into a set.

    Examples:
        >>> sorted(parse_admin_keys("key1, key2 , key3 "))
        ['key1', 'key2', 'key3']
        >>> parse_admin_keys(None)
        set()
    """
    if not keys_string:
        return set()

    return {key.strip() for key in keys_string.split(",") if key.strip()}


def _key_hash(key: str) -> str:
    return hashlib.sha256(key.encode()).hexdigest()[:16]


def validate_admin_key(provided_key: str) -> None:
    """Validate that the provided admin key matches a configured key.

    Args:
        provided_key: Admin key to validate.

    Raises:
        AuthenticationAppError: If the key is invalid or no keys are configured.
    """
    if not settings.app.admin_key_required:
        return

    valid_keys = parse_admin_keys(settings.app.admin_api_keys)

    if not valid_keys:
        logger.error(
            "admin_key_validation_failed",
            extra={"reason": "admin_keys_not_configured"},
        )
        raise AuthenticationAppError(
            code="admin_keys_not_configured",
            message="Admin authentication is enabled but no admin keys are configured",
            details={"hint": "Set APP_ADMIN_API_KEYS or disable with APP_ADMIN_KEY_REQUIRED=false"},
        )

    if not any(hmac.compare_digest(provided_key, key) for key in valid_keys):
        logger.warning(
            "admin_key_validation_failed",
            extra={"reason": "invalid_admin_key", "admin_key_hash": _key_hash(provided_key)},
        )
        raise AuthenticationAppError(
            code="invalid_admin_key",
            message="Invalid or missing admin key",
        )


def get_admin_lockout(request: Request) -> AdminLockout | None:
    """Return the lockout tracker installed on the application state, if any."""
    return getattr(request.app.state, "admin_lockout", None)


async def verify_admin_key(
    request: Request,
    x_admin_key: Annotated[str | None, Header(alias="X-Admin-Key")] = None,
) -> None:
    """FastAPI dependency guarding admin endpoints.

    Clients that send too many invalid keys are locked out for a while,
    even if they later present a valid key.

    Usage:
        @router.get("/admin/thing", dependencies=[Depends(verify_admin_key)])

    Raises:
        AdminLockoutError: If the client is currently locked out (429).
        HTTPException: 403 Forbidden if authentication fails.
    """
    if not settings.app.admin_key_required:
        logger.debug("admin_auth.skipped", extra={"reason": "admin_key_required_false"})
        return

    lockout = get_admin_lockout(request)
    client_ip = get_client_ip(request)

    if lockout is not None:
        minutes = await lockout.minutes_remaining(client_ip)
        if minutes is not None:
            logger.warning("admin_auth.locked_out", extra={"minutes_remaining": minutes})
            raise AdminLockoutError(
                code="admin_locked_out",
                message=(
                    "Your IP has been temporarily locked out. "
                    f"Please try again in {minutes} minutes."
                ),
                details={"minutes_remaining": minutes},
            )

    if not x_admin_key:
        logger.warning("admin_auth.missing_key")
        raise HTTPException(
            status_code=status.HTTP_403_FORBIDDEN,
            detail="Missing admin key. Provide X-Admin-Key header.",
        )

    try:
        validate_admin_key(x_admin_key)
    except AuthenticationAppError as exc:
        if lockout is not None and exc.code == "invalid_admin_key":
            await lockout.record_failure(client_ip)
        raise HTTPException(
            status_code=status.HTTP_403_FORBIDDEN,
            detail=exc.message,
        ) from exc

    if lockout is not None:
        await lockout.reset(client_ip)
    logger.info("admin_auth.success", extra={"admin_key_hash": _key_hash(x_admin_key)})
