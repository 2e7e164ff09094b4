"""Failed-attempt lockout for admin endpoints.

Admin paths skip the public rate limiter, so repeated invalid admin keys are
tracked here instead. Each client IP gets one record in the window store:

- Invalid keys are counted within ``window_seconds`` of the previous one.
- Reaching ``threshold`` locks the client out for ``duration_seconds``.
- A valid key clears the record.

Like the public limiter, store failures fail open and are logged.
"""

from __future__ import annotations

import asyncio
import hashlib
import json
import logging
import math
import time
from dataclasses import dataclass
from typing import Callable

from bandcrawl.adapters.rate_limit.base import AbstractWindowStore
from bandcrawl.core.errors import WindowStoreError

logger = logging.getLogger(__name__)

LOCKOUT_KEY_PREFIX = "admin-lockout:"


@dataclass
class LockoutRecord:
    failed_attempts: int
    last_attempt: int
    lockout_until: int | None = None

    def locked_at(self, now: int) -> bool:
        return self.lockout_until is not None and self.lockout_until > now

    def dumps(self) -> str:
        return json.dumps(
            {
                "failedAttempts": self.failed_attempts,
                "lastAttempt": self.last_attempt,
                "lockoutUntil": self.lockout_until,
            }
        )

    @classmethod
    def loads(cls, raw: str) -> "LockoutRecord":
        try:
            data = json.loads(raw)
            until = data.get("lockoutUntil")
            return cls(
                failed_attempts=int(data["failedAttempts"]),
                last_attempt=int(data["lastAttempt"]),
                lockout_until=None if until is None else int(until),
            )
        except (ValueError, TypeError, KeyError, AttributeError, OverflowError) as exc:
            raise WindowStoreError(
                code="window_store_corrupt_record",
                message="Stored admin lockout record could not be decoded",
                details={"operation": "get"},
            ) from exc


def _hash_client(client_ip: str) -> str:
    return hashlib.sha256(client_ip.encode()).hexdigest()[:16]


class AdminLockout:
    """Per-client failed admin key counter with temporary lockout."""

    def __init__(
        self,
        store: AbstractWindowStore,
        *,
        threshold: int = 5,
        window_seconds: int = 600,
        duration_seconds: int = 3600,
        clock: Callable[[], float] = time.time,
        store_timeout_seconds: float | None = 0.5,
    ) -> None:
        self.store = store
        self.threshold = threshold
        self.window_seconds = window_seconds
        self.duration_seconds = duration_seconds
        self._clock = clock
        self._store_timeout = store_timeout_seconds

    def now(self) -> int:
        return int(self._clock())

    async def _bounded(self, awaitable):
        if self._store_timeout is None:
            return await awaitable
        return await asyncio.wait_for(awaitable, timeout=self._store_timeout)

    def _log_store_failure(self, client_ip: str, operation: str, exc: Exception) -> None:
        logger.warning(
            "admin_lockout.store_failed",
            extra={
                "client_hash": _hash_client(client_ip),
                "operation": operation,
                "error_type": type(exc).__name__,
                "error_msg": str(exc),
            },
        )

    async def _load(self, client_ip: str) -> LockoutRecord | None:
        raw = await self._bounded(self.store.get(LOCKOUT_KEY_PREFIX + client_ip))
        return None if raw is None else LockoutRecord.loads(raw)

    async def _save(self, client_ip: str, record: LockoutRecord, ttl_seconds: int) -> None:
        await self._bounded(
            self.store.put(
                LOCKOUT_KEY_PREFIX + client_ip,
                record.dumps(),
                ttl_seconds=max(1, ttl_seconds),
            )
        )

    async def minutes_remaining(self, client_ip: str) -> int | None:
        """Return the minutes left on an active lockout, or None if not locked."""

        try:
            record = await self._load(client_ip)
        except (WindowStoreError, asyncio.TimeoutError) as exc:
            self._log_store_failure(client_ip, "check", exc)
            return None

        now = self.now()
        if record is None or not record.locked_at(now):
            return None
        return math.ceil((record.lockout_until - now) / 60)

    async def record_failure(self, client_ip: str) -> int:
        """Count an invalid key and lock the client out at the threshold.

        Returns:
            The failed attempt count in the current window (0 if the store
            could not be used).
        """

        now = self.now()
        try:
            record = await self._load(client_ip)
            start_over = (
                record is None
                or record.lockout_until is not None
                or now - record.last_attempt > self.window_seconds
            )
            attempts = 1 if start_over else record.failed_attempts + 1

            updated = LockoutRecord(failed_attempts=attempts, last_attempt=now)
            ttl = self.window_seconds
            if attempts >= self.threshold:
                updated.lockout_until = now + self.duration_seconds
                ttl = self.duration_seconds
            await self._save(client_ip, updated, ttl)
        except (WindowStoreError, asyncio.TimeoutError) as exc:
            self._log_store_failure(client_ip, "record_failure", exc)
            return 0

        if updated.lockout_until is not None:
            logger.warning(
                "admin_lockout.locked",
                extra={
                    "client_hash": _hash_client(client_ip),
                    "failed_attempts": attempts,
                    "lockout_until": updated.lockout_until,
                },
            )
        return attempts

    async def reset(self, client_ip: str) -> None:
        """Forget failed attempts after a successful authentication."""

        try:
            await self._save(
                client_ip,
                LockoutRecord(failed_attempts=0, last_attempt=self.now()),
                self.window_seconds,
            )
        except (WindowStoreError, asyncio.TimeoutError) as exc:
            self._log_store_failure(client_ip, "reset", exc)
