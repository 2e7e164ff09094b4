"""In-memory TTL window store.

Notes:
- Per-process only: running multiple workers multiplies the effective limit.
- Thread-safe: uses a lock around shared state.
- Bounded: least recently written entries are evicted past ``max_entries``.
"""

from __future__ import annotations

import logging
import threading
import time
from collections import OrderedDict
from dataclasses import dataclass
from typing import Callable

from bandcrawl.adapters.rate_limit.base import AbstractWindowStore

logger = logging.getLogger(__name__)


@dataclass
class _Entry:
    value: str
    expires_at: float


class InMemoryWindowStore(AbstractWindowStore):
    """Window store backed by an ordered dict with TTL expiry.

    Important:
        This store is per-process only. If the API runs with multiple workers
        (e.g., multiple Uvicorn/Gunicorn workers), each worker keeps its own
        independent counters. Use the Redis store for a shared view.
    """

    def __init__(
        self,
        *,
        max_entries: int | None = 100_000,
        clock: Callable[[], float] = time.time,
    ) -> None:
        """Initialize the in-memory store.

        Args:
            max_entries: Maximum number of live entries (None for unlimited).
            clock: Time source function returning UNIX time in seconds.

        Raises:
            ValueError: If max_entries is invalid.
        """
        if max_entries is not None and max_entries < 1:
            raise ValueError("max_entries must be >= 1")

        self._max_entries = max_entries
        self._clock = clock
        self._lock = threading.RLock()
        self._entries: OrderedDict[str, _Entry] = OrderedDict()
        self._evictions = 0

    def __len__(self) -> int:
        with self._lock:
            return len(self._entries)

    async def get(self, key: str) -> str | None:
        with self._lock:
            entry = self._entries.get(key)
            if entry is None:
                return None
            if self._clock() >= entry.expires_at:
                self._entries.pop(key, None)
                self._evictions += 1
                return None
            return entry.value

    async def put(self, key: str, value: str, *, ttl_seconds: int) -> None:
        if ttl_seconds < 1:
            raise ValueError("ttl_seconds must be >= 1")

        with self._lock:
            now = self._clock()
            self._entries[key] = _Entry(value=value, expires_at=now + ttl_seconds)
            self._entries.move_to_end(key)
            self._evict_locked(now)

    def stats(self) -> dict[str, int | None]:
        """Return lightweight store metrics without exposing values."""

        with self._lock:
            return {
                "entries": len(self._entries),
                "max_entries": self._max_entries,
                "evictions": self._evictions,
            }

    def clear(self) -> None:
        """Remove all entries and reset counters."""

        with self._lock:
            self._entries.clear()
            self._evictions = 0

    def _evict_locked(self, now: float) -> None:
        if self._max_entries is None or len(self._entries) <= self._max_entries:
            return

        expired = [k for k, entry in self._entries.items() if entry.expires_at <= now]
        for key in expired:
            self._entries.pop(key, None)
            self._evictions += 1

        while len(self._entries) > self._max_entries:
            # popitem(last=False) drops the least recently written entry
            self._entries.popitem(last=False)
            self._evictions += 1

        logger.debug(
            "window_store.evicted",
            extra={"entries": len(self._entries), "evictions": self._evictions},
        )
