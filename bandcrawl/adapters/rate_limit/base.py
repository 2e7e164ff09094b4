"""Window store interface.

The rate limiter depends on this abstraction (not a concrete cache) so the
backing store is injected explicitly and can be faked deterministically in
tests.
"""

from __future__ import annotations

from abc import ABC, abstractmethod


class AbstractWindowStore(ABC):
    """Key-value store with per-entry TTL holding serialized window records.

    Implementations must raise ``WindowStoreError`` for infrastructure
    failures so callers can tell them apart from programming errors.
    """

    @abstractmethod
    async def get(self, key: str) -> str | None:
        """Fetch the serialized record stored under ``key``.

        Args:
            key: Store key.

        Returns:
            The stored payload, or None when absent or expired.

        Raises:
            WindowStoreError: If the backing store cannot be read.
        """
        raise NotImplementedError

    @abstractmethod
    async def put(self, key: str, value: str, *, ttl_seconds: int) -> None:
        """Store ``value`` under ``key``, expiring after ``ttl_seconds``.

        Args:
            key: Store key.
            value: Serialized record.
            ttl_seconds: Time-to-live for the entry.

        Raises:
            WindowStoreError: If the backing store cannot be written.
        """
        raise NotImplementedError

    async def close(self) -> None:
        """Release any resources held by the store."""
        return None
