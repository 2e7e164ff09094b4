"""Redis-backed window store shared across workers and hosts."""

from __future__ import annotations

from redis.asyncio import Redis
from redis.exceptions import RedisError

from bandcrawl.adapters.rate_limit.base import AbstractWindowStore
from bandcrawl.core.errors import WindowStoreError


class RedisWindowStore(AbstractWindowStore):
    """Window store using plain ``GET`` / ``SET ... EX`` commands.

    The read-modify-write performed by the limiter is not atomic on top of
    this store; concurrent requests for one key are last-write-wins.
    """

    def __init__(self, client: Redis, *, namespace: str = "") -> None:
        self._client = client
        self._namespace = namespace

    @classmethod
    def from_url(cls, url: str, *, namespace: str = "") -> "RedisWindowStore":
        """Build a store from a Redis URL (``redis://host:port/db``)."""

        return cls(Redis.from_url(url, decode_responses=True), namespace=namespace)

    def _key(self, key: str) -> str:
        return f"{self._namespace}{key}"

    async def get(self, key: str) -> str | None:
        try:
            value = await self._client.get(self._key(key))
        except RedisError as exc:
            raise WindowStoreError(
                code="window_store_read_failed",
                message=f"Redis GET failed: {exc}",
                details={"backend": "redis", "operation": "get"},
            ) from exc

        if isinstance(value, bytes):
            return value.decode("utf-8")
        return value

    async def put(self, key: str, value: str, *, ttl_seconds: int) -> None:
        try:
            await self._client.set(self._key(key), value, ex=ttl_seconds)
        except RedisError as exc:
            raise WindowStoreError(
                code="window_store_write_failed",
                message=f"Redis SET failed: {exc}",
                details={"backend": "redis", "operation": "put"},
            ) from exc

    async def close(self) -> None:
        await self._client.aclose()
