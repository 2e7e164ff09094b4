"""Rate limit window stores.

This package provides a small abstraction layer over the shared cache that
holds fixed-window counters, so the limiter can run against an in-process
store locally and a shared Redis instance in production without changing the
HTTP layer.
"""

from bandcrawl.adapters.rate_limit.base import AbstractWindowStore
from bandcrawl.adapters.rate_limit.factory import create_window_store
from bandcrawl.adapters.rate_limit.in_memory import InMemoryWindowStore
from bandcrawl.adapters.rate_limit.redis_store import RedisWindowStore

__all__ = [
    "AbstractWindowStore",
    "InMemoryWindowStore",
    "RedisWindowStore",
    "create_window_store",
]
