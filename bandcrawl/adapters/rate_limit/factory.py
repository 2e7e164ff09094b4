"""Factory for creating window store instances."""

from bandcrawl.adapters.rate_limit.base import AbstractWindowStore
from bandcrawl.adapters.rate_limit.in_memory import InMemoryWindowStore
from bandcrawl.adapters.rate_limit.redis_store import RedisWindowStore
from bandcrawl.core.config import AppSettings, settings
from bandcrawl.core.errors import ValidationAppError


def create_window_store(app_settings: AppSettings | None = None) -> AbstractWindowStore:
    """Instantiate the window store selected by configuration.

    Args:
        app_settings: Optional settings; defaults to the global app settings.

    Returns:
        AbstractWindowStore: Configured store instance.

    Raises:
        ValidationAppError: If the backend name is unknown.
    """
    cfg = app_settings or settings.app
    backend = cfg.rate_limit_backend.lower()

    if backend == "memory":
        return InMemoryWindowStore(max_entries=cfg.rate_limit_max_entries)

    if backend == "redis":
        return RedisWindowStore.from_url(cfg.rate_limit_redis_url, namespace="bandcrawl:")

    raise ValidationAppError(
        code="rate_limit_unknown_backend",
        message=(
            f"Unknown rate limit backend: '{backend}'. Supported backends: memory, redis"
        ),
    )
