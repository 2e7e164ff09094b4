"""Application configuration using Pydantic Settings.

Configuration is environment-aware:
- APP_ENV determines which .env file to load
- Supports: development, testing, staging, production
- Each environment has its own .env.{environment} file
"""

from __future__ import annotations

import os
from pathlib import Path

from pydantic import Field
from pydantic_settings import BaseSettings, SettingsConfigDict


# Determine which environment to load (default: development)
APP_ENV = os.getenv("APP_ENV", "development")

# Project root (so .env resolution doesn't depend on current working directory)
PROJECT_ROOT = Path(__file__).resolve().parents[2]

ENV_FILE_MAP = {
    "development": ".env.development",
    "testing": ".env.testing",
    "staging": ".env.staging",
    "production": ".env.production",
}

_env_filename = ENV_FILE_MAP.get(APP_ENV, ".env.development")
_env_path = PROJECT_ROOT / _env_filename

# Only load from file if it exists (production might inject via env vars only)
_env_file = str(_env_path) if _env_path.is_file() else None


# Load .env file early to populate os.environ before creating nested settings
# This is necessary because Pydantic nested BaseSettings don't inherit env_file
if _env_file and not os.getenv("TESTING"):
    from dotenv import load_dotenv
    load_dotenv(_env_file, override=True)


def _build_app_settings() -> "AppSettings":
    """Build app settings from environment.

    Pydantic Settings (v2) can populate values from environment variables.
    However, static type checkers often treat required fields as required
    constructor arguments, which is not how BaseSettings is intended to be used.
    """

    return AppSettings()  # type: ignore[call-arg]


def _build_log_settings() -> "LogSettings":
    """Build log settings from environment.

    See _build_app_settings() for rationale about the type ignore.
    """

    return LogSettings()  # type: ignore[call-arg]


class LogSettings(BaseSettings):
    """Logging configuration."""

    level: str = Field(
        "INFO",
        description="Root log level (DEBUG, INFO, WARNING, ERROR)",
    )
    format: str = Field(
        "json",
        description="Log format: json or plain",
    )
    output: str = Field(
        "stdout",
        description="Log output: stdout or file",
    )
    file_path: str | None = Field(
        None,
        description="Log file path when output=file (default logs/app.log)",
    )
    max_bytes: int = Field(
        10_485_760,
        description="Rotate the log file after this many bytes (0 disables rotation)",
        ge=0,
    )
    backup_count: int = Field(
        5,
        description="Number of rotated log files to keep",
        ge=0,
    )
    request_id_header: str = Field(
        "X-Request-ID",
        description="Header used to propagate the request correlation id",
    )

    model_config = SettingsConfigDict(
        env_prefix="LOG_",
        case_sensitive=False,
    )


class AppSettings(BaseSettings):
    """Application-wide configuration."""

    debug: bool = Field(
        False,
        description="Enable debug mode with verbose logging",
    )

    rate_limit_enabled: bool = Field(
        True,
        description="Enable per-client, per-endpoint rate limiting on /api/ routes",
    )
    rate_limit_backend: str = Field(
        "memory",
        description="Window store backend: memory (per-process) or redis (shared)",
    )
    rate_limit_redis_url: str = Field(
        "redis://localhost:6379/0",
        description="Redis URL used when rate_limit_backend=redis",
    )
    rate_limit_store_timeout_seconds: float = Field(
        0.5,
        description="Upper bound for a single window store call; timeouts fail open",
        gt=0,
    )
    rate_limit_max_entries: int | None = Field(
        100_000,
        description="Maximum tracked windows in the in-memory store (None for unlimited)",
    )

    cors_allow_origin: str = Field(
        "*",
        description="Value of Access-Control-Allow-Origin on API responses",
    )
    security_headers_enabled: bool = Field(
        True,
        description="Add X-Content-Type-Options/X-Frame-Options/Referrer-Policy headers",
    )

    admin_key_required: bool = Field(
        True,
        description="Whether /api/admin endpoints require the X-Admin-Key header",
    )
    admin_api_keys: str | None = Field(
        None,
        description="Comma-separated list of valid admin keys",
    )
    admin_lockout_threshold: int = Field(
        5,
        description="Invalid admin keys from one client before it is locked out",
        ge=1,
    )
    admin_lockout_window_seconds: int = Field(
        600,
        description="Window in which invalid admin keys are counted",
        ge=1,
    )
    admin_lockout_duration_seconds: int = Field(
        3600,
        description="How long a locked out client is refused on admin endpoints",
        ge=1,
    )

    model_config = SettingsConfigDict(
        env_prefix="APP_",
        case_sensitive=False,
    )


class Settings(BaseSettings):
    """Main application settings container.

    Automatically loads from the appropriate .env.{APP_ENV} file.
    Raises validation errors on startup if settings are malformed.
    """

    app_env: str = APP_ENV
    app: AppSettings = Field(default_factory=_build_app_settings)
    log: LogSettings = Field(default_factory=_build_log_settings)

    model_config = SettingsConfigDict(
        case_sensitive=False,
    )


# Global settings instance - composed from domain-specific settings
# Nested settings are created via default_factory so env loading works.
settings = Settings()
