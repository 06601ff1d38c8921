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
if _env_file:
    from dotenv import load_dotenv
    load_dotenv(_env_file, override=True)


def _build_app_settings() -> "AppSettings":
    """Build app settings from environment.

    Pydantic Settings (v2) populates values from environment variables, but
    static type checkers treat fields as constructor arguments.
    """

    return AppSettings()  # type: ignore[call-arg]


def _build_clap_settings() -> "ClapSettings":
    return ClapSettings()  # type: ignore[call-arg]


def _build_storage_settings() -> "StorageSettings":
    return StorageSettings()  # type: ignore[call-arg]


def _build_log_settings() -> "LogSettings":
    return LogSettings()  # type: ignore[call-arg]


class AppSettings(BaseSettings):
    """HTTP-facing configuration."""

    debug: bool = Field(
        False,
        description="Enable debug mode with verbose logging",
    )
    allowed_origins: str = Field(
        "",
        description="Comma-separated list of origins allowed to read and clap",
    )
    require_origin: bool = Field(
        True,
        description="Reject increments whose Origin header is missing or not allowed",
    )
    client_ip_header: str | None = Field(
        "CF-Connecting-IP",
        description="Header carrying the client address set by the hosting edge",
    )
    read_cache_max_age_seconds: int = Field(
        10,
        description="Cache-Control max-age for count reads",
        ge=0,
    )

    model_config = SettingsConfigDict(
        env_prefix="APP_",
        case_sensitive=False,
    )

    @property
    def allowed_origin_set(self) -> set[str]:
        return {o.strip() for o in self.allowed_origins.split(",") if o.strip()}


class ClapSettings(BaseSettings):
    """Accounting limits, windows and compaction schedule."""

    max_per_client: int = Field(
        50,
        description="Maximum claps per client, per resource, per window",
        ge=1,
    )
    max_per_request: int = Field(
        10,
        description="Maximum claps a single request may add",
        ge=1,
    )
    window_ms: int = Field(
        60 * 60 * 1000,
        description="Fixed rate limit window length in milliseconds",
        ge=1,
    )
    retention_ms: int | None = Field(
        None,
        description="Age after which rate limit records are compacted (default: 2 windows)",
        ge=1,
    )
    debounce_ms: int = Field(
        500,
        description="Minimum spacing between requests of one client on one resource",
        ge=0,
    )
    debounce_max_entries: int = Field(
        10_000,
        description="Upper bound on tracked debounce keys per process",
        ge=1,
    )
    ip_hash_salt: str = Field(
        "",
        description="Deployment secret mixed into client address hashes",
    )
    compaction_enabled: bool = Field(
        True,
        description="Run the window compactor in the background",
    )
    compaction_interval_seconds: int = Field(
        24 * 60 * 60,
        description="Seconds between compaction runs",
        ge=1,
    )
    compaction_batch_size: int = Field(
        1000,
        description="Rows deleted per compaction statement",
        ge=1,
    )

    model_config = SettingsConfigDict(
        env_prefix="CLAPS_",
        case_sensitive=False,
    )

    @property
    def effective_retention_ms(self) -> int:
        return self.retention_ms if self.retention_ms is not None else 2 * self.window_ms


class StorageSettings(BaseSettings):
    """Backing store selection.

    ``sql`` is the atomic relational strategy. ``memory`` is the best-effort
    key-value strategy and is only meant as a fallback.
    """

    backend: str = Field(
        "sql",
        description="Storage strategy: sql or memory",
    )
    database_url: str = Field(
        "sqlite+aiosqlite:///./claps.db",
        description="SQLAlchemy async database URL",
    )
    timeout_seconds: float = Field(
        5.0,
        description="Timeout applied to every store call",
        gt=0,
    )
    echo: bool = Field(
        False,
        description="Echo SQL statements",
    )
    create_schema: bool = Field(
        True,
        description="Create tables on startup if missing",
    )
    cas_retries: int = Field(
        16,
        description="Compare-and-swap attempts for key-value counter increments",
        ge=1,
    )

    model_config = SettingsConfigDict(
        env_prefix="STORAGE_",
        case_sensitive=False,
    )


class LogSettings(BaseSettings):
    """Logging output configuration."""

    level: str = Field("INFO", description="Root log level")
    format: str = Field("json", description="json or plain")
    output: str = Field("stdout", description="stdout or file")
    file_path: str | None = Field(None, description="Log file path when output=file")
    max_bytes: int | None = Field(
        10 * 1024 * 1024,
        description="Rotate log file after this many bytes (None disables rotation)",
    )
    backup_count: int = Field(5, description="Rotated files to keep")
    request_id_header: str = Field(
        "X-Request-ID",
        description="Header used to propagate the request correlation id",
    )

    model_config = SettingsConfigDict(
        env_prefix="LOG_",
        case_sensitive=False,
    )


class Settings(BaseSettings):
    """Main application settings container.

    Automatically loads from the appropriate .env.{APP_ENV} file.
    Raises validation errors on startup if settings are invalid.
    """

    app_env: str = APP_ENV
    app: AppSettings = Field(default_factory=_build_app_settings)
    claps: ClapSettings = Field(default_factory=_build_clap_settings)
    storage: StorageSettings = Field(default_factory=_build_storage_settings)
    log: LogSettings = Field(default_factory=_build_log_settings)

    model_config = SettingsConfigDict(
        case_sensitive=False,
    )


# Nested settings are created via default_factory so env loading works.
settings = Settings()
