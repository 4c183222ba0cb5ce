"""Application configuration using Pydantic Settings.

Configuration is environment-aware:
- APP_ENV determines which .env file to load
- Supports: development, testing, staging, production
- Each environment has its own .env.{environment} file

Per-action limits are not configurable here; they are compiled in
(see ``abuse_guard.core.policies``).
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

    Pydantic Settings (v2) populates values from environment variables.
    Static type checkers treat fields as constructor arguments, which is not
    how BaseSettings is intended to be used.
    """

    return AppSettings()  # type: ignore[call-arg]


def _build_limiter_settings() -> "LimiterSettings":
    return LimiterSettings()  # type: ignore[call-arg]


def _build_log_settings() -> "LogSettings":
    return LogSettings()  # type: ignore[call-arg]


class AppSettings(BaseSettings):
    """Service-wide configuration (identity and admin access)."""

    debug: bool = Field(
        False,
        description="Enable debug mode with verbose logging",
    )
    admin_api_key_required: bool = Field(
        True,
        description="Whether admin endpoints require an X-API-Key header",
    )
    admin_api_keys: str | None = Field(
        None,
        description="Comma-separated list of valid admin API keys",
    )
    subject_header: str = Field(
        "X-Subject-ID",
        description="Header carrying the authenticated subject id for user-scoped checks",
    )
    trust_forwarded_for: bool = Field(
        False,
        description="Use the first X-Forwarded-For hop as the client identifier for global checks",
    )

    model_config = SettingsConfigDict(
        env_prefix="APP_",
        case_sensitive=False,
    )


class LimiterSettings(BaseSettings):
    """Rate limit engine tuning (never the per-action limits themselves)."""

    fail_open_remaining: int = Field(
        1000,
        description="Remaining quota reported when the counter store is unavailable",
        ge=0,
    )
    fail_open_reset_seconds: int = Field(
        3600,
        description="Seconds until reset reported on the fail-open path",
        ge=1,
    )
    store_timeout_seconds: float = Field(
        2.0,
        description="Maximum wait for a counter transaction before failing open",
        gt=0,
    )
    violation_history_limit: int = Field(
        50,
        description="Default number of violations returned per subject",
        ge=1,
    )
    top_offenders_limit: int = Field(
        20,
        description="Default number of subjects returned by the top offenders query",
        ge=1,
    )
    top_offenders_window_hours: int = Field(
        24,
        description="Trailing window (hours) aggregated by admin violation queries",
        ge=1,
    )
    top_offenders_scan_cap: int = Field(
        1000,
        description="Maximum raw violation records scanned by admin aggregations",
        ge=1,
    )
    counter_retention_seconds: int = Field(
        172800,
        description="How long an ended window's counter is kept before purge may drop it",
        ge=0,
    )
    violation_retention_seconds: int = Field(
        604800,
        description="How long violation records are kept before purge may drop them",
        ge=86400,
    )
    purge_interval_seconds: int = Field(
        900,
        description="Seconds between background retention purges (0 disables)",
        ge=0,
    )

    model_config = SettingsConfigDict(
        env_prefix="LIMITER_",
        case_sensitive=False,
    )


class LogSettings(BaseSettings):
    """Logging output configuration."""

    level: str = Field("INFO", description="Root log level")
    format: str = Field("json", description="Log format: json or plain")
    output: str = Field("stdout", description="Log destination: stdout or file")
    file_path: str | None = Field(None, description="Log file path when output=file")
    max_bytes: int = Field(
        10_485_760,
        description="Rotate the log file after this many bytes (0 disables rotation)",
        ge=0,
    )
    backup_count: int = Field(5, description="Rotated log files to keep", ge=0)
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
    Raises validation errors on startup if settings are malformed.
    """

    app_env: str = APP_ENV
    app: AppSettings = Field(default_factory=_build_app_settings)
    limiter: LimiterSettings = Field(default_factory=_build_limiter_settings)
    log: LogSettings = Field(default_factory=_build_log_settings)

    model_config = SettingsConfigDict(
        case_sensitive=False,
    )


# Global settings instance - composed from domain-specific settings
settings = Settings()
