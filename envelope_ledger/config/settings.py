"""
Configuration Management for Envelope Ledger

Uses pydantic-settings for type-safe configuration from environment variables.

DESIGN DECISION: All configuration is centralized here.
This makes it easy to see what external dependencies exist and
ensures all required configuration is validated at startup.
"""

from datetime import timedelta
from functools import lru_cache
from pathlib import Path
from typing import Optional

from pydantic import Field, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict


DEFAULT_PROBE_URLS = [
    "https://httpbin.org/status/200",
    "https://www.cloudflare.com/favicon.ico",
    "https://cdn.jsdelivr.net/npm/lodash@4.17.21/lodash.min.js",
    "https://www.google.com/favicon.ico",
]


class SyncSettings(BaseSettings):
    """Connectivity probing and offline-first sync configuration."""

    model_config = SettingsConfigDict(
        env_prefix="SYNC_",
        extra="ignore"
    )

    probe_urls: list[str] = Field(
        default_factory=lambda: list(DEFAULT_PROBE_URLS),
        description="Independent endpoints probed in parallel; any success means online"
    )
    probe_timeout_seconds: float = Field(
        default=4.0,
        gt=0,
        le=30,
        description="Per-probe timeout; a slow probe counts as failed"
    )
    fallback_snapshot_path: Optional[str] = Field(
        default=None,
        description="Bundled read-only backup used when the remote store is unreachable at startup"
    )
    local_cache_path: Optional[str] = Field(
        default=None,
        description="JSON file holding the last local ledger state across restarts"
    )
    realtime_poll_interval_seconds: float = Field(
        default=15.0,
        gt=0,
        description="Polling interval for remote stores without push notifications"
    )

    @field_validator('probe_urls')
    @classmethod
    def require_probe_urls(cls, v: list[str]) -> list[str]:
        if not v:
            raise ValueError("At least one connectivity probe URL is required")
        return v


class SessionSettings(BaseSettings):
    """Session gate configuration."""

    model_config = SettingsConfigDict(
        env_prefix="SESSION_",
        extra="ignore"
    )

    offline_grace_period_days: float = Field(
        default=7,
        gt=0,
        le=90,
        description="How long a previously signed-in user may keep working offline"
    )
    state_path: Optional[str] = Field(
        default=None,
        description="JSON file where the session state is persisted between runs"
    )

    @property
    def offline_grace_period(self) -> timedelta:
        return timedelta(days=self.offline_grace_period_days)


class GoogleSheetsSettings(BaseSettings):
    """Google Sheets remote store configuration."""

    model_config = SettingsConfigDict(
        env_prefix="GOOGLE_SHEETS_",
        extra="ignore"
    )

    credentials_path: str = Field(
        ...,
        description="Path to Google service account credentials JSON"
    )
    spreadsheet_id: str = Field(
        ...,
        description="ID of the Google Sheets spreadsheet to use"
    )

    # One worksheet per collection
    envelopes_sheet_name: str = Field(default="Envelopes")
    transactions_sheet_name: str = Field(default="Transactions")
    templates_sheet_name: str = Field(default="DistributionTemplates")
    settings_sheet_name: str = Field(default="AppSettings")

    @field_validator('credentials_path')
    @classmethod
    def validate_credentials_path(cls, v: str) -> str:
        """Warn if credentials file doesn't exist (but don't fail - might be mounted later)."""
        if not Path(v).exists():
            import warnings
            warnings.warn(
                f"Google credentials file not found at {v}. "
                "Make sure it exists before running the application."
            )
        return v


class GeneralSettings(BaseSettings):
    """
    Main application settings.

    Loads configuration from environment variables and .env file.
    """

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        extra="ignore"
    )

    app_environment: str = Field(
        default="development",
        description="Application environment"
    )
    debug_mode: bool = Field(
        default=False,
        description="Enable debug logging"
    )


class Settings(BaseSettings):
    """
    Root settings container.

    Aggregates all sub-settings for easy access.
    """

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        extra="ignore"
    )

    # Sub-settings are loaded lazily so the remote store can stay unconfigured

    @property
    def sync(self) -> SyncSettings:
        return SyncSettings()

    @property
    def session(self) -> SessionSettings:
        return SessionSettings()

    @property
    def google_sheets(self) -> GoogleSheetsSettings:
        return GoogleSheetsSettings()

    @property
    def general(self) -> GeneralSettings:
        return GeneralSettings()


@lru_cache()
def get_settings() -> Settings:
    """
    Get application settings (cached).

    Uses LRU cache to ensure settings are only loaded once.
    Call get_settings.cache_clear() to reload if needed.
    """
    return Settings()


def validate_all_settings() -> dict[str, bool]:
    """
    Validate all settings are properly configured.

    Returns a dict of {setting_name: is_valid}, plus ``<name>_error``
    entries for the ones that failed. Useful for startup checks.
    """
    results = {}
    settings = get_settings()

    for name in ("sync", "session", "google_sheets", "general"):
        try:
            getattr(settings, name)
            results[name] = True
        except Exception as e:
            results[name] = False
            results[f"{name}_error"] = str(e)

    return results
