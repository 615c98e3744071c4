"""Configuration package."""

from envelope_ledger.config.settings import (
    GeneralSettings,
    GoogleSheetsSettings,
    SessionSettings,
    Settings,
    SyncSettings,
    get_settings,
    validate_all_settings,
)

__all__ = [
    "GeneralSettings",
    "GoogleSheetsSettings",
    "SessionSettings",
    "Settings",
    "SyncSettings",
    "get_settings",
    "validate_all_settings",
]
