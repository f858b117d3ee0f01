"""Configuration package."""

from voice_ledger.config.settings import (
    AppSettings,
    CloudinarySettings,
    GeminiSettings,
    GoogleSheetsSettings,
    ParserSettings,
    RemoteApiSettings,
    Settings,
    get_settings,
    validate_all_settings,
)

__all__ = [
    "AppSettings",
    "CloudinarySettings",
    "GeminiSettings",
    "GoogleSheetsSettings",
    "ParserSettings",
    "RemoteApiSettings",
    "Settings",
    "get_settings",
    "validate_all_settings",
]
