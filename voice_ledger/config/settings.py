"""
Configuration Management for Voice Ledger

Every setting comes from environment variables (or .env) through pydantic-settings.

DESIGN DECISION: All configuration is centralized here, including the
confidence weights used by the deterministic parser. Those weights are
tuned product constants; they live as named settings so they can be
overridden per environment without touching parser code.
"""

from functools import lru_cache
from pathlib import Path
from typing import Optional

from pydantic import Field, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict


class GeminiSettings(BaseSettings):
    """Gemini LLM configuration for the AI expense extractor."""

    model_config = SettingsConfigDict(
        env_prefix="GEMINI_",
        extra="ignore"
    )

    api_key: Optional[str] = Field(
        default=None,
        description="Gemini API key. Without it the AI extractor is disabled."
    )
    model_name: str = Field(
        default="gemini-1.5-flash",
        description="Gemini model to use"
    )
    max_tokens: int = Field(
        default=512,
        ge=100,
        le=8192,
        description="Maximum tokens in response"
    )
    temperature: float = Field(
        default=0.0,
        ge=0.0,
        le=1.0,
        description="Model temperature (lower = more deterministic)"
    )

    @property
    def is_configured(self) -> bool:
        return bool(self.api_key and self.api_key.strip())


class CloudinarySettings(BaseSettings):
    """Cloudinary object storage for voice capture audio."""

    model_config = SettingsConfigDict(
        env_prefix="CLOUDINARY_",
        extra="ignore"
    )

    cloud_name: str = Field(
        ...,
        description="Cloudinary cloud name"
    )
    api_key: str = Field(
        ...,
        description="Cloudinary API key"
    )
    api_secret: str = Field(
        ...,
        description="Cloudinary API secret"
    )
    voice_folder: str = Field(
        default="voice-captures",
        description="Folder (bucket) that voice captures are uploaded into"
    )


class GoogleSheetsSettings(BaseSettings):
    """Google Sheets backend for the server-side expense store."""

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

    # Sheet names within the spreadsheet
    expenses_sheet_name: str = Field(
        default="Expenses",
        description="Name of the sheet for expense rows"
    )
    usage_sheet_name: str = Field(
        default="UsageEvents",
        description="Name of the sheet for parse usage events"
    )
    metadata_sheet_name: str = Field(
        default="Metadata",
        description="Name of the sheet for per-user metadata snapshots"
    )

    @field_validator('credentials_path')
    @classmethod
    def validate_credentials_path(cls, v: str) -> str:
        """A missing credentials file only warns; the store fails on first use instead."""
        if not Path(v).exists():
            import warnings
            warnings.warn(
                f"Google credentials file not found at {v}. "
                "Make sure it exists before running the application."
            )
        return v


class RemoteApiSettings(BaseSettings):
    """Remote parse endpoint / REST store configuration."""

    model_config = SettingsConfigDict(
        env_prefix="VOICE_LEDGER_API_",
        extra="ignore"
    )

    base_url: str = Field(
        ...,
        description="Base URL of the remote backend"
    )
    anon_key: str = Field(
        default="",
        description="Public API key sent as the apikey header"
    )
    voice_bucket: str = Field(
        default="voice-captures",
        description="Object storage bucket for voice uploads"
    )


class ParserSettings(BaseSettings):
    """
    Parsing engine tuning.

    The auto-save threshold and every confidence weight are empirically
    tuned. Change them through the environment, not in code.
    """

    model_config = SettingsConfigDict(
        env_prefix="PARSER_",
        extra="ignore"
    )

    auto_save_threshold: float = Field(
        default=0.90,
        ge=0.0,
        le=1.0,
        description="Minimum confidence for a draft to auto-save"
    )
    max_voice_seconds: int = Field(
        default=15,
        ge=1,
        description="Longest voice capture accepted by the parser"
    )
    default_daily_voice_limit: int = Field(
        default=50,
        ge=0,
        description="Voice parses allowed per local day when the profile sets none"
    )
    sentinel_amount: int = Field(
        default=1,
        description="Amount reported when no positive amount could be read"
    )

    # Deterministic confidence weights
    confidence_base: float = 0.70
    amount_bonus: float = 0.12
    category_bonus: float = 0.08
    explicit_category_bonus: float = 0.07
    explicit_currency_bonus: float = 0.04
    token_bonus: float = 0.03
    description_bonus: float = 0.04
    missing_amount_penalty: float = 0.10
    unresolved_category_penalty: float = 0.04
    default_currency_penalty: float = 0.02
    confidence_floor: float = 0.40
    confidence_ceiling: float = 0.99

    # AI extractor confidence handling
    ai_confidence_floor: float = 0.50
    ai_confidence_ceiling: float = 0.99
    ai_default_confidence: float = 0.94


class AppSettings(BaseSettings):
    """
    Device-side application settings.

    Persistence location, capture defaults and tombstone retention.
    """

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        extra="ignore"
    )

    # Environment
    app_environment: str = Field(
        default="development",
        description="Application environment"
    )
    debug_mode: bool = Field(
        default=False,
        description="Enable debug mode"
    )

    # Local persistence
    data_dir: Path = Field(
        default=Path.home() / ".voice_ledger",
        description="Directory holding queue/ledger/metadata JSON files"
    )

    # Capture defaults
    default_currency: str = Field(
        default="USD",
        min_length=3,
        max_length=3,
        description="Account default currency"
    )
    local_timezone: str = Field(
        default="UTC",
        description="IANA timezone sent with parse requests"
    )
    language_hint: Optional[str] = Field(
        default=None,
        pattern="^(en|es)$",
        description="Preferred language for parsed descriptions"
    )
    allow_auto_save: bool = Field(
        default=True,
        description="Let confident parses save without review"
    )

    # Network and retention
    network_timeout_seconds: float = Field(
        default=20.0,
        gt=0,
        description="Timeout applied to every remote call"
    )
    tombstone_retention_days: int = Field(
        default=30,
        ge=1,
        description="Days a deleted expense stays restorable"
    )

    @field_validator("default_currency")
    @classmethod
    def upper_currency(cls, v: str) -> str:
        return v.strip().upper()


class Settings(BaseSettings):
    """
    Entry point for every settings group.

    Each group is built on access, so an unconfigured integration only fails where it is used.
    """

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        extra="ignore"
    )

    @property
    def gemini(self) -> GeminiSettings:
        return GeminiSettings()

    @property
    def cloudinary(self) -> CloudinarySettings:
        return CloudinarySettings()

    @property
    def google_sheets(self) -> GoogleSheetsSettings:
        return GoogleSheetsSettings()

    @property
    def remote_api(self) -> RemoteApiSettings:
        return RemoteApiSettings()

    @property
    def parser(self) -> ParserSettings:
        return ParserSettings()

    @property
    def app(self) -> AppSettings:
        return AppSettings()


@lru_cache()
def get_settings() -> Settings:
    """
    The process-wide Settings instance.

    Tests that change the environment call get_settings.cache_clear().
    """
    return Settings()


def validate_all_settings() -> dict[str, bool]:
    """
    Report which settings groups load from the current environment.

    Returns {group_name: loaded}, plus {group_name}_error for failures.
    """
    results = {}

    settings = get_settings()

    checks = {
        "cloudinary": lambda: settings.cloudinary,
        "google_sheets": lambda: settings.google_sheets,
        "remote_api": lambda: settings.remote_api,
        "parser": lambda: settings.parser,
        "app": lambda: settings.app,
    }
    for name, load in checks.items():
        try:
            load()
            results[name] = True
        except Exception as e:
            results[name] = False
            results[f"{name}_error"] = str(e)

    try:
        results["gemini"] = settings.gemini.is_configured
    except Exception as e:
        results["gemini"] = False
        results["gemini_error"] = str(e)

    return results
