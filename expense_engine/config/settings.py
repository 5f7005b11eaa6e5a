"""
Configuration Management for the Recurring Expense Engine

Uses pydantic-settings for type-safe configuration from environment variables.

DESIGN DECISION: All configuration is centralized here.
Generation windows, matching tolerances and the database location are
validated once at startup instead of being read ad hoc by each job.
"""

from decimal import Decimal
from functools import lru_cache
from pathlib import Path
from typing import Optional

from pydantic import Field, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict


class EngineSettings(BaseSettings):
    """Generation windows and matching tolerances."""

    model_config = SettingsConfigDict(
        env_prefix="EXPENSE_ENGINE_",
        env_file=".env",
        env_file_encoding="utf-8",
        extra="ignore"
    )

    # Generation window (calendar months around "today")
    months_back: int = Field(
        default=6,
        ge=0,
        le=60,
        description="How many months back to generate bill instances for"
    )
    months_forward: int = Field(
        default=2,
        ge=0,
        le=24,
        description="How many months ahead to generate bill instances for"
    )

    # Matching tolerances, expressed as fractions (0.02 == 2%)
    template_amount_tolerance: Decimal = Field(
        default=Decimal("0.02"),
        ge=0,
        le=1,
        description="Allowed deviation from a FIXED template amount"
    )
    default_skip_variance: Decimal = Field(
        default=Decimal("0.05"),
        ge=0,
        le=1,
        description="Default amount variance for VENDOR_AMOUNT skip rules"
    )
    manual_match_tolerance: Decimal = Field(
        default=Decimal("0.05"),
        ge=0,
        le=1,
        description="Allowed deviation when matching a transaction to an existing bill"
    )

    # Read projections
    upcoming_window_days: int = Field(
        default=7,
        ge=1,
        le=90,
        description="How many days ahead count as 'upcoming'"
    )

    # Founder roster file used by the command line
    roster_path: Optional[str] = Field(
        default=None,
        description="Path to a JSON list of {id, name} founder records"
    )

    @field_validator('roster_path')
    @classmethod
    def validate_roster_path(cls, v: Optional[str]) -> Optional[str]:
        """Warn if the roster file doesn't exist (but don't fail - might be mounted later)."""
        if v and not Path(v).exists():
            import warnings
            warnings.warn(
                f"Founder roster file not found at {v}. "
                "Make sure it exists before running a batch job."
            )
        return v


class DatabaseSettings(BaseSettings):
    """SQL storage configuration."""

    model_config = SettingsConfigDict(
        env_prefix="EXPENSE_DB_",
        env_file=".env",
        env_file_encoding="utf-8",
        extra="ignore"
    )

    url: str = Field(
        default="sqlite:///./data/expenses.db",
        description="SQLAlchemy database URL"
    )
    echo: bool = Field(
        default=False,
        description="Log every SQL statement"
    )


class AppSettings(BaseSettings):
    """
    Main application settings.

    Loads configuration from environment variables and .env file.
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
    log_level: str = Field(
        default="INFO",
        pattern="^(DEBUG|INFO|WARNING|ERROR|CRITICAL)$",
        description="Minimum level for the structured log"
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

    # Sub-settings are loaded lazily to allow partial configuration

    @property
    def engine(self) -> EngineSettings:
        return EngineSettings()

    @property
    def database(self) -> DatabaseSettings:
        return DatabaseSettings()

    @property
    def app(self) -> AppSettings:
        return AppSettings()


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

    Returns a dict of {setting_name: is_valid}.
    Useful for startup checks.
    """
    results = {}

    settings = get_settings()

    for name in ("engine", "database", "app"):
        try:
            _ = getattr(settings, name)
            results[name] = True
        except Exception as e:
            results[name] = False
            results[f"{name}_error"] = str(e)

    return results
