"""Configuration package."""

from expense_engine.config.settings import (
    AppSettings,
    DatabaseSettings,
    EngineSettings,
    Settings,
    get_settings,
    validate_all_settings,
)

__all__ = [
    "AppSettings",
    "DatabaseSettings",
    "EngineSettings",
    "Settings",
    "get_settings",
    "validate_all_settings",
]
