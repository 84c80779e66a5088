"""Configuration module for dsync."""

from .settings import AppSettings, SettingsValidationError, load_settings

__all__ = [
    "AppSettings",
    "SettingsValidationError",
    "load_settings",
]
