"""Configuration package exports."""

from __future__ import annotations

from .settings import (
    DEFAULT_ASSET_NAME,
    DEFAULT_RELEASE_API_URL,
    LoggingSettings,
    ServiceConfig,
    ValidatorSettings,
    get_settings,
    load_settings,
)

__all__ = [
    "DEFAULT_ASSET_NAME",
    "DEFAULT_RELEASE_API_URL",
    "LoggingSettings",
    "ServiceConfig",
    "ValidatorSettings",
    "get_settings",
    "load_settings",
]
