"""Configuration management using pydantic-settings."""

from .settings import (
    DiscoverySettings,
    HttpSettings,
    LoggingSettings,
    McpSettings,
    RelaySettings,
    RetrySettings,
    StreamSettings,
    clear_settings_cache,
    get_settings,
)

__all__ = [
    "DiscoverySettings",
    "HttpSettings",
    "LoggingSettings",
    "McpSettings",
    "RelaySettings",
    "RetrySettings",
    "StreamSettings",
    "clear_settings_cache",
    "get_settings",
]
