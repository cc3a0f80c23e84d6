"""Environment-based configuration using pydantic-settings.

Provides type-safe, validated configuration from environment variables
with defaults matching the transport and routing contracts.

Example:
    >>> from toolrelay.foundation.config import get_settings
    >>> settings = get_settings()
    >>> settings.retry.max_attempts
    3
    >>> settings.stream.max_consecutive_failures
    10

    # Or with environment variables:
    # TOOLRELAY_RETRY_MAX_ATTEMPTS=5
    # TOOLRELAY_HTTP_TIMEOUT=60
"""

from __future__ import annotations

from functools import lru_cache
from typing import Annotated, Literal

from pydantic import Field, NonNegativeFloat, PositiveFloat, PositiveInt, field_validator
from pydantic_settings import BaseSettings, NoDecode, SettingsConfigDict


class RetrySettings(BaseSettings):
    """Default retry policy for unary calls."""

    model_config = SettingsConfigDict(env_prefix="TOOLRELAY_RETRY_", extra="ignore")

    max_attempts: Annotated[int, Field(ge=1, le=20)] = 3
    initial_delay: NonNegativeFloat = Field(default=2.0, description="Delay before the second attempt, seconds")
    backoff_multiplier: Annotated[float, Field(ge=1.0)] = 2.0


class HttpSettings(BaseSettings):
    """HTTP client configuration shared by both executors."""

    model_config = SettingsConfigDict(env_prefix="TOOLRELAY_HTTP_", extra="ignore")

    timeout: PositiveFloat = Field(default=120.0, description="Hard per-attempt timeout, seconds")
    verify_ssl: bool = True
    user_agent: str = "toolrelay/0.1"
    max_error_body: PositiveInt = Field(default=500, description="Chars of response body kept on errors")


class StreamSettings(BaseSettings):
    """Server-sent event stream handling."""

    model_config = SettingsConfigDict(env_prefix="TOOLRELAY_STREAM_", extra="ignore")

    max_consecutive_failures: PositiveInt = Field(default=10, description="Circuit breaker threshold")
    done_sentinel: str = "[DONE]"


class DiscoverySettings(BaseSettings):
    """Endpoint discovery defaults."""

    model_config = SettingsConfigDict(env_prefix="TOOLRELAY_DISCOVERY_", extra="ignore")

    scan_timeout: PositiveFloat = 5.0
    service_type: str = "_mcp._tcp"
    probe_host: str = "127.0.0.1"
    probe_ports: Annotated[list[int], NoDecode] = Field(default_factory=lambda: [3000, 3001, 8000, 8080, 9000])
    probe_timeout: PositiveFloat = 1.0
    capabilities_timeout: PositiveFloat = 5.0

    @field_validator("probe_ports", mode="before")
    @classmethod
    def _split_ports(cls, v: str | list[int]) -> list[int]:
        """Accept comma-separated strings alongside JSON lists."""
        if not isinstance(v, str):
            return v
        return [int(p) for p in v.strip().strip("[]").split(",") if p.strip()]


class McpSettings(BaseSettings):
    """Tool backend protocol configuration."""

    model_config = SettingsConfigDict(env_prefix="TOOLRELAY_MCP_", extra="ignore")

    protocol_version: str = "2024-11-05"
    client_name: str = "toolrelay"
    client_version: str = "0.1.0"
    request_timeout: PositiveFloat = Field(default=30.0, description="Seconds to wait for one response")
    handshake_timeout: PositiveFloat = Field(default=15.0, description="Seconds to wait for the SSE endpoint event")


class LoggingSettings(BaseSettings):
    """Logging configuration."""

    model_config = SettingsConfigDict(env_prefix="TOOLRELAY_LOG_", extra="ignore")

    level: Literal["DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"] = "INFO"
    format: Literal["json", "text"] = "text"

    @field_validator("level", mode="before")
    @classmethod
    def _upper_level(cls, v: str) -> str:
        return v.upper() if isinstance(v, str) else v


class RelaySettings(BaseSettings):
    """Root settings for toolrelay.

    Loads configuration from environment variables with TOOLRELAY_ prefix.
    Supports nested configuration and .env files.

    Example environment variables:
        TOOLRELAY_RETRY_MAX_ATTEMPTS=5
        TOOLRELAY_HTTP_TIMEOUT=60
        TOOLRELAY_STREAM_MAX_CONSECUTIVE_FAILURES=20
        TOOLRELAY_DISCOVERY_PROBE_PORTS=3000,8080
        TOOLRELAY_LOG_FORMAT=json
    """

    model_config = SettingsConfigDict(
        env_prefix="TOOLRELAY_",
        env_file=".env",
        env_file_encoding="utf-8",
        env_nested_delimiter="__",
        extra="ignore",
        validate_default=True,
    )

    debug: bool = False

    retry: RetrySettings = Field(default_factory=RetrySettings)
    http: HttpSettings = Field(default_factory=HttpSettings)
    stream: StreamSettings = Field(default_factory=StreamSettings)
    discovery: DiscoverySettings = Field(default_factory=DiscoverySettings)
    mcp: McpSettings = Field(default_factory=McpSettings)
    logging: LoggingSettings = Field(default_factory=LoggingSettings)


@lru_cache(maxsize=1)
def get_settings() -> RelaySettings:
    """Get the global settings instance (cached)."""
    return RelaySettings()


def clear_settings_cache() -> None:
    """Clear the settings cache so the next get_settings() rereads the environment."""
    get_settings.cache_clear()
