"""Configuration management service with Pydantic Settings.

This module provides centralized configuration management for the
ATP unlock tracker, loading and validating environment variables at
startup.
"""

from __future__ import annotations

import logging
import re
from functools import lru_cache
from typing import Literal

from pydantic import Field, SecretStr, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

_ENV_FILE = ".env"
_ENV_FILE_ENCODING = "utf-8"

_ADDRESS_RE = re.compile(r"^0x[0-9a-fA-F]{40}$")

DEFAULT_TOKEN_ADDRESS = "0xa27ec0006e59f245217ff08cd52a7e8b169e62d2"
MULTICALL3_ADDRESS = "0xcA11bde05977b3631167028862bE2a173976CA11"


def _validate_http_url(v: str | None) -> str | None:
    if v is None:
        return v
    if not v.startswith(("http://", "https://")):
        raise ValueError("RPC URL must be an HTTP(S) endpoint")
    return v


def _validate_address(v: str) -> str:
    if not _ADDRESS_RE.match(v):
        raise ValueError(f"Invalid contract address: {v!r}")
    return v


class ChainSettings(BaseSettings):
    """Ethereum RPC and read-batching settings."""

    model_config = SettingsConfigDict(env_prefix="CHAIN_", extra="ignore")

    rpc_url: str = Field(
        default="https://eth.llamarpc.com",
        alias="CHAIN_RPC_URL",
        description="Primary Ethereum RPC endpoint",
    )
    fallback_rpc_url: str | None = Field(
        default=None,
        alias="CHAIN_FALLBACK_RPC_URL",
        description="Fallback Ethereum RPC endpoint",
    )
    multicall_address: str = Field(
        default=MULTICALL3_ADDRESS,
        alias="CHAIN_MULTICALL_ADDRESS",
        description="Multicall3 deployment used to batch view calls",
    )
    multicall_enabled: bool = Field(
        default=True,
        alias="CHAIN_MULTICALL_ENABLED",
        description="Coalesce concurrent reads into Multicall3 aggregate3 calls",
    )
    max_calls_per_batch: int = Field(
        default=500,
        alias="CHAIN_MAX_CALLS_PER_BATCH",
        ge=1,
        le=10_000,
        description="Maximum view calls packed into one aggregate3 request",
    )
    max_requests_per_second: float = Field(
        default=25.0,
        alias="CHAIN_MAX_REQUESTS_PER_SECOND",
        gt=0,
        le=10_000,
        description="Rate limit for RPC requests",
    )

    @field_validator("rpc_url", "fallback_rpc_url")
    @classmethod
    def validate_url(cls, v: str | None) -> str | None:
        """Validate RPC URL format."""
        return _validate_http_url(v)

    @field_validator("multicall_address")
    @classmethod
    def validate_multicall_address(cls, v: str) -> str:
        return _validate_address(v)


class TokenSettings(BaseSettings):
    """Tracked ERC-20 token."""

    model_config = SettingsConfigDict(env_prefix="TOKEN_", extra="ignore")

    address: str = Field(
        default=DEFAULT_TOKEN_ADDRESS,
        alias="TOKEN_ADDRESS",
        description="ERC-20 token whose holders are probed for ATP contracts",
    )

    @field_validator("address")
    @classmethod
    def validate_token_address(cls, v: str) -> str:
        return _validate_address(v).lower()


class DiscoverySettings(BaseSettings):
    """ATP discovery batching and retry settings."""

    model_config = SettingsConfigDict(env_prefix="DISCOVERY_", extra="ignore")

    batch_size: int = Field(
        default=50,
        alias="DISCOVERY_BATCH_SIZE",
        ge=1,
        le=5_000,
        description="Candidate addresses processed concurrently per batch",
    )
    max_addresses: int = Field(
        default=1000,
        alias="DISCOVERY_MAX_ADDRESSES",
        ge=0,
        description="Maximum candidate addresses to probe (0 = unlimited)",
    )
    retry_attempts: int = Field(
        default=3,
        alias="DISCOVERY_RETRY_ATTEMPTS",
        ge=1,
        le=20,
        description="Attempts per ATP fetch before giving up",
    )
    retry_base_delay_seconds: float = Field(
        default=1.0,
        alias="DISCOVERY_RETRY_BASE_DELAY_SECONDS",
        ge=0.0,
        le=300.0,
        description="Base backoff delay; doubles with each retry",
    )


class HoldersSettings(BaseSettings):
    """Moralis token-holder listing settings."""

    model_config = SettingsConfigDict(env_prefix="MORALIS_", extra="ignore")

    api_key: SecretStr | None = Field(
        default=None,
        alias="MORALIS_API_KEY",
        description="Moralis Web3 Data API key",
    )
    base_url: str = Field(
        default="https://deep-index.moralis.io/api/v2.2",
        alias="MORALIS_BASE_URL",
        description="Moralis API base URL",
    )
    chain: str = Field(
        default="eth",
        alias="MORALIS_CHAIN",
        description="Moralis chain identifier",
    )
    page_size: int = Field(
        default=100,
        alias="MORALIS_PAGE_SIZE",
        ge=1,
        le=100,
        description="Holders requested per page",
    )
    max_pages: int = Field(
        default=50,
        alias="MORALIS_MAX_PAGES",
        ge=1,
        le=10_000,
        description="Hard cap on pages fetched (bounded work)",
    )

    @field_validator("base_url")
    @classmethod
    def validate_base_url(cls, v: str) -> str:
        if not v.startswith(("http://", "https://")):
            raise ValueError("MORALIS_BASE_URL must be an HTTP(S) endpoint")
        return v.rstrip("/")


class RedisSettings(BaseSettings):
    """Redis cache and refresh-lock settings."""

    model_config = SettingsConfigDict(env_prefix="", extra="ignore")

    url: str | None = Field(
        default=None,
        alias="REDIS_URL",
        description="Redis connection string (caching disabled when unset)",
    )
    refresh_interval_seconds: int = Field(
        default=86_400,
        alias="REFRESH_INTERVAL_SECONDS",
        ge=60,
        description="Expected interval between refresh runs",
    )
    refresh_lock_ttl_seconds: int = Field(
        default=3600,
        alias="REFRESH_LOCK_TTL_SECONDS",
        ge=10,
        description="Expiry of the refresh lock (guards against crashed runs)",
    )

    @field_validator("url")
    @classmethod
    def validate_url(cls, v: str | None) -> str | None:
        """Validate Redis URL format."""
        if v is None:
            return v
        if not v.startswith(("redis://", "rediss://")):
            raise ValueError("REDIS_URL must start with redis:// or rediss://")
        return v


class Settings(BaseSettings):
    """Root application settings."""

    model_config = SettingsConfigDict(
        env_file=_ENV_FILE,
        env_file_encoding=_ENV_FILE_ENCODING,
        extra="ignore",
    )

    chain: ChainSettings = Field(
        default_factory=lambda: ChainSettings(
            _env_file=_ENV_FILE,
            _env_file_encoding=_ENV_FILE_ENCODING,
        )
    )
    token: TokenSettings = Field(
        default_factory=lambda: TokenSettings(
            _env_file=_ENV_FILE,
            _env_file_encoding=_ENV_FILE_ENCODING,
        )
    )
    discovery: DiscoverySettings = Field(
        default_factory=lambda: DiscoverySettings(
            _env_file=_ENV_FILE,
            _env_file_encoding=_ENV_FILE_ENCODING,
        )
    )
    holders: HoldersSettings = Field(
        default_factory=lambda: HoldersSettings(
            _env_file=_ENV_FILE,
            _env_file_encoding=_ENV_FILE_ENCODING,
        )
    )
    redis: RedisSettings = Field(
        default_factory=lambda: RedisSettings(
            _env_file=_ENV_FILE,
            _env_file_encoding=_ENV_FILE_ENCODING,
        )
    )

    log_level: Literal["DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"] = Field(
        default="INFO",
        alias="LOG_LEVEL",
        description="Logging level",
    )

    def get_logging_level(self) -> int:
        """Get the numeric logging level."""
        level: int = getattr(logging, self.log_level)
        return level

    def redacted_summary(self) -> dict[str, str | dict[str, str]]:
        """Get a summary of settings with secrets redacted.

        Returns:
            Dictionary of settings with sensitive values masked.
        """
        return {
            "chain": {
                "rpc_url": self._redact_url(self.chain.rpc_url),
                "fallback_rpc_url": (
                    self._redact_url(self.chain.fallback_rpc_url)
                    if self.chain.fallback_rpc_url
                    else "(not set)"
                ),
                "multicall_enabled": str(self.chain.multicall_enabled),
                "max_calls_per_batch": str(self.chain.max_calls_per_batch),
            },
            "token_address": self.token.address,
            "discovery": {
                "batch_size": str(self.discovery.batch_size),
                "max_addresses": str(self.discovery.max_addresses),
                "retry_attempts": str(self.discovery.retry_attempts),
                "retry_base_delay_seconds": str(self.discovery.retry_base_delay_seconds),
            },
            "holders": {
                "api_key": "(set)" if self.holders.api_key else "(not set)",
                "chain": self.holders.chain,
                "max_pages": str(self.holders.max_pages),
            },
            "redis_url": self._redact_url(self.redis.url) if self.redis.url else "(not set)",
            "log_level": self.log_level,
        }

    def validate_requirements(self, *, command: Literal["refresh", "inspect", "schedule"]) -> None:
        """Validate command-specific requirements.

        A refresh lists token holders, which needs Moralis credentials.
        """
        if command == "refresh" and not self.holders.api_key:
            raise ValueError("MORALIS_API_KEY is required to list token holders for a refresh")

    @staticmethod
    def _redact_url(url: str) -> str:
        """Redact password from URL if present."""
        if "@" in url and "://" in url:
            protocol_end = url.index("://") + 3
            at_pos = url.index("@")
            creds_part = url[protocol_end:at_pos]
            if ":" in creds_part:
                username = creds_part.split(":")[0]
                return f"{url[:protocol_end]}{username}:***@{url[at_pos + 1 :]}"
        return url


@lru_cache(maxsize=1)
def get_settings() -> Settings:
    """Get the application settings singleton.

    Returns:
        The Settings instance.

    Raises:
        ValidationError: If environment variables have invalid values.
    """
    return Settings()


def clear_settings_cache() -> None:
    """Clear the settings cache.

    Useful for testing when you need to reload settings with
    different environment variables.
    """
    get_settings.cache_clear()
