"""Configuration management service with Pydantic Settings.

This module provides centralized configuration management for the
Trove Monitor indexer, loading and validating environment variables
at startup.
"""

from __future__ import annotations

import logging
from decimal import Decimal
from functools import lru_cache
from typing import Literal

from pydantic import Field, SecretStr, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

_ENV_FILE = ".env"
_ENV_FILE_ENCODING = "utf-8"

MAX_REDEMPTION_ITERATIONS = 250


def _validate_http_url(v: str | None) -> str | None:
    if v is None:
        return v
    if not v.startswith(("http://", "https://")):
        raise ValueError("RPC URL must be an HTTP(S) endpoint")
    return v


class DatabaseSettings(BaseSettings):
    """Database connection settings."""

    model_config = SettingsConfigDict(env_prefix="", extra="ignore")

    url: str | None = Field(
        default=None,
        alias="DATABASE_URL",
        description="PostgreSQL connection string (required by the index command)",
    )

    @field_validator("url")
    @classmethod
    def validate_url(cls, v: str | None) -> str | None:
        """Validate database URL format."""
        if v is not None and not v.startswith(("postgresql://", "postgresql+asyncpg://", "sqlite+aiosqlite://")):
            raise ValueError("DATABASE_URL must be a PostgreSQL (or aiosqlite) connection string")
        return v


class RedisSettings(BaseSettings):
    """Optional Redis cache for immutable chain data."""

    model_config = SettingsConfigDict(env_prefix="", extra="ignore")

    url: str | None = Field(
        default=None,
        alias="REDIS_URL",
        description="Redis connection string (block header cache)",
    )

    @field_validator("url")
    @classmethod
    def validate_url(cls, v: str | None) -> str | None:
        """Validate Redis URL format."""
        if v is not None and not v.startswith("redis://"):
            raise ValueError("REDIS_URL must start with redis://")
        return v


class MezoSettings(BaseSettings):
    """Main chain RPC settings."""

    model_config = SettingsConfigDict(env_prefix="MEZO_", extra="ignore")

    rpc_url: str = Field(
        alias="MEZO_RPC_URL",
        description="Mezo RPC endpoint",
    )
    chain_id: int = Field(
        default=31612,
        alias="MEZO_CHAIN_ID",
        description="Chain ID used when signing transactions",
    )

    @field_validator("rpc_url")
    @classmethod
    def validate_url(cls, v: str) -> str:
        """Validate RPC URL format."""
        _validate_http_url(v)
        return v


class EthereumSettings(BaseSettings):
    """Secondary reference chain (bridge balances)."""

    model_config = SettingsConfigDict(env_prefix="ETHEREUM_", extra="ignore")

    rpc_url: str | None = Field(
        default=None,
        alias="ETHEREUM_RPC_URL",
        description="Ethereum mainnet RPC endpoint (required by the index command)",
    )

    @field_validator("rpc_url")
    @classmethod
    def validate_url(cls, v: str | None) -> str | None:
        """Validate RPC URL format."""
        return _validate_http_url(v)


class IndexerSettings(BaseSettings):
    """Synchronization pass settings."""

    model_config = SettingsConfigDict(env_prefix="INDEXER_", extra="ignore")

    environment: Literal["dev", "prod"] = Field(
        default="prod",
        alias="ENVIRONMENT",
        description="dev scans a tight local range on first run; prod uses the lookback window",
    )
    liquidation_chunk_size: int = Field(
        default=1000,
        alias="LIQUIDATION_CHUNK_SIZE",
        ge=1,
        description="Block chunk size for liquidation log scans",
    )
    redemption_chunk_size: int = Field(
        default=1000,
        alias="REDEMPTION_CHUNK_SIZE",
        ge=1,
        description="Block chunk size for redemption log scans",
    )
    lookback_blocks: int = Field(
        default=500_000,
        alias="INDEXER_LOOKBACK_BLOCKS",
        ge=1,
        description="First-run lookback window (prod only)",
    )
    multicall_batch_size: int = Field(
        default=250,
        alias="INDEXER_MULTICALL_BATCH_SIZE",
        ge=1,
        le=5_000,
        description="Calls per multicall round-trip",
    )
    price_sample_interval_blocks: int = Field(
        default=120,
        alias="INDEXER_PRICE_SAMPLE_INTERVAL_BLOCKS",
        ge=1,
        description="Minimum blocks between instantaneous price samples",
    )
    average_sample_interval_blocks: int = Field(
        default=2880,
        alias="INDEXER_AVERAGE_SAMPLE_INTERVAL_BLOCKS",
        ge=1,
        description="Minimum blocks between rolling-average price samples",
    )
    average_window_hours: int = Field(
        default=4,
        alias="INDEXER_AVERAGE_WINDOW_HOURS",
        ge=1,
        le=168,
        description="Trailing window for the rolling-average price",
    )


class ContractSettings(BaseSettings):
    """Deployed protocol contract addresses."""

    model_config = SettingsConfigDict(env_prefix="CONTRACT_", extra="ignore")

    trove_manager: str = Field(
        default="0x94AfB503dBca74aC3E4929BACEeDfCe19B93c193",
        alias="CONTRACT_TROVE_MANAGER",
    )
    borrower_operations: str = Field(
        default="0x44b1bac67dDA612a41a58AAf779143B181dEe031",
        alias="CONTRACT_BORROWER_OPERATIONS",
    )
    hint_helpers: str = Field(
        default="0xD267b3bE2514375A075fd03C3D9CBa6b95317DC3",
        alias="CONTRACT_HINT_HELPERS",
    )
    sorted_troves: str = Field(
        default="0x8C5DB4C62BF29c1C4564390d10c20a47E0b2749f",
        alias="CONTRACT_SORTED_TROVES",
    )
    price_feed: str | None = Field(
        default=None,
        alias="CONTRACT_PRICE_FEED",
        description="Oracle address; resolved from TroveManager.priceFeed() when unset",
    )
    musd: str = Field(
        default="0xdD468A1DDc392dcdbEf6db6e34E89AA338F9F186",
        alias="CONTRACT_MUSD",
    )
    pool_factory: str = Field(
        default="0x83FE469C636C4081b87bA5b3Ae9991c6Ed104248",
        alias="CONTRACT_POOL_FACTORY",
    )
    voter: str = Field(
        default="0x48233cCC97B87Ba93bCA212cbEe48e3210211f03",
        alias="CONTRACT_VOTER",
    )
    voting_escrow: str = Field(
        default="0x3D4b1b884A7a1E59fE8589a3296EC8f8cBB6f279",
        alias="CONTRACT_VOTING_ESCROW",
    )
    multicall3: str = Field(
        default="0xcA11bde05977b3631167028862bE2a173976CA11",
        alias="CONTRACT_MULTICALL3",
    )
    bridge: str = Field(
        default="0xF6680EA3b480cA2b72D96ea13cCAF2cFd8e6908c",
        alias="CONTRACT_BRIDGE",
        description="Bridge custody contract on Ethereum",
    )


class RedemptionSettings(BaseSettings):
    """Redemption tool settings."""

    model_config = SettingsConfigDict(env_prefix="REDEMPTION_", extra="ignore")

    private_key: SecretStr | None = Field(
        default=None,
        alias="REDEMPTION_PRIVATE_KEY",
        description="Signer key used to submit approve/redeem transactions",
    )
    max_iterations: int = Field(
        default=50,
        alias="REDEMPTION_MAX_ITERATIONS",
        description="Hint-helper probe steps (clamped to 1..250)",
    )
    probe_amount: Decimal | None = Field(
        default=None,
        alias="REDEMPTION_PROBE_AMOUNT",
        description="If set, each index pass computes hints for this MUSD amount",
    )

    @field_validator("max_iterations")
    @classmethod
    def clamp_max_iterations(cls, v: int) -> int:
        return max(1, min(MAX_REDEMPTION_ITERATIONS, v))

    @field_validator("probe_amount")
    @classmethod
    def validate_probe_amount(cls, v: Decimal | None) -> Decimal | None:
        if v is not None and v <= 0:
            raise ValueError("REDEMPTION_PROBE_AMOUNT must be > 0")
        return v


class QuoteSettings(BaseSettings):
    """Reference swap quote (CoW Protocol) settings."""

    model_config = SettingsConfigDict(env_prefix="COW_", extra="ignore")

    api_url: str = Field(
        default="https://api.cow.fi/mainnet",
        alias="COW_API_URL",
    )
    sell_amount: Decimal = Field(
        default=Decimal("100000"),
        alias="COW_QUOTE_SELL_AMOUNT",
        description="MUSD amount quoted against USDC",
    )
    quote_from: str = Field(
        default="0x0000000000000000000000000000000000000000",
        alias="COW_QUOTE_FROM",
    )
    timeout_seconds: float = Field(
        default=10.0,
        alias="COW_TIMEOUT_SECONDS",
        gt=0,
        le=120,
    )

    @field_validator("api_url")
    @classmethod
    def validate_api_url(cls, v: str) -> str:
        if not v.startswith(("http://", "https://")):
            raise ValueError("COW_API_URL must be an HTTP(S) endpoint")
        return v.rstrip("/")


class Settings(BaseSettings):
    """Main application settings.

    Loads configuration from environment variables with support for
    .env files via python-dotenv.

    Example:
        ```python
        from trove_monitor.config import get_settings

        settings = get_settings()
        print(settings.database.url)
        print(settings.indexer.environment)
        ```
    """

    model_config = SettingsConfigDict(
        env_file=_ENV_FILE,
        env_file_encoding=_ENV_FILE_ENCODING,
        extra="ignore",
    )

    # Nested configuration groups
    #
    # NOTE: Each nested BaseSettings must be given the same env_file, otherwise it
    # will only read from the process environment (and ignore `.env`).
    database: DatabaseSettings = Field(
        default_factory=lambda: DatabaseSettings(
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
    mezo: MezoSettings = Field(
        default_factory=lambda: MezoSettings(
            _env_file=_ENV_FILE,
            _env_file_encoding=_ENV_FILE_ENCODING,
        )
    )
    ethereum: EthereumSettings = Field(
        default_factory=lambda: EthereumSettings(
            _env_file=_ENV_FILE,
            _env_file_encoding=_ENV_FILE_ENCODING,
        )
    )
    indexer: IndexerSettings = Field(
        default_factory=lambda: IndexerSettings(
            _env_file=_ENV_FILE,
            _env_file_encoding=_ENV_FILE_ENCODING,
        )
    )
    contracts: ContractSettings = Field(
        default_factory=lambda: ContractSettings(
            _env_file=_ENV_FILE,
            _env_file_encoding=_ENV_FILE_ENCODING,
        )
    )
    redemption: RedemptionSettings = Field(
        default_factory=lambda: RedemptionSettings(
            _env_file=_ENV_FILE,
            _env_file_encoding=_ENV_FILE_ENCODING,
        )
    )
    quote: QuoteSettings = Field(
        default_factory=lambda: QuoteSettings(
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
            "database_url": self._redact_url(self.database.url) if self.database.url else "(not set)",
            "redis_url": self._redact_url(self.redis.url) if self.redis.url else "(not set)",
            "mezo": {
                "rpc_url": self._redact_url(self.mezo.rpc_url),
                "chain_id": str(self.mezo.chain_id),
            },
            "ethereum": {
                "rpc_url": self._redact_url(self.ethereum.rpc_url) if self.ethereum.rpc_url else "(not set)",
            },
            "indexer": {
                "environment": self.indexer.environment,
                "liquidation_chunk_size": str(self.indexer.liquidation_chunk_size),
                "redemption_chunk_size": str(self.indexer.redemption_chunk_size),
                "lookback_blocks": str(self.indexer.lookback_blocks),
                "multicall_batch_size": str(self.indexer.multicall_batch_size),
            },
            "redemption": {
                "private_key": "(set)" if self.redemption.private_key else "(not set)",
                "max_iterations": str(self.redemption.max_iterations),
                "probe_amount": str(self.redemption.probe_amount or "(not set)"),
            },
            "quote": {
                "api_url": self.quote.api_url,
                "sell_amount": str(self.quote.sell_amount),
            },
            "log_level": self.log_level,
        }

    def validate_requirements(self, *, command: Literal["index", "redeem"], execute: bool = False) -> None:
        """Validate command-specific requirements.

        Indexing needs the database and the Ethereum RPC. Submitting a
        redemption needs a signer; everything else is read-only.
        """
        if command == "index":
            if not self.database.url:
                raise ValueError("DATABASE_URL is required to run the indexer")
            if not self.ethereum.rpc_url:
                raise ValueError("ETHEREUM_RPC_URL is required to run the indexer")
        if command == "redeem" and execute and not self.redemption.private_key:
            raise ValueError("REDEMPTION_PRIVATE_KEY is required to submit redemptions")

    @staticmethod
    def _redact_url(url: str) -> str:
        """Redact password from URL if present."""
        if "@" in url and "://" in url:
            # URL has credentials - redact the password
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
        ValidationError: If required environment variables are missing
            or have invalid values.
    """
    return Settings()


def clear_settings_cache() -> None:
    """Clear the settings cache.

    Useful for testing when environment variables change.
    """
    get_settings.cache_clear()
