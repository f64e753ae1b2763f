"""Configuration management service with Pydantic Settings.

This module provides centralized configuration management for the
Trade Bot Detector application, loading and validating environment
variables at startup.
"""

from __future__ import annotations

import logging
import re
from datetime import timedelta
from decimal import Decimal
from functools import lru_cache
from typing import Annotated, Literal

from pydantic import Field, SecretStr, field_validator, model_validator
from pydantic_settings import BaseSettings, NoDecode, SettingsConfigDict

_ENV_FILE = ".env"
_ENV_FILE_ENCODING = "utf-8"

_ADDRESS_RE = re.compile(r"^0x[0-9a-fA-F]{40}$")

# Pyth BTC/USD, ETH/USD, SOL/USD
DEFAULT_PRICE_IDS = (
    "0xe62df6c8b4a85fe1a67db44dc12de5db330f7ac66b72dc658afedf0f4a415b43",
    "0xff61491a931112ddf1bd8147cd1b641375f79f5825126d665480874634fd0ace",
    "0xef0d8b6fda2ceba41da15d4095d1da392a0d2f8ed0c6c7bc0f4cfac8c280b56d",
)


def _split_csv(v: object) -> object:
    if isinstance(v, str):
        return tuple(p.strip() for p in v.split(",") if p.strip())
    return v


class RedisSettings(BaseSettings):
    """Redis connection settings (optional; checkpoints stay in memory without it)."""

    model_config = SettingsConfigDict(env_prefix="", extra="ignore")

    url: str | None = Field(
        default=None,
        alias="REDIS_URL",
        description="Redis connection string",
    )

    @field_validator("url")
    @classmethod
    def validate_url(cls, v: str | None) -> str | None:
        """Validate Redis URL format."""
        if v is None or v == "":
            return None
        if not v.startswith(("redis://", "rediss://")):
            raise ValueError("REDIS_URL must start with redis:// or rediss://")
        return v


class ChainSettings(BaseSettings):
    """EVM RPC, registry contract and event polling settings."""

    model_config = SettingsConfigDict(env_prefix="CHAIN_", extra="ignore")

    rpc_url: str = Field(
        default="http://127.0.0.1:8545",
        alias="CHAIN_RPC_URL",
        description="Primary RPC endpoint",
    )
    fallback_rpc_url: str | None = Field(
        default=None,
        alias="CHAIN_FALLBACK_RPC_URL",
        description="Fallback RPC endpoint",
    )
    chain_id: int | None = Field(
        default=None,
        alias="CHAIN_ID",
        description="Chain id for signed transactions (queried from the node when unset)",
    )
    contract_address: str | None = Field(
        default=None,
        alias="CHAIN_CONTRACT_ADDRESS",
        description="Bot registry contract (emits TradeExecuted)",
    )
    analyzer_private_key: SecretStr | None = Field(
        default=None,
        alias="CHAIN_ANALYZER_PRIVATE_KEY",
        description="Key of the analyzer identity allowed to flag bots",
    )
    confirmations: int = Field(
        default=2,
        alias="CHAIN_CONFIRMATIONS",
        ge=0,
        le=128,
        description="Blocks behind head before a trade is delivered",
    )
    poll_interval_seconds: float = Field(
        default=2.0,
        alias="CHAIN_POLL_INTERVAL_SECONDS",
        gt=0,
        le=300,
    )
    backfill_chunk_size: int = Field(
        default=2000,
        alias="CHAIN_BACKFILL_CHUNK_SIZE",
        ge=1,
        le=100_000,
        description="Blocks per eth_getLogs request",
    )
    start_block: int | None = Field(
        default=None,
        alias="CHAIN_START_BLOCK",
        ge=0,
        description="First block for live polling when no watermark is stored",
    )
    hydrate_lookback_blocks: int = Field(
        default=10_000,
        alias="CHAIN_HYDRATE_LOOKBACK_BLOCKS",
        ge=0,
        description="Blocks scanned for an unseen trader's history (0 disables)",
    )
    max_requests_per_second: float = Field(
        default=25,
        alias="CHAIN_MAX_REQUESTS_PER_SECOND",
        gt=0,
    )
    max_attempts: int = Field(
        default=5,
        alias="CHAIN_MAX_ATTEMPTS",
        ge=1,
        le=20,
    )
    request_timeout_seconds: float = Field(
        default=30.0,
        alias="CHAIN_REQUEST_TIMEOUT_SECONDS",
        gt=0,
    )
    receipt_timeout_seconds: float = Field(
        default=120.0,
        alias="CHAIN_RECEIPT_TIMEOUT_SECONDS",
        gt=0,
    )
    gas_limit: int | None = Field(
        default=None,
        alias="CHAIN_GAS_LIMIT",
        ge=21_000,
        description="Gas limit for registry transactions (estimated when unset)",
    )

    @field_validator("rpc_url", "fallback_rpc_url")
    @classmethod
    def validate_url(cls, v: str | None) -> str | None:
        """Validate RPC URL format."""
        if v is None:
            return v
        if not v.startswith(("http://", "https://")):
            raise ValueError("RPC URL must be an HTTP(S) endpoint")
        return v

    @field_validator("contract_address")
    @classmethod
    def validate_contract_address(cls, v: str | None) -> str | None:
        if v is None or v == "":
            return None
        if not _ADDRESS_RE.match(v):
            raise ValueError("CHAIN_CONTRACT_ADDRESS must be a 0x-prefixed 20-byte hex address")
        return v


class PriceFeedSettings(BaseSettings):
    """Oracle push-feed settings."""

    model_config = SettingsConfigDict(env_prefix="PRICE_FEED_", extra="ignore")

    ws_url: str = Field(
        default="wss://hermes.pyth.network/ws",
        alias="PRICE_FEED_WS_URL",
        description="WebSocket URL of the price push feed",
    )
    price_ids: Annotated[tuple[str, ...], NoDecode] = Field(
        default=DEFAULT_PRICE_IDS,
        alias="PRICE_FEED_PRICE_IDS",
        description="Price feed ids to subscribe to (comma-separated)",
    )
    history_capacity: int = Field(
        default=20,
        alias="PRICE_FEED_HISTORY_CAPACITY",
        ge=1,
        le=10_000,
        description="Observations kept per instrument",
    )
    stale_after_seconds: float = Field(
        default=60.0,
        alias="PRICE_FEED_STALE_AFTER_SECONDS",
        gt=0,
        description="Price context older than this gives no reaction-time signal",
    )
    max_reconnect_delay_seconds: float = Field(
        default=30.0,
        alias="PRICE_FEED_MAX_RECONNECT_DELAY_SECONDS",
        gt=0,
    )

    @field_validator("ws_url")
    @classmethod
    def validate_ws_url(cls, v: str) -> str:
        """Validate WebSocket URL format."""
        if not v.startswith(("ws://", "wss://")):
            raise ValueError("WebSocket URL must start with ws:// or wss://")
        return v

    @field_validator("price_ids", mode="before")
    @classmethod
    def _parse_price_ids(cls, v: object) -> object:
        return _split_csv(v)

    @field_validator("price_ids")
    @classmethod
    def _require_price_ids(cls, v: tuple[str, ...]) -> tuple[str, ...]:
        if not v:
            raise ValueError("PRICE_FEED_PRICE_IDS must list at least one id")
        return v


class DetectionSettings(BaseSettings):
    """Scoring and classification settings."""

    model_config = SettingsConfigDict(env_prefix="DETECTION_", extra="ignore")

    good_bot_min_score: int = Field(default=40, alias="DETECTION_GOOD_BOT_MIN_SCORE", ge=0, le=100)
    bad_bot_min_score: int = Field(default=60, alias="DETECTION_BAD_BOT_MIN_SCORE", ge=0, le=100)
    high_risk_score: int = Field(default=70, alias="DETECTION_HIGH_RISK_SCORE", ge=0, le=100)
    critical_risk_score: int = Field(default=85, alias="DETECTION_CRITICAL_RISK_SCORE", ge=0, le=100)
    require_good_bot_corroboration: bool = Field(
        default=True,
        alias="DETECTION_REQUIRE_GOOD_BOT_CORROBORATION",
        description="GOOD_BOT needs a liquidity-provider or market-maker pattern",
    )
    liquidity_override: bool = Field(
        default=True,
        alias="DETECTION_LIQUIDITY_OVERRIDE",
        description="Classify high-scoring liquidity providers as GOOD_BOT",
    )
    sticky_flags: bool = Field(
        default=True,
        alias="DETECTION_STICKY_FLAGS",
        description="Never unflag a committed bot from analysis alone",
    )
    history_max_trades: int = Field(default=500, alias="DETECTION_HISTORY_MAX_TRADES", ge=1, le=100_000)
    history_max_days: int = Field(default=30, alias="DETECTION_HISTORY_MAX_DAYS", ge=1, le=3650)
    liquidity_threshold: Decimal = Field(
        default=Decimal("500"),
        alias="DETECTION_LIQUIDITY_THRESHOLD",
        ge=Decimal("0"),
        description="Minimum traded volume for a liquidity provider",
    )
    min_trades_for_liquidity: int = Field(default=5, alias="DETECTION_MIN_TRADES_FOR_LIQUIDITY", ge=1)
    off_hours: Annotated[tuple[int, ...], NoDecode] = Field(
        default=(22, 23, 0, 1, 2, 3, 4, 5, 6),
        alias="DETECTION_OFF_HOURS",
        description="UTC hours counted as off-hours (comma-separated)",
    )
    immediate_reaction_ms: float = Field(default=100.0, alias="DETECTION_IMMEDIATE_REACTION_MS", gt=0)
    fast_reaction_ms: float = Field(default=1000.0, alias="DETECTION_FAST_REACTION_MS", gt=0)

    @field_validator("off_hours", mode="before")
    @classmethod
    def _parse_off_hours(cls, v: object) -> object:
        return _split_csv(v)

    @field_validator("off_hours")
    @classmethod
    def _check_off_hours(cls, v: tuple[int, ...]) -> tuple[int, ...]:
        for hour in v:
            if not 0 <= hour <= 23:
                raise ValueError(f"Off-hours entries must be 0-23, got {hour}")
        return v

    @model_validator(mode="after")
    def _check_ordering(self) -> DetectionSettings:
        if self.good_bot_min_score > self.bad_bot_min_score:
            raise ValueError("DETECTION_GOOD_BOT_MIN_SCORE must not exceed DETECTION_BAD_BOT_MIN_SCORE")
        if self.immediate_reaction_ms > self.fast_reaction_ms:
            raise ValueError("DETECTION_IMMEDIATE_REACTION_MS must not exceed DETECTION_FAST_REACTION_MS")
        return self

    @property
    def history_max_age(self) -> timedelta:
        return timedelta(days=self.history_max_days)


class PublisherSettings(BaseSettings):
    """Registry publication settings."""

    model_config = SettingsConfigDict(env_prefix="PUBLISHER_", extra="ignore")

    batch_size: int = Field(default=10, alias="PUBLISHER_BATCH_SIZE", ge=1, le=500)
    flush_interval_seconds: float = Field(default=30.0, alias="PUBLISHER_FLUSH_INTERVAL_SECONDS", gt=0)
    max_attempts: int = Field(default=3, alias="PUBLISHER_MAX_ATTEMPTS", ge=1, le=20)
    retry_delay_seconds: float = Field(default=1.0, alias="PUBLISHER_RETRY_DELAY_SECONDS", ge=0)


class PipelineSettings(BaseSettings):
    """Worker pool and trade channel settings."""

    model_config = SettingsConfigDict(env_prefix="PIPELINE_", extra="ignore")

    workers: int = Field(default=4, alias="PIPELINE_WORKERS", ge=1, le=256)
    channel_capacity: int = Field(
        default=1000,
        alias="PIPELINE_CHANNEL_CAPACITY",
        ge=1,
        description="Trades buffered between the event source and the workers",
    )
    backfill_blocks: int = Field(
        default=0,
        alias="PIPELINE_BACKFILL_BLOCKS",
        ge=0,
        description="Blocks replayed alongside live polling at startup (0 disables)",
    )
    analyze_backfill: bool = Field(
        default=False,
        alias="PIPELINE_ANALYZE_BACKFILL",
        description="Score backfilled trades as well as recording them",
    )


class Settings(BaseSettings):
    """Main application settings.

    Loads configuration from environment variables with support for
    .env files via python-dotenv.

    Example:
        ```python
        from trade_bot_detector.config import get_settings

        settings = get_settings()
        print(settings.chain.rpc_url)
        print(settings.log_level)
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
    redis: RedisSettings = Field(
        default_factory=lambda: RedisSettings(
            _env_file=_ENV_FILE,
            _env_file_encoding=_ENV_FILE_ENCODING,
        )
    )
    chain: ChainSettings = Field(
        default_factory=lambda: ChainSettings(
            _env_file=_ENV_FILE,
            _env_file_encoding=_ENV_FILE_ENCODING,
        )
    )
    price_feed: PriceFeedSettings = Field(
        default_factory=lambda: PriceFeedSettings(
            _env_file=_ENV_FILE,
            _env_file_encoding=_ENV_FILE_ENCODING,
        )
    )
    detection: DetectionSettings = Field(
        default_factory=lambda: DetectionSettings(
            _env_file=_ENV_FILE,
            _env_file_encoding=_ENV_FILE_ENCODING,
        )
    )
    publisher: PublisherSettings = Field(
        default_factory=lambda: PublisherSettings(
            _env_file=_ENV_FILE,
            _env_file_encoding=_ENV_FILE_ENCODING,
        )
    )
    pipeline: PipelineSettings = Field(
        default_factory=lambda: PipelineSettings(
            _env_file=_ENV_FILE,
            _env_file_encoding=_ENV_FILE_ENCODING,
        )
    )

    # Application settings
    log_level: Literal["DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"] = Field(
        default="INFO",
        alias="LOG_LEVEL",
        description="Logging level",
    )
    dry_run: bool = Field(
        default=False,
        alias="DRY_RUN",
        description="Publish to an in-memory registry instead of the contract",
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
            "redis_url": self._redact_url(self.redis.url) if self.redis.url else "(not set)",
            "chain": {
                "rpc_url": self.chain.rpc_url,
                "fallback_rpc_url": self.chain.fallback_rpc_url or "(not set)",
                "contract_address": self.chain.contract_address or "(not set)",
                "analyzer_private_key": "(set)" if self.chain.analyzer_private_key else "(not set)",
                "confirmations": str(self.chain.confirmations),
            },
            "price_feed": {
                "ws_url": self.price_feed.ws_url,
                "price_ids": str(len(self.price_feed.price_ids)),
                "stale_after_seconds": str(self.price_feed.stale_after_seconds),
            },
            "detection": {
                "good_bot_min_score": str(self.detection.good_bot_min_score),
                "bad_bot_min_score": str(self.detection.bad_bot_min_score),
                "liquidity_override": str(self.detection.liquidity_override),
                "sticky_flags": str(self.detection.sticky_flags),
            },
            "publisher": {
                "batch_size": str(self.publisher.batch_size),
                "flush_interval_seconds": str(self.publisher.flush_interval_seconds),
            },
            "pipeline": {
                "workers": str(self.pipeline.workers),
                "channel_capacity": str(self.pipeline.channel_capacity),
            },
            "log_level": self.log_level,
            "dry_run": str(self.dry_run),
        }

    def validate_requirements(self, *, command: Literal["run", "backfill"]) -> None:
        """Validate command-specific requirements.

        Refuses to start a command whose required capabilities are not
        configured.
        """
        if not self.chain.contract_address:
            raise ValueError("CHAIN_CONTRACT_ADDRESS is required")
        if command == "run" and not self.dry_run and not self.chain.analyzer_private_key:
            raise ValueError("CHAIN_ANALYZER_PRIVATE_KEY is required to publish flags (or set DRY_RUN=true)")

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
