"""Metering engine configuration loaded from environment variables."""

from __future__ import annotations

import logging
from enum import Enum

from pydantic import SecretStr, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

logger = logging.getLogger(__name__)


class PlatformEnv(str, Enum):
    DEV = "dev"
    STAGING = "staging"
    PROD = "prod"


class Settings(BaseSettings):
    """Application settings loaded from environment variables with METERING_ prefix."""

    model_config = SettingsConfigDict(
        env_prefix="METERING_",
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=False,
    )

    env: PlatformEnv = PlatformEnv.DEV
    debug: bool = False

    # Database
    database_url: str = "sqlite+aiosqlite:///.metering/state.db"
    database_pool_size: int = 10
    database_max_overflow: int = 20

    # Fast counters (unset -> process-local in-memory counters)
    redis_url: SecretStr | None = None
    redis_socket_timeout: float = 0.5
    counter_ttl_days: int = 90

    # Recorder
    recorder_drain_timeout_seconds: float = 5.0

    # Scheduler
    scheduler_poll_seconds: float = 60.0
    invoice_on_month_close: bool = True

    # Logging
    structured_logging: bool = False
    log_level: str = "INFO"

    @field_validator("redis_url", mode="before")
    @classmethod
    def mask_redis_url(cls, v: str | None) -> SecretStr | None:
        if v is None or v == "":
            return None
        if isinstance(v, SecretStr):
            return v
        return SecretStr(v)

    @field_validator("log_level")
    @classmethod
    def normalise_log_level(cls, v: str) -> str:
        level = v.upper()
        if level not in {"DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"}:
            raise ValueError(f"Unsupported log level: {v!r}")
        return level

    @property
    def counter_ttl_seconds(self) -> int:
        return self.counter_ttl_days * 24 * 60 * 60

    def is_redis_configured(self) -> bool:
        return self.redis_url is not None

    def is_sqlite(self) -> bool:
        return self.database_url.startswith("sqlite")


def load_settings(**overrides: object) -> Settings:
    """Load settings from environment, with optional overrides for testing."""
    settings = Settings(**overrides)  # type: ignore[arg-type]

    if settings.debug:
        logger.info("Loaded settings for environment: %s", settings.env.value)

    return settings
