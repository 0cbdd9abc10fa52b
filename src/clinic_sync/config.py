"""Application configuration via Pydantic BaseSettings."""

from __future__ import annotations

from enum import Enum
from functools import lru_cache

from pydantic_settings import BaseSettings, SettingsConfigDict


class Environment(str, Enum):
    development = "development"
    staging = "staging"
    production = "production"


class StorageBackend(str, Enum):
    memory = "memory"
    redis = "redis"


class Settings(BaseSettings):
    """Application settings loaded from environment variables and .env file."""

    model_config = SettingsConfigDict(env_file=".env", env_file_encoding="utf-8")

    # Environment
    ENVIRONMENT: Environment = Environment.development

    # Logging
    LOG_LEVEL: str = "INFO"

    # Redis (shared rate-limit counters, provider config, retry stream)
    REDIS_URL: str = "redis://localhost:6379/0"
    SYNC_STORAGE_BACKEND: StorageBackend = StorageBackend.memory

    # Outbound calls
    HTTP_TIMEOUT_SECONDS: float = 30.0

    # Sync pass
    SYNC_MATCH_TOLERANCE_SECONDS: int = 60
    SYNC_LOOKBACK_DAYS: int = 30
    SYNC_LOOKAHEAD_DAYS: int = 90

    # Retry coordination
    RETRY_MAX_ATTEMPTS: int = 3
    RETRY_BASE_DELAY_SECONDS: float = 1.0
    RETRY_QUEUE_MAX_ENTRIES: int = 1000
    RETRY_SWEEP_INTERVAL_SECONDS: int = 30
    RETRY_STREAM_KEY: str = "sync:retries"
    ERROR_HISTORY_SIZE: int = 100

    # Rate limiting
    RATE_LIMIT_WINDOW_SECONDS: int = 60
    RATE_LIMIT_MAX_REQUESTS: int = 60
    RATE_LIMIT_KEY_PREFIX: str = "rate_limit:"

    # Provider configuration store
    PROVIDER_CONFIG_KEY: str = "sync:providers"


@lru_cache
def get_settings() -> Settings:
    """Singleton settings instance."""
    return Settings()
