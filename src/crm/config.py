"""Engine configuration via Pydantic BaseSettings."""

from __future__ import annotations

from enum import Enum
from functools import lru_cache

from pydantic_settings import BaseSettings, SettingsConfigDict


class Environment(str, Enum):
    development = "development"
    staging = "staging"
    production = "production"


class Settings(BaseSettings):
    """Engine settings loaded from environment variables and .env file."""

    model_config = SettingsConfigDict(env_file=".env", env_file_encoding="utf-8")

    # Environment
    ENVIRONMENT: Environment = Environment.development

    # Logging
    LOG_LEVEL: str = "INFO"

    # Deal valuation (estimated commission on the shared collection)
    COMMISSION_RATE: float = 0.03

    # Follow-up scheduler
    FOLLOW_UP_CONCURRENCY: int = 5
    FOLLOW_UP_SCAN_INTERVAL_SECONDS: int = 60 * 60


@lru_cache
def get_settings() -> Settings:
    """Singleton settings instance."""
    return Settings()
