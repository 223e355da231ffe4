import os
import sys
from functools import lru_cache
from typing import Any

from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    """Application configuration loaded from environment variables and .env files."""

    app_name: str = "Stock Rules Engine"
    environment: str = "dev"
    debug: bool = True
    version: str = "0.1.0"
    log_level: str = "INFO"

    twelve_data_api_key: str | None = None
    twelve_data_base_url: str = "https://api.twelvedata.com"
    twelve_data_daily_limit: int = 800
    twelve_data_max_retries: int = 3
    twelve_data_retry_delay_seconds: float = 1.0
    twelve_data_timeout_seconds: int = 30

    # Floor for the history window fetched per symbol during a batch run.
    default_lookback_days: int = 100
    fetch_max_workers: int = 4

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        env_prefix="SR_",
        extra="ignore",
    )

    def dict_for_logging(self) -> dict[str, Any]:
        return {
            "app_name": self.app_name,
            "environment": self.environment,
            "debug": self.debug,
            "version": self.version,
            "twelve_data_base_url": self.twelve_data_base_url,
            "twelve_data_configured": bool(self.twelve_data_api_key),
            "default_lookback_days": self.default_lookback_days,
        }


@lru_cache
def get_settings() -> Settings:
    """Return cached application settings instance."""

    settings = Settings()

    # Test runs must never spend the daily provider quota. Detect pytest via
    # sys.modules (reliable during early imports) and PYTEST_CURRENT_TEST.
    if "pytest" in sys.modules or os.getenv("PYTEST_CURRENT_TEST"):
        settings.twelve_data_api_key = None

    return settings


__all__ = ["Settings", "get_settings"]
