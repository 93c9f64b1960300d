"""Configuration settings for the billing sync engine."""

from functools import lru_cache
from typing import Literal

from pydantic import Field, SecretStr
from pydantic_settings import BaseSettings, SettingsConfigDict


class FlatSettings(BaseSettings):
    """Flat settings loaded from environment variables or a .env file."""

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        extra="ignore",
    )

    # CRM API
    crm_api_url: str = Field(
        default="https://api.hubapi.com", validation_alias="CRM_API_URL"
    )
    crm_access_token: SecretStr = Field(..., validation_alias="CRM_ACCESS_TOKEN")
    crm_timeout: float = Field(default=30.0, validation_alias="CRM_TIMEOUT")
    crm_max_retries: int = Field(default=5, validation_alias="CRM_MAX_RETRIES")
    crm_retry_base_delay: float = Field(
        default=1.0, validation_alias="CRM_RETRY_BASE_DELAY"
    )
    crm_retry_max_delay: float = Field(
        default=30.0, validation_alias="CRM_RETRY_MAX_DELAY"
    )

    # Schedule
    billing_timezone: str = Field(
        default="America/Montevideo", validation_alias="BILLING_TIMEZONE"
    )
    billing_horizon_days: int = Field(default=30, validation_alias="BILLING_HORIZON_DAYS")
    billing_max_occurrences: int = Field(
        default=48, validation_alias="BILLING_MAX_OCCURRENCES"
    )
    forecast_max_occurrences: int = Field(
        default=24, validation_alias="FORECAST_MAX_OCCURRENCES"
    )
    billing_max_slots: int = Field(default=48, validation_alias="BILLING_MAX_SLOTS")
    default_start_to_today: bool = Field(
        default=True, validation_alias="DEFAULT_START_TO_TODAY"
    )
    start_delay_cooldown_seconds: float = Field(
        default=1.5, validation_alias="START_DELAY_COOLDOWN_SECONDS"
    )

    # Pipelines
    deal_stage_lost: str = Field(default="closedlost", validation_alias="DEAL_STAGE_LOST")
    pipelines_file: str | None = Field(default=None, validation_alias="PIPELINES_FILE")

    # Batch runs
    lock_path: str = Field(default="billing_sync.lock", validation_alias="LOCK_PATH")
    lock_ttl_seconds: float = Field(default=3600.0, validation_alias="LOCK_TTL_SECONDS")
    dry_run: bool = Field(default=False, validation_alias="DRY_RUN")

    # Logging
    log_level: Literal["DEBUG", "INFO", "WARNING", "ERROR"] = Field(
        default="INFO", validation_alias="LOG_LEVEL"
    )
    log_format: Literal["json", "console"] = Field(
        default="console", validation_alias="LOG_FORMAT"
    )


@lru_cache
def get_settings() -> FlatSettings:
    """Get cached settings instance."""
    return FlatSettings()
