# config.py
from functools import lru_cache

from pydantic import Field
from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    """Application settings, read from FINANCE_* environment variables or .env."""

    model_config = SettingsConfigDict(
        env_prefix="FINANCE_",
        env_file=".env",
        env_file_encoding="utf-8",
        extra="ignore",
    )

    database_url: str = "sqlite:///./finance.db"
    db_timeout_seconds: float = Field(default=5.0, gt=0)
    transaction_retries: int = Field(default=3, ge=1)
    retry_backoff_seconds: float = Field(default=0.05, ge=0)

    secret_key: str = "change-me-in-production"
    algorithm: str = "HS256"
    access_token_expire_minutes: int = 60 * 24

    # x-user-id header stand-in for local development; off unless enabled
    allow_header_identity: bool = False
    demo_user_id: str = "user-1"

    default_currency: str = "LKR"

    due_soon_days: int = Field(default=3, ge=0)
    dedup_window_hours: int = Field(default=24, ge=1)
    notification_retention_days: int = Field(default=30, ge=1)
    notification_sweep_enabled: bool = False
    notification_sweep_minutes: int = Field(default=60, ge=1)

    log_level: str = "INFO"
    log_json: bool = False


@lru_cache
def get_settings() -> Settings:
    return Settings()
