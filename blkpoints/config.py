from functools import lru_cache

from pydantic import Field
from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        env_prefix="BLKPOINTS_",
        extra="ignore",
    )

    app_env: str = Field(default="dev")
    log_level: str = Field(default="INFO")

    # Empty means the in-memory store.
    database_url: str = Field(default="")
    identifier_pepper: str = Field(default="dev_identifier_pepper_change_me")

    sweep_interval_seconds: float = Field(default=300.0, gt=0)
    sweep_batch_size: int = Field(default=200, gt=0)
    transaction_retries: int = Field(default=3, ge=1)

    celery_broker_url: str = Field(default="redis://localhost:6379/0")
    celery_result_backend: str = Field(default="redis://localhost:6379/1")

    risk_strategy: str = Field(default="worst", pattern="^(worst|weighted)$")
    risk_device_weight: float = Field(default=0.5, ge=0)
    risk_phone_weight: float = Field(default=0.5, ge=0)
    suspicious_min_referrals: int = Field(default=5, ge=0)
    suspicious_ratio_threshold: float = Field(default=0.8, ge=0, le=1)


@lru_cache(maxsize=1)
def get_settings() -> Settings:
    return Settings()
