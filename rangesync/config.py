"""Application configuration."""

from typing import Optional
from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    """Application settings."""

    model_config = SettingsConfigDict(env_file=".env", env_file_encoding="utf-8", extra="ignore")

    # Database
    database_url: str = "sqlite:///./data/rangesync.db"

    # Encryption of host node API tokens (validated at startup by EncryptionService)
    encryption_key: Optional[str] = None

    # Application
    app_host: str = "0.0.0.0"
    app_port: int = 8000
    log_level: str = "INFO"

    # Reconciliation loop
    sync_scheduler_enabled: bool = True
    sync_interval_seconds: int = 300
    statistics_interval_seconds: int = 1800
    cleanup_interval_seconds: int = 86400
    failure_reset_interval_seconds: int = 3600
    state_retention_days: int = 7
    max_consecutive_failures: int = 5
    default_max_sync_attempts: int = 3
    # Defaults to sync_interval_seconds when unset
    stale_syncing_seconds: Optional[int] = None
    sync_record_delay_seconds: float = 0.5

    # Runtime driver
    runtime_call_timeout_seconds: float = 30.0
    docker_api_timeout_seconds: float = 10.0
    docker_stop_timeout_seconds: int = 10


settings = Settings()
