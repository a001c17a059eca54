from typing import Optional

from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    model_config = SettingsConfigDict(env_file=".env", extra="ignore")

    database_url: str = "sqlite:///./commerce_sync.db"
    database_echo: bool = False

    # Celery
    celery_broker_url: str = "redis://localhost:6379/0"
    celery_result_backend: str = "redis://localhost:6379/1"
    celery_timezone: str = "UTC"

    # Job queue
    queue_poll_interval_seconds: float = 5.0
    queue_batch_size: int = 10
    queue_max_retries: int = 3
    queue_retry_base_delay_seconds: int = 60
    queue_retry_backoff_multiplier: float = 2.0
    queue_completed_retention_days: int = 7
    queue_stale_processing_minutes: int = 15

    # Conflict and echo windows
    conflict_window_seconds: int = 300
    echo_log_window_seconds: int = 60
    echo_recent_write_window_seconds: int = 30

    # Stock reconciliation
    stock_poll_interval_seconds: float = 120.0

    # Adapters
    adapter_request_timeout: int = 30
    wc_api_version: str = "wc/v3"
    wc_verify_ssl: bool = True

    # Alerts
    alerts_enabled: bool = True
    alert_slack_enabled: bool = False
    alert_slack_webhook_url: Optional[str] = None
    alert_webhook_enabled: bool = False
    alert_webhook_url: Optional[str] = None


settings = Settings()
