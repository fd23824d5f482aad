"""Configuration settings for the warehouse alert gateway."""
from pydantic_settings import BaseSettings
from typing import Optional


class Settings(BaseSettings):
    """Application settings loaded from environment variables."""

    # Document store
    # "sql" keeps documents in the database below, "memory" is process-local
    store_backend: str = "sql"
    database_url: str = "sqlite:///./shelfsense.db"

    # Application
    api_v1_prefix: str = "/api/v1"
    log_level: str = "INFO"
    cors_allow_origins: str = "*"  # Comma separated list
    app_base_url: str = "http://localhost:3000"

    # Device ingestion
    rate_limit_max_requests: int = 60
    rate_limit_window_seconds: int = 60
    # "optional" verifies X-Signature only when sent, "required" rejects unsigned requests
    default_signature_mode: str = "optional"

    # Device health sweep
    heartbeat_stale_minutes: int = 15
    health_sweep_cron: str = "*/15 * * * *"

    # Daily low stock digest to admins and managers
    low_stock_digest_cron: str = "0 8 * * *"
    background_jobs_enabled: bool = True

    # Notification delivery
    notification_poll_seconds: int = 30
    notification_max_attempts: int = 3
    notification_retry_delay_seconds: float = 30.0

    # Email notifications (SMTP)
    smtp_host: Optional[str] = None
    smtp_port: int = 587
    smtp_user: Optional[str] = None
    smtp_password: Optional[str] = None
    smtp_from: str = "alerts@shelfsense.io"

    # SMS notifications (HTTP gateway, e.g. a Twilio-compatible relay)
    sms_gateway_url: Optional[str] = None
    sms_api_key: Optional[str] = None
    sms_sender_id: str = "ShelfSense"

    class Config:
        env_file = ".env"
        case_sensitive = False


settings = Settings()
