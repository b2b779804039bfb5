from pydantic_settings import BaseSettings
from functools import lru_cache


class Settings(BaseSettings):
    database_url: str = "sqlite:///./eventpay.db"
    db_timeout_seconds: float = 10.0

    # Identity tokens are issued by the auth service; we only verify them.
    secret_key: str = "dev-secret-key-change-in-production"
    algorithm: str = "HS256"

    stripe_secret_key: str = ""
    stripe_webhook_secret: str = ""
    stripe_webhook_tolerance: int = 300
    stripe_timeout_seconds: int = 20
    stripe_max_network_retries: int = 0

    refund_processing_fee_cents: int = 30
    refund_cutoff_hours: int = 24
    refund_rate_limit: str = "10/minute"

    smtp_host: str = "smtp.gmail.com"
    smtp_port: int = 587
    smtp_user: str = ""
    smtp_password: str = ""
    smtp_timeout_seconds: float = 15.0

    frontend_url: str = "http://localhost:3000"

    catalog_cache_ttl_seconds: float = 300.0
    catalog_cache_max_entries: int = 512

    notification_max_attempts: int = 5
    notification_retry_base_seconds: float = 30.0
    notification_max_pending: int = 1000

    log_level: str = "INFO"
    allowed_hosts: list[str] = ["*"]

    class Config:
        env_file = ".env"
        extra = "ignore"


@lru_cache()
def get_settings() -> Settings:
    return Settings()
