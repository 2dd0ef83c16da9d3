"""Application configuration."""
from decimal import Decimal
from functools import lru_cache

from pydantic_settings import BaseSettings


class Settings(BaseSettings):
    """Application settings loaded from environment variables."""

    app_env: str = "development"
    database_url: str

    # Redis (for Celery, progress pub/sub and rate limiting)
    redis_url: str = "redis://localhost:6379/0"

    # Uploaded files and rejected-rows reports
    storage_root: str = "/tmp/leadmarket-storage"
    signing_secret: str = "change-me"
    signed_url_ttl_seconds: int = 7 * 24 * 3600

    # Stripe
    stripe_secret_key: str = ""
    stripe_timeout_seconds: float = 10.0
    platform_currency: str = "usd"

    # Batch processing
    progress_flush_rows: int = 500
    progress_flush_ms: int = 2000
    row_workers: int = 4

    # Ledgers
    free_trial_credits: Decimal = Decimal("10")
    default_payout_threshold: Decimal = Decimal("50")

    # Operator endpoints
    admin_token: str = "change-me"

    # Purchases
    purchase_rate_limit: int = 10
    purchase_rate_window_seconds: int = 60
    reconcile_interval_seconds: int = 300

    class Config:
        env_file = ".env"
        extra = "ignore"


@lru_cache
def get_settings() -> Settings:
    """Get cached settings instance."""
    return Settings()
