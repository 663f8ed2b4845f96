"""
Configuration management for the BizPulse metrics platform
"""
from pydantic_settings import BaseSettings, SettingsConfigDict
from functools import lru_cache
from typing import Dict, Optional


class Settings(BaseSettings):
    """Application settings"""

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=False,
        extra="ignore",
    )

    # Application
    app_name: str = "BizPulse Metrics Platform"
    environment: str = "development"
    debug: bool = True
    log_level: str = "INFO"
    log_dir: Optional[str] = "logs"  # None/empty disables file sinks

    # API
    api_host: str = "0.0.0.0"
    api_port: int = 8000

    # Database
    database_url: str = "sqlite:///./bizpulse.db"

    # Stripe
    stripe_api_base: str = "https://api.stripe.com/v1"

    # Shopify
    shopify_api_version: str = "2024-01"

    # Google Analytics 4
    ga4_data_api_base: str = "https://analyticsdata.googleapis.com/v1beta"
    google_token_url: str = "https://oauth2.googleapis.com/token"
    google_client_id: Optional[str] = None
    google_client_secret: Optional[str] = None

    # Connector HTTP behaviour
    http_timeout_seconds: float = 30.0
    sync_initial_window_days: int = 30  # First sync window when no lastSyncAt exists
    sync_page_size: int = 100
    sync_max_records: int = 10000  # Hard cap per resource per sync
    sync_page_delay_seconds: float = 0.1
    platform_requests_per_second: Dict[str, float] = {
        "stripe": 25.0,
        "shopify": 2.0,
        "google_analytics": 10.0,
    }

    # Retry policy (transient remote errors)
    retry_max_attempts: int = 3
    retry_base_delay: float = 1.0
    retry_backoff_multiplier: float = 2.0
    retry_max_delay: float = 30.0

    # Sync orchestration
    upsert_batch_size: int = 1000
    roster_sync_interval_hours: int = 24  # Low-frequency resources (customer roster)
    sync_integration_timeout_seconds: float = 300.0
    sync_pool_sizes: Dict[str, int] = {
        "stripe": 4,
        "shopify": 2,
        "google_analytics": 2,
    }

    # Insights engine
    insight_timeframe_days: int = 30
    trend_thresholds: Dict[str, float] = {
        "revenue": 10.0,
        "orders": 15.0,
        "customers": 20.0,
        "mrr": 10.0,
    }
    anomaly_std_multiplier: float = 2.0
    anomaly_min_days: int = 7
    anomaly_min_deviation_pct: float = 10.0  # Noise floor on top of k*stddev
    opportunity_min_source_sessions: int = 50
    insight_top_n: int = 10
    insight_generation_retention_days: int = 7
    insight_max_per_organization: int = 50

    # Health and retention
    health_stale_hours: int = 24
    data_point_retention_days: int = 365
    insight_retention_days: int = 90
    webhook_event_retention_days: int = 90

    # Webhooks
    webhook_rate_limit: int = 100  # Events per integration per window
    webhook_rate_window_seconds: int = 60

    # Scheduler
    scheduler_timezone: str = "UTC"
    sync_interval_hours: int = 6
    insights_cron_hour: int = 6
    digest_cron_day_of_week: str = "mon"
    digest_cron_hour: int = 9
    health_check_interval_hours: int = 1
    cleanup_cron_hour: int = 2
    job_retry_attempts: int = 2

    # Alert Settings
    smtp_host: Optional[str] = None
    smtp_port: int = 587
    smtp_user: Optional[str] = None
    smtp_password: Optional[str] = None
    alert_email_from: Optional[str] = None
    alert_email_to: Optional[str] = None  # Fallback admin recipients, comma-separated
    slack_webhook_url: Optional[str] = None
    digest_top_n: int = 10
    digest_lookback_days: int = 7


@lru_cache()
def get_settings() -> Settings:
    """Get cached settings instance"""
    return Settings()
