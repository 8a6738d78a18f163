"""
Application configuration using pydantic-settings.
All config is validated at startup - fail fast if anything is missing.
"""
from pydantic_settings import BaseSettings
from functools import lru_cache


class Settings(BaseSettings):
    # Application
    app_env: str = "development"
    app_host: str = "0.0.0.0"
    app_port: int = 8000
    app_base_url: str = "http://localhost:8000"
    log_level: str = "INFO"

    # Database
    database_url: str
    database_pool_size: int = 20
    database_max_overflow: int = 10

    # Redis (alert cooldowns, readiness check)
    redis_url: str = "redis://localhost:6379/0"

    # Cakto webhook
    cakto_webhook_secret: str = ""
    internal_service_key: str = ""  # Bearer token for trusted internal callers (replays, functions)
    # Legacy behaviour: an event with an empty status string counts as approved.
    # Off by default - unclassifiable events are ignored instead.
    cakto_empty_status_means_approved: bool = False
    # Covers normalize -> match -> paid commit only
    webhook_processing_timeout_seconds: float = 25.0
    # Separate budget for the confirmation email + lyrics trigger after the commit
    payment_side_effects_timeout_seconds: float = 20.0

    # Confirmation email de-duplication
    duplicate_webhook_window_seconds: int = 30
    notification_recheck_delay_ms: int = 500

    # Lyrics generation trigger
    lyrics_generation_url: str = ""
    lyrics_generation_max_attempts: int = 3
    lyrics_generation_backoff_seconds: float = 1.0
    lyrics_generation_timeout_seconds: float = 10.0

    # SendGrid (transactional email)
    sendgrid_api_key: str = ""
    from_email_transactional: str = "noreply@musiclovely.com"
    from_name_transactional: str = "MusicLovely"
    sendgrid_timeout_seconds: float = 10.0

    # Storefront
    storefront_base_url: str = "https://musiclovely.com"
    allowed_origins: str = ""  # Comma-separated CORS origins (auto-includes localhost in dev)

    # Sentry
    sentry_dsn: str = ""

    # Alerting
    alert_webhook_url: str = ""  # Discord/Slack webhook URL for critical alerts
    alert_recipient_email: str = ""

    class Config:
        env_file = ".env"
        env_file_encoding = "utf-8"


@lru_cache()
def get_settings() -> Settings:
    return Settings()
