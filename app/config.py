from pathlib import Path
from typing import Literal
from urllib.parse import urlparse

from pydantic_settings import BaseSettings, SettingsConfigDict

ENV_PATH = Path(__file__).resolve().parent.parent / ".env.local"


class Settings(BaseSettings):
    # Environment settings
    environment: str = "development"
    debug: bool = False
    LOG_LEVEL: str = "INFO"

    # Database / cache
    DATABASE_URL: str
    REDIS_URL: str | None = None

    # Supabase auth (user-facing routes)
    SUPABASE_URL: str | None = None
    SUPABASE_JWKS_URL: str | None = None

    # Shared secret for cron and admin triggers
    CRON_SECRET: str | None = None

    ENCRYPTION_KEY: str | None = None

    # Provider OAuth clients
    GOOGLE_CLIENT_ID: str | None = None
    GOOGLE_CLIENT_SECRET: str | None = None
    FITBIT_CLIENT_ID: str | None = None
    FITBIT_CLIENT_SECRET: str | None = None
    SPOTIFY_CLIENT_ID: str | None = None
    SPOTIFY_CLIENT_SECRET: str | None = None
    PROVIDER_HTTP_TIMEOUT: float = 10.0
    PROVIDER_MAX_RETRIES: int = 2

    # Email delivery
    SENDGRID_API_KEY: str | None = None
    SENDER_EMAIL: str = "reports@mymetriclog.com"
    # Web app that hosts the integration connect pages linked from reconnection emails
    WEB_APP_URL: str = "http://localhost:3000"

    # =================================================================
    # REPORT QUEUE SETTINGS
    # =================================================================
    QUEUE_BACKEND: Literal["inline", "qstash", "redis"] = "inline"
    APP_BASE_URL: str = "http://localhost:8000"
    QSTASH_URL: str = "https://qstash.upstash.io"
    QSTASH_TOKEN: str | None = None
    QSTASH_CURRENT_SIGNING_KEY: str | None = None
    QSTASH_NEXT_SIGNING_KEY: str | None = None

    JOB_MAX_ATTEMPTS: int = 3
    JOB_RETRY_BASE_DELAY: float = 2.0  # seconds, doubles per attempt
    JOB_TIMEOUT_SECONDS: float = 60.0
    JOB_CONCURRENCY: int = 5
    JOB_DEDUP_TTL_SECONDS: int = 48 * 3600
    JOB_STATUS_TTL_SECONDS: int = 7 * 24 * 3600

    # Scheduler
    DAILY_REPORT_HOUR_UTC: int = 6
    WEEKLY_REPORT_WEEKDAY: int = 0  # Monday

    # Proactive token refresh
    TOKEN_REFRESH_INTERVAL_MINUTES: int = 10
    TOKEN_REFRESH_BUFFER_MINUTES: int = 15

    # =================================================================
    # DATABASE POOL SETTINGS
    # =================================================================
    DB_POOL_MIN_SIZE: int = 2
    DB_POOL_MAX_SIZE: int = 10
    DB_POOL_TIMEOUT: float = 30.0
    DB_POOL_MAX_IDLE: float = 600.0  # 10 minutes
    DB_POOL_MAX_LIFETIME: float = 3600.0  # 1 hour

    model_config = SettingsConfigDict(
        env_file=str(ENV_PATH),
        env_file_encoding="utf-8",
        extra="ignore",
    )

    def jwks_url(self) -> str | None:
        if self.SUPABASE_JWKS_URL:
            return self.SUPABASE_JWKS_URL
        if not self.SUPABASE_URL:
            return None
        base = self.SUPABASE_URL.rstrip("/")
        return f"{base}/auth/v1/.well-known/jwks.json"

    def webhook_url(self) -> str:
        """Public URL QStash delivers report jobs to."""
        return f"{self.APP_BASE_URL.rstrip('/')}/queue/process"

    def redis_host(self) -> str | None:
        if not self.REDIS_URL:
            return None
        return urlparse(self.REDIS_URL).hostname

    def get_db_pool_config(self) -> dict:
        """
        Get database pool configuration.
        Adjust environment-specific settings based on self.environment.
        """
        config = {
            "min_size": self.DB_POOL_MIN_SIZE,
            "max_size": self.DB_POOL_MAX_SIZE,
            "timeout": self.DB_POOL_TIMEOUT,
            "max_idle": self.DB_POOL_MAX_IDLE,
            "max_lifetime": self.DB_POOL_MAX_LIFETIME,
        }

        if self.environment == "development":
            config.update({"min_size": 1, "max_size": 5, "timeout": 15.0})

        return config


settings = Settings()
