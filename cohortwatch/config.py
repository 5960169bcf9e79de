"""
CohortWatch Configuration.

Pydantic Settings v2, loads from .env, environment variables.
"""

from pydantic import Field
from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    """Application settings loaded from environment variables."""

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=False,
        extra="ignore",
    )

    # ── Application ──────────────────────────────────────────────────────
    app_name: str = "CohortWatch"
    app_version: str = "1.0.0"
    environment: str = Field(default="development", alias="ENVIRONMENT")
    debug: bool = Field(default=False, alias="DEBUG")

    # ── API ───────────────────────────────────────────────────────────────
    api_host: str = Field(default="0.0.0.0", alias="API_HOST")
    api_port: int = Field(default=8010, alias="API_PORT")
    api_prefix: str = "/api/v1"

    # ── Database ─────────────────────────────────────────────────────────
    database_url: str = Field(
        default="sqlite+aiosqlite:///./cohortwatch.db",
        alias="DATABASE_URL",
    )
    db_pool_size: int = Field(default=10, alias="DB_POOL_SIZE")
    db_max_overflow: int = Field(default=20, alias="DB_MAX_OVERFLOW")
    db_pool_recycle: int = Field(default=3600, alias="DB_POOL_RECYCLE")

    # ── Signal thresholds (institution settings may override) ───────────
    high_risk_threshold: float = Field(default=70.0, alias="HIGH_RISK_THRESHOLD")
    moderate_risk_threshold: float = Field(default=40.0, alias="MODERATE_RISK_THRESHOLD")
    low_engagement_threshold: float = Field(default=40.0, alias="LOW_ENGAGEMENT_THRESHOLD")
    moderate_engagement_threshold: float = Field(
        default=70.0, alias="MODERATE_ENGAGEMENT_THRESHOLD"
    )
    inactivity_warning_days: int = Field(default=5, alias="INACTIVITY_WARNING_DAYS")
    inactivity_critical_days: int = Field(default=10, alias="INACTIVITY_CRITICAL_DAYS")

    # ── Engine ────────────────────────────────────────────────────────────
    dedup_window_hours: float = Field(default=24.0, alias="DEDUP_WINDOW_HOURS")
    max_workers: int = Field(default=4, alias="ENGINE_MAX_WORKERS")
    max_matches_per_batch: int = Field(default=5000, alias="MAX_MATCHES_PER_BATCH")
    batch_timeout_seconds: float = Field(default=300.0, alias="BATCH_TIMEOUT_SECONDS")
    rescore_on_analysis: bool = Field(default=False, alias="RESCORE_ON_ANALYSIS")
    analysis_interval_minutes: int = Field(default=60, alias="ANALYSIS_INTERVAL_MINUTES")
    event_queue_size: int = Field(default=1000, alias="EVENT_QUEUE_SIZE")

    # ── Message dispatch ─────────────────────────────────────────────────
    dispatch_retry_delay_seconds: float = Field(default=1.0, alias="DISPATCH_RETRY_DELAY_SECONDS")
    mail_relay_url: str = Field(default="", alias="MAIL_RELAY_URL")
    mail_relay_api_key: str = Field(default="", alias="MAIL_RELAY_API_KEY")
    smtp_host: str = Field(default="", alias="SMTP_HOST")
    smtp_port: int = Field(default=587, alias="SMTP_PORT")
    smtp_user: str = Field(default="", alias="SMTP_USER")
    smtp_password: str = Field(default="", alias="SMTP_PASSWORD")
    mail_from: str = Field(default="no-reply@cohortwatch.local", alias="MAIL_FROM")

    # ── Operational ────────────────────────────────────────────────────────
    log_level: str = Field(default="INFO", alias="LOG_LEVEL")
    log_format: str = Field(default="console", alias="LOG_FORMAT")

    @property
    def async_database_url(self) -> str:
        """Ensure the database URL uses an async driver."""
        url = self.database_url
        if url.startswith("postgresql://"):
            url = url.replace("postgresql://", "postgresql+asyncpg://", 1)
        if url.startswith("sqlite://"):
            url = url.replace("sqlite://", "sqlite+aiosqlite://", 1)
        return url


settings = Settings()
