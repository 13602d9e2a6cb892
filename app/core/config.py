# app/core/config.py
from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    """Application configuration settings loaded from environment variables."""

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=True,  # Environment vars are uppercase
        extra="ignore",      # Ignore unexpected vars instead of raising
    )

    # Core application settings
    DATABASE_URL: str
    HOST: str = "0.0.0.0"
    PORT: int = 8101
    DEBUG: bool = False
    DB_ECHO: bool = False
    ENVIRONMENT: str = "development"
    APP_URL: str = "http://localhost:3000"
    LOG_FILE: str = "app.log"
    LOGO: str | None = None

    # CORS settings
    ALLOWED_ORIGINS: list[str] = ["*"]  # In production, specify actual origins
    ALLOW_CREDENTIALS: bool = True
    ALLOWED_METHODS: list[str] = ["*"]
    ALLOWED_HEADERS: list[str] = ["*"]

    # JWT settings
    JWT_SECRET: str = "change-me"
    JWT_ALGORITHM: str = "HS256"

    # Email sender settings (Resend)
    RESEND_API_KEY: str | None = None
    RESEND_FROM_EMAIL: str = "billing@example.com"
    SUPPORT_EMAIL: str = "support@example.com"
    EMAIL_MAX_ATTEMPTS: int = 3
    EMAIL_DELIVERY_INTERVAL_SECONDS: int = 30

    # Payment gateway settings
    STRIPE_SECRET_KEY: str | None = None
    STRIPE_CALL_TIMEOUT_SECONDS: float = 30.0

    # Price migration policy
    MIGRATION_MIN_NOTICE_DAYS: float = 1.0  # may be fractional for accelerated cycles
    MIGRATION_DEFAULT_BATCH_SIZE: int = 50
    MIGRATION_WORKER_CONCURRENCY: int = 5
    MIGRATION_MAX_PLANS_PER_RUN: int = 20
    MIGRATION_DAILY_HOUR_UTC: int = 2

    # Background scheduler
    SCHEDULER_ENABLED: bool = False
    RETRY_SWEEP_INTERVAL_SECONDS: int = 1800  # 30 minutes
    JOB_DISPATCH_INTERVAL_SECONDS: int = 60
    HEALTH_CHECK_INTERVAL_SECONDS: int = 900
    MASS_SUSPENSION_THRESHOLD: int = 10
    REVENUE_DROP_ALERT_PERCENT: float = 10.0


def _validate_settings(settings: Settings) -> None:
    """Validate critical application settings."""
    if not settings.DATABASE_URL:
        raise ValueError("DATABASE_URL is required")
    if settings.MIGRATION_MIN_NOTICE_DAYS <= 0:
        raise ValueError("MIGRATION_MIN_NOTICE_DAYS must be positive")
    if not 0 <= settings.MIGRATION_DAILY_HOUR_UTC <= 23:
        raise ValueError("MIGRATION_DAILY_HOUR_UTC must be between 0 and 23")

    # Environment-specific validations
    if settings.ENVIRONMENT == "production" and settings.DEBUG:
        print("WARNING: DEBUG is enabled in production. Consider setting DEBUG=False.")
    # Billing links in customer emails must never point at localhost
    if settings.ENVIRONMENT == "production" and "localhost" in settings.APP_URL:
        raise ValueError("APP_URL must be set to a public URL in production")


# Initialize settings with error handling
try:
    settings = Settings()
    _validate_settings(settings)
except Exception as e:
    print(f"Error initializing settings: {e}")
    raise
