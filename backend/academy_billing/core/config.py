from functools import lru_cache
from typing import List, Optional
from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    """
    Global settings for the academy billing API.
    Values are read from environment variables and the .env file.
    """

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        extra="ignore",
    )

    # Project
    project_name: str = "Academy Billing API"
    api_v1_str: str = "/api/v1"
    debug: bool = False

    # Database
    database_url: str = "sqlite:///./dev.db"

    # CORS
    allowed_origins: List[str] = [
        "http://localhost:5173",
        "http://127.0.0.1:5173",
        "http://localhost:3000",
        "http://127.0.0.1:3000",
    ]

    # Logging
    log_dir: str = "log"
    log_level: str = "INFO"

    # E-mail (SMTP) for payment reminders
    smtp_host: Optional[str] = None
    smtp_port: int = 587
    smtp_username: Optional[str] = None
    smtp_password: Optional[str] = None
    smtp_sender: Optional[str] = None
    smtp_starttls: bool = True

    # Public URLs (links inside reminders and provider redirects)
    public_app_url: str = "http://localhost:5173"

    # Payments / provider
    payment_provider: str = "manual"
    default_currency: str = "usd"
    stripe_api_key: Optional[str] = None
    payment_webhook_secret: Optional[str] = None
    webhook_tolerance_seconds: int = 300
    payment_provider_timeout_seconds: float = 20.0
    billing_allow_platform_fallback: bool = True
    billing_max_retries: int = 3
    # Processing payments older than this are re-checked with the provider
    payment_sync_after_minutes: int = 30

    # Dunning / periodic job
    dunning_grace_days: int = 0
    dunning_lead_days: int = 3
    billing_scheduler_enabled: bool = False
    billing_scheduler_interval_minutes: int = 60

    def resolved_public_app_url(self) -> str:
        return (self.public_app_url or "").strip().rstrip("/")


@lru_cache
def get_settings() -> Settings:
    """Return the cached global settings instance."""
    return Settings()


settings = get_settings()
