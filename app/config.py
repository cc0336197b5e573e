"""Application configuration via pydantic-settings."""

from __future__ import annotations

from functools import lru_cache
from typing import List, Literal, Optional

from pydantic import Field, computed_field
from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    """Application settings loaded from environment variables."""

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=False,
        extra="ignore",
    )

    # Application
    app_name: str = "Session Booking Engine"
    app_version: str = "1.0.0"
    environment: Literal["development", "staging", "production"] = "development"
    debug: bool = False
    api_prefix: str = "/api/v1"
    app_base_url: str = "http://localhost:3000"

    # Server
    host: str = "0.0.0.0"
    port: int = 8000
    workers: int = 4

    # Database
    postgres_host: str = "localhost"
    postgres_port: int = 5432
    postgres_user: str = "booking"
    postgres_password: str = Field(default="booking_secret")
    postgres_db: str = "booking_engine"
    db_pool_size: int = 20
    db_max_overflow: int = 10
    database_url_override: Optional[str] = Field(default=None, alias="DATABASE_URL")

    @computed_field
    @property
    def database_url(self) -> str:
        """Async PostgreSQL connection URL."""
        if self.database_url_override:
            return self.database_url_override
        return (
            f"postgresql+asyncpg://{self.postgres_user}:{self.postgres_password}"
            f"@{self.postgres_host}:{self.postgres_port}/{self.postgres_db}"
        )

    @computed_field
    @property
    def sync_database_url(self) -> str:
        """Sync PostgreSQL connection URL for Alembic."""
        return (
            f"postgresql://{self.postgres_user}:{self.postgres_password}"
            f"@{self.postgres_host}:{self.postgres_port}/{self.postgres_db}"
        )

    # Redis
    redis_host: str = "localhost"
    redis_port: int = 6379
    redis_password: Optional[str] = None
    redis_db: int = 0

    @computed_field
    @property
    def redis_url(self) -> str:
        """Redis connection URL."""
        auth = f":{self.redis_password}@" if self.redis_password else ""
        return f"redis://{auth}{self.redis_host}:{self.redis_port}/{self.redis_db}"

    # Recovery tokens (JWT)
    recovery_token_secret: str = Field(default="change-me-recovery-token-secret")
    recovery_token_algorithm: str = "HS256"
    recovery_token_expire_hours: int = 24

    # Encryption of payment identifiers kept in booking state data
    encryption_key: str = Field(default="your-32-byte-encryption-key-here")

    # Payment provider (Stripe)
    stripe_secret_key: Optional[str] = None
    stripe_webhook_secret: Optional[str] = None
    stripe_currency: str = "usd"

    # Scheduling provider (Calendly)
    calendly_api_token: Optional[str] = None
    calendly_api_base_url: str = "https://api.calendly.com"
    calendly_webhook_signing_key: Optional[str] = None
    calendly_webhook_signing_key_secondary: Optional[str] = None
    calendly_skip_signature_in_dev: bool = False

    # Email (SendGrid dynamic templates)
    sendgrid_api_key: Optional[str] = None
    email_from_address: str = "bookings@example.com"
    email_from_name: str = "Session Bookings"
    sendgrid_template_booking_confirmed: Optional[str] = None
    sendgrid_template_booking_cancelled: Optional[str] = None
    sendgrid_template_payment_failed: Optional[str] = None

    # Orchestration
    transition_max_attempts: int = 3
    provider_call_max_attempts: int = 3
    provider_call_initial_delay_seconds: float = 0.5
    webhook_retry_schedule_minutes: List[int] = [1, 5, 15, 30, 60]
    webhook_max_attempts: int = 5
    effect_max_attempts: int = 5
    booking_flow_expiry_minutes: int = 60
    reconciliation_batch_size: int = 100
    run_effects_inline: bool = False

    # Rate Limiting
    rate_limit_per_minute: int = 100

    # CORS
    cors_origins: List[str] = ["http://localhost:3000"]


@lru_cache
def get_settings() -> Settings:
    """Get cached settings instance."""
    return Settings()


settings = get_settings()
