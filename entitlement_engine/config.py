"""
Application Configuration
=========================

Centralized configuration using Pydantic Settings.
Loads from environment variables with validation.
"""

from datetime import timedelta
from functools import lru_cache
from typing import List, Optional

from pydantic import Field, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    """Application settings loaded from environment variables."""

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=False,
        extra="ignore",
    )

    # Environment
    ENVIRONMENT: str = Field(default="development")

    # Development Settings
    DEV_AUTH_DISABLED: bool = Field(
        default=False,
        description="Disable authentication for local development/testing"
    )

    # Database
    DATABASE_URL: str = Field(default="")
    DATABASE_ECHO: bool = Field(default=False)
    DATABASE_POOL_SIZE: int = Field(default=20)
    DATABASE_MAX_OVERFLOW: int = Field(default=40)

    # Redis (ingest stream)
    REDIS_URL: str = Field(default="redis://localhost:6379/0")

    # JWT Authentication
    JWT_SECRET: str = Field(default="change-this-secret-in-production")
    JWT_ALGORITHM: str = Field(default="HS256")

    # Service-to-service reads of other users' entitlements
    INTERNAL_API_KEY: str = Field(default="")

    # Card billing (Stripe)
    STRIPE_SECRET_KEY: str = Field(default="")
    STRIPE_WEBHOOK_SECRET: str = Field(default="")
    STRIPE_API_BASE: str = Field(default="https://api.stripe.com/v1")
    STRIPE_PRICE_PREMIUM_MONTHLY: str = Field(default="price_premium_monthly")
    STRIPE_PRICE_PREMIUM_ANNUAL: str = Field(default="price_premium_annual")

    # App Store (StoreKit Server API)
    APPSTORE_BUNDLE_ID: str = Field(default="com.example.renewals")
    APPSTORE_ISSUER_ID: str = Field(default="")
    APPSTORE_KEY_ID: str = Field(default="")
    APPSTORE_PRIVATE_KEY: str = Field(default="", description="PEM encoded ES256 key")
    APPSTORE_ENVIRONMENT: str = Field(default="Sandbox")
    APPSTORE_VERIFY_SIGNATURES: bool = Field(default=True)

    # Provider queries
    PROVIDER_TIMEOUT_SECONDS: float = Field(default=5.0)
    PROVIDER_MAX_RETRIES: int = Field(default=3)
    PROVIDER_BACKOFF_BASE_SECONDS: float = Field(default=0.5)

    # Reconciliation
    SCHEDULER_ENABLED: bool = Field(default=True)
    RECONCILE_INTERVAL_SECONDS: int = Field(default=60)
    RECONCILE_BUCKET_SECONDS: int = Field(default=3600)
    RECONCILE_SLACK_HOURS_CARD: int = Field(default=24)
    RECONCILE_SLACK_HOURS_APPSTORE: int = Field(default=24)
    RECONCILE_RETRY_AFTER_SECONDS: int = Field(default=900)
    RECONCILE_ALERT_AFTER_FAILURES: int = Field(default=5)
    RECONCILE_BATCH_SIZE: int = Field(default=200)

    # Lifecycle windows
    GRACE_PERIOD_DAYS_CARD: int = Field(default=7)
    GRACE_PERIOD_DAYS_APPSTORE: int = Field(default=16)
    PROVISIONAL_WINDOW_SECONDS: int = Field(default=60)

    # Webhook ingestion: "inline" processes in the request, "queued" defers
    # to the Redis stream worker.
    WEBHOOK_INGEST_MODE: str = Field(default="inline", pattern="^(inline|queued)$")

    # App Configuration
    ALLOWED_ORIGINS: str = Field(default="http://localhost:3000,http://localhost:8000")

    @property
    def allowed_origins_list(self) -> List[str]:
        """Parse ALLOWED_ORIGINS into a list."""
        return [origin.strip() for origin in self.ALLOWED_ORIGINS.split(",")]

    @property
    def database_url_async(self) -> str:
        """Convert database URL to async format for asyncpg."""
        if self.DATABASE_URL.startswith("postgresql://"):
            return self.DATABASE_URL.replace(
                "postgresql://", "postgresql+asyncpg://"
            )
        return self.DATABASE_URL

    @property
    def provisional_window(self) -> timedelta:
        return timedelta(seconds=self.PROVISIONAL_WINDOW_SECONDS)

    @property
    def is_development(self) -> bool:
        """Check if running in development environment."""
        return self.ENVIRONMENT.lower() == "development"

    @property
    def auth_disabled(self) -> bool:
        """Check if auth is disabled (only allowed in development)."""
        return self.is_development and self.DEV_AUTH_DISABLED

    @property
    def appstore_api_base(self) -> str:
        if self.APPSTORE_ENVIRONMENT.lower() == "production":
            return "https://api.storekit.itunes.apple.com"
        return "https://api.storekit-sandbox.itunes.apple.com"

    @field_validator("JWT_SECRET")
    @classmethod
    def validate_jwt_secret(cls, v: str) -> str:
        """Ensure JWT secret is sufficiently long."""
        if len(v) < 32:
            raise ValueError("JWT_SECRET must be at least 32 characters long")
        return v


@lru_cache
def get_settings() -> Settings:
    """
    Get cached settings instance.

    Uses lru_cache to ensure settings are loaded only once.
    """
    return Settings()


# Export a default settings instance
settings = get_settings()
