"""
Application Configuration
=========================

Centralized configuration using Pydantic Settings.
Loads from environment variables with validation.
"""

from functools import lru_cache
from typing import List

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

    # Database
    DATABASE_URL: str = Field(default="")

    # Redis (blank disables the premium status cache)
    REDIS_URL: str = Field(default="")
    PREMIUM_STATUS_CACHE_TTL: int = Field(default=300)

    # JWT Authentication (tokens are issued by the auth gateway)
    JWT_SECRET: str = Field(default="change-this-secret-in-production")
    JWT_ALGORITHM: str = Field(default="HS256")

    # RevenueCat
    REVENUECAT_API_KEY: str = Field(default="")
    REVENUECAT_BASE_URL: str = Field(default="https://api.revenuecat.com")
    REVENUECAT_TIMEOUT_SECONDS: float = Field(default=10.0)
    REVENUECAT_WEBHOOK_SECRET: str = Field(default="")
    REVENUECAT_ENTITLEMENT_ID: str = Field(default="premium")
    REVENUECAT_ENFORCE_REAL_MODE: bool = Field(
        default=True,
        description="Never grant premium from sandbox-only entitlements",
    )
    REVENUECAT_USER_ID_ATTRIBUTES: str = Field(default="userId,firebaseUserId")
    REVENUECAT_EMAIL_ATTRIBUTES: str = Field(default="appUserEmail,email")

    # Reconciliation
    RECONCILE_MAX_ATTEMPTS: int = Field(default=3, ge=1)
    CLIENT_SNAPSHOT_MAX_BYTES: int = Field(default=16384, ge=256)

    # App Configuration
    ALLOWED_ORIGINS: str = Field(default="http://localhost:3000,http://localhost:8000")

    @property
    def allowed_origins_list(self) -> List[str]:
        """Parse ALLOWED_ORIGINS into a list."""
        return [origin.strip() for origin in self.ALLOWED_ORIGINS.split(",")]

    @property
    def revenuecat_user_id_attributes(self) -> tuple[str, ...]:
        """Subscriber attributes that carry our internal user id."""
        return _split_csv(self.REVENUECAT_USER_ID_ATTRIBUTES)

    @property
    def revenuecat_email_attributes(self) -> tuple[str, ...]:
        """Subscriber attributes that carry a verified email."""
        return _split_csv(self.REVENUECAT_EMAIL_ATTRIBUTES)

    @property
    def database_url_async(self) -> str:
        """Convert database URL to async format for asyncpg."""
        if self.DATABASE_URL.startswith("postgresql://"):
            return self.DATABASE_URL.replace(
                "postgresql://", "postgresql+asyncpg://", 1
            )
        return self.DATABASE_URL

    @property
    def is_development(self) -> bool:
        """Check if running in development environment."""
        return self.ENVIRONMENT.lower() == "development"

    @field_validator("JWT_SECRET")
    @classmethod
    def validate_jwt_secret(cls, v: str) -> str:
        """Ensure JWT secret is sufficiently long."""
        if len(v) < 32:
            raise ValueError("JWT_SECRET must be at least 32 characters long")
        return v


def _split_csv(value: str) -> tuple[str, ...]:
    return tuple(part.strip() for part in value.split(",") if part.strip())


@lru_cache
def get_settings() -> Settings:
    """
    Get cached settings instance.

    Uses lru_cache to ensure settings are loaded only once.
    """
    return Settings()


# Export a default settings instance
settings = get_settings()
