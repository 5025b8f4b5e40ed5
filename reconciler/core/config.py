"""
reconciler/core/config.py

Purpose: Application configuration

- Loads environment variables
- Centralizes config values (DB URI, webhook secret, lock timeouts, etc.)
- Validates configuration on startup
- Environment-specific settings
"""

from pydantic import Field, validator
from pydantic_settings import BaseSettings
from typing import List, Literal, Optional


class Settings(BaseSettings):
    """
    Application settings loaded from environment variables.
    Validates all required configs on startup.
    """

    # Environment
    ENVIRONMENT: Literal["development", "staging", "production"] = "development"

    # Storage
    STORAGE_BACKEND: Literal["mongo", "memory"] = Field(
        default="mongo",
        description="Ledger storage backend ('memory' is for local runs and tests)"
    )
    MONGODB_URL: str = Field(
        default="mongodb://localhost:27017",
        description="MongoDB connection URI"
    )
    MONGODB_DB_NAME: str = Field(
        default="qaaq_billing",
        description="MongoDB database name"
    )
    MONGODB_USE_TRANSACTIONS: bool = Field(
        default=True,
        description="Wrap each event in a multi-document transaction (needs a replica set)"
    )

    # Razorpay
    RAZORPAY_WEBHOOK_SECRET: Optional[str] = Field(
        default=None,
        description="Webhook signature verification secret"
    )

    # Manual reconciliation surface
    ADMIN_API_KEY: Optional[str] = Field(
        default=None,
        description="Key expected in X-Admin-Key for the reconciliation endpoints"
    )

    # Per-user serialization
    USER_LOCK_TIMEOUT_SECONDS: float = Field(
        default=5.0,
        description="Maximum wait for the per-user lock before answering 503"
    )
    USER_LOCK_LEASE_SECONDS: float = Field(
        default=30.0,
        description="Lease length of a MongoDB lock document"
    )

    # Identity resolution
    DEFAULT_COUNTRY_CODE: str = Field(
        default="91",
        description="Country code assumed for bare 10-digit contact numbers"
    )
    GENERIC_EMAIL_ADDRESSES: List[str] = Field(
        default=["void@razorpay.com", "void@gateway.com"],
        description="Placeholder addresses the gateway substitutes for a real email"
    )
    GENERIC_EMAIL_DOMAINS: List[str] = Field(
        default=["example.com"],
        description="Domains whose addresses are never trusted for matching"
    )
    GENERIC_EMAIL_LOCAL_PARTS: List[str] = Field(
        default=["void", "noreply", "no-reply", "donotreply"],
        description="Local parts treated as placeholders on any domain"
    )

    # Subscription expiry
    EXPIRY_GRACE_MINUTES: int = Field(
        default=0,
        description="Minutes past current_period_end before a subscription expires"
    )

    # Application
    DEBUG: bool = Field(
        default=False,
        description="Enable debug mode"
    )
    LOG_LEVEL: str = Field(
        default="INFO",
        description="Logging level (DEBUG, INFO, WARNING, ERROR, CRITICAL)"
    )
    API_PREFIX: str = Field(
        default="/api/v1",
        description="API route prefix"
    )
    CORS_ORIGINS: list = Field(
        default=["*"],
        description="Allowed CORS origins"
    )

    @validator("RAZORPAY_WEBHOOK_SECRET")
    def validate_webhook_secret(cls, v, values):
        """Ensure the webhook secret is set in production."""
        if values.get("ENVIRONMENT") == "production" and not v:
            raise ValueError("RAZORPAY_WEBHOOK_SECRET is required in production environment")
        return v

    @validator("ADMIN_API_KEY")
    def validate_admin_key(cls, v, values):
        """Ensure the reconciliation endpoints are protected in production."""
        if values.get("ENVIRONMENT") == "production" and not v:
            raise ValueError("ADMIN_API_KEY is required in production environment")
        return v

    @validator("DEFAULT_COUNTRY_CODE")
    def validate_country_code(cls, v):
        v = v.strip().lstrip("+")
        if not v.isdigit():
            raise ValueError("DEFAULT_COUNTRY_CODE must be numeric")
        return v

    @property
    def is_development(self) -> bool:
        """Check if running in development mode."""
        return self.ENVIRONMENT == "development"

    @property
    def is_production(self) -> bool:
        """Check if running in production mode."""
        return self.ENVIRONMENT == "production"

    class Config:
        env_file = ".env"
        case_sensitive = True
        env_file_encoding = "utf-8"


# Global settings instance
settings = Settings()


def validate_settings():
    """
    Validates critical settings on application startup.
    Raises ValueError if any required setting is missing or invalid.
    """
    errors = []

    if settings.STORAGE_BACKEND == "mongo":
        if not settings.MONGODB_URL:
            errors.append("MONGODB_URL is required")
        if not settings.MONGODB_DB_NAME:
            errors.append("MONGODB_DB_NAME is required")

    if settings.USER_LOCK_TIMEOUT_SECONDS <= 0:
        errors.append("USER_LOCK_TIMEOUT_SECONDS must be positive")
    if settings.USER_LOCK_LEASE_SECONDS <= settings.USER_LOCK_TIMEOUT_SECONDS:
        errors.append("USER_LOCK_LEASE_SECONDS must exceed USER_LOCK_TIMEOUT_SECONDS")

    # Production-specific validations
    if settings.is_production:
        if settings.STORAGE_BACKEND == "memory":
            errors.append("STORAGE_BACKEND=memory is not allowed in production")
        if not settings.RAZORPAY_WEBHOOK_SECRET:
            errors.append("RAZORPAY_WEBHOOK_SECRET is required in production")

    if errors:
        raise ValueError(f"Configuration validation failed: {', '.join(errors)}")

    return True
