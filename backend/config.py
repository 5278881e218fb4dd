"""
Configuration
=============
Process-wide settings sourced from the environment once at startup.

Required values are checked up front so a misconfigured deployment fails
when the app boots instead of on the first paid webhook.
"""

import os
from typing import Mapping, Optional

from dotenv import load_dotenv
from pydantic import BaseModel, ConfigDict, Field


class ConfigurationError(RuntimeError):
    """Raised when required environment variables are missing or invalid."""

    def __init__(self, missing: list[str], detail: str = ""):
        self.missing = missing
        message = f"Missing required configuration: {', '.join(missing)}" if missing else detail
        super().__init__(message)


REQUIRED_VARIABLES = (
    "STRIPE_SECRET_KEY",
    "STRIPE_WEBHOOK_SECRET",
    "DATABASE_URL",
    "S3_BUCKET",
    "FRONTEND_URL",
    "MAIL_USER",
    "MAIL_PASSWORD",
)


class Settings(BaseModel):
    """Immutable settings shared by every request handler."""

    model_config = ConfigDict(frozen=True)

    # Stripe
    STRIPE_SECRET_KEY: str
    STRIPE_WEBHOOK_SECRET: str
    STRIPE_PRICE_BASIC: str = "price_1R3j3ME7ALxB5NeWiBpb4IAo"
    STRIPE_PRICE_PREMIUM: str = "price_1R3j3rE7ALxB5NeW3ff6tK6c"
    CHECKOUT_CURRENCY: str = "brl"
    WEBHOOK_TOLERANCE_SECONDS: int = 300

    # Persistence
    DATABASE_URL: str
    DB_MIN_POOL_SIZE: int = 1
    DB_MAX_POOL_SIZE: int = 10

    # Blob storage
    S3_BUCKET: str
    AWS_REGION: str = "us-east-1"
    MEDIA_PUBLIC_BASE_URL: Optional[str] = None

    # Frontend
    FRONTEND_URL: str

    # Mail
    MAIL_USER: str
    MAIL_PASSWORD: str
    MAIL_FROM_NAME: str = "Cartão Digital"
    SMTP_HOST: str = "smtp.gmail.com"
    SMTP_PORT: int = 465

    # Workflow limits
    EXTERNAL_CALL_TIMEOUT_SECONDS: float = Field(default=20.0, gt=0)
    MAX_CONCURRENT_UPLOADS: int = Field(default=4, ge=1)
    IDEMPOTENCY_LOCK_TIMEOUT_SECONDS: int = 300
    # Stripe accepts checkout expiry between 30 minutes and 24 hours
    SLUG_RESERVATION_MINUTES: int = Field(default=60, ge=30, le=1440)

    # Server
    CORS_ORIGINS: list[str] = Field(default_factory=lambda: ["*"])
    PORT: int = 8000
    ENV: str = "development"

    @property
    def frontend_base(self) -> str:
        return self.FRONTEND_URL.rstrip("/")

    def card_url(self, slug: str) -> str:
        """Public URL of a provisioned card."""
        return f"{self.frontend_base}/{slug}"

    @classmethod
    def from_env(cls, environ: Optional[Mapping[str, str]] = None) -> "Settings":
        """
        Build settings from the environment.

        Raises ConfigurationError listing every missing required variable.
        """
        if environ is None:
            load_dotenv()
            environ = os.environ

        missing = [name for name in REQUIRED_VARIABLES if not environ.get(name)]
        if missing:
            raise ConfigurationError(missing)

        values: dict = {}
        for name in cls.model_fields:
            raw = environ.get(name)
            if raw is None or raw == "":
                continue
            if name == "CORS_ORIGINS":
                values[name] = [origin.strip() for origin in raw.split(",") if origin.strip()]
            else:
                values[name] = raw

        try:
            return cls(**values)
        except ValueError as e:
            raise ConfigurationError([], detail=f"Invalid configuration: {e}") from e
