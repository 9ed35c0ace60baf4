"""Dependency providers and settings management."""

from functools import lru_cache
from typing import Optional

from fastapi import Depends
from pydantic_settings import BaseSettings, SettingsConfigDict

from .services.billing import EventAuthenticator, StripeWebhookProcessor


class Settings(BaseSettings):
    """Application settings loaded from environment or .env."""

    ENVIRONMENT: str = "development"
    FRONTEND_URL: str = "http://localhost:3000"

    # Stripe
    STRIPE_SECRET_KEY: str = ""
    STRIPE_WEBHOOK_SECRET: str = ""
    STRIPE_WEBHOOK_TOLERANCE: int = 300  # seconds
    # Subscription metadata `source` tag of this product line (the Stripe
    # account is shared with sibling products)
    STRIPE_PRODUCT_SOURCE: str = "waveorder_platform"

    # Price ids differ between test and live mode
    STRIPE_STARTER_PRICE_ID: str = ""
    STRIPE_STARTER_ANNUAL_PRICE_ID: str = ""
    STRIPE_STARTER_FREE_PRICE_ID: str = ""
    STRIPE_PRO_PRICE_ID: str = ""
    STRIPE_PRO_ANNUAL_PRICE_ID: str = ""
    STRIPE_PRO_FREE_PRICE_ID: str = ""
    STRIPE_BUSINESS_PRICE_ID: str = ""
    STRIPE_BUSINESS_ANNUAL_PRICE_ID: str = ""
    STRIPE_BUSINESS_FREE_PRICE_ID: str = ""

    GRACE_PERIOD_DAYS: int = 7

    # Email (Resend)
    RESEND_API_KEY: Optional[str] = None
    RESEND_FROM_EMAIL: str = "WaveOrder <noreply@waveorder.app>"
    RESEND_REPLY_TO: str = "contact@waveorder.app"

    # Error tracking
    SENTRY_DSN: Optional[str] = None
    RELEASE_VERSION: Optional[str] = None

    model_config = SettingsConfigDict(env_file=".env", env_file_encoding="utf-8", extra="ignore")


@lru_cache()
def get_settings() -> Settings:
    """Return cached settings instance."""
    return Settings()  # type: ignore[call-arg]


def get_event_authenticator(settings: Settings = Depends(get_settings)) -> EventAuthenticator:
    """Webhook signature checker built from the configured secret."""
    return EventAuthenticator(
        secret=settings.STRIPE_WEBHOOK_SECRET,
        tolerance=settings.STRIPE_WEBHOOK_TOLERANCE,
    )


def get_webhook_processor(settings: Settings = Depends(get_settings)) -> StripeWebhookProcessor:
    """Billing pipeline wired to the live Stripe and Resend clients.

    Tests override this dependency with fakes for both.
    """
    return StripeWebhookProcessor.from_settings(settings)
