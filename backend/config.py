"""
Configuration management for the test ride booking system.
"""
from typing import Literal
from pydantic_settings import BaseSettings
from functools import lru_cache


class Settings(BaseSettings):
    """Application settings loaded from environment variables."""

    # Stripe configuration
    stripe_secret_key: str = ""
    stripe_publishable_key: str = ""
    stripe_webhook_secret: str = ""
    currency: str = "usd"

    # Authorization hold placed on the customer's card (in cents)
    hold_amount_cents: int = 100

    # Test ride details
    test_ride_duration_minutes: int = 10
    shop_name: str = "San Diego Electric Bike"
    shop_location: str = "1234 Electric Ave, San Diego, CA"
    # Return times are shown to customers in shop local time
    shop_timezone: str = "America/Los_Angeles"

    # SMS provider: selected once at startup
    sms_provider: Literal["textbelt", "twilio"] = "textbelt"
    textbelt_api_key: str = ""
    textbelt_url: str = "https://textbelt.com/text"
    twilio_account_sid: str = ""
    twilio_auth_token: str = ""
    twilio_phone_number: str = ""

    # Object storage (S3 compatible)
    storage_bucket: str = "customer-files"
    storage_region: str = "us-west-2"
    storage_endpoint_url: str = ""
    storage_public_base_url: str = ""
    max_upload_bytes: int = 10 * 1024 * 1024

    # Timeouts per call class (seconds)
    upload_timeout_seconds: float = 30.0
    payment_timeout_seconds: float = 60.0
    sms_timeout_seconds: float = 15.0

    # Wizard sessions untouched for this long are dropped
    wizard_session_idle_minutes: int = 60

    # Return reminder SMS this many minutes before end_time (0 disables)
    reminder_minutes_before_end: int = 0
    reminder_check_interval_minutes: int = 1

    # Release the authorization hold when staff mark a bike returned
    release_hold_on_return: bool = True

    # Orphaned customer sweep (0 disables it)
    orphan_sweep_interval_minutes: int = 0
    orphan_grace_minutes: int = 15

    # Environment
    environment: str = "development"

    # API settings
    api_host: str = "0.0.0.0"
    api_port: int = 8000

    # Frontend URL (for CORS and payment return redirects)
    frontend_url: str = "http://localhost:3000"

    class Config:
        env_file = ".env"
        env_file_encoding = "utf-8"
        case_sensitive = False
        extra = "ignore"  # Ignore extra fields like DATABASE_URL


@lru_cache()
def get_settings() -> Settings:
    """Get cached settings instance."""
    return Settings()


def is_stripe_configured() -> bool:
    """Check if Stripe is properly configured."""
    settings = get_settings()
    return bool(
        settings.stripe_secret_key
        and settings.stripe_secret_key.startswith(("sk_test_", "sk_live_"))
    )
