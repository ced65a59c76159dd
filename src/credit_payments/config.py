"""
Application configuration using Pydantic Settings.
"""

from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    """Settings loaded from environment variables (or a local .env file)."""

    # Storage; without a URI the in-memory store is used
    MONGO_URI: str = ""
    MONGO_DB: str = "credit_payments"
    LEDGER_LOG_PATH: str = "logs/credit_ledger.log"

    LOG_LEVEL: str = "INFO"

    # Redirect target base for checkout success / cancel pages
    FRONTEND_URL: str = "http://localhost:3000"

    # Stripe
    STRIPE_SECRET_KEY: str = ""
    STRIPE_WEBHOOK_SECRET: str = ""
    STRIPE_LINK_ENABLED: bool = True

    # PayPal
    PAYPAL_CLIENT_ID: str = ""
    PAYPAL_CLIENT_SECRET: str = ""
    PAYPAL_WEBHOOK_ID: str = ""
    PAYPAL_LIVE: bool = False
    PAYPAL_TIMEOUT_SECONDS: float = 15.0

    model_config = SettingsConfigDict(env_file=".env", case_sensitive=True, extra="ignore")


settings = Settings()
