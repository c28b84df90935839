from decimal import Decimal
from functools import lru_cache
from typing import Optional

from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    """Application settings loaded from environment variables."""

    model_config = SettingsConfigDict(env_file=".env", extra="ignore")

    APP_NAME: str = "Referral Payouts API"
    APP_VERSION: str = "1.0.0"
    LOG_LEVEL: str = "INFO"
    CORS_ORIGINS: list[str] = ["*"]

    # Ledger store; in-memory when unset
    DATABASE_URL: Optional[str] = None
    # Per-user lock lease; must outlive PROCESSOR_TIMEOUT_SECONDS
    LEDGER_LOCK_TTL_SECONDS: float = 120.0
    LEDGER_LOCK_WAIT_SECONDS: float = 60.0

    # Stripe Connect
    STRIPE_SECRET_KEY: str = ""
    STRIPE_PAYOUT_WEBHOOK_SECRET: str = ""
    PROCESSOR_TIMEOUT_SECONDS: float = 30.0
    WEBHOOK_TOLERANCE_SECONDS: int = 300
    CONNECT_ACCOUNT_COUNTRY: str = "US"
    ONBOARDING_RETURN_URL: str = "http://localhost:5173/network?setup=success"
    ONBOARDING_REFRESH_URL: str = "http://localhost:5173/network?setup=refresh"

    # Payout policy
    PAYOUT_CURRENCY: str = "usd"
    PAYOUT_TRANSFER_FEE: Decimal = Decimal("0.25")  # flat cost of one US bank transfer
    MINIMUM_PAYOUT_AMOUNT: Decimal = Decimal("20.00")


@lru_cache
def get_settings() -> Settings:
    return Settings()
