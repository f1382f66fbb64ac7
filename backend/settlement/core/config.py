from decimal import Decimal
from typing import Optional

from pydantic_settings import BaseSettings


class Settings(BaseSettings):
    # App
    APP_NAME: str = "Marketplace Settlement Engine"
    ENVIRONMENT: str = "development"
    DEBUG: bool = True

    # Database
    DATABASE_URL: str = "postgresql://settlement_user:settlement_pass@db:5432/settlement_db"

    # Redis (Celery broker for the batch jobs)
    REDIS_URL: str = "redis://redis:6379/0"

    # Commission fallback when no rule matches any tier
    DEFAULT_COMMISSION_RATE: Decimal = Decimal("0.10")  # fraction, 0.10 = 10%
    DEFAULT_FIXED_FEE: Decimal = Decimal("0.00")

    # Settlement periods are calendar months in this timezone (only UTC is supported)
    SETTLEMENT_TIMEZONE: str = "UTC"
    SETTLEMENT_CURRENCY: str = "USD"

    # Payouts
    MAX_PAYOUT_RETRY_COUNT: int = 3
    PAYOUT_RETRY_BACKOFF_MINUTES: int = 60  # doubled on every retry
    MIN_PAYOUT_THRESHOLD: Decimal = Decimal("10.00")
    MAX_PAYOUTS_PER_BATCH: int = 100

    # Outbound payment rail (payout execution)
    PAYMENT_RAIL_URL: Optional[str] = None
    PAYMENT_RAIL_API_KEY: Optional[str] = None
    PAYMENT_RAIL_TIMEOUT_SECONDS: int = 15

    # Commission invoices
    INVOICE_NUMBER_PADDING: int = 6  # 2025-000123
    INVOICE_PAYMENT_DUE_DAYS: int = 14
    PLATFORM_NAME: str = "Marketplace"

    class Config:
        env_file = ".env"
        case_sensitive = True


settings = Settings()
