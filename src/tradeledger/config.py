# src/tradeledger/config.py
"""
Application settings, loaded from the environment and an optional `.env` file.
"""

from decimal import Decimal

from pydantic import Field
from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        extra="ignore"
    )

    # Environment / DB
    ENV: str = Field(default="dev")
    DATABASE_URL: str = Field(default="sqlite:///./dev.db")

    # Ledger transactions: attempts before a stale write becomes a TransactionConflict
    TX_MAX_ATTEMPTS: int = 3

    # Calendar: IANA zone used for day bucketing; None means the host's local zone
    LOCAL_TIMEZONE: str | None = None
    DEFAULT_CURRENCY: str = "EUR"

    # Position sizing multipliers (recommended size = balance x multiplier)
    MULTIPLIER_SHORT: Decimal = Decimal("6")
    MULTIPLIER_NORMAL: Decimal = Decimal("3")
    MULTIPLIER_LONG: Decimal = Decimal("1.8")

    # Risk limits, as percent of the current balance
    MAX_TRADE_LOSS_PCT: Decimal = Decimal("3")
    MAX_DAY_LOSS_PCT: Decimal = Decimal("9")
    DAY_GOAL_PCT: Decimal = Decimal("15")

    # Share of (month PnL - expenses) available as payout
    PAYOUT_RATE: Decimal = Decimal("0.35")

    # API / Security
    API_KEY: str | None = None
    CORS_ORIGINS: str = "*"
    JWT_SECRET: str = "change-me-please"
    JWT_ALG: str = "HS256"
    JWT_EXPIRE_MIN: int = 43200  # 30 days

    # Observability
    METRICS_ENABLED: bool = True


settings = Settings()
