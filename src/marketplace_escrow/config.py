"""Application configuration via pydantic-settings.

Reads from .env file or environment variables. Gateway credentials are
optional at startup: a missing NEERO_API_KEY or NEERO_MERCHANT_ID only makes
the gateway calls fail when they are attempted.

Usage:
    from marketplace_escrow.config import get_settings
    settings = get_settings()
    print(settings.neero_base_url)
"""

from __future__ import annotations

from decimal import Decimal
from functools import lru_cache
from typing import Literal

from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    """Central configuration for the marketplace escrow service."""

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=False,
        extra="ignore",
    )

    # --- Application ---
    app_env: Literal["development", "staging", "production"] = "development"
    app_debug: bool = True
    app_log_level: str = "DEBUG"
    app_host: str = "0.0.0.0"
    app_port: int = 8000
    public_base_url: str = ""

    # --- Database ---
    database_url: str = (
        "postgresql+asyncpg://marketplace:marketplace_dev"
        "@localhost:5432/marketplace"
    )
    db_pool_size: int = 10
    db_max_overflow: int = 20
    db_pool_timeout: int = 30
    db_echo_sql: bool = False

    # --- Redis ---
    redis_url: str = "redis://localhost:6379/0"
    redis_idempotency_ttl_seconds: int = 86400  # 24 hours

    # --- Neero payment gateway ---
    neero_api_key: str = ""
    neero_merchant_id: str = ""
    neero_base_url: str = "https://api.neero.com"
    neero_webhook_secret: str = ""
    neero_timeout_seconds: float = 30.0

    # --- Escrow rules ---
    milestone_threshold: Decimal = Decimal("200000")
    platform_commission_rate: Decimal = Decimal("0.10")
    max_payment_amount: Decimal = Decimal("10000000")
    supported_currencies: str = "USD,EUR,GBP,NGN,GHS,KES,ZAR"

    @property
    def is_development(self) -> bool:
        return self.app_env == "development"

    @property
    def supported_currency_list(self) -> list[str]:
        """Parse comma-separated currency codes into an upper-cased list."""
        return [c.strip().upper() for c in self.supported_currencies.split(",") if c.strip()]


@lru_cache(maxsize=1)
def get_settings() -> Settings:
    """Return a cached singleton of the application settings."""
    return Settings()
