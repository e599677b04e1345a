"""Application settings using Pydantic for environment-based configuration."""
from decimal import Decimal
from functools import lru_cache
from typing import List, Optional

from pydantic import Field, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    """Application settings loaded from environment variables."""

    # Database Configuration
    database_url: str = Field(..., description="Async SQLAlchemy database URL")
    database_pool_size: int = Field(default=20, description="Database connection pool size")
    database_max_overflow: int = Field(default=50, description="Max database connection overflow")
    database_echo: bool = Field(default=False, description="Echo SQL queries (debug)")

    # Redis Configuration (sweeper scheduling lock)
    redis_url: Optional[str] = Field(default=None, description="Redis connection URL")
    sweep_lock_timeout: int = Field(default=600, description="Sweep lock timeout (seconds)")

    # Cron trigger
    cron_secret: str = Field(default="", description="Shared secret for the expiry sweep trigger")

    # Stripe (card checkout)
    stripe_secret_key: str = Field(default="", description="Stripe secret API key")
    stripe_webhook_secret: str = Field(default="", description="Stripe webhook signing secret")
    stripe_api_version: str = Field(default="2023-10-16", description="Stripe API version")
    stripe_success_url: str = Field(
        default="http://localhost:3000/subscription/success", description="Checkout success URL"
    )
    stripe_cancel_url: str = Field(
        default="http://localhost:3000/subscription", description="Checkout cancel URL"
    )

    # Binance Pay (crypto)
    binance_pay_secret: str = Field(default="", description="Binance Pay webhook secret")
    binance_pay_checkout_url: str = Field(
        default=(
            "https://pay.binance.com/en/checkout"
            "?merchantTradeNo={reference}&totalFee={amount}&currency=USDT"
        ),
        description="Binance Pay checkout URL template",
    )
    binance_pay_timestamp_tolerance: int = Field(
        default=300, description="Accepted clock skew for Binance Pay notifications (seconds)"
    )

    # Paystack (mobile wallet)
    paystack_secret_key: str = Field(default="", description="Paystack secret key")
    paystack_base_url: str = Field(default="https://api.paystack.co", description="Paystack API")
    paystack_callback_url: str = Field(
        default="http://localhost:3000/subscription/success", description="Paystack callback URL"
    )

    # Pesapal (mobile money)
    pesapal_consumer_key: str = Field(default="", description="Pesapal consumer key")
    pesapal_consumer_secret: str = Field(default="", description="Pesapal consumer secret")
    pesapal_base_url: str = Field(
        default="https://cybqa.pesapal.com/pesapalv3/api", description="Pesapal API base URL"
    )
    pesapal_notification_id: str = Field(default="", description="Registered Pesapal IPN id")
    pesapal_callback_url: str = Field(
        default="http://localhost:3000/signals/success", description="Pesapal callback URL"
    )

    # Whop (marketplace membership)
    whop_webhook_secret: str = Field(default="", description="Whop webhook secret")
    whop_checkout_url: str = Field(
        default="https://whop.com/checkout/{product_id}?custom_id={reference}",
        description="Whop checkout URL template",
    )
    whop_product_id: str = Field(default="", description="Whop product id")

    # Payouts
    withdrawal_minimum: Decimal = Field(default=Decimal("50.00"), description="Minimum payout")
    withdrawal_fee_rate: Decimal = Field(default=Decimal("0.06"), description="Payout fee rate")
    withdrawal_enforce_balance: bool = Field(
        default=True, description="Reject payouts above the partner's available commission"
    )

    # Partners
    default_revenue_share: Decimal = Field(
        default=Decimal("0.20"), description="Revenue share applied on partner approval"
    )

    # Application Configuration
    app_name: str = Field(default="subscription-billing", description="Application name")
    app_env: str = Field(default="development", description="Environment (development/production)")
    log_level: str = Field(default="INFO", description="Logging level")
    debug: bool = Field(default=False, description="Debug mode")

    # API Configuration
    api_host: str = Field(default="0.0.0.0", description="API host")
    api_port: int = Field(default=8000, description="API port")
    api_workers: int = Field(default=4, description="Number of API workers")
    allowed_origins: str = Field(
        default="http://localhost:3000,http://localhost:8000",
        description="CORS allowed origins (comma-separated)"
    )

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=False,
        extra="ignore"
    )

    @field_validator("log_level")
    @classmethod
    def validate_log_level(cls, v: str) -> str:
        """Validate log level."""
        valid_levels = ["DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"]
        if v.upper() not in valid_levels:
            raise ValueError(f"Invalid log level. Must be one of: {valid_levels}")
        return v.upper()

    @field_validator("withdrawal_fee_rate", "default_revenue_share")
    @classmethod
    def validate_fraction(cls, v: Decimal) -> Decimal:
        """Rates are fractions between 0 and 1."""
        if v < 0 or v > 1:
            raise ValueError("Rate must be between 0 and 1")
        return v

    def get_allowed_origins_list(self) -> List[str]:
        """Parse allowed origins from comma-separated string."""
        return [origin.strip() for origin in self.allowed_origins.split(",")]

    @property
    def is_production(self) -> bool:
        """Check if running in production environment."""
        return self.app_env.lower() == "production"

    @property
    def is_sqlite(self) -> bool:
        """SQLite engines do not take pool sizing arguments."""
        return self.database_url.startswith("sqlite")


@lru_cache()
def get_settings() -> Settings:
    """
    Get cached settings instance.

    Uses lru_cache to ensure settings are only loaded once.
    """
    return Settings()
