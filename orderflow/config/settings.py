"""Application settings using Pydantic for environment-based configuration."""
from functools import lru_cache
from typing import List, Optional

from pydantic import Field, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    """Application settings loaded from environment variables."""

    # Stripe Configuration
    stripe_secret_key: str = Field(..., description="Stripe secret API key (sk_test_...)")
    stripe_webhook_secret: str = Field(..., description="Stripe webhook signing secret")
    stripe_api_version: str = Field(default="2023-10-16", description="Stripe API version")
    checkout_success_url: str = Field(
        default="http://localhost:3000/checkout/success?session_id={CHECKOUT_SESSION_ID}",
        description="Redirect URL after a completed hosted checkout",
    )
    checkout_cancel_url: str = Field(
        default="http://localhost:3000/checkout/cancel",
        description="Redirect URL after an abandoned hosted checkout",
    )
    gateway_max_attempts: int = Field(default=5, description="Max attempts for gateway calls")

    # Database Configuration
    database_url: str = Field(..., description="Async SQLAlchemy connection URL")
    database_pool_size: int = Field(default=20, description="Database connection pool size")
    database_max_overflow: int = Field(default=50, description="Max database connection overflow")
    database_echo: bool = Field(default=False, description="Echo SQL queries (debug)")
    database_busy_timeout_seconds: float = Field(
        default=30.0, description="SQLite busy timeout while waiting for the write lock"
    )

    # Redis Configuration
    redis_url: Optional[str] = Field(
        default=None, description="Redis URL for webhook replay cache (disabled when unset)"
    )
    webhook_dedup_ttl_seconds: int = Field(
        default=86400 * 7, description="How long processed webhook ids are remembered"
    )
    webhook_tolerance_seconds: int = Field(
        default=300, description="Max age of a signed webhook payload (seconds)"
    )

    # Application Configuration
    app_name: str = Field(default="orderflow", description="Application name")
    app_env: str = Field(default="development", description="Environment (development/production)")
    log_level: str = Field(default="INFO", description="Logging level")
    debug: bool = Field(default=False, description="Debug mode")
    default_currency: str = Field(default="USD", description="Currency for new orders")

    # API Configuration
    api_host: str = Field(default="0.0.0.0", description="API host")
    api_port: int = Field(default=8000, description="API port")
    api_workers: int = Field(default=4, description="Number of API workers")
    allowed_origins: str = Field(
        default="http://localhost:3000,http://localhost:8000",
        description="CORS allowed origins (comma-separated)"
    )
    api_key_header: str = Field(default="X-API-Key", description="API key header name")
    admin_api_key: Optional[str] = Field(
        default=None, description="API key required by admin-only order routes"
    )

    # Orders and Inventory
    reservation_ttl_minutes: int = Field(default=30, description="Stock hold lifetime (minutes)")
    order_payment_timeout_minutes: int = Field(
        default=30, description="Minutes an unpaid order waits before cleanup cancels it"
    )
    checkout_reservation_extension_minutes: int = Field(
        default=30, description="Minutes added to stock holds when a checkout session opens"
    )
    order_number_max_attempts: int = Field(
        default=10, description="Attempts to find an unused order number"
    )
    order_number_retry_delay_seconds: float = Field(
        default=0.01, description="Pause between order number attempts (seconds)"
    )

    # Background Workers
    run_background_workers: bool = Field(
        default=False, description="Run sweeper and cleanup loops inside the API process"
    )
    reservation_sweep_interval_seconds: float = Field(
        default=60.0, description="Interval between reservation expiry sweeps"
    )
    order_cleanup_interval_seconds: float = Field(
        default=300.0, description="Interval between expired order cleanups"
    )
    cleanup_batch_size: int = Field(default=100, description="Rows handled per sweep batch")

    # Notifications
    notification_queue_size: int = Field(default=1000, description="Notification queue bound")
    notification_workers: int = Field(default=4, description="Notification worker tasks")
    notification_max_attempts: int = Field(
        default=3, description="Delivery attempts per notification"
    )

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=False,
        extra="ignore"
    )

    @field_validator("stripe_secret_key")
    @classmethod
    def validate_stripe_key(cls, v: str) -> str:
        """Validate that Stripe secret key is a test or live key."""
        if not v.startswith("sk_test_") and not v.startswith("sk_live_"):
            raise ValueError(
                "Invalid Stripe secret key format. Must start with 'sk_test_' or 'sk_live_'"
            )
        return v

    @field_validator("log_level")
    @classmethod
    def validate_log_level(cls, v: str) -> str:
        """Validate log level."""
        valid_levels = ["DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"]
        if v.upper() not in valid_levels:
            raise ValueError(f"Invalid log level. Must be one of: {valid_levels}")
        return v.upper()

    @field_validator("default_currency")
    @classmethod
    def validate_currency(cls, v: str) -> str:
        if len(v) != 3:
            raise ValueError("Currency must be a 3-letter code")
        return v.upper()

    def get_allowed_origins_list(self) -> List[str]:
        """Parse allowed origins from comma-separated string."""
        return [origin.strip() for origin in self.allowed_origins.split(",")]

    @property
    def is_production(self) -> bool:
        """Check if running in production environment."""
        return self.app_env.lower() == "production"

    @property
    def is_test_mode(self) -> bool:
        """Check if using Stripe test mode."""
        return self.stripe_secret_key.startswith("sk_test_")

    @property
    def is_sqlite(self) -> bool:
        return self.database_url.startswith("sqlite")


@lru_cache()
def get_settings() -> Settings:
    """
    Get cached settings instance.

    Uses lru_cache to ensure settings are only loaded once.
    """
    return Settings()
