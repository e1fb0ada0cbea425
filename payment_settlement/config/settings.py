"""Application settings using Pydantic for environment-based configuration."""
from functools import lru_cache
from typing import List, Optional

from pydantic import Field, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    """Application settings loaded from environment variables."""

    # Gateway Configuration
    gateway_key_id: str = Field(..., description="Gateway API key id (rzp_test_... / rzp_live_...)")
    gateway_key_secret: str = Field(..., description="Gateway API key secret")
    gateway_signature_secret: Optional[str] = Field(
        default=None,
        description="HMAC secret for callback signatures (defaults to the key secret)",
    )
    gateway_base_url: str = Field(
        default="https://api.razorpay.com/v1", description="Gateway REST base URL"
    )
    gateway_timeout_seconds: float = Field(
        default=30.0, description="Timeout for a single gateway request (seconds)"
    )
    gateway_max_retries: int = Field(
        default=3, description="Max attempts for gateway calls that never reached the gateway"
    )
    gateway_retry_base_delay: float = Field(
        default=0.5, description="Base delay for retry backoff (seconds)"
    )

    # Database Configuration
    database_url: str = Field(..., description="Database connection URL")
    database_pool_size: int = Field(default=20, description="Database connection pool size")
    database_max_overflow: int = Field(default=50, description="Max database connection overflow")
    database_echo: bool = Field(default=False, description="Echo SQL queries (debug)")

    # Authentication
    jwt_secret: str = Field(..., description="Secret used to verify caller access tokens")
    jwt_algorithm: str = Field(default="HS256", description="Access token signing algorithm")
    jwt_audience: Optional[str] = Field(
        default=None, description="Expected access token audience (e.g. 'authenticated')"
    )

    # Payment Verification
    verification_ttl_seconds: int = Field(
        default=300, description="Replay window for gateway callbacks (seconds)"
    )
    min_amount_minor: int = Field(default=100, description="Minimum intent amount (minor units)")
    max_amount_minor: int = Field(
        default=1_000_000, description="Maximum intent amount (minor units)"
    )
    supported_currencies: str = Field(
        default="INR,USD", description="Accepted currencies (comma-separated)"
    )
    default_currency: str = Field(default="INR", description="Currency when none is given")

    # Rate Limiting
    login_max_attempts: int = Field(default=5, description="Failed logins before blocking")
    login_window_seconds: int = Field(default=900, description="Login attempt counting window")
    login_block_seconds: int = Field(default=1800, description="Login block duration")
    form_max_submissions: int = Field(default=5, description="Form submissions per window")
    form_window_seconds: int = Field(default=3600, description="Form submission window")
    intent_max_attempts: int = Field(
        default=10, description="Rejected intent requests before blocking"
    )
    intent_window_seconds: int = Field(default=600, description="Intent attempt counting window")
    intent_block_seconds: int = Field(default=900, description="Intent block duration")
    rate_limit_warn_margin: int = Field(
        default=2, description="Attempts below the threshold at which an identity is 'warned'"
    )
    rate_limit_retention_days: int = Field(
        default=90, description="Days to keep idle rate-limit records before pruning"
    )

    # Collaborators
    notification_service_url: Optional[str] = Field(
        default=None, description="Notification service endpoint for payment events"
    )
    admin_notification_recipients: str = Field(
        default="", description="Administrative recipients for payment events (comma-separated)"
    )
    loyalty_ledger_url: Optional[str] = Field(
        default=None, description="Loyalty ledger redemption endpoint"
    )
    collaborator_timeout_seconds: float = Field(
        default=10.0, description="Timeout for notification/loyalty calls (seconds)"
    )

    # Application Configuration
    app_name: str = Field(default="payment-settlement", description="Application name")
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

    @field_validator("default_currency")
    @classmethod
    def validate_default_currency(cls, v: str) -> str:
        """Normalize the default currency code."""
        if len(v) != 3:
            raise ValueError("Currency must be 3-letter code")
        return v.upper()

    def get_allowed_origins_list(self) -> List[str]:
        """Parse allowed origins from comma-separated string."""
        return [origin.strip() for origin in self.allowed_origins.split(",")]

    def get_supported_currencies(self) -> List[str]:
        """Parse supported currencies from comma-separated string."""
        return [c.strip().upper() for c in self.supported_currencies.split(",") if c.strip()]

    def get_admin_recipients(self) -> List[str]:
        """Parse administrative notification recipients."""
        return [r.strip() for r in self.admin_notification_recipients.split(",") if r.strip()]

    @property
    def signing_secret(self) -> str:
        """Secret used for callback signatures; empty string when unconfigured."""
        return self.gateway_signature_secret or self.gateway_key_secret or ""

    @property
    def is_production(self) -> bool:
        """Check if running in production environment."""
        return self.app_env.lower() == "production"

    @property
    def is_test_mode(self) -> bool:
        """Check if using gateway test keys."""
        return self.gateway_key_id.startswith("rzp_test_")


@lru_cache()
def get_settings() -> Settings:
    """
    Get cached settings instance.

    Uses lru_cache to ensure settings are only loaded once.
    """
    return Settings()
