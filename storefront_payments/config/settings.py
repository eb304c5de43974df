"""Application settings using Pydantic for environment-based configuration."""
from datetime import timedelta
from functools import lru_cache
from typing import List, Literal

from pydantic import Field, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    """Application settings loaded from environment variables."""

    # Payment Gateway (EasyKash) Configuration
    gateway_api_url: str = Field(
        default="https://back.easykash.net", description="Gateway base URL"
    )
    gateway_api_key: str = Field(..., description="Gateway API key (authorization header)")
    gateway_hmac_secret: str = Field(..., description="Shared secret for callback signatures")
    gateway_callback_url: str = Field(
        default="http://localhost:8000/payments/easykash/callback",
        description="Public URL the gateway posts callbacks to",
    )
    gateway_redirect_url: str = Field(
        default="http://localhost:3000/payment/callback",
        description="Frontend page the buyer returns to after paying",
    )
    gateway_timeout_seconds: float = Field(
        default=15.0, description="Bounded timeout for outbound gateway calls"
    )
    gateway_connect_retries: int = Field(
        default=3, description="Attempts for requests that never reached the gateway"
    )
    gateway_payment_options: str = Field(
        default="2,4", description="Gateway payment option codes (comma-separated)"
    )
    gateway_cash_expiry_hours: int = Field(
        default=3, description="Hours before a cash voucher expires at the gateway"
    )
    default_currency: str = Field(default="EGP", description="Store currency")

    # Database Configuration
    database_url: str = Field(..., description="Database connection URL")
    database_pool_size: int = Field(default=20, description="Database connection pool size")
    database_max_overflow: int = Field(default=50, description="Max database connection overflow")
    database_echo: bool = Field(default=False, description="Echo SQL queries (debug)")

    # Attempt guard / lockout
    attempt_guard_backend: Literal["database", "redis"] = Field(
        default="database", description="Where attempt counters are kept"
    )
    lockout_max_attempts: int = Field(
        default=5, ge=1, description="Consecutive failures before a key is blocked"
    )
    lockout_duration_seconds: int = Field(
        default=900, ge=1, description="Failure window and block duration (seconds)"
    )
    redis_url: str = Field(
        default="redis://localhost:6379/0", description="Redis connection URL"
    )

    # Payment lifecycle
    payment_expiry_minutes: int = Field(
        default=30, ge=1, description="Pending payments older than this are expired"
    )
    expiry_sweep_interval_seconds: int = Field(
        default=300, ge=1, description="Interval between expiry worker sweeps"
    )

    # Application Configuration
    app_name: str = Field(default="storefront-payments", description="Application name")
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

    # Security
    admin_api_key: str = Field(..., description="API key required by admin endpoints")
    api_key_header: str = Field(default="X-API-Key", description="API key header name")
    user_id_header: str = Field(
        default="X-User-ID", description="Header carrying the authenticated user id"
    )
    trusted_proxies: str = Field(
        default="",
        description="Reverse proxy addresses whose X-Forwarded-For is honoured (comma-separated)"
    )

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=False,
        extra="ignore"
    )

    @field_validator("gateway_hmac_secret", "gateway_api_key", "admin_api_key")
    @classmethod
    def validate_secret(cls, v: str) -> str:
        """Reject blank secrets; an empty HMAC key would accept forged callbacks."""
        if not v or not v.strip():
            raise ValueError("Secret must not be empty")
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
        """Validate currency format."""
        if len(v) != 3:
            raise ValueError("Currency must be a 3-letter code")
        return v.upper()

    def get_allowed_origins_list(self) -> List[str]:
        """Parse allowed origins from comma-separated string."""
        return [origin.strip() for origin in self.allowed_origins.split(",")]

    def get_trusted_proxies_list(self) -> List[str]:
        """Parse trusted proxy addresses from comma-separated string."""
        return [proxy.strip() for proxy in self.trusted_proxies.split(",") if proxy.strip()]

    @property
    def payment_option_codes(self) -> List[int]:
        """Parse gateway payment option codes."""
        return [int(code) for code in self.gateway_payment_options.split(",") if code.strip()]

    @property
    def lockout_duration(self) -> timedelta:
        return timedelta(seconds=self.lockout_duration_seconds)

    @property
    def is_production(self) -> bool:
        """Check if running in production environment."""
        return self.app_env.lower() == "production"

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
