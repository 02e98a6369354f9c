"""Application settings using Pydantic for environment-based configuration."""
import re
from functools import lru_cache
from typing import List, Literal, Optional

from pydantic import Field, SecretStr, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    """Application settings loaded from environment variables."""

    # CCAvenue Configuration
    ccavenue_merchant_id: str = Field(..., description="CCAvenue merchant ID")
    ccavenue_access_code: str = Field(..., description="CCAvenue access code")
    ccavenue_working_key: SecretStr = Field(..., description="CCAvenue working (encryption) key")
    ccavenue_payment_url: str = Field(
        default="https://secure.ccavenue.ae/transaction/transaction.do?command=initiateTransaction",
        description="CCAvenue hosted payment page",
    )
    ccavenue_key_derivation: Literal["hex", "md5"] = Field(
        default="hex", description="How the AES key is derived from the working key"
    )

    # Payment Configuration
    payment_currency: str = Field(default="AED", description="Settlement currency")
    billing_country: str = Field(default="AE", description="Default billing country")
    payment_link_default_expiry_hours: int = Field(
        default=48, description="Default order payment link lifetime (hours)"
    )
    milestone_link_default_expiry_hours: int = Field(
        default=72, description="Default milestone payment link lifetime (hours)"
    )
    payment_link_max_expiry_hours: int = Field(
        default=168, description="Upper bound for any payment link lifetime (hours)"
    )
    payment_link_single_use: bool = Field(
        default=False, description="Reject a link once a payment was initiated with it"
    )

    # URLs
    backend_url: str = Field(
        default="http://localhost:8000", description="Public base URL of this API"
    )
    frontend_url: str = Field(
        default="http://localhost:3000", description="Customer-facing web app base URL"
    )

    # Database Configuration
    database_url: str = Field(..., description="Database connection URL")
    database_pool_size: int = Field(default=20, description="Database connection pool size")
    database_max_overflow: int = Field(default=50, description="Max database connection overflow")
    database_echo: bool = Field(default=False, description="Echo SQL queries (debug)")

    # Redis Configuration
    redis_url: Optional[str] = Field(
        default=None, description="Redis URL for callback deduplication (disabled if unset)"
    )
    callback_dedup_ttl_seconds: int = Field(
        default=86400 * 7, description="How long processed callbacks are remembered"
    )

    # Email Configuration
    smtp_host: Optional[str] = Field(default=None, description="SMTP server host")
    smtp_port: int = Field(default=587, description="SMTP server port")
    smtp_username: Optional[str] = Field(default=None, description="SMTP username")
    smtp_password: Optional[SecretStr] = Field(default=None, description="SMTP password")
    smtp_use_tls: bool = Field(default=True, description="Use STARTTLS")
    smtp_timeout_seconds: float = Field(default=10.0, description="SMTP socket timeout")
    email_from: str = Field(default="info@localhost", description="Sender address")
    email_max_attempts: int = Field(default=3, description="SMTP delivery attempts")

    # Application Configuration
    app_name: str = Field(default="service-payments", description="Application name")
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
    api_key_header: str = Field(default="X-API-Key", description="API key header name")
    admin_api_key: SecretStr = Field(..., description="API key required on admin routes")

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=False,
        extra="ignore"
    )

    @field_validator("ccavenue_working_key")
    @classmethod
    def validate_working_key(cls, v: SecretStr) -> SecretStr:
        """Reject empty working keys early; the codec validates the exact format."""
        if not v.get_secret_value().strip():
            raise ValueError("CCAvenue working key must not be empty")
        return v

    @field_validator("payment_currency")
    @classmethod
    def validate_currency(cls, v: str) -> str:
        """Validate currency format."""
        if not re.fullmatch(r"[A-Za-z]{3}", v):
            raise ValueError("Currency must be a 3-letter code")
        return v.upper()

    @field_validator("log_level")
    @classmethod
    def validate_log_level(cls, v: str) -> str:
        """Validate log level."""
        valid_levels = ["DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"]
        if v.upper() not in valid_levels:
            raise ValueError(f"Invalid log level. Must be one of: {valid_levels}")
        return v.upper()

    @field_validator("backend_url", "frontend_url")
    @classmethod
    def strip_trailing_slash(cls, v: str) -> str:
        return v.rstrip("/")

    def get_allowed_origins_list(self) -> List[str]:
        """Parse allowed origins from comma-separated string."""
        return [origin.strip() for origin in self.allowed_origins.split(",")]

    @property
    def email_enabled(self) -> bool:
        return bool(self.smtp_host)


@lru_cache()
def get_settings() -> Settings:
    """
    Get cached settings instance.

    Uses lru_cache to ensure settings are only loaded once.
    """
    return Settings()
