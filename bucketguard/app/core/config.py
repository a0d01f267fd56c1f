import math
from typing import Optional

from pydantic import field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict


LOG_FORMATS = ("text", "structured", "json")


class Settings(BaseSettings):
    """Application settings loaded from environment variables.

    All settings can be configured via environment variables or .env file.
    """

    # Redis settings
    redis_url: str = "redis://localhost:6379/0"

    # Token bucket settings
    rate_limit_capacity: float = 100  # Maximum tokens / burst size
    rate_limit_refill_rate: float = 10  # Tokens added per second
    rate_limit_prefix: str = "ratelimit"
    rate_limit_ttl_seconds: Optional[int] = None  # None = derived from capacity/refill rate

    # Middleware behaviour
    rate_limit_fail_closed: bool = (
        False  # If True, deny requests when Redis is unavailable
    )
    rate_limit_include_headers: bool = True

    # Logging settings
    log_level: str = "INFO"
    log_format: str = "text"  # text | structured | json

    @field_validator("rate_limit_capacity")
    @classmethod
    def validate_capacity_positive(cls, v: float) -> float:
        """Validate bucket capacity is a positive finite number."""
        if not math.isfinite(v) or v <= 0:
            raise ValueError("rate_limit_capacity must be a positive number")
        return v

    @field_validator("rate_limit_refill_rate")
    @classmethod
    def validate_refill_rate(cls, v: float) -> float:
        """Validate refill rate is non-negative."""
        if not math.isfinite(v) or v < 0:
            raise ValueError("rate_limit_refill_rate must be a non-negative number")
        return v

    @field_validator("rate_limit_prefix")
    @classmethod
    def validate_prefix(cls, v: str) -> str:
        if not v:
            raise ValueError("rate_limit_prefix must be a non-empty string")
        return v

    @field_validator("rate_limit_ttl_seconds")
    @classmethod
    def validate_ttl_positive(cls, v: Optional[int]) -> Optional[int]:
        """Validate an explicit TTL is positive."""
        if v is not None and v <= 0:
            raise ValueError("rate_limit_ttl_seconds must be a positive number")
        return v

    @field_validator("log_format")
    @classmethod
    def validate_log_format(cls, v: str) -> str:
        v = v.lower()
        if v not in LOG_FORMATS:
            raise ValueError(f"log_format must be one of {', '.join(LOG_FORMATS)}")
        return v

    model_config = SettingsConfigDict(env_file=".env", extra="ignore")


# Global settings instance
settings = Settings()
