"""Services package for the rate limiter."""

from bucketguard.app.services.token_bucket import (
    BucketStatus,
    ConsumeResult,
    RateLimiterConfig,
    TokenBucketRateLimiter,
    get_rate_limiter,
    reset_rate_limiter,
)

__all__ = [
    "BucketStatus",
    "ConsumeResult",
    "RateLimiterConfig",
    "TokenBucketRateLimiter",
    "get_rate_limiter",
    "reset_rate_limiter",
]
