"""Middleware package for the rate limiter."""

from bucketguard.app.middleware.rate_limit import (
    RateLimitMiddleware,
    RateLimitStatusMiddleware,
    default_key_func,
)

__all__ = [
    "RateLimitMiddleware",
    "RateLimitStatusMiddleware",
    "default_key_func",
]
