"""Distributed token bucket rate limiting using Redis.

This package provides atomic bucket operations using Redis Lua scripts,
shared by every instance connected to the same Redis.
"""

from .models import BucketStatus, ConsumeResult, RateLimiterConfig
from .protocol import ScriptHandle
from .redis_lua import CONSUME_SCRIPT, STATUS_SCRIPT
from .service import (
    TokenBucketRateLimiter,
    get_rate_limiter,
    reset_rate_limiter,
)

__all__ = [
    "BucketStatus",
    "ConsumeResult",
    "RateLimiterConfig",
    "ScriptHandle",
    "CONSUME_SCRIPT",
    "STATUS_SCRIPT",
    "TokenBucketRateLimiter",
    "get_rate_limiter",
    "reset_rate_limiter",
]
