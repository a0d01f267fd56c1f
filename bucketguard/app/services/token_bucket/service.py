"""Distributed token bucket rate limiter backed by Redis.

All coordination happens inside Redis: every bucket operation is one Lua
script invocation, so any number of stateless instances sharing a Redis
observe a single serialized history per bucket. Nothing here takes an
in-process lock.
"""

import math
import time
from datetime import datetime, timezone
from typing import Any, Callable, Optional

from redis.exceptions import RedisError

from bucketguard.app.core.config import Settings, settings as default_settings
from bucketguard.app.core.logging import get_log_context, get_logger
from bucketguard.app.exceptions import ConfigurationError, OperationFailure

from .models import BucketStatus, ConsumeResult, Number, RateLimiterConfig
from .protocol import (
    ScriptHandle,
    build_consume_args,
    build_status_args,
    decode_consume_reply,
    decode_status_reply,
)
from .redis_lua import CONSUME_SCRIPT, STATUS_SCRIPT

logger = get_logger(__name__)

# Errors that mean Redis could not give a usable answer
_OPERATION_ERRORS = (RedisError, OSError, ValueError)


def _is_number(value: Any) -> bool:
    return (
        isinstance(value, (int, float))
        and not isinstance(value, bool)
        and math.isfinite(value)
    )


class TokenBucketRateLimiter:
    """Token bucket rate limiter shared across instances through Redis.

    Provides:
    - Atomic consume and batch consume (refill, cap, decide, write in one step)
    - Non-mutating status inspection
    - Bucket reset and TTL inspection
    - Idle buckets expire on their own after ``ttl_seconds``

    Redis key format:
    - {prefix}:{client_id} - hash with ``tokens`` and ``timestamp`` fields

    Example:
        >>> limiter = TokenBucketRateLimiter(redis, capacity=100, refill_rate=10, prefix="api")
        >>> result = await limiter.consume("user-1")
        >>> result.allowed
        True
    """

    DEFAULT_TTL_NO_REFILL = 3600  # 1 hour for buckets that never refill
    TTL_BUFFER_SECONDS = 60

    def __init__(
        self,
        redis_client: Any,
        capacity: Number,
        refill_rate: Number,
        prefix: str,
        ttl_seconds: Optional[Number] = None,
        clock: Callable[[], float] = time.time,
    ) -> None:
        """Initialize the limiter.

        Args:
            redis_client: Connected ``redis.asyncio`` client
            capacity: Maximum tokens / burst size
            refill_rate: Tokens added per second (0 = never refills)
            prefix: Key namespace for this limiter's buckets
            ttl_seconds: Idle expiry; derived from capacity and refill rate if omitted
            clock: Source of the current time in epoch seconds

        Raises:
            ConfigurationError: If any argument is invalid.
        """
        self._validate(redis_client, capacity, refill_rate, prefix, ttl_seconds)
        self._redis = redis_client
        self._clock = clock
        if ttl_seconds is None:
            resolved_ttl = self.default_ttl(capacity, refill_rate)
        else:
            resolved_ttl = math.ceil(ttl_seconds)
        self._config = RateLimiterConfig(
            capacity=capacity,
            refill_rate=refill_rate,
            prefix=prefix,
            ttl_seconds=resolved_ttl,
        )
        self._consume_script = ScriptHandle("consume", CONSUME_SCRIPT)
        self._status_script = ScriptHandle("status", STATUS_SCRIPT)

    @classmethod
    def from_settings(
        cls,
        redis_client: Any,
        settings: Optional[Settings] = None,
    ) -> "TokenBucketRateLimiter":
        """Build a limiter from application settings."""
        settings = settings or default_settings
        return cls(
            redis_client,
            capacity=settings.rate_limit_capacity,
            refill_rate=settings.rate_limit_refill_rate,
            prefix=settings.rate_limit_prefix,
            ttl_seconds=settings.rate_limit_ttl_seconds,
        )

    @staticmethod
    def _validate(
        redis_client: Any,
        capacity: Any,
        refill_rate: Any,
        prefix: Any,
        ttl_seconds: Any,
    ) -> None:
        if redis_client is None:
            raise ConfigurationError("redis_client is required")
        if not _is_number(capacity) or capacity <= 0:
            raise ConfigurationError("capacity must be a positive number")
        if not _is_number(refill_rate) or refill_rate < 0:
            raise ConfigurationError("refill_rate must be a non-negative number")
        if not isinstance(prefix, str) or not prefix:
            raise ConfigurationError("prefix must be a non-empty string")
        if ttl_seconds is not None and (not _is_number(ttl_seconds) or ttl_seconds <= 0):
            raise ConfigurationError("ttl_seconds must be a positive number")

    @classmethod
    def default_ttl(cls, capacity: Number, refill_rate: Number) -> int:
        """Twice the time to refill an empty bucket, plus a buffer."""
        if refill_rate == 0:
            return cls.DEFAULT_TTL_NO_REFILL
        return math.ceil((capacity / refill_rate) * 2) + cls.TTL_BUFFER_SECONDS

    def get_config(self) -> RateLimiterConfig:
        """Get the effective (read-only) limiter configuration."""
        return self._config

    def key_for(self, client_id: str) -> str:
        """Create the Redis key for a client's bucket."""
        return f"{self._config.prefix}:{client_id}"

    def _now(self) -> int:
        return int(self._clock())

    def _retry_after(self, remaining_tokens: float, requested: Number) -> int:
        if self._config.refill_rate == 0:
            return 0
        deficit = requested - remaining_tokens
        if deficit <= 0:
            return 0
        return math.ceil(deficit / self._config.refill_rate)

    def _reset_time(self, remaining_tokens: int, now: int) -> Optional[datetime]:
        if self._config.refill_rate == 0:
            return None
        seconds_to_full = (self._config.capacity - remaining_tokens) / self._config.refill_rate
        return datetime.fromtimestamp(now + seconds_to_full, tz=timezone.utc)

    def _failure(self, operation: str, client_id: str, error: Exception) -> OperationFailure:
        key = self.key_for(client_id)
        logger.error(
            f"Rate limiter operation failed for {key}: {error}",
            extra=get_log_context(client_id=client_id, bucket_key=key, operation=operation),
        )
        return OperationFailure(operation.replace("_", " "), str(error) or type(error).__name__)

    async def _consume(self, client_id: str, tokens: Number, operation: str) -> ConsumeResult:
        key = self.key_for(client_id)
        args = build_consume_args(
            self._config.capacity,
            self._config.refill_rate,
            self._now(),
            self._config.ttl_seconds,
            tokens,
        )
        try:
            reply = await self._consume_script(self._redis, [key], args)
            allowed, remaining = decode_consume_reply(reply)
        except _OPERATION_ERRORS as e:
            raise self._failure(operation, client_id, e) from e

        if allowed:
            return ConsumeResult(allowed=True, remaining_tokens=remaining)

        retry_after = self._retry_after(remaining, tokens)
        logger.debug(
            f"Denied {tokens} token(s) for {key}: {remaining} remaining, retry after {retry_after}s",
            extra=get_log_context(client_id=client_id, bucket_key=key, operation=operation),
        )
        return ConsumeResult(allowed=False, remaining_tokens=remaining, retry_after=retry_after)

    async def consume(self, client_id: str) -> ConsumeResult:
        """Attempt to consume one token for the given client.

        Args:
            client_id: Unique client identifier (user ID, IP address, ...)

        Returns:
            ConsumeResult; ``retry_after`` is set only on denial.

        Raises:
            OperationFailure: If Redis cannot complete the operation.
        """
        return await self._consume(client_id, 1, "consume_token")

    async def consume_batch(self, client_id: str, tokens: Number) -> ConsumeResult:
        """Attempt to consume several tokens at once, all or nothing.

        Args:
            client_id: Unique client identifier
            tokens: Number of tokens to consume, at most the capacity

        Raises:
            ConfigurationError: If ``tokens`` is not positive or exceeds capacity.
            OperationFailure: If Redis cannot complete the operation.
        """
        if not _is_number(tokens) or tokens <= 0:
            raise ConfigurationError("tokens must be a positive number")
        if tokens > self._config.capacity:
            raise ConfigurationError(
                f"Cannot consume {tokens} tokens, exceeds capacity of {self._config.capacity}"
            )
        return await self._consume(client_id, tokens, "consume_batch_tokens")

    async def get_status(self, client_id: str) -> BucketStatus:
        """Get the bucket state without consuming or refreshing its expiry.

        Raises:
            OperationFailure: If Redis cannot complete the operation.
        """
        key = self.key_for(client_id)
        now = self._now()
        args = build_status_args(self._config.capacity, self._config.refill_rate, now)
        try:
            reply = await self._status_script(self._redis, [key], args)
            remaining, _ = decode_status_reply(reply)
        except _OPERATION_ERRORS as e:
            raise self._failure("get_status", client_id, e) from e

        return BucketStatus(
            remaining_tokens=remaining,
            capacity=self._config.capacity,
            reset_time=self._reset_time(remaining, now),
        )

    async def reset(self, client_id: str) -> bool:
        """Delete a client's bucket.

        Returns:
            True if a bucket existed, False if it was already absent.

        Raises:
            OperationFailure: If Redis cannot complete the operation.
        """
        key = self.key_for(client_id)
        try:
            deleted = await self._redis.delete(key)
            if not isinstance(deleted, int):
                raise ValueError(f"unexpected DEL reply: {deleted!r}")
        except _OPERATION_ERRORS as e:
            raise self._failure("reset_bucket", client_id, e) from e

        logger.debug(
            f"Reset bucket {key} (existed={deleted > 0})",
            extra=get_log_context(client_id=client_id, bucket_key=key, operation="reset"),
        )
        return deleted > 0

    async def get_ttl(self, client_id: str) -> Optional[int]:
        """Seconds until the client's bucket expires, None if absent or persistent.

        Raises:
            OperationFailure: If Redis cannot complete the operation.
        """
        key = self.key_for(client_id)
        try:
            ttl = await self._redis.ttl(key)
            if not isinstance(ttl, int):
                raise ValueError(f"unexpected TTL reply: {ttl!r}")
        except _OPERATION_ERRORS as e:
            raise self._failure("get_ttl", client_id, e) from e
        return ttl if ttl >= 0 else None


_rate_limiter: Optional[TokenBucketRateLimiter] = None


def get_rate_limiter(redis_client: Optional[Any] = None) -> TokenBucketRateLimiter:
    """Get the global rate limiter instance.

    The first call builds it from settings, connecting to ``settings.redis_url``
    unless a client is supplied.
    """
    global _rate_limiter
    if _rate_limiter is None:
        if redis_client is None:
            import redis.asyncio as aioredis
            redis_client = aioredis.from_url(default_settings.redis_url)
        _rate_limiter = TokenBucketRateLimiter.from_settings(redis_client)
    return _rate_limiter


def reset_rate_limiter() -> None:
    """Reset the global rate limiter instance."""
    global _rate_limiter
    _rate_limiter = None
