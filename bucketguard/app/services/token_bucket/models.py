"""Data models for the token bucket rate limiter."""

from dataclasses import dataclass, field
from datetime import datetime
from typing import Optional, Union

Number = Union[int, float]


@dataclass(frozen=True)
class RateLimiterConfig:
    """Effective limiter configuration, resolved once at construction.

    Attributes:
        capacity: Maximum tokens / burst size
        refill_rate: Tokens added per second
        prefix: Key namespace
        ttl_seconds: Idle expiry of a bucket in Redis
    """
    capacity: Number
    refill_rate: Number
    prefix: str
    ttl_seconds: int

    def to_dict(self) -> dict:
        """Convert to dictionary for serialization."""
        return {
            "capacity": self.capacity,
            "refill_rate": self.refill_rate,
            "prefix": self.prefix,
            "ttl_seconds": self.ttl_seconds,
        }


@dataclass
class ConsumeResult:
    """Result of a consume or batch consume.

    Attributes:
        allowed: Whether the tokens were taken
        remaining_tokens: Tokens left after the decision, fractional credit included
        retry_after: Seconds until the request could succeed (denials only);
            0 when the bucket never refills
    """
    allowed: bool
    remaining_tokens: float
    retry_after: Optional[int] = field(default=None)

    def to_dict(self) -> dict:
        return {
            "allowed": self.allowed,
            "remaining_tokens": self.remaining_tokens,
            "retry_after": self.retry_after,
        }


@dataclass
class BucketStatus:
    """Read-only view of a bucket.

    Attributes:
        remaining_tokens: Whole tokens a consume would see right now
        capacity: Bucket capacity
        reset_time: When the bucket is full again; None if it never refills
    """
    remaining_tokens: int
    capacity: Number
    reset_time: Optional[datetime] = field(default=None)

    @property
    def reset_epoch(self) -> Optional[int]:
        """Reset time as integer epoch seconds."""
        if self.reset_time is None:
            return None
        return int(self.reset_time.timestamp())

    def to_dict(self) -> dict:
        return {
            "remaining_tokens": self.remaining_tokens,
            "capacity": self.capacity,
            "reset_time": self.reset_time.isoformat() if self.reset_time else None,
        }
