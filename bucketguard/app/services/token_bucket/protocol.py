"""Wire side of the token bucket protocol.

Registers the Lua scripts with Redis, encodes script arguments and decodes
script replies into plain Python values.
"""

from typing import Any, Optional, Sequence

from redis.exceptions import NoScriptError

from bucketguard.app.core.logging import get_logger

logger = get_logger(__name__)


class ScriptHandle:
    """A Lua script loaded into Redis once and invoked by SHA1 afterwards.

    States:
        Unregistered: ``sha`` is None; the next call issues SCRIPT LOAD.
        Registered: ``sha`` holds the digest returned by Redis.

    Registration is a plain check-then-load. Two tasks racing through it both
    load the same body, which Redis dedupes by digest, so no lock is taken.
    If Redis forgets the script (SCRIPT FLUSH, failover to a fresh replica)
    the handle falls back to Unregistered and reloads once.
    """

    def __init__(self, name: str, source: str) -> None:
        self.name = name
        self.source = source
        self.sha: Optional[str] = None

    @property
    def is_registered(self) -> bool:
        return self.sha is not None

    async def register(self, redis: Any) -> str:
        """Load the script if no digest is held yet and return the digest."""
        if self.sha is None:
            sha = await redis.script_load(self.source)
            if isinstance(sha, bytes):
                sha = sha.decode()
            self.sha = sha
            logger.debug(f"Loaded {self.name} script into Redis: {sha}")
        return self.sha

    def invalidate(self) -> None:
        self.sha = None

    async def __call__(self, redis: Any, keys: Sequence[str], args: Sequence[str]) -> Any:
        sha = await self.register(redis)
        try:
            return await redis.evalsha(sha, len(keys), *keys, *args)
        except NoScriptError:
            logger.warning(f"Redis lost the {self.name} script, reloading")
            self.invalidate()
            sha = await self.register(redis)
            return await redis.evalsha(sha, len(keys), *keys, *args)


def format_number(value: float) -> str:
    """Render a number the way Lua's tonumber() reads it back.

    Integral values are sent without a trailing ``.0``.
    """
    if isinstance(value, float):
        return str(int(value)) if value.is_integer() else repr(value)
    return str(value)


def _decode_number(raw: Any) -> float:
    if isinstance(raw, bytes):
        raw = raw.decode()
    if isinstance(raw, bool) or not isinstance(raw, (int, float, str)):
        raise ValueError(f"expected a number, got {raw!r}")
    return float(raw)


def _expect_pair(reply: Any) -> Sequence[Any]:
    if not isinstance(reply, (list, tuple)) or len(reply) != 2:
        raise ValueError(f"unexpected reply shape: {reply!r}")
    if reply[0] is None or reply[1] is None:
        raise ValueError(f"unexpected nil in reply: {reply!r}")
    return reply


def build_consume_args(
    capacity: float,
    refill_rate: float,
    now: int,
    ttl_seconds: int,
    tokens: float,
) -> list[str]:
    """Build ARGV for CONSUME_SCRIPT."""
    return [
        format_number(capacity),
        format_number(refill_rate),
        str(now),
        str(ttl_seconds),
        format_number(tokens),
    ]


def build_status_args(capacity: float, refill_rate: float, now: int) -> list[str]:
    """Build ARGV for STATUS_SCRIPT."""
    return [format_number(capacity), format_number(refill_rate), str(now)]


def decode_consume_reply(reply: Any) -> tuple[bool, float]:
    """Decode ``{allowed, tokens}`` from CONSUME_SCRIPT.

    Raises:
        ValueError: If the reply does not have the expected shape.
    """
    allowed_raw, tokens_raw = _expect_pair(reply)
    allowed = _decode_number(allowed_raw)
    if allowed not in (0, 1):
        raise ValueError(f"unexpected allowed flag: {allowed_raw!r}")
    return allowed == 1, _decode_number(tokens_raw)


def decode_status_reply(reply: Any) -> tuple[int, float]:
    """Decode ``{floor(tokens), capacity}`` from STATUS_SCRIPT.

    Raises:
        ValueError: If the reply does not have the expected shape.
    """
    tokens_raw, capacity_raw = _expect_pair(reply)
    return int(_decode_number(tokens_raw)), _decode_number(capacity_raw)
