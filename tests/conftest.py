"""Shared fixtures for the rate limiter tests.

Two Redis doubles are provided:

- ``lua_redis``: fakeredis with Lua support. It runs CONSUME_SCRIPT and
  STATUS_SCRIPT themselves and backs the bucket semantics tests in
  test_token_bucket_lua.py.
- ``fake_redis``: a small hand-rolled stand-in whose expiry follows the
  injected FakeClock and which records every SCRIPT LOAD / EVALSHA call.
  Its script bodies mirror the Lua in Python; it is used where tests need
  call bookkeeping, failure injection or clock-driven TTLs.
"""

import hashlib
import math
import time

import asyncio
import fakeredis
import pytest
import pytest_asyncio
from redis.exceptions import ConnectionError as RedisConnectionError
from redis.exceptions import NoScriptError, ResponseError

from bucketguard.app.services.token_bucket import (
    CONSUME_SCRIPT,
    STATUS_SCRIPT,
    reset_rate_limiter,
)


def pytest_configure(config):
    config.addinivalue_line(
        "markers", "integration: tests that need a running Redis (REDIS_URL)"
    )


def lua_tostring(value: float) -> str:
    """Format a number like Lua 5.1's tostring()."""
    return "%.14g" % value


class FakeClock:
    """Manually advanced clock in epoch seconds."""

    def __init__(self, start: float = 1_700_000_000.0) -> None:
        self.now = start

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds


class FakeRedis:
    """In-process stand-in for redis.asyncio.Redis."""

    def __init__(self, clock=time.time) -> None:
        self.clock = clock
        self.hashes: dict[str, dict[str, str]] = {}
        self.expires_at: dict[str, float] = {}
        self.scripts: dict[str, str] = {}
        self.script_load_calls = 0
        self.evalsha_calls: list[tuple] = []
        self.fail_with: Exception | None = None

    # -- helpers -------------------------------------------------------------

    def _purge_expired(self, key: str) -> None:
        expires_at = self.expires_at.get(key)
        if expires_at is not None and expires_at <= self.clock():
            self.hashes.pop(key, None)
            self.expires_at.pop(key, None)

    def _check_failure(self) -> None:
        if self.fail_with is not None:
            raise self.fail_with

    def flush_scripts(self) -> None:
        """Simulate SCRIPT FLUSH."""
        self.scripts.clear()

    # -- commands ------------------------------------------------------------

    async def script_load(self, script: str) -> str:
        await asyncio.sleep(0)
        self._check_failure()
        self.script_load_calls += 1
        sha = hashlib.sha1(script.encode()).hexdigest()
        self.scripts[sha] = script
        return sha

    async def evalsha(self, sha: str, numkeys: int, *keys_and_args):
        self.evalsha_calls.append((sha, numkeys, *keys_and_args))
        await asyncio.sleep(0)
        self._check_failure()
        script = self.scripts.get(sha)
        if script is None:
            raise NoScriptError("No matching script. Please use EVAL.")
        keys = keys_and_args[:numkeys]
        args = keys_and_args[numkeys:]
        if script == CONSUME_SCRIPT:
            return self._run_consume(keys[0], *args)
        if script == STATUS_SCRIPT:
            return self._run_status(keys[0], *args)
        raise ResponseError("unknown script")

    async def delete(self, *keys: str) -> int:
        await asyncio.sleep(0)
        self._check_failure()
        deleted = 0
        for key in keys:
            self._purge_expired(key)
            if self.hashes.pop(key, None) is not None:
                deleted += 1
            self.expires_at.pop(key, None)
        return deleted

    async def ttl(self, key: str) -> int:
        await asyncio.sleep(0)
        self._check_failure()
        self._purge_expired(key)
        if key not in self.hashes:
            return -2
        if key not in self.expires_at:
            return -1
        return math.ceil(self.expires_at[key] - self.clock())

    async def aclose(self) -> None:
        return None

    # -- script bodies -------------------------------------------------------

    def _read_bucket(self, key: str):
        self._purge_expired(key)
        record = self.hashes.get(key)
        if record is None:
            return None, None
        return float(record["tokens"]), float(record["timestamp"])

    def _run_consume(self, key, capacity, refill_rate, now, ttl, requested):
        capacity = float(capacity)
        refill_rate = float(refill_rate)
        now = float(now)
        requested = float(requested)

        tokens, last_refill = self._read_bucket(key)
        if tokens is None:
            tokens, last_refill = capacity, now

        added = (now - last_refill) * refill_rate
        if added > 0:
            tokens += added
            last_refill = now
        tokens = min(tokens, capacity)

        allowed = 0
        if tokens >= requested:
            tokens -= requested
            allowed = 1

        self.hashes[key] = {
            "tokens": lua_tostring(tokens),
            "timestamp": lua_tostring(last_refill),
        }
        self.expires_at[key] = self.clock() + int(ttl)
        return [allowed, lua_tostring(tokens).encode()]

    def _run_status(self, key, capacity, refill_rate, now):
        capacity = float(capacity)
        refill_rate = float(refill_rate)
        now = float(now)

        tokens, last_refill = self._read_bucket(key)
        if tokens is None:
            tokens = capacity
        else:
            added = (now - last_refill) * refill_rate
            if added > 0:
                tokens += added
            tokens = min(tokens, capacity)
        return [math.floor(tokens), lua_tostring(capacity).encode()]


# ============================================================================
# Fixtures
# ============================================================================

@pytest.fixture(autouse=True)
def reset_globals():
    """Reset the global limiter before and after each test."""
    reset_rate_limiter()
    yield
    reset_rate_limiter()


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def fake_redis(clock):
    return FakeRedis(clock=clock)


@pytest_asyncio.fixture
async def lua_redis():
    """In-memory Redis that executes the real Lua scripts (fakeredis + lupa)."""
    redis = fakeredis.FakeAsyncRedis(server=fakeredis.FakeServer())
    yield redis
    await redis.aclose()


@pytest.fixture
def unreachable_redis(clock):
    """A FakeRedis whose every command fails with a connection error."""
    redis = FakeRedis(clock=clock)
    redis.fail_with = RedisConnectionError("Error 111 connecting to localhost:6379. Connection refused.")
    return redis
