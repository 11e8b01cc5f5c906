"""
Sliding window rate limiters.

Two interchangeable implementations of the same `acquire()` contract:

- RedisSlidingWindowLimiter: atomic Lua script over a Redis sorted set.
  Shared by every process pointing at the same Redis, so queue workers on
  several hosts respect one ceiling.
- LocalSlidingWindowLimiter: in-process deque of timestamps. Used for
  inline job execution and for per-client API windows (Twitter's 15 calls
  per 15 minutes).

Both fail open: if Redis is unreachable the request is allowed and a
warning is logged.

Usage:
    limiter = LocalSlidingWindowLimiter(limit=10, window_seconds=1.0)
    await limiter.acquire()
"""

import asyncio
import time
import uuid
from collections import deque
from typing import Protocol

from app.infrastructure.observability.logging import get_logger
from app.services.redis_client import FastRedisClient

logger = get_logger(__name__)


class SlidingWindowLimiter(Protocol):
    limit: int
    window_seconds: float

    async def acquire(self) -> None: ...


class LocalSlidingWindowLimiter:
    """In-process sliding window limiter."""

    def __init__(self, limit: int, window_seconds: float, *, name: str = "local"):
        self.limit = limit
        self.window_seconds = window_seconds
        self.name = name
        self._requests: deque[float] = deque()
        self._lock = asyncio.Lock()

    def _prune(self, now: float) -> None:
        while self._requests and now - self._requests[0] >= self.window_seconds:
            self._requests.popleft()

    def check(self, now: float | None = None) -> tuple[bool, float]:
        """Record a request if allowed. Returns (allowed, retry_after_seconds)."""
        now = time.monotonic() if now is None else now
        self._prune(now)

        if len(self._requests) >= self.limit:
            retry_after = self.window_seconds - (now - self._requests[0])
            return False, max(retry_after, 0.0)

        self._requests.append(now)
        return True, 0.0

    async def acquire(self) -> None:
        async with self._lock:
            while True:
                allowed, retry_after = self.check()
                if allowed:
                    return
                logger.debug(
                    "Rate limit reached, waiting",
                    limiter=self.name,
                    wait_seconds=round(retry_after, 3),
                )
                await asyncio.sleep(retry_after)


class RedisSlidingWindowLimiter:
    """
    Redis-based limiter using the sliding window algorithm.

    Thread Safety:
        Uses an atomic Lua script so concurrent workers cannot race past
        the limit.
    """

    # Returns: {allowed (0 or 1), current_count, oldest_timestamp_ms or 0}
    RATE_LIMIT_LUA_SCRIPT = """
    local key = KEYS[1]
    local limit = tonumber(ARGV[1])
    local window_ms = tonumber(ARGV[2])
    local current_ms = tonumber(ARGV[3])
    local unique_id = ARGV[4]

    -- Remove entries older than the window
    redis.call('ZREMRANGEBYSCORE', key, 0, current_ms - window_ms)

    local current_count = redis.call('ZCARD', key)

    if current_count >= limit then
        local oldest_entries = redis.call('ZRANGE', key, 0, 0, 'WITHSCORES')
        local oldest_timestamp = 0
        if #oldest_entries > 0 then
            oldest_timestamp = tonumber(oldest_entries[2])
        end
        return {0, current_count, oldest_timestamp}
    end

    redis.call('ZADD', key, current_ms, unique_id)

    -- Expire at 2x window for cleanup
    redis.call('PEXPIRE', key, window_ms * 2)

    return {1, current_count + 1, 0}
    """

    def __init__(
        self,
        redis_client: FastRedisClient,
        key: str,
        limit: int,
        window_seconds: float,
    ):
        self.redis = redis_client
        self.key = f"ratelimit:{key}"
        self.limit = limit
        self.window_seconds = window_seconds

    async def check(self) -> tuple[bool, float]:
        """Returns (allowed, retry_after_seconds)."""
        window_ms = int(self.window_seconds * 1000)
        current_ms = int(time.time() * 1000)

        try:
            result = await self.redis.client.eval(
                self.RATE_LIMIT_LUA_SCRIPT,
                1,
                self.key,
                self.limit,
                window_ms,
                current_ms,
                f"{current_ms}:{uuid.uuid4().hex}",
            )
        except Exception as e:
            logger.warning("Rate limiter unavailable, failing open", key=self.key, error=str(e))
            return True, 0.0

        if bool(int(result[0])):
            return True, 0.0

        oldest_ms = int(result[2]) if result[2] else 0
        if oldest_ms > 0:
            retry_after_ms = max(1, oldest_ms + window_ms - current_ms)
        else:
            retry_after_ms = window_ms
        return False, retry_after_ms / 1000

    async def acquire(self) -> None:
        while True:
            allowed, retry_after = await self.check()
            if allowed:
                return
            logger.debug("Rate limit reached, waiting", key=self.key, wait_seconds=retry_after)
            await asyncio.sleep(retry_after)
