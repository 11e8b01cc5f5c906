"""
Rate-limited, cached HTTP fetcher shared by the Twitter and Goodreads clients.

Every client instance owns one CachedFetcher, and every fetcher owns one
RequestPacer. The pacer holds the "last request time" for that instance
only; two processes are not coordinated against each other.
"""

import asyncio
import time
from collections.abc import Awaitable, Callable
from typing import Protocol

import httpx

from app.infrastructure.observability.logging import get_logger
from app.services.redis_client import FastRedisClient

logger = get_logger(__name__)

BROWSER_HEADERS = {
    "User-Agent": (
        "Mozilla/5.0 (Macintosh; Intel Mac OS X 10_15_7) AppleWebKit/537.36 "
        "(KHTML, like Gecko) Chrome/120.0.0.0 Safari/537.36"
    ),
    "Accept": "text/html,application/xhtml+xml,application/xml;q=0.9,*/*;q=0.8",
    "Accept-Language": "en-US,en;q=0.5",
}

Sleep = Callable[[float], Awaitable[None]]


class FetchError(Exception):
    """Raised for transport failures and non-success responses."""

    def __init__(self, message: str, *, url: str, status_code: int | None = None):
        super().__init__(message)
        self.url = url
        self.status_code = status_code
        self.recoverable = status_code is None or status_code >= 500 or status_code == 429


class RateLimited(FetchError):
    """Raised when a request is still rate limited after the internal retry."""

    def __init__(self, url: str, wait_seconds: float):
        super().__init__(
            f"Rate limited after retry for {url}", url=url, status_code=429
        )
        self.wait_seconds = wait_seconds


class CacheUnavailable(Exception):
    """Raised by a response cache when its backend cannot be reached."""


class ResponseCache(Protocol):
    async def get(self, key: str) -> str | None: ...

    async def set_with_ttl(self, key: str, value: str, ttl_s: int | None = None) -> bool: ...


class RedisResponseCache:
    """ResponseCache over the shared Redis client."""

    def __init__(self, redis_client: FastRedisClient, prefix: str = "fetch"):
        self.redis = redis_client
        self.prefix = prefix

    async def get(self, key: str) -> str | None:
        try:
            return await self.redis.get(f"{self.prefix}:{key}")
        except Exception as e:
            raise CacheUnavailable(str(e)) from e

    async def set_with_ttl(self, key: str, value: str, ttl_s: int | None = None) -> bool:
        try:
            return await self.redis.set_with_ttl(f"{self.prefix}:{key}", value, ttl_s)
        except Exception as e:
            raise CacheUnavailable(str(e)) from e


class RequestPacer:
    """Enforces a minimum spacing between requests issued through one client."""

    def __init__(
        self,
        min_interval_seconds: float,
        *,
        clock: Callable[[], float] = time.monotonic,
        sleep: Sleep = asyncio.sleep,
    ):
        self.min_interval_seconds = min_interval_seconds
        self._clock = clock
        self._sleep = sleep
        self._last_request = float("-inf")

    async def wait(self) -> float:
        """Sleep until the next slot is free. Returns the seconds waited."""
        now = self._clock()
        ready_at = self._last_request + self.min_interval_seconds
        # Reserve the slot before sleeping so concurrent callers queue up behind it
        self._last_request = max(now, ready_at)

        delay = ready_at - now
        if delay > 0:
            await self._sleep(delay)
            return delay
        return 0.0


class CachedFetcher:
    """
    fetch(key, url) with TTL caching, request pacing and one 429 retry.

    Args:
        name: Label used in logs ("goodreads", "twitter")
        pacer: Spacing state owned by this fetcher
        cache: Optional response cache; None disables caching
        cache_ttl_seconds: TTL for cached bodies
        headers: Default identity headers
        rate_limit_fallback_seconds: Wait used when a 429 carries no reset hint
        rate_limit_max_wait_seconds: Upper bound on any 429 wait
    """

    def __init__(
        self,
        *,
        name: str,
        pacer: RequestPacer,
        cache: ResponseCache | None = None,
        cache_ttl_seconds: int = 24 * 60 * 60,
        headers: dict[str, str] | None = None,
        rate_limit_fallback_seconds: float = 60.0,
        rate_limit_max_wait_seconds: float = 15 * 60.0,
        timeout_seconds: float = 30.0,
        http_client: httpx.AsyncClient | None = None,
        sleep: Sleep = asyncio.sleep,
    ):
        self.name = name
        self.pacer = pacer
        self.cache = cache
        self.cache_ttl_seconds = cache_ttl_seconds
        self.headers = dict(BROWSER_HEADERS if headers is None else headers)
        self.rate_limit_fallback_seconds = rate_limit_fallback_seconds
        self.rate_limit_max_wait_seconds = rate_limit_max_wait_seconds
        self._sleep = sleep
        self._client = http_client or self._create_client(timeout_seconds)

    def _create_client(self, timeout_seconds: float) -> httpx.AsyncClient:
        timeout = httpx.Timeout(timeout_seconds)
        limits = httpx.Limits(max_keepalive_connections=10, max_connections=20)
        return httpx.AsyncClient(timeout=timeout, limits=limits, follow_redirects=True)

    async def close(self) -> None:
        """Close the underlying HTTP client."""
        await self._client.aclose()

    async def fetch(
        self,
        key: str | None,
        url: str,
        *,
        headers: dict[str, str] | None = None,
        params: dict[str, str] | None = None,
    ) -> str:
        """Return the response body for url, from cache when possible."""
        if key is not None:
            cached = await self._read_cache(key)
            if cached is not None:
                logger.debug("Fetch cache hit", client=self.name, key=key)
                return cached

        response = await self._send_with_rate_limit(url, headers=headers, params=params)
        if not response.is_success:
            raise self._failure(url, response)

        body = response.text
        if key is not None:
            await self._write_cache(key, body)
        return body

    async def final_url(self, url: str) -> str | None:
        """
        Follow redirects from url and return where they land.

        Returns None when the target does not exist (404). Other failures
        raise FetchError, and a 429 gets the same single wait-and-retry as fetch.
        """
        response = await self._send_with_rate_limit(url)
        if response.status_code == 404:
            return None
        if not response.is_success:
            raise self._failure(url, response)
        return str(response.url)

    async def _send_with_rate_limit(
        self,
        url: str,
        *,
        headers: dict[str, str] | None = None,
        params: dict[str, str] | None = None,
    ) -> httpx.Response:
        """Send once; on 429 wait for the advertised reset and retry exactly once."""
        response = await self._send(url, headers=headers, params=params)
        if response.status_code != 429:
            return response

        wait_seconds = self._rate_limit_wait(response)
        logger.warning(
            "Rate limited, waiting before single retry",
            client=self.name,
            url=url,
            wait_seconds=round(wait_seconds, 1),
        )
        await self._sleep(wait_seconds)
        response = await self._send(url, headers=headers, params=params)
        if response.status_code == 429:
            raise RateLimited(url, wait_seconds)
        return response

    def _failure(self, url: str, response: httpx.Response) -> FetchError:
        logger.warning(
            "Fetch failed",
            client=self.name,
            url=url,
            status_code=response.status_code,
        )
        return FetchError(
            f"{self.name} fetch failed: HTTP {response.status_code} for {url}",
            url=url,
            status_code=response.status_code,
        )

    async def _send(
        self,
        url: str,
        *,
        headers: dict[str, str] | None = None,
        params: dict[str, str] | None = None,
    ) -> httpx.Response:
        await self.pacer.wait()
        request_headers = {**self.headers, **(headers or {})}
        try:
            return await self._client.get(url, headers=request_headers, params=params)
        except httpx.RequestError as e:
            logger.warning("Fetch transport error", client=self.name, url=url, error=str(e))
            raise FetchError(f"{self.name} request error: {e}", url=url) from e

    def _rate_limit_wait(self, response: httpx.Response) -> float:
        wait_seconds = self.rate_limit_fallback_seconds

        retry_after = response.headers.get("retry-after")
        reset_at = response.headers.get("x-rate-limit-reset")
        try:
            if retry_after is not None:
                wait_seconds = float(retry_after)
            elif reset_at is not None:
                wait_seconds = float(reset_at) - time.time() + 1
        except ValueError:
            logger.debug("Unparseable rate limit hint", retry_after=retry_after, reset=reset_at)

        return min(max(wait_seconds, 0.0), self.rate_limit_max_wait_seconds)

    async def _read_cache(self, key: str) -> str | None:
        if self.cache is None:
            return None
        try:
            return await self.cache.get(key)
        except CacheUnavailable as e:
            logger.warning("Response cache unavailable, treating as miss", key=key, error=str(e))
            return None

    async def _write_cache(self, key: str, body: str) -> None:
        if self.cache is None:
            return
        try:
            await self.cache.set_with_ttl(key, body, self.cache_ttl_seconds)
        except CacheUnavailable as e:
            logger.warning("Response cache write skipped", key=key, error=str(e))
