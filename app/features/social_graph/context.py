"""
Wiring for the social graph feature.

Builds the source and reading-platform clients from settings and bundles
them, the resolution pipeline and the dispatcher into the JobContext every
job handler receives. The API process and the worker process both call
build_job_context() once at startup.
"""

from dataclasses import dataclass

from app.config import Settings, settings
from app.features.social_graph.clients.fetcher import (
    CachedFetcher,
    RedisResponseCache,
    RequestPacer,
    ResponseCache,
)
from app.features.social_graph.clients.goodreads_client import (
    API_HEADERS,
    GoodreadsApiClient,
    GoodreadsScraperClient,
    ReadingPlatformClient,
)
from app.features.social_graph.clients.twitter_client import TwitterClient
from app.features.social_graph.resolution.pipeline import ResolutionPipeline
from app.features.social_graph.resolution.tiers import build_default_tiers
from app.infrastructure.observability.logging import get_logger
from app.jobs.queue import JobDispatcher
from app.services.redis_client import FastRedisClient, fast_redis

logger = get_logger(__name__)


@dataclass(slots=True)
class JobContext:
    """Everything a job handler needs beyond its payload."""

    dispatcher: JobDispatcher
    pipeline: ResolutionPipeline
    source_client: TwitterClient
    reading_client: ReadingPlatformClient
    read_shelf_limit: int = 20

    async def close(self) -> None:
        await self.source_client.fetcher.close()
        await self.reading_client.close()


def _response_cache(redis_client: FastRedisClient, prefix: str) -> ResponseCache | None:
    if not redis_client.configured:
        return None
    return RedisResponseCache(redis_client, prefix=prefix)


def _fetcher(
    name: str,
    delay_ms: int,
    cache: ResponseCache | None,
    config: Settings,
    headers: dict[str, str] | None = None,
) -> CachedFetcher:
    return CachedFetcher(
        name=name,
        pacer=RequestPacer(delay_ms / 1000),
        cache=cache,
        cache_ttl_seconds=config.RESPONSE_CACHE_TTL_SECONDS,
        headers=headers,
        rate_limit_fallback_seconds=config.RATE_LIMIT_FALLBACK_SECONDS,
        rate_limit_max_wait_seconds=config.RATE_LIMIT_MAX_WAIT_SECONDS,
        timeout_seconds=config.HTTP_TIMEOUT_SECONDS,
    )


def create_reading_client(
    config: Settings = settings, redis_client: FastRedisClient = fast_redis
) -> ReadingPlatformClient:
    """Scraper or JSON API client, chosen by GOODREADS_USE_MOBILE_API."""
    cache = _response_cache(redis_client, "goodreads")

    if config.GOODREADS_USE_MOBILE_API:
        fetcher = _fetcher(
            "goodreads_api", config.GOODREADS_API_DELAY_MS, cache, config, headers=API_HEADERS
        )
        return GoodreadsApiClient(fetcher, config.GOODREADS_BASE_URL)

    fetcher = _fetcher("goodreads", config.GOODREADS_SCRAPER_DELAY_MS, cache, config)
    return GoodreadsScraperClient(fetcher, config.GOODREADS_BASE_URL)


def create_source_client(
    config: Settings = settings, redis_client: FastRedisClient = fast_redis
) -> TwitterClient:
    fetcher = _fetcher(
        "twitter",
        0,
        _response_cache(redis_client, "twitter"),
        config,
        headers={"Accept": "application/json"},
    )
    return TwitterClient(
        fetcher,
        api_base=config.TWITTER_API_BASE,
        bearer_token=config.TWITTER_BEARER_TOKEN,
    )


def build_job_context(
    dispatcher: JobDispatcher,
    config: Settings = settings,
    redis_client: FastRedisClient = fast_redis,
) -> JobContext:
    reading_client = create_reading_client(config, redis_client)
    pipeline = ResolutionPipeline(
        build_default_tiers(reading_client),
        validity_days=config.RESOLUTION_CACHE_VALIDITY_DAYS,
    )
    context = JobContext(
        dispatcher=dispatcher,
        pipeline=pipeline,
        source_client=create_source_client(config, redis_client),
        reading_client=reading_client,
        read_shelf_limit=config.ACTIVITY_READ_SHELF_LIMIT,
    )
    logger.info(
        "Job context built",
        dispatch_mode=dispatcher.mode,
        reading_client=type(reading_client).__name__,
    )
    return context
