"""
Resolution pipeline: cache lookup, tiers in priority order, cache write-back.

The pipeline never touches Connections; jobs and user actions own those
writes. Negative results are not cached, so an unmatched profile is
re-evaluated by every tier on each resolve.
"""

from collections.abc import Callable, Sequence
from datetime import UTC, datetime, timedelta
from typing import Protocol

from app.features.social_graph.domain import (
    SOURCE_PLATFORM_TWITTER,
    Match,
    ResolutionCacheEntry,
    SourceProfile,
)
from app.features.social_graph.repository.resolution_cache_repository import (
    ResolutionCacheRepository,
)
from app.features.social_graph.resolution.tiers import ResolutionTier
from app.infrastructure.observability.logging import get_logger

logger = get_logger(__name__)


class ResolutionCache(Protocol):
    async def get_entry(self, source_platform: str, source_user_id: str) -> ResolutionCacheEntry | None: ...

    async def upsert_entry(self, source_platform: str, source_user_id: str, match: Match) -> None: ...


def _utcnow() -> datetime:
    return datetime.now(UTC)


class ResolutionPipeline:
    """Runs an ordered list of tiers behind the shared resolution cache."""

    def __init__(
        self,
        tiers: Sequence[ResolutionTier],
        *,
        validity_days: int = 30,
        cache: ResolutionCache | type[ResolutionCacheRepository] = ResolutionCacheRepository,
        clock: Callable[[], datetime] = _utcnow,
        source_platform: str = SOURCE_PLATFORM_TWITTER,
    ):
        self.tiers = list(tiers)
        self.validity = timedelta(days=validity_days)
        self.cache = cache
        self.clock = clock
        self.source_platform = source_platform

    def is_fresh(self, entry: ResolutionCacheEntry, now: datetime | None = None) -> bool:
        now = now or self.clock()
        return now - entry.last_verified_at < self.validity

    async def resolve(self, profile: SourceProfile) -> Match | None:
        match = await self._lookup_cache(profile)
        if match is not None:
            logger.debug(
                "Resolution cache hit",
                source_user_id=profile.id,
                target_user_id=match.target_user_id,
            )
        else:
            match = await self._run_tiers(profile)

        if match is None:
            return None

        await self._store(profile, match)
        return match

    async def _lookup_cache(self, profile: SourceProfile) -> Match | None:
        try:
            entry = await self.cache.get_entry(self.source_platform, profile.id)
        except Exception as e:
            logger.warning(
                "Resolution cache unavailable, running tiers",
                source_user_id=profile.id,
                error=str(e),
            )
            return None

        if entry is None or not self.is_fresh(entry):
            return None
        return entry.to_match()

    async def _run_tiers(self, profile: SourceProfile) -> Match | None:
        for tier in self.tiers:
            try:
                match = await tier.attempt(profile)
            except Exception as e:
                logger.warning(
                    "Resolution tier failed, treating as no match",
                    tier=tier.method,
                    source_user_id=profile.id,
                    error=str(e),
                    error_type=type(e).__name__,
                )
                continue

            if match is not None:
                logger.info(
                    "Profile resolved",
                    source_user_id=profile.id,
                    target_user_id=match.target_user_id,
                    method=match.method,
                    confidence=match.confidence,
                )
                return match

        logger.debug("No tier matched profile", source_user_id=profile.id)
        return None

    async def _store(self, profile: SourceProfile, match: Match) -> None:
        try:
            await self.cache.upsert_entry(self.source_platform, profile.id, match)
        except Exception as e:
            logger.warning(
                "Resolution cache write failed",
                source_user_id=profile.id,
                error=str(e),
            )
