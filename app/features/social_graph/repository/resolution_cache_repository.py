"""
Global resolution cache keyed by (source_platform, source_user_id).

Writes are upserts; concurrent resolvers of the same profile simply
overwrite each other with equivalent data.
"""

from app.db.helpers import execute_query, fetch_one
from app.features.social_graph.domain import Match, ResolutionCacheEntry
from app.infrastructure.observability.logging import get_logger

logger = get_logger(__name__)


class ResolutionCacheRepository:
    """Persistence helpers for resolution_cache."""

    @staticmethod
    def _row_to_entry(row: dict | None) -> ResolutionCacheEntry | None:
        if not row:
            return None

        return ResolutionCacheEntry(
            source_platform=row["source_platform"],
            source_user_id=row["source_user_id"],
            target_user_id=row["goodreads_user_id"],
            confidence=float(row["confidence"]),
            method=row["method"],
            last_verified_at=row["last_verified_at"],
        )

    @classmethod
    async def get_entry(
        cls, source_platform: str, source_user_id: str
    ) -> ResolutionCacheEntry | None:
        query = """
            SELECT source_platform, source_user_id, goodreads_user_id,
                   confidence, method, last_verified_at
            FROM resolution_cache
            WHERE source_platform = %s AND source_user_id = %s
        """
        row = await fetch_one(query, (source_platform, source_user_id))
        return cls._row_to_entry(row)

    @classmethod
    async def upsert_entry(cls, source_platform: str, source_user_id: str, match: Match) -> None:
        """Insert or refresh the cached match, stamping last_verified_at = NOW()."""
        query = """
            INSERT INTO resolution_cache (
                source_platform, source_user_id, goodreads_user_id,
                confidence, method, last_verified_at
            )
            VALUES (%s, %s, %s, %s, %s, NOW())
            ON CONFLICT (source_platform, source_user_id)
            DO UPDATE SET
                goodreads_user_id = EXCLUDED.goodreads_user_id,
                confidence = EXCLUDED.confidence,
                method = EXCLUDED.method,
                last_verified_at = NOW()
        """
        await execute_query(
            query,
            (
                source_platform,
                source_user_id,
                match.target_user_id,
                match.confidence,
                match.method,
            ),
        )
        logger.debug(
            "Resolution cache entry stored",
            source_user_id=source_user_id,
            method=match.method,
        )
