"""
Read-side summaries over a user's imports and feed: trending books among
matched connections and overall import statistics.
"""

from dataclasses import dataclass
from datetime import UTC, datetime, timedelta

from app.features.social_graph.repository.feed_repository import FeedRepository
from app.features.social_graph.repository.import_repository import ImportRepository
from app.infrastructure.observability.logging import get_logger

logger = get_logger(__name__)

TRENDING_WINDOW = timedelta(days=30)
TRENDING_LIMIT = 10
TRENDING_MIN_CONNECTIONS = 2


@dataclass(slots=True)
class TrendingBook:
    book_id: str
    title: str | None
    author: str | None
    cover_url: str | None
    interaction_count: int
    avg_rating: float | None


@dataclass(slots=True)
class ImportStats:
    total_imports: int
    total_accounts: int
    total_matched: int
    match_rate: int
    total_feed_items: int
    unique_books: int


def match_rate(matched: int, accounts: int) -> int:
    """Whole-number percentage of accounts matched, rounding halves up."""
    if accounts <= 0:
        return 0
    return int(matched * 100 / accounts + 0.5)


async def get_trending(user_id: str, now: datetime | None = None) -> list[TrendingBook]:
    since = (now or datetime.now(UTC)) - TRENDING_WINDOW
    rows = await FeedRepository.trending_for_user(
        user_id,
        since,
        min_connections=TRENDING_MIN_CONNECTIONS,
        limit=TRENDING_LIMIT,
    )

    books = []
    for row in rows:
        avg_rating = row.get("avg_rating")
        books.append(
            TrendingBook(
                book_id=row["book_id"],
                title=row.get("book_title"),
                author=row.get("book_author"),
                cover_url=row.get("book_cover_url"),
                interaction_count=int(row["interaction_count"]),
                avg_rating=round(float(avg_rating), 1) if avg_rating is not None else None,
            )
        )

    logger.debug("Trending books computed", user_id=user_id, book_count=len(books))
    return books


async def get_stats(user_id: str) -> ImportStats:
    imports = await ImportRepository.totals_for_user(user_id)
    if imports["total_imports"] == 0:
        return ImportStats(0, 0, 0, 0, 0, 0)

    feed = await FeedRepository.totals_for_user(user_id)
    return ImportStats(
        total_imports=imports["total_imports"],
        total_accounts=imports["total_accounts"],
        total_matched=imports["total_matched"],
        match_rate=match_rate(imports["total_matched"], imports["total_accounts"]),
        total_feed_items=feed["total_items"],
        unique_books=feed["unique_books"],
    )
