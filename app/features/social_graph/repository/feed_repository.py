"""
Append-only storage for social feed items plus the feed, trending and
totals read queries.
"""

from datetime import datetime
from typing import Any

from app.db.helpers import execute_query, fetch_all, fetch_one, fetch_val
from app.features.social_graph.domain import FeedItem
from app.infrastructure.observability.logging import get_logger

logger = get_logger(__name__)


class FeedRepository:
    """Persistence helpers for social_feed_items."""

    @classmethod
    async def insert_item(cls, item: FeedItem) -> bool:
        """Insert a feed item. Returns False when an identical item already exists."""
        query = """
            INSERT INTO social_feed_items (
                connection_id, goodreads_user_id, activity_type, book_id,
                book_title, book_author, book_cover_url, rating,
                review_snippet, activity_date
            )
            VALUES (%s, %s, %s, %s, %s, %s, %s, %s, %s, %s)
            ON CONFLICT (connection_id, book_id, activity_type, activity_date) DO NOTHING
        """
        inserted = await execute_query(
            query,
            (
                item.connection_id,
                item.target_user_id,
                item.activity_type,
                item.book_id,
                item.book_title,
                item.book_author,
                item.book_cover_url,
                item.rating,
                item.review_snippet,
                item.activity_date,
            ),
        )
        return inserted > 0

    @staticmethod
    def _feed_filters(
        user_id: str,
        activity_type: str | None,
        since: datetime | None,
        connection_id: str | None,
    ) -> tuple[str, list[Any]]:
        clauses = ["i.user_id = %s", "c.goodreads_user_id IS NOT NULL"]
        params: list[Any] = [user_id]

        if activity_type:
            clauses.append("f.activity_type = %s")
            params.append(activity_type)
        if since:
            clauses.append("f.activity_date >= %s")
            params.append(since)
        if connection_id:
            clauses.append("f.connection_id = %s")
            params.append(connection_id)

        return " AND ".join(clauses), params

    @classmethod
    async def list_for_user(
        cls,
        user_id: str,
        *,
        limit: int,
        offset: int = 0,
        activity_type: str | None = None,
        since: datetime | None = None,
        connection_id: str | None = None,
    ) -> tuple[list[dict[str, Any]], int]:
        """
        Return one page of the user's feed, newest first, plus the total count.

        Only items of currently matched connections across all of the user's
        imports are included.
        """
        where, params = cls._feed_filters(user_id, activity_type, since, connection_id)
        base = f"""
            FROM social_feed_items f
            JOIN social_connections c ON c.id = f.connection_id
            JOIN social_graph_imports i ON i.id = c.import_id
            WHERE {where}
        """

        rows = await fetch_all(
            f"""
            SELECT f.id, f.activity_type, f.book_id, f.book_title, f.book_author,
                   f.book_cover_url, f.rating, f.review_snippet, f.activity_date,
                   c.id AS connection_id, c.source_handle, c.source_display_name,
                   c.source_profile_url, c.goodreads_user_id
            {base}
            ORDER BY f.activity_date DESC
            LIMIT %s OFFSET %s
            """,
            tuple(params + [limit, offset]),
        )
        total = await fetch_val(f"SELECT COUNT(*) {base}", tuple(params))

        logger.debug("Feed page loaded", user_id=user_id, item_count=len(rows), total=total)
        return rows, int(total or 0)

    @classmethod
    async def trending_for_user(
        cls,
        user_id: str,
        since: datetime,
        *,
        min_connections: int = 2,
        limit: int = 10,
    ) -> list[dict[str, Any]]:
        """Books that at least min_connections matched connections touched since `since`."""
        query = """
            SELECT f.book_id, f.book_title, f.book_author, f.book_cover_url,
                   COUNT(DISTINCT f.connection_id) AS interaction_count,
                   AVG(f.rating) AS avg_rating
            FROM social_feed_items f
            JOIN social_connections c ON c.id = f.connection_id
            JOIN social_graph_imports i ON i.id = c.import_id
            WHERE i.user_id = %s
              AND c.goodreads_user_id IS NOT NULL
              AND f.activity_date >= %s
            GROUP BY f.book_id, f.book_title, f.book_author, f.book_cover_url
            HAVING COUNT(DISTINCT f.connection_id) >= %s
            ORDER BY interaction_count DESC
            LIMIT %s
        """
        return await fetch_all(query, (user_id, since, min_connections, limit))

    @classmethod
    async def totals_for_user(cls, user_id: str) -> dict[str, int]:
        """Feed item and distinct book counts over the user's matched connections."""
        query = """
            SELECT COUNT(*) AS total_items,
                   COUNT(DISTINCT f.book_id) AS unique_books
            FROM social_feed_items f
            JOIN social_connections c ON c.id = f.connection_id
            JOIN social_graph_imports i ON i.id = c.import_id
            WHERE i.user_id = %s AND c.goodreads_user_id IS NOT NULL
        """
        row = await fetch_one(query, (user_id,)) or {}
        return {
            "total_items": int(row.get("total_items") or 0),
            "unique_books": int(row.get("unique_books") or 0),
        }
