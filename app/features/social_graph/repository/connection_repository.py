"""
Persistence layer for social connections (one row per followed account).

Connections are unique per (import_id, source_platform, source_user_id);
re-importing the same account refreshes the profile snapshot and keeps any
existing match.
"""

from collections.abc import Iterable

from app.db.helpers import DatabaseError, execute_query, fetch_one
from app.features.social_graph.domain import Match, SocialConnection, SourceProfile
from app.infrastructure.observability.logging import get_logger

logger = get_logger(__name__)

HIGH_CONFIDENCE_THRESHOLD = 0.8
MEDIUM_CONFIDENCE_THRESHOLD = 0.4


class ConnectionRepository:
    """Persistence helpers for social_connections."""

    SELECT_COLUMNS = """
        c.id, c.import_id, c.source_platform, c.source_user_id, c.source_handle,
        c.source_display_name, c.source_bio, c.source_profile_url,
        c.goodreads_user_id, c.match_confidence, c.match_method, c.verified_by_user
    """

    @staticmethod
    def _row_to_connection(row: dict | None) -> SocialConnection | None:
        if not row:
            return None

        return SocialConnection(
            id=str(row["id"]),
            import_id=str(row["import_id"]),
            source_platform=row["source_platform"],
            source_user_id=row["source_user_id"],
            source_handle=row.get("source_handle"),
            source_display_name=row.get("source_display_name"),
            source_bio=row.get("source_bio"),
            source_profile_url=row.get("source_profile_url"),
            target_user_id=row.get("goodreads_user_id"),
            match_confidence=float(row.get("match_confidence") or 0.0),
            match_method=row.get("match_method"),
            verified_by_user=bool(row.get("verified_by_user")),
        )

    @classmethod
    async def upsert_unresolved(
        cls, import_id: str, source_platform: str, profiles: Iterable[SourceProfile]
    ) -> list[str]:
        """
        Insert one unresolved connection per profile and return their ids.

        An existing row for the same account keeps its match fields; only
        the profile snapshot is refreshed.
        """
        query = """
            INSERT INTO social_connections (
                import_id, source_platform, source_user_id, source_handle,
                source_display_name, source_bio, source_profile_url
            )
            VALUES (%s, %s, %s, %s, %s, %s, %s)
            ON CONFLICT (import_id, source_platform, source_user_id)
            DO UPDATE SET
                source_handle = EXCLUDED.source_handle,
                source_display_name = EXCLUDED.source_display_name,
                source_bio = EXCLUDED.source_bio,
                source_profile_url = EXCLUDED.source_profile_url
            RETURNING id
        """

        connection_ids: list[str] = []
        for profile in profiles:
            row = await fetch_one(
                query,
                (
                    import_id,
                    source_platform,
                    profile.id,
                    profile.handle,
                    profile.display_name,
                    profile.bio,
                    profile.profile_url,
                ),
            )
            if not row:
                raise DatabaseError(
                    "Connection upsert returned no row", operation="upsert_connection"
                )
            connection_ids.append(str(row["id"]))

        logger.info(
            "Connections stored",
            import_id=import_id,
            connection_count=len(connection_ids),
        )
        return connection_ids

    @classmethod
    async def get(cls, connection_id: str) -> SocialConnection | None:
        query = f"SELECT {cls.SELECT_COLUMNS} FROM social_connections c WHERE c.id = %s"
        return cls._row_to_connection(await fetch_one(query, (connection_id,)))

    @classmethod
    async def get_for_user(cls, connection_id: str, user_id: str) -> SocialConnection | None:
        """Return the connection only if its import belongs to user_id."""
        query = f"""
            SELECT {cls.SELECT_COLUMNS}
            FROM social_connections c
            JOIN social_graph_imports i ON i.id = c.import_id
            WHERE c.id = %s AND i.user_id = %s
        """
        return cls._row_to_connection(await fetch_one(query, (connection_id, user_id)))

    @staticmethod
    def _counted_update(set_clause: str, counted_when: str, counter_expression: str) -> str:
        """
        Update one connection and its import's matched_accounts in a single statement.

        The connection row is locked before it is read, so concurrent
        transitions on the same connection serialize and each change of
        matched state is counted exactly once. The first parameter is the
        connection id, followed by the parameters of set_clause.
        """
        return f"""
            WITH prev AS (
                SELECT id, import_id, goodreads_user_id
                FROM social_connections
                WHERE id = %s
                FOR UPDATE
            ),
            updated AS (
                UPDATE social_connections c
                SET {set_clause}
                FROM prev
                WHERE c.id = prev.id
                RETURNING prev.import_id, ({counted_when}) AS counted
            ),
            counter AS (
                UPDATE social_graph_imports i
                SET matched_accounts = {counter_expression}
                FROM updated
                WHERE i.id = updated.import_id AND updated.counted
                RETURNING i.id
            )
            SELECT counted FROM updated
        """

    @classmethod
    async def set_match(cls, connection_id: str, match: Match) -> bool:
        """
        Store a resolved match. Returns True when the connection was unmatched
        before, in which case the import's matched_accounts was incremented.
        """
        query = cls._counted_update(
            """
                goodreads_user_id = %s,
                match_confidence = %s,
                match_method = %s
            """,
            "prev.goodreads_user_id IS NULL",
            "i.matched_accounts + 1",
        )
        row = await fetch_one(
            query, (connection_id, match.target_user_id, match.confidence, match.method)
        )
        return bool(row and row["counted"])

    @classmethod
    async def set_verified_link(cls, connection_id: str, match: Match) -> bool:
        """Store a user-asserted match and flag it verified. Same return as set_match."""
        query = cls._counted_update(
            """
                goodreads_user_id = %s,
                match_confidence = %s,
                match_method = %s,
                verified_by_user = true
            """,
            "prev.goodreads_user_id IS NULL",
            "i.matched_accounts + 1",
        )
        row = await fetch_one(
            query, (connection_id, match.target_user_id, match.confidence, match.method)
        )
        return bool(row and row["counted"])

    @classmethod
    async def mark_verified(cls, connection_id: str) -> None:
        query = "UPDATE social_connections SET verified_by_user = true WHERE id = %s"
        await execute_query(query, (connection_id,))

    @classmethod
    async def clear_match(cls, connection_id: str) -> bool:
        """
        Clear the match fields. Returns True when the connection was matched,
        in which case matched_accounts was decremented (never below zero).
        """
        query = cls._counted_update(
            """
                goodreads_user_id = NULL,
                match_confidence = 0,
                match_method = NULL,
                verified_by_user = false
            """,
            "prev.goodreads_user_id IS NOT NULL",
            "GREATEST(i.matched_accounts - 1, 0)",
        )
        row = await fetch_one(query, (connection_id,))
        return bool(row and row["counted"])

    @classmethod
    async def confidence_breakdown(cls, import_id: str) -> dict[str, int]:
        """Count connections of an import by confidence band."""
        query = """
            SELECT
                COUNT(*) FILTER (
                    WHERE goodreads_user_id IS NOT NULL AND match_confidence >= %s
                ) AS high_confidence,
                COUNT(*) FILTER (
                    WHERE goodreads_user_id IS NOT NULL
                      AND match_confidence >= %s AND match_confidence < %s
                ) AS medium_confidence,
                COUNT(*) FILTER (
                    WHERE goodreads_user_id IS NOT NULL AND match_confidence < %s
                ) AS low_confidence,
                COUNT(*) FILTER (WHERE goodreads_user_id IS NULL) AS unmatched
            FROM social_connections
            WHERE import_id = %s
        """
        row = await fetch_one(
            query,
            (
                HIGH_CONFIDENCE_THRESHOLD,
                MEDIUM_CONFIDENCE_THRESHOLD,
                HIGH_CONFIDENCE_THRESHOLD,
                MEDIUM_CONFIDENCE_THRESHOLD,
                import_id,
            ),
        )
        row = row or {}
        return {
            "high_confidence": int(row.get("high_confidence") or 0),
            "medium_confidence": int(row.get("medium_confidence") or 0),
            "low_confidence": int(row.get("low_confidence") or 0),
            "unmatched": int(row.get("unmatched") or 0),
        }

