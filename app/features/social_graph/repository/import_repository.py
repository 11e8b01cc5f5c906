"""
Persistence layer for social graph imports.

Lifecycle updates live here so the import job only orchestrates.
matched_accounts is changed by ConnectionRepository together with the
connection it counts, in one statement.
"""

from app.db.helpers import DatabaseError, execute_query, fetch_one
from app.features.social_graph.domain import SOURCE_PLATFORM_TWITTER, SocialImport
from app.infrastructure.observability.logging import get_logger

logger = get_logger(__name__)


class ImportRepositoryError(DatabaseError):
    """More specific exception for import persistence failures."""


class ImportRepository:
    """Persistence helpers backing the import and refresh jobs."""

    SELECT_COLUMNS = """
        id, user_id, source_account_id, source_handle, status,
        total_accounts, matched_accounts, created_at, last_refreshed_at
    """

    @classmethod
    def _row_to_import(cls, row: dict | None) -> SocialImport | None:
        if not row:
            return None

        return SocialImport(
            id=str(row["id"]),
            user_id=str(row["user_id"]),
            source_account_id=row["source_account_id"],
            source_handle=row.get("source_handle"),
            status=row["status"],
            total_accounts=row["total_accounts"],
            matched_accounts=row["matched_accounts"],
            created_at=row["created_at"],
            last_refreshed_at=row.get("last_refreshed_at"),
        )

    @classmethod
    async def create(
        cls, user_id: str, source_account_id: str, source_handle: str | None = None
    ) -> SocialImport:
        """Insert a pending import and return it."""
        query = f"""
            INSERT INTO social_graph_imports (
                user_id, source, source_account_id, source_handle, status
            )
            VALUES (%s, %s, %s, %s, 'pending')
            RETURNING {cls.SELECT_COLUMNS}
        """
        row = await fetch_one(
            query, (user_id, SOURCE_PLATFORM_TWITTER, source_account_id, source_handle)
        )
        if not row:
            raise ImportRepositoryError("Failed to create import", operation="create_import")

        logger.info("Social graph import created", user_id=user_id, import_id=str(row["id"]))
        return cls._row_to_import(row)

    @classmethod
    async def get(cls, import_id: str) -> SocialImport | None:
        query = f"SELECT {cls.SELECT_COLUMNS} FROM social_graph_imports WHERE id = %s"
        return cls._row_to_import(await fetch_one(query, (import_id,)))

    @classmethod
    async def get_for_user(cls, import_id: str, user_id: str) -> SocialImport | None:
        """Return the import only if it belongs to user_id."""
        query = f"""
            SELECT {cls.SELECT_COLUMNS}
            FROM social_graph_imports
            WHERE id = %s AND user_id = %s
        """
        return cls._row_to_import(await fetch_one(query, (import_id, user_id)))

    @classmethod
    async def mark_processing(cls, import_id: str) -> None:
        query = "UPDATE social_graph_imports SET status = 'processing' WHERE id = %s"
        await execute_query(query, (import_id,))
        logger.info("Import processing", import_id=import_id)

    @classmethod
    async def set_total(cls, import_id: str, total_accounts: int) -> None:
        query = "UPDATE social_graph_imports SET total_accounts = %s WHERE id = %s"
        await execute_query(query, (total_accounts, import_id))

    @classmethod
    async def mark_complete(cls, import_id: str) -> None:
        query = """
            UPDATE social_graph_imports
            SET status = 'complete',
                last_refreshed_at = NOW()
            WHERE id = %s
        """
        await execute_query(query, (import_id,))
        logger.info("Import complete", import_id=import_id)

    @classmethod
    async def mark_failed(cls, import_id: str) -> None:
        query = "UPDATE social_graph_imports SET status = 'failed' WHERE id = %s"
        await execute_query(query, (import_id,))
        logger.warning("Import failed", import_id=import_id)

    @classmethod
    async def totals_for_user(cls, user_id: str) -> dict[str, int]:
        """Import count and summed account counters across all of a user's imports."""
        query = """
            SELECT COUNT(*) AS total_imports,
                   COALESCE(SUM(total_accounts), 0) AS total_accounts,
                   COALESCE(SUM(matched_accounts), 0) AS total_matched
            FROM social_graph_imports
            WHERE user_id = %s
        """
        row = await fetch_one(query, (user_id,)) or {}
        return {
            "total_imports": int(row.get("total_imports") or 0),
            "total_accounts": int(row.get("total_accounts") or 0),
            "total_matched": int(row.get("total_matched") or 0),
        }
