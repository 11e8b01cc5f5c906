"""
User actions on a connection: confirm, reject, manual link.

Ownership is checked by the caller (the router loads the connection with
ConnectionRepository.get_for_user). The import's matched_accounts moves in
the same statement as the connection's match fields.
"""

from app.features.social_graph.domain import Match, SocialConnection
from app.features.social_graph.jobs.payloads import ActivityJobPayload
from app.features.social_graph.repository.connection_repository import ConnectionRepository
from app.features.social_graph.repository.resolution_cache_repository import (
    ResolutionCacheRepository,
)
from app.infrastructure.observability.logging import get_logger
from app.jobs.queue import JobDispatcher

logger = get_logger(__name__)

USER_ASSERTED_CONFIDENCE = 1.0


class ConnectionActionError(Exception):
    """Raised when an action cannot be applied to a connection."""

    def __init__(self, message: str, operation: str | None = None, recoverable: bool = False):
        super().__init__(message)
        self.operation = operation
        self.recoverable = recoverable


async def confirm_connection(connection: SocialConnection) -> str:
    """Mark the current match verified and pin it in the cache at full confidence."""
    await ConnectionRepository.mark_verified(connection.id)

    if connection.target_user_id:
        await ResolutionCacheRepository.upsert_entry(
            connection.source_platform,
            connection.source_user_id,
            Match(
                target_user_id=connection.target_user_id,
                confidence=USER_ASSERTED_CONFIDENCE,
                method=connection.match_method or "manual",
            ),
        )

    logger.info("Connection confirmed", connection_id=connection.id)
    return "confirmed"


async def reject_connection(connection: SocialConnection) -> str:
    """Clear the match. The import's matched counter only drops if there was a match."""
    was_matched = await ConnectionRepository.clear_match(connection.id)

    logger.info("Connection rejected", connection_id=connection.id, was_matched=was_matched)
    return "rejected"


async def manual_link_connection(
    connection: SocialConnection, target_user_id: str | None, dispatcher: JobDispatcher
) -> str:
    """Link the connection to a user-supplied reading-platform id and fetch its activity."""
    target_user_id = (target_user_id or "").strip()
    if not target_user_id:
        raise ConnectionActionError(
            "target_user_id is required for manual linking", operation="manual_link"
        )

    match = Match(
        target_user_id=target_user_id,
        confidence=USER_ASSERTED_CONFIDENCE,
        method="manual",
    )
    newly_matched = await ConnectionRepository.set_verified_link(connection.id, match)
    await ResolutionCacheRepository.upsert_entry(
        connection.source_platform, connection.source_user_id, match
    )

    await dispatcher.enqueue(
        "activity",
        ActivityJobPayload(connection_id=connection.id, target_user_id=target_user_id),
    )

    logger.info(
        "Connection manually linked",
        connection_id=connection.id,
        target_user_id=target_user_id,
        newly_matched=newly_matched,
    )
    return "linked"
