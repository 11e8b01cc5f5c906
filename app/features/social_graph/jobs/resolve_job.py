"""
Resolve job: match one stored connection to a reading-platform user.
"""

import re
from typing import TYPE_CHECKING

from app.features.social_graph.domain import SocialConnection, SourceProfile
from app.features.social_graph.jobs.payloads import ActivityJobPayload, ResolveJobPayload
from app.features.social_graph.repository.connection_repository import ConnectionRepository
from app.infrastructure.observability.logging import get_logger

if TYPE_CHECKING:
    from app.features.social_graph.context import JobContext

logger = get_logger(__name__)

URL_PATTERN = re.compile(r"https?://\S+")


def profile_from_connection(connection: SocialConnection) -> SourceProfile:
    """Rebuild the source profile from stored fields; links are re-parsed from the bio."""
    bio = connection.source_bio or None
    return SourceProfile(
        id=connection.source_user_id,
        display_name=connection.source_display_name or "",
        handle=connection.source_handle or "",
        bio=bio,
        linked_urls=tuple(URL_PATTERN.findall(bio)) if bio else (),
    )


async def process_resolve_job(payload: ResolveJobPayload, context: "JobContext") -> None:
    connection = await ConnectionRepository.get(payload.connection_id)
    if connection is None:
        logger.warning("Connection not found, skipping resolve", connection_id=payload.connection_id)
        return

    match = await context.pipeline.resolve(profile_from_connection(connection))
    if match is None:
        logger.debug("Connection unresolved", connection_id=connection.id)
        return

    newly_matched = await ConnectionRepository.set_match(connection.id, match)
    logger.info(
        "Connection matched",
        connection_id=connection.id,
        import_id=payload.import_id,
        method=match.method,
        confidence=match.confidence,
        newly_matched=newly_matched,
    )
    await context.dispatcher.enqueue(
        "activity",
        ActivityJobPayload(connection_id=connection.id, target_user_id=match.target_user_id),
    )


async def run_resolve(data: dict, context: "JobContext") -> None:
    await process_resolve_job(ResolveJobPayload.model_validate(data), context)
