"""
On-demand lookup of a single handle: source profile, book signals, the
resolved reading profile and a sample of its shelves.
"""

from dataclasses import dataclass, field

from app.features.social_graph.clients.twitter_client import parse_book_signals
from app.features.social_graph.domain import (
    BookSignals,
    Match,
    ReadingBook,
    ReadingProfile,
    SourceProfile,
)
from app.infrastructure.observability.logging import get_logger

logger = get_logger(__name__)

CURRENTLY_READING_SAMPLE = 5
RECENT_READS_SAMPLE = 10


@dataclass(slots=True)
class LookupResult:
    source_profile: SourceProfile
    book_signals: BookSignals
    match: Match | None = None
    reading_profile: ReadingProfile | None = None
    currently_reading: list[ReadingBook] = field(default_factory=list)
    recent_reads: list[ReadingBook] = field(default_factory=list)


async def lookup_handle(handle: str, context, access_token: str | None = None) -> LookupResult | None:
    """Returns None when the source profile does not exist."""
    profile = await context.source_client.fetch_profile_by_handle(handle, access_token)
    if profile is None:
        return None

    result = LookupResult(source_profile=profile, book_signals=parse_book_signals(profile))

    match = await context.pipeline.resolve(profile)
    if match is None:
        logger.info("Lookup found no reading profile", handle=profile.handle)
        return result

    client = context.reading_client
    result.match = match
    result.reading_profile = await client.fetch_profile(match.target_user_id)
    currently_reading = await client.fetch_shelf(match.target_user_id, "currently-reading")
    recent_reads = await client.fetch_shelf(match.target_user_id, "read")
    result.currently_reading = currently_reading[:CURRENTLY_READING_SAMPLE]
    result.recent_reads = recent_reads[:RECENT_READS_SAMPLE]

    logger.info(
        "Lookup resolved",
        handle=profile.handle,
        target_user_id=match.target_user_id,
        method=match.method,
    )
    return result
