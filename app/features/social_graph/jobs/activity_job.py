"""
Activity job: harvest a matched user's reading activity into the feed.

Feed inserts are idempotent, so rerunning the job (retry, refresh, manual
relink) never duplicates items.
"""

from datetime import datetime
from typing import TYPE_CHECKING

from app.features.social_graph.domain import FeedItem, ReadingActivity, ReadingBook
from app.features.social_graph.domain.models import ActivityType
from app.features.social_graph.jobs.payloads import ActivityJobPayload
from app.features.social_graph.repository.feed_repository import FeedRepository
from app.infrastructure.observability.logging import get_logger

if TYPE_CHECKING:
    from app.features.social_graph.context import JobContext

logger = get_logger(__name__)


def activity_date_for(book: ReadingBook) -> datetime | None:
    """Date read, else date added. None when the shelf entry carries neither."""
    return book.date_read or book.date_added


def classify_read_entry(book: ReadingBook) -> ActivityType:
    return "rating" if book.user_rating and book.user_rating > 0 else "read"


def _item_from_book(
    connection_id: str,
    target_user_id: str,
    activity_type: ActivityType,
    book: ReadingBook,
    rating: int | None = None,
) -> FeedItem | None:
    activity_date = activity_date_for(book)
    if activity_date is None:
        return None
    return FeedItem(
        connection_id=connection_id,
        target_user_id=target_user_id,
        activity_type=activity_type,
        book_id=book.id,
        book_title=book.title,
        book_author=book.author,
        book_cover_url=book.cover_url,
        rating=rating,
        activity_date=activity_date,
    )


def build_feed_items(
    connection_id: str,
    target_user_id: str,
    currently_reading: list[ReadingBook],
    read_shelf: list[ReadingBook],
    recent_activity: list[ReadingActivity],
    read_shelf_limit: int = 20,
) -> list[FeedItem]:
    """Turn fetched shelves and updates into feed rows. Undated shelf entries are skipped."""
    shelf_items = [
        _item_from_book(connection_id, target_user_id, "currently_reading", book)
        for book in currently_reading
    ]

    for book in read_shelf[:read_shelf_limit]:
        shelf_items.append(
            _item_from_book(
                connection_id,
                target_user_id,
                classify_read_entry(book),
                book,
                rating=book.user_rating or None,
            )
        )

    items = [item for item in shelf_items if item is not None]

    for activity in recent_activity:
        if activity.type != "review":
            continue
        items.append(
            FeedItem(
                connection_id=connection_id,
                target_user_id=target_user_id,
                activity_type="review",
                book_id=activity.book.id,
                book_title=activity.book.title,
                book_author=activity.book.author,
                book_cover_url=activity.book.cover_url,
                rating=activity.rating or None,
                review_snippet=activity.review_snippet or None,
                activity_date=activity.date,
            )
        )

    return items


async def process_activity_job(payload: ActivityJobPayload, context: "JobContext") -> None:
    client = context.reading_client
    user_id = payload.target_user_id

    currently_reading = await client.fetch_shelf(user_id, "currently-reading")
    read_shelf = await client.fetch_shelf(user_id, "read")
    recent_activity = await client.fetch_recent_activity(user_id)

    items = build_feed_items(
        payload.connection_id,
        user_id,
        currently_reading,
        read_shelf,
        recent_activity,
        read_shelf_limit=context.read_shelf_limit,
    )

    inserted = 0
    for item in items:
        if await FeedRepository.insert_item(item):
            inserted += 1

    logger.info(
        "Reading activity stored",
        connection_id=payload.connection_id,
        target_user_id=user_id,
        candidate_items=len(items),
        inserted_items=inserted,
    )


async def run_activity(data: dict, context: "JobContext") -> None:
    await process_activity_job(ActivityJobPayload.model_validate(data), context)
