from datetime import UTC, datetime
from types import SimpleNamespace
from unittest.mock import AsyncMock

import pytest

from app.features.social_graph.domain import ReadingActivity, ReadingBook
from app.features.social_graph.jobs.activity_job import build_feed_items, process_activity_job
from app.features.social_graph.jobs.payloads import ActivityJobPayload

ADDED_ON = datetime(2024, 6, 1, tzinfo=UTC)


def _book(book_id: str, **fields) -> ReadingBook:
    return ReadingBook(id=book_id, title=f"Book {book_id}", author="Author", **fields)


def test_read_shelf_entries_split_into_rating_and_read():
    read_on = datetime(2024, 3, 3, tzinfo=UTC)

    items = build_feed_items(
        "conn-1",
        "900",
        [],
        [
            _book("1", user_rating=5, date_read=read_on),
            _book("2", user_rating=0, date_added=ADDED_ON),
        ],
        [],
    )

    assert [(item.activity_type, item.rating) for item in items] == [
        ("rating", 5),
        ("read", None),
    ]
    assert items[0].activity_date == read_on
    assert items[1].activity_date == ADDED_ON


def test_undated_shelf_entries_are_skipped():
    read_on = datetime(2024, 3, 3, tzinfo=UTC)

    items = build_feed_items(
        "conn-1",
        "900",
        [_book("7")],
        [_book("1", user_rating=5, date_read=read_on), _book("2", user_rating=3)],
        [],
    )

    assert [item.book_id for item in items] == ["1"]
    assert items[0].activity_date == read_on


def test_currently_reading_uses_date_added():
    added = datetime(2024, 5, 20, tzinfo=UTC)

    items = build_feed_items("conn-1", "900", [_book("7", date_added=added)], [], [])

    assert items[0].activity_type == "currently_reading"
    assert items[0].activity_date == added
    assert items[0].target_user_id == "900"


def test_read_shelf_is_capped():
    read_shelf = [_book(str(i), date_added=ADDED_ON) for i in range(30)]

    items = build_feed_items("conn-1", "900", [], read_shelf, [], read_shelf_limit=20)

    assert len(items) == 20
    assert items[-1].book_id == "19"


def test_only_review_activities_are_added():
    when = datetime(2024, 3, 5, 10, tzinfo=UTC)
    activities = [
        ReadingActivity(type="review", book=_book("1"), date=when, rating=4, review_snippet="Great"),
        ReadingActivity(type="rating", book=_book("2"), date=when, rating=3),
        ReadingActivity(type="shelved", book=_book("3"), date=when),
    ]

    items = build_feed_items("conn-1", "900", [], [], activities)

    assert len(items) == 1
    assert items[0].activity_type == "review"
    assert items[0].review_snippet == "Great"
    assert items[0].rating == 4
    assert items[0].activity_date == when


@pytest.mark.asyncio
async def test_process_activity_job_inserts_items(monkeypatch):
    insert_item = AsyncMock(side_effect=[True, False])
    monkeypatch.setattr(
        "app.features.social_graph.jobs.activity_job.FeedRepository.insert_item", insert_item
    )

    client = AsyncMock()
    client.fetch_shelf.side_effect = [
        [_book("1", date_added=ADDED_ON)],
        [_book("2", user_rating=4, date_read=ADDED_ON)],
    ]
    client.fetch_recent_activity.return_value = []
    context = SimpleNamespace(reading_client=client, read_shelf_limit=20)

    await process_activity_job(
        ActivityJobPayload(connection_id="conn-1", target_user_id="900"), context
    )

    assert [c.args for c in client.fetch_shelf.await_args_list] == [
        ("900", "currently-reading"),
        ("900", "read"),
    ]
    client.fetch_recent_activity.assert_awaited_once_with("900")
    inserted = [c.args[0] for c in insert_item.await_args_list]
    assert [(item.book_id, item.activity_type) for item in inserted] == [
        ("1", "currently_reading"),
        ("2", "rating"),
    ]
