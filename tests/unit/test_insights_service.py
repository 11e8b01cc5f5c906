from datetime import UTC, datetime
from decimal import Decimal
from unittest.mock import AsyncMock

import pytest

from app.features.social_graph.services.insights_service import (
    get_stats,
    get_trending,
    match_rate,
)

SERVICE = "app.features.social_graph.services.insights_service"


@pytest.mark.asyncio
async def test_trending_uses_thirty_day_window_and_rounds_ratings(monkeypatch):
    rows = [
        {
            "book_id": "101",
            "book_title": "Dune",
            "book_author": "Frank Herbert",
            "book_cover_url": None,
            "interaction_count": 3,
            "avg_rating": Decimal("4.3333"),
        },
        {
            "book_id": "202",
            "book_title": "Emma",
            "book_author": "Jane Austen",
            "book_cover_url": None,
            "interaction_count": 2,
            "avg_rating": None,
        },
    ]
    trending_for_user = AsyncMock(return_value=rows)
    monkeypatch.setattr(f"{SERVICE}.FeedRepository.trending_for_user", trending_for_user)

    books = await get_trending("user-123", now=datetime(2024, 6, 30, tzinfo=UTC))

    trending_for_user.assert_awaited_once_with(
        "user-123", datetime(2024, 5, 31, tzinfo=UTC), min_connections=2, limit=10
    )
    assert [(book.book_id, book.interaction_count) for book in books] == [("101", 3), ("202", 2)]
    assert books[0].avg_rating == 4.3
    assert books[1].avg_rating is None


@pytest.mark.asyncio
async def test_stats_without_imports_are_all_zero(monkeypatch):
    monkeypatch.setattr(
        f"{SERVICE}.ImportRepository.totals_for_user",
        AsyncMock(return_value={"total_imports": 0, "total_accounts": 0, "total_matched": 0}),
    )
    feed_totals = AsyncMock()
    monkeypatch.setattr(f"{SERVICE}.FeedRepository.totals_for_user", feed_totals)

    stats = await get_stats("user-123")

    assert (stats.total_imports, stats.match_rate, stats.total_feed_items) == (0, 0, 0)
    feed_totals.assert_not_awaited()


@pytest.mark.asyncio
async def test_stats_combine_import_and_feed_totals(monkeypatch):
    monkeypatch.setattr(
        f"{SERVICE}.ImportRepository.totals_for_user",
        AsyncMock(return_value={"total_imports": 2, "total_accounts": 3, "total_matched": 2}),
    )
    monkeypatch.setattr(
        f"{SERVICE}.FeedRepository.totals_for_user",
        AsyncMock(return_value={"total_items": 12, "unique_books": 9}),
    )

    stats = await get_stats("user-123")

    assert stats.total_imports == 2
    assert stats.total_accounts == 3
    assert stats.total_matched == 2
    assert stats.match_rate == 67
    assert stats.total_feed_items == 12
    assert stats.unique_books == 9


@pytest.mark.parametrize(
    "matched,accounts,expected",
    [(0, 0, 0), (1, 8, 13), (1, 3, 33), (5, 5, 100), (3, 0, 0)],
)
def test_match_rate(matched, accounts, expected):
    assert match_rate(matched, accounts) == expected
