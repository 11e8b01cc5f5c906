from datetime import UTC, datetime
from unittest.mock import AsyncMock

import pytest

from app.features.social_graph.domain import FeedItem, Match
from app.features.social_graph.repository.connection_repository import ConnectionRepository
from app.features.social_graph.repository.feed_repository import FeedRepository
from app.features.social_graph.repository.import_repository import ImportRepository

REPOSITORY = "app.features.social_graph.repository"
READ_ON = datetime(2024, 3, 3, tzinfo=UTC)


def _normalized(sql: str) -> str:
    return " ".join(sql.split())


def _feed_item(**overrides) -> FeedItem:
    fields = {
        "connection_id": "conn-1",
        "target_user_id": "900",
        "activity_type": "rating",
        "book_id": "101",
        "book_title": "Dune",
        "book_author": "Frank Herbert",
        "activity_date": READ_ON,
        "book_cover_url": None,
        "rating": 5,
    }
    fields.update(overrides)
    return FeedItem(**fields)


@pytest.mark.asyncio
async def test_insert_item_ignores_duplicate_natural_key(monkeypatch):
    execute_query = AsyncMock(side_effect=[1, 0])
    monkeypatch.setattr(f"{REPOSITORY}.feed_repository.execute_query", execute_query)

    first = await FeedRepository.insert_item(_feed_item())
    second = await FeedRepository.insert_item(_feed_item())

    assert (first, second) == (True, False)
    query, params = execute_query.await_args_list[0].args
    assert (
        "ON CONFLICT (connection_id, book_id, activity_type, activity_date) DO NOTHING"
        in _normalized(query)
    )
    assert params == (
        "conn-1",
        "900",
        "rating",
        "101",
        "Dune",
        "Frank Herbert",
        None,
        5,
        None,
        READ_ON,
    )


@pytest.mark.asyncio
async def test_set_match_counts_only_previously_unmatched(monkeypatch):
    fetch_one = AsyncMock(side_effect=[{"counted": True}, {"counted": False}])
    monkeypatch.setattr(f"{REPOSITORY}.connection_repository.fetch_one", fetch_one)
    match = Match("900", 0.95, "linked_url")

    assert await ConnectionRepository.set_match("conn-1", match) is True
    assert await ConnectionRepository.set_match("conn-1", match) is False

    query, params = fetch_one.await_args.args
    sql = _normalized(query)
    assert "FOR UPDATE" in sql
    assert "(prev.goodreads_user_id IS NULL) AS counted" in sql
    assert "SET matched_accounts = i.matched_accounts + 1" in sql
    assert "WHERE i.id = updated.import_id AND updated.counted" in sql
    assert params == ("conn-1", "900", 0.95, "linked_url")


@pytest.mark.asyncio
async def test_set_verified_link_flags_connection(monkeypatch):
    fetch_one = AsyncMock(return_value={"counted": True})
    monkeypatch.setattr(f"{REPOSITORY}.connection_repository.fetch_one", fetch_one)

    assert await ConnectionRepository.set_verified_link("conn-1", Match("77", 1.0, "manual"))

    query, params = fetch_one.await_args.args
    assert "verified_by_user = true" in _normalized(query)
    assert params == ("conn-1", "77", 1.0, "manual")


@pytest.mark.asyncio
async def test_clear_match_decrement_is_floored_at_zero(monkeypatch):
    fetch_one = AsyncMock(side_effect=[{"counted": True}, {"counted": False}])
    monkeypatch.setattr(f"{REPOSITORY}.connection_repository.fetch_one", fetch_one)

    assert await ConnectionRepository.clear_match("conn-1") is True
    assert await ConnectionRepository.clear_match("conn-1") is False

    query, params = fetch_one.await_args.args
    sql = _normalized(query)
    assert "FOR UPDATE" in sql
    assert "(prev.goodreads_user_id IS NOT NULL) AS counted" in sql
    assert "SET matched_accounts = GREATEST(i.matched_accounts - 1, 0)" in sql
    assert "goodreads_user_id = NULL" in sql
    assert params == ("conn-1",)


@pytest.mark.asyncio
async def test_missing_connection_is_not_counted(monkeypatch):
    monkeypatch.setattr(
        f"{REPOSITORY}.connection_repository.fetch_one", AsyncMock(return_value=None)
    )

    assert await ConnectionRepository.clear_match("missing") is False


@pytest.mark.asyncio
async def test_trending_query_groups_by_book_over_matched_connections(monkeypatch):
    fetch_all = AsyncMock(return_value=[])
    monkeypatch.setattr(f"{REPOSITORY}.feed_repository.fetch_all", fetch_all)
    since = datetime(2024, 5, 31, tzinfo=UTC)

    await FeedRepository.trending_for_user("user-123", since, min_connections=2, limit=10)

    query, params = fetch_all.await_args.args
    sql = _normalized(query)
    assert "c.goodreads_user_id IS NOT NULL" in sql
    assert "f.activity_date >= %s" in sql
    assert "HAVING COUNT(DISTINCT f.connection_id) >= %s" in sql
    assert "ORDER BY interaction_count DESC" in sql
    assert params == ("user-123", since, 2, 10)


@pytest.mark.asyncio
async def test_totals_default_to_zero_without_rows(monkeypatch):
    monkeypatch.setattr(f"{REPOSITORY}.import_repository.fetch_one", AsyncMock(return_value=None))
    feed_fetch_one = AsyncMock(return_value={"total_items": 4, "unique_books": 3})
    monkeypatch.setattr(f"{REPOSITORY}.feed_repository.fetch_one", feed_fetch_one)

    assert await ImportRepository.totals_for_user("user-123") == {
        "total_imports": 0,
        "total_accounts": 0,
        "total_matched": 0,
    }
    assert await FeedRepository.totals_for_user("user-123") == {
        "total_items": 4,
        "unique_books": 3,
    }
    query, params = feed_fetch_one.await_args.args
    assert "COUNT(DISTINCT f.book_id) AS unique_books" in _normalized(query)
    assert params == ("user-123",)
