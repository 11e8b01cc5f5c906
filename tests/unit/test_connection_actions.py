from types import SimpleNamespace
from unittest.mock import AsyncMock

import pytest

from app.features.social_graph.domain import Match
from app.features.social_graph.jobs.payloads import ActivityJobPayload
from app.features.social_graph.services.connection_actions import (
    ConnectionActionError,
    confirm_connection,
    manual_link_connection,
    reject_connection,
)

MODULE = "app.features.social_graph.services.connection_actions"


@pytest.fixture
def repos(monkeypatch):
    mocks = SimpleNamespace(
        mark_verified=AsyncMock(),
        clear_match=AsyncMock(return_value=True),
        set_verified_link=AsyncMock(return_value=True),
        upsert_entry=AsyncMock(),
    )
    for name in ("mark_verified", "clear_match", "set_verified_link"):
        monkeypatch.setattr(f"{MODULE}.ConnectionRepository.{name}", getattr(mocks, name))
    monkeypatch.setattr(f"{MODULE}.ResolutionCacheRepository.upsert_entry", mocks.upsert_entry)
    return mocks


def _matched(make_connection, **overrides):
    fields = {"target_user_id": "900", "match_confidence": 0.6, "match_method": "fuzzy_name"}
    fields.update(overrides)
    return make_connection(**fields)


@pytest.mark.asyncio
async def test_confirm_pins_match_at_full_confidence(repos, make_connection):
    result = await confirm_connection(_matched(make_connection))

    assert result == "confirmed"
    repos.mark_verified.assert_awaited_once_with("conn-1")
    repos.upsert_entry.assert_awaited_once_with(
        "twitter", "tw-1", Match("900", 1.0, "fuzzy_name")
    )


@pytest.mark.asyncio
async def test_confirm_unmatched_connection_skips_cache(repos, make_connection):
    await confirm_connection(make_connection())

    repos.mark_verified.assert_awaited_once_with("conn-1")
    repos.upsert_entry.assert_not_awaited()


@pytest.mark.asyncio
async def test_reject_clears_match(repos, make_connection):
    result = await reject_connection(_matched(make_connection))

    assert result == "rejected"
    repos.clear_match.assert_awaited_once_with("conn-1")


@pytest.mark.asyncio
async def test_reject_twice_is_harmless(repos, make_connection):
    repos.clear_match.side_effect = [True, False]
    connection = _matched(make_connection)

    assert await reject_connection(connection) == "rejected"
    assert await reject_connection(connection) == "rejected"
    assert repos.clear_match.await_count == 2


@pytest.mark.asyncio
async def test_manual_link_stores_match_and_enqueues_activity(repos, make_connection):
    dispatcher = AsyncMock()

    result = await manual_link_connection(make_connection(), " 4821 ", dispatcher)

    match = Match("4821", 1.0, "manual")
    assert result == "linked"
    repos.set_verified_link.assert_awaited_once_with("conn-1", match)
    repos.upsert_entry.assert_awaited_once_with("twitter", "tw-1", match)
    dispatcher.enqueue.assert_awaited_once_with(
        "activity", ActivityJobPayload(connection_id="conn-1", target_user_id="4821")
    )


@pytest.mark.asyncio
async def test_manual_relink_of_matched_connection(repos, make_connection):
    repos.set_verified_link.return_value = False
    dispatcher = AsyncMock()

    assert await manual_link_connection(_matched(make_connection), "4821", dispatcher) == "linked"
    dispatcher.enqueue.assert_awaited_once()


@pytest.mark.asyncio
@pytest.mark.parametrize("target_user_id", [None, "", "   "])
async def test_manual_link_requires_target(repos, make_connection, target_user_id):
    dispatcher = AsyncMock()

    with pytest.raises(ConnectionActionError) as exc_info:
        await manual_link_connection(make_connection(), target_user_id, dispatcher)

    assert exc_info.value.operation == "manual_link"
    repos.set_verified_link.assert_not_awaited()
    dispatcher.enqueue.assert_not_awaited()
