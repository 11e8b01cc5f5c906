from datetime import UTC, datetime
from types import SimpleNamespace
from unittest.mock import AsyncMock

import pytest
from fastapi.testclient import TestClient

from app.features.social_graph.clients.fetcher import FetchError
from app.features.social_graph.clients.twitter_client import TwitterClientError
from app.features.social_graph.domain import BookSignals, Match, SocialImport
from app.features.social_graph.services.insights_service import ImportStats, TrendingBook
from app.features.social_graph.services.lookup_service import LookupResult
from app.main import app

ROUTER = "app.features.social_graph.api.router"


@pytest.fixture
def client(apply_auth_override, monkeypatch):
    apply_auth_override(app)
    dispatcher = AsyncMock()
    monkeypatch.setattr(
        app.state, "job_context", SimpleNamespace(dispatcher=dispatcher), raising=False
    )
    yield TestClient(app)
    app.dependency_overrides.clear()


def _import(**overrides) -> SocialImport:
    fields = {
        "id": "imp-1",
        "user_id": "user-123",
        "source_account_id": "me",
        "source_handle": "janedoe",
        "status": "complete",
        "total_accounts": 10,
        "matched_accounts": 4,
        "created_at": datetime(2024, 6, 1, tzinfo=UTC),
        "last_refreshed_at": None,
    }
    fields.update(overrides)
    return SocialImport(**fields)


def _feed_row(row_id: int) -> dict:
    return {
        "id": row_id,
        "connection_id": "conn-1",
        "activity_type": "currently_reading",
        "book_id": "101",
        "book_title": "Dune",
        "book_author": "Frank Herbert",
        "book_cover_url": None,
        "rating": None,
        "review_snippet": None,
        "activity_date": datetime(2024, 6, 1, tzinfo=UTC),
        "source_handle": "janedoe",
        "source_display_name": "Jane Doe",
        "source_profile_url": "https://x.com/janedoe",
        "goodreads_user_id": "900",
    }


def test_start_import_enqueues_job(client, monkeypatch):
    create = AsyncMock(return_value=_import(status="pending"))
    monkeypatch.setattr(f"{ROUTER}.ImportRepository.create", create)

    response = client.post(
        "/imports", json={"source_account_id": "me", "access_token": "token"}
    )

    assert response.status_code == 202
    assert response.json()["import_id"] == "imp-1"
    create.assert_awaited_once_with("user-123", "me", None)
    kind, payload = app.state.job_context.dispatcher.enqueue.await_args.args
    assert kind == "import"
    assert payload.access_token == "token"


def test_import_status_includes_breakdown(client, monkeypatch):
    monkeypatch.setattr(
        f"{ROUTER}.ImportRepository.get_for_user", AsyncMock(return_value=_import())
    )
    monkeypatch.setattr(
        f"{ROUTER}.ConnectionRepository.confidence_breakdown",
        AsyncMock(
            return_value={
                "high_confidence": 2,
                "medium_confidence": 1,
                "low_confidence": 1,
                "unmatched": 6,
            }
        ),
    )

    response = client.get("/imports/imp-1/status")

    assert response.status_code == 200
    data = response.json()
    assert data["matched_accounts"] == 4
    assert data["breakdown"]["unmatched"] == 6


def test_import_status_for_other_user_is_404(client, monkeypatch):
    monkeypatch.setattr(f"{ROUTER}.ImportRepository.get_for_user", AsyncMock(return_value=None))

    assert client.get("/imports/imp-9/status").status_code == 404


def test_feed_paginates_and_caps_limit(client, monkeypatch):
    list_for_user = AsyncMock(return_value=([_feed_row(1), _feed_row(2)], 120))
    monkeypatch.setattr(f"{ROUTER}.FeedRepository.list_for_user", list_for_user)

    response = client.get("/feed", params={"page": 2, "limit": 500, "activity_type": "read"})

    assert response.status_code == 200
    data = response.json()
    assert data["limit"] == 50
    assert data["has_more"] is True
    assert data["items"][0]["person"]["target_user_id"] == "900"
    kwargs = list_for_user.await_args.kwargs
    assert kwargs["offset"] == 50
    assert kwargs["activity_type"] == "read"
    assert kwargs["since"] is None


def test_feed_time_range_sets_since(client, monkeypatch):
    list_for_user = AsyncMock(return_value=([], 0))
    monkeypatch.setattr(f"{ROUTER}.FeedRepository.list_for_user", list_for_user)

    response = client.get("/feed", params={"time_range": "week"})

    assert response.json()["has_more"] is False
    assert list_for_user.await_args.kwargs["since"] is not None


def test_connection_reject(client, monkeypatch, make_connection):
    connection = make_connection(target_user_id="900")
    monkeypatch.setattr(
        f"{ROUTER}.ConnectionRepository.get_for_user", AsyncMock(return_value=connection)
    )
    reject = AsyncMock(return_value="rejected")
    monkeypatch.setattr(f"{ROUTER}.reject_connection", reject)

    response = client.patch("/connections/conn-1", json={"action": "reject"})

    assert response.json() == {"status": "rejected"}
    reject.assert_awaited_once_with(connection)


def test_manual_link_without_target_is_400(client, monkeypatch, make_connection):
    monkeypatch.setattr(
        f"{ROUTER}.ConnectionRepository.get_for_user",
        AsyncMock(return_value=make_connection()),
    )

    response = client.patch("/connections/conn-1", json={"action": "manual_link"})

    assert response.status_code == 400


def test_unknown_connection_is_404(client, monkeypatch):
    monkeypatch.setattr(f"{ROUTER}.ConnectionRepository.get_for_user", AsyncMock(return_value=None))

    response = client.patch("/connections/missing", json={"action": "confirm"})

    assert response.status_code == 404


def test_lookup_returns_match(client, monkeypatch, make_profile):
    result = LookupResult(
        source_profile=make_profile(),
        book_signals=BookSignals(
            has_goodreads_link=False, goodreads_url=None, is_bookish=True, book_keywords=["reader"]
        ),
        match=Match("900", 0.6, "fuzzy_name"),
    )
    monkeypatch.setattr(f"{ROUTER}.lookup_handle", AsyncMock(return_value=result))

    response = client.get("/lookup/janedoe")

    assert response.status_code == 200
    data = response.json()
    assert data["match"] == {"target_user_id": "900", "confidence": 0.6, "method": "fuzzy_name"}
    assert data["source_profile"]["handle"] == "janedoe"


def test_lookup_unknown_handle_is_404(client, monkeypatch):
    monkeypatch.setattr(f"{ROUTER}.lookup_handle", AsyncMock(return_value=None))

    assert client.get("/lookup/ghost").status_code == 404


def test_lookup_without_twitter_token_is_502(client, monkeypatch):
    monkeypatch.setattr(
        f"{ROUTER}.lookup_handle",
        AsyncMock(side_effect=TwitterClientError("No Twitter bearer token available")),
    )

    response = client.get("/lookup/janedoe")

    assert response.status_code == 502
    assert response.json()["detail"] == "Lookup failed"


def test_lookup_upstream_failure_is_502(client, monkeypatch):
    monkeypatch.setattr(
        f"{ROUTER}.lookup_handle",
        AsyncMock(side_effect=FetchError("boom", url="https://api.twitter.com", status_code=500)),
    )

    assert client.get("/lookup/janedoe").status_code == 502


def _source_client(profile=None, bearer_token="app-token", **kwargs):
    source_client = AsyncMock()
    source_client.bearer_token = bearer_token
    source_client.fetch_profile_by_handle = AsyncMock(return_value=profile, **kwargs)
    return source_client


@pytest.mark.parametrize(
    "profile_url",
    [
        "https://twitter.com/JaneDoe",
        "https://x.com/@JaneDoe/status/1",
        "@JaneDoe",
        "JaneDoe",
    ],
)
def test_import_from_profile_url_enqueues_job(client, monkeypatch, make_profile, profile_url):
    profile = make_profile(id="tw-9", handle="JaneDoe", profile_image_url="https://img/1.jpg")
    source_client = _source_client(profile)
    app.state.job_context.source_client = source_client
    create = AsyncMock(return_value=_import(status="pending"))
    monkeypatch.setattr(f"{ROUTER}.ImportRepository.create", create)

    response = client.post("/imports/lookup", json={"profile_url": profile_url})

    assert response.status_code == 202
    assert response.json() == {
        "import_id": "imp-1",
        "profile": {
            "id": "tw-9",
            "username": "JaneDoe",
            "name": "Jane Doe",
            "profile_image_url": "https://img/1.jpg",
        },
        "status": "pending",
    }
    source_client.fetch_profile_by_handle.assert_awaited_once_with("JaneDoe", "app-token")
    create.assert_awaited_once_with("user-123", "tw-9", "JaneDoe")
    kind, payload = app.state.job_context.dispatcher.enqueue.await_args.args
    assert kind == "import"
    assert payload.source_account_id == "tw-9"
    assert payload.access_token == "app-token"


def test_import_from_profile_prefers_caller_token(client, monkeypatch, make_profile):
    source_client = _source_client(make_profile())
    app.state.job_context.source_client = source_client
    monkeypatch.setattr(
        f"{ROUTER}.ImportRepository.create", AsyncMock(return_value=_import(status="pending"))
    )

    response = client.post(
        "/imports/lookup", json={"profile_url": "@janedoe", "access_token": "user-token"}
    )

    assert response.status_code == 202
    source_client.fetch_profile_by_handle.assert_awaited_once_with("janedoe", "user-token")
    _, payload = app.state.job_context.dispatcher.enqueue.await_args.args
    assert payload.access_token == "user-token"


@pytest.mark.parametrize("profile_url", ["@", "   @  "])
def test_import_from_profile_rejects_empty_handle(client, profile_url):
    app.state.job_context.source_client = _source_client()

    response = client.post("/imports/lookup", json={"profile_url": profile_url})

    assert response.status_code == 400
    app.state.job_context.dispatcher.enqueue.assert_not_awaited()


def test_import_from_profile_without_any_token_is_400(client):
    app.state.job_context.source_client = _source_client(bearer_token=None)

    response = client.post("/imports/lookup", json={"profile_url": "janedoe"})

    assert response.status_code == 400


def test_import_from_unknown_profile_is_404(client, monkeypatch):
    create = AsyncMock()
    monkeypatch.setattr(f"{ROUTER}.ImportRepository.create", create)
    app.state.job_context.source_client = _source_client(None)

    response = client.post("/imports/lookup", json={"profile_url": "https://x.com/ghost"})

    assert response.status_code == 404
    create.assert_not_awaited()


def test_import_from_profile_upstream_failure_is_502(client):
    app.state.job_context.source_client = _source_client(
        side_effect=FetchError("boom", url="https://api.twitter.com", status_code=503)
    )

    response = client.post("/imports/lookup", json={"profile_url": "janedoe"})

    assert response.status_code == 502


def test_trending_books(client, monkeypatch):
    books = [
        TrendingBook("101", "Dune", "Frank Herbert", None, interaction_count=3, avg_rating=4.3),
        TrendingBook("202", "Emma", "Jane Austen", None, interaction_count=2, avg_rating=None),
    ]
    get_trending = AsyncMock(return_value=books)
    monkeypatch.setattr(f"{ROUTER}.get_trending", get_trending)

    response = client.get("/feed/trending")

    assert response.status_code == 200
    data = response.json()["books"]
    assert [book["book"]["id"] for book in data] == ["101", "202"]
    assert data[0]["interaction_count"] == 3
    assert data[0]["avg_rating"] == 4.3
    assert data[1]["avg_rating"] is None
    get_trending.assert_awaited_once_with("user-123")


def test_stats(client, monkeypatch):
    stats = ImportStats(
        total_imports=2,
        total_accounts=40,
        total_matched=10,
        match_rate=25,
        total_feed_items=55,
        unique_books=30,
    )
    monkeypatch.setattr(f"{ROUTER}.get_stats", AsyncMock(return_value=stats))

    response = client.get("/stats")

    assert response.status_code == 200
    assert response.json() == {
        "total_imports": 2,
        "total_accounts": 40,
        "total_matched": 10,
        "match_rate": 25,
        "total_feed_items": 55,
        "unique_books": 30,
    }


def test_routes_require_auth():
    assert TestClient(app).get("/feed").status_code in (401, 403)
