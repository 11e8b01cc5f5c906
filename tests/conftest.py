import pytest

from app.auth.verify import auth_dependency
from app.features.social_graph.domain import SocialConnection, SourceProfile


@pytest.fixture
def auth_override():
    def _override():
        return {"sub": "user-123"}

    return _override


class FakeRedis:
    def __init__(self):
        self.store: dict[str, str] = {}

    async def set_with_ttl(self, key: str, value: str, ttl_s: int | None = None) -> bool:
        self.store[key] = value
        return True

    async def get(self, key: str) -> str | None:
        return self.store.get(key)


@pytest.fixture
def fake_redis():
    return FakeRedis()


@pytest.fixture
def apply_auth_override(auth_override):
    def _apply(app):
        app.dependency_overrides[auth_dependency] = auth_override

    return _apply


@pytest.fixture
def make_profile():
    def _make(**overrides) -> SourceProfile:
        fields = {
            "id": "tw-1",
            "display_name": "Jane Doe",
            "handle": "janedoe",
            "bio": None,
            "linked_urls": (),
        }
        fields.update(overrides)
        return SourceProfile(**fields)

    return _make


@pytest.fixture
def make_connection():
    def _make(**overrides) -> SocialConnection:
        fields = {
            "id": "conn-1",
            "import_id": "imp-1",
            "source_platform": "twitter",
            "source_user_id": "tw-1",
            "source_handle": "janedoe",
            "source_display_name": "Jane Doe",
            "source_bio": None,
            "source_profile_url": "https://x.com/janedoe",
            "target_user_id": None,
            "match_confidence": 0.0,
            "match_method": None,
            "verified_by_user": False,
        }
        fields.update(overrides)
        return SocialConnection(**fields)

    return _make
