"""
Twitter / X API v2 client.

Turns API responses into SourceProfile objects. Following-list calls use
the importing user's access token and are never cached; handle lookups use
the app bearer token and go through the response cache.
"""

import json
import re

from app.features.social_graph.clients.fetcher import CachedFetcher, FetchError
from app.features.social_graph.domain import (
    BookSignals,
    SourceFollowingPage,
    SourceProfile,
)
from app.infrastructure.observability.logging import get_logger
from app.services.rate_limiter import LocalSlidingWindowLimiter

logger = get_logger(__name__)

USER_FIELDS = "description,profile_image_url,url,public_metrics,entities"
MAX_RESULTS_PER_PAGE = 1000

# Following endpoint allows 15 calls per 15 minute window per user token
RATE_LIMIT_WINDOW_SECONDS = 15 * 60
MAX_REQUESTS_PER_WINDOW = 15

BOOK_KEYWORDS = [
    "reader",
    "reading",
    "bookworm",
    "bibliophile",
    "books",
    "author",
    "writer",
    "novelist",
    "booklover",
    "bookish",
    "tbr",
    "goodreads",
    "bookstagram",
    "booktok",
    "booktwitter",
    "amreading",
    "currentlyreading",
    "bookclub",
    "literary",
    "fiction",
    "nonfiction",
    "memoir",
]

GOODREADS_LINK_MARKERS = (
    "goodreads.com/user/",
    "goodreads.com/author/",
    "goodreads.com/review/",
)


class TwitterClientError(Exception):
    """Raised when the Twitter client is misconfigured or gets malformed data."""


PROFILE_URL_PATTERN = re.compile(r"(?:twitter\.com|x\.com)/(@?\w+)", re.IGNORECASE)


def parse_source_handle(value: str) -> str:
    """
    Extract a handle from a profile URL (twitter.com or x.com) or a bare
    @handle. Returns an empty string when nothing usable is left.
    """
    value = value.strip()
    match = PROFILE_URL_PATTERN.search(value)
    if match:
        value = match.group(1)
    return value.lstrip("@").strip()


def profile_from_api(data: dict) -> SourceProfile:
    """Build a SourceProfile from a v2 user object."""
    entities = data.get("entities") or {}
    urls: list[str] = []
    for section in ("url", "description"):
        for entry in (entities.get(section) or {}).get("urls") or []:
            expanded = entry.get("expanded_url") or entry.get("url")
            if expanded:
                urls.append(expanded)

    return SourceProfile(
        id=str(data["id"]),
        display_name=data.get("name") or "",
        handle=data.get("username") or "",
        bio=data.get("description") or None,
        linked_urls=tuple(urls),
        profile_image_url=data.get("profile_image_url"),
    )


def parse_book_signals(profile: SourceProfile) -> BookSignals:
    """Detect Goodreads links and bookish keywords on a profile."""
    bio = (profile.bio or "").lower()

    goodreads_url = next(
        (
            url
            for url in profile.linked_urls
            if any(marker in url for marker in GOODREADS_LINK_MARKERS)
        ),
        None,
    )
    keywords = [keyword for keyword in BOOK_KEYWORDS if keyword in bio]

    return BookSignals(
        has_goodreads_link=goodreads_url is not None,
        goodreads_url=goodreads_url,
        is_bookish=bool(keywords) or goodreads_url is not None,
        book_keywords=keywords,
    )


class TwitterClient:
    """Source account client backed by the Twitter API."""

    def __init__(
        self,
        fetcher: CachedFetcher,
        *,
        api_base: str,
        bearer_token: str | None = None,
        window_limiter: LocalSlidingWindowLimiter | None = None,
    ):
        self.fetcher = fetcher
        self.api_base = api_base.rstrip("/")
        self.bearer_token = bearer_token
        self.window_limiter = window_limiter or LocalSlidingWindowLimiter(
            MAX_REQUESTS_PER_WINDOW, RATE_LIMIT_WINDOW_SECONDS, name="twitter_following"
        )

    @staticmethod
    def _auth_headers(token: str) -> dict[str, str]:
        return {"Authorization": f"Bearer {token}", "Accept": "application/json"}

    async def fetch_following_page(
        self,
        account_id: str,
        access_token: str,
        pagination_token: str | None = None,
    ) -> SourceFollowingPage:
        await self.window_limiter.acquire()

        params = {"max_results": str(MAX_RESULTS_PER_PAGE), "user.fields": USER_FIELDS}
        if pagination_token:
            params["pagination_token"] = pagination_token

        body = await self.fetcher.fetch(
            None,
            f"{self.api_base}/users/{account_id}/following",
            headers=self._auth_headers(access_token),
            params=params,
        )

        try:
            payload = json.loads(body)
        except ValueError as e:
            raise TwitterClientError(f"Invalid following response: {e}") from e

        profiles = [profile_from_api(user) for user in payload.get("data") or []]
        next_token = (payload.get("meta") or {}).get("next_token")
        return SourceFollowingPage(profiles=profiles, next_token=next_token)

    async def fetch_following(self, account_id: str, access_token: str) -> list[SourceProfile]:
        """Page through the full following list of account_id."""
        profiles: list[SourceProfile] = []
        pagination_token: str | None = None
        pages = 0

        while True:
            page = await self.fetch_following_page(account_id, access_token, pagination_token)
            profiles.extend(page.profiles)
            pages += 1
            pagination_token = page.next_token
            if not pagination_token:
                break

        logger.info(
            "Fetched following list",
            account_id=account_id,
            pages=pages,
            account_count=len(profiles),
        )
        return profiles

    async def fetch_profile_by_handle(
        self, handle: str, access_token: str | None = None
    ) -> SourceProfile | None:
        token = access_token or self.bearer_token
        if not token:
            raise TwitterClientError("No Twitter bearer token available")

        handle = handle.lstrip("@")
        try:
            body = await self.fetcher.fetch(
                f"twitter:profile:{handle.lower()}",
                f"{self.api_base}/users/by/username/{handle}",
                headers=self._auth_headers(token),
                params={"user.fields": USER_FIELDS},
            )
        except FetchError as e:
            if e.status_code == 404:
                return None
            raise

        data = json.loads(body).get("data")
        return profile_from_api(data) if data else None
