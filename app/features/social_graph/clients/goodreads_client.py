"""
Goodreads reading-platform clients.

Two interchangeable data sources implement ReadingPlatformClient:

- GoodreadsScraperClient parses the public HTML pages and the updates RSS
  feed with BeautifulSoup.
- GoodreadsApiClient reads the JSON endpoints used by the mobile app.

Both route every request through a CachedFetcher. create_reading_client()
picks one from settings.
"""

import json
import re
from datetime import UTC, datetime
from email.utils import parsedate_to_datetime
from typing import Protocol
from urllib.parse import quote

from bs4 import BeautifulSoup

from app.features.social_graph.clients.fetcher import CachedFetcher, FetchError
from app.features.social_graph.domain import (
    HandleProbe,
    ReadingActivity,
    ReadingBook,
    ReadingProfile,
    UserCandidate,
)
from app.features.social_graph.domain.models import ActivityType, ShelfKind
from app.infrastructure.observability.logging import get_logger

logger = get_logger(__name__)

API_HEADERS = {
    "User-Agent": "Goodreads/3.54.0 (iPhone; iOS 17.0; Scale/3.00)",
    "Accept": "application/json",
    "Accept-Language": "en-US",
}

USER_ID_PATTERN = re.compile(r"/user/show/(\d+)")
BOOK_ID_PATTERN = re.compile(r"/show/(\d+)")
RATED_PATTERN = re.compile(r"rated it (\d) of 5 stars")
COVER_SIZE_PATTERN = re.compile(r"\._\w+_\.")

RATING_TITLES = {
    "it was amazing": 5,
    "really liked it": 4,
    "liked it": 3,
    "it was ok": 2,
    "did not like it": 1,
}

DATE_FORMATS = (
    "%a %b %d %H:%M:%S %z %Y",
    "%B %d, %Y",
    "%b %d, %Y",
    "%B %Y",
    "%b %Y",
    "%Y",
)

REVIEW_SNIPPET_LENGTH = 300
SHELF_PAGE_SIZE = 50


class ReadingPlatformClient(Protocol):
    async def fetch_profile(self, user_id: str) -> ReadingProfile | None: ...

    async def fetch_shelf(self, user_id: str, shelf: ShelfKind) -> list[ReadingBook]: ...

    async def fetch_recent_activity(self, user_id: str) -> list[ReadingActivity]: ...

    async def search_users(self, query: str) -> list[UserCandidate]: ...

    async def check_handle_resolves(self, handle: str) -> HandleProbe: ...

    async def close(self) -> None: ...


def parse_goodreads_date(value: str | None) -> datetime | None:
    """Parse the date formats Goodreads emits into an aware UTC datetime."""
    if not value:
        return None
    value = value.strip()

    parsed: datetime | None = None
    try:
        parsed = datetime.fromisoformat(value.replace("Z", "+00:00"))
    except ValueError:
        try:
            parsed = parsedate_to_datetime(value)
        except (TypeError, ValueError):
            for fmt in DATE_FORMATS:
                try:
                    parsed = datetime.strptime(value, fmt)
                    break
                except ValueError:
                    continue

    if parsed is None:
        return None
    if parsed.tzinfo is None:
        return parsed.replace(tzinfo=UTC)
    return parsed.astimezone(UTC)


def classify_update_title(title: str) -> ActivityType:
    text = title.lower()
    if "currently reading" in text:
        return "currently_reading"
    if "reviewed" in text:
        return "review"
    if "rated" in text:
        return "rating"
    if "wants to read" in text or "added" in text or "shelved" in text:
        return "shelved"
    return "read"


def _clean_cover(url: str | None) -> str | None:
    if not url:
        return None
    return COVER_SIZE_PATTERN.sub(".", url)


def _parse_count(text: str, noun: str) -> int | None:
    match = re.search(rf"([\d,]+)\s*{noun}s?", text, re.IGNORECASE)
    return int(match.group(1).replace(",", "")) if match else None


def parse_profile_page(html: str, user_id: str, url: str) -> ReadingProfile | None:
    soup = BeautifulSoup(html, "html.parser")

    name_el = soup.select_one("h1.userProfileName") or soup.select_one(
        ".userInfoBoxContent .nameText"
    )
    name = name_el.get_text(strip=True) if name_el else ""
    if not name and soup.title:
        name = soup.title.get_text().replace(" | Goodreads", "").strip()
    if not name:
        return None

    image_el = soup.select_one(".userProfileImage img") or soup.select_one(
        ".leftAlignedProfilePicture img"
    )
    stats_el = soup.select_one(".profilePageUserStatsInfo")
    stats_text = stats_el.get_text(" ", strip=True) if stats_el else ""
    member_el = soup.select_one(".memberSinceText")
    location_el = soup.select_one(".profileInfoLine .profileInfoValue")

    return ReadingProfile(
        id=user_id,
        name=name,
        profile_url=url,
        image_url=image_el.get("src") if image_el else None,
        book_count=_parse_count(stats_text, "book"),
        review_count=_parse_count(stats_text, "review"),
        member_since=member_el.get_text(strip=True) if member_el else None,
        location=location_el.get_text(strip=True) if location_el else None,
    )


def parse_shelf_page(html: str) -> list[ReadingBook]:
    soup = BeautifulSoup(html, "html.parser")
    books: list[ReadingBook] = []

    for row in soup.select("tr.bookalike, tr.review"):
        title_el = row.select_one("td.title a, td.field.title a")
        if not title_el:
            continue
        title = title_el.get_text(strip=True)
        book_match = BOOK_ID_PATTERN.search(title_el.get("href") or "")
        if not title or not book_match:
            continue

        author_el = row.select_one("td.author a, td.field.author a")
        cover_el = row.select_one("td.cover img, td.field.cover img")
        rating_el = row.select_one(".staticStars, .staticStar")
        added_el = row.select_one("td.date_added span, td.field.date_added span")
        read_el = row.select_one("td.date_read span, td.field.date_read span")

        rating_title = (rating_el.get("title") or "").lower() if rating_el else ""

        books.append(
            ReadingBook(
                id=book_match.group(1),
                title=title,
                author=author_el.get_text(strip=True) if author_el else "",
                cover_url=_clean_cover(cover_el.get("src") if cover_el else None),
                user_rating=RATING_TITLES.get(rating_title),
                date_added=parse_goodreads_date(added_el.get("title") if added_el else None),
                date_read=parse_goodreads_date(read_el.get("title") if read_el else None),
            )
        )

    return books


def parse_search_page(html: str, base_url: str) -> list[UserCandidate]:
    soup = BeautifulSoup(html, "html.parser")
    candidates: list[UserCandidate] = []
    seen: set[str] = set()

    for item in soup.select(".peopleListItem, .tableList tr"):
        link = item.select_one("a[href*='/user/show/']")
        if not link:
            continue
        id_match = USER_ID_PATTERN.search(link.get("href") or "")
        name = link.get_text(strip=True)
        if not name:
            author_el = item.select_one(".authorName")
            name = author_el.get_text(strip=True) if author_el else ""
        if not id_match or not name or id_match.group(1) in seen:
            continue

        user_id = id_match.group(1)
        seen.add(user_id)
        image_el = item.select_one("img")
        location_el = item.select_one(".location, .userLocation")
        candidates.append(
            UserCandidate(
                id=user_id,
                name=name,
                profile_url=f"{base_url}/user/show/{user_id}",
                image_url=image_el.get("src") if image_el else None,
                location=location_el.get_text(strip=True) if location_el else None,
            )
        )

    return candidates


def parse_updates_feed(xml: str) -> list[ReadingActivity]:
    """Parse the updates RSS; items without a book link or a parseable date are skipped."""
    soup = BeautifulSoup(xml, "html.parser")
    activities: list[ReadingActivity] = []

    for item in soup.find_all("item"):
        title_el = item.find("title")
        title = title_el.get_text(strip=True) if title_el else ""
        description_el = item.find("description")
        description = BeautifulSoup(
            description_el.get_text() if description_el else "", "html.parser"
        )
        date_el = item.find("pubdate")
        activity_date = parse_goodreads_date(date_el.get_text() if date_el else None)

        book_link = description.find("a")
        book_match = BOOK_ID_PATTERN.search(book_link.get("href") or "") if book_link else None
        book_title = book_link.get_text(strip=True) if book_link else ""
        if not book_title or not book_match or activity_date is None:
            continue

        activity_type = classify_update_title(title)
        rating_match = RATED_PATTERN.search(title)
        cover_el = description.find("img")
        snippet = None
        if activity_type == "review":
            snippet = description.get_text(" ", strip=True)[:REVIEW_SNIPPET_LENGTH] or None

        activities.append(
            ReadingActivity(
                type=activity_type,
                book=ReadingBook(
                    id=book_match.group(1),
                    title=book_title,
                    author="",
                    cover_url=_clean_cover(cover_el.get("src") if cover_el else None),
                ),
                date=activity_date,
                rating=int(rating_match.group(1)) if rating_match else None,
                review_snippet=snippet,
            )
        )

    return activities


async def probe_handle(fetcher: CachedFetcher, base_url: str, handle: str) -> HandleProbe:
    """Follow goodreads.com/{handle} and extract the user id it lands on."""
    handle = handle.strip().lstrip("@")
    if not handle:
        return HandleProbe(exists=False)

    final_url = await fetcher.final_url(f"{base_url}/{quote(handle)}")
    if not final_url:
        return HandleProbe(exists=False)

    match = USER_ID_PATTERN.search(final_url)
    if not match:
        return HandleProbe(exists=False)
    return HandleProbe(exists=True, user_id=match.group(1))


class GoodreadsScraperClient:
    """Reading-platform client that scrapes goodreads.com HTML."""

    def __init__(self, fetcher: CachedFetcher, base_url: str = "https://www.goodreads.com"):
        self.fetcher = fetcher
        self.base_url = base_url.rstrip("/")

    async def close(self) -> None:
        await self.fetcher.close()

    async def fetch_profile(self, user_id: str) -> ReadingProfile | None:
        url = f"{self.base_url}/user/show/{user_id}"
        try:
            html = await self.fetcher.fetch(f"gr:profile:{user_id}", url)
        except FetchError as e:
            if e.status_code == 404:
                return None
            raise
        return parse_profile_page(html, user_id, url)

    async def fetch_shelf(self, user_id: str, shelf: ShelfKind) -> list[ReadingBook]:
        html = await self.fetcher.fetch(
            f"gr:shelf:{user_id}:{shelf}",
            f"{self.base_url}/review/list/{user_id}",
            params={
                "shelf": shelf,
                "per_page": str(SHELF_PAGE_SIZE),
                "sort": "date_added",
                "order": "d",
            },
        )
        return parse_shelf_page(html)

    async def fetch_recent_activity(self, user_id: str) -> list[ReadingActivity]:
        xml = await self.fetcher.fetch(
            f"gr:updates:{user_id}", f"{self.base_url}/user/updates_rss/{user_id}"
        )
        return parse_updates_feed(xml)

    async def search_users(self, query: str) -> list[UserCandidate]:
        html = await self.fetcher.fetch(
            f"gr:search:{query.lower()}",
            f"{self.base_url}/search",
            params={"q": query, "search_type": "people"},
        )
        return parse_search_page(html, self.base_url)

    async def check_handle_resolves(self, handle: str) -> HandleProbe:
        return await probe_handle(self.fetcher, self.base_url, handle)


class GoodreadsApiClient:
    """Reading-platform client over the JSON endpoints of the mobile app."""

    def __init__(self, fetcher: CachedFetcher, base_url: str = "https://www.goodreads.com"):
        self.fetcher = fetcher
        self.base_url = base_url.rstrip("/")
        self.api_base = f"{self.base_url}/api"

    async def close(self) -> None:
        await self.fetcher.close()

    async def _get_json(self, key: str, path: str, params: dict[str, str] | None = None) -> dict:
        body = await self.fetcher.fetch(key, f"{self.api_base}{path}", params=params)
        try:
            return json.loads(body)
        except ValueError as e:
            raise FetchError(f"Invalid JSON from {path}: {e}", url=path) from e

    @staticmethod
    def _book_from(book: dict, review: dict | None = None) -> ReadingBook:
        review = review or {}
        return ReadingBook(
            id=str(book.get("id") or ""),
            title=book.get("title") or "",
            author=(book.get("author") or {}).get("name") or "",
            cover_url=_clean_cover(book.get("image_url")),
            user_rating=review.get("rating") or None,
            date_added=parse_goodreads_date(review.get("date_added")),
            date_read=parse_goodreads_date(review.get("read_at")),
        )

    async def fetch_profile(self, user_id: str) -> ReadingProfile | None:
        try:
            data = await self._get_json(f"gr:api:profile:{user_id}", f"/user/show/{user_id}.json")
        except FetchError as e:
            if e.status_code == 404:
                return None
            raise

        user = data.get("user") or data
        return ReadingProfile(
            id=user_id,
            name=user.get("name") or "",
            profile_url=f"{self.base_url}/user/show/{user_id}",
            image_url=user.get("image_url"),
            book_count=user.get("books_count"),
            review_count=user.get("reviews_count"),
            location=user.get("location"),
        )

    async def fetch_shelf(self, user_id: str, shelf: ShelfKind) -> list[ReadingBook]:
        data = await self._get_json(
            f"gr:api:shelf:{user_id}:{shelf}",
            f"/review/list/{user_id}.json",
            params={
                "shelf": shelf,
                "per_page": str(SHELF_PAGE_SIZE),
                "sort": "date_added",
                "order": "d",
            },
        )
        books = [
            self._book_from(review.get("book") or {}, review)
            for review in data.get("reviews") or []
        ]
        return [book for book in books if book.id]

    async def fetch_recent_activity(self, user_id: str) -> list[ReadingActivity]:
        data = await self._get_json(
            f"gr:api:updates:{user_id}", "/updates/friends.json", params={"user_id": user_id}
        )

        activities = []
        for update in data.get("updates") or []:
            book = self._book_from(update.get("book") or {})
            activity_date = parse_goodreads_date(update.get("updated_at"))
            if not book.id or activity_date is None:
                continue
            body = update.get("body") or ""
            activities.append(
                ReadingActivity(
                    type=classify_update_title(update.get("action_text") or ""),
                    book=book,
                    date=activity_date,
                    rating=update.get("rating") or None,
                    review_snippet=body[:REVIEW_SNIPPET_LENGTH] or None,
                )
            )
        return activities

    async def search_users(self, query: str) -> list[UserCandidate]:
        data = await self._get_json(
            f"gr:api:search:{query.lower()}",
            "/search/index.json",
            params={"q": query, "search_type": "people"},
        )
        return [
            UserCandidate(
                id=str(result["id"]),
                name=result.get("name") or "",
                profile_url=f"{self.base_url}/user/show/{result['id']}",
                image_url=result.get("image_url"),
                location=result.get("location"),
            )
            for result in data.get("results") or []
            if result.get("id")
        ]

    async def check_handle_resolves(self, handle: str) -> HandleProbe:
        return await probe_handle(self.fetcher, self.base_url, handle)
