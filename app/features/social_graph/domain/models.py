"""
Domain models for the social graph feature.

Lightweight dataclasses shared by the source clients, the resolution
pipeline, repositories and jobs. They carry no behaviour beyond small
conveniences so every layer can construct them freely.
"""

from dataclasses import dataclass, field
from datetime import datetime
from typing import Literal

SourcePlatform = Literal["twitter"]
ImportStatus = Literal["pending", "processing", "complete", "failed"]
MatchMethod = Literal["linked_url", "email", "fuzzy_name", "username", "manual"]
ActivityType = Literal["currently_reading", "read", "rating", "review", "shelved"]
ShelfKind = Literal["read", "currently-reading", "to-read"]

SOURCE_PLATFORM_TWITTER: SourcePlatform = "twitter"


@dataclass(slots=True, frozen=True)
class SourceProfile:
    """Snapshot of a social-network account captured for one job run."""

    id: str
    display_name: str
    handle: str
    bio: str | None = None
    linked_urls: tuple[str, ...] = ()
    email: str | None = None
    profile_image_url: str | None = None

    @property
    def profile_url(self) -> str:
        return f"https://x.com/{self.handle}"


@dataclass(slots=True)
class SourceFollowingPage:
    """One page of a following list plus the token for the next page."""

    profiles: list[SourceProfile]
    next_token: str | None = None


@dataclass(slots=True)
class BookSignals:
    """Bookish hints found on a source profile."""

    has_goodreads_link: bool
    goodreads_url: str | None
    is_bookish: bool
    book_keywords: list[str] = field(default_factory=list)


@dataclass(slots=True)
class ReadingProfile:
    """Public reading-platform profile."""

    id: str
    name: str
    profile_url: str
    image_url: str | None = None
    book_count: int | None = None
    review_count: int | None = None
    member_since: str | None = None
    location: str | None = None


@dataclass(slots=True)
class ReadingBook:
    """One shelf entry."""

    id: str
    title: str
    author: str
    cover_url: str | None = None
    user_rating: int | None = None
    date_added: datetime | None = None
    date_read: datetime | None = None


@dataclass(slots=True)
class ReadingActivity:
    """One entry of a user's recent-activity stream."""

    type: ActivityType
    book: ReadingBook
    date: datetime
    rating: int | None = None
    review_snippet: str | None = None


@dataclass(slots=True)
class UserCandidate:
    """A reading-platform user returned by a people search."""

    id: str
    name: str
    profile_url: str
    image_url: str | None = None
    location: str | None = None


@dataclass(slots=True)
class HandleProbe:
    """Result of probing goodreads.com/{handle}."""

    exists: bool
    user_id: str | None = None


@dataclass(slots=True, frozen=True)
class Match:
    """A resolved mapping from a source profile to a reading-platform user."""

    target_user_id: str
    confidence: float
    method: MatchMethod


@dataclass(slots=True)
class ResolutionCacheEntry:
    """Represents a resolution_cache row."""

    source_platform: SourcePlatform
    source_user_id: str
    target_user_id: str
    confidence: float
    method: MatchMethod
    last_verified_at: datetime

    def to_match(self) -> Match:
        return Match(
            target_user_id=self.target_user_id,
            confidence=self.confidence,
            method=self.method,
        )


@dataclass(slots=True)
class SocialImport:
    """Represents a social_graph_imports row."""

    id: str
    user_id: str
    source_account_id: str
    source_handle: str | None
    status: ImportStatus
    total_accounts: int
    matched_accounts: int
    created_at: datetime
    last_refreshed_at: datetime | None


@dataclass(slots=True)
class SocialConnection:
    """Represents a social_connections row."""

    id: str
    import_id: str
    source_platform: SourcePlatform
    source_user_id: str
    source_handle: str | None
    source_display_name: str | None
    source_bio: str | None
    source_profile_url: str | None
    target_user_id: str | None
    match_confidence: float
    match_method: MatchMethod | None
    verified_by_user: bool


@dataclass(slots=True)
class FeedItem:
    """A social_feed_items row ready for insertion."""

    connection_id: str
    target_user_id: str
    activity_type: ActivityType
    book_id: str
    book_title: str
    book_author: str
    activity_date: datetime
    book_cover_url: str | None = None
    rating: int | None = None
    review_snippet: str | None = None
