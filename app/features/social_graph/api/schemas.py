from datetime import datetime
from typing import Literal

from pydantic import BaseModel, Field

from app.features.social_graph.domain.models import ActivityType, ImportStatus, MatchMethod


class StartImportRequest(BaseModel):
    """Source account credentials for a new import."""

    source_account_id: str = Field(..., min_length=1)
    access_token: str = Field(..., min_length=1)
    source_handle: str | None = None


class ImportStartedResponse(BaseModel):
    import_id: str
    status: ImportStatus
    message: str


class ConfidenceBreakdown(BaseModel):
    high_confidence: int
    medium_confidence: int
    low_confidence: int
    unmatched: int


class ImportStatusResponse(BaseModel):
    id: str
    status: ImportStatus
    source_handle: str | None
    total_accounts: int
    matched_accounts: int
    created_at: datetime
    last_refreshed_at: datetime | None
    breakdown: ConfidenceBreakdown


class RefreshImportRequest(BaseModel):
    access_token: str = Field(..., min_length=1)


class ConnectionActionRequest(BaseModel):
    action: Literal["confirm", "reject", "manual_link"]
    target_user_id: str | None = None


class ConnectionActionResponse(BaseModel):
    status: Literal["confirmed", "rejected", "linked"]


class FeedBook(BaseModel):
    id: str
    title: str | None
    author: str | None
    cover_url: str | None


class FeedPerson(BaseModel):
    connection_id: str
    handle: str | None
    display_name: str | None
    profile_url: str | None
    target_user_id: str | None


class FeedItemResponse(BaseModel):
    id: str
    activity_type: ActivityType
    book: FeedBook
    rating: int | None
    review_snippet: str | None
    activity_date: datetime
    person: FeedPerson


class FeedResponse(BaseModel):
    items: list[FeedItemResponse]
    total: int
    page: int
    limit: int
    has_more: bool


class LookupMatch(BaseModel):
    target_user_id: str
    confidence: float
    method: MatchMethod


class LookupResponse(BaseModel):
    source_profile: dict
    book_signals: dict
    match: LookupMatch | None = None
    reading_profile: dict | None = None
    currently_reading: list[dict] = Field(default_factory=list)
    recent_reads: list[dict] = Field(default_factory=list)
    message: str | None = None


class LookupImportRequest(BaseModel):
    """Profile URL (twitter.com or x.com) or @handle to import from."""

    profile_url: str = Field(..., min_length=1)
    access_token: str | None = None


class LookupImportProfile(BaseModel):
    id: str
    username: str
    name: str
    profile_image_url: str | None


class LookupImportResponse(BaseModel):
    import_id: str
    profile: LookupImportProfile
    status: ImportStatus


class TrendingBookResponse(BaseModel):
    book: FeedBook
    interaction_count: int
    avg_rating: float | None


class TrendingResponse(BaseModel):
    books: list[TrendingBookResponse]


class StatsResponse(BaseModel):
    total_imports: int
    total_accounts: int
    total_matched: int
    match_rate: int
    total_feed_items: int
    unique_books: int
