"""
Social graph routes.

Usage:
    1. POST /imports - Start importing the caller's following list
    2. POST /imports/{id}/refresh - Re-run an import
    3. GET /imports/{id}/status - Progress and confidence breakdown
    4. PATCH /connections/{id} - confirm | reject | manual_link
    5. GET /feed - Reading activity of matched connections
    6. GET /lookup/{handle} - Resolve one handle on demand
    7. POST /imports/lookup - Start an import from a profile URL or @handle
    8. GET /feed/trending - Books several matched connections touched recently
    9. GET /stats - Import and feed totals
"""

from dataclasses import asdict
from datetime import UTC, datetime, timedelta
from typing import Literal

from fastapi import APIRouter, Depends, HTTPException, Query, Request, status

from app.auth.verify import current_user_id
from app.features.social_graph.api.schemas import (
    ConfidenceBreakdown,
    ConnectionActionRequest,
    ConnectionActionResponse,
    FeedBook,
    FeedItemResponse,
    FeedPerson,
    FeedResponse,
    ImportStartedResponse,
    ImportStatusResponse,
    LookupImportProfile,
    LookupImportRequest,
    LookupImportResponse,
    LookupMatch,
    LookupResponse,
    RefreshImportRequest,
    StartImportRequest,
    StatsResponse,
    TrendingBookResponse,
    TrendingResponse,
)
from app.features.social_graph.clients.fetcher import FetchError
from app.features.social_graph.clients.twitter_client import (
    TwitterClientError,
    parse_source_handle,
)
from app.features.social_graph.context import JobContext
from app.features.social_graph.domain.models import ActivityType
from app.features.social_graph.jobs.payloads import ImportJobPayload
from app.features.social_graph.repository.connection_repository import ConnectionRepository
from app.features.social_graph.repository.feed_repository import FeedRepository
from app.features.social_graph.repository.import_repository import ImportRepository
from app.features.social_graph.services.connection_actions import (
    ConnectionActionError,
    confirm_connection,
    manual_link_connection,
    reject_connection,
)
from app.features.social_graph.services.insights_service import get_stats, get_trending
from app.features.social_graph.services.lookup_service import lookup_handle
from app.infrastructure.observability.logging import get_logger

router = APIRouter(tags=["social-graph"])
logger = get_logger(__name__)

MAX_FEED_PAGE_SIZE = 50
TIME_RANGES = {
    "week": timedelta(days=7),
    "month": timedelta(days=30),
    "year": timedelta(days=365),
}


def get_job_context(request: Request) -> JobContext:
    context = getattr(request.app.state, "job_context", None)
    if context is None:
        raise HTTPException(
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE, detail="Job context not ready"
        )
    return context


@router.post("/imports", response_model=ImportStartedResponse, status_code=status.HTTP_202_ACCEPTED)
async def start_import(
    body: StartImportRequest,
    user_id: str = Depends(current_user_id),
    context: JobContext = Depends(get_job_context),
):
    record = await ImportRepository.create(user_id, body.source_account_id, body.source_handle)
    await context.dispatcher.enqueue(
        "import",
        ImportJobPayload(
            import_id=record.id,
            user_id=user_id,
            source_account_id=body.source_account_id,
            access_token=body.access_token,
            source_handle=body.source_handle,
        ),
    )

    return ImportStartedResponse(
        import_id=record.id,
        status="pending",
        message="Import started. Check status for progress.",
    )


@router.post(
    "/imports/lookup",
    response_model=LookupImportResponse,
    status_code=status.HTTP_202_ACCEPTED,
)
async def start_import_from_profile(
    body: LookupImportRequest,
    user_id: str = Depends(current_user_id),
    context: JobContext = Depends(get_job_context),
):
    """Resolve a profile URL or @handle to an account and import its following list."""
    handle = parse_source_handle(body.profile_url)
    if not handle:
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST, detail="Invalid profile URL or handle"
        )

    access_token = body.access_token or context.source_client.bearer_token
    if not access_token:
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST, detail="An access token is required"
        )

    try:
        profile = await context.source_client.fetch_profile_by_handle(handle, access_token)
    except (FetchError, TwitterClientError) as e:
        logger.error("Profile lookup failed", handle=handle, user_id=user_id, error=str(e))
        raise HTTPException(
            status_code=status.HTTP_502_BAD_GATEWAY, detail="Profile lookup failed"
        ) from e

    if profile is None:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Profile not found")

    record = await ImportRepository.create(user_id, profile.id, profile.handle)
    await context.dispatcher.enqueue(
        "import",
        ImportJobPayload(
            import_id=record.id,
            user_id=user_id,
            source_account_id=profile.id,
            access_token=access_token,
            source_handle=profile.handle,
        ),
    )

    return LookupImportResponse(
        import_id=record.id,
        profile=LookupImportProfile(
            id=profile.id,
            username=profile.handle,
            name=profile.display_name,
            profile_image_url=profile.profile_image_url,
        ),
        status="pending",
    )


@router.post(
    "/imports/{import_id}/refresh",
    response_model=ImportStartedResponse,
    status_code=status.HTTP_202_ACCEPTED,
)
async def refresh_import(
    import_id: str,
    body: RefreshImportRequest,
    user_id: str = Depends(current_user_id),
    context: JobContext = Depends(get_job_context),
):
    record = await ImportRepository.get_for_user(import_id, user_id)
    if record is None:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Import not found")

    await context.dispatcher.enqueue(
        "refresh",
        ImportJobPayload(
            import_id=record.id,
            user_id=user_id,
            source_account_id=record.source_account_id,
            access_token=body.access_token,
            source_handle=record.source_handle,
        ),
    )

    return ImportStartedResponse(
        import_id=record.id, status=record.status, message="Refresh queued."
    )


@router.get("/imports/{import_id}/status", response_model=ImportStatusResponse)
async def import_status(import_id: str, user_id: str = Depends(current_user_id)):
    record = await ImportRepository.get_for_user(import_id, user_id)
    if record is None:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Import not found")

    breakdown = await ConnectionRepository.confidence_breakdown(import_id)
    return ImportStatusResponse(
        id=record.id,
        status=record.status,
        source_handle=record.source_handle,
        total_accounts=record.total_accounts,
        matched_accounts=record.matched_accounts,
        created_at=record.created_at,
        last_refreshed_at=record.last_refreshed_at,
        breakdown=ConfidenceBreakdown(**breakdown),
    )


@router.patch("/connections/{connection_id}", response_model=ConnectionActionResponse)
async def update_connection(
    connection_id: str,
    body: ConnectionActionRequest,
    user_id: str = Depends(current_user_id),
    context: JobContext = Depends(get_job_context),
):
    connection = await ConnectionRepository.get_for_user(connection_id, user_id)
    if connection is None:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Connection not found")

    try:
        if body.action == "confirm":
            result = await confirm_connection(connection)
        elif body.action == "reject":
            result = await reject_connection(connection)
        else:
            result = await manual_link_connection(
                connection, body.target_user_id, context.dispatcher
            )
    except ConnectionActionError as e:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail=str(e)) from e

    return ConnectionActionResponse(status=result)


@router.get("/feed", response_model=FeedResponse)
async def get_feed(
    user_id: str = Depends(current_user_id),
    page: int = Query(1, ge=1),
    limit: int = Query(20, ge=1),
    time_range: Literal["all", "week", "month", "year"] = Query("all"),
    activity_type: ActivityType | None = Query(None),
    connection_id: str | None = Query(None),
):
    limit = min(limit, MAX_FEED_PAGE_SIZE)
    offset = (page - 1) * limit
    since = datetime.now(UTC) - TIME_RANGES[time_range] if time_range in TIME_RANGES else None

    rows, total = await FeedRepository.list_for_user(
        user_id,
        limit=limit,
        offset=offset,
        activity_type=activity_type,
        since=since,
        connection_id=connection_id,
    )

    items = [
        FeedItemResponse(
            id=str(row["id"]),
            activity_type=row["activity_type"],
            book=FeedBook(
                id=row["book_id"],
                title=row.get("book_title"),
                author=row.get("book_author"),
                cover_url=row.get("book_cover_url"),
            ),
            rating=row.get("rating"),
            review_snippet=row.get("review_snippet"),
            activity_date=row["activity_date"],
            person=FeedPerson(
                connection_id=str(row["connection_id"]),
                handle=row.get("source_handle"),
                display_name=row.get("source_display_name"),
                profile_url=row.get("source_profile_url"),
                target_user_id=row.get("goodreads_user_id"),
            ),
        )
        for row in rows
    ]

    return FeedResponse(
        items=items, total=total, page=page, limit=limit, has_more=offset + limit < total
    )


@router.get("/feed/trending", response_model=TrendingResponse)
async def get_trending_books(user_id: str = Depends(current_user_id)):
    books = await get_trending(user_id)
    return TrendingResponse(
        books=[
            TrendingBookResponse(
                book=FeedBook(
                    id=book.book_id,
                    title=book.title,
                    author=book.author,
                    cover_url=book.cover_url,
                ),
                interaction_count=book.interaction_count,
                avg_rating=book.avg_rating,
            )
            for book in books
        ]
    )


@router.get("/stats", response_model=StatsResponse)
async def get_import_stats(user_id: str = Depends(current_user_id)):
    return StatsResponse(**asdict(await get_stats(user_id)))


@router.get("/lookup/{handle}", response_model=LookupResponse)
async def lookup(
    handle: str,
    user_id: str = Depends(current_user_id),
    context: JobContext = Depends(get_job_context),
):
    try:
        result = await lookup_handle(handle, context)
    except (FetchError, TwitterClientError) as e:
        logger.error("Lookup failed", handle=handle, user_id=user_id, error=str(e))
        raise HTTPException(status_code=status.HTTP_502_BAD_GATEWAY, detail="Lookup failed") from e

    if result is None:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Profile not found")

    response = LookupResponse(
        source_profile=asdict(result.source_profile),
        book_signals=asdict(result.book_signals),
    )
    if result.match is None:
        response.message = "No reading profile found for this user"
        return response

    response.match = LookupMatch(
        target_user_id=result.match.target_user_id,
        confidence=result.match.confidence,
        method=result.match.method,
    )
    response.reading_profile = asdict(result.reading_profile) if result.reading_profile else None
    response.currently_reading = [asdict(book) for book in result.currently_reading]
    response.recent_reads = [asdict(book) for book in result.recent_reads]
    return response
