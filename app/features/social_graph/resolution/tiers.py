"""
Identity resolution tiers.

Each tier maps a SourceProfile to a Goodreads user id with a fixed trust
level. Tiers share one capability, `attempt(profile) -> Match | None`, and
the pipeline runs them as an ordered list: new strategies are appended to
build_default_tiers(), not subclassed.

    Tier            confidence   external call
    linked_url      0.95         none
    email           0.90         people search
    fuzzy_name      0.40-0.70    people search
    username        0.60         handle probe
    manual          -            none (always no match)
"""

import re
from typing import Protocol

from app.features.social_graph.clients.goodreads_client import ReadingPlatformClient
from app.features.social_graph.domain import Match, SourceProfile, UserCandidate
from app.features.social_graph.domain.models import MatchMethod
from app.infrastructure.observability.logging import get_logger

logger = get_logger(__name__)

LINKED_URL_CONFIDENCE = 0.95
EMAIL_CONFIDENCE = 0.90
USERNAME_CONFIDENCE = 0.60

FUZZY_BASE_SCORE = 0.40
FUZZY_EXACT_BONUS = 0.20
FUZZY_PARTIAL_BONUS = 0.10
FUZZY_LOCATION_BONUS = 0.10
FUZZY_BOOKISH_BONUS = 0.05
FUZZY_MAX_SCORE = 0.70
FUZZY_MIN_SCORE = 0.40
FUZZY_MIN_NAME_LENGTH = 2
BOOKISH_BIO_TERMS = ("book", "read", "author")

GOODREADS_USER_URL = re.compile(r"goodreads\.com/user/show/(\d+)", re.IGNORECASE)
_SOURCE_NAME_STRIP = re.compile(r"[^a-zA-Z0-9\s]")
_CANDIDATE_NAME_STRIP = re.compile(r"[^\w\s]")


class ResolutionTier(Protocol):
    method: MatchMethod

    async def attempt(self, profile: SourceProfile) -> Match | None: ...


def normalize_display_name(name: str | None) -> str:
    """Lowercase and strip everything but letters, digits and spaces."""
    return _SOURCE_NAME_STRIP.sub("", name or "").strip().lower()


def _normalize_candidate_name(name: str | None) -> str:
    return _CANDIDATE_NAME_STRIP.sub("", (name or "").lower()).strip()


def find_linked_user_id(profile: SourceProfile) -> str | None:
    """First Goodreads user id found in the profile's links, then its bio."""
    for text in (*profile.linked_urls, profile.bio or ""):
        match = GOODREADS_USER_URL.search(text)
        if match:
            return match.group(1)
    return None


def score_candidate(normalized_name: str, profile: SourceProfile, candidate: UserCandidate) -> float:
    """
    Score one search candidate against the source profile.

    Exact and substring name bonuses are mutually exclusive. The result is
    always within [FUZZY_BASE_SCORE, FUZZY_MAX_SCORE].
    """
    score = FUZZY_BASE_SCORE
    candidate_name = _normalize_candidate_name(candidate.name)

    if candidate_name == normalized_name:
        score += FUZZY_EXACT_BONUS
    elif candidate_name and (
        normalized_name in candidate_name or candidate_name in normalized_name
    ):
        score += FUZZY_PARTIAL_BONUS

    bio = (profile.bio or "").lower()
    if bio and candidate.location and candidate.location.lower() in bio:
        score += FUZZY_LOCATION_BONUS

    if any(term in bio for term in BOOKISH_BIO_TERMS):
        score += FUZZY_BOOKISH_BONUS

    return round(min(score, FUZZY_MAX_SCORE), 2)


class LinkedUrlTier:
    """Explicit Goodreads profile link in the bio or profile URLs."""

    method: MatchMethod = "linked_url"

    async def attempt(self, profile: SourceProfile) -> Match | None:
        user_id = find_linked_user_id(profile)
        if user_id is None:
            return None
        return Match(target_user_id=user_id, confidence=LINKED_URL_CONFIDENCE, method=self.method)


class EmailTier:
    """People search by email; only an unambiguous single hit counts."""

    method: MatchMethod = "email"

    def __init__(self, client: ReadingPlatformClient):
        self.client = client

    async def attempt(self, profile: SourceProfile) -> Match | None:
        if not profile.email:
            return None

        results = await self.client.search_users(profile.email)
        if len(results) != 1:
            if results:
                logger.info(
                    "Email match ambiguous",
                    source_user_id=profile.id,
                    candidate_count=len(results),
                )
            return None

        return Match(
            target_user_id=results[0].id, confidence=EMAIL_CONFIDENCE, method=self.method
        )


class FuzzyNameTier:
    """People search by normalised display name, best-scoring candidate wins."""

    method: MatchMethod = "fuzzy_name"

    def __init__(self, client: ReadingPlatformClient):
        self.client = client

    async def attempt(self, profile: SourceProfile) -> Match | None:
        normalized_name = normalize_display_name(profile.display_name)
        if len(normalized_name) < FUZZY_MIN_NAME_LENGTH:
            return None

        candidates = await self.client.search_users(normalized_name)

        best: tuple[UserCandidate, float] | None = None
        for candidate in candidates:
            score = score_candidate(normalized_name, profile, candidate)
            if best is None or score > best[1]:
                best = (candidate, score)

        if best is None or best[1] < FUZZY_MIN_SCORE:
            return None

        return Match(target_user_id=best[0].id, confidence=best[1], method=self.method)


class UsernameTier:
    """Same handle on Goodreads resolves to a profile."""

    method: MatchMethod = "username"

    def __init__(self, client: ReadingPlatformClient):
        self.client = client

    async def attempt(self, profile: SourceProfile) -> Match | None:
        if not profile.handle:
            return None

        probe = await self.client.check_handle_resolves(profile.handle)
        if probe.exists and probe.user_id:
            return Match(
                target_user_id=probe.user_id, confidence=USERNAME_CONFIDENCE, method=self.method
            )
        return None


class ManualTier:
    """Terminal tier: nothing automatic left, surface for human review."""

    method: MatchMethod = "manual"

    async def attempt(self, profile: SourceProfile) -> Match | None:
        return None


def build_default_tiers(client: ReadingPlatformClient) -> list[ResolutionTier]:
    return [
        LinkedUrlTier(),
        EmailTier(client),
        FuzzyNameTier(client),
        UsernameTier(client),
        ManualTier(),
    ]
