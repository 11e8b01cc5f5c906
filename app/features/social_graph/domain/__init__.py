"""
Domain subpackage for the social graph feature.
"""

from .models import (
    SOURCE_PLATFORM_TWITTER,
    BookSignals,
    FeedItem,
    HandleProbe,
    Match,
    ReadingActivity,
    ReadingBook,
    ReadingProfile,
    ResolutionCacheEntry,
    SocialConnection,
    SocialImport,
    SourceFollowingPage,
    SourceProfile,
    UserCandidate,
)

__all__ = [
    "SOURCE_PLATFORM_TWITTER",
    "BookSignals",
    "FeedItem",
    "HandleProbe",
    "Match",
    "ReadingActivity",
    "ReadingBook",
    "ReadingProfile",
    "ResolutionCacheEntry",
    "SocialConnection",
    "SocialImport",
    "SourceFollowingPage",
    "SourceProfile",
    "UserCandidate",
]
