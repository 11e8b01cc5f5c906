"""
Service layer for the social graph feature.
"""

from .connection_actions import (
    ConnectionActionError,
    confirm_connection,
    manual_link_connection,
    reject_connection,
)
from .insights_service import ImportStats, TrendingBook, get_stats, get_trending
from .lookup_service import LookupResult, lookup_handle

__all__ = [
    "ConnectionActionError",
    "ImportStats",
    "LookupResult",
    "TrendingBook",
    "confirm_connection",
    "get_stats",
    "get_trending",
    "lookup_handle",
    "manual_link_connection",
    "reject_connection",
]
