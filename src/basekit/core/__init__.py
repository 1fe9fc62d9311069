"""
Core module - errors, descriptor types and configuration.
"""

from __future__ import annotations

from .config import ClientSettings, load_settings
from .errors import (
    AuthError,
    AuthErrorReason,
    BasekitError,
    ConnectionErrorReason,
    QueryError,
    QueryErrorReason,
    RealtimeConnectionError,
    SubscriptionError,
)
from .query_types import (
    ExecutorResult,
    NormalizedFilter,
    NormalizedOrder,
    QueryDescriptor,
    QueryResult,
)

__all__ = [
    # Config
    "ClientSettings",
    "load_settings",
    # Errors
    "BasekitError",
    "AuthError",
    "AuthErrorReason",
    "QueryError",
    "QueryErrorReason",
    "RealtimeConnectionError",
    "ConnectionErrorReason",
    "SubscriptionError",
    # Query types
    "NormalizedFilter",
    "NormalizedOrder",
    "QueryDescriptor",
    "ExecutorResult",
    "QueryResult",
]
