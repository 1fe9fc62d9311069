"""
Basekit - async Python client for a hosted backend-as-a-service platform.

Bundles three concerns behind one Client:
- Auth: email/password sessions with automatic token refresh
- Queries: immutable fluent builder over the REST data API
- Realtime: table change subscriptions over one shared websocket

Usage:
    from basekit import create_client

    client = create_client("https://project.example.co", "public-anon-key")
    await client.auth.sign_in("ada@example.com", "secret-password")
    posts = await client.table("posts").select("id, title").limit(10)
    await client.close()
"""

from __future__ import annotations

from .auth import (
    UNAUTHENTICATED,
    AuthEndpoint,
    AuthEvent,
    CredentialStore,
    FileSessionStorage,
    HttpAuthEndpoint,
    MemorySessionStorage,
    Session,
    SessionManager,
    SessionStorage,
    User,
)
from .client import Client, create_client
from .core import (
    AuthError,
    AuthErrorReason,
    BasekitError,
    ClientSettings,
    ConnectionErrorReason,
    ExecutorResult,
    NormalizedFilter,
    NormalizedOrder,
    QueryDescriptor,
    QueryError,
    QueryErrorReason,
    QueryResult,
    RealtimeConnectionError,
    SubscriptionError,
    load_settings,
)
from .query import HttpRequestExecutor, QueryBuilder, RequestExecutor
from .realtime import (
    AiohttpTransport,
    Backoff,
    ChangeEvent,
    ConnectionState,
    RealtimeManager,
    RealtimeTransport,
    Subscription,
    SubscriptionState,
)

__version__ = "0.1.0"

__all__ = [
    # Client
    "Client",
    "create_client",
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
    # Auth
    "AuthEvent",
    "Session",
    "User",
    "UNAUTHENTICATED",
    "CredentialStore",
    "SessionStorage",
    "MemorySessionStorage",
    "FileSessionStorage",
    "SessionManager",
    "AuthEndpoint",
    "HttpAuthEndpoint",
    # Queries
    "QueryBuilder",
    "QueryDescriptor",
    "NormalizedFilter",
    "NormalizedOrder",
    "ExecutorResult",
    "QueryResult",
    "RequestExecutor",
    "HttpRequestExecutor",
    # Realtime
    "RealtimeManager",
    "ConnectionState",
    "Subscription",
    "SubscriptionState",
    "ChangeEvent",
    "RealtimeTransport",
    "AiohttpTransport",
    "Backoff",
]
