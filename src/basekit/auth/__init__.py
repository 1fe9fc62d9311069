"""
Auth module - session state and token lifecycle.

Provides:
- CredentialStore: holds the current Session, notifies listeners
- SessionManager: sign-up / sign-in / sign-out / refresh
- AuthEndpoint / HttpAuthEndpoint: remote auth service collaborator
"""

from __future__ import annotations

from .endpoint import AuthEndpoint, HttpAuthEndpoint
from .models import UNAUTHENTICATED, AuthEvent, Session, User
from .session import SessionManager
from .store import (
    CredentialStore,
    FileSessionStorage,
    MemorySessionStorage,
    SessionListener,
    SessionStorage,
)

__all__ = [
    # Models
    "AuthEvent",
    "Session",
    "User",
    "UNAUTHENTICATED",
    # Store
    "CredentialStore",
    "SessionListener",
    "SessionStorage",
    "MemorySessionStorage",
    "FileSessionStorage",
    # Manager
    "SessionManager",
    # Endpoint
    "AuthEndpoint",
    "HttpAuthEndpoint",
]
