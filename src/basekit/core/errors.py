"""
Custom exceptions for the basekit client.

Every failure a caller can observe is one of these types; raw transport
exceptions are translated at the collaborator boundary.
"""

from __future__ import annotations

from enum import Enum
from typing import Optional


class AuthErrorReason(str, Enum):
    """Why an authentication call failed."""
    DUPLICATE_ACCOUNT = "duplicate_account"
    INVALID_CREDENTIAL_FORMAT = "invalid_credential_format"
    INVALID_CREDENTIALS = "invalid_credentials"
    ACCOUNT_LOCKED = "account_locked"
    REFRESH_TOKEN_INVALID = "refresh_token_invalid"
    ENDPOINT_UNAVAILABLE = "endpoint_unavailable"


class QueryErrorReason(str, Enum):
    """Why a query execution failed."""
    NOT_AUTHORIZED = "not_authorized"
    CONSTRAINT_VIOLATION = "constraint_violation"
    NOT_FOUND = "not_found"
    TRANSPORT_ERROR = "transport_error"
    CANCELLED = "cancelled"


class ConnectionErrorReason(str, Enum):
    """Why the realtime connection failed."""
    CONNECT_FAILED = "connect_failed"
    TOKEN_EXPIRED = "token_expired"
    CONNECTION_LOST = "connection_lost"
    SEND_FAILED = "send_failed"


class BasekitError(Exception):
    """Base exception for all basekit errors."""
    pass


class AuthError(BasekitError):
    """Raised when a sign-up, sign-in, refresh or sign-out call fails."""

    def __init__(self, reason: AuthErrorReason, message: str = ""):
        self.reason = reason
        self.message = message
        super().__init__(f"Auth failed ({reason.value}){f': {message}' if message else ''}")


class QueryError(BasekitError):
    """
    Raised when a query execution fails.

    token_expired marks a NOT_AUTHORIZED rejection caused by an expired
    access token, which the query builder answers with one refresh + retry.
    operation is the descriptor operation that failed, set by the query builder.
    """

    def __init__(
        self,
        reason: QueryErrorReason,
        detail: str = "",
        *,
        token_expired: bool = False,
        status_code: Optional[int] = None,
        operation: Optional[str] = None,
    ):
        self.reason = reason
        self.detail = detail
        self.token_expired = token_expired
        self.status_code = status_code
        self.operation = operation
        super().__init__(f"Query failed ({reason.value}){f': {detail}' if detail else ''}")

    @property
    def retryable(self) -> bool:
        """Transport failures and cancellations of a select may be retried; writes are never retryable."""
        if self.operation != "select":
            return False
        return self.reason in (QueryErrorReason.TRANSPORT_ERROR, QueryErrorReason.CANCELLED)


class RealtimeConnectionError(BasekitError):
    """Raised by realtime transports; handled by the reconnect loop."""

    def __init__(self, reason: ConnectionErrorReason, message: str = ""):
        self.reason = reason
        self.message = message
        super().__init__(f"Realtime connection error ({reason.value}){f': {message}' if message else ''}")


class SubscriptionError(BasekitError):
    """Passed to on_closed when the server permanently invalidates a subscription."""

    def __init__(self, reason: str, channel_id: str, message: str = ""):
        self.reason = reason
        self.channel_id = channel_id
        self.message = message
        super().__init__(f"Subscription {channel_id} closed ({reason}){f': {message}' if message else ''}")
