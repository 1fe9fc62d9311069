"""
Session and identity models.
"""

from __future__ import annotations

import time
from enum import Enum
from typing import Any, Optional

from pydantic import BaseModel, ConfigDict, Field


class AuthEvent(str, Enum):
    """Kinds of credential changes announced to store listeners."""
    INITIAL_SESSION = "INITIAL_SESSION"
    SIGNED_UP = "SIGNED_UP"
    SIGNED_IN = "SIGNED_IN"
    TOKEN_REFRESHED = "TOKEN_REFRESHED"
    SIGNED_OUT = "SIGNED_OUT"


class User(BaseModel):
    """Identity portion of a session."""
    model_config = ConfigDict(frozen=True)

    id: str
    email: Optional[str] = None
    metadata: dict[str, Any] = Field(default_factory=dict)


class Session(BaseModel):
    """
    Authenticated identity plus tokens.

    expires_at is a unix timestamp (seconds).
    """
    model_config = ConfigDict(frozen=True)

    user: User
    access_token: str
    refresh_token: str
    expires_at: float
    token_type: str = "bearer"

    @property
    def user_id(self) -> str:
        return self.user.id

    @property
    def email(self) -> Optional[str]:
        return self.user.email

    def expires_in(self, now: Optional[float] = None) -> float:
        return self.expires_at - (time.time() if now is None else now)

    def is_expired(self, margin: float = 0, now: Optional[float] = None) -> bool:
        """True if the access token expires within margin seconds."""
        return self.expires_in(now) <= margin

    @classmethod
    def from_payload(cls, payload: dict[str, Any], now: Optional[float] = None) -> Session:
        """
        Build a session from an auth endpoint token response.

        Accepts either expires_at (absolute) or expires_in (relative).

        Raises:
            ValueError: If the payload has no tokens or user
        """
        access_token = payload.get("access_token")
        refresh_token = payload.get("refresh_token")
        user_data = payload.get("user") or {}
        if not access_token or not refresh_token or not user_data.get("id"):
            raise ValueError("Token response is missing access_token, refresh_token or user.id")

        if payload.get("expires_at") is not None:
            expires_at = float(payload["expires_at"])
        else:
            issued = time.time() if now is None else now
            expires_at = issued + float(payload.get("expires_in", 3600))

        return cls(
            user=User(
                id=str(user_data["id"]),
                email=user_data.get("email"),
                metadata=user_data.get("user_metadata") or user_data.get("metadata") or {},
            ),
            access_token=access_token,
            refresh_token=refresh_token,
            expires_at=expires_at,
            token_type=payload.get("token_type", "bearer"),
        )


class _Unauthenticated:
    """Sentinel returned by current_user() when nobody is signed in."""

    _instance: Optional[_Unauthenticated] = None

    def __new__(cls) -> _Unauthenticated:
        if cls._instance is None:
            cls._instance = super().__new__(cls)
        return cls._instance

    def __bool__(self) -> bool:
        return False

    def __repr__(self) -> str:
        return "UNAUTHENTICATED"


UNAUTHENTICATED = _Unauthenticated()
