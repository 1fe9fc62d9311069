"""
Auth endpoint collaborator.

The session manager talks to the auth service through the AuthEndpoint
interface. HttpAuthEndpoint is the default implementation:

    POST {auth_url}/signup
    POST {auth_url}/token?grant_type=password
    POST {auth_url}/token?grant_type=refresh_token
    POST {auth_url}/logout
"""

from __future__ import annotations

import logging
from abc import ABC, abstractmethod
from typing import Any, Optional

import httpx

from ..core.errors import AuthError, AuthErrorReason
from .models import Session

logger = logging.getLogger(__name__)

DUPLICATE_CODES = {"user_already_exists", "email_exists", "phone_exists"}
LOCKED_CODES = {"user_banned", "account_locked", "user_locked"}


class AuthEndpoint(ABC):
    """Interface for the remote auth service."""

    @abstractmethod
    async def sign_up(self, email: str, password: str) -> Session:
        """Create an account and return its first session."""
        ...

    @abstractmethod
    async def sign_in(self, email: str, password: str) -> Session:
        """Exchange credentials for a session."""
        ...

    @abstractmethod
    async def refresh(self, refresh_token: str) -> Session:
        """Exchange a refresh token for a new session."""
        ...

    @abstractmethod
    async def sign_out(self, access_token: str) -> None:
        """Invalidate the session server-side."""
        ...

    async def close(self) -> None:
        pass


def _error_code(body: dict[str, Any]) -> str:
    return str(body.get("error_code") or body.get("code") or body.get("error") or "").lower()


def _error_message(body: dict[str, Any], response: httpx.Response) -> str:
    return str(
        body.get("msg")
        or body.get("message")
        or body.get("error_description")
        or response.text
        or response.reason_phrase
    )


class HttpAuthEndpoint(AuthEndpoint):
    """
    HTTP client for the auth service.

    Usage:
        endpoint = HttpAuthEndpoint("https://project.example.co/auth/v1", "anon-key")
        session = await endpoint.sign_in("a@example.com", "secret")
    """

    def __init__(
        self,
        auth_url: str,
        api_key: str,
        timeout: float = 30.0,
        http_client: Optional[httpx.AsyncClient] = None,
    ):
        """
        Initialize auth endpoint.

        Args:
            auth_url: Auth service base URL (e.g., "https://x.example.co/auth/v1")
            api_key: Public API key sent as the apikey header
            timeout: HTTP request timeout in seconds
            http_client: Optional shared HTTP client
        """
        self.auth_url = auth_url.rstrip("/")
        self.api_key = api_key
        self.timeout = timeout
        self._client = http_client
        self._owns_client = http_client is None

    async def _get_client(self) -> httpx.AsyncClient:
        """Get or create async HTTP client."""
        if self._client is None:
            self._client = httpx.AsyncClient(timeout=self.timeout)
        return self._client

    async def close(self) -> None:
        """Close the HTTP client if we own it."""
        if self._client is not None and self._owns_client:
            await self._client.aclose()
            self._client = None

    async def _post(
        self,
        path: str,
        payload: Optional[dict[str, Any]] = None,
        params: Optional[dict[str, str]] = None,
        access_token: Optional[str] = None,
    ) -> tuple[httpx.Response, dict[str, Any]]:
        client = await self._get_client()
        headers = {"apikey": self.api_key, "Content-Type": "application/json"}
        if access_token:
            headers["Authorization"] = f"Bearer {access_token}"

        try:
            response = await client.post(
                f"{self.auth_url}{path}",
                json=payload or {},
                params=params,
                headers=headers,
            )
        except httpx.RequestError as e:
            raise AuthError(AuthErrorReason.ENDPOINT_UNAVAILABLE, str(e)) from e

        logger.debug(f"Auth POST {path} -> {response.status_code}")
        body: dict[str, Any] = {}
        if response.content:
            try:
                parsed = response.json()
            except ValueError:
                parsed = {}
            if isinstance(parsed, dict):
                body = parsed
        return response, body

    def _session_from(self, body: dict[str, Any]) -> Session:
        payload = body.get("session") if isinstance(body.get("session"), dict) else body
        try:
            return Session.from_payload(payload)
        except ValueError as e:
            raise AuthError(AuthErrorReason.ENDPOINT_UNAVAILABLE, f"Malformed token response: {e}") from e

    async def sign_up(self, email: str, password: str) -> Session:
        response, body = await self._post("/signup", {"email": email, "password": password})

        if response.is_success:
            return self._session_from(body)

        code = _error_code(body)
        message = _error_message(body, response)
        if response.status_code == 409 or code in DUPLICATE_CODES:
            raise AuthError(AuthErrorReason.DUPLICATE_ACCOUNT, message)
        if response.status_code in (400, 422):
            raise AuthError(AuthErrorReason.INVALID_CREDENTIAL_FORMAT, message)
        raise AuthError(AuthErrorReason.ENDPOINT_UNAVAILABLE, f"{response.status_code}: {message}")

    async def sign_in(self, email: str, password: str) -> Session:
        response, body = await self._post(
            "/token",
            {"email": email, "password": password},
            params={"grant_type": "password"},
        )

        if response.is_success:
            return self._session_from(body)

        code = _error_code(body)
        message = _error_message(body, response)
        if response.status_code in (403, 423) or code in LOCKED_CODES:
            raise AuthError(AuthErrorReason.ACCOUNT_LOCKED, message)
        if response.status_code in (400, 401, 422):
            raise AuthError(AuthErrorReason.INVALID_CREDENTIALS, message)
        raise AuthError(AuthErrorReason.ENDPOINT_UNAVAILABLE, f"{response.status_code}: {message}")

    async def refresh(self, refresh_token: str) -> Session:
        response, body = await self._post(
            "/token",
            {"refresh_token": refresh_token},
            params={"grant_type": "refresh_token"},
        )

        if response.is_success:
            return self._session_from(body)

        message = _error_message(body, response)
        if response.status_code in (400, 401, 403, 404):
            raise AuthError(AuthErrorReason.REFRESH_TOKEN_INVALID, message)
        raise AuthError(AuthErrorReason.ENDPOINT_UNAVAILABLE, f"{response.status_code}: {message}")

    async def sign_out(self, access_token: str) -> None:
        response, body = await self._post("/logout", access_token=access_token)

        # Already-invalid tokens count as signed out
        if response.is_success or response.status_code in (401, 403, 404):
            return

        message = _error_message(body, response)
        raise AuthError(AuthErrorReason.ENDPOINT_UNAVAILABLE, f"{response.status_code}: {message}")
