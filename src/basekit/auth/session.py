"""
Session manager - sign-up, sign-in, sign-out and token refresh.

Owns the Session held in the CredentialStore; nothing else writes to it.
"""

from __future__ import annotations

import asyncio
import logging
import re
import time
from typing import Awaitable, Callable, Optional, Union

from ..core.errors import AuthError, AuthErrorReason
from .endpoint import AuthEndpoint
from .models import UNAUTHENTICATED, AuthEvent, Session, User, _Unauthenticated
from .store import CredentialStore, SessionListener

logger = logging.getLogger(__name__)

_EMAIL_PATTERN = re.compile(r"^[^@\s]+@[^@\s]+\.[^@\s]+$")
MIN_PASSWORD_LENGTH = 6


class SessionManager:
    """
    Authentication session manager.

    Usage:
        auth = SessionManager(endpoint, store, api_key="anon-key")
        await auth.sign_in("a@example.com", "secret")
        auth.current_user()         # User(id=..., email=...)
        await auth.access_token()   # refreshes first if about to expire
        await auth.sign_out()

    Concurrent refresh() calls share one in-flight refresh.
    """

    def __init__(
        self,
        endpoint: AuthEndpoint,
        store: CredentialStore,
        api_key: str,
        *,
        refresh_margin: float = 60,
        clock: Callable[[], float] = time.time,
    ):
        """
        Initialize session manager.

        Args:
            endpoint: Auth service collaborator
            store: Credential store holding the session
            api_key: Public API key, used as bearer when anonymous
            refresh_margin: Refresh proactively when the token expires within this many seconds
            clock: Time source (unix seconds)
        """
        self.endpoint = endpoint
        self.store = store
        self.api_key = api_key
        self.refresh_margin = refresh_margin
        self._clock = clock
        self._refresh_task: Optional[asyncio.Task] = None

    # === Identity ===

    def current_user(self) -> Union[User, _Unauthenticated]:
        """Return the signed-in user, or UNAUTHENTICATED."""
        session = self.store.get()
        return session.user if session is not None else UNAUTHENTICATED

    @property
    def is_authenticated(self) -> bool:
        return self.store.get() is not None

    def on_auth_state_change(self, listener: SessionListener) -> Callable[[], None]:
        """Register a listener for session changes. Returns an unsubscribe callable."""
        return self.store.subscribe(listener)

    # === Sign-up / sign-in / sign-out ===

    async def sign_up(self, email: str, password: str) -> Session:
        """
        Create a new account and store its session.

        Raises:
            AuthError: DUPLICATE_ACCOUNT, INVALID_CREDENTIAL_FORMAT or ENDPOINT_UNAVAILABLE
        """
        if not _EMAIL_PATTERN.match(email or ""):
            raise AuthError(AuthErrorReason.INVALID_CREDENTIAL_FORMAT, f"Invalid email address: {email!r}")
        if len(password or "") < MIN_PASSWORD_LENGTH:
            raise AuthError(
                AuthErrorReason.INVALID_CREDENTIAL_FORMAT,
                f"Password must be at least {MIN_PASSWORD_LENGTH} characters",
            )

        session = await self._call(self.endpoint.sign_up(email, password))
        self.store.set(session, AuthEvent.SIGNED_UP)
        logger.info(f"Signed up user {session.user_id}")
        return session

    async def sign_in(self, email: str, password: str) -> Session:
        """
        Exchange credentials for a session.

        Raises:
            AuthError: INVALID_CREDENTIALS, ACCOUNT_LOCKED or ENDPOINT_UNAVAILABLE
        """
        if not email or not password:
            raise AuthError(AuthErrorReason.INVALID_CREDENTIALS, "Email and password are required")

        session = await self._call(self.endpoint.sign_in(email, password))
        self.store.set(session, AuthEvent.SIGNED_IN)
        logger.info(f"Signed in user {session.user_id}")
        return session

    async def sign_out(self) -> None:
        """
        Invalidate the session remotely (best-effort) and clear it locally.

        The local session is cleared even if the remote call fails.
        """
        session = self.store.get()
        try:
            if session is not None:
                await self.endpoint.sign_out(session.access_token)
        except Exception as e:
            logger.warning(f"Remote sign-out failed, clearing local session anyway: {e}")
        finally:
            self.store.clear()
        if session is not None:
            logger.info(f"Signed out user {session.user_id}")

    # === Tokens ===

    async def refresh(self) -> Session:
        """
        Swap in a fresh session.

        Concurrent callers await the same in-flight refresh.

        Raises:
            AuthError: REFRESH_TOKEN_INVALID (session is cleared) or ENDPOINT_UNAVAILABLE
        """
        if self._refresh_task is None:
            session = self.store.get()
            if session is None:
                raise AuthError(AuthErrorReason.REFRESH_TOKEN_INVALID, "No session to refresh")
            self._refresh_task = asyncio.ensure_future(self._do_refresh(session))
            self._refresh_task.add_done_callback(self._refresh_done)
        else:
            logger.debug("Joining in-flight token refresh")
        return await asyncio.shield(self._refresh_task)

    def _refresh_done(self, task: asyncio.Task) -> None:
        if self._refresh_task is task:
            self._refresh_task = None
        # Mark the exception retrieved even if every waiter was cancelled
        if not task.cancelled():
            task.exception()

    async def _do_refresh(self, session: Session) -> Session:
        logger.debug(f"Refreshing token for user {session.user_id}")
        try:
            new_session = await self._call(self.endpoint.refresh(session.refresh_token))
        except AuthError as e:
            if e.reason is AuthErrorReason.REFRESH_TOKEN_INVALID:
                current = self.store.get()
                if current is not None and current.refresh_token == session.refresh_token:
                    logger.warning(f"Refresh token rejected, signing out user {session.user_id}")
                    self.store.clear()
            raise

        current = self.store.get()
        if current is None:
            raise AuthError(AuthErrorReason.REFRESH_TOKEN_INVALID, "Signed out during refresh")
        if current.refresh_token != session.refresh_token:
            # A sign-in replaced the session while we were refreshing
            return current

        self.store.set(new_session, AuthEvent.TOKEN_REFRESHED)
        logger.info(f"Refreshed token for user {new_session.user_id}")
        return new_session

    async def get_session(self) -> Optional[Session]:
        """
        Return the active session, refreshing it first if it is about to expire.

        Returns None when anonymous or when the refresh token was rejected.
        """
        session = self.store.get()
        if session is None:
            return None
        if not session.is_expired(self.refresh_margin, now=self._clock()):
            return session

        try:
            return await self.refresh()
        except AuthError as e:
            if e.reason is AuthErrorReason.REFRESH_TOKEN_INVALID:
                return None
            if not session.is_expired(0, now=self._clock()):
                logger.warning(f"Proactive refresh failed, using current token: {e}")
                return session
            raise

    async def access_token(self) -> str:
        """Bearer credential for outgoing requests (API key when anonymous)."""
        session = await self.get_session()
        return session.access_token if session is not None else self.api_key

    async def auth_headers(self) -> dict[str, str]:
        token = await self.access_token()
        return {"apikey": self.api_key, "Authorization": f"Bearer {token}"}

    async def _call(self, call: Awaitable[Session]) -> Session:
        """Await an endpoint call, translating unexpected failures into AuthError."""
        try:
            return await call
        except AuthError:
            raise
        except Exception as e:
            raise AuthError(AuthErrorReason.ENDPOINT_UNAVAILABLE, str(e)) from e
