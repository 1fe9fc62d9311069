"""
Credential store - holds at most one Session.

Provides:
- CredentialStore: atomic get/set/clear with change listeners
- SessionStorage backends: in-memory (default) and JSON file
"""

from __future__ import annotations

import logging
from abc import ABC, abstractmethod
from pathlib import Path
from typing import Callable, Optional

from pydantic import ValidationError

from .models import AuthEvent, Session

logger = logging.getLogger(__name__)

SessionListener = Callable[[AuthEvent, Optional[Session]], None]


class SessionStorage(ABC):
    """Where the store keeps the session between process runs."""

    @abstractmethod
    def load(self) -> Optional[Session]:
        ...

    @abstractmethod
    def save(self, session: Session) -> None:
        ...

    @abstractmethod
    def clear(self) -> None:
        ...


class MemorySessionStorage(SessionStorage):
    """Keeps nothing beyond the process lifetime."""

    def __init__(self):
        self._session: Optional[Session] = None

    def load(self) -> Optional[Session]:
        return self._session

    def save(self, session: Session) -> None:
        self._session = session

    def clear(self) -> None:
        self._session = None


class FileSessionStorage(SessionStorage):
    """
    Persists the session as JSON.

    A corrupt or unreadable file is treated as "no session".
    """

    def __init__(self, path: Path | str):
        self.path = Path(path)

    def load(self) -> Optional[Session]:
        if not self.path.exists():
            return None
        try:
            return Session.model_validate_json(self.path.read_text())
        except (OSError, ValidationError) as e:
            logger.warning(f"Ignoring unreadable session file {self.path}: {e}")
            return None

    def save(self, session: Session) -> None:
        self.path.parent.mkdir(parents=True, exist_ok=True)
        self.path.write_text(session.model_dump_json())
        try:
            self.path.chmod(0o600)
        except OSError:
            logger.debug(f"Could not restrict permissions on {self.path}")

    def clear(self) -> None:
        self.path.unlink(missing_ok=True)


class CredentialStore:
    """
    Storage surface for the current Session.

    Only the SessionManager writes to it. Listeners are called synchronously
    after every change with (event, session); session is None after a clear.

    Usage:
        store = CredentialStore()
        unsubscribe = store.subscribe(lambda event, session: print(event))
        store.set(session, AuthEvent.SIGNED_IN)
        store.get()
        store.clear()
        unsubscribe()
    """

    def __init__(self, storage: Optional[SessionStorage] = None):
        self._storage = storage or MemorySessionStorage()
        self._session: Optional[Session] = None
        self._listeners: list[SessionListener] = []

    def get(self) -> Optional[Session]:
        """Return the current session, or None when anonymous."""
        return self._session

    def set(self, session: Session, event: AuthEvent = AuthEvent.SIGNED_IN) -> None:
        """Replace the current session and notify listeners."""
        self._session = session
        try:
            self._storage.save(session)
        except OSError as e:
            logger.warning(f"Failed to persist session: {e}")
        self._notify(event, session)

    def clear(self) -> None:
        """Drop the current session and notify listeners."""
        had_session = self._session is not None
        self._session = None
        try:
            self._storage.clear()
        except OSError as e:
            logger.warning(f"Failed to clear persisted session: {e}")
        if had_session:
            self._notify(AuthEvent.SIGNED_OUT, None)

    def restore(self) -> Optional[Session]:
        """
        Load a persisted session, if any, and announce it as INITIAL_SESSION.

        Returns:
            The restored session or None
        """
        session = self._storage.load()
        if session is not None:
            self._session = session
            logger.info(f"Restored session for user {session.user_id}")
        self._notify(AuthEvent.INITIAL_SESSION, session)
        return session

    def subscribe(self, listener: SessionListener) -> Callable[[], None]:
        """
        Register a change listener.

        Returns:
            Callable that removes the listener
        """
        self._listeners.append(listener)

        def unsubscribe() -> None:
            if listener in self._listeners:
                self._listeners.remove(listener)

        return unsubscribe

    def _notify(self, event: AuthEvent, session: Optional[Session]) -> None:
        for listener in list(self._listeners):
            try:
                listener(event, session)
            except Exception as e:
                logger.error(f"Error in credential listener for {event.value}: {e}", exc_info=True)
