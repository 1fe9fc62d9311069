"""Shared fixtures and collaborator fakes for basekit tests.

The fakes stand in for the three remote collaborators (auth endpoint,
request executor, realtime transport) so tests can drive the client
without a network.
"""

import asyncio
import time
from typing import Any, Callable, Optional

import pytest
import pytest_asyncio

from basekit.auth.endpoint import AuthEndpoint
from basekit.auth.models import Session, User
from basekit.auth.session import SessionManager
from basekit.auth.store import CredentialStore
from basekit.core.errors import ConnectionErrorReason, RealtimeConnectionError
from basekit.core.query_types import ExecutorResult, QueryDescriptor
from basekit.query.executor import RequestExecutor
from basekit.realtime.backoff import Backoff
from basekit.realtime.manager import RealtimeManager
from basekit.realtime.transport import RealtimeTransport

API_KEY = "public-anon-key"


def make_session(
    user_id: str = "user-1",
    *,
    access_token: str = "access-1",
    refresh_token: str = "refresh-1",
    expires_in: float = 3600,
    email: str = "ada@example.com",
) -> Session:
    """Build a session expiring expires_in seconds from now."""
    return Session(
        user=User(id=user_id, email=email),
        access_token=access_token,
        refresh_token=refresh_token,
        expires_at=time.time() + expires_in,
    )


async def wait_until(predicate: Callable[[], bool], timeout: float = 2.0) -> None:
    """Poll predicate until true, failing the test on timeout."""
    deadline = time.monotonic() + timeout
    while not predicate():
        if time.monotonic() > deadline:
            raise AssertionError("Condition not met before timeout")
        await asyncio.sleep(0.005)


class FakeAuthEndpoint(AuthEndpoint):
    """Auth endpoint fake that counts calls and can be told to fail or block."""

    def __init__(self):
        self.calls: list[tuple[str, Any]] = []
        self.fail_with: dict[str, Exception] = {}
        self.refresh_gate: Optional[asyncio.Event] = None
        self._counter = 0

    def count(self, name: str) -> int:
        return sum(1 for call, _ in self.calls if call == name)

    def _next_session(self, email: str = "ada@example.com") -> Session:
        self._counter += 1
        return make_session(
            email=email,
            access_token=f"access-{self._counter + 1}",
            refresh_token=f"refresh-{self._counter + 1}",
        )

    async def sign_up(self, email: str, password: str) -> Session:
        self.calls.append(("sign_up", email))
        if "sign_up" in self.fail_with:
            raise self.fail_with["sign_up"]
        return self._next_session(email)

    async def sign_in(self, email: str, password: str) -> Session:
        self.calls.append(("sign_in", email))
        if "sign_in" in self.fail_with:
            raise self.fail_with["sign_in"]
        return self._next_session(email)

    async def refresh(self, refresh_token: str) -> Session:
        self.calls.append(("refresh", refresh_token))
        if self.refresh_gate is not None:
            await self.refresh_gate.wait()
        if "refresh" in self.fail_with:
            raise self.fail_with["refresh"]
        return self._next_session()

    async def sign_out(self, access_token: str) -> None:
        self.calls.append(("sign_out", access_token))
        if "sign_out" in self.fail_with:
            raise self.fail_with["sign_out"]


class StubExecutor(RequestExecutor):
    """Request executor that records descriptors and replays scripted results."""

    def __init__(self, rows: Optional[list[dict[str, Any]]] = None):
        self.rows = rows if rows is not None else []
        self.count: Optional[int] = None
        self.calls: list[tuple[QueryDescriptor, dict[str, str]]] = []
        # Raised (in order) before falling back to returning rows
        self.errors: list[Exception] = []
        self.delay: float = 0.0

    async def execute(self, descriptor: QueryDescriptor, headers: dict[str, str]) -> ExecutorResult:
        self.calls.append((descriptor, headers))
        if self.delay:
            await asyncio.sleep(self.delay)
        if self.errors:
            raise self.errors.pop(0)
        return ExecutorResult(rows=self.rows, count=self.count)


class FakeTransport(RealtimeTransport):
    """In-memory realtime transport; tests push server messages and inspect sends."""

    def __init__(self):
        self.connects: list[dict[str, str]] = []
        self.sent: list[dict[str, Any]] = []
        self.connect_errors: list[Exception] = []
        self._inbox: asyncio.Queue = asyncio.Queue()
        self._connected = False

    async def connect(self, url: str, params: dict[str, str]) -> None:
        self.connects.append(dict(params))
        if self.connect_errors:
            raise self.connect_errors.pop(0)
        self._inbox = asyncio.Queue()
        self._connected = True

    async def send(self, message: dict[str, Any]) -> None:
        if not self._connected:
            raise RealtimeConnectionError(ConnectionErrorReason.SEND_FAILED, "closed")
        self.sent.append(message)

    async def receive(self) -> Optional[dict[str, Any]]:
        message = await self._inbox.get()
        if message is None:
            self._connected = False
        return message

    async def close(self) -> None:
        self._connected = False
        self._inbox.put_nowait(None)

    def is_connected(self) -> bool:
        return self._connected

    # === Test helpers ===

    def push(self, message: dict[str, Any]) -> None:
        self._inbox.put_nowait(message)

    def drop(self) -> None:
        """Simulate the server closing the connection."""
        self._inbox.put_nowait(None)

    def sent_of(self, msg_type: str) -> list[dict[str, Any]]:
        return [m for m in self.sent if m.get("type") == msg_type]

    def ack(self, channel_id: str) -> None:
        self.push({"type": "subscribed", "channel_id": channel_id})


@pytest.fixture
def endpoint():
    """Fixture providing a fake auth endpoint."""
    return FakeAuthEndpoint()


@pytest.fixture
def store():
    """Fixture providing an empty in-memory credential store."""
    return CredentialStore()


@pytest.fixture
def auth(endpoint, store):
    """Fixture providing a session manager over the fake endpoint."""
    return SessionManager(endpoint, store, API_KEY)


@pytest.fixture
def executor():
    """Fixture providing a stub executor with two posts."""
    return StubExecutor(rows=[{"id": 1, "title": "A"}, {"id": 2, "title": "B"}])


@pytest.fixture
def transport():
    """Fixture providing the in-memory realtime transport."""
    return FakeTransport()


@pytest_asyncio.fixture
async def manager(transport, auth):
    """Fixture providing a realtime manager with fast, jitter-free backoff."""
    manager = RealtimeManager(
        "ws://localhost/realtime/v1/websocket",
        transport,
        auth,
        api_key=API_KEY,
        backoff=Backoff(base_delay=0.01, max_delay=0.05, jitter=0),
        heartbeat_interval=None,
    )
    yield manager
    await manager.close()
