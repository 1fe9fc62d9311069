"""
Basekit client - main entry point tying auth, queries and realtime together.

Usage:
    from basekit import create_client

    async with create_client("https://project.example.co", "public-anon-key") as client:
        await client.auth.sign_in("ada@example.com", "secret-password")

        result = await client.table("posts").select("id, title").eq("author_id", 1)
        print(result.data)

        sub = await client.subscribe("posts", print, events="insert")
        await sub.wait_active(timeout=5)
"""

from __future__ import annotations

import logging
from typing import Any, Iterable, Optional, Union

from .auth.endpoint import AuthEndpoint, HttpAuthEndpoint
from .auth.session import SessionManager
from .auth.store import CredentialStore, FileSessionStorage, SessionStorage
from .core.config import ClientSettings
from .core.query_types import QueryDescriptor
from .query.builder import QueryBuilder
from .query.executor import HttpRequestExecutor, RequestExecutor
from .realtime.backoff import Backoff
from .realtime.manager import RealtimeManager
from .realtime.subscription import ALL_EVENTS, ChangeCallback, ClosedCallback, Subscription
from .realtime.transport import AiohttpTransport, RealtimeTransport

logger = logging.getLogger(__name__)


class Client:
    """
    Client for one backend project.

    Owns a CredentialStore shared by the SessionManager (client.auth), every
    query builder created by table(), and the RealtimeManager (client.realtime).
    Collaborators default to the HTTP / websocket implementations and can be
    swapped (e.g. for tests).
    """

    def __init__(
        self,
        settings: ClientSettings,
        *,
        auth_endpoint: Optional[AuthEndpoint] = None,
        executor: Optional[RequestExecutor] = None,
        transport: Optional[RealtimeTransport] = None,
        storage: Optional[SessionStorage] = None,
    ):
        """
        Initialize client.

        Args:
            settings: Validated client settings
            auth_endpoint: Auth service collaborator (default: HttpAuthEndpoint)
            executor: Query executor (default: HttpRequestExecutor)
            transport: Realtime transport (default: AiohttpTransport)
            storage: Session persistence (default: file if persist_session, else memory)
        """
        self.settings = settings

        if storage is None and settings.persist_session:
            storage = FileSessionStorage(settings.session_file)
        self.store = CredentialStore(storage)

        self.auth = SessionManager(
            auth_endpoint or HttpAuthEndpoint(settings.auth_url, settings.api_key),
            self.store,
            settings.api_key,
            refresh_margin=settings.auth_refresh_margin,
        )
        self.executor = executor or HttpRequestExecutor(settings.rest_url, schema=settings.schema_name)
        self.realtime = RealtimeManager(
            settings.realtime_url,
            transport or AiohttpTransport(),
            self.auth,
            api_key=settings.api_key,
            backoff=Backoff(
                base_delay=settings.reconnect_base_delay,
                max_delay=settings.reconnect_max_delay,
                jitter=settings.reconnect_jitter,
            ),
            heartbeat_interval=settings.heartbeat_interval,
        )

        self.store.restore()

    def __repr__(self) -> str:
        return f"<Client {self.settings.url}>"

    def table(self, name: str) -> QueryBuilder:
        """Start a query on a table."""
        if not name:
            raise ValueError("Table name is required")
        return QueryBuilder(
            QueryDescriptor(table=name),
            self.executor,
            self.auth,
            timeout=self.settings.query_timeout,
        )

    # Alias matching the REST vocabulary
    from_ = table

    async def subscribe(
        self,
        table: str,
        callback: ChangeCallback,
        *,
        events: Union[str, Iterable[str]] = ALL_EVENTS,
        column_filter: Optional[tuple[str, Any]] = None,
        on_closed: Optional[ClosedCallback] = None,
    ) -> Subscription:
        """Shortcut for client.realtime.subscribe()."""
        return await self.realtime.subscribe(
            table,
            callback,
            events=events,
            column_filter=column_filter,
            on_closed=on_closed,
        )

    async def unsubscribe(self, subscription: Subscription) -> None:
        await self.realtime.unsubscribe(subscription)

    async def close(self) -> None:
        """Close realtime and HTTP resources. The session stays in storage."""
        await self.realtime.close()
        await self.executor.close()
        await self.auth.endpoint.close()
        logger.info(f"Client for {self.settings.url} closed")

    async def __aenter__(self) -> Client:
        return self

    async def __aexit__(self, *exc_info: Any) -> None:
        await self.close()


def create_client(url: str, api_key: str, **options: Any) -> Client:
    """
    Create a client from a base URL and public API key.

    Args:
        url: Project base URL (e.g., "https://project.example.co")
        api_key: Public API key
        **options: Other ClientSettings fields, or the collaborator overrides
            auth_endpoint / executor / transport / storage

    Returns:
        Client instance
    """
    collaborators = {
        key: options.pop(key)
        for key in ("auth_endpoint", "executor", "transport", "storage")
        if key in options
    }
    settings = ClientSettings(url=url, api_key=api_key, **options)
    return Client(settings, **collaborators)
