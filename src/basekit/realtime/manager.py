"""
Realtime subscription manager.

Owns one shared connection to the realtime endpoint and multiplexes table
subscriptions over it:
- registers subscriptions and tracks server acks
- fans change events out to matching subscriptions (client-side filtered)
- reconnects with exponential backoff and re-registers subscriptions
- refreshes the access token when the server reports it expired

Connection state machine:
    DISCONNECTED -> CONNECTING -> CONNECTED -> RECONNECTING -> CONNECTED
    any state -> CLOSED (close())
"""

from __future__ import annotations

import asyncio
import itertools
import logging
from enum import Enum
from typing import Any, Callable, Iterable, Optional, Union

from pydantic import ValidationError

from ..auth.models import AuthEvent, Session
from ..auth.session import SessionManager
from ..core.errors import (
    AuthError,
    ConnectionErrorReason,
    RealtimeConnectionError,
    SubscriptionError,
)
from .backoff import Backoff
from .subscription import (
    ALL_EVENTS,
    ChangeCallback,
    ChangeEvent,
    ClosedCallback,
    Subscription,
    SubscriptionState,
    normalize_events,
)
from .transport import RealtimeTransport

logger = logging.getLogger(__name__)

# Server error reasons that end a subscription for good
INVALIDATION_REASONS = frozenset({"forbidden", "access_revoked"})


class ConnectionState(str, Enum):
    DISCONNECTED = "disconnected"
    CONNECTING = "connecting"
    CONNECTED = "connected"
    RECONNECTING = "reconnecting"
    CLOSED = "closed"


StateListener = Callable[[ConnectionState], None]


async def _invoke(callback: Callable[..., Any], *args: Any) -> None:
    result = callback(*args)
    if asyncio.iscoroutine(result) or isinstance(result, asyncio.Future):
        await result


class RealtimeManager:
    """
    Shared realtime connection with table subscriptions.

    Usage:
        manager = RealtimeManager(url, transport, auth, api_key=key)
        sub = await manager.subscribe("messages", on_change, events="insert",
                                      column_filter=("room_id", 1))
        await sub.wait_active(timeout=5)
        ...
        await manager.unsubscribe(sub)
        await manager.close()
    """

    def __init__(
        self,
        url: str,
        transport: RealtimeTransport,
        auth: SessionManager,
        *,
        api_key: str,
        backoff: Optional[Backoff] = None,
        heartbeat_interval: Optional[float] = 25.0,
    ):
        """
        Initialize manager. The connection is opened lazily on first subscribe().

        Args:
            url: Realtime websocket URL
            transport: Connection implementation
            auth: Session manager providing (and refreshing) access tokens
            api_key: Public API key sent on connect
            backoff: Reconnect delay policy
            heartbeat_interval: Seconds between pings (None disables)
        """
        self.url = url
        self.transport = transport
        self.auth = auth
        self.api_key = api_key
        self.backoff = backoff or Backoff()
        self.heartbeat_interval = heartbeat_interval

        self._subscriptions: dict[str, Subscription] = {}
        self._ids = itertools.count(1)
        self._state = ConnectionState.DISCONNECTED
        self._state_listeners: list[StateListener] = []
        self._generation = 0
        self._healthy = False
        self._closing = False

        self._task: Optional[asyncio.Task] = None
        self._heartbeat_task: Optional[asyncio.Task] = None
        self._background: set[asyncio.Task] = set()
        self._send_lock = asyncio.Lock()

        self._unsubscribe_auth = auth.store.subscribe(self._on_credentials_changed)

    # === Introspection ===

    @property
    def state(self) -> ConnectionState:
        return self._state

    @property
    def subscriptions(self) -> list[Subscription]:
        """Open subscriptions in registration order."""
        return list(self._subscriptions.values())

    def on_state_change(self, listener: StateListener) -> Callable[[], None]:
        """Register a connection state listener; returns an unsubscribe callable."""
        self._state_listeners.append(listener)

        def remove() -> None:
            if listener in self._state_listeners:
                self._state_listeners.remove(listener)

        return remove

    def _set_state(self, state: ConnectionState) -> None:
        if state is self._state:
            return
        logger.debug(f"Realtime state {self._state.value} -> {state.value}")
        self._state = state
        for listener in list(self._state_listeners):
            try:
                listener(state)
            except Exception as e:
                logger.error(f"Realtime state listener error: {e}", exc_info=True)

    # === Public API ===

    async def subscribe(
        self,
        table: str,
        callback: ChangeCallback,
        *,
        events: Union[str, Iterable[str]] = ALL_EVENTS,
        column_filter: Optional[tuple[str, Any]] = None,
        on_closed: Optional[ClosedCallback] = None,
    ) -> Subscription:
        """
        Subscribe to row changes on a table.

        Args:
            table: Table name
            callback: Called with each matching ChangeEvent (sync or async)
            events: "*" or any of "insert", "update", "delete"
            column_filter: Optional (column, value) equality filter
            on_closed: Called with (subscription, error) once the subscription
                is closed; error is a SubscriptionError when the server revoked it

        Returns:
            Pending Subscription; await sub.wait_active() for the server ack

        Raises:
            RuntimeError: If the manager is closed
            ValueError: On an invalid event or column filter
        """
        if self._state is ConnectionState.CLOSED:
            raise RuntimeError("Realtime manager is closed")
        if column_filter is not None and len(column_filter) != 2:
            raise ValueError("column_filter must be a (column, value) pair")

        subscription = Subscription(
            channel_id=f"{table}:{next(self._ids)}",
            table=table,
            events=normalize_events(events),
            column_filter=tuple(column_filter) if column_filter is not None else None,
            callback=callback,
            on_closed=on_closed,
        )
        self._subscriptions[subscription.channel_id] = subscription
        logger.info(f"Subscribing {subscription.channel_id} (events={sorted(subscription.events)})")

        self._ensure_running()
        if self._state is ConnectionState.CONNECTED:
            try:
                await self._register(subscription)
            except RealtimeConnectionError as e:
                # The connection loop re-registers once it reconnects
                logger.warning(f"Registration of {subscription.channel_id} deferred: {e}")

        return subscription

    async def unsubscribe(self, subscription: Subscription) -> None:
        """
        Stop a subscription. No further events reach its callback.

        Teardown on the server is best-effort.
        """
        current = self._subscriptions.pop(subscription.channel_id, None)
        if current is None or current.is_closed:
            return

        was_registered = current.registered_on is not None and current.registered_on == self._generation
        on_closed = current._close()
        logger.info(f"Unsubscribed {current.channel_id}")

        if was_registered and self._state is ConnectionState.CONNECTED:
            try:
                async with self._send_lock:
                    await self._send(current.teardown_message())
            except RealtimeConnectionError as e:
                logger.warning(f"Teardown of {current.channel_id} not sent: {e}")

        await self._notify_closed(current, on_closed, None)

    async def remove_all(self) -> None:
        """Unsubscribe every open subscription."""
        for subscription in list(self._subscriptions.values()):
            await self.unsubscribe(subscription)

    async def close(self) -> None:
        """Close every subscription and the connection. The manager is unusable afterwards."""
        if self._state is ConnectionState.CLOSED:
            return
        self._closing = True

        closed = []
        for subscription in list(self._subscriptions.values()):
            closed.append((subscription, subscription._close()))
        self._subscriptions.clear()

        current = asyncio.current_task()
        for task in (self._heartbeat_task, self._task, *self._background):
            # Called from a callback on the connection task: the loop exits on _closing
            if task is current:
                continue
            if task is not None and not task.done():
                task.cancel()
                try:
                    await task
                except asyncio.CancelledError:
                    pass
        self._task = None
        self._heartbeat_task = None

        await self._close_transport()
        self._unsubscribe_auth()
        self._set_state(ConnectionState.CLOSED)
        logger.info("Realtime manager closed")

        for subscription, on_closed in closed:
            await self._notify_closed(subscription, on_closed, None)

    # === Connection loop ===

    def _ensure_running(self) -> None:
        if self._task is None or self._task.done():
            self._task = asyncio.create_task(self._run())

    async def _run(self) -> None:
        """Connect, serve, and reconnect until close()."""
        attempt = 0
        while not self._closing:
            first = self._generation == 0 and attempt == 0
            self._set_state(ConnectionState.CONNECTING if first else ConnectionState.RECONNECTING)

            try:
                await self._connect()
            except RealtimeConnectionError as e:
                logger.warning(f"Realtime connect failed (attempt {attempt + 1}): {e}")
                await self._wait_backoff(attempt)
                attempt += 1
                continue

            self._generation += 1
            self._healthy = False
            self._set_state(ConnectionState.CONNECTED)
            logger.info(f"Realtime connected (generation {self._generation})")
            self._start_heartbeat()

            try:
                await self._register_all()
                await self._receive_loop()
            except RealtimeConnectionError as e:
                logger.warning(f"Realtime connection lost: {e}")
            except Exception as e:
                logger.error(f"Realtime connection error: {e}", exc_info=True)
            finally:
                self._stop_heartbeat()
                await self._close_transport()

            if self._closing:
                break

            for subscription in self._subscriptions.values():
                subscription._reset()
            attempt = 0 if self._healthy else attempt + 1
            self._set_state(ConnectionState.RECONNECTING)
            await self._wait_backoff(attempt)

    async def _wait_backoff(self, attempt: int) -> None:
        delay = self.backoff.compute(attempt)
        logger.debug(f"Realtime reconnect in {delay:.2f}s")
        await asyncio.sleep(delay)

    async def _connect(self) -> None:
        params = {"apikey": self.api_key, "access_token": await self._current_token()}
        try:
            await self._open(params)
        except RealtimeConnectionError as e:
            if e.reason is not ConnectionErrorReason.TOKEN_EXPIRED or not self.auth.is_authenticated:
                raise
            logger.info("Realtime connect rejected with expired token, refreshing")
            await self._refresh_token()
            params["access_token"] = await self._current_token()
            await self._open(params)

    async def _open(self, params: dict[str, str]) -> None:
        try:
            await self.transport.connect(self.url, params)
        except RealtimeConnectionError:
            raise
        except Exception as e:
            raise RealtimeConnectionError(ConnectionErrorReason.CONNECT_FAILED, str(e)) from e

    async def _close_transport(self) -> None:
        try:
            await self.transport.close()
        except Exception as e:
            logger.warning(f"Error closing realtime transport: {e}")

    async def _receive_loop(self) -> None:
        while not self._closing:
            try:
                message = await self.transport.receive()
            except RealtimeConnectionError:
                raise
            except Exception as e:
                raise RealtimeConnectionError(ConnectionErrorReason.CONNECTION_LOST, str(e)) from e

            if message is None:
                raise RealtimeConnectionError(ConnectionErrorReason.CONNECTION_LOST, "Connection closed")
            if not isinstance(message, dict):
                logger.warning(f"Ignoring non-object realtime message: {message!r}")
                continue
            try:
                await self._handle_message(message)
            except RealtimeConnectionError:
                raise
            except Exception as e:
                logger.error(f"Error handling realtime message {message.get('type')}: {e}", exc_info=True)

    # === Sending ===

    async def _send(self, message: dict[str, Any]) -> None:
        if not self.transport.is_connected():
            raise RealtimeConnectionError(ConnectionErrorReason.SEND_FAILED, "Not connected")
        try:
            await self.transport.send(message)
        except RealtimeConnectionError:
            raise
        except Exception as e:
            raise RealtimeConnectionError(ConnectionErrorReason.SEND_FAILED, str(e)) from e
        logger.debug(f"Realtime sent {message.get('type')} {message.get('channel_id', '')}")

    async def _current_token(self) -> str:
        try:
            return await self.auth.access_token()
        except AuthError as e:
            logger.warning(f"Could not get a fresh access token: {e}")
            session = self.auth.store.get()
            return session.access_token if session is not None else self.api_key

    async def _refresh_token(self) -> None:
        try:
            await self.auth.refresh()
        except AuthError as e:
            raise RealtimeConnectionError(ConnectionErrorReason.TOKEN_EXPIRED, str(e)) from e

    async def _register(self, subscription: Subscription) -> None:
        """Send the registration once per connection generation."""
        async with self._send_lock:
            if subscription.is_closed or subscription.registered_on == self._generation:
                return
            token = await self._current_token()
            await self._send(subscription.registration_message(token))
            subscription.registered_on = self._generation

    async def _register_all(self) -> None:
        for subscription in list(self._subscriptions.values()):
            if not subscription.is_closed:
                await self._register(subscription)

    # === Inbound ===

    async def _handle_message(self, message: dict[str, Any]) -> None:
        msg_type = message.get("type")

        if msg_type == "change":
            self._healthy = True
            try:
                event = ChangeEvent.from_message(message)
            except ValidationError as e:
                logger.warning(f"Malformed change message: {e}")
                return
            await self._dispatch(event)

        elif msg_type == "subscribed":
            self._healthy = True
            subscription = self._lookup(message)
            if subscription is not None and subscription.state is SubscriptionState.PENDING:
                subscription._activate()
                logger.info(f"Subscription {subscription.channel_id} active")

        elif msg_type == "error":
            await self._handle_error(message)

        elif msg_type == "pong":
            self._healthy = True

        else:
            logger.warning(f"Unknown realtime message type: {msg_type}")

    def _lookup(self, message: dict[str, Any]) -> Optional[Subscription]:
        channel_id = message.get("channel_id")
        if not isinstance(channel_id, str):
            return None
        return self._subscriptions.get(channel_id)

    async def _handle_error(self, message: dict[str, Any]) -> None:
        reason = str(message.get("reason", ""))
        text = str(message.get("message", ""))
        subscription = self._lookup(message)

        if subscription is None:
            if reason == "token_expired":
                raise RealtimeConnectionError(ConnectionErrorReason.TOKEN_EXPIRED, text or "Access token expired")
            logger.warning(f"Realtime server error ({reason}): {text}")
            return

        if reason == "token_expired":
            await self._retry_registration(subscription)
        elif reason in INVALIDATION_REASONS:
            await self._invalidate(subscription, SubscriptionError(reason, subscription.channel_id, text))
        else:
            logger.warning(f"Subscription {subscription.channel_id} error ({reason}): {text}")

    async def _retry_registration(self, subscription: Subscription) -> None:
        """Refresh and register again once; a second rejection forces a reconnect."""
        if subscription.auth_retried:
            subscription.auth_retried = False
            raise RealtimeConnectionError(
                ConnectionErrorReason.TOKEN_EXPIRED,
                f"Registration of {subscription.channel_id} rejected after token refresh",
            )

        logger.info(f"Token expired for {subscription.channel_id}, refreshing and retrying")
        subscription.auth_retried = True
        await self._refresh_token()
        subscription.registered_on = None
        await self._register(subscription)

    async def _invalidate(self, subscription: Subscription, error: SubscriptionError) -> None:
        self._subscriptions.pop(subscription.channel_id, None)
        on_closed = subscription._close(error)
        logger.warning(f"Subscription {subscription.channel_id} invalidated by server: {error.reason}")
        await self._notify_closed(subscription, on_closed, error)

    async def _dispatch(self, event: ChangeEvent) -> None:
        """Deliver an event to matching active subscriptions in registration order."""
        for subscription in list(self._subscriptions.values()):
            # State is re-checked per subscription; an earlier callback may have unsubscribed it
            if not subscription.is_active or not subscription.matches(event):
                continue
            callback = subscription.callback
            if callback is None:
                continue
            try:
                await _invoke(callback, event)
            except Exception as e:
                logger.error(f"Error in callback for {subscription.channel_id}: {e}", exc_info=True)

    async def _notify_closed(
        self,
        subscription: Subscription,
        on_closed: Optional[ClosedCallback],
        error: Optional[SubscriptionError],
    ) -> None:
        if on_closed is None:
            return
        try:
            await _invoke(on_closed, subscription, error)
        except Exception as e:
            logger.error(f"Error in on_closed for {subscription.channel_id}: {e}", exc_info=True)

    # === Heartbeat / token rotation ===

    def _start_heartbeat(self) -> None:
        if self.heartbeat_interval:
            self._heartbeat_task = asyncio.create_task(self._heartbeat())

    def _stop_heartbeat(self) -> None:
        if self._heartbeat_task is not None:
            self._heartbeat_task.cancel()
            self._heartbeat_task = None

    async def _heartbeat(self) -> None:
        while True:
            await asyncio.sleep(self.heartbeat_interval)
            try:
                await self._send({"type": "ping"})
            except RealtimeConnectionError as e:
                logger.debug(f"Heartbeat stopped: {e}")
                return

    def _on_credentials_changed(self, event: AuthEvent, session: Optional[Session]) -> None:
        if event is AuthEvent.SIGNED_OUT:
            # Downgrade the live connection to anonymous access
            token = self.api_key
        elif event in (AuthEvent.TOKEN_REFRESHED, AuthEvent.SIGNED_IN) and session is not None:
            token = session.access_token
        else:
            return
        if self._state is not ConnectionState.CONNECTED:
            return
        try:
            loop = asyncio.get_running_loop()
        except RuntimeError:
            return
        task = loop.create_task(self._push_token(token))
        self._background.add(task)
        task.add_done_callback(self._background.discard)

    async def _push_token(self, token: str) -> None:
        try:
            await self._send({"type": "access_token", "access_token": token})
        except RealtimeConnectionError as e:
            logger.debug(f"Token rotation not sent: {e}")
