"""
Realtime transport - persistent bidirectional connection interface.

The subscription manager only speaks JSON messages; any connection
library can back it by implementing RealtimeTransport.

Contract:
  - connect() raises RealtimeConnectionError on failure
    (reason TOKEN_EXPIRED when the server rejects the access token)
  - receive() returns None once the connection is closed
  - send() raises RealtimeConnectionError when the message cannot be sent
"""

from __future__ import annotations

import json
import logging
from abc import ABC, abstractmethod
from typing import Any, Optional

import aiohttp

from ..core.errors import ConnectionErrorReason, RealtimeConnectionError

logger = logging.getLogger(__name__)


class RealtimeTransport(ABC):
    """Interface for the realtime connection."""

    @abstractmethod
    async def connect(self, url: str, params: dict[str, str]) -> None:
        """Open the connection."""
        ...

    @abstractmethod
    async def send(self, message: dict[str, Any]) -> None:
        """Send one JSON message."""
        ...

    @abstractmethod
    async def receive(self) -> Optional[dict[str, Any]]:
        """
        Wait for the next inbound message.

        Returns None if the connection closed.
        """
        ...

    @abstractmethod
    async def close(self) -> None:
        """Close the connection. Safe to call when not connected."""
        ...

    @abstractmethod
    def is_connected(self) -> bool:
        ...


class AiohttpTransport(RealtimeTransport):
    """
    Websocket transport backed by aiohttp.

    Usage:
        transport = AiohttpTransport()
        await transport.connect("wss://x.example.co/realtime/v1/websocket", {"apikey": key})
        await transport.send({"type": "ping"})
        message = await transport.receive()
    """

    def __init__(self, session: Optional[aiohttp.ClientSession] = None):
        self._session = session
        self._owns_session = session is None
        self._ws: Optional[aiohttp.ClientWebSocketResponse] = None

    async def connect(self, url: str, params: dict[str, str]) -> None:
        if self._session is None or self._session.closed:
            self._session = aiohttp.ClientSession()
            self._owns_session = True

        try:
            self._ws = await self._session.ws_connect(url, params=params)
        except aiohttp.WSServerHandshakeError as e:
            reason = (
                ConnectionErrorReason.TOKEN_EXPIRED
                if e.status == 401
                else ConnectionErrorReason.CONNECT_FAILED
            )
            raise RealtimeConnectionError(reason, f"Handshake rejected ({e.status}): {e.message}") from e
        except (aiohttp.ClientError, OSError) as e:
            raise RealtimeConnectionError(ConnectionErrorReason.CONNECT_FAILED, str(e)) from e

        logger.info(f"Realtime websocket connected: {url}")

    async def send(self, message: dict[str, Any]) -> None:
        if not self.is_connected():
            raise RealtimeConnectionError(ConnectionErrorReason.SEND_FAILED, "Websocket is not connected")
        try:
            await self._ws.send_str(json.dumps(message, default=str))
        except (aiohttp.ClientError, ConnectionError, RuntimeError) as e:
            raise RealtimeConnectionError(ConnectionErrorReason.SEND_FAILED, str(e)) from e

    async def receive(self) -> Optional[dict[str, Any]]:
        if self._ws is None:
            return None

        while True:
            msg = await self._ws.receive()

            if msg.type in (aiohttp.WSMsgType.TEXT, aiohttp.WSMsgType.BINARY):
                try:
                    data = json.loads(msg.data)
                except (json.JSONDecodeError, UnicodeDecodeError):
                    logger.warning(f"Invalid JSON on realtime socket: {str(msg.data)[:100]}")
                    continue
                if isinstance(data, dict):
                    return data
                logger.warning(f"Ignoring non-object realtime message: {str(data)[:100]}")

            elif msg.type in (
                aiohttp.WSMsgType.CLOSE,
                aiohttp.WSMsgType.CLOSING,
                aiohttp.WSMsgType.CLOSED,
                aiohttp.WSMsgType.ERROR,
            ):
                logger.info(f"Realtime websocket closed ({msg.type.name})")
                return None

    async def close(self) -> None:
        if self._ws is not None:
            await self._ws.close()
            self._ws = None
        if self._session is not None and self._owns_session:
            await self._session.close()
            self._session = None

    def is_connected(self) -> bool:
        return self._ws is not None and not self._ws.closed
