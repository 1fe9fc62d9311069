"""
Realtime module - table change subscriptions over one shared connection.

Provides:
- RealtimeManager: Connection lifecycle, registration and event fan-out
- Subscription / ChangeEvent: Caller-facing handle and event payload
- RealtimeTransport / AiohttpTransport: Connection interface and websocket default
- Backoff: Reconnect delay policy
"""

from __future__ import annotations

from .backoff import Backoff
from .manager import ConnectionState, RealtimeManager
from .subscription import ChangeEvent, Subscription, SubscriptionState, normalize_events
from .transport import AiohttpTransport, RealtimeTransport

__all__ = [
    # Manager
    "RealtimeManager",
    "ConnectionState",
    # Subscriptions
    "Subscription",
    "SubscriptionState",
    "ChangeEvent",
    "normalize_events",
    # Transport
    "RealtimeTransport",
    "AiohttpTransport",
    # Backoff
    "Backoff",
]
