"""
Realtime subscription handles and change events.

Provides:
- ChangeEvent: one row change pushed by the server
- Subscription: caller-facing handle for a table listener
- normalize_events: parse the event filter accepted by subscribe()
"""

from __future__ import annotations

import asyncio
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Awaitable, Callable, Iterable, Literal, Optional, Union

from pydantic import BaseModel, ConfigDict, Field

from ..core.errors import SubscriptionError

EventType = Literal["insert", "update", "delete"]

EVENT_TYPES = frozenset({"insert", "update", "delete"})
ALL_EVENTS = "*"


class SubscriptionState(str, Enum):
    PENDING = "pending"
    ACTIVE = "active"
    CLOSED = "closed"


class ChangeEvent(BaseModel):
    """
    A row change.

    Example message:
    {
        "type": "change",
        "table": "messages",
        "event_type": "INSERT",
        "old": null,
        "new": {"id": 7, "room_id": 1, "body": "hi"},
        "timestamp": "2024-06-10T06:13:20Z"
    }
    """
    model_config = ConfigDict(frozen=True)

    table: str
    event_type: EventType
    old_record: Optional[dict[str, Any]] = None
    new_record: Optional[dict[str, Any]] = None
    # Unix seconds or ISO 8601 on the wire
    timestamp: datetime = Field(default_factory=lambda: datetime.now(timezone.utc))

    @property
    def record(self) -> Optional[dict[str, Any]]:
        """The row the change is about: new values, or old ones for deletes."""
        return self.new_record if self.new_record is not None else self.old_record

    @classmethod
    def from_message(cls, message: dict[str, Any]) -> ChangeEvent:
        """
        Build from an inbound "change" message.

        Raises:
            pydantic.ValidationError: If the message is malformed
        """
        data: dict[str, Any] = {
            "table": message.get("table"),
            "event_type": str(message.get("event_type", "")).lower(),
            "old_record": message.get("old"),
            "new_record": message.get("new"),
        }
        if message.get("timestamp") is not None:
            data["timestamp"] = message["timestamp"]
        return cls.model_validate(data)


ChangeCallback = Callable[[ChangeEvent], Union[None, Awaitable[None]]]
ClosedCallback = Callable[["Subscription", Optional[SubscriptionError]], Union[None, Awaitable[None]]]


def normalize_events(events: Union[str, Iterable[str]]) -> frozenset[str]:
    """
    Normalize an event filter.

    "*" (or "all") means every event type; otherwise any of insert/update/delete.

    Raises:
        ValueError: On unknown event types or an empty filter
    """
    if isinstance(events, str):
        events = [events]
    result = set()
    for event in events:
        name = event.lower()
        if name in (ALL_EVENTS, "all"):
            return frozenset({ALL_EVENTS})
        if name not in EVENT_TYPES:
            raise ValueError(f"Unknown event type: {event!r}")
        result.add(name)
    if not result:
        raise ValueError("At least one event type is required")
    return frozenset(result)


@dataclass(eq=False)
class Subscription:
    """
    Handle returned by RealtimeManager.subscribe().

    Lifecycle: pending -> active (server ack) -> closed. A reconnect moves an
    active subscription back to pending until the server acks it again.
    """
    channel_id: str
    table: str
    events: frozenset[str]
    column_filter: Optional[tuple[str, Any]]
    callback: Optional[ChangeCallback]
    on_closed: Optional[ClosedCallback] = None
    state: SubscriptionState = SubscriptionState.PENDING
    error: Optional[SubscriptionError] = None

    # Connection generation the registration was last sent on
    registered_on: Optional[int] = field(default=None, repr=False)
    auth_retried: bool = field(default=False, repr=False)
    _settled: asyncio.Event = field(default_factory=asyncio.Event, repr=False)

    @property
    def is_active(self) -> bool:
        return self.state is SubscriptionState.ACTIVE

    @property
    def is_closed(self) -> bool:
        return self.state is SubscriptionState.CLOSED

    async def wait_active(self, timeout: Optional[float] = None) -> bool:
        """
        Wait until the server acknowledges the subscription.

        Returns:
            True if active, False if it was closed instead

        Raises:
            asyncio.TimeoutError: If neither happens within timeout
        """
        await asyncio.wait_for(self._settled.wait(), timeout)
        return self.is_active

    def matches(self, event: ChangeEvent) -> bool:
        """Client-side check of table, event type and column filter."""
        if event.table != self.table:
            return False
        if ALL_EVENTS not in self.events and event.event_type not in self.events:
            return False
        if self.column_filter is None:
            return True

        column, value = self.column_filter
        record = event.record
        if record is None or column not in record:
            return False
        return record[column] == value

    def registration_message(self, access_token: str) -> dict[str, Any]:
        column_filter = None
        if self.column_filter is not None:
            column_filter = {"column": self.column_filter[0], "value": self.column_filter[1]}
        return {
            "type": "subscribe",
            "channel_id": self.channel_id,
            "table": self.table,
            "events": sorted(self.events),
            "filter": column_filter,
            "access_token": access_token,
        }

    def teardown_message(self) -> dict[str, Any]:
        return {"type": "unsubscribe", "channel_id": self.channel_id}

    # === State transitions (driven by RealtimeManager) ===

    def _activate(self) -> None:
        self.state = SubscriptionState.ACTIVE
        self.auth_retried = False
        self._settled.set()

    def _reset(self) -> None:
        """Back to pending after the connection dropped."""
        self.state = SubscriptionState.PENDING
        self.registered_on = None
        self.auth_retried = False
        self._settled.clear()

    def _close(self, error: Optional[SubscriptionError] = None) -> Optional[ClosedCallback]:
        """Mark closed and drop callback references; returns on_closed for the caller to invoke."""
        on_closed = self.on_closed
        self.state = SubscriptionState.CLOSED
        self.error = error
        self.callback = None
        self.on_closed = None
        self._settled.set()
        return on_closed
