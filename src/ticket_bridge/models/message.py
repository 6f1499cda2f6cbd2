"""Data models for relayed messages and inbound platform events."""

from dataclasses import dataclass, field, replace
from datetime import datetime
from enum import Enum
from typing import Any


class Side(Enum):
    """Which platform an adapter or event belongs to."""

    ORIGIN = "origin"  # DM-style client used by end users
    DESTINATION = "destination"  # workspace used by staff


class Direction(Enum):
    """Direction of a message relative to the end user."""

    INBOUND = "inbound"  # user -> staff
    OUTBOUND = "outbound"  # staff or system -> user

    @property
    def target(self) -> Side:
        """Return the side this message must be delivered to."""
        return Side.DESTINATION if self is Direction.INBOUND else Side.ORIGIN


class DeliveryStatus(Enum):
    """Delivery progress of a persisted message."""

    PENDING = "pending"
    QUEUED = "queued"
    DELIVERED = "delivered"
    FAILED = "failed"


@dataclass(frozen=True)
class InboundEvent:
    """An event received from either platform adapter."""

    event_id: str
    side: Side
    source_user_id: str
    channel_ref: str
    content: str
    received_at: datetime
    display_name: str = ""
    command_hint: str | None = None  # e.g. "close" for a slash command

    # Platform-specific metadata
    raw_event: dict[str, Any] = field(default_factory=dict)


@dataclass(frozen=True)
class Message:
    """A message persisted by the bridge before any relay attempt."""

    id: int
    ticket_id: int
    direction: Direction
    origin_id: str  # author id on the platform it came from
    content: str
    delivery_status: DeliveryStatus
    enqueued_at: datetime
    author_name: str = ""
    delivered_at: datetime | None = None
    source_ref: str | None = None  # platform event id, for duplicate suppression

    def with_delivery(
        self,
        status: DeliveryStatus,
        delivered_at: datetime | None = None,
    ) -> "Message":
        """Return a copy with an updated delivery status."""
        return replace(self, delivery_status=status, delivered_at=delivered_at)


@dataclass(frozen=True)
class QueueEntry:
    """A message waiting in a per-ticket delivery queue."""

    message: Message
    enqueued_at: datetime

    @property
    def ticket_id(self) -> int:
        return self.message.ticket_id
