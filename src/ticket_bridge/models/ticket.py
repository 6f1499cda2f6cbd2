"""Data models for users, categories and tickets."""

from dataclasses import dataclass
from datetime import datetime
from enum import Enum


class TicketStatus(Enum):
    """Lifecycle status of a support ticket."""

    OPEN = "open"
    CLAIMED = "claimed"
    PENDING_CLOSE = "pending_close"
    CLOSED = "closed"
    TRANSCRIPT = "transcript"
    DELETED = "deleted"

    @property
    def is_terminal(self) -> bool:
        """Return True for statuses a ticket never leaves (except closed -> transcript)."""
        return self in TERMINAL_STATUSES


NON_TERMINAL_STATUSES = frozenset(
    {TicketStatus.OPEN, TicketStatus.CLAIMED, TicketStatus.PENDING_CLOSE}
)
TERMINAL_STATUSES = frozenset(
    {TicketStatus.CLOSED, TicketStatus.TRANSCRIPT, TicketStatus.DELETED}
)


@dataclass(frozen=True)
class User:
    """An end user known by their origin-platform identity."""

    id: int
    origin_platform_id: str
    display_name: str
    created_at: datetime


@dataclass(frozen=True)
class Category:
    """A support category that decides where ticket channels live."""

    id: int
    name: str
    destination_category_ref: str
    transcript_category_ref: str | None = None


@dataclass(frozen=True)
class Ticket:
    """A support conversation between one user and the staff workspace."""

    id: int
    user_id: int
    category_id: int
    status: TicketStatus
    created_at: datetime
    destination_channel_ref: str | None = None
    claimed_by: str | None = None
    closed_at: datetime | None = None

    @property
    def is_terminal(self) -> bool:
        """Return True if the ticket is closed, archived or deleted."""
        return self.status.is_terminal
