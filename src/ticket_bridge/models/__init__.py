"""Data models and transfer objects."""

from .message import DeliveryStatus, Direction, InboundEvent, Message, QueueEntry, Side
from .ticket import (
    NON_TERMINAL_STATUSES,
    TERMINAL_STATUSES,
    Category,
    Ticket,
    TicketStatus,
    User,
)

__all__ = [
    # Ticket models
    "TicketStatus",
    "NON_TERMINAL_STATUSES",
    "TERMINAL_STATUSES",
    "User",
    "Category",
    "Ticket",
    # Message models
    "Side",
    "Direction",
    "DeliveryStatus",
    "InboundEvent",
    "Message",
    "QueueEntry",
]
