"""Abstract interface for the ticket datastore."""

from collections.abc import Iterable
from datetime import datetime
from typing import Protocol

from ..models.message import DeliveryStatus, Direction, Message
from ..models.ticket import Category, Ticket, TicketStatus, User


class TicketRepository(Protocol):
    """Persistence for users, categories, tickets and messages.

    Every method borrows a short-lived connection; no transaction is held
    between calls. Implementations raise ``PersistenceError`` when the
    datastore is unavailable.
    """

    async def initialize(self) -> None:
        """Create the schema if it does not exist yet."""
        ...

    async def ping(self) -> bool:
        """Return True if the datastore answers a trivial query."""
        ...

    # Categories

    async def upsert_category(self, category: Category) -> Category: ...

    async def get_category(self, category_id: int) -> Category | None: ...

    async def find_category(self, key: str) -> Category | None:
        """Look a category up by numeric id or case-insensitive name."""
        ...

    async def list_categories(self) -> list[Category]: ...

    # Users

    async def get_or_create_user(self, origin_platform_id: str, display_name: str) -> User:
        """Return the user for an origin identity, creating it on first sight.

        An existing user's display name is refreshed when it changed.
        """
        ...

    async def get_user(self, user_id: int) -> User | None: ...

    # Tickets

    async def find_open_ticket_for_user(self, user_id: int) -> Ticket | None:
        """Return the user's non-terminal ticket, if any."""
        ...

    async def create_ticket(self, user_id: int, category_id: int) -> Ticket:
        """Insert a new ``open`` ticket.

        Raises:
            PersistenceError: If the user already has a non-terminal ticket
        """
        ...

    async def get_ticket(self, ticket_id: int) -> Ticket | None: ...

    async def find_ticket_by_channel(self, channel_ref: str) -> Ticket | None: ...

    async def list_tickets(self, statuses: Iterable[TicketStatus] | None = None) -> list[Ticket]:
        ...

    async def update_ticket_status(
        self,
        ticket_id: int,
        status: TicketStatus,
        *,
        claimed_by: str | None = None,
        closed_at: datetime | None = None,
    ) -> Ticket:
        """Write a new status (and optional claim/close fields); return the stored row."""
        ...

    async def set_destination_channel(self, ticket_id: int, channel_ref: str) -> Ticket:
        """Assign the destination channel unless one is already set."""
        ...

    # Messages

    async def insert_message(
        self,
        ticket_id: int,
        direction: Direction,
        origin_id: str,
        content: str,
        *,
        author_name: str = "",
        source_ref: str | None = None,
        delivery_status: DeliveryStatus = DeliveryStatus.PENDING,
    ) -> Message: ...

    async def find_message_by_source(self, source_ref: str) -> Message | None:
        """Return the message stored for a platform event id, if any."""
        ...

    async def update_message_delivery_status(
        self,
        message_id: int,
        status: DeliveryStatus,
        delivered_at: datetime | None = None,
    ) -> None: ...

    async def list_queued_messages(self) -> list[Message]:
        """Return every message not yet delivered, in enqueue order."""
        ...
