"""Ticket lifecycle state machine.

All status changes go through this module, including administrative
overrides. Operations on one ticket are serialized with a per-ticket lock;
ticket creation is serialized per user so a user never ends up with two
non-terminal tickets.

Allowed transitions::

    open ──────► claimed ──────► pending_close
      │            │                  │
      ├────────────┴──────────────────┴──► closed ──► transcript
      └────────────┴──────────────────┴──► deleted

Closing is idempotent: closing a terminal ticket succeeds without changing
anything, so independent close paths can race safely.
"""

from __future__ import annotations

from collections.abc import Awaitable, Callable
from dataclasses import dataclass
from datetime import UTC, datetime

import structlog

from ticket_bridge.interfaces.repository import TicketRepository
from ticket_bridge.models.ticket import NON_TERMINAL_STATUSES, Ticket, TicketStatus
from ticket_bridge.utils.async_helpers import (
    BridgeError,
    CategoryNotFound,
    KeyedLock,
    TicketNotFound,
)
from ticket_bridge.utils.logging import LogEventNames
from ticket_bridge.utils.metrics import get_metrics

log = structlog.get_logger()

TicketHook = Callable[[Ticket], Awaitable[None]]


class InvalidTransition(BridgeError):
    """A status change is not allowed from the ticket's current status.

    Attributes:
        ticket: The ticket as currently stored.
        target: The status that was requested.
    """

    def __init__(self, ticket: Ticket, target: TicketStatus, reason: str = "") -> None:
        message = (
            f"Cannot move ticket {ticket.id} from {ticket.status.value} to {target.value}"
        )
        if reason:
            message = f"{message}: {reason}"
        super().__init__(message)
        self.ticket = ticket
        self.target = target


@dataclass(frozen=True)
class Transition:
    """Result of a state machine operation."""

    ticket: Ticket
    changed: bool
    previous_status: TicketStatus


class TicketStateMachine:
    """Owns ticket status transitions and the ticket/channel mapping.

    Example:
        machine = TicketStateMachine(repository, ticket_locks)
        ticket = await machine.resolve_or_create_ticket(user.id, category_id=1)
        await machine.claim(ticket.id, "U024BE7LH")
        await machine.close(ticket.id)
    """

    def __init__(
        self,
        repository: TicketRepository,
        ticket_locks: KeyedLock,
        user_locks: KeyedLock | None = None,
    ) -> None:
        """Initialize the state machine.

        Args:
            repository: Datastore holding tickets.
            ticket_locks: Per-ticket locks, shared with the message queues.
            user_locks: Per-user locks for ticket creation.
        """
        self._repository = repository
        self._ticket_locks = ticket_locks
        self._user_locks = user_locks or KeyedLock()
        self._terminal_hooks: list[TicketHook] = []

    @property
    def ticket_locks(self) -> KeyedLock:
        return self._ticket_locks

    def add_terminal_hook(self, hook: TicketHook) -> None:
        """Run ``hook`` under the ticket lock whenever a ticket turns terminal."""
        self._terminal_hooks.append(hook)

    async def get_ticket(self, ticket_id: int) -> Ticket:
        """Load a ticket or raise TicketNotFound."""
        ticket = await self._repository.get_ticket(ticket_id)
        if ticket is None:
            raise TicketNotFound(f"Ticket {ticket_id} not found")
        return ticket

    async def open_or_reuse(self, user_id: int, category_id: int) -> tuple[Ticket, bool]:
        """Return the user's non-terminal ticket, creating one if needed.

        Returns:
            The ticket and whether it was created by this call.

        Raises:
            CategoryNotFound: If a new ticket is needed and the category is unknown.
        """
        async with self._user_locks.hold(user_id):
            existing = await self._repository.find_open_ticket_for_user(user_id)
            if existing is not None:
                return existing, False

            if await self._repository.get_category(category_id) is None:
                raise CategoryNotFound(f"Category {category_id} not found")

            ticket = await self._repository.create_ticket(user_id, category_id)

        get_metrics().tickets_created.inc()
        log.info(
            LogEventNames.TICKET_CREATED,
            ticket_id=ticket.id,
            user_id=user_id,
            category_id=category_id,
        )
        return ticket, True

    async def resolve_or_create_ticket(self, user_id: int, category_id: int) -> Ticket:
        """Return the user's non-terminal ticket or a newly created ``open`` one."""
        ticket, _ = await self.open_or_reuse(user_id, category_id)
        return ticket

    async def claim(self, ticket_id: int, staff_id: str) -> Transition:
        """Assign an open ticket to a staff member.

        Raises:
            InvalidTransition: If the ticket is not open, or claimed by someone else.
        """
        async with self._ticket_locks.hold(ticket_id):
            ticket = await self.get_ticket(ticket_id)

            if ticket.status is TicketStatus.CLAIMED and ticket.claimed_by == staff_id:
                return Transition(ticket, False, ticket.status)
            if ticket.status is TicketStatus.CLAIMED:
                raise InvalidTransition(
                    ticket, TicketStatus.CLAIMED, f"already claimed by {ticket.claimed_by}"
                )
            if ticket.status is not TicketStatus.OPEN:
                raise InvalidTransition(ticket, TicketStatus.CLAIMED)

            return await self._apply(ticket, TicketStatus.CLAIMED, claimed_by=staff_id)

    async def request_close(self, ticket_id: int) -> Transition:
        """Record that the end user asked to close; staff confirm with close().

        Raises:
            InvalidTransition: If the ticket is already terminal.
        """
        async with self._ticket_locks.hold(ticket_id):
            ticket = await self.get_ticket(ticket_id)

            if ticket.status is TicketStatus.PENDING_CLOSE:
                return Transition(ticket, False, ticket.status)
            if ticket.is_terminal:
                raise InvalidTransition(ticket, TicketStatus.PENDING_CLOSE)

            return await self._apply(ticket, TicketStatus.PENDING_CLOSE)

    async def close(self, ticket_id: int) -> Transition:
        """Close a ticket; a no-op success if it is already terminal."""
        async with self._ticket_locks.hold(ticket_id):
            ticket = await self.get_ticket(ticket_id)

            if ticket.is_terminal:
                return Transition(ticket, False, ticket.status)

            return await self._apply(ticket, TicketStatus.CLOSED, closed_at=datetime.now(UTC))

    async def archive(
        self,
        ticket_id: int,
        relocate: TicketHook | None = None,
    ) -> Transition:
        """Move a closed ticket to ``transcript``.

        ``relocate`` (the destination channel move) runs under the ticket
        lock before the status is written; if it raises, the ticket stays
        ``closed``.

        Raises:
            InvalidTransition: If the ticket is not closed.
            PlatformError: If ``relocate`` fails.
        """
        async with self._ticket_locks.hold(ticket_id):
            ticket = await self.get_ticket(ticket_id)

            if ticket.status is TicketStatus.TRANSCRIPT:
                return Transition(ticket, False, ticket.status)
            if ticket.status is not TicketStatus.CLOSED:
                raise InvalidTransition(ticket, TicketStatus.TRANSCRIPT, "close it first")

            if relocate is not None:
                await relocate(ticket)

            return await self._apply(ticket, TicketStatus.TRANSCRIPT)

    async def delete(self, ticket_id: int) -> Transition:
        """Cancel a ticket that was never resolved.

        Raises:
            InvalidTransition: If the ticket is closed or archived.
        """
        async with self._ticket_locks.hold(ticket_id):
            ticket = await self.get_ticket(ticket_id)

            if ticket.status is TicketStatus.DELETED:
                return Transition(ticket, False, ticket.status)
            if ticket.status not in NON_TERMINAL_STATUSES:
                raise InvalidTransition(ticket, TicketStatus.DELETED)

            return await self._apply(ticket, TicketStatus.DELETED, closed_at=datetime.now(UTC))

    async def assign_destination_channel(self, ticket_id: int, channel_ref: str) -> Ticket:
        """Record the ticket's destination channel; it is assigned only once.

        Raises:
            InvalidTransition: If the ticket became terminal before assignment.
        """
        async with self._ticket_locks.hold(ticket_id):
            ticket = await self.get_ticket(ticket_id)

            if ticket.destination_channel_ref is not None:
                if ticket.destination_channel_ref != channel_ref:
                    log.warning(
                        "destination_channel_already_assigned",
                        ticket_id=ticket_id,
                        existing=ticket.destination_channel_ref,
                        rejected=channel_ref,
                    )
                return ticket
            if ticket.is_terminal:
                raise InvalidTransition(ticket, ticket.status, "ticket ended before its channel")

            return await self._repository.set_destination_channel(ticket_id, channel_ref)

    async def _apply(
        self,
        ticket: Ticket,
        target: TicketStatus,
        **fields: object,
    ) -> Transition:
        """Write a validated transition. The caller holds the ticket lock."""
        updated = await self._repository.update_ticket_status(
            ticket.id, target, **fields  # type: ignore[arg-type]
        )

        get_metrics().ticket_transitions.inc(labels={"to": target.value})
        log.info(
            LogEventNames.TICKET_TRANSITION,
            ticket_id=ticket.id,
            from_status=ticket.status.value,
            to_status=target.value,
        )

        if target.is_terminal:
            for hook in self._terminal_hooks:
                await hook(updated)

        return Transition(updated, True, ticket.status)
