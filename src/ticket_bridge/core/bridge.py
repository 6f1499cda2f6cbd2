"""Bridge manager: routes inbound events between the two platforms.

This module implements the relay core. For every inbound event it:
1. Resolves (or creates) the ticket the event belongs to
2. Persists the message before any delivery attempt
3. Relays it to the other platform, or queues it when that platform is
   unavailable or earlier messages for the same ticket are still waiting
4. Interprets user and staff commands through the ticket state machine

Adapter failures never escape this module; they are recorded with the
OutageTracker, which degrades that side until it reconnects. Datastore
failures (PersistenceError) do escape, so the caller can reject the event
for redelivery instead of acknowledging something that was not saved.
"""

from __future__ import annotations

import time
from collections.abc import Callable
from dataclasses import dataclass, field
from datetime import UTC, datetime
from enum import StrEnum
from typing import Any

import structlog

from ticket_bridge.config.schema import BridgeConfig
from ticket_bridge.core.commands import Command, CommandName, parse_command
from ticket_bridge.core.message_queue import DrainResult, MessageQueue
from ticket_bridge.core.outage import OutageTracker
from ticket_bridge.core.ticket_state import InvalidTransition, TicketStateMachine, Transition
from ticket_bridge.interfaces.platform import ChannelPlatform, ChatPlatform
from ticket_bridge.interfaces.repository import TicketRepository
from ticket_bridge.models.message import DeliveryStatus, Direction, InboundEvent, Message, Side
from ticket_bridge.models.ticket import NON_TERMINAL_STATUSES, Category, Ticket, User
from ticket_bridge.utils.async_helpers import (
    CategoryNotFound,
    DeliveryRefused,
    FatalPlatformError,
    KeyedLock,
    PlatformError,
    TransientPlatformError,
    UserNotFound,
    with_timeout,
)
from ticket_bridge.utils.logging import LogEventNames, bind_context
from ticket_bridge.utils.metrics import Timer, get_metrics
from ticket_bridge.utils.security import preview, sanitize_channel_name

log = structlog.get_logger()

SYSTEM_SENDER = "system"

ALREADY_OPEN_TEXT = "You already have an open ticket. Just send your message here."
NO_TICKET_TEXT = "You have no open ticket. Send a message to open one."
CLOSE_REQUESTED_USER_TEXT = "We have asked the team to close your ticket."
CLOSE_REQUESTED_STAFF_TEXT = "The user asked to close this ticket. Use /close to confirm."
USER_CLOSED_STAFF_TEXT = "The user has closed this ticket."
TICKET_CLOSED_STAFF_TEXT = "This ticket is closed. Messages here are no longer forwarded."


class InboundOutcome(StrEnum):
    """What the bridge did with an inbound event."""

    RELAYED = "relayed"
    QUEUED = "queued"
    DUPLICATE = "duplicate"
    COMMAND = "command"
    IGNORED = "ignored"
    FAILED = "failed"


@dataclass(frozen=True)
class BridgeHealth:
    """Read-only snapshot for health endpoints."""

    origin_available: bool
    destination_available: bool
    queue_depth: int
    uptime_seconds: float
    adapters: dict[str, Any] = field(default_factory=dict)

    def to_dict(self) -> dict[str, Any]:
        return {
            "origin_available": self.origin_available,
            "destination_available": self.destination_available,
            "queue_depth": self.queue_depth,
            "uptime_seconds": round(self.uptime_seconds, 3),
            "adapters": self.adapters,
        }


class BridgeManager:
    """Orchestrates tickets, queues and adapters.

    Example:
        bridge = BridgeManager(config, repository, telegram, slack, outage)
        await bridge.restore()
        outcome = await bridge.on_inbound_from_origin(event)
    """

    def __init__(
        self,
        config: BridgeConfig,
        repository: TicketRepository,
        origin: ChatPlatform,
        destination: ChannelPlatform,
        outage: OutageTracker,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        """Initialize the bridge.

        Args:
            config: Application configuration.
            repository: Ticket datastore.
            origin: End-user platform adapter.
            destination: Staff workspace adapter.
            outage: Availability tracker shared with the service's reconnect loops.
            clock: Monotonic clock used for uptime.
        """
        self._settings = config.bridge
        slack = config.destination.slack
        self._staff_channel = slack.staff_channel if slack else None
        self._default_category_id = config.bridge.default_category_id

        self._repository = repository
        self._origin = origin
        self._destination = destination
        self._outage = outage
        self._clock = clock
        self._started_at = clock()

        self._ticket_locks = KeyedLock()
        self._channel_locks = KeyedLock()
        self._state = TicketStateMachine(repository, self._ticket_locks)
        self._state.add_terminal_hook(self._on_ticket_terminal)
        self._queues = {
            side: MessageQueue(side, repository, self._ticket_locks) for side in Side
        }

        self._degraded_notified: set[int] = set()

    @property
    def state_machine(self) -> TicketStateMachine:
        return self._state

    def queue(self, side: Side) -> MessageQueue:
        return self._queues[side]

    def _adapter(self, side: Side) -> ChatPlatform:
        return self._origin if side is Side.ORIGIN else self._destination

    # ------------------------------------------------------------------
    # Public surface
    # ------------------------------------------------------------------

    async def on_inbound_from_origin(self, event: InboundEvent) -> InboundOutcome:
        """Handle a message or command from an end user.

        Raises:
            PersistenceError: If the event could not be saved.
        """
        get_metrics().messages_received.inc(labels={"side": Side.ORIGIN.value})
        user = await self._repository.get_or_create_user(event.source_user_id, event.display_name)

        command = parse_command(event)
        if command is not None:
            return await self._handle_origin_command(user, command)

        if not event.content.strip():
            return InboundOutcome.IGNORED
        if await self._is_duplicate(event):
            return InboundOutcome.DUPLICATE

        try:
            category = await self._resolve_category(None)
        except CategoryNotFound:
            await self._reply(Side.ORIGIN, user.origin_platform_id, await self._category_help())
            return InboundOutcome.IGNORED

        ticket, created = await self._state.open_or_reuse(user.id, category.id)
        bind_context(ticket_id=ticket.id)
        message = await self._repository.insert_message(
            ticket.id,
            Direction.INBOUND,
            user.origin_platform_id,
            event.content,
            author_name=user.display_name,
            source_ref=self._source_ref(event),
        )
        log.debug(
            LogEventNames.MESSAGE_PERSISTED,
            ticket_id=ticket.id,
            message_id=message.id,
            content=preview(event.content),
        )

        if created:
            await self._on_ticket_opened(ticket, user)
        else:
            await self._ensure_channel(ticket, user)

        outcome = await self._relay(ticket.id, message)
        if outcome is InboundOutcome.QUEUED and not self._outage.is_available(Side.DESTINATION):
            await self.notify_origin_user_of_degraded_service(ticket.id)
        return outcome

    async def on_inbound_from_destination(self, event: InboundEvent) -> InboundOutcome:
        """Handle a staff message or command posted in a ticket channel.

        Raises:
            PersistenceError: If the event could not be saved.
        """
        get_metrics().messages_received.inc(labels={"side": Side.DESTINATION.value})
        ticket = await self._repository.find_ticket_by_channel(event.channel_ref)
        if ticket is None:
            log.debug("message_outside_ticket_channel", channel_ref=event.channel_ref)
            return InboundOutcome.IGNORED
        bind_context(ticket_id=ticket.id)

        command = parse_command(event)
        if command is not None:
            return await self._handle_staff_command(ticket, event, command)

        if not event.content.strip():
            return InboundOutcome.IGNORED
        if await self._is_duplicate(event):
            return InboundOutcome.DUPLICATE

        if ticket.is_terminal:
            # Keep it for the transcript, but never deliver it
            await self._repository.insert_message(
                ticket.id,
                Direction.OUTBOUND,
                event.source_user_id,
                event.content,
                author_name=event.display_name,
                source_ref=self._source_ref(event),
                delivery_status=DeliveryStatus.FAILED,
            )
            await self._reply(Side.DESTINATION, event.channel_ref, TICKET_CLOSED_STAFF_TEXT)
            return InboundOutcome.IGNORED

        message = await self._repository.insert_message(
            ticket.id,
            Direction.OUTBOUND,
            event.source_user_id,
            event.content,
            author_name=event.display_name,
            source_ref=self._source_ref(event),
        )
        return await self._relay(ticket.id, message)

    def health_check(self) -> BridgeHealth:
        """Return a snapshot of adapter availability and queue depth."""
        return BridgeHealth(
            origin_available=self._outage.is_available(Side.ORIGIN),
            destination_available=self._outage.is_available(Side.DESTINATION),
            queue_depth=self.get_queue_depth(),
            uptime_seconds=self._clock() - self._started_at,
            adapters=self._outage.snapshot(),
        )

    def get_queue_depth(self) -> int:
        return sum(queue.depth() for queue in self._queues.values())

    async def notify_origin_user_of_degraded_service(self, ticket_id: int) -> bool:
        """Tell the user their message is saved while staff are unreachable.

        Sent at most once per ticket per destination outage.

        Returns:
            True if a notice was sent (or queued) by this call.
        """
        if ticket_id in self._degraded_notified:
            return False
        self._degraded_notified.add(ticket_id)

        ticket = await self._state.get_ticket(ticket_id)
        await self._post_system(ticket, self._settings.degraded_notice, Direction.OUTBOUND)

        get_metrics().degraded_notices.inc()
        log.info(LogEventNames.DEGRADED_NOTICE_SENT, ticket_id=ticket_id)
        return True

    async def force_close_ticket(self, ticket_id: int) -> Ticket:
        """Administrative close through the normal state machine.

        Raises:
            TicketNotFound: If the ticket does not exist.
        """
        transition = await self._close(ticket_id)
        log.warning(
            "ticket_force_closed",
            ticket_id=ticket_id,
            previous_status=transition.previous_status.value,
            changed=transition.changed,
        )
        return transition.ticket

    async def on_adapter_recovered(self, side: Side) -> list[DrainResult]:
        """Catch up after a side reconnects: create missing channels, then drain."""
        if side is Side.DESTINATION:
            self._degraded_notified.clear()
            for ticket in await self._repository.list_tickets(NON_TERMINAL_STATUSES):
                if ticket.destination_channel_ref is None:
                    await self._ensure_channel(ticket)

        results = await self._queues[side].drain_all(self._deliver_queued)
        log.info(
            "adapter_catch_up_complete",
            side=side.value,
            tickets=len(results),
            delivered=sum(result.delivered for result in results),
            remaining=sum(result.remaining for result in results),
        )
        return results

    async def restore(self) -> int:
        """Rebuild delivery queues from undelivered messages in the datastore."""
        pending: list[Message] = []
        for message in await self._repository.list_queued_messages():
            ticket = await self._repository.get_ticket(message.ticket_id)
            deliverable = ticket is not None and (
                not ticket.is_terminal or message.origin_id == SYSTEM_SENDER
            )
            if deliverable:
                pending.append(message)
            else:
                await self._repository.update_message_delivery_status(
                    message.id, DeliveryStatus.FAILED
                )

        restored = 0
        for queue in self._queues.values():
            restored += await queue.restore(pending)
        return restored

    # ------------------------------------------------------------------
    # Relay
    # ------------------------------------------------------------------

    async def _relay(
        self,
        ticket_id: int,
        message: Message,
        allow_terminal: bool = False,
    ) -> InboundOutcome:
        """Deliver a persisted message now, or queue it behind earlier ones."""
        target = message.direction.target
        queue = self._queues[target]

        async with self._ticket_locks.hold(ticket_id):
            ticket = await self._state.get_ticket(ticket_id)
            if ticket.is_terminal and not allow_terminal:
                await self._repository.update_message_delivery_status(
                    message.id, DeliveryStatus.FAILED
                )
                get_metrics().messages_failed.inc(labels={"side": target.value})
                return InboundOutcome.FAILED

            target_ref = await self._target_ref(ticket, target)
            if (
                target_ref is None
                or not self._outage.is_available(target)
                or queue.has_pending(ticket_id)
            ):
                await queue.enqueue(ticket_id, message)
            else:
                try:
                    await self._send(target, target_ref, message)
                except DeliveryRefused as e:
                    log.warning("message_refused", ticket_id=ticket_id, error=str(e))
                    await self._repository.update_message_delivery_status(
                        message.id, DeliveryStatus.FAILED
                    )
                    get_metrics().messages_failed.inc(labels={"side": target.value})
                    return InboundOutcome.FAILED
                except PlatformError as e:
                    self._record_failure(target, e)
                    await queue.enqueue(ticket_id, message)
                else:
                    await self._mark_delivered(message, target)
                    return InboundOutcome.RELAYED

        if target_ref is not None and self._outage.is_available(target):
            # Earlier entries were waiting; push the whole backlog out now
            await queue.drain(ticket_id, self._deliver_queued)
        return InboundOutcome.QUEUED

    async def _deliver_queued(self, message: Message) -> None:
        """Send function used when draining queues; the ticket lock is held."""
        target = message.direction.target
        ticket = await self._state.get_ticket(message.ticket_id)
        target_ref = await self._target_ref(ticket, target)
        if target_ref is None:
            raise TransientPlatformError(f"Ticket {ticket.id} has no destination channel yet")
        if not self._outage.is_available(target):
            # Went down during this catch-up; already recorded once
            raise TransientPlatformError(f"{target.value} platform is unavailable")

        try:
            await self._send(target, target_ref, message)
        except DeliveryRefused:
            raise
        except PlatformError as e:
            self._record_failure(target, e)
            raise
        get_metrics().messages_relayed.inc(labels={"side": target.value})

    def _record_failure(self, side: Side, error: PlatformError) -> None:
        """Count an adapter failure against the outage budget once per outage.

        Calls that were already in flight when the side went down fail
        together; only the first is recorded. Fatal errors always are.
        """
        if self._outage.is_available(side) or isinstance(error, FatalPlatformError):
            self._outage.record_failure(side, error)
        else:
            log.debug("failure_during_outage", side=side.value, error=str(error))

    async def _send(self, target: Side, target_ref: str, message: Message) -> str:
        adapter = self._adapter(target)
        with Timer(get_metrics().relay_duration, labels={"side": target.value}):
            return await with_timeout(
                adapter.send_message(target_ref, self._format(message)),
                self._settings.send_timeout,
                f"Sending to {target.value} timed out",
            )

    async def _mark_delivered(self, message: Message, target: Side) -> None:
        await self._repository.update_message_delivery_status(
            message.id, DeliveryStatus.DELIVERED, datetime.now(UTC)
        )
        get_metrics().messages_relayed.inc(labels={"side": target.value})
        log.debug(
            LogEventNames.MESSAGE_RELAYED,
            ticket_id=message.ticket_id,
            message_id=message.id,
            side=target.value,
        )

    async def _target_ref(self, ticket: Ticket, target: Side) -> str | None:
        if target is Side.DESTINATION:
            return ticket.destination_channel_ref
        user = await self._user_for(ticket)
        # Private chats are addressed by the user's own id
        return user.origin_platform_id

    @staticmethod
    def _format(message: Message) -> str:
        if (
            message.direction is Direction.INBOUND
            and message.origin_id != SYSTEM_SENDER
            and message.author_name
        ):
            return f"{message.author_name}: {message.content}"
        return message.content

    async def _post_system(
        self,
        ticket: Ticket,
        text: str,
        direction: Direction,
        allow_terminal: bool = False,
    ) -> InboundOutcome:
        """Persist and relay a bridge-generated notice."""
        message = await self._repository.insert_message(
            ticket.id, direction, SYSTEM_SENDER, text
        )
        return await self._relay(ticket.id, message, allow_terminal=allow_terminal)

    async def _reply(self, side: Side, channel_ref: str, text: str) -> bool:
        """Best-effort reply that is not tied to a ticket queue."""
        if not self._outage.is_available(side):
            return False
        try:
            await with_timeout(
                self._adapter(side).send_message(channel_ref, text),
                self._settings.send_timeout,
            )
        except DeliveryRefused as e:
            log.warning("reply_refused", side=side.value, channel_ref=channel_ref, error=str(e))
            return False
        except PlatformError as e:
            self._record_failure(side, e)
            log.warning("reply_failed", side=side.value, channel_ref=channel_ref, error=str(e))
            return False
        return True

    # ------------------------------------------------------------------
    # Tickets and channels
    # ------------------------------------------------------------------

    async def _on_ticket_opened(self, ticket: Ticket, user: User) -> None:
        await self._post_system(ticket, self._settings.welcome_notice, Direction.OUTBOUND)
        await self._ensure_channel(ticket, user)

    async def _ensure_channel(self, ticket: Ticket, user: User | None = None) -> Ticket:
        """Create the ticket's destination channel if it does not exist yet.

        Creation is serialized per ticket; a failed attempt leaves the ticket
        without a channel and a later attempt reuses the same ticket.
        """
        if ticket.destination_channel_ref is not None or ticket.is_terminal:
            return ticket
        if not self._outage.is_available(Side.DESTINATION):
            return ticket

        async with self._channel_locks.hold(ticket.id):
            current = await self._state.get_ticket(ticket.id)
            if current.destination_channel_ref is not None or current.is_terminal:
                return current

            category = await self._repository.get_category(current.category_id)
            if category is None:
                raise CategoryNotFound(f"Category {current.category_id} not found")
            user = user or await self._user_for(current)

            name = sanitize_channel_name(f"{category.name}-{current.id}")
            topic = f"Ticket #{current.id}: {user.display_name} ({user.origin_platform_id})"
            try:
                channel_ref = await with_timeout(
                    self._destination.create_channel(
                        name, category.destination_category_ref, topic
                    ),
                    self._settings.send_timeout,
                )
            except PlatformError as e:
                self._record_failure(Side.DESTINATION, e)
                log.warning("channel_create_failed", ticket_id=current.id, error=str(e))
                return current

            try:
                updated = await self._state.assign_destination_channel(current.id, channel_ref)
            except InvalidTransition:
                log.warning("orphaned_channel", ticket_id=current.id, channel_ref=channel_ref)
                await self._retire_channel(current.id, channel_ref)
                return await self._state.get_ticket(current.id)

        log.info(
            LogEventNames.CHANNEL_CREATED,
            ticket_id=updated.id,
            channel_ref=channel_ref,
            channel_name=name,
        )
        await self._reply(
            Side.DESTINATION,
            channel_ref,
            f"Ticket #{updated.id} opened by {user.display_name}. "
            "Use /claim to take it and /close when done.",
        )
        if self._staff_channel:
            # Also reached on recovery, for tickets opened during an outage
            await self._reply(
                Side.DESTINATION,
                self._staff_channel,
                f"New ticket #{updated.id} from {user.display_name} in <#{channel_ref}>",
            )
        return updated

    async def _retire_channel(self, ticket_id: int, channel_ref: str | None) -> None:
        """Archive a channel in place; best-effort."""
        if channel_ref is None or not self._outage.is_available(Side.DESTINATION):
            return
        try:
            await with_timeout(
                self._destination.move_channel(channel_ref, None, archive=True),
                self._settings.send_timeout,
            )
        except PlatformError as e:
            self._record_failure(Side.DESTINATION, e)
            log.warning("channel_retire_failed", ticket_id=ticket_id, error=str(e))

    async def _close(self, ticket_id: int) -> Transition:
        transition = await self._state.close(ticket_id)
        if not transition.changed:
            return transition

        ticket = transition.ticket
        await self._post_system(
            ticket, self._settings.closing_notice, Direction.OUTBOUND, allow_terminal=True
        )
        if ticket.destination_channel_ref:
            await self._reply(Side.DESTINATION, ticket.destination_channel_ref, "Ticket closed.")

        if self._settings.archive_on_close:
            try:
                await self._archive(ticket_id)
            except (PlatformError, InvalidTransition) as e:
                log.warning("auto_archive_failed", ticket_id=ticket_id, error=str(e))
        return transition

    async def _archive(self, ticket_id: int) -> Transition:
        """Move a closed ticket's channel to its transcript category.

        Raises:
            InvalidTransition: If the ticket is not closed.
            PlatformError: If the channel move fails; the ticket stays closed.
        """

        async def relocate(ticket: Ticket) -> None:
            if ticket.destination_channel_ref is None:
                return
            if not self._outage.is_available(Side.DESTINATION):
                raise TransientPlatformError("Destination platform is unavailable")
            category = await self._repository.get_category(ticket.category_id)
            target = category.transcript_category_ref if category else None
            try:
                await with_timeout(
                    self._destination.move_channel(
                        ticket.destination_channel_ref, target, archive=True
                    ),
                    self._settings.send_timeout,
                )
            except PlatformError as e:
                self._record_failure(Side.DESTINATION, e)
                raise

        return await self._state.archive(ticket_id, relocate)

    async def _on_ticket_terminal(self, ticket: Ticket) -> None:
        """Terminal hook: drop undelivered messages (the ticket lock is held)."""
        for queue in self._queues.values():
            await queue.discard(ticket.id)
        self._degraded_notified.discard(ticket.id)

    # ------------------------------------------------------------------
    # Commands
    # ------------------------------------------------------------------

    async def _handle_origin_command(self, user: User, command: Command) -> InboundOutcome:
        existing = await self._repository.find_open_ticket_for_user(user.id)
        if existing is not None:
            bind_context(ticket_id=existing.id)
        log.info("origin_command", command=command.name.value, user_id=user.id)

        if command.name is CommandName.START:
            if existing is not None:
                await self._post_system(existing, ALREADY_OPEN_TEXT, Direction.OUTBOUND)
                return InboundOutcome.COMMAND
            try:
                category = await self._resolve_category(command.argument or None)
            except CategoryNotFound:
                await self._reply(Side.ORIGIN, user.origin_platform_id, await self._category_help())
                return InboundOutcome.COMMAND
            ticket, created = await self._state.open_or_reuse(user.id, category.id)
            if created:
                await self._on_ticket_opened(ticket, user)
            return InboundOutcome.COMMAND

        if existing is None:
            await self._reply(Side.ORIGIN, user.origin_platform_id, NO_TICKET_TEXT)
            return InboundOutcome.COMMAND

        if command.name is CommandName.CLOSE:
            if self._settings.user_close_requires_confirmation:
                transition = await self._state.request_close(existing.id)
                if transition.changed:
                    await self._post_system(existing, CLOSE_REQUESTED_STAFF_TEXT, Direction.INBOUND)
                    await self._post_system(
                        existing, CLOSE_REQUESTED_USER_TEXT, Direction.OUTBOUND
                    )
                return InboundOutcome.COMMAND

            await self._post_system(existing, USER_CLOSED_STAFF_TEXT, Direction.INBOUND)
            await self._close(existing.id)
            return InboundOutcome.COMMAND

        if command.name is CommandName.CANCEL:
            transition = await self._state.delete(existing.id)
            if transition.changed:
                await self._retire_channel(existing.id, transition.ticket.destination_channel_ref)
                await self._post_system(
                    transition.ticket,
                    self._settings.closing_notice,
                    Direction.OUTBOUND,
                    allow_terminal=True,
                )
            return InboundOutcome.COMMAND

        return InboundOutcome.IGNORED

    async def _handle_staff_command(
        self,
        ticket: Ticket,
        event: InboundEvent,
        command: Command,
    ) -> InboundOutcome:
        staff_id = event.source_user_id
        log.info(
            "staff_command",
            command=command.name.value,
            ticket_id=ticket.id,
            staff_id=staff_id,
        )

        try:
            if command.name is CommandName.CLAIM:
                transition = await self._state.claim(ticket.id, staff_id)
                if transition.changed:
                    await self._post_system(
                        transition.ticket, self._settings.claimed_notice, Direction.OUTBOUND
                    )
                    await self._reply(
                        Side.DESTINATION, event.channel_ref, f"Ticket claimed by <@{staff_id}>."
                    )

            elif command.name is CommandName.CLOSE:
                await self._close(ticket.id)

            elif command.name is CommandName.ARCHIVE:
                transition = await self._archive(ticket.id)
                if transition.changed:
                    log.info("ticket_archived", ticket_id=ticket.id)

            elif command.name is CommandName.DELETE:
                transition = await self._state.delete(ticket.id)
                if transition.changed:
                    await self._post_system(
                        transition.ticket,
                        self._settings.closing_notice,
                        Direction.OUTBOUND,
                        allow_terminal=True,
                    )
                    await self._retire_channel(ticket.id, ticket.destination_channel_ref)

        except InvalidTransition as e:
            log.info(
                LogEventNames.TICKET_TRANSITION_REJECTED,
                ticket_id=ticket.id,
                command=command.name.value,
                current_status=e.ticket.status.value,
            )
            await self._reply(
                Side.DESTINATION,
                event.channel_ref,
                f"Cannot {command.name.value}: ticket is {e.ticket.status.value}"
                + (f" (claimed by <@{e.ticket.claimed_by}>)" if e.ticket.claimed_by else "")
                + ".",
            )
        except PlatformError as e:
            await self._reply(
                Side.DESTINATION, event.channel_ref, f"Cannot {command.name.value} right now: {e}"
            )

        return InboundOutcome.COMMAND

    # ------------------------------------------------------------------
    # Lookups
    # ------------------------------------------------------------------

    async def _resolve_category(self, key: str | None) -> Category:
        """Find the category named by the user, or the default one.

        Raises:
            CategoryNotFound: If nothing matches and no default applies.
        """
        if key:
            category = await self._repository.find_category(key)
            if category is None:
                raise CategoryNotFound(f"Unknown category {key!r}")
            return category

        if self._default_category_id is not None:
            category = await self._repository.get_category(self._default_category_id)
            if category is not None:
                return category

        categories = await self._repository.list_categories()
        if len(categories) == 1:
            return categories[0]
        raise CategoryNotFound("No default category configured")

    async def _category_help(self) -> str:
        categories = await self._repository.list_categories()
        if not categories:
            return "Support is not available right now. Please try again later."
        names = ", ".join(category.name for category in categories)
        return f"Please choose a topic with /start <topic>. Available: {names}"

    async def _user_for(self, ticket: Ticket) -> User:
        user = await self._repository.get_user(ticket.user_id)
        if user is None:
            raise UserNotFound(f"User {ticket.user_id} of ticket {ticket.id} not found")
        return user

    async def _is_duplicate(self, event: InboundEvent) -> bool:
        source_ref = self._source_ref(event)
        if source_ref is None:
            return False
        if await self._repository.find_message_by_source(source_ref) is None:
            return False
        get_metrics().messages_duplicate.inc(labels={"side": event.side.value})
        log.info(LogEventNames.MESSAGE_DUPLICATE, source_ref=source_ref)
        return True

    @staticmethod
    def _source_ref(event: InboundEvent) -> str | None:
        return f"{event.side.value}:{event.event_id}" if event.event_id else None
