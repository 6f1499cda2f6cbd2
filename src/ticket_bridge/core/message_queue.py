"""Durable, ordered, per-ticket delivery queue.

Each target side of the bridge has its own MessageQueue. Messages land here
when their target adapter is unavailable or when earlier messages for the
same ticket are still waiting, so per-ticket order is never broken. The
in-memory deques are a cache of the ``queued`` rows in the datastore and
are rebuilt from it on startup.
"""

from __future__ import annotations

import asyncio
from collections import deque
from collections.abc import Awaitable, Callable, Iterable
from dataclasses import dataclass
from datetime import UTC, datetime

import structlog

from ticket_bridge.interfaces.repository import TicketRepository
from ticket_bridge.models.message import DeliveryStatus, Message, QueueEntry, Side
from ticket_bridge.utils.async_helpers import DeliveryRefused, KeyedLock, PlatformError
from ticket_bridge.utils.logging import LogEventNames
from ticket_bridge.utils.metrics import get_metrics

log = structlog.get_logger()

SendFn = Callable[[Message], Awaitable[object]]


@dataclass(frozen=True)
class DrainResult:
    """Outcome of draining one ticket's queue."""

    ticket_id: int
    delivered: int
    remaining: int
    error: BaseException | None = None
    skipped: bool = False  # another drain for this ticket was already running

    @property
    def completed(self) -> bool:
        return self.remaining == 0 and self.error is None and not self.skipped


class MessageQueue:
    """Per-ticket FIFO queues for one target side.

    Callers that mutate a ticket's queue (``enqueue``, ``discard``) must
    hold that ticket's lock. ``drain`` takes the lock itself, one item at a
    time, so a concurrent close can slip in between two sends.

    Example:
        queue = MessageQueue(Side.DESTINATION, repository, ticket_locks)
        async with ticket_locks.hold(ticket.id):
            await queue.enqueue(ticket.id, message)
        result = await queue.drain(ticket.id, send)
    """

    def __init__(self, side: Side, repository: TicketRepository, ticket_locks: KeyedLock) -> None:
        """Initialize the queue.

        Args:
            side: The side these messages are waiting to be delivered to.
            repository: Datastore used to persist delivery status.
            ticket_locks: Per-ticket locks shared with the state machine.
        """
        self._side = side
        self._repository = repository
        self._locks = ticket_locks
        self._queues: dict[int, deque[QueueEntry]] = {}
        self._draining: set[int] = set()

    @property
    def side(self) -> Side:
        return self._side

    def depth(self) -> int:
        return sum(len(queue) for queue in self._queues.values())

    def depth_for(self, ticket_id: int) -> int:
        return len(self._queues.get(ticket_id, ()))

    def has_pending(self, ticket_id: int) -> bool:
        return bool(self._queues.get(ticket_id))

    def ticket_ids(self) -> list[int]:
        return [ticket_id for ticket_id, queue in self._queues.items() if queue]

    def pending(self, ticket_id: int) -> list[Message]:
        """Return the queued messages of a ticket in delivery order."""
        return [entry.message for entry in self._queues.get(ticket_id, ())]

    def _update_gauge(self) -> None:
        get_metrics().queue_depth.set(self.depth(), labels={"side": self._side.value})

    async def enqueue(self, ticket_id: int, message: Message) -> QueueEntry:
        """Append a message to the ticket's queue and persist it as queued.

        Raises:
            PersistenceError: If the status update fails; nothing is appended.
        """
        await self._repository.update_message_delivery_status(message.id, DeliveryStatus.QUEUED)

        entry = QueueEntry(
            message=message.with_delivery(DeliveryStatus.QUEUED),
            enqueued_at=message.enqueued_at,
        )
        self._queues.setdefault(ticket_id, deque()).append(entry)
        self._update_gauge()

        get_metrics().messages_queued.inc(labels={"side": self._side.value})
        log.info(
            LogEventNames.MESSAGE_QUEUED,
            ticket_id=ticket_id,
            message_id=message.id,
            side=self._side.value,
            depth=len(self._queues[ticket_id]),
        )
        return entry

    async def drain(self, ticket_id: int, send_fn: SendFn) -> DrainResult:
        """Deliver a ticket's queued messages in order.

        Stops at the first failed send and leaves it, and everything after
        it, queued.

        Args:
            ticket_id: Ticket whose queue to drain.
            send_fn: Coroutine function delivering one message.

        Returns:
            How many messages were delivered and how many remain.
        """
        if ticket_id in self._draining:
            return DrainResult(ticket_id, 0, self.depth_for(ticket_id), skipped=True)

        self._draining.add(ticket_id)
        delivered = 0
        try:
            while True:
                async with self._locks.hold(ticket_id):
                    queue = self._queues.get(ticket_id)
                    if not queue:
                        break

                    entry = queue[0]
                    try:
                        await send_fn(entry.message)
                    except DeliveryRefused as e:
                        log.warning(
                            "queued_message_refused",
                            ticket_id=ticket_id,
                            message_id=entry.message.id,
                            side=self._side.value,
                            error=str(e),
                        )
                        await self._repository.update_message_delivery_status(
                            entry.message.id, DeliveryStatus.FAILED
                        )
                        get_metrics().messages_failed.inc(labels={"side": self._side.value})
                        queue.popleft()
                        if not queue:
                            del self._queues[ticket_id]
                        continue
                    except PlatformError as e:
                        log.warning(
                            "queue_drain_interrupted",
                            ticket_id=ticket_id,
                            message_id=entry.message.id,
                            side=self._side.value,
                            delivered=delivered,
                            remaining=len(queue),
                            error=str(e),
                        )
                        return DrainResult(ticket_id, delivered, len(queue), error=e)

                    await self._repository.update_message_delivery_status(
                        entry.message.id, DeliveryStatus.DELIVERED, datetime.now(UTC)
                    )
                    queue.popleft()
                    delivered += 1
                    if not queue:
                        del self._queues[ticket_id]
        finally:
            self._draining.discard(ticket_id)
            self._update_gauge()

        if delivered:
            log.info(
                LogEventNames.QUEUE_DRAINED,
                ticket_id=ticket_id,
                side=self._side.value,
                delivered=delivered,
            )
        return DrainResult(ticket_id, delivered, 0)

    async def drain_all(self, send_fn: SendFn) -> list[DrainResult]:
        """Drain every non-empty ticket queue concurrently."""
        ticket_ids = self.ticket_ids()
        if not ticket_ids:
            return []

        outcomes = await asyncio.gather(
            *(self.drain(ticket_id, send_fn) for ticket_id in ticket_ids),
            return_exceptions=True,
        )

        results: list[DrainResult] = []
        for ticket_id, outcome in zip(ticket_ids, outcomes, strict=True):
            if isinstance(outcome, DrainResult):
                results.append(outcome)
            elif isinstance(outcome, Exception):
                # Entries stay queued; the next relay or recovery retries them
                log.error(
                    "queue_drain_error",
                    ticket_id=ticket_id,
                    side=self._side.value,
                    error=str(outcome),
                    exception_type=type(outcome).__name__,
                )
                results.append(
                    DrainResult(ticket_id, 0, self.depth_for(ticket_id), error=outcome)
                )
            else:
                raise outcome
        return results

    async def discard(self, ticket_id: int) -> int:
        """Drop a ticket's queue, marking its messages failed.

        The caller must hold the ticket lock.

        Returns:
            Number of messages discarded.
        """
        queue = self._queues.pop(ticket_id, None)
        if not queue:
            return 0

        for entry in queue:
            await self._repository.update_message_delivery_status(
                entry.message.id, DeliveryStatus.FAILED
            )
        self._update_gauge()

        get_metrics().messages_failed.inc(len(queue), labels={"side": self._side.value})
        log.info(
            "queue_discarded",
            ticket_id=ticket_id,
            side=self._side.value,
            discarded=len(queue),
        )
        return len(queue)

    async def restore(self, messages: Iterable[Message]) -> int:
        """Rebuild queues from undelivered messages loaded at startup.

        Messages left ``pending`` by a crash mid-send are re-marked
        ``queued``; they may be delivered twice (at-least-once).

        Returns:
            Number of messages restored for this side.
        """
        restored = 0
        for message in sorted(messages, key=lambda m: (m.enqueued_at, m.id)):
            if message.direction.target is not self._side:
                continue
            if message.delivery_status is DeliveryStatus.PENDING:
                await self._repository.update_message_delivery_status(
                    message.id, DeliveryStatus.QUEUED
                )
                message = message.with_delivery(DeliveryStatus.QUEUED)
            elif message.delivery_status is not DeliveryStatus.QUEUED:
                continue

            self._queues.setdefault(message.ticket_id, deque()).append(
                QueueEntry(message=message, enqueued_at=message.enqueued_at)
            )
            restored += 1

        self._update_gauge()
        if restored:
            log.info("queue_restored", side=self._side.value, messages=restored)
        return restored
