"""Tests for the per-ticket MessageQueue."""

import asyncio

import pytest

from ticket_bridge.adapters.storage.sqlite import SQLiteTicketRepository
from ticket_bridge.core.message_queue import MessageQueue
from ticket_bridge.models.message import DeliveryStatus, Direction, Message, Side
from ticket_bridge.utils.async_helpers import (
    DeliveryRefused,
    KeyedLock,
    TransientPlatformError,
)
from ticket_bridge.utils.metrics import get_metrics


@pytest.fixture
def locks() -> KeyedLock:
    return KeyedLock()


@pytest.fixture
def queue(repository: SQLiteTicketRepository, locks: KeyedLock) -> MessageQueue:
    return MessageQueue(Side.DESTINATION, repository, locks)


@pytest.fixture
async def ticket_id(repository: SQLiteTicketRepository) -> int:
    user = await repository.get_or_create_user("1001", "Alice")
    ticket = await repository.create_ticket(user.id, 1)
    return ticket.id


async def _insert(
    repository: SQLiteTicketRepository,
    ticket_id: int,
    content: str,
    direction: Direction = Direction.INBOUND,
) -> Message:
    return await repository.insert_message(ticket_id, direction, "1001", content)


class Recorder:
    """send_fn that records messages and can fail on demand."""

    def __init__(self) -> None:
        self.sent: list[str] = []
        self.fail_on: dict[str, Exception] = {}

    async def __call__(self, message: Message) -> None:
        error = self.fail_on.get(message.content)
        if error is not None:
            raise error
        self.sent.append(message.content)


class TestMessageQueue:
    """Tests for MessageQueue."""

    async def test_enqueue_persists_queued_status(
        self,
        queue: MessageQueue,
        repository: SQLiteTicketRepository,
        locks: KeyedLock,
        ticket_id: int,
    ) -> None:
        """Enqueued messages are marked queued in the datastore."""
        message = await _insert(repository, ticket_id, "hello")

        async with locks.hold(ticket_id):
            entry = await queue.enqueue(ticket_id, message)

        stored = await repository.get_message(message.id)
        assert stored is not None
        assert stored.delivery_status is DeliveryStatus.QUEUED
        assert entry.message.delivery_status is DeliveryStatus.QUEUED
        assert queue.depth() == 1
        assert queue.depth_for(ticket_id) == 1
        assert queue.has_pending(ticket_id)
        assert get_metrics().queue_depth.get(labels={"side": "destination"}) == 1

    async def test_drain_delivers_in_order(
        self,
        queue: MessageQueue,
        repository: SQLiteTicketRepository,
        locks: KeyedLock,
        ticket_id: int,
    ) -> None:
        """Draining sends messages in enqueue order and marks them delivered."""
        messages = [await _insert(repository, ticket_id, f"m{i}") for i in range(3)]
        async with locks.hold(ticket_id):
            for message in messages:
                await queue.enqueue(ticket_id, message)
        send = Recorder()

        result = await queue.drain(ticket_id, send)

        assert send.sent == ["m0", "m1", "m2"]
        assert result.delivered == 3
        assert result.completed
        assert queue.depth() == 0
        for message in messages:
            stored = await repository.get_message(message.id)
            assert stored is not None
            assert stored.delivery_status is DeliveryStatus.DELIVERED
            assert stored.delivered_at is not None

    async def test_drain_stops_at_first_failure(
        self,
        queue: MessageQueue,
        repository: SQLiteTicketRepository,
        locks: KeyedLock,
        ticket_id: int,
    ) -> None:
        """A failed send leaves it and everything after it queued."""
        messages = [await _insert(repository, ticket_id, f"m{i}") for i in range(3)]
        async with locks.hold(ticket_id):
            for message in messages:
                await queue.enqueue(ticket_id, message)
        send = Recorder()
        send.fail_on["m1"] = TransientPlatformError("down")

        result = await queue.drain(ticket_id, send)

        assert send.sent == ["m0"]
        assert result.delivered == 1
        assert result.remaining == 2
        assert isinstance(result.error, TransientPlatformError)
        assert not result.completed
        assert [m.content for m in queue.pending(ticket_id)] == ["m1", "m2"]

        send.fail_on.clear()
        result = await queue.drain(ticket_id, send)

        assert send.sent == ["m0", "m1", "m2"]
        assert result.completed

    async def test_drain_skips_refused_messages(
        self,
        queue: MessageQueue,
        repository: SQLiteTicketRepository,
        locks: KeyedLock,
        ticket_id: int,
    ) -> None:
        """A refused message is marked failed and the drain continues."""
        messages = [await _insert(repository, ticket_id, f"m{i}") for i in range(3)]
        async with locks.hold(ticket_id):
            for message in messages:
                await queue.enqueue(ticket_id, message)
        send = Recorder()
        send.fail_on["m1"] = DeliveryRefused("channel_not_found")

        result = await queue.drain(ticket_id, send)

        assert send.sent == ["m0", "m2"]
        assert result.delivered == 2
        assert result.completed
        stored = await repository.get_message(messages[1].id)
        assert stored is not None
        assert stored.delivery_status is DeliveryStatus.FAILED
        assert get_metrics().messages_failed.get(labels={"side": "destination"}) == 1

    async def test_concurrent_drain_is_skipped(
        self,
        queue: MessageQueue,
        repository: SQLiteTicketRepository,
        locks: KeyedLock,
        ticket_id: int,
    ) -> None:
        """Only one drain per ticket runs at a time."""
        message = await _insert(repository, ticket_id, "slow")
        async with locks.hold(ticket_id):
            await queue.enqueue(ticket_id, message)

        release = asyncio.Event()
        sent: list[str] = []

        async def slow_send(msg: Message) -> None:
            await release.wait()
            sent.append(msg.content)

        first = asyncio.create_task(queue.drain(ticket_id, slow_send))
        await asyncio.sleep(0.01)
        second = await queue.drain(ticket_id, slow_send)
        release.set()
        first_result = await first

        assert second.skipped is True
        assert first_result.delivered == 1
        assert sent == ["slow"]

    async def test_drain_all_covers_every_ticket(
        self,
        queue: MessageQueue,
        repository: SQLiteTicketRepository,
        locks: KeyedLock,
        ticket_id: int,
    ) -> None:
        """drain_all drains each ticket's queue."""
        other_user = await repository.get_or_create_user("2002", "Bob")
        other = await repository.create_ticket(other_user.id, 1)
        for tid, content in ((ticket_id, "a"), (other.id, "b"), (ticket_id, "c")):
            message = await _insert(repository, tid, content)
            async with locks.hold(tid):
                await queue.enqueue(tid, message)
        send = Recorder()

        results = await queue.drain_all(send)

        assert sorted(send.sent) == ["a", "b", "c"]
        assert send.sent.index("a") < send.sent.index("c")
        assert {r.ticket_id for r in results} == {ticket_id, other.id}
        assert queue.depth() == 0

    async def test_drain_all_with_nothing_queued(self, queue: MessageQueue) -> None:
        """Empty queues produce no results."""
        assert await queue.drain_all(Recorder()) == []

    async def test_discard_marks_messages_failed(
        self,
        queue: MessageQueue,
        repository: SQLiteTicketRepository,
        locks: KeyedLock,
        ticket_id: int,
    ) -> None:
        """Discarding a ticket's queue fails its messages."""
        messages = [await _insert(repository, ticket_id, f"m{i}") for i in range(2)]
        async with locks.hold(ticket_id):
            for message in messages:
                await queue.enqueue(ticket_id, message)
            discarded = await queue.discard(ticket_id)

        assert discarded == 2
        assert queue.depth() == 0
        for message in messages:
            stored = await repository.get_message(message.id)
            assert stored is not None
            assert stored.delivery_status is DeliveryStatus.FAILED

    async def test_discard_unknown_ticket(self, queue: MessageQueue) -> None:
        """Discarding an empty queue is a no-op."""
        assert await queue.discard(999) == 0

    async def test_restore_rebuilds_queue_for_its_side(
        self,
        queue: MessageQueue,
        repository: SQLiteTicketRepository,
        ticket_id: int,
    ) -> None:
        """restore keeps only messages targeting this side, in order."""
        first = await _insert(repository, ticket_id, "first")
        await repository.update_message_delivery_status(first.id, DeliveryStatus.QUEUED)
        await _insert(repository, ticket_id, "to user", Direction.OUTBOUND)
        second = await _insert(repository, ticket_id, "second")  # left pending by a crash

        restored = await queue.restore(await repository.list_queued_messages())

        assert restored == 2
        assert [m.content for m in queue.pending(ticket_id)] == ["first", "second"]
        stored = await repository.get_message(second.id)
        assert stored is not None
        assert stored.delivery_status is DeliveryStatus.QUEUED

    async def test_restore_ignores_delivered_messages(
        self,
        queue: MessageQueue,
        repository: SQLiteTicketRepository,
        ticket_id: int,
    ) -> None:
        """Delivered or failed messages are never restored."""
        message = await _insert(repository, ticket_id, "done")
        delivered = message.with_delivery(DeliveryStatus.DELIVERED)

        assert await queue.restore([delivered]) == 0
        assert queue.depth() == 0
