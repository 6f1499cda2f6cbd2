"""Tests for ticket and message data models."""

import dataclasses
from datetime import UTC, datetime

import pytest

from ticket_bridge.models.message import (
    DeliveryStatus,
    Direction,
    Message,
    QueueEntry,
    Side,
)
from ticket_bridge.models.ticket import (
    NON_TERMINAL_STATUSES,
    TERMINAL_STATUSES,
    Ticket,
    TicketStatus,
)

NOW = datetime(2024, 5, 1, 12, 0, tzinfo=UTC)


def make_message(**overrides: object) -> Message:
    fields: dict[str, object] = {
        "id": 1,
        "ticket_id": 7,
        "direction": Direction.INBOUND,
        "origin_id": "1001",
        "content": "Hello",
        "delivery_status": DeliveryStatus.PENDING,
        "enqueued_at": NOW,
    }
    fields.update(overrides)
    return Message(**fields)  # type: ignore[arg-type]


class TestTicketStatus:
    """Tests for TicketStatus."""

    def test_statuses_are_partitioned(self) -> None:
        assert NON_TERMINAL_STATUSES | TERMINAL_STATUSES == set(TicketStatus)
        assert not NON_TERMINAL_STATUSES & TERMINAL_STATUSES

    @pytest.mark.parametrize(
        ("status", "terminal"),
        [
            (TicketStatus.OPEN, False),
            (TicketStatus.CLAIMED, False),
            (TicketStatus.PENDING_CLOSE, False),
            (TicketStatus.CLOSED, True),
            (TicketStatus.TRANSCRIPT, True),
            (TicketStatus.DELETED, True),
        ],
    )
    def test_is_terminal(self, status: TicketStatus, terminal: bool) -> None:
        ticket = Ticket(id=1, user_id=1, category_id=1, status=status, created_at=NOW)

        assert status.is_terminal is terminal
        assert ticket.is_terminal is terminal


class TestMessage:
    """Tests for Message."""

    @pytest.mark.parametrize(
        ("direction", "target"),
        [(Direction.INBOUND, Side.DESTINATION), (Direction.OUTBOUND, Side.ORIGIN)],
    )
    def test_direction_target(self, direction: Direction, target: Side) -> None:
        assert direction.target is target

    def test_with_delivery_returns_copy(self) -> None:
        message = make_message()

        delivered = message.with_delivery(DeliveryStatus.DELIVERED, NOW)

        assert delivered.delivery_status is DeliveryStatus.DELIVERED
        assert delivered.delivered_at == NOW
        assert message.delivery_status is DeliveryStatus.PENDING
        assert delivered.id == message.id

    def test_messages_are_immutable(self) -> None:
        with pytest.raises(dataclasses.FrozenInstanceError):
            make_message().content = "changed"  # type: ignore[misc]

    def test_queue_entry_ticket_id(self) -> None:
        entry = QueueEntry(message=make_message(ticket_id=42), enqueued_at=NOW)

        assert entry.ticket_id == 42
