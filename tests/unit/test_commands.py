"""Tests for inbound command parsing."""

from collections.abc import Callable

import pytest

from ticket_bridge.core.commands import Command, CommandName, parse_command
from ticket_bridge.models.message import InboundEvent, Side

EventFactory = Callable[..., InboundEvent]


class TestParseCommand:
    """Tests for parse_command."""

    def test_plain_text_is_not_a_command(self, event_factory: EventFactory) -> None:
        assert parse_command(event_factory(Side.ORIGIN, "my printer is on fire")) is None

    def test_start_with_category(self, event_factory: EventFactory) -> None:
        """Origin users pick a category with /start <name>."""
        command = parse_command(event_factory(Side.ORIGIN, "/start billing"))

        assert command == Command(CommandName.START, "billing")

    def test_bot_mention_suffix(self, event_factory: EventFactory) -> None:
        """Telegram appends @botname to commands in some clients."""
        command = parse_command(event_factory(Side.ORIGIN, "/close@SupportBot"))

        assert command == Command(CommandName.CLOSE)

    def test_case_and_whitespace(self, event_factory: EventFactory) -> None:
        command = parse_command(event_factory(Side.ORIGIN, "  /CANCEL  "))

        assert command is not None
        assert command.name is CommandName.CANCEL

    @pytest.mark.parametrize(("text", "expected"), [("/new", "start"), ("/transcript", None)])
    def test_aliases_on_origin(
        self, event_factory: EventFactory, text: str, expected: str | None
    ) -> None:
        """Aliases resolve, but only to commands of the event's side."""
        command = parse_command(event_factory(Side.ORIGIN, text))

        assert (command.name.value if command else None) == expected

    def test_staff_command_from_text(self, event_factory: EventFactory) -> None:
        command = parse_command(event_factory(Side.DESTINATION, "/transcript"))

        assert command == Command(CommandName.ARCHIVE)

    def test_staff_command_from_hint(self, event_factory: EventFactory) -> None:
        """Native slash commands arrive with a hint and the argument as content."""
        event = event_factory(Side.DESTINATION, "resolved", command_hint="/close")

        assert parse_command(event) == Command(CommandName.CLOSE, "resolved")

    @pytest.mark.parametrize("text", ["/claim", "/archive", "/delete"])
    def test_staff_commands_ignored_on_origin(
        self, event_factory: EventFactory, text: str
    ) -> None:
        """Users cannot run staff commands; the text is relayed instead."""
        assert parse_command(event_factory(Side.ORIGIN, text)) is None

    @pytest.mark.parametrize("text", ["/start", "/cancel"])
    def test_user_commands_ignored_on_destination(
        self, event_factory: EventFactory, text: str
    ) -> None:
        assert parse_command(event_factory(Side.DESTINATION, text)) is None

    def test_unknown_command(self, event_factory: EventFactory) -> None:
        assert parse_command(event_factory(Side.ORIGIN, "/shrug ok")) is None
