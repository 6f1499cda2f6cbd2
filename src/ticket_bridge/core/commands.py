"""Command parsing for inbound events.

Users on the origin side can type ``/start [category]``, ``/close`` and
``/cancel``. Staff on the destination side use ``/claim``, ``/close``,
``/archive`` (alias ``/transcript``) and ``/delete``, either as native
slash commands (adapters set ``command_hint``) or typed as text.
"""

from __future__ import annotations

from dataclasses import dataclass
from enum import StrEnum

from ticket_bridge.models.message import InboundEvent, Side


class CommandName(StrEnum):
    """Commands understood by the bridge."""

    START = "start"
    CLOSE = "close"
    CANCEL = "cancel"
    CLAIM = "claim"
    ARCHIVE = "archive"
    DELETE = "delete"


ALIASES = {
    "transcript": CommandName.ARCHIVE,
    "new": CommandName.START,
}

COMMANDS_BY_SIDE: dict[Side, frozenset[CommandName]] = {
    Side.ORIGIN: frozenset({CommandName.START, CommandName.CLOSE, CommandName.CANCEL}),
    Side.DESTINATION: frozenset(
        {CommandName.CLAIM, CommandName.CLOSE, CommandName.ARCHIVE, CommandName.DELETE}
    ),
}


@dataclass(frozen=True)
class Command:
    """A parsed command and its free-text argument."""

    name: CommandName
    argument: str = ""


def _lookup(token: str) -> CommandName | None:
    token = token.lower()
    if token in ALIASES:
        return ALIASES[token]
    try:
        return CommandName(token)
    except ValueError:
        return None


def parse_command(event: InboundEvent) -> Command | None:
    """Extract a command from an inbound event.

    Unknown commands and commands that do not belong to the event's side
    return None, so the text is relayed like any other message.
    """
    if event.command_hint:
        token = event.command_hint.lstrip("/")
        argument = event.content.strip()
    else:
        text = event.content.strip()
        if not text.startswith("/"):
            return None
        token, _, argument = text[1:].partition(" ")
        token = token.split("@", 1)[0]  # Telegram "/start@SupportBot"
        argument = argument.strip()

    name = _lookup(token)
    if name is None or name not in COMMANDS_BY_SIDE[event.side]:
        return None
    return Command(name=name, argument=argument)
