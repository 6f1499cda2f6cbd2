"""Protocol definitions for pluggable adapters."""

from .platform import ChannelPlatform, ChatPlatform
from .repository import TicketRepository

__all__ = ["ChannelPlatform", "ChatPlatform", "TicketRepository"]
