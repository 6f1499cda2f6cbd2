"""Concrete implementations of provider interfaces."""

from .chat.slack import SlackAdapter
from .chat.telegram import TelegramAdapter
from .storage.sqlite import SQLiteTicketRepository

__all__ = [
    "SQLiteTicketRepository",
    "SlackAdapter",
    "TelegramAdapter",
]
