"""Abstract interfaces for the two chat platforms the bridge connects."""

from collections.abc import AsyncIterator
from typing import Protocol

from ..models.message import InboundEvent


class ChatPlatform(Protocol):
    """Abstract interface for a chat platform adapter.

    Both sides of the bridge implement this. Adapters translate SDK errors
    into the bridge taxonomy: ``TransientPlatformError`` for network,
    handshake and server failures, ``FatalPlatformError`` for bad
    credentials or missing permissions.
    """

    async def connect(self) -> None:
        """
        Establish connection to the platform.

        Raises:
            TransientPlatformError: If the platform is unreachable
            FatalPlatformError: If credentials are invalid
        """
        ...

    async def disconnect(self) -> None:
        """Gracefully close the connection and release resources."""
        ...

    def is_ready(self) -> bool:
        """Return True when connected and able to send."""
        ...

    def listen(self) -> AsyncIterator[InboundEvent]:
        """
        Yield inbound events as they arrive.

        The iterator ends when the adapter disconnects. If the underlying
        connection breaks, it raises a ``PlatformError`` so the caller can
        schedule a reconnect.

        Example:
            async for event in platform.listen():
                await bridge.on_inbound_from_origin(event)
        """
        ...

    async def send_message(self, channel_ref: str, content: str) -> str:
        """
        Send a text message.

        Args:
            channel_ref: Platform chat/channel identifier
            content: Plain text to send

        Returns:
            Platform identifier of the sent message

        Raises:
            PlatformError: If delivery fails
        """
        ...

    async def acknowledge(self, event: InboundEvent) -> None:
        """Confirm an event was persisted; it must not be redelivered."""
        ...

    async def reject(self, event: InboundEvent) -> None:
        """Hand an event back for later redelivery (it was not persisted)."""
        ...


class ChannelPlatform(ChatPlatform, Protocol):
    """A platform that can host one channel per ticket (the staff side)."""

    async def create_channel(self, name: str, category_ref: str, topic: str = "") -> str:
        """
        Create a channel for a ticket.

        Args:
            name: Desired channel name (already sanitized)
            category_ref: Category/section the channel belongs to
            topic: Optional channel topic

        Returns:
            Identifier of the created channel

        Raises:
            PlatformError: If creation fails
        """
        ...

    async def move_channel(
        self,
        channel_ref: str,
        target_category: str | None,
        archive: bool = False,
    ) -> None:
        """
        Move a channel to another category, optionally archiving it.

        Args:
            channel_ref: Channel to move
            target_category: Destination category, or None to keep the current one
            archive: Make the channel read-only after moving (transcripts)

        Raises:
            PlatformError: If the move fails
        """
        ...
