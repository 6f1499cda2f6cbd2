"""Slack destination adapter using slack-bolt.

This module implements the ChannelPlatform protocol for Slack using the
slack-bolt library with Socket Mode for real-time events.

Features:
- Socket Mode connection for staff messages and slash commands
- One (private) channel per ticket, with staff invited on creation
- Transcript moves: Slack has no channel categories, so a category
  reference is used as a channel-name prefix and moving a channel renames
  it under the target prefix before archiving it

Slack errors are classified into the bridge taxonomy: authentication and
scope errors are fatal, rate limits and everything else are transient.
"""

from __future__ import annotations

import asyncio
from collections.abc import AsyncIterator
from datetime import UTC, datetime
from typing import TYPE_CHECKING, Any

import aiohttp
import structlog
from slack_bolt.adapter.socket_mode.async_handler import AsyncSocketModeHandler
from slack_bolt.app.async_app import AsyncApp
from slack_sdk.errors import SlackApiError
from slack_sdk.web.async_client import AsyncWebClient

from ...config.schema import RetryConfig, SlackConfig
from ...models.message import InboundEvent, Side
from ...utils.async_helpers import (
    DeliveryRefused,
    FatalPlatformError,
    PlatformError,
    RateLimitError,
    TransientPlatformError,
    create_retry,
)
from ...utils.security import sanitize_channel_name

if TYPE_CHECKING:
    from slack_bolt.context.ack.async_ack import AsyncAck
    from slack_bolt.context.async_context import AsyncBoltContext


log = structlog.get_logger()

FATAL_ERRORS = frozenset(
    {
        "invalid_auth",
        "not_authed",
        "token_revoked",
        "token_expired",
        "account_inactive",
        "missing_scope",
        "not_allowed_token_type",
    }
)
# The channel is gone or unusable; retrying the same message will not help
REFUSED_ERRORS = frozenset({"channel_not_found", "is_archived", "not_in_channel"})
IGNORED_SUBTYPES = frozenset(
    {"bot_message", "message_changed", "message_deleted", "channel_join", "channel_topic"}
)
STAFF_COMMANDS = ("claim", "close", "archive", "transcript", "delete")
NETWORK_ERRORS = (aiohttp.ClientError, OSError, TimeoutError)


def classify_slack_error(action: str, error: SlackApiError) -> PlatformError:
    """Map a SlackApiError onto the bridge error taxonomy."""
    code = error.response.get("error", "") if error.response is not None else ""
    message = f"Slack {action} failed: {code or error}"

    if code in FATAL_ERRORS:
        return FatalPlatformError(message)
    if code == "ratelimited" or getattr(error.response, "status_code", None) == 429:
        headers = getattr(error.response, "headers", None) or {}
        retry_after = headers.get("Retry-After")
        return RateLimitError(message, retry_after=int(retry_after) if retry_after else None)
    if code in REFUSED_ERRORS:
        return DeliveryRefused(message)
    return TransientPlatformError(message)


class SlackAdapter:
    """Slack adapter implementing the ChannelPlatform protocol.

    Example:
        config = SlackConfig(bot_token="xoxb-...", app_token="xapp-...")
        adapter = SlackAdapter(config)

        await adapter.connect()
        channel = await adapter.create_channel("billing-12", "tickets")
        await adapter.send_message(channel, "Hello from the bridge")
    """

    def __init__(
        self,
        config: SlackConfig,
        redelivery_delay: float = 5.0,
        retry: RetryConfig | None = None,
    ) -> None:
        """Initialize the Slack adapter.

        Args:
            config: Slack-specific configuration.
            redelivery_delay: Seconds before a rejected event is yielded again.
            retry: Retry policy for the connect handshake.
        """
        self._config = config
        self._redelivery_delay = redelivery_delay
        self._retry = retry or RetryConfig()
        self._connected = False
        self._bot_user_id: str | None = None

        # Create the Slack app
        self._app = AsyncApp(token=config.bot_token)
        self._client: AsyncWebClient = self._app.client
        self._socket_handler: AsyncSocketModeHandler | None = None

        self._events: asyncio.Queue[InboundEvent] = asyncio.Queue()
        self._user_names: dict[str, str] = {}
        self._redeliveries: set[asyncio.Task[None]] = set()
        self._disconnect_event = asyncio.Event()

        self._register_handlers()

    def _register_handlers(self) -> None:
        """Register event and slash command handlers with the Slack app."""

        @self._app.event("message")
        async def handle_message(
            event: dict[str, Any],
            context: AsyncBoltContext,
        ) -> None:
            """Handle incoming message events."""
            await self._process_message_event(event)

        async def handle_command(ack: AsyncAck, command: dict[str, Any]) -> None:
            """Acknowledge a staff slash command and queue it."""
            user_id = command.get("user_id", "")
            if self._config.staff_user_ids and user_id not in self._config.staff_user_ids:
                await ack("Only support staff can use this command.")
                return
            await ack()
            await self._process_command(command)

        for name in STAFF_COMMANDS:
            self._app.command(f"/{name}")(handle_command)

    async def _process_message_event(self, event: dict[str, Any]) -> None:
        """Turn a channel message into an InboundEvent."""
        if event.get("subtype") in IGNORED_SUBTYPES or event.get("bot_id"):
            return

        user_id = event.get("user", "")
        if not user_id or user_id == self._bot_user_id:
            return

        channel_id = event.get("channel", "")
        ts = event.get("ts", "")
        try:
            received_at = datetime.fromtimestamp(float(ts), UTC)
        except (ValueError, TypeError):
            received_at = datetime.now(UTC)

        inbound = InboundEvent(
            event_id=f"{channel_id}:{ts}",
            side=Side.DESTINATION,
            source_user_id=user_id,
            channel_ref=channel_id,
            content=event.get("text", ""),
            received_at=received_at,
            display_name=await self._get_user_name(user_id),
            raw_event=event,
        )
        await self._events.put(inbound)
        log.debug("slack_message_received", channel_id=channel_id, ts=ts)

    async def _process_command(self, command: dict[str, Any]) -> None:
        """Turn a slash command payload into an InboundEvent with a command hint."""
        user_id = command.get("user_id", "")
        inbound = InboundEvent(
            event_id=f"cmd:{command.get('trigger_id', '')}",
            side=Side.DESTINATION,
            source_user_id=user_id,
            channel_ref=command.get("channel_id", ""),
            content=command.get("text", ""),
            received_at=datetime.now(UTC),
            display_name=command.get("user_name") or await self._get_user_name(user_id),
            command_hint=command.get("command", "").lstrip("/"),
            raw_event=command,
        )
        await self._events.put(inbound)
        log.debug(
            "slack_command_received",
            command=inbound.command_hint,
            channel_id=inbound.channel_ref,
        )

    async def _get_user_name(self, user_id: str) -> str:
        """Get a display name for a user, cached per process."""
        if user_id in self._user_names:
            return self._user_names[user_id]

        try:
            result = await self._client.users_info(user=user_id)
        except SlackApiError:
            return user_id

        user: dict[str, Any] = result.get("user", {})
        profile = user.get("profile", {})
        name = profile.get("display_name") or profile.get("real_name") or user.get("name")
        self._user_names[user_id] = name or user_id
        return self._user_names[user_id]

    async def connect(self) -> None:
        """Check the bot token and open the Socket Mode connection.

        Raises:
            TransientPlatformError: If Slack is unreachable.
            FatalPlatformError: If a token is invalid or lacks scopes.
        """
        if self._connected:
            return

        auth_test = create_retry(
            max_attempts=self._retry.max_attempts,
            min_wait=self._retry.initial_delay,
            max_wait=self._retry.max_delay,
            retry_on=NETWORK_ERRORS,
        )(self._client.auth_test)

        try:
            auth = await auth_test()
            self._bot_user_id = auth.get("user_id")

            self._socket_handler = AsyncSocketModeHandler(
                app=self._app,
                app_token=self._config.app_token,
            )
            await self._socket_handler.connect_async()  # type: ignore[no-untyped-call]
        except SlackApiError as e:
            error = classify_slack_error("connect", e)
            log.error("slack_connection_failed", error=str(error))
            raise error from e
        except NETWORK_ERRORS as e:
            log.error("slack_connection_failed", error=str(e))
            raise TransientPlatformError(f"Failed to connect to Slack: {e}") from e

        self._connected = True
        self._disconnect_event.clear()
        log.info("slack_connected", bot_user_id=self._bot_user_id)

    async def disconnect(self) -> None:
        """Gracefully close the Slack connection."""
        self._disconnect_event.set()

        for task in self._redeliveries:
            task.cancel()
        await asyncio.gather(*self._redeliveries, return_exceptions=True)
        self._redeliveries.clear()

        if not self._connected:
            return

        if self._socket_handler:
            try:
                await self._socket_handler.close_async()  # type: ignore[no-untyped-call]
            except NETWORK_ERRORS as e:
                log.warning("disconnect_error", error=str(e))
            self._socket_handler = None

        self._connected = False
        log.info("slack_disconnected")

    def is_ready(self) -> bool:
        return self._connected

    async def listen(self) -> AsyncIterator[InboundEvent]:
        """Yield staff messages and commands as they arrive.

        Yields:
            InboundEvent: Each message or slash command from the workspace.
        """
        if not self._connected:
            raise TransientPlatformError("Not connected. Call connect() first.")

        while not self._disconnect_event.is_set():
            try:
                # Wait with a timeout to notice disconnects
                event = await asyncio.wait_for(self._events.get(), timeout=1.0)
            except TimeoutError:
                continue
            yield event

    async def send_message(self, channel_ref: str, content: str) -> str:
        """Post a message to a channel.

        Returns:
            Message ts of the sent message.
        """
        try:
            result = await self._client.chat_postMessage(channel=channel_ref, text=content)
        except SlackApiError as e:
            raise classify_slack_error("chat.postMessage", e) from e
        except NETWORK_ERRORS as e:
            raise TransientPlatformError(f"Slack chat.postMessage failed: {e}") from e

        message_ts: str = result.get("ts", "")
        log.debug("slack_message_sent", channel_id=channel_ref, message_ts=message_ts)
        return message_ts

    async def create_channel(self, name: str, category_ref: str, topic: str = "") -> str:
        """Create a ticket channel named ``<category_ref>-<name>``.

        If the channel already exists (an earlier attempt timed out after
        Slack created it) the existing channel is reused.
        """
        channel_name = sanitize_channel_name(f"{category_ref}-{name}")
        try:
            result = await self._client.conversations_create(
                name=channel_name,
                is_private=self._config.private_channels,
            )
            channel_id: str = result["channel"]["id"]
        except SlackApiError as e:
            if e.response.get("error") != "name_taken":
                raise classify_slack_error("conversations.create", e) from e
            try:
                existing = await self._find_channel(channel_name)
            except SlackApiError as lookup_error:
                raise classify_slack_error("conversations.list", lookup_error) from lookup_error
            if existing is None:
                raise classify_slack_error("conversations.create", e) from e
            channel_id = existing
            log.info("slack_channel_reused", channel_name=channel_name, channel_id=channel_id)
        except NETWORK_ERRORS as e:
            raise TransientPlatformError(f"Slack conversations.create failed: {e}") from e

        if topic:
            try:
                await self._client.conversations_setTopic(channel=channel_id, topic=topic)
            except SlackApiError as e:
                log.warning("slack_set_topic_failed", channel_id=channel_id, error=str(e))

        await self._invite_staff(channel_id)
        log.info("slack_channel_created", channel_name=channel_name, channel_id=channel_id)
        return channel_id

    async def _invite_staff(self, channel_id: str) -> None:
        if not self._config.staff_user_ids:
            return
        try:
            await self._client.conversations_invite(
                channel=channel_id,
                users=",".join(self._config.staff_user_ids),
            )
        except SlackApiError as e:
            if e.response.get("error") != "already_in_channel":
                log.warning("slack_invite_failed", channel_id=channel_id, error=str(e))

    async def _find_channel(self, channel_name: str) -> str | None:
        """Look up a channel id by name, following pagination."""
        cursor: str | None = None
        while True:
            result = await self._client.conversations_list(
                types="public_channel,private_channel",
                exclude_archived=True,
                limit=200,
                cursor=cursor,
            )
            for channel in result.get("channels", []):
                if channel.get("name") == channel_name:
                    return str(channel["id"])
            cursor = result.get("response_metadata", {}).get("next_cursor")
            if not cursor:
                return None

    async def move_channel(
        self,
        channel_ref: str,
        target_category: str | None,
        archive: bool = False,
    ) -> None:
        """Rename a channel under ``target_category`` and optionally archive it."""
        try:
            if target_category:
                info = await self._client.conversations_info(channel=channel_ref)
                current_name: str = info["channel"]["name"]
                new_name = sanitize_channel_name(f"{target_category}-{current_name}")
                try:
                    await self._client.conversations_rename(channel=channel_ref, name=new_name)
                except SlackApiError as e:
                    if e.response.get("error") != "name_taken":
                        raise
                    log.warning("slack_rename_skipped", channel_id=channel_ref, name=new_name)

            if archive:
                try:
                    await self._client.conversations_archive(channel=channel_ref)
                except SlackApiError as e:
                    if e.response.get("error") != "already_archived":
                        raise
        except SlackApiError as e:
            raise classify_slack_error("channel move", e) from e
        except NETWORK_ERRORS as e:
            raise TransientPlatformError(f"Slack channel move failed: {e}") from e

        log.info(
            "slack_channel_moved",
            channel_id=channel_ref,
            target_category=target_category,
            archived=archive,
        )

    async def acknowledge(self, event: InboundEvent) -> None:
        """Bolt acknowledges events to Slack itself; nothing to do."""

    async def reject(self, event: InboundEvent) -> None:
        """Yield the event again after the redelivery delay."""
        task = asyncio.create_task(self._redeliver(event))
        self._redeliveries.add(task)
        task.add_done_callback(self._redeliveries.discard)

    async def _redeliver(self, event: InboundEvent) -> None:
        await asyncio.sleep(self._redelivery_delay)
        await self._events.put(event)
        log.info("slack_event_redelivered", event_id=event.event_id)
