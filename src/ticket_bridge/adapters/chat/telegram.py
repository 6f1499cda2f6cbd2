"""Telegram origin adapter using the Bot API over httpx.

This module implements the ChatPlatform protocol for Telegram. Users talk to
the bot in private chats; the adapter long-polls ``getUpdates`` in a
background task and turns private messages into InboundEvents.

Error classification:
- 401 / 404 (unknown or revoked token): FatalPlatformError
- 400 / 403 on send (chat not found, bot blocked by the user): DeliveryRefused
- 409 (another poller or a webhook is active), 429, 5xx, network errors and
  timeouts: TransientPlatformError

Updates are confirmed to Telegram (via the getUpdates offset) only once the
bridge has acknowledged them, so an update that was never saved is fetched
again after a restart.

The bot token is part of every request URL, so it is scrubbed from every
error message before it can reach a log line.
"""

from __future__ import annotations

import asyncio
from collections.abc import AsyncIterator
from datetime import UTC, datetime
from typing import Any

import httpx
import structlog

from ...config.schema import RetryConfig, TelegramConfig
from ...models.message import InboundEvent, Side
from ...utils.async_helpers import (
    DeliveryRefused,
    FatalPlatformError,
    PlatformError,
    RateLimiter,
    RateLimitError,
    TimeoutError as RequestTimeout,
    TransientPlatformError,
    create_retry,
)
from ...utils.security import SecretRedactor

log = structlog.get_logger()

MESSAGE_LIMIT = 4096

# Pause before polling again when only unacknowledged updates came back
UNSETTLED_POLL_INTERVAL = 1.0

# Non-text messages are relayed as a short placeholder
_PLACEHOLDERS = {
    "photo": "[photo]",
    "video": "[video]",
    "voice": "[voice message]",
    "audio": "[audio]",
    "sticker": "[sticker]",
    "animation": "[animation]",
    "location": "[location]",
    "contact": "[contact]",
}


def split_message(text: str, limit: int = MESSAGE_LIMIT) -> list[str]:
    """Split text into chunks Telegram accepts, preferring line breaks."""
    if len(text) <= limit:
        return [text]

    chunks: list[str] = []
    remaining = text
    while len(remaining) > limit:
        cut = remaining.rfind("\n", 0, limit)
        if cut <= 0:
            cut = limit
        chunks.append(remaining[:cut])
        remaining = remaining[cut:].lstrip("\n")
    if remaining:
        chunks.append(remaining)
    return chunks


def _display_name(sender: dict[str, Any]) -> str:
    full_name = " ".join(
        part for part in (sender.get("first_name"), sender.get("last_name")) if part
    )
    return full_name or sender.get("username") or str(sender.get("id", "unknown"))


def _message_content(message: dict[str, Any]) -> str:
    if message.get("text"):
        return str(message["text"])

    caption = message.get("caption", "")
    if "document" in message:
        name = message["document"].get("file_name", "file")
        label = f"[document: {name}]"
    else:
        label = next((text for key, text in _PLACEHOLDERS.items() if key in message), "")
    return " ".join(part for part in (label, caption) if part)


class TelegramAdapter:
    """Telegram adapter implementing the ChatPlatform protocol.

    Example:
        adapter = TelegramAdapter(TelegramConfig(bot_token="123456:ABC..."))

        await adapter.connect()
        async for event in adapter.listen():
            print(f"{event.display_name}: {event.content}")
        await adapter.disconnect()
    """

    def __init__(
        self,
        config: TelegramConfig,
        redelivery_delay: float = 5.0,
        retry: RetryConfig | None = None,
        transport: httpx.AsyncBaseTransport | None = None,
    ) -> None:
        """Initialize the Telegram adapter.

        Args:
            config: Telegram-specific configuration.
            redelivery_delay: Seconds before a rejected event is yielded again.
            retry: Retry policy for the connect handshake.
            transport: Custom httpx transport (tests use httpx.MockTransport).
        """
        self._config = config
        self._redelivery_delay = redelivery_delay
        self._retry = retry or RetryConfig()
        self._transport = transport
        self._redactor = SecretRedactor()

        self._client: httpx.AsyncClient | None = None
        self._connected = False
        self._bot_username: str | None = None

        self._events: asyncio.Queue[InboundEvent | PlatformError] = asyncio.Queue()
        self._next_update_id: int | None = None
        self._unacked: set[int] = set()
        self._poll_task: asyncio.Task[None] | None = None
        self._redeliveries: set[asyncio.Task[None]] = set()
        self._disconnect_event = asyncio.Event()

        self._limiter = RateLimiter(rate=config.messages_per_second)

    @property
    def bot_username(self) -> str | None:
        return self._bot_username

    def _scrub(self, text: str) -> str:
        return self._redactor.redact(text.replace(self._config.bot_token, "[REDACTED]"))

    async def _call(
        self,
        method: str,
        params: dict[str, Any] | None = None,
        timeout: float | None = None,
    ) -> Any:
        """Invoke a Bot API method and return its ``result``.

        Raises:
            PlatformError: Classified as described in the module docstring.
        """
        if self._client is None:
            raise TransientPlatformError("Telegram client is not connected")

        try:
            response = await self._client.post(
                method,
                json=params or {},
                timeout=timeout or self._config.request_timeout,
            )
        except httpx.TimeoutException as e:
            raise RequestTimeout(f"Telegram {method} timed out") from e
        except httpx.HTTPError as e:
            raise TransientPlatformError(self._scrub(f"Telegram {method} failed: {e}")) from e

        try:
            payload: dict[str, Any] = response.json()
        except ValueError:
            payload = {}

        if response.status_code == 200 and payload.get("ok"):
            return payload.get("result")

        status = int(payload.get("error_code") or response.status_code)
        description = self._scrub(str(payload.get("description") or response.reason_phrase))
        raise self._classify(method, status, description, payload.get("parameters") or {})

    @staticmethod
    def _classify(
        method: str,
        status: int,
        description: str,
        parameters: dict[str, Any],
    ) -> PlatformError:
        message = f"Telegram {method} failed ({status}): {description}"
        if status in (401, 404):
            return FatalPlatformError(message)
        if status in (400, 403) and method == "sendMessage":
            return DeliveryRefused(message)
        if status == 429:
            return RateLimitError(message, retry_after=parameters.get("retry_after"))
        return TransientPlatformError(message)

    async def connect(self) -> None:
        """Validate the token with ``getMe`` and start long polling.

        Raises:
            TransientPlatformError: If the Bot API is unreachable.
            FatalPlatformError: If the token is rejected.
        """
        if self._connected:
            return

        self._client = httpx.AsyncClient(
            base_url=f"{self._config.api_base_url.rstrip('/')}/bot{self._config.bot_token}/",
            timeout=self._config.request_timeout,
            transport=self._transport,
        )

        get_me = create_retry(
            max_attempts=self._retry.max_attempts,
            min_wait=self._retry.initial_delay,
            max_wait=self._retry.max_delay,
            retry_on=(TransientPlatformError,),
        )(self._call)

        try:
            me = await get_me("getMe")
        except PlatformError:
            await self._client.aclose()
            self._client = None
            raise

        self._bot_username = me.get("username")
        self._connected = True
        self._disconnect_event.clear()
        self._poll_task = asyncio.create_task(self._poll_updates(), name="telegram_poll")

        log.info("telegram_connected", bot_username=self._bot_username)

    async def disconnect(self) -> None:
        """Stop polling and close the HTTP client."""
        self._disconnect_event.set()

        tasks = [task for task in (self._poll_task, *self._redeliveries) if task is not None]
        for task in tasks:
            task.cancel()
        await asyncio.gather(*tasks, return_exceptions=True)
        self._poll_task = None
        self._redeliveries.clear()

        if self._client is not None:
            await self._client.aclose()
            self._client = None

        if self._connected:
            self._connected = False
            log.info("telegram_disconnected")

    def is_ready(self) -> bool:
        return self._connected

    async def _poll_updates(self) -> None:
        """Long-poll getUpdates and feed the event queue until disconnect."""
        while not self._disconnect_event.is_set():
            params: dict[str, Any] = {
                "timeout": self._config.poll_timeout,
                "allowed_updates": ["message"],
            }
            offset = self._poll_offset()
            if offset is not None:
                params["offset"] = offset

            try:
                updates = await self._call(
                    "getUpdates",
                    params,
                    timeout=self._config.poll_timeout + self._config.request_timeout,
                )
            except PlatformError as e:
                log.warning("telegram_poll_failed", error=str(e))
                await self._events.put(e)
                return

            fresh = 0
            for update in updates:
                update_id = int(update["update_id"])
                if self._next_update_id is not None and update_id < self._next_update_id:
                    continue  # unacknowledged, already queued
                self._next_update_id = update_id + 1
                fresh += 1
                event = self._to_event(update)
                if event is not None:
                    self._unacked.add(update_id)
                    await self._events.put(event)

            if updates and not fresh:
                await asyncio.sleep(UNSETTLED_POLL_INTERVAL)

    def _poll_offset(self) -> int | None:
        """Return the getUpdates offset.

        Telegram treats every update below the offset as confirmed and never
        sends it again, so the offset stays at the oldest update the bridge
        has not acknowledged yet.
        """
        if self._unacked:
            return min(self._unacked)
        return self._next_update_id

    def _to_event(self, update: dict[str, Any]) -> InboundEvent | None:
        message = update.get("message")
        if not message:
            return None

        chat = message.get("chat", {})
        sender = message.get("from") or {}
        # Only private chats with real users are tickets
        if chat.get("type") != "private" or sender.get("is_bot"):
            return None

        content = _message_content(message)
        if not content:
            return None

        return InboundEvent(
            event_id=f"{chat['id']}:{message['message_id']}",
            side=Side.ORIGIN,
            source_user_id=str(sender.get("id", chat["id"])),
            channel_ref=str(chat["id"]),
            content=content,
            received_at=datetime.fromtimestamp(message.get("date", 0), UTC)
            if message.get("date")
            else datetime.now(UTC),
            display_name=_display_name(sender),
            raw_event=update,
        )

    async def listen(self) -> AsyncIterator[InboundEvent]:
        """Yield inbound events until disconnect.

        Raises:
            PlatformError: If long polling fails.
        """
        if not self._connected:
            raise TransientPlatformError("Not connected. Call connect() first.")

        while not self._disconnect_event.is_set():
            try:
                item = await asyncio.wait_for(self._events.get(), timeout=1.0)
            except TimeoutError:
                continue

            if isinstance(item, PlatformError):
                self._connected = False
                raise item
            yield item

    async def send_message(self, channel_ref: str, content: str) -> str:
        """Send text to a chat, split into several messages if too long.

        Returns:
            Id of the last message sent.
        """
        message_id = ""
        for chunk in split_message(content):
            async with self._limiter:
                result = await self._call(
                    "sendMessage", {"chat_id": channel_ref, "text": chunk}
                )
            message_id = str(result.get("message_id", ""))

        log.debug("telegram_message_sent", chat_id=channel_ref, message_id=message_id)
        return message_id

    async def acknowledge(self, event: InboundEvent) -> None:
        """Let the next getUpdates call confirm this update to Telegram."""
        update_id = event.raw_event.get("update_id")
        if update_id is not None:
            self._unacked.discard(int(update_id))

    async def reject(self, event: InboundEvent) -> None:
        """Yield the event again after the redelivery delay.

        The update stays unconfirmed, so Telegram also redelivers it if the
        process exits first.
        """
        task = asyncio.create_task(self._redeliver(event))
        self._redeliveries.add(task)
        task.add_done_callback(self._redeliveries.discard)

    async def _redeliver(self, event: InboundEvent) -> None:
        await asyncio.sleep(self._redelivery_delay)
        await self._events.put(event)
        log.info("telegram_event_redelivered", event_id=event.event_id)
