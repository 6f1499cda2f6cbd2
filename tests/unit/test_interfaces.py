"""Tests for protocol interfaces."""

import inspect
from unittest.mock import patch

import pytest
from conftest import FakePlatform

from ticket_bridge.adapters.chat.telegram import TelegramAdapter
from ticket_bridge.adapters.storage.sqlite import SQLiteTicketRepository
from ticket_bridge.config.schema import SlackConfig, TelegramConfig
from ticket_bridge.interfaces.platform import ChannelPlatform, ChatPlatform
from ticket_bridge.interfaces.repository import TicketRepository


def protocol_members(protocol: type) -> dict[str, object]:
    """Public callables declared on a protocol and its protocol bases."""
    members: dict[str, object] = {}
    for klass in reversed(protocol.__mro__):
        if klass is object or not getattr(klass, "_is_protocol", False):
            continue
        for name, value in vars(klass).items():
            if not name.startswith("_") and callable(value):
                members[name] = value
    return members


def assert_conforms(implementation: type, protocol: type) -> None:
    for name, declared in protocol_members(protocol).items():
        implemented = getattr(implementation, name, None)
        assert implemented is not None, f"{implementation.__name__} lacks {name}"
        assert inspect.iscoroutinefunction(implemented) == inspect.iscoroutinefunction(
            declared
        ), f"{implementation.__name__}.{name} differs in async-ness"
        declared_params = list(inspect.signature(declared).parameters)
        implemented_params = list(inspect.signature(implemented).parameters)
        assert implemented_params[: len(declared_params)] == declared_params, name


class TestProtocolMembers:
    """Sanity checks on the protocol declarations themselves."""

    def test_channel_platform_extends_chat_platform(self) -> None:
        chat = protocol_members(ChatPlatform)
        channel = protocol_members(ChannelPlatform)

        assert set(chat) < set(channel)
        assert {"create_channel", "move_channel"} == set(channel) - set(chat)

    def test_listen_is_an_async_generator_on_adapters(self) -> None:
        """listen() is declared plain so async generators satisfy it."""
        assert not inspect.iscoroutinefunction(protocol_members(ChatPlatform)["listen"])
        assert inspect.isasyncgenfunction(TelegramAdapter.listen)
        assert inspect.isasyncgenfunction(FakePlatform.listen)


class TestImplementationsConform:
    """Every adapter implements the protocol it is wired in as."""

    def test_telegram_is_a_chat_platform(self) -> None:
        assert_conforms(TelegramAdapter, ChatPlatform)

    def test_slack_is_a_channel_platform(self) -> None:
        from ticket_bridge.adapters.chat.slack import SlackAdapter

        assert_conforms(SlackAdapter, ChannelPlatform)

    def test_fake_platform_is_a_channel_platform(self) -> None:
        assert_conforms(FakePlatform, ChannelPlatform)

    def test_sqlite_is_a_ticket_repository(self) -> None:
        assert_conforms(SQLiteTicketRepository, TicketRepository)


class TestAdaptersAreInterchangeable:
    """Adapters can be used wherever the protocol is expected."""

    @pytest.fixture
    def platforms(self) -> list[ChatPlatform]:
        with patch("ticket_bridge.adapters.chat.slack.AsyncApp"):
            from ticket_bridge.adapters.chat.slack import SlackAdapter

            slack = SlackAdapter(SlackConfig(bot_token="xoxb-1", app_token="xapp-1"))
        telegram = TelegramAdapter(TelegramConfig(bot_token="123456:ABC-test_token"))
        return [telegram, slack, FakePlatform()]

    def test_not_ready_before_connect(self, platforms: list[ChatPlatform]) -> None:
        assert [p.is_ready() for p in platforms] == [False, False, False]
