"""Tests for the BridgeService lifecycle."""

import asyncio
from collections.abc import AsyncIterator, Callable
from pathlib import Path
from unittest.mock import AsyncMock, patch

import pytest
import structlog
from conftest import FakePlatform

from ticket_bridge.adapters.storage.sqlite import SQLiteTicketRepository
from ticket_bridge.config.schema import BridgeConfig, OriginConfig, RuntimeConfig
from ticket_bridge.core.bridge import InboundOutcome
from ticket_bridge.core.outage import ConnectionStatus
from ticket_bridge.core.service import (
    EXIT_CRASH,
    EXIT_ESCALATED,
    EXIT_OK,
    BridgeService,
    StartupError,
    create_service,
)
from ticket_bridge.models.message import InboundEvent, Side
from ticket_bridge.utils.async_helpers import (
    FatalPlatformError,
    PersistenceError,
    TransientPlatformError,
)

EventFactory = Callable[..., InboundEvent]


async def wait_until(predicate: Callable[[], bool], timeout: float = 3.0) -> None:
    """Poll until ``predicate`` holds or fail the test."""
    async with asyncio.timeout(timeout):
        while not predicate():
            await asyncio.sleep(0.01)


@pytest.fixture
def service(
    bridge_config: BridgeConfig,
    repository: SQLiteTicketRepository,
    origin: FakePlatform,
    destination: FakePlatform,
) -> BridgeService:
    return BridgeService(
        bridge_config, origin, destination, repository, install_signal_handlers=False
    )


@pytest.fixture
async def running(service: BridgeService) -> AsyncIterator[asyncio.Task[int]]:
    """Run the service in the background and stop it afterwards."""
    task = asyncio.create_task(service.start())
    await wait_until(lambda: service.is_running or task.done())
    yield task
    if not task.done():
        await service.stop()
    await asyncio.wait_for(task, timeout=3.0)


class TestServiceLifecycle:
    """Tests for start and stop."""

    async def test_start_connects_and_stop_disconnects(
        self,
        service: BridgeService,
        origin: FakePlatform,
        destination: FakePlatform,
    ) -> None:
        task = asyncio.create_task(service.start())
        await wait_until(lambda: service.is_running)

        assert origin.connected
        assert destination.connected
        assert service.outage.is_available(Side.ORIGIN)

        await service.stop()

        assert await task == EXIT_OK
        assert not service.is_running
        assert not origin.connected
        assert not destination.connected

    async def test_stop_when_not_running(self, service: BridgeService) -> None:
        await service.stop()

        assert not service.is_running

    async def test_unusable_datastore_fails_startup(
        self,
        bridge_config: BridgeConfig,
        origin: FakePlatform,
        destination: FakePlatform,
        tmp_path: Path,
    ) -> None:
        blocker = tmp_path / "file"
        blocker.write_text("")
        repository = SQLiteTicketRepository(blocker / "tickets.db")
        service = BridgeService(
            bridge_config, origin, destination, repository, install_signal_handlers=False
        )

        with pytest.raises(StartupError):
            await service.start()

        assert origin.connect_calls == 0


class TestEventHandling:
    """Tests for inbound events flowing through the running service."""

    async def test_event_is_relayed_and_acknowledged(
        self,
        service: BridgeService,
        running: asyncio.Task[int],
        origin: FakePlatform,
        destination: FakePlatform,
        event_factory: EventFactory,
    ) -> None:
        event = event_factory(Side.ORIGIN, "Hello")

        await origin.events.put(event)
        await wait_until(lambda: bool(origin.acknowledged))

        assert origin.acknowledged == [event]
        assert destination.texts_to("C0001")[-1] == "Alice: Hello"
        assert service.stats["events_processed"] == 1

    async def test_persistence_error_rejects_event(
        self,
        service: BridgeService,
        running: asyncio.Task[int],
        origin: FakePlatform,
        event_factory: EventFactory,
    ) -> None:
        """The platform keeps an event the bridge could not store."""
        event = event_factory(Side.ORIGIN, "Hello")
        failing = AsyncMock(side_effect=PersistenceError("disk full"))

        with patch.object(service.bridge, "on_inbound_from_origin", failing):
            await origin.events.put(event)
            await wait_until(lambda: bool(origin.rejected))

        assert origin.rejected == [event]
        assert origin.acknowledged == []
        assert service.is_running
        assert service.stats["errors_count"] == 1

    async def test_unexpected_error_stops_with_crash_code(
        self,
        service: BridgeService,
        running: asyncio.Task[int],
        origin: FakePlatform,
        event_factory: EventFactory,
    ) -> None:
        failing = AsyncMock(side_effect=RuntimeError("boom"))

        with patch.object(service.bridge, "on_inbound_from_origin", failing):
            await origin.events.put(event_factory(Side.ORIGIN, "Hello"))
            result = await asyncio.wait_for(running, timeout=3.0)

        assert result == EXIT_CRASH
        assert len(origin.rejected) == 1

    async def test_staff_event_goes_to_destination_handler(
        self,
        service: BridgeService,
        running: asyncio.Task[int],
        origin: FakePlatform,
        destination: FakePlatform,
        event_factory: EventFactory,
    ) -> None:
        await origin.events.put(event_factory(Side.ORIGIN, "Hello"))
        await wait_until(lambda: bool(destination.channels))

        reply = event_factory(
            Side.DESTINATION, "On it", user_id="USTAFF1", channel_ref="C0001", display_name="Sam"
        )
        await destination.events.put(reply)
        await wait_until(lambda: bool(destination.acknowledged))

        assert origin.texts_to("1001")[-1] == "On it"

    async def test_log_context_is_bound_per_event(
        self,
        service: BridgeService,
        running: asyncio.Task[int],
        event_factory: EventFactory,
    ) -> None:
        """Log lines inside the bridge carry the event and ticket ids; nothing leaks after."""
        event = event_factory(Side.ORIGIN, "Hello")
        relay = service.bridge.on_inbound_from_origin
        seen: dict[str, object] = {}

        async def spy(inbound: InboundEvent) -> InboundOutcome:
            outcome = await relay(inbound)
            seen.update(structlog.contextvars.get_contextvars())
            return outcome

        with patch.object(service.bridge, "on_inbound_from_origin", spy):
            await service.handle_event(event)

        assert seen["event_id"] == event.event_id
        assert seen["side"] == "origin"
        assert seen["ticket_id"] == 1
        remaining = structlog.contextvars.get_contextvars()
        assert not {"event_id", "side", "ticket_id"} & remaining.keys()


class TestHealthReporting:
    """Tests for the periodic health and metrics files."""

    async def test_metrics_file_is_written(
        self,
        bridge_config: BridgeConfig,
        repository: SQLiteTicketRepository,
        origin: FakePlatform,
        destination: FakePlatform,
        tmp_path: Path,
    ) -> None:
        metrics_file = tmp_path / "metrics" / "ticket_bridge.prom"
        bridge_config.runtime = RuntimeConfig(metrics_file=metrics_file)
        service = BridgeService(
            bridge_config, origin, destination, repository, install_signal_handlers=False
        )

        task = asyncio.create_task(service.start())
        try:
            await wait_until(metrics_file.exists)
        finally:
            await wait_until(lambda: service.is_running or task.done())
            await service.stop()
            await asyncio.wait_for(task, timeout=3.0)

        assert "# TYPE ticket_bridge_queue_depth gauge" in metrics_file.read_text()


class TestOutageHandling:
    """Tests for adapter outages while the service runs."""

    async def test_budget_exceeded_exits_for_restart(
        self, service: BridgeService, running: asyncio.Task[int]
    ) -> None:
        """Too many transient failures in the window end the process with 75."""
        for _ in range(6):
            service.outage.record_failure(Side.DESTINATION, TransientPlatformError("flaky"))

        assert await asyncio.wait_for(running, timeout=3.0) == EXIT_ESCALATED
        assert service.exit_code == EXIT_ESCALATED

    async def test_destination_down_at_startup(
        self,
        service: BridgeService,
        origin: FakePlatform,
        destination: FakePlatform,
        event_factory: EventFactory,
    ) -> None:
        """The bridge starts degraded, queues, and catches up after reconnecting."""
        destination.connect_error = TransientPlatformError("socket refused")
        task = asyncio.create_task(service.start())
        try:
            await wait_until(lambda: service.is_running)
            assert not service.outage.is_available(Side.DESTINATION)

            await origin.events.put(event_factory(Side.ORIGIN, "Hello"))
            await wait_until(lambda: bool(origin.acknowledged))
            assert service.stats["queue_depth"] >= 1

            destination.connect_error = None
            await wait_until(lambda: "Alice: Hello" in destination.texts_to("C0001"))

            assert service.outage.is_available(Side.DESTINATION)
            assert destination.texts_to("C0001")[-1] == "Alice: Hello"
            assert service.stats["queue_depth"] == 0
        finally:
            await service.stop()
            await asyncio.wait_for(task, timeout=3.0)

    async def test_fatal_connect_error_keeps_running(
        self,
        service: BridgeService,
        origin: FakePlatform,
        destination: FakePlatform,
    ) -> None:
        """Bad credentials leave the side failed without a restart loop."""
        destination.connect_error = FatalPlatformError("invalid_auth")
        task = asyncio.create_task(service.start())
        await wait_until(lambda: service.is_running)

        state = service.outage.state(Side.DESTINATION)
        assert state.status is ConnectionStatus.FAILED
        assert origin.connected

        await service.stop()
        assert await task == EXIT_OK
        assert destination.connect_calls == 1


class TestCreateService:
    """Tests for the service factory."""

    async def test_creates_adapters_from_config(self, bridge_config: BridgeConfig) -> None:
        with patch("ticket_bridge.adapters.chat.slack.AsyncApp"):
            from ticket_bridge.adapters.chat.slack import SlackAdapter
            from ticket_bridge.adapters.chat.telegram import TelegramAdapter

            service = await create_service(bridge_config)

        assert isinstance(service._origin, TelegramAdapter)
        assert isinstance(service._destination, SlackAdapter)
        assert not service.is_running

    async def test_missing_provider_section(self, bridge_config: BridgeConfig) -> None:
        config = bridge_config.model_copy(update={"origin": OriginConfig(provider="telegram")})

        with pytest.raises(ValueError, match="Telegram configuration required"):
            await create_service(config)
