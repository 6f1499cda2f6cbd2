"""Service lifecycle that runs the bridge inside one process.

This module implements the BridgeService that serves as the main entry
point of a bridge process. It:
- Opens the datastore, seeds categories and restores delivery queues
- Connects both adapters, tolerating a platform that is down at startup
- Listens on both sides with a concurrency limit
- Runs one reconnect loop per side, driven by the OutageTracker
- Handles graceful shutdown on signals (SIGTERM, SIGINT)
- Exits with a distinct code when the outage budget is exceeded, so the
  watchdog restarts the process
"""

from __future__ import annotations

import asyncio
import contextlib
import signal
from typing import TYPE_CHECKING

import structlog

from ticket_bridge.config.schema import BridgeConfig
from ticket_bridge.core.bridge import BridgeManager, InboundOutcome
from ticket_bridge.core.outage import OutageTracker
from ticket_bridge.core.ticket_state import InvalidTransition
from ticket_bridge.models.message import InboundEvent, Side
from ticket_bridge.models.ticket import Category
from ticket_bridge.utils.async_helpers import NotFound, PersistenceError, PlatformError
from ticket_bridge.utils.health import HealthChecker, write_health_file
from ticket_bridge.utils.logging import LogEventNames, bind_context, unbind_context
from ticket_bridge.utils.metrics import get_metrics, write_metrics_file

if TYPE_CHECKING:
    from ticket_bridge.interfaces.platform import ChannelPlatform, ChatPlatform
    from ticket_bridge.interfaces.repository import TicketRepository

log = structlog.get_logger()

EXIT_OK = 0
EXIT_CRASH = 1
EXIT_ESCALATED = 75  # EX_TEMPFAIL: restart me


class ServiceError(Exception):
    """Base exception for service errors."""


class StartupError(ServiceError):
    """Failed to start the service."""


class BridgeService:
    """Runs the bridge until shutdown.

    The service uses asyncio.Semaphore to limit concurrent event processing
    to ``runtime.max_concurrent``.

    Example:
        service = await create_service(config)
        exit_code = await service.start()  # Blocks until shutdown
    """

    def __init__(
        self,
        config: BridgeConfig,
        origin: ChatPlatform,
        destination: ChannelPlatform,
        repository: TicketRepository,
        outage: OutageTracker | None = None,
        install_signal_handlers: bool = True,
    ) -> None:
        """Initialize the service.

        Args:
            config: Application configuration
            origin: End-user platform adapter
            destination: Staff workspace adapter
            repository: Ticket datastore
            outage: Availability tracker (created from config if omitted)
            install_signal_handlers: Register SIGTERM/SIGINT handlers on start
        """
        self._config = config
        self._origin = origin
        self._destination = destination
        self._repository = repository
        self._install_signal_handlers = install_signal_handlers

        self._outage = outage or OutageTracker(config.outage)
        self._outage.set_escalation_callback(self._on_escalate)
        self._bridge = BridgeManager(config, repository, origin, destination, self._outage)

        # Concurrency control
        self._semaphore: asyncio.Semaphore | None = None
        self._active_tasks: set[asyncio.Task[InboundOutcome | None]] = set()
        self._listeners: dict[Side, asyncio.Task[None]] = {}
        self._background: list[asyncio.Task[None]] = []

        # Lifecycle state
        self._running = False
        self._shutdown_event: asyncio.Event | None = None
        self._stopped = asyncio.Event()
        self._exit_code = EXIT_OK

        # Statistics
        self._events_processed = 0
        self._errors_count = 0

    @property
    def bridge(self) -> BridgeManager:
        return self._bridge

    @property
    def outage(self) -> OutageTracker:
        return self._outage

    @property
    def is_running(self) -> bool:
        """Return True if the service is currently running."""
        return self._running

    @property
    def exit_code(self) -> int:
        return self._exit_code

    @property
    def stats(self) -> dict[str, int]:
        """Return processing statistics."""
        return {
            "events_processed": self._events_processed,
            "errors_count": self._errors_count,
            "active_tasks": len(self._active_tasks),
            "queue_depth": self._bridge.get_queue_depth(),
        }

    def _adapter(self, side: Side) -> ChatPlatform:
        return self._origin if side is Side.ORIGIN else self._destination

    async def start(self) -> int:
        """Start the service and block until it shuts down.

        Returns:
            Process exit code.

        Raises:
            StartupError: If the datastore cannot be opened.
        """
        if self._running:
            log.warning("service_already_running")
            return EXIT_OK

        log.info(
            LogEventNames.SERVICE_STARTING,
            config=self._config.model_dump(exclude={"origin", "destination"}, mode="json"),
        )

        self._semaphore = asyncio.Semaphore(self._config.runtime.max_concurrent)
        self._shutdown_event = asyncio.Event()
        self._stopped.clear()
        self._exit_code = EXIT_OK

        try:
            await self._repository.initialize()
            await self._seed_categories()
            restored = await self._bridge.restore()
        except PersistenceError as e:
            log.exception("service_startup_failed", error=str(e))
            raise StartupError(f"Failed to open datastore: {e}") from e

        for side in Side:
            await self._connect(side)

        if self._install_signal_handlers:
            self._setup_signal_handlers()

        self._running = True
        log.info(
            LogEventNames.SERVICE_STARTED,
            restored_messages=restored,
            adapters=self._outage.snapshot(),
        )

        for side in Side:
            if self._outage.is_available(side):
                self._start_listener(side)
            self._spawn(self._reconnect_loop(side), f"reconnect_{side.value}")
        self._spawn(self._health_loop(), "health")
        self._spawn(self._catch_up(), "catch_up")

        await self._shutdown_event.wait()
        await self._shutdown()
        return self._exit_code

    def request_shutdown(self, exit_code: int = EXIT_OK) -> None:
        """Ask the running service to stop; the first non-zero code wins."""
        if self._exit_code == EXIT_OK:
            self._exit_code = exit_code
        if self._shutdown_event is not None:
            self._shutdown_event.set()

    async def stop(self) -> None:
        """Gracefully stop the service and wait until it has shut down."""
        if not self._running:
            log.warning("service_not_running")
            return
        self.request_shutdown(EXIT_OK)
        await self._stopped.wait()

    async def handle_event(self, event: InboundEvent) -> InboundOutcome | None:
        """Process one inbound event and settle it with its adapter.

        Persistence failures reject the event so the platform redelivers it.
        Unexpected errors stop the service with a crash exit code.
        """
        if self._semaphore is None:
            return None

        adapter = self._adapter(event.side)
        async with self._semaphore:
            bind_context(event_id=event.event_id, side=event.side.value)
            try:
                return await self._dispatch(event, adapter)
            finally:
                # The bridge binds ticket_id once the ticket is known
                unbind_context("event_id", "side", "ticket_id")

    async def _dispatch(
        self, event: InboundEvent, adapter: ChatPlatform
    ) -> InboundOutcome | None:
        try:
            if event.side is Side.ORIGIN:
                outcome = await self._bridge.on_inbound_from_origin(event)
            else:
                outcome = await self._bridge.on_inbound_from_destination(event)
        except PersistenceError as e:
            self._errors_count += 1
            log.error("event_not_persisted", error=str(e))
            await self._settle(adapter.reject, event)
            return None
        except (InvalidTransition, NotFound) as e:
            log.warning("event_dropped", error=str(e), exception_type=type(e).__name__)
            await self._settle(adapter.acknowledge, event)
            return None
        except Exception as e:
            self._errors_count += 1
            log.exception("event_processing_crashed", error=str(e))
            await self._settle(adapter.reject, event)
            self.request_shutdown(EXIT_CRASH)
            return None

        await self._settle(adapter.acknowledge, event)
        self._events_processed += 1
        log.debug("event_processed", outcome=outcome.value)
        return outcome

    async def _settle(self, action, event: InboundEvent) -> None:  # type: ignore[no-untyped-def]
        try:
            await action(event)
        except PlatformError as e:
            self._outage.record_failure(event.side, e)

    async def _seed_categories(self) -> None:
        for item in self._config.categories:
            await self._repository.upsert_category(
                Category(
                    id=item.id,
                    name=item.name,
                    destination_category_ref=item.destination_category_ref,
                    transcript_category_ref=item.transcript_category_ref,
                )
            )

    async def _connect(self, side: Side) -> bool:
        adapter = self._adapter(side)
        try:
            await adapter.connect()
        except PlatformError as e:
            log.warning("adapter_connect_failed", side=side.value, error=str(e))
            self._outage.record_failure(side, e)
            return False
        self._outage.record_success(side)
        log.info("adapter_connected", side=side.value)
        return True

    def _spawn(self, coro, name: str) -> asyncio.Task[None]:  # type: ignore[no-untyped-def]
        task: asyncio.Task[None] = asyncio.create_task(coro, name=name)
        self._background.append(task)
        return task

    def _start_listener(self, side: Side) -> None:
        previous = self._listeners.get(side)
        if previous is not None and not previous.done():
            previous.cancel()
        self._listeners[side] = asyncio.create_task(self._listen(side), name=f"listen_{side.value}")

    async def _listen(self, side: Side) -> None:
        """Consume events from one adapter until it fails or shutdown."""
        log.info("starting_listener", side=side.value)
        try:
            async for event in self._adapter(side).listen():
                if self._shutdown_event and self._shutdown_event.is_set():
                    log.info("shutdown_signal_received_stopping_listener", side=side.value)
                    break

                task = asyncio.create_task(
                    self.handle_event(event),
                    name=f"event_{event.event_id}",
                )
                self._active_tasks.add(task)
                task.add_done_callback(self._active_tasks.discard)

        except asyncio.CancelledError:
            log.info("listener_cancelled", side=side.value)
        except PlatformError as e:
            self._outage.record_failure(side, e)

    async def _reconnect_loop(self, side: Side) -> None:
        """Reconnect a side after the OutageTracker schedules a retry."""
        adapter = self._adapter(side)
        while self._shutdown_event and not self._shutdown_event.is_set():
            await self._outage.wait_for_reconnect_needed(side)
            if await self._sleep_unless_shutdown(self._outage.seconds_until_retry(side)):
                return

            with contextlib.suppress(PlatformError):
                await adapter.disconnect()
            if not await self._connect(side):
                continue

            self._start_listener(side)
            try:
                await self._bridge.on_adapter_recovered(side)
            except PersistenceError as e:
                log.error("catch_up_failed", side=side.value, error=str(e))

    async def _catch_up(self) -> None:
        """Drain queues restored from the datastore for sides already up."""
        for side in Side:
            if self._outage.is_available(side):
                try:
                    await self._bridge.on_adapter_recovered(side)
                except PersistenceError as e:
                    log.error("catch_up_failed", side=side.value, error=str(e))

    async def _health_loop(self) -> None:
        runtime = self._config.runtime
        checker = HealthChecker(self._config, repository=self._repository, bridge=self._bridge)
        while True:
            report = await checker.run_all_checks()
            report.details["metrics"] = get_metrics().get_all_metrics()
            if runtime.health_file is not None:
                await write_health_file(report, runtime.health_file)
            if runtime.metrics_file is not None:
                write_metrics_file(runtime.metrics_file)
            if await self._sleep_unless_shutdown(runtime.health_interval):
                return

    async def _sleep_unless_shutdown(self, delay: float) -> bool:
        """Sleep for ``delay`` seconds; return True if shutdown was requested."""
        if self._shutdown_event is None:
            return True
        if delay > 0:
            with contextlib.suppress(TimeoutError):
                await asyncio.wait_for(self._shutdown_event.wait(), timeout=delay)
        return self._shutdown_event.is_set()

    def _on_escalate(self, side: Side, error: BaseException) -> None:
        log.error(
            "service_exiting_for_restart",
            side=side.value,
            error=str(error),
            exit_code=EXIT_ESCALATED,
        )
        self.request_shutdown(EXIT_ESCALATED)

    async def _shutdown(self) -> None:
        log.info(LogEventNames.SERVICE_STOPPING, active_tasks=len(self._active_tasks))

        tasks = [*self._listeners.values(), *self._background]
        for task in tasks:
            if not task.done():
                task.cancel()
        await asyncio.gather(*tasks, return_exceptions=True)
        self._listeners.clear()
        self._background.clear()

        await self._wait_for_tasks()

        for side in Side:
            try:
                await self._adapter(side).disconnect()
                log.info("adapter_disconnected", side=side.value)
            except Exception as e:
                log.warning("adapter_disconnect_error", side=side.value, error=str(e))

        if self._install_signal_handlers:
            loop = asyncio.get_running_loop()
            for sig in (signal.SIGTERM, signal.SIGINT):
                loop.remove_signal_handler(sig)

        self._running = False
        self._stopped.set()
        log.info(
            LogEventNames.SERVICE_STOPPED,
            exit_code=self._exit_code,
            events_processed=self._events_processed,
            errors=self._errors_count,
            queue_depth=self._bridge.get_queue_depth(),
        )

    async def _wait_for_tasks(self) -> None:
        """Wait for in-flight events with timeout."""
        if not self._active_tasks:
            return

        log.info("waiting_for_active_tasks", count=len(self._active_tasks))
        done, pending = await asyncio.wait(
            self._active_tasks,
            timeout=self._config.runtime.shutdown_timeout,
        )

        if pending:
            log.warning("cancelling_pending_tasks", count=len(pending))
            for task in pending:
                task.cancel()
            await asyncio.gather(*pending, return_exceptions=True)

        log.info("tasks_completed", completed=len(done), cancelled=len(pending))
        self._active_tasks.clear()

    def _setup_signal_handlers(self) -> None:
        """Set up signal handlers for graceful shutdown."""
        loop = asyncio.get_running_loop()

        for sig in (signal.SIGTERM, signal.SIGINT):
            loop.add_signal_handler(sig, self._handle_signal, sig)
            log.debug("signal_handler_registered", signal=sig.name)

    def _handle_signal(self, sig: signal.Signals) -> None:
        log.info("received_signal", signal=sig.name)
        self.request_shutdown(EXIT_OK)


async def create_service(config: BridgeConfig) -> BridgeService:
    """Factory function to create a BridgeService with all dependencies.

    Args:
        config: Application configuration

    Returns:
        Configured BridgeService instance

    Raises:
        ValueError: If a provider is not supported
    """
    from ticket_bridge.adapters.storage.sqlite import SQLiteTicketRepository

    origin = _create_origin_adapter(config)
    destination = _create_destination_adapter(config)
    repository = SQLiteTicketRepository(config.database.path, timeout=config.database.timeout)

    return BridgeService(config, origin, destination, repository)


def _create_origin_adapter(config: BridgeConfig) -> ChatPlatform:
    provider = config.origin.provider

    if provider == "telegram":
        if not config.origin.telegram:
            raise ValueError("Telegram configuration required when provider is 'telegram'")
        # Import here to avoid loading unnecessary dependencies
        from ticket_bridge.adapters.chat.telegram import TelegramAdapter

        return TelegramAdapter(
            config.origin.telegram,
            redelivery_delay=config.bridge.redelivery_delay,
            retry=config.retry,
        )

    raise ValueError(f"Unsupported origin provider: {provider}")


def _create_destination_adapter(config: BridgeConfig) -> ChannelPlatform:
    provider = config.destination.provider

    if provider == "slack":
        if not config.destination.slack:
            raise ValueError("Slack configuration required when provider is 'slack'")
        from ticket_bridge.adapters.chat.slack import SlackAdapter

        return SlackAdapter(
            config.destination.slack,
            redelivery_delay=config.bridge.redelivery_delay,
            retry=config.retry,
        )

    raise ValueError(f"Unsupported destination provider: {provider}")
