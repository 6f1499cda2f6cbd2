"""Process watchdog that supervises the bridge process.

The watchdog starts the bridge as a child process and restarts it when it
exits abnormally. Restarts are paced by the shared BackoffPolicy: while the
number of restarts inside the rolling window stays within budget the child
is restarted after the initial delay; beyond it the delay doubles on every
restart, up to a cap. Restart history is persisted as JSON so the budget
survives watchdog restarts too.

A clean exit (code 0) is never restarted. SIGTERM and SIGINT are forwarded
to the child, which gets a grace period before it is killed.
"""

from __future__ import annotations

import asyncio
import json
import os
import signal
import time
from collections.abc import Awaitable, Callable, Iterable, Sequence
from datetime import UTC, datetime
from pathlib import Path
from typing import Protocol

import structlog

from ticket_bridge.config.schema import WatchdogConfig
from ticket_bridge.core.backoff import BackoffEvent, BackoffPolicy
from ticket_bridge.utils.logging import SUPERVISED_ENV_VAR, LogEventNames

log = structlog.get_logger()


class ChildProcess(Protocol):
    """The subset of asyncio.subprocess.Process the watchdog relies on."""

    pid: int
    returncode: int | None

    async def wait(self) -> int: ...

    def send_signal(self, sig: int) -> None: ...

    def kill(self) -> None: ...


SpawnFn = Callable[[Sequence[str], dict[str, str]], Awaitable[ChildProcess]]
SleepFn = Callable[[float], Awaitable[None]]


async def spawn_subprocess(command: Sequence[str], env: dict[str, str]) -> ChildProcess:
    """Start ``command`` with ``env``, inheriting stdio."""
    return await asyncio.create_subprocess_exec(*command, env=env)


def describe_exit(returncode: int) -> str:
    """Human-readable reason for a child exit."""
    if returncode < 0:
        try:
            return f"killed by {signal.Signals(-returncode).name}"
        except ValueError:
            return f"killed by signal {-returncode}"
    return f"exit code {returncode}"


class RestartHistory:
    """Restart log persisted as JSON and pruned to the rolling window.

    File format::

        {"last_update": "2024-01-01T00:00:00+00:00",
         "restarts": [{"timestamp": 1704067200.0, "reason": "exit code 1"}]}
    """

    def __init__(
        self,
        path: Path,
        window: float,
        clock: Callable[[], float] = time.time,
    ) -> None:
        self._path = path
        self._window = window
        self._clock = clock

    @property
    def path(self) -> Path:
        return self._path

    def load(self) -> list[BackoffEvent]:
        """Read recorded restarts inside the window; a missing or corrupt file is empty."""
        try:
            data = json.loads(self._path.read_text())
            records = data.get("restarts", [])
            events = [
                BackoffEvent(timestamp=float(item["timestamp"]), reason=str(item.get("reason", "")))
                for item in records
            ]
        except FileNotFoundError:
            return []
        except (OSError, ValueError, KeyError, TypeError, AttributeError) as e:
            log.warning("restart_history_unreadable", path=str(self._path), error=str(e))
            return []

        now = self._clock()
        return [event for event in events if now - event.timestamp < self._window]

    def save(self, events: Iterable[BackoffEvent]) -> None:
        """Write the history atomically; errors are logged, not raised."""
        now = self._clock()
        payload = {
            "last_update": datetime.fromtimestamp(now, UTC).isoformat(),
            "restarts": [
                {"timestamp": event.timestamp, "reason": event.reason}
                for event in events
                if now - event.timestamp < self._window
            ],
        }
        tmp_path = self._path.with_suffix(self._path.suffix + ".tmp")
        try:
            self._path.parent.mkdir(parents=True, exist_ok=True)
            tmp_path.write_text(json.dumps(payload, indent=2))
            os.replace(tmp_path, self._path)
        except OSError as e:
            log.error("restart_history_write_error", path=str(self._path), error=str(e))


class Watchdog:
    """Supervises one child command with graduated restart backoff.

    Example:
        watchdog = Watchdog([sys.executable, "-m", "ticket_bridge"], config.watchdog)
        exit_code = await watchdog.run()
    """

    def __init__(
        self,
        command: Sequence[str],
        config: WatchdogConfig,
        history: RestartHistory | None = None,
        spawn: SpawnFn = spawn_subprocess,
        sleep: SleepFn | None = None,
        clock: Callable[[], float] = time.time,
        install_signal_handlers: bool = True,
    ) -> None:
        """Initialize the watchdog.

        Args:
            command: argv of the supervised process.
            config: Restart policy.
            history: Restart log (defaults to ``config.history_path``).
            spawn: Coroutine function starting the child.
            sleep: Delay function; defaults to a sleep that stop() interrupts.
            clock: Wall-clock source in seconds.
            install_signal_handlers: Forward SIGTERM/SIGINT to the child.
        """
        self._command = list(command)
        self._config = config
        self._history = history or RestartHistory(
            config.history_path, config.restart_window, clock=clock
        )
        self._spawn = spawn
        self._sleep = sleep or self._interruptible_sleep
        self._clock = clock
        self._install_signal_handlers = install_signal_handlers

        self._policy = BackoffPolicy(
            initial_delay=config.initial_delay,
            max_delay=config.max_delay,
            budget=config.max_restarts,
            window=config.restart_window,
            events=self._history.load(),
            clock=clock,
        )
        self._child: ChildProcess | None = None
        self._stop_event = asyncio.Event()
        self._stop_task: asyncio.Task[None] | None = None
        self._restarts = 0

    @property
    def policy(self) -> BackoffPolicy:
        return self._policy

    @property
    def restarts(self) -> int:
        """Restarts performed by this watchdog instance."""
        return self._restarts

    @property
    def stopping(self) -> bool:
        return self._stop_event.is_set()

    async def run(self) -> int:
        """Run the child until it exits cleanly or the watchdog is stopped.

        Returns:
            0 once supervision ends.
        """
        if self._install_signal_handlers:
            self._setup_signal_handlers()

        log.info(
            "watchdog_started",
            command=self._command,
            restarts_in_window=self._policy.count_in_window(),
            max_restarts=self._config.max_restarts,
        )
        try:
            while True:
                returncode = await self._run_child()

                if self.stopping:
                    log.info("watchdog_stopped", child_exit_code=returncode)
                    return 0
                if returncode == 0:
                    log.info("child_exited_cleanly", action="not restarting")
                    return 0

                reason = describe_exit(returncode)
                decision = self._policy.record(reason)
                self._history.save(self._policy.events)
                log.warning(
                    LogEventNames.RESTART_SCHEDULED,
                    reason=reason,
                    delay=decision.delay,
                    restarts_in_window=decision.events_in_window,
                    budget_exceeded=decision.exceeded,
                )

                await self._sleep(decision.delay)
                if self.stopping:
                    log.info("watchdog_stopped_during_backoff")
                    return 0
                self._restarts += 1
        finally:
            if self._install_signal_handlers:
                loop = asyncio.get_running_loop()
                for sig in (signal.SIGTERM, signal.SIGINT):
                    loop.remove_signal_handler(sig)

    async def stop(self, sig: int = signal.SIGTERM) -> None:
        """Stop supervising; forward ``sig`` to the child and kill it after the grace period."""
        self._stop_event.set()
        child = self._child
        if child is None or child.returncode is not None:
            return

        log.info("forwarding_signal", signal=signal.Signals(sig).name, pid=child.pid)
        child.send_signal(sig)
        try:
            await asyncio.wait_for(child.wait(), timeout=self._config.grace_period)
        except TimeoutError:
            log.warning(
                "child_kill_after_grace_period",
                pid=child.pid,
                grace_period=self._config.grace_period,
            )
            child.kill()
            await child.wait()

    async def _run_child(self) -> int:
        env = {**os.environ, SUPERVISED_ENV_VAR: "1"}
        child = await self._spawn(self._command, env)
        self._child = child
        log.info(LogEventNames.CHILD_STARTED, pid=child.pid)

        returncode = await child.wait()
        self._child = None
        log.info(LogEventNames.CHILD_EXITED, pid=child.pid, exit_code=returncode)
        return returncode

    async def _interruptible_sleep(self, delay: float) -> None:
        try:
            await asyncio.wait_for(self._stop_event.wait(), timeout=delay)
        except TimeoutError:
            pass

    def _setup_signal_handlers(self) -> None:
        loop = asyncio.get_running_loop()
        for sig in (signal.SIGTERM, signal.SIGINT):
            loop.add_signal_handler(sig, self._handle_signal, sig)

    def _handle_signal(self, sig: signal.Signals) -> None:
        log.info("received_signal", signal=sig.name)
        self._stop_task = asyncio.create_task(self.stop(sig))
