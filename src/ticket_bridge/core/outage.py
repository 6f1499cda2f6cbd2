"""Per-adapter availability tracking and reconnect policy.

The OutageTracker owns one AdapterState per side of the bridge. Adapter
failures are classified here:

- Fatal (bad credentials, missing permissions): the side is marked failed
  and never retried automatically; the operator has to fix the config.
- Transient (network, timeouts, server errors): the side is marked
  reconnecting and a retry is scheduled after the policy delay.
- Escalated: more transient failures inside the rolling window than the
  budget allows. The escalation callback fires so the process can exit and
  let the watchdog restart it.
"""

from __future__ import annotations

import asyncio
import time
from collections.abc import Callable
from dataclasses import asdict, dataclass
from datetime import UTC, datetime, timedelta
from enum import StrEnum
from typing import Any

import structlog

from ticket_bridge.config.schema import OutageConfig
from ticket_bridge.core.backoff import BackoffPolicy
from ticket_bridge.models.message import Side
from ticket_bridge.utils.async_helpers import FatalPlatformError
from ticket_bridge.utils.logging import LogEventNames
from ticket_bridge.utils.metrics import get_metrics

log = structlog.get_logger()

EscalationCallback = Callable[[Side, BaseException], None]


class ConnectionStatus(StrEnum):
    """Connection state of one adapter."""

    CONNECTED = "connected"
    RECONNECTING = "reconnecting"
    FAILED = "failed"


class ErrorClass(StrEnum):
    """How a recorded failure was classified."""

    TRANSIENT = "transient"
    FATAL = "fatal"
    ESCALATED = "escalated"


@dataclass
class AdapterState:
    """Availability of one adapter; reset to available on process start."""

    side: Side
    available: bool = True
    status: ConnectionStatus = ConnectionStatus.CONNECTED
    consecutive_failures: int = 0
    last_failure_at: datetime | None = None
    next_retry_at: datetime | None = None
    last_error: str | None = None

    def to_dict(self) -> dict[str, Any]:
        data = asdict(self)
        data["side"] = self.side.value
        data["status"] = self.status.value
        for key in ("last_failure_at", "next_retry_at"):
            if data[key] is not None:
                data[key] = data[key].isoformat()
        return data


class OutageTracker:
    """Tracks adapter availability and schedules reconnects.

    Example:
        tracker = OutageTracker(config.outage, on_escalate=service.escalate)
        try:
            await adapter.send_message(channel, text)
        except PlatformError as e:
            tracker.record_failure(Side.DESTINATION, e)
    """

    def __init__(
        self,
        config: OutageConfig,
        on_escalate: EscalationCallback | None = None,
        clock: Callable[[], float] = time.time,
    ) -> None:
        """Initialize the tracker.

        Args:
            config: Reconnect delays and transient-error budget.
            on_escalate: Called once per escalated failure.
            clock: Wall-clock source in seconds.
        """
        self._config = config
        self._on_escalate = on_escalate
        self._clock = clock
        self._states = {side: AdapterState(side=side) for side in Side}
        self._policies = {
            side: BackoffPolicy(
                initial_delay=config.reconnect_delay,
                max_delay=config.max_reconnect_delay,
                budget=config.transient_budget,
                window=config.budget_window,
                clock=clock,
            )
            for side in Side
        }
        self._reconnect_needed = {side: asyncio.Event() for side in Side}

    def set_escalation_callback(self, callback: EscalationCallback | None) -> None:
        self._on_escalate = callback

    def state(self, side: Side) -> AdapterState:
        return self._states[side]

    def is_available(self, side: Side) -> bool:
        return self._states[side].available

    def snapshot(self) -> dict[str, dict[str, Any]]:
        return {side.value: state.to_dict() for side, state in self._states.items()}

    def record_failure(self, side: Side, error: BaseException) -> ErrorClass:
        """Mark a side unavailable after a failed adapter call.

        Args:
            side: Which adapter failed.
            error: The exception raised by the adapter call.

        Returns:
            The classification applied to the failure.
        """
        state = self._states[side]
        now = self._clock()
        was_available = state.available

        state.available = False
        state.consecutive_failures += 1
        state.last_failure_at = datetime.fromtimestamp(now, UTC)
        state.last_error = f"{type(error).__name__}: {error}"

        if isinstance(error, FatalPlatformError):
            state.status = ConnectionStatus.FAILED
            state.next_retry_at = None
            self._reconnect_needed[side].clear()
            get_metrics().adapter_failures.inc(labels={"side": side.value, "class": "fatal"})
            log.error(
                LogEventNames.ADAPTER_FATAL,
                side=side.value,
                error=state.last_error,
                action="operator must fix credentials or permissions, then restart",
            )
            return ErrorClass.FATAL

        decision = self._policies[side].record(reason=state.last_error, now=now)
        state.status = ConnectionStatus.RECONNECTING
        state.next_retry_at = datetime.fromtimestamp(now + decision.delay, UTC)
        self._reconnect_needed[side].set()

        if decision.exceeded:
            get_metrics().adapter_failures.inc(labels={"side": side.value, "class": "escalated"})
            log.error(
                LogEventNames.OUTAGE_ESCALATED,
                side=side.value,
                failures_in_window=decision.events_in_window,
                budget=self._config.transient_budget,
                error=state.last_error,
            )
            if self._on_escalate is not None:
                self._on_escalate(side, error)
            return ErrorClass.ESCALATED

        get_metrics().adapter_failures.inc(labels={"side": side.value, "class": "transient"})
        log.warning(
            LogEventNames.ADAPTER_UNAVAILABLE,
            side=side.value,
            newly_unavailable=was_available,
            consecutive_failures=state.consecutive_failures,
            retry_in=decision.delay,
            error=state.last_error,
        )
        return ErrorClass.TRANSIENT

    def record_success(self, side: Side) -> bool:
        """Mark a side connected; return True if it was unavailable before."""
        state = self._states[side]
        recovered = not state.available

        state.available = True
        state.status = ConnectionStatus.CONNECTED
        state.consecutive_failures = 0
        state.next_retry_at = None
        self._reconnect_needed[side].clear()

        if recovered:
            get_metrics().adapter_reconnects.inc(labels={"side": side.value})
            log.info(LogEventNames.ADAPTER_RECOVERED, side=side.value)
        return recovered

    def seconds_until_retry(self, side: Side) -> float:
        """Seconds to wait before the next reconnect attempt (0 if due)."""
        next_retry_at = self._states[side].next_retry_at
        if next_retry_at is None:
            return 0.0
        remaining = next_retry_at - datetime.fromtimestamp(self._clock(), UTC)
        return max(0.0, remaining / timedelta(seconds=1))

    async def wait_for_reconnect_needed(self, side: Side) -> None:
        """Block until a transient failure schedules a reconnect for ``side``."""
        await self._reconnect_needed[side].wait()
