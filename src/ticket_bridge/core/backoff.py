"""Sliding-window backoff policy.

One policy object drives both the adapter reconnect schedule and the
watchdog restart schedule. It remembers recent failure events inside a
rolling window. While the number of events stays within the budget the
delay stays at its initial value; once the budget is exceeded the delay
doubles on every further event, up to a cap.
"""

from __future__ import annotations

import time
from collections.abc import Callable, Iterable
from dataclasses import dataclass


@dataclass(frozen=True)
class BackoffEvent:
    """A failure (or restart) recorded by the policy."""

    timestamp: float
    reason: str = ""


@dataclass(frozen=True)
class BackoffDecision:
    """Outcome of recording one event."""

    delay: float
    exceeded: bool
    events_in_window: int


class BackoffPolicy:
    """Graduated backoff parameterized by initial delay, cap, budget and window.

    Example:
        policy = BackoffPolicy(initial_delay=2, max_delay=30, budget=10, window=3600)
        decision = policy.record("exit code 1")
        await asyncio.sleep(decision.delay)
    """

    def __init__(
        self,
        initial_delay: float,
        max_delay: float,
        budget: int,
        window: float,
        events: Iterable[BackoffEvent] = (),
        clock: Callable[[], float] = time.time,
    ) -> None:
        """Initialize the policy.

        Args:
            initial_delay: Delay used while within budget (seconds).
            max_delay: Upper bound for the doubled delay (seconds).
            budget: Events tolerated inside the window before backing off.
            window: Length of the rolling window (seconds).
            events: Previously persisted events to start from.
            clock: Wall-clock source; events are persisted, so not monotonic.

        Raises:
            ValueError: If the parameters are inconsistent.
        """
        if initial_delay <= 0 or max_delay < initial_delay:
            raise ValueError("Require 0 < initial_delay <= max_delay")
        if budget < 0 or window <= 0:
            raise ValueError("Require budget >= 0 and window > 0")

        self.initial_delay = initial_delay
        self.max_delay = max_delay
        self.budget = budget
        self.window = window
        self._clock = clock
        self._events: list[BackoffEvent] = sorted(events, key=lambda e: e.timestamp)
        self._current_delay = initial_delay

    @property
    def current_delay(self) -> float:
        return self._current_delay

    @property
    def events(self) -> list[BackoffEvent]:
        return list(self._events)

    def prune(self, now: float | None = None) -> int:
        """Forget events that fell out of the window; return how many were dropped."""
        now = self._clock() if now is None else now
        kept = [event for event in self._events if now - event.timestamp < self.window]
        dropped = len(self._events) - len(kept)
        self._events = kept
        return dropped

    def count_in_window(self, now: float | None = None) -> int:
        now = self._clock() if now is None else now
        return sum(1 for event in self._events if now - event.timestamp < self.window)

    def record(self, reason: str = "", now: float | None = None) -> BackoffDecision:
        """Record an event and decide how long to wait before the next attempt.

        Args:
            reason: Free-form description kept with the event.
            now: Event time; defaults to the policy clock.

        Returns:
            The delay to apply and whether the budget is exceeded.
        """
        now = self._clock() if now is None else now
        self.prune(now)
        self._events.append(BackoffEvent(timestamp=now, reason=reason))

        count = len(self._events)
        exceeded = count > self.budget
        if exceeded:
            self._current_delay = min(self._current_delay * 2, self.max_delay)
        else:
            self._current_delay = self.initial_delay

        return BackoffDecision(delay=self._current_delay, exceeded=exceeded, events_in_window=count)

    def reset(self) -> None:
        """Forget all events and return to the initial delay."""
        self._events.clear()
        self._current_delay = self.initial_delay
