"""Tests for the sliding-window backoff policy."""

import pytest

from ticket_bridge.core.backoff import BackoffEvent, BackoffPolicy


class FakeClock:
    def __init__(self, now: float = 1_000_000.0) -> None:
        self.now = now

    def __call__(self) -> float:
        return self.now


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture
def policy(clock: FakeClock) -> BackoffPolicy:
    return BackoffPolicy(initial_delay=2.0, max_delay=30.0, budget=3, window=3600.0, clock=clock)


class TestBackoffPolicy:
    """Tests for BackoffPolicy."""

    def test_within_budget_uses_initial_delay(self, policy: BackoffPolicy) -> None:
        """Events inside the budget never back off."""
        for _ in range(3):
            decision = policy.record("exit code 1")
            assert decision.delay == 2.0
            assert decision.exceeded is False

    def test_delay_doubles_after_budget(self, policy: BackoffPolicy) -> None:
        """Each event past the budget doubles the delay."""
        for _ in range(3):
            policy.record()

        delays = [policy.record().delay for _ in range(3)]

        assert delays == [4.0, 8.0, 16.0]

    def test_delay_is_capped(self, policy: BackoffPolicy) -> None:
        """The doubled delay never exceeds max_delay."""
        decisions = [policy.record() for _ in range(10)]

        assert decisions[-1].delay == 30.0
        assert all(d.delay <= 30.0 for d in decisions)
        assert all(d.exceeded for d in decisions[3:])

    def test_old_events_leave_the_window(self, policy: BackoffPolicy, clock: FakeClock) -> None:
        """Events older than the window stop counting."""
        for _ in range(4):
            policy.record()

        clock.now += 3601
        decision = policy.record()

        assert decision.exceeded is False
        assert decision.events_in_window == 1
        assert decision.delay == 2.0

    def test_count_in_window(self, policy: BackoffPolicy, clock: FakeClock) -> None:
        """count_in_window ignores expired events without dropping them."""
        policy.record()
        clock.now += 1800
        policy.record()
        clock.now += 1801

        assert policy.count_in_window() == 1
        assert len(policy.events) == 2

    def test_prune(self, policy: BackoffPolicy, clock: FakeClock) -> None:
        """prune drops expired events and reports how many."""
        policy.record()
        policy.record()
        clock.now += 4000

        assert policy.prune() == 2
        assert policy.events == []

    def test_starts_from_persisted_events(self, clock: FakeClock) -> None:
        """Persisted events count toward the budget."""
        history = [BackoffEvent(timestamp=clock.now - i * 60, reason="crash") for i in range(3)]
        policy = BackoffPolicy(2.0, 30.0, budget=3, window=3600.0, events=history, clock=clock)

        decision = policy.record()

        assert decision.exceeded is True
        assert decision.events_in_window == 4
        assert decision.delay == 4.0

    def test_events_are_kept_sorted(self, clock: FakeClock) -> None:
        """Out-of-order persisted events are sorted by time."""
        history = [BackoffEvent(timestamp=30.0), BackoffEvent(timestamp=10.0)]
        policy = BackoffPolicy(1.0, 2.0, budget=1, window=100.0, events=history, clock=clock)

        assert [e.timestamp for e in policy.events] == [10.0, 30.0]

    def test_reset(self, policy: BackoffPolicy) -> None:
        """reset forgets events and the current delay."""
        for _ in range(6):
            policy.record()

        policy.reset()

        assert policy.events == []
        assert policy.current_delay == 2.0

    def test_record_uses_explicit_time(self, policy: BackoffPolicy) -> None:
        """An explicit timestamp overrides the clock."""
        policy.record("boom", now=42.0)

        assert policy.events == [BackoffEvent(timestamp=42.0, reason="boom")]

    def test_zero_budget_backs_off_immediately(self, clock: FakeClock) -> None:
        """With no budget the first event already doubles."""
        policy = BackoffPolicy(1.0, 10.0, budget=0, window=60.0, clock=clock)

        assert policy.record().delay == 2.0

    @pytest.mark.parametrize(
        ("initial", "maximum", "budget", "window"),
        [
            (0.0, 10.0, 1, 60.0),
            (5.0, 1.0, 1, 60.0),
            (1.0, 10.0, -1, 60.0),
            (1.0, 10.0, 1, 0.0),
        ],
    )
    def test_invalid_parameters(
        self, initial: float, maximum: float, budget: int, window: float
    ) -> None:
        """Inconsistent parameters are rejected."""
        with pytest.raises(ValueError):
            BackoffPolicy(initial, maximum, budget, window)
