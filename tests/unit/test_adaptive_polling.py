"""
Unit tests for the adaptive polling controller.
"""

import pytest

from dbqueue.errors import (
    InconsistentConfigurationError,
    InvalidFactorError,
    InvalidIntervalError,
    InvalidWindowSizeError,
)
from dbqueue.polling.adaptive import (
    AdaptivePoller,
    AdaptivePollingConfig,
    CircularBuffer,
    PollingStats,
    PollResult,
)


class FakeClock:
    def __init__(self, now: float = 1000.0):
        self.now = now

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float = 1.0) -> None:
        self.now += seconds


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture
def poller(clock: FakeClock) -> AdaptivePoller:
    return AdaptivePoller(0.1, AdaptivePollingConfig(), clock=clock)


def poll(poller: AdaptivePoller, clock: FakeClock, job_count: int) -> float:
    clock.advance()
    return poller.next_interval(PollResult(job_count=job_count))


class TestCircularBuffer:
    """Tests for CircularBuffer."""

    def test_keeps_most_recent_items_in_order(self):
        """Test that old items are overwritten once the buffer is full."""
        buffer = CircularBuffer(3)
        for item in range(5):
            buffer.push(item)

        assert len(buffer) == 3
        assert buffer.recent() == [2, 3, 4]
        assert buffer.recent(2) == [3, 4]

    def test_recent_before_full(self):
        """Test recent() on a partially filled buffer."""
        buffer = CircularBuffer(5)
        buffer.push("a")
        buffer.push("b")

        assert buffer.recent(5) == ["a", "b"]
        assert buffer.recent(0) == []

    def test_clear(self):
        """Test that clear empties the buffer."""
        buffer = CircularBuffer(2)
        buffer.push(1)
        buffer.clear()

        assert len(buffer) == 0
        assert buffer.recent() == []


class TestAdaptivePoller:
    """Tests for AdaptivePoller."""

    def test_backs_off_after_idle_streak_then_accelerates(
        self,
        poller: AdaptivePoller,
        clock: FakeClock,
    ):
        """Test six empty polls followed by ten busy polls."""
        idle = [poll(poller, clock, 0) for _ in range(6)]

        assert idle[:4] == [0.1, 0.1, 0.1, 0.1]
        assert idle[4] == pytest.approx(0.225)
        assert idle[5] == pytest.approx(0.54)

        busy = [poll(poller, clock, 5) for _ in range(10)]

        # Too few busy results in the window yet: converge toward base
        assert busy[0] == pytest.approx(0.54 * 0.95)
        assert busy[1] == pytest.approx(0.54 * 0.95 * 0.95)
        # Then speed up until the minimum interval
        assert busy[2] == pytest.approx(busy[1] * 0.7)
        for previous, current in zip(busy, busy[1:]):
            assert current <= previous
        assert busy[2] < busy[1]
        assert busy[-1] == pytest.approx(poller.config.min_interval)

    def test_idle_backoff_is_capped_at_max_interval(
        self,
        poller: AdaptivePoller,
        clock: FakeClock,
    ):
        """Test that backing off never exceeds max_interval."""
        for _ in range(50):
            interval = poll(poller, clock, 0)

        assert interval == poller.config.max_interval
        assert poller.consecutive_empty_polls == 50

    def test_stable_converges_back_to_base(self, clock: FakeClock):
        """Test that mixed results drift back to the base interval."""
        poller = AdaptivePoller(1.0, AdaptivePollingConfig(), clock=clock)
        poller.current_interval = 2.0

        # One job every other poll is neither busy nor idle
        intervals = [poll(poller, clock, index % 2) for index in range(200)]

        assert intervals[0] == pytest.approx(1.9)
        assert intervals[-1] == 1.0

    def test_converges_up_from_below_base(self, clock: FakeClock):
        """Test that an interval below base grows back by 5% per tick."""
        poller = AdaptivePoller(1.0, AdaptivePollingConfig(), clock=clock)
        poller.current_interval = 0.5

        assert poll(poller, clock, 1) == pytest.approx(0.525)

    def test_rapid_acceleration_after_long_busy_streak(self, clock: FakeClock):
        """Test the extra speedup once ten consecutive polls had work."""
        config = AdaptivePollingConfig(min_interval=0.001, max_interval=1.0)
        poller = AdaptivePoller(0.5, config, clock=clock)

        intervals = [poll(poller, clock, 10) for _ in range(10)]

        assert intervals[8] == pytest.approx(intervals[7] * 0.7)
        assert intervals[9] == pytest.approx(intervals[8] * 0.7 * 0.8)

    def test_skips_adjustment_within_min_gap(
        self,
        poller: AdaptivePoller,
        clock: FakeClock,
    ):
        """Test that results arriving too quickly keep the current interval."""
        for _ in range(6):
            poll(poller, clock, 0)
        current = poller.current_interval

        assert poller.next_interval(PollResult(job_count=0)) == current
        assert poller.consecutive_empty_polls == 7

    def test_accepts_plain_job_count(self, poller: AdaptivePoller, clock: FakeClock):
        """Test that next_interval takes a bare job count."""
        clock.advance()
        assert poller.next_interval(0) == 0.1
        assert poller.consecutive_empty_polls == 1

    def test_reset(self, poller: AdaptivePoller, clock: FakeClock):
        """Test that reset restores the base interval and clears history."""
        for _ in range(8):
            poll(poller, clock, 0)
        assert poller.current_interval > poller.base_interval

        poller.reset()

        assert poller.current_interval == poller.base_interval
        assert poller.consecutive_empty_polls == 0
        assert poller.consecutive_busy_polls == 0

    def test_work_resets_empty_streak(self, poller: AdaptivePoller, clock: FakeClock):
        """Test that consecutive counters reset each other."""
        for _ in range(3):
            poll(poller, clock, 0)
        poll(poller, clock, 1)

        assert poller.consecutive_empty_polls == 0
        assert poller.consecutive_busy_polls == 1


class TestAdaptivePollingConfig:
    """Tests for AdaptivePollingConfig validation."""

    def test_defaults_are_valid(self):
        """Test that the default configuration validates."""
        config = AdaptivePollingConfig()
        assert config.validate() is config

    @pytest.mark.parametrize(
        ("overrides", "error"),
        [
            ({"min_interval": 0}, InvalidIntervalError),
            ({"max_interval": -1.0}, InvalidIntervalError),
            ({"min_interval": 2.0, "max_interval": 1.0}, InconsistentConfigurationError),
            ({"min_interval": 1.0, "max_interval": 1.0}, InconsistentConfigurationError),
            ({"min_interval": 0.0005, "max_interval": 0.1}, InvalidIntervalError),
            ({"min_interval": 1.0, "max_interval": 301.0}, InvalidIntervalError),
            ({"backoff_factor": 1.0}, InvalidFactorError),
            ({"backoff_factor": 5.5}, InvalidFactorError),
            ({"speedup_factor": 1.0}, InvalidFactorError),
            ({"speedup_factor": 0.05}, InvalidFactorError),
            ({"window_size": 2}, InvalidWindowSizeError),
            ({"window_size": 1001}, InvalidWindowSizeError),
            ({"window_size": 10.5}, InvalidWindowSizeError),
            ({"min_interval": 1.0, "max_interval": 1.5}, InconsistentConfigurationError),
            ({"min_interval": 0.01, "max_interval": 20.0}, InconsistentConfigurationError),
        ],
    )
    def test_invalid_configurations(self, overrides, error):
        """Test that each invalid setting raises its error class."""
        with pytest.raises(error):
            AdaptivePollingConfig(**overrides).validate()

    def test_from_settings(self, settings):
        """Test building the config from Settings."""
        current = settings(adaptive_polling_min_interval=0.2, adaptive_polling_window_size=20)

        config = AdaptivePollingConfig.from_settings(current)

        assert config.min_interval == 0.2
        assert config.window_size == 20
        assert config.backoff_factor == current.adaptive_polling_backoff_factor


class TestPollingStats:
    """Tests for PollingStats."""

    def test_counts_polls(self, clock: FakeClock):
        """Test totals of polls, jobs and empty polls."""
        stats = PollingStats("worker-1", AdaptivePollingConfig(), clock=clock)
        for job_count in (0, 3, 0, 2):
            stats.record(job_count)

        summary = stats.summary(0.1)
        assert stats.total_polls == 4
        assert stats.total_jobs_claimed == 5
        assert stats.empty_polls == 2
        assert summary["avg_jobs_per_poll"] == 1.25
        assert summary["empty_poll_rate"] == 50.0

    def test_logs_every_interval(self, clock: FakeClock):
        """Test that stats are due for logging every stats_log_interval polls."""
        stats = PollingStats("worker-1", AdaptivePollingConfig(stats_log_interval=10), clock=clock)

        due = []
        for _ in range(20):
            stats.record(1)
            due.append(stats.should_log())

        assert [index + 1 for index, flag in enumerate(due) if flag] == [10, 20]

    def test_log_resets_after_reset_interval(self, clock: FakeClock):
        """Test that stats and poller reset once the reset interval passed."""
        config = AdaptivePollingConfig(stats_reset_interval=60.0)
        poller = AdaptivePoller(0.1, config, clock=clock)
        stats = PollingStats("worker-1", config, clock=clock)
        for _ in range(8):
            poll(poller, clock, 0)
            stats.record(0)

        clock.advance(120)
        assert stats.should_log()
        stats.log(poller)

        assert stats.total_polls == 0
        assert poller.current_interval == 0.1
