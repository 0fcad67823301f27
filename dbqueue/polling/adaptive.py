"""
Adaptive polling.

Adjusts a poller's sleep interval from a sliding window of recent poll
outcomes: faster while polls keep finding work, exponentially slower
while they come back empty, and otherwise drifting back to the base
interval.
"""

import logging
import time
from collections.abc import Callable
from dataclasses import dataclass, field
from typing import Any

from dbqueue.config import Settings, get_settings
from dbqueue.errors import (
    InconsistentConfigurationError,
    InvalidFactorError,
    InvalidIntervalError,
    InvalidWindowSizeError,
)

logger = logging.getLogger(__name__)

MIN_ALLOWED_INTERVAL = 0.001
MAX_ALLOWED_INTERVAL = 300.0
MAX_BACKOFF_FACTOR = 5.0
MIN_SPEEDUP_FACTOR = 0.1
MIN_WINDOW_SIZE = 3
MAX_WINDOW_SIZE = 1000
MIN_INTERVAL_RATIO = 2.0
MAX_INTERVAL_RATIO = 1000.0


@dataclass
class AdaptivePollingConfig:
    """
    Tuning knobs for AdaptivePoller.

    The classifier constants (busy thresholds, idle streak length,
    acceleration and convergence rates) are independent settings.
    """

    min_interval: float = 0.05
    max_interval: float = 5.0
    backoff_factor: float = 1.5
    speedup_factor: float = 0.7
    window_size: int = 10
    idle_threshold: int = 5
    min_samples: int = 3
    busy_rate_threshold: float = 0.6
    busy_count_threshold: float = 2.0
    rapid_acceleration_threshold: int = 10
    rapid_acceleration_factor: float = 0.8
    max_backoff_multiplier: float = 3.0
    convergence_rate: float = 0.05
    min_adjustment_gap: float = 0.01
    stats_log_interval: int = 100
    stats_reset_interval: float = 3600.0

    @classmethod
    def from_settings(cls, settings: Settings | None = None) -> "AdaptivePollingConfig":
        settings = settings or get_settings()
        return cls(
            min_interval=settings.adaptive_polling_min_interval,
            max_interval=settings.adaptive_polling_max_interval,
            backoff_factor=settings.adaptive_polling_backoff_factor,
            speedup_factor=settings.adaptive_polling_speedup_factor,
            window_size=settings.adaptive_polling_window_size,
            idle_threshold=settings.adaptive_polling_idle_threshold,
            min_samples=settings.adaptive_polling_min_samples,
            busy_rate_threshold=settings.adaptive_polling_busy_rate_threshold,
            busy_count_threshold=settings.adaptive_polling_busy_count_threshold,
            rapid_acceleration_threshold=settings.adaptive_polling_rapid_acceleration_threshold,
            rapid_acceleration_factor=settings.adaptive_polling_rapid_acceleration_factor,
            max_backoff_multiplier=settings.adaptive_polling_max_backoff_multiplier,
            convergence_rate=settings.adaptive_polling_convergence_rate,
            min_adjustment_gap=settings.adaptive_polling_min_adjustment_gap,
            stats_log_interval=settings.adaptive_polling_stats_log_interval,
            stats_reset_interval=settings.adaptive_polling_stats_reset_interval,
        )

    def validate(self) -> "AdaptivePollingConfig":
        """
        Check intervals, factors, window size and their consistency.

        Returns:
            The config itself.

        Raises:
            InvalidIntervalError: Non-positive or out-of-range interval.
            InvalidFactorError: Backoff or speedup factor out of range.
            InvalidWindowSizeError: Window size not an integer in [3, 1000].
            InconsistentConfigurationError: min >= max or a bad max/min ratio.
        """
        self._validate_intervals()
        self._validate_factors()
        self._validate_window_size()
        self._validate_consistency()
        return self

    def _validate_intervals(self) -> None:
        if not _positive_number(self.min_interval):
            raise InvalidIntervalError(
                f"min_interval must be a positive number, got: {self.min_interval!r}"
            )
        if not _positive_number(self.max_interval):
            raise InvalidIntervalError(
                f"max_interval must be a positive number, got: {self.max_interval!r}"
            )
        if self.min_interval >= self.max_interval:
            raise InconsistentConfigurationError(
                f"min_interval ({self.min_interval}) must be less than "
                f"max_interval ({self.max_interval})"
            )
        if self.min_interval < MIN_ALLOWED_INTERVAL:
            raise InvalidIntervalError(
                f"min_interval ({self.min_interval}) is too small, "
                f"minimum is {MIN_ALLOWED_INTERVAL}"
            )
        if self.max_interval > MAX_ALLOWED_INTERVAL:
            raise InvalidIntervalError(
                f"max_interval ({self.max_interval}) is too large, "
                f"maximum is {MAX_ALLOWED_INTERVAL}"
            )

    def _validate_factors(self) -> None:
        if not _positive_number(self.backoff_factor):
            raise InvalidFactorError(
                f"backoff_factor must be a positive number, got: {self.backoff_factor!r}"
            )
        if not _positive_number(self.speedup_factor):
            raise InvalidFactorError(
                f"speedup_factor must be a positive number, got: {self.speedup_factor!r}"
            )
        if self.backoff_factor <= 1.0:
            raise InvalidFactorError(
                f"backoff_factor ({self.backoff_factor}) must be greater than 1.0"
            )
        if self.speedup_factor >= 1.0:
            raise InvalidFactorError(
                f"speedup_factor ({self.speedup_factor}) must be less than 1.0"
            )
        if self.backoff_factor > MAX_BACKOFF_FACTOR:
            raise InvalidFactorError(
                f"backoff_factor ({self.backoff_factor}) is too large, "
                f"maximum is {MAX_BACKOFF_FACTOR}"
            )
        if self.speedup_factor < MIN_SPEEDUP_FACTOR:
            raise InvalidFactorError(
                f"speedup_factor ({self.speedup_factor}) is too small, "
                f"minimum is {MIN_SPEEDUP_FACTOR}"
            )

    def _validate_window_size(self) -> None:
        window_size = self.window_size
        if not isinstance(window_size, int) or isinstance(window_size, bool) or window_size <= 0:
            raise InvalidWindowSizeError(
                f"window_size must be a positive integer, got: {window_size!r}"
            )
        if window_size < MIN_WINDOW_SIZE:
            raise InvalidWindowSizeError(
                f"window_size ({window_size}) is too small, minimum is {MIN_WINDOW_SIZE}"
            )
        if window_size > MAX_WINDOW_SIZE:
            raise InvalidWindowSizeError(
                f"window_size ({window_size}) is too large, maximum is {MAX_WINDOW_SIZE}"
            )

    def _validate_consistency(self) -> None:
        ratio = self.max_interval / self.min_interval
        if ratio < MIN_INTERVAL_RATIO:
            raise InconsistentConfigurationError(
                f"max_interval / min_interval ratio ({ratio:.2f}) is too small, "
                f"at least {MIN_INTERVAL_RATIO} is needed"
            )
        if ratio > MAX_INTERVAL_RATIO:
            raise InconsistentConfigurationError(
                f"max_interval / min_interval ratio ({ratio:.2f}) is too large, "
                f"keep it below {MAX_INTERVAL_RATIO}"
            )

    def summary(self) -> dict[str, Any]:
        return {
            "min_interval": self.min_interval,
            "max_interval": self.max_interval,
            "backoff_factor": self.backoff_factor,
            "speedup_factor": self.speedup_factor,
            "window_size": self.window_size,
            "interval_ratio": round(self.max_interval / self.min_interval, 2),
        }


def _positive_number(value: Any) -> bool:
    return isinstance(value, (int, float)) and not isinstance(value, bool) and value > 0


@dataclass(frozen=True)
class PollResult:
    """Outcome of one poll."""

    job_count: int
    execution_time: float = 0.001

    @property
    def had_work(self) -> bool:
        return self.job_count > 0


class CircularBuffer:
    """Fixed-size buffer keeping the most recent items."""

    def __init__(self, size: int):
        self._size = size
        self._items: list[Any] = []
        self._index = 0

    def push(self, item: Any) -> None:
        if len(self._items) < self._size:
            self._items.append(item)
        else:
            self._items[self._index] = item
            self._index = (self._index + 1) % self._size

    def recent(self, count: int | None = None) -> list[Any]:
        """The most recent items, oldest first."""
        count = self._size if count is None else count
        ordered = self._items[self._index:] + self._items[: self._index]
        return ordered[-count:] if count > 0 else []

    def clear(self) -> None:
        self._items.clear()
        self._index = 0

    def __len__(self) -> int:
        return len(self._items)


class AdaptivePoller:
    """
    Computes the next poll interval from recent poll results.

    Attributes:
        base_interval: The interval the poller converges back to.
        current_interval: The interval last returned.
    """

    def __init__(
        self,
        base_interval: float,
        config: AdaptivePollingConfig | None = None,
        clock: Callable[[], float] = time.monotonic,
    ):
        self.config = config or AdaptivePollingConfig()
        self.base_interval = base_interval
        self.current_interval = base_interval
        self._last_logged_interval = base_interval
        self._clock = clock
        self._window = CircularBuffer(self.config.window_size)
        self._consecutive_empty = 0
        self._consecutive_busy = 0
        self._last_adjustment = clock()

    @property
    def consecutive_empty_polls(self) -> int:
        return self._consecutive_empty

    @property
    def consecutive_busy_polls(self) -> int:
        return self._consecutive_busy

    def next_interval(self, result: PollResult | int) -> float:
        """
        Record a poll result and return the interval to sleep next.

        Args:
            result: The poll outcome, or just its job count.

        Returns:
            Seconds to sleep, within [min_interval, max_interval].
        """
        if isinstance(result, int):
            result = PollResult(job_count=result)
        self._record(result)
        return self._calculate()

    def reset(self) -> None:
        self.current_interval = self.base_interval
        self._window.clear()
        self._consecutive_empty = 0
        self._consecutive_busy = 0

    def _record(self, result: PollResult) -> None:
        self._window.push(result)
        if result.had_work:
            self._consecutive_busy += 1
            self._consecutive_empty = 0
        else:
            self._consecutive_empty += 1
            self._consecutive_busy = 0

    def _calculate(self) -> float:
        now = self._clock()
        if now - self._last_adjustment < self.config.min_adjustment_gap:
            return self.current_interval

        if self._is_busy():
            interval = self._accelerate()
        elif self._is_idle():
            interval = self._decelerate()
        else:
            interval = self._converge()

        self.current_interval = min(
            max(interval, self.config.min_interval), self.config.max_interval
        )
        self._last_adjustment = now

        if abs(self.current_interval - self._last_logged_interval) > 0.01:
            self._last_logged_interval = self.current_interval
            logger.debug(
                f"Adaptive polling interval adjusted to {self.current_interval:.3f}s",
                extra={
                    "consecutive_empty": self._consecutive_empty,
                    "consecutive_busy": self._consecutive_busy,
                },
            )
        return self.current_interval

    def _is_busy(self) -> bool:
        if len(self._window) < self.config.min_samples:
            return False

        k = self.config.idle_threshold
        recent = self._window.recent(k)
        work_rate = sum(1 for result in recent if result.had_work) / k
        mean_jobs = sum(result.job_count for result in recent) / k
        return (
            work_rate > self.config.busy_rate_threshold
            or mean_jobs > self.config.busy_count_threshold
        )

    def _is_idle(self) -> bool:
        return self._consecutive_empty >= self.config.idle_threshold

    def _accelerate(self) -> float:
        interval = self.current_interval * self.config.speedup_factor
        if self._consecutive_busy >= self.config.rapid_acceleration_threshold:
            interval *= self.config.rapid_acceleration_factor
        return interval

    def _decelerate(self) -> float:
        multiplier = min(
            1 + self._consecutive_empty * 0.1, self.config.max_backoff_multiplier
        )
        return self.current_interval * self.config.backoff_factor * multiplier

    def _converge(self) -> float:
        rate = self.config.convergence_rate
        if self.current_interval > self.base_interval:
            return max(self.current_interval * (1 - rate), self.base_interval)
        if self.current_interval < self.base_interval:
            return min(self.current_interval * (1 + rate), self.base_interval)
        return self.current_interval


@dataclass
class PollingStats:
    """
    Running totals of a poller's activity, logged periodically.
    """

    process_name: str
    config: AdaptivePollingConfig
    clock: Callable[[], float] = time.monotonic
    total_polls: int = 0
    total_jobs_claimed: int = 0
    empty_polls: int = 0
    last_reset: float = field(default=0.0)

    def __post_init__(self) -> None:
        self.last_reset = self.clock()

    def record(self, jobs_claimed: int) -> None:
        self.total_polls += 1
        if jobs_claimed == 0:
            self.empty_polls += 1
        else:
            self.total_jobs_claimed += jobs_claimed

    @property
    def elapsed(self) -> float:
        return self.clock() - self.last_reset

    def should_log(self) -> bool:
        return (
            self.total_polls % self.config.stats_log_interval == 0
            or self.elapsed > self.config.stats_reset_interval
        )

    def summary(self, current_interval: float) -> dict[str, Any]:
        polls = max(self.total_polls, 1)
        return {
            "polls": self.total_polls,
            "avg_jobs_per_poll": round(self.total_jobs_claimed / polls, 2),
            "empty_poll_rate": round(self.empty_polls / polls * 100, 1),
            "current_interval": round(current_interval, 3),
            "elapsed": round(self.elapsed),
        }

    def log(self, poller: AdaptivePoller) -> None:
        """
        Log the summary, resetting stats and poller once the reset interval passed.
        """
        summary = self.summary(poller.current_interval)
        logger.info(
            f"{self.process_name} adaptive polling stats",
            extra=summary,
        )
        if self.elapsed > self.config.stats_reset_interval:
            self.total_polls = 0
            self.total_jobs_claimed = 0
            self.empty_polls = 0
            self.last_reset = self.clock()
            poller.reset()
