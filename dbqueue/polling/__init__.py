"""
Adaptive polling controller.
"""

from dbqueue.polling.adaptive import (
    AdaptivePoller,
    AdaptivePollingConfig,
    CircularBuffer,
    PollingStats,
    PollResult,
)

__all__ = [
    "AdaptivePoller",
    "AdaptivePollingConfig",
    "CircularBuffer",
    "PollingStats",
    "PollResult",
]
