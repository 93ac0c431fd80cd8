"""
FeedPulse Scheduler
===================

Per-feed poll cadence, blackout windows, backoff and the worker pool.
"""

from .poll_scheduler import (
    CycleOutcome,
    CycleStatus,
    FeedSchedule,
    PollScheduler,
    PollState,
)

__all__ = [
    "CycleOutcome",
    "CycleStatus",
    "FeedSchedule",
    "PollScheduler",
    "PollState",
]
