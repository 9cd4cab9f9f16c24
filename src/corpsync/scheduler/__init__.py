"""同步调度."""

from corpsync.scheduler.sync_scheduler import (
    IntervalTooShortError,
    SyncFailedError,
    SyncScheduler,
    UnknownProcessError,
)

__all__ = [
    "IntervalTooShortError",
    "SyncFailedError",
    "SyncScheduler",
    "UnknownProcessError",
]
