"""核心同步逻辑."""

from corpsync.core.esi import ESIClient, ESIConfig
from corpsync.core.executor import SyncContext, SyncExecutor
from corpsync.core.state import AlreadyRunningError, SyncStateTracker
from corpsync.core.storage import StorageSink

__all__ = [
    "AlreadyRunningError",
    "ESIClient",
    "ESIConfig",
    "StorageSink",
    "SyncContext",
    "SyncExecutor",
    "SyncStateTracker",
]
