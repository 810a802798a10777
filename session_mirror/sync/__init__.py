"""
Mirroring the local store to the remote blob channel.
"""

from .engine import DB_BLOB_NAME, INDEX_BLOB_NAME, SyncConfig, SyncEngine
from .scheduler import LoopClock, PushScheduler, SchedulerState, VirtualClock

__all__ = [
    "SyncEngine",
    "SyncConfig",
    "DB_BLOB_NAME",
    "INDEX_BLOB_NAME",
    "PushScheduler",
    "SchedulerState",
    "LoopClock",
    "VirtualClock",
]
