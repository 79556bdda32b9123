"""
Crash-tolerant loop driven by host agent hook events.
"""

from pdca_loop.persisted.hook import HookDecision, PersistedLoopHook
from pdca_loop.persisted.record import CorruptRecordError, LoopRecord, RecordStore
from pdca_loop.persisted.settings import HookSettings

__all__ = [
    "HookDecision",
    "PersistedLoopHook",
    "CorruptRecordError",
    "LoopRecord",
    "RecordStore",
    "HookSettings",
]
