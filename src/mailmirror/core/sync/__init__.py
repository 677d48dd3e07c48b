"""Background reconciliation between the local cache and the remote mailbox."""

from .engine import CycleOutcome, CycleReport, SyncEngine, SyncState
from .events import SyncEvent, SyncEventKind
from .scheduler import BackoffPolicy, SchedulerState, SyncScheduler, TriggerReason

__all__ = [
    "BackoffPolicy",
    "CycleOutcome",
    "CycleReport",
    "SchedulerState",
    "SyncEngine",
    "SyncEvent",
    "SyncEventKind",
    "SyncScheduler",
    "SyncState",
    "TriggerReason",
]
