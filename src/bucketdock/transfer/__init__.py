"""Move queue: persisted tasks, scheduling, execution, and progress projection."""

from .cache_updates import CacheUpdateQueue
from .errors import MoveInterrupted, MoveQueueBusyError, MoveTaskNotFoundError, TransferError
from .executor import MoveExecutor, TransferControl
from .models import (
    ACTIVE_STATUSES,
    IN_PROGRESS_STATUSES,
    TERMINAL_STATUSES,
    MoveStatus,
    MoveTask,
    derive_phase,
    map_status,
)
from .progress import MoveProgressTracker, MoveTaskView
from .queue import TransferQueue
from .repository import MoveSessionRepository
from .speed import RateWindow, SpeedEstimator

__all__ = [
    "TransferQueue",
    "MoveExecutor",
    "TransferControl",
    "MoveSessionRepository",
    "CacheUpdateQueue",
    "MoveProgressTracker",
    "MoveTaskView",
    "RateWindow",
    "SpeedEstimator",
    "MoveStatus",
    "MoveTask",
    "ACTIVE_STATUSES",
    "IN_PROGRESS_STATUSES",
    "TERMINAL_STATUSES",
    "derive_phase",
    "map_status",
    "TransferError",
    "MoveTaskNotFoundError",
    "MoveQueueBusyError",
    "MoveInterrupted",
]
