"""Display-side projection of move tasks fed by queue events.

The tracker keeps one view per task and folds ``move-status-changed``,
``move-progress`` and ``move-task-deleted`` events into it. Progress events
are coalesced per task: at most one is applied every ``throttle_ms`` and the
newest buffered event wins. While a task is downloading or uploading its
progress and byte counters never move backwards.
"""

from __future__ import annotations

import threading
import time
from typing import Callable, Iterable, Optional

from pydantic import BaseModel, ConfigDict

from bucketdock.events import (
    MOVE_BATCH_OPERATION,
    MOVE_PROGRESS,
    MOVE_STATUS_CHANGED,
    MOVE_TASK_DELETED,
    Event,
    EventBus,
    MoveBatchOperationEvent,
    MoveProgressEvent,
    MoveStatusChangedEvent,
    MoveTaskDeletedEvent,
)

from .models import ACTIVE_STATUSES, TERMINAL_STATUSES, MoveStatus, MoveTask, derive_phase, map_status
from .speed import Clock, SpeedEstimator

TaskLoader = Callable[[str, str], list[MoveTask]]

_STOPPED_STATUSES = frozenset({MoveStatus.PENDING, MoveStatus.PAUSED, MoveStatus.ERROR, *TERMINAL_STATUSES})


class MoveTaskView(BaseModel):
    """Mutable display state of one move task."""

    model_config = ConfigDict(extra="forbid")

    id: str
    source_key: str
    dest_key: str
    source_bucket: str
    source_account_id: str
    status: MoveStatus
    phase: str
    progress: int = 0
    transferred_bytes: int = 0
    file_size: int = 0
    speed: float = 0.0
    error: Optional[str] = None

    @classmethod
    def from_task(cls, task: MoveTask) -> "MoveTaskView":
        return cls(
            id=task.id,
            source_key=task.source_key,
            dest_key=task.dest_key,
            source_bucket=task.source_bucket,
            source_account_id=task.source_account_id,
            status=task.status,
            phase=derive_phase(task.status),
            progress=task.progress,
            transferred_bytes=task.transferred_bytes,
            file_size=task.file_size,
            error=task.error,
        )


def _status_change_allowed(current: MoveStatus, new: MoveStatus) -> bool:
    if current == new:
        return True
    if current in (MoveStatus.SUCCESS, MoveStatus.CANCELLED):
        return False
    if current == MoveStatus.ERROR:
        return new in (MoveStatus.PENDING, MoveStatus.CANCELLED)
    if current in (MoveStatus.FINISHING, MoveStatus.DELETING):
        return new not in ACTIVE_STATUSES
    return True


class MoveProgressTracker:
    """Fold move events into per-task views with throttled progress."""

    def __init__(
        self,
        *,
        throttle_ms: int = 200,
        speed_estimator: Optional[SpeedEstimator] = None,
        loader: Optional[TaskLoader] = None,
        clock: Clock = time.monotonic,
    ) -> None:
        self._throttle = throttle_ms / 1000.0
        self._clock = clock
        self._speed = speed_estimator or SpeedEstimator(clock=clock)
        self._loader = loader
        self._lock = threading.RLock()
        self._tasks: dict[str, MoveTaskView] = {}
        self._buffered: dict[str, MoveProgressEvent] = {}
        self._applied_at: dict[str, float] = {}
        self._ticker: Optional[threading.Thread] = None
        self._ticker_stop = threading.Event()

    # ------------------------------------------------------------------ #
    # Wiring                                                             #
    # ------------------------------------------------------------------ #

    def attach(self, events: EventBus) -> Callable[[], None]:
        """Subscribe to the move events on ``events``; returns a detach callable."""
        unsubscribers = [
            events.subscribe(name, self.handle)
            for name in (MOVE_STATUS_CHANGED, MOVE_PROGRESS, MOVE_TASK_DELETED, MOVE_BATCH_OPERATION)
        ]

        def _detach() -> None:
            for unsubscribe in unsubscribers:
                unsubscribe()

        return _detach

    def start(self, interval: Optional[float] = None) -> None:
        """Flush buffered progress on a fixed interval from a daemon thread."""
        if self._ticker is not None:
            return
        period = interval if interval is not None else self._throttle
        self._ticker_stop.clear()

        def _tick() -> None:
            while not self._ticker_stop.wait(period):
                self.flush()

        self._ticker = threading.Thread(target=_tick, name="move-progress-flush", daemon=True)
        self._ticker.start()

    def stop(self) -> None:
        self._ticker_stop.set()
        if self._ticker is not None:
            self._ticker.join()
            self._ticker = None
        self.flush(force=True)

    def handle(self, name: str, payload: Event) -> None:
        """Event bus handler."""
        if name == MOVE_PROGRESS and isinstance(payload, MoveProgressEvent):
            self.queue_progress(payload)
        elif name == MOVE_STATUS_CHANGED and isinstance(payload, MoveStatusChangedEvent):
            self.apply_status(payload.task_id, map_status(payload.status), payload.error)
        elif name == MOVE_TASK_DELETED and isinstance(payload, MoveTaskDeletedEvent):
            self.remove(payload.task_id)
        elif name == MOVE_BATCH_OPERATION and isinstance(payload, MoveBatchOperationEvent):
            if self._loader is not None:
                self.load(
                    self._loader(payload.source_bucket, payload.source_account_id),
                    source_bucket=payload.source_bucket,
                    source_account_id=payload.source_account_id,
                )

    # ------------------------------------------------------------------ #
    # Reducers                                                           #
    # ------------------------------------------------------------------ #

    def load(
        self,
        tasks: Iterable[MoveTask],
        *,
        source_bucket: Optional[str] = None,
        source_account_id: Optional[str] = None,
    ) -> None:
        """Replace the views of one source queue (or all views) with ``tasks``."""
        with self._lock:
            if source_bucket is None:
                self._tasks.clear()
            else:
                for task_id, view in list(self._tasks.items()):
                    if view.source_bucket == source_bucket and view.source_account_id == source_account_id:
                        del self._tasks[task_id]
            for task in tasks:
                self._tasks[task.id] = MoveTaskView.from_task(task)

    def apply_status(self, task_id: str, status: MoveStatus, error: Optional[str] = None) -> bool:
        """Apply a status change; returns ``False`` when the change was rejected."""
        with self._lock:
            view = self._tasks.get(task_id)
            if view is None or not _status_change_allowed(view.status, status):
                return False
            if view.status == MoveStatus.PENDING and status in ACTIVE_STATUSES:
                self._restart(task_id, view)
            if status not in ACTIVE_STATUSES:
                view.speed = 0.0
            view.error = error if status == MoveStatus.ERROR else None
            view.phase = derive_phase(status, view.phase)
            view.status = status
            if status in _STOPPED_STATUSES:
                # Progress buffered before the stop belongs to the previous run.
                self._buffered.pop(task_id, None)
                self._applied_at.pop(task_id, None)
            return True

    def queue_progress(self, event: MoveProgressEvent) -> None:
        """Apply ``event`` now or buffer it until the task's throttle window ends."""
        now = self._clock()
        with self._lock:
            last = self._applied_at.get(event.task_id)
            if last is None or now - last >= self._throttle:
                self._buffered.pop(event.task_id, None)
                self._apply_progress(event, now)
            else:
                self._buffered[event.task_id] = event

    def flush(self, *, force: bool = False) -> int:
        """Apply buffered events whose window elapsed (all of them with ``force``)."""
        now = self._clock()
        applied = 0
        with self._lock:
            for task_id, event in list(self._buffered.items()):
                last = self._applied_at.get(task_id)
                if force or last is None or now - last >= self._throttle:
                    del self._buffered[task_id]
                    self._apply_progress(event, now)
                    applied += 1
        return applied

    def remove(self, task_id: str) -> None:
        with self._lock:
            self._tasks.pop(task_id, None)
            self._buffered.pop(task_id, None)
            self._applied_at.pop(task_id, None)

    def _restart(self, task_id: str, view: MoveTaskView) -> None:
        view.progress = 0
        view.transferred_bytes = 0
        self._buffered.pop(task_id, None)
        self._applied_at.pop(task_id, None)

    def _apply_progress(self, event: MoveProgressEvent, now: float) -> None:
        view = self._tasks.get(event.task_id)
        if view is None or view.status in TERMINAL_STATUSES:
            return
        self._applied_at[event.task_id] = now

        status = view.status
        if status == MoveStatus.PENDING and event.phase:
            status = map_status(event.phase)
            if status in ACTIVE_STATUSES:
                self._restart(event.task_id, view)
                self._applied_at[event.task_id] = now

        if status in ACTIVE_STATUSES:
            view.progress = max(view.progress, event.percent)
            view.transferred_bytes = max(view.transferred_bytes, event.transferred_bytes)
            view.speed = event.speed
        else:
            view.progress = event.percent
            view.transferred_bytes = event.transferred_bytes
            view.speed = 0.0
        if view.file_size == 0 and event.total_bytes:
            view.file_size = event.total_bytes
        view.phase = derive_phase(status, event.phase or view.phase)
        view.status = status

        self._speed.update(
            sum(task.transferred_bytes for task in self._tasks.values() if task.status in ACTIVE_STATUSES)
        )

    # ------------------------------------------------------------------ #
    # Selectors                                                          #
    # ------------------------------------------------------------------ #

    def tasks(self) -> list[MoveTaskView]:
        with self._lock:
            return [view.model_copy() for view in self._tasks.values()]

    def get(self, task_id: str) -> Optional[MoveTaskView]:
        with self._lock:
            view = self._tasks.get(task_id)
            return view.model_copy() if view is not None else None

    def _count(self, predicate: Callable[[MoveTaskView], bool]) -> int:
        with self._lock:
            return sum(1 for view in self._tasks.values() if predicate(view))

    def pending_count(self) -> int:
        return self._count(lambda view: view.status == MoveStatus.PENDING)

    def downloading_count(self) -> int:
        return self._count(lambda view: view.status == MoveStatus.DOWNLOADING)

    def uploading_count(self) -> int:
        return self._count(lambda view: view.status == MoveStatus.UPLOADING and view.progress < 100)

    def active_count(self) -> int:
        """Tasks holding a concurrency slot: downloading, or uploading below 100%."""
        return self.downloading_count() + self.uploading_count()

    def finishing_count(self) -> int:
        return self._count(
            lambda view: view.status in (MoveStatus.FINISHING, MoveStatus.DELETING)
            or (view.status == MoveStatus.UPLOADING and view.progress >= 100)
        )

    def paused_count(self) -> int:
        return self._count(lambda view: view.status == MoveStatus.PAUSED)

    def finished_count(self) -> int:
        return self._count(lambda view: view.status in TERMINAL_STATUSES)

    def total_speed(self) -> float:
        """Smoothed aggregate throughput in bytes per second."""
        with self._lock:
            return self._speed.current()


__all__ = ["MoveProgressTracker", "MoveTaskView", "TaskLoader"]
