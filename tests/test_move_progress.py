"""Display-side move task projection."""

from __future__ import annotations

import pytest

from bucketdock.events import (
    MOVE_BATCH_OPERATION,
    MOVE_PROGRESS,
    MOVE_STATUS_CHANGED,
    MOVE_TASK_DELETED,
    EventBus,
    MoveBatchOperationEvent,
    MoveProgressEvent,
    MoveStatusChangedEvent,
    MoveTaskDeletedEvent,
)
from bucketdock.transfer import MoveProgressTracker, MoveStatus, MoveTask


class FakeClock:
    def __init__(self) -> None:
        self.now = 100.0

    def __call__(self) -> float:
        return self.now


def _task(task_id: str, status: MoveStatus = MoveStatus.PENDING, **overrides) -> MoveTask:
    data = {
        "id": task_id,
        "source_key": f"{task_id}.bin",
        "dest_key": f"{task_id}.bin",
        "source_bucket": "photos",
        "source_account_id": "local",
        "source_provider": "minio",
        "dest_bucket": "archive",
        "dest_account_id": "local",
        "dest_provider": "rustfs",
        "status": status,
        "file_size": 1000,
    }
    data.update(overrides)
    return MoveTask(**data)


def _progress(task_id: str, percent: int, phase: str = "downloading") -> MoveProgressEvent:
    return MoveProgressEvent(
        task_id=task_id,
        phase=phase,
        percent=percent,
        transferred_bytes=percent * 10,
        total_bytes=1000,
        speed=float(percent),
    )


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture
def tracker(clock: FakeClock) -> MoveProgressTracker:
    tracker = MoveProgressTracker(throttle_ms=200, clock=clock)
    tracker.load([_task("t1"), _task("t2")])
    return tracker


def test_progress_is_throttled_and_newest_event_wins(
    tracker: MoveProgressTracker, clock: FakeClock
) -> None:
    tracker.apply_status("t1", MoveStatus.DOWNLOADING)
    tracker.queue_progress(_progress("t1", 10))
    clock.now += 0.05
    tracker.queue_progress(_progress("t1", 20))
    clock.now += 0.05
    tracker.queue_progress(_progress("t1", 30))

    assert tracker.get("t1").progress == 10
    assert tracker.flush() == 0

    clock.now += 0.15
    assert tracker.flush() == 1
    view = tracker.get("t1")
    assert (view.progress, view.transferred_bytes, view.speed) == (30, 300, 30.0)


def test_active_progress_never_moves_backwards(tracker: MoveProgressTracker, clock: FakeClock) -> None:
    tracker.apply_status("t1", MoveStatus.UPLOADING)
    tracker.queue_progress(_progress("t1", 60, "uploading"))
    clock.now += 1
    tracker.queue_progress(_progress("t1", 40, "uploading"))

    view = tracker.get("t1")
    assert (view.progress, view.transferred_bytes) == (60, 600)


def test_starting_download_resets_counters(clock: FakeClock) -> None:
    tracker = MoveProgressTracker(clock=clock)
    tracker.load([_task("t1", MoveStatus.PAUSED, progress=45, transferred_bytes=450)])

    tracker.apply_status("t1", MoveStatus.PENDING)
    tracker.apply_status("t1", MoveStatus.DOWNLOADING)

    view = tracker.get("t1")
    assert (view.progress, view.transferred_bytes) == (0, 0)
    assert view.phase == "downloading"


def test_restart_discards_progress_buffered_by_the_previous_run(
    tracker: MoveProgressTracker, clock: FakeClock
) -> None:
    tracker.apply_status("t1", MoveStatus.DOWNLOADING)
    tracker.queue_progress(_progress("t1", 40))
    clock.now += 0.05
    tracker.queue_progress(_progress("t1", 85))

    tracker.apply_status("t1", MoveStatus.PAUSED)
    tracker.apply_status("t1", MoveStatus.PENDING)
    tracker.apply_status("t1", MoveStatus.DOWNLOADING)
    clock.now += 1.0
    assert tracker.flush() == 0

    view = tracker.get("t1")
    assert (view.progress, view.transferred_bytes) == (0, 0)


def test_pending_task_starting_with_upload_resets_counters(tracker: MoveProgressTracker) -> None:
    tracker.load([_task("t1", MoveStatus.PENDING, progress=70, transferred_bytes=700)])

    tracker.queue_progress(_progress("t1", 5, phase="uploading"))

    view = tracker.get("t1")
    assert view.status == MoveStatus.UPLOADING
    assert (view.progress, view.transferred_bytes) == (5, 50)


def test_progress_for_pending_task_adopts_event_phase(tracker: MoveProgressTracker) -> None:
    tracker.queue_progress(_progress("t2", 5))

    view = tracker.get("t2")
    assert view.status == MoveStatus.DOWNLOADING
    assert view.progress == 5


def test_finished_tasks_ignore_late_updates(tracker: MoveProgressTracker, clock: FakeClock) -> None:
    tracker.apply_status("t1", MoveStatus.DOWNLOADING)
    tracker.apply_status("t1", MoveStatus.FINISHING)
    assert tracker.apply_status("t1", MoveStatus.UPLOADING) is False

    tracker.apply_status("t1", MoveStatus.SUCCESS)
    clock.now += 1
    tracker.queue_progress(_progress("t1", 10))

    view = tracker.get("t1")
    assert view.status == MoveStatus.SUCCESS
    assert view.phase == "finishing"
    assert view.speed == 0.0
    assert tracker.apply_status("t1", MoveStatus.DOWNLOADING) is False


def test_failed_task_may_only_be_requeued_or_cancelled(tracker: MoveProgressTracker) -> None:
    tracker.apply_status("t1", MoveStatus.DOWNLOADING)
    tracker.apply_status("t1", MoveStatus.ERROR, "boom")
    assert tracker.get("t1").error == "boom"

    assert tracker.apply_status("t1", MoveStatus.UPLOADING) is False
    assert tracker.apply_status("t1", MoveStatus.PENDING) is True
    assert tracker.get("t1").error is None


def test_counts_split_uploading_at_one_hundred_percent(tracker: MoveProgressTracker) -> None:
    tracker.load(
        [
            _task("a", MoveStatus.PENDING),
            _task("b", MoveStatus.DOWNLOADING),
            _task("c", MoveStatus.UPLOADING, progress=50),
            _task("d", MoveStatus.UPLOADING, progress=100),
            _task("e", MoveStatus.DELETING),
            _task("f", MoveStatus.PAUSED),
            _task("g", MoveStatus.SUCCESS),
            _task("h", MoveStatus.ERROR),
        ]
    )

    assert tracker.pending_count() == 1
    assert tracker.active_count() == 2
    assert tracker.uploading_count() == 1
    assert tracker.finishing_count() == 2
    assert tracker.paused_count() == 1
    assert tracker.finished_count() == 2


def test_attached_tracker_follows_the_event_bus(clock: FakeClock) -> None:
    events = EventBus()
    stored = {"photos": [_task("t1"), _task("t2")]}
    tracker = MoveProgressTracker(
        throttle_ms=0, clock=clock, loader=lambda bucket, account: stored.get(bucket, [])
    )
    detach = tracker.attach(events)

    events.emit(
        MOVE_BATCH_OPERATION,
        MoveBatchOperationEvent(operation="resume_all", source_bucket="photos", source_account_id="local"),
    )
    events.emit(MOVE_STATUS_CHANGED, MoveStatusChangedEvent(task_id="t1", status="downloading"))
    events.emit(MOVE_PROGRESS, _progress("t1", 25))
    events.emit(MOVE_TASK_DELETED, MoveTaskDeletedEvent(task_id="t2"))

    assert [view.id for view in tracker.tasks()] == ["t1"]
    assert tracker.get("t1").progress == 25

    detach()
    events.emit(MOVE_STATUS_CHANGED, MoveStatusChangedEvent(task_id="t1", status="paused"))
    assert tracker.get("t1").status == MoveStatus.DOWNLOADING


def test_total_speed_tracks_active_bytes(tracker: MoveProgressTracker, clock: FakeClock) -> None:
    tracker.apply_status("t1", MoveStatus.DOWNLOADING)
    tracker.apply_status("t2", MoveStatus.DOWNLOADING)
    tracker.queue_progress(_progress("t1", 0))
    clock.now += 1
    tracker.queue_progress(_progress("t1", 50))
    tracker.queue_progress(_progress("t2", 50))

    assert tracker.total_speed() > 0
    clock.now += 5
    assert tracker.total_speed() == 0.0
