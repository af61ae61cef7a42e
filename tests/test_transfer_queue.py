"""Move queue scheduling, lifecycle control, and multipart resume."""

from __future__ import annotations

import threading
import time
from collections import defaultdict

import pytest

from bucketdock.cache import Database
from bucketdock.config.models import TransferSettings
from bucketdock.events import MOVE_STATUS_CHANGED, EventBus
from bucketdock.providers import ProviderError
from bucketdock.transfer import (
    MoveExecutor,
    MoveQueueBusyError,
    MoveSessionRepository,
    MoveStatus,
    MoveTask,
    TransferControl,
    TransferError,
    TransferQueue,
)

from fakes import FakeStorage, make_config


def _record_statuses(workspace) -> dict[str, list[str]]:
    history: dict[str, list[str]] = defaultdict(list)
    workspace.events.subscribe(
        MOVE_STATUS_CHANGED, lambda name, payload: history[payload.task_id].append(payload.status)
    )
    return history


def _wait(workspace, config) -> None:
    assert workspace.moves.wait_idle(config.bucket, config.account_id, timeout=10)


def _task(task_id: str, status: MoveStatus, **overrides) -> MoveTask:
    data = {
        "id": task_id,
        "source_key": "big.bin",
        "dest_key": "big.bin",
        "source_bucket": "photos",
        "source_account_id": "local",
        "source_provider": "minio",
        "dest_bucket": "archive",
        "dest_account_id": "local",
        "dest_provider": "rustfs",
        "status": status,
        "created_at": 1,
        "updated_at": 1,
    }
    data.update(overrides)
    return MoveTask(**data)


def test_move_with_delete_original_walks_every_status(
    storage: FakeStorage, workspace, source_config, dest_config
) -> None:
    payloads = {"a.txt": b"alpha", "b.txt": b"bravo!", "c/d.txt": b"delta" * 10}
    for key, data in payloads.items():
        storage.put(source_config, key, data)
    workspace.sync_bucket(source_config)
    history = _record_statuses(workspace)

    tasks = workspace.enqueue_moves(
        source_config, dest_config, [(key, key) for key in payloads], delete_original=True
    )
    workspace.start_move_queue(source_config, dest_config)
    _wait(workspace, source_config)

    final = workspace.get_move_tasks(source_config)
    assert [task.status for task in final] == [MoveStatus.SUCCESS] * 3
    assert all(task.progress == 100 for task in final)
    for task in tasks:
        assert history[task.id] == ["downloading", "uploading", "finishing", "deleting", "success"]
    assert storage.keys(source_config) == []
    for key, data in payloads.items():
        assert storage.get(dest_config, key) == data

    workspace.cache_updates.flush()
    assert workspace.get_all_cached_files(source_config) == []
    assert sorted(item.key for item in workspace.get_all_cached_files(dest_config)) == sorted(payloads)

    cleared = workspace.clear_all_moves(source_config)
    assert sorted(cleared) == sorted(task.id for task in tasks)
    assert workspace.get_move_tasks(source_config) == []


def test_active_moves_never_exceed_the_ceiling(
    storage: FakeStorage, workspace, source_config, dest_config
) -> None:
    for index in range(6):
        storage.put(source_config, f"file{index}.bin", b"payload")
    storage.delay = 0.05
    observer = MoveSessionRepository(workspace.database)
    seen: list[int] = []
    workspace.events.subscribe(MOVE_STATUS_CHANGED, lambda name, payload: seen.append(observer.count_active()))

    workspace.enqueue_moves(source_config, dest_config, [(f"file{i}.bin", f"file{i}.bin") for i in range(6)])
    workspace.start_move_queue(source_config, dest_config)
    _wait(workspace, source_config)

    assert max(seen) == 2
    assert [task.status for task in workspace.get_move_tasks(source_config)] == [MoveStatus.SUCCESS] * 6


def test_clear_all_is_refused_while_a_move_is_active(
    storage: FakeStorage, workspace, source_config, dest_config
) -> None:
    storage.put(source_config, "slow.bin", b"slow")
    storage.delay = 0.3
    started = threading.Event()
    workspace.events.subscribe(
        MOVE_STATUS_CHANGED, lambda name, payload: payload.status == "downloading" and started.set()
    )

    workspace.enqueue_moves(source_config, dest_config, [("slow.bin", "slow.bin")])
    workspace.start_move_queue(source_config, dest_config)
    assert started.wait(5)

    with pytest.raises(MoveQueueBusyError, match="Cannot clear all moves while moves are active"):
        workspace.clear_all_moves(source_config)

    _wait(workspace, source_config)
    assert len(workspace.clear_all_moves(source_config)) == 1


def test_unregistered_destination_fails_the_task(
    storage: FakeStorage, database: Database, events: EventBus, source_config, dest_config
) -> None:
    storage.put(source_config, "a.txt", b"a")
    repository = MoveSessionRepository(database)
    settings = TransferSettings(max_concurrent_moves=2)
    first = TransferQueue(repository, events, settings=settings, adapter_factory=storage.adapter)
    (task,) = first.enqueue_moves(source_config, dest_config, [("a.txt", "a.txt")])
    first.shutdown()

    # A fresh queue only knows the locations it was started with.
    second = TransferQueue(repository, events, settings=settings, adapter_factory=storage.adapter)
    second.start_move_queue(source_config, make_config("rustfs", bucket="elsewhere"))
    assert second.wait_idle(source_config.bucket, source_config.account_id, timeout=10)
    second.shutdown()

    failed = repository.get(task.id)
    assert failed.status == MoveStatus.ERROR
    assert failed.error == f"Destination {dest_config.registry_key} is not available"
    assert storage.get(source_config, "a.txt") == b"a"


def test_missing_source_object_marks_task_failed(
    storage: FakeStorage, workspace, source_config, dest_config
) -> None:
    (task,) = workspace.enqueue_moves(source_config, dest_config, [("ghost.txt", "ghost.txt")])
    workspace.start_move_queue(source_config, dest_config)
    _wait(workspace, source_config)

    failed = workspace.moves.get_move_tasks(source_config.bucket, source_config.account_id)[0]
    assert failed.status == MoveStatus.ERROR
    assert "ghost.txt" in (failed.error or "")

    workspace.moves.delete_move(task.id)
    assert workspace.get_move_tasks(source_config) == []


def test_failed_source_cleanup_still_succeeds_and_is_retried(
    storage: FakeStorage, workspace_factory, source_config, dest_config
) -> None:
    workspace = workspace_factory(
        transfer={"cleanup_retry_attempts": 3, "cleanup_retry_delay_seconds": 60}
    )
    storage.put(source_config, "a.txt", b"a")
    storage.fail("delete_object", "a.txt")

    (task,) = workspace.enqueue_moves(source_config, dest_config, [("a.txt", "a.txt")], delete_original=True)
    workspace.start_move_queue(source_config, dest_config)
    _wait(workspace, source_config)

    settled = workspace.moves.get_move_tasks(source_config.bucket, source_config.account_id)[0]
    assert settled.status == MoveStatus.SUCCESS
    assert settled.cleanup_error == "delete_object failed"
    assert settled.cleanup_attempts == 1
    assert storage.get(source_config, "a.txt") == b"a"
    assert storage.get(dest_config, "a.txt") == b"a"

    assert workspace.moves.retry_source_cleanups() == 1

    retried = workspace.moves.get_move_tasks(source_config.bucket, source_config.account_id)[0]
    assert retried.id == task.id
    assert retried.cleanup_error is None
    assert retried.cleanup_attempts == 2
    assert storage.get(source_config, "a.txt") is None
    assert workspace.moves.retry_source_cleanups() == 0


def test_pause_all_and_resume_all_pending_tasks(
    storage: FakeStorage, workspace, source_config, dest_config
) -> None:
    for key in ("one.txt", "two.txt"):
        storage.put(source_config, key, b"1")
    tasks = workspace.enqueue_moves(source_config, dest_config, [("one.txt", "x/one.txt"), ("two.txt", "x/two.txt")])

    paused = workspace.pause_all_moves(source_config)
    workspace.start_move_queue(source_config, dest_config)
    _wait(workspace, source_config)

    assert sorted(paused) == sorted(task.id for task in tasks)
    assert {task.status for task in workspace.get_move_tasks(source_config)} == {MoveStatus.PAUSED}
    assert storage.keys(dest_config) == []

    resumed = workspace.resume_all_moves(source_config)
    _wait(workspace, source_config)

    assert sorted(resumed) == sorted(paused)
    assert {task.status for task in workspace.get_move_tasks(source_config)} == {MoveStatus.SUCCESS}
    assert storage.keys(dest_config) == ["x/one.txt", "x/two.txt"]
    with pytest.raises(TransferError):
        workspace.resume_move(tasks[0].id)


def test_cancel_pending_task(storage: FakeStorage, workspace, source_config, dest_config) -> None:
    storage.put(source_config, "a.txt", b"a")
    (task,) = workspace.enqueue_moves(source_config, dest_config, [("a.txt", "a.txt")])

    assert workspace.moves.cancel_move(task.id) is True
    assert workspace.moves.cancel_move(task.id) is False
    workspace.start_move_queue(source_config, dest_config)
    _wait(workspace, source_config)

    assert workspace.get_move_tasks(source_config)[0].status == MoveStatus.CANCELLED
    assert storage.keys(dest_config) == []
    with pytest.raises(TransferError):
        workspace.resume_move(task.id)


def test_pausing_an_active_move_stops_it_and_resume_finishes_it(
    storage: FakeStorage, workspace, source_config, dest_config
) -> None:
    storage.put(source_config, "big.txt", b"contents")
    storage.delay = 0.3
    started = threading.Event()
    workspace.events.subscribe(
        MOVE_STATUS_CHANGED, lambda name, payload: payload.status == "downloading" and started.set()
    )

    (task,) = workspace.enqueue_moves(source_config, dest_config, [("big.txt", "big.txt")])
    workspace.start_move_queue(source_config, dest_config)
    assert started.wait(5)
    assert workspace.moves.pause_move(task.id) is True
    _wait(workspace, source_config)

    assert workspace.get_move_tasks(source_config)[0].status == MoveStatus.PAUSED
    assert storage.get(dest_config, "big.txt") is None

    storage.delay = 0.0
    assert workspace.resume_move(task.id).status == MoveStatus.PENDING
    _wait(workspace, source_config)

    assert workspace.get_move_tasks(source_config)[0].status == MoveStatus.SUCCESS
    assert storage.get(dest_config, "big.txt") == b"contents"


def test_resuming_right_after_pause_never_runs_the_move_twice_at_once(
    storage: FakeStorage, workspace, source_config, dest_config, monkeypatch
) -> None:
    storage.put(source_config, "big.txt", b"contents")
    storage.delay = 0.3
    started = threading.Event()
    workspace.events.subscribe(
        MOVE_STATUS_CHANGED, lambda name, payload: payload.status == "downloading" and started.set()
    )
    lock = threading.Lock()
    running = [0]
    overlap = [0]
    original_run = MoveExecutor.run

    def _tracking_run(self, *args, **kwargs):
        with lock:
            running[0] += 1
            overlap[0] = max(overlap[0], running[0])
        try:
            return original_run(self, *args, **kwargs)
        finally:
            with lock:
                running[0] -= 1

    monkeypatch.setattr(MoveExecutor, "run", _tracking_run)

    (task,) = workspace.enqueue_moves(source_config, dest_config, [("big.txt", "big.txt")])
    workspace.start_move_queue(source_config, dest_config)
    assert started.wait(5)
    assert workspace.moves.pause_move(task.id) is True
    assert workspace.resume_move(task.id).status == MoveStatus.PENDING
    _wait(workspace, source_config)

    assert overlap[0] == 1
    assert workspace.get_move_tasks(source_config)[0].status == MoveStatus.SUCCESS
    assert storage.get(dest_config, "big.txt") == b"contents"


def test_scheduler_survives_an_unexpected_error(
    storage: FakeStorage, workspace, source_config, dest_config, monkeypatch
) -> None:
    storage.put(source_config, "a.txt", b"alpha")
    original = MoveSessionRepository.list_pending
    calls = [0]

    def _flaky_list_pending(self, *args, **kwargs):
        calls[0] += 1
        if calls[0] == 1:
            raise RuntimeError("database hiccup")
        return original(self, *args, **kwargs)

    monkeypatch.setattr(MoveSessionRepository, "list_pending", _flaky_list_pending)

    workspace.enqueue_moves(source_config, dest_config, [("a.txt", "a.txt")])
    workspace.start_move_queue(source_config, dest_config)
    deadline = time.monotonic() + 5
    while calls[0] < 1 and time.monotonic() < deadline:
        time.sleep(0.01)
    workspace.start_move_queue(source_config, dest_config)
    _wait(workspace, source_config)

    assert calls[0] >= 2
    assert workspace.get_move_tasks(source_config)[0].status == MoveStatus.SUCCESS


def test_same_provider_uses_server_side_copy(storage: FakeStorage, workspace, source_config) -> None:
    dest = make_config("minio", bucket="backup")
    storage.put(source_config, "a.txt", b"a")
    storage.put(source_config, "b.txt", b"b")
    storage.fail("copy_object", "b.txt")

    workspace.enqueue_moves(source_config, dest, [("a.txt", "a.txt"), ("b.txt", "b.txt")])
    workspace.start_move_queue(source_config, dest)
    _wait(workspace, source_config)

    assert storage.count("copy_object") == 2
    # Only the failed copy falls back to streaming.
    assert [key for op, key in storage.calls if op == "open_object"] == ["b.txt"]
    assert storage.keys(dest) == ["a.txt", "b.txt"]


def test_stale_in_progress_tasks_are_paused_on_startup(
    storage: FakeStorage, database: Database, events: EventBus
) -> None:
    repository = MoveSessionRepository(database)
    repository.insert(
        [
            _task("move-1-0", MoveStatus.DOWNLOADING),
            _task("move-1-1", MoveStatus.FINISHING),
            _task("move-1-2", MoveStatus.PENDING),
        ]
    )
    queue = TransferQueue(repository, events, adapter_factory=storage.adapter)

    paused = queue.pause_stale_moves_on_startup()
    queue.shutdown()

    assert sorted(paused) == ["move-1-0", "move-1-1"]
    assert [task.status for task in queue.get_move_tasks("photos", "local")] == [
        MoveStatus.PAUSED,
        MoveStatus.PAUSED,
        MoveStatus.PENDING,
    ]


def test_multipart_move_resumes_from_checkpointed_parts(
    storage: FakeStorage, database: Database, events: EventBus, source_config, dest_config
) -> None:
    data = bytes(range(26))
    storage.put(source_config, "big.bin", data)
    repository = MoveSessionRepository(database)
    repository.insert([_task("move-9-0", MoveStatus.DOWNLOADING, file_size=len(data))])
    executor = MoveExecutor(
        repository, events, multipart_threshold=10, part_size=4, max_concurrent_parts=1, persist_step=1
    )
    source, dest = storage.adapter(source_config), storage.adapter(dest_config)
    storage.fail("upload_part", "big.bin#4")

    with pytest.raises(ProviderError):
        executor.run(repository.get("move-9-0"), source, dest, TransferControl())

    interrupted = repository.get("move-9-0")
    assert interrupted.upload_id is not None
    saved = [part.part_number for part in repository.get_parts("move-9-0")]
    assert saved[:3] == [1, 2, 3]
    assert 4 not in saved

    repository.transition("move-9-0", MoveStatus.DOWNLOADING)
    cleanup_error = executor.run(repository.get("move-9-0"), source, dest, TransferControl())

    assert cleanup_error is None
    assert storage.get(dest_config, "big.bin") == data
    assert storage.calls.count(("upload_part", "big.bin#1")) == 1
    assert storage.calls.count(("upload_part", "big.bin#4")) == 2
    assert storage.count("create_multipart_upload") == 1
    finished = repository.get("move-9-0")
    assert finished.status == MoveStatus.SUCCESS
    assert finished.upload_id is None
    assert repository.get_parts("move-9-0") == []


def test_expired_multipart_upload_starts_over(
    storage: FakeStorage, database: Database, events: EventBus, source_config, dest_config
) -> None:
    data = b"0123456789abcdef"
    storage.put(source_config, "big.bin", data)
    repository = MoveSessionRepository(database)
    repository.insert(
        [_task("move-9-1", MoveStatus.DOWNLOADING, file_size=len(data), upload_id="gone")]
    )
    executor = MoveExecutor(repository, events, multipart_threshold=8, part_size=8)

    executor.run(
        repository.get("move-9-1"),
        storage.adapter(source_config),
        storage.adapter(dest_config),
        TransferControl(),
    )

    assert storage.count("list_parts") == 1
    assert storage.count("create_multipart_upload") == 1
    assert storage.get(dest_config, "big.bin") == data
