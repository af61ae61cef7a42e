"""Queued uploads with bounded parallelism."""

from __future__ import annotations

from pathlib import Path

import pytest

from bucketdock.cache import CacheStore, Database
from bucketdock.events import UPLOAD_STATUS_CHANGED, EventBus
from bucketdock.upload import UploadEngine, UploadQueue, UploadSessionStore, UploadStatus

from fakes import FakeStorage


@pytest.fixture
def queue(storage: FakeStorage, database: Database, events: EventBus):
    engine = UploadEngine(UploadSessionStore(database), adapter_factory=storage.adapter)
    queue = UploadQueue(engine, events, max_concurrent_uploads=2, cache=CacheStore(database, events=events))
    yield queue
    queue.shutdown()


def test_queued_files_upload_and_land_in_cache(
    queue: UploadQueue, storage: FakeStorage, database: Database, events: EventBus, source_config, tmp_path: Path
) -> None:
    statuses: list[tuple[str, str]] = []
    events.subscribe(UPLOAD_STATUS_CHANGED, lambda name, payload: statuses.append((payload.task_id, payload.status)))
    files = []
    for index in range(3):
        path = tmp_path / f"f{index}.txt"
        path.write_text("x" * (index + 1))
        files.append((path, f"in/f{index}.txt"))

    tasks = queue.add_files(source_config, files)
    assert len(queue.start()) == 3
    assert queue.wait(timeout=10)

    assert {task.status for task in queue.tasks()} == {UploadStatus.SUCCESS}
    assert all(task.progress == 100 for task in queue.tasks())
    assert storage.keys(source_config) == ["in/f0.txt", "in/f1.txt", "in/f2.txt"]
    for task in tasks:
        assert [status for task_id, status in statuses if task_id == task.id] == ["uploading", "success"]
    cached = CacheStore(database).get_cached_file(source_config.account_id, source_config.bucket, "in/f2.txt")
    assert cached is not None and cached.size == 3


def test_missing_file_fails_only_its_task(
    queue: UploadQueue, storage: FakeStorage, source_config, tmp_path: Path
) -> None:
    good = tmp_path / "good.txt"
    good.write_text("ok")

    queue.add_files(source_config, [(tmp_path / "gone.txt", "gone.txt"), (good, "good.txt")])
    queue.start()
    queue.wait(timeout=10)

    by_key = {task.object_key: task for task in queue.tasks()}
    assert by_key["gone.txt"].status == UploadStatus.ERROR
    assert "Failed to get file metadata" in (by_key["gone.txt"].error or "")
    assert by_key["good.txt"].status == UploadStatus.SUCCESS


def test_cancel_before_start_and_clear_finished(
    queue: UploadQueue, storage: FakeStorage, source_config, tmp_path: Path
) -> None:
    path = tmp_path / "a.txt"
    path.write_text("a")
    (task,) = queue.add_files(source_config, [(path, "a.txt")])

    assert queue.cancel(task.id) is True
    assert queue.cancel(task.id) is False
    assert queue.start() == []

    assert queue.tasks()[0].status == UploadStatus.CANCELLED
    assert storage.keys(source_config) == []
    assert queue.clear_finished() == [task.id]
    assert queue.tasks() == []
