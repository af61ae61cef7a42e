"""Single-request and resumable multipart uploads."""

from __future__ import annotations

import threading
from pathlib import Path

import pytest

from bucketdock.cache import Database
from bucketdock.config.models import UploadSettings
from bucketdock.providers import ProviderError
from bucketdock.upload import (
    SessionStatus,
    UploadCancelledError,
    UploadEngine,
    UploadError,
    UploadProgress,
    UploadSessionStore,
)

from fakes import FakeStorage


@pytest.fixture
def engine(storage: FakeStorage, database: Database) -> UploadEngine:
    settings = UploadSettings(max_concurrent_parts=1, prefetch_parts=0, checkpoint_interval_seconds=0)
    return UploadEngine(
        UploadSessionStore(database),
        settings=settings,
        adapter_factory=storage.adapter,
        multipart_threshold=10,
        part_size=4,
    )


@pytest.fixture
def big_file(tmp_path: Path) -> Path:
    path = tmp_path / "big.bin"
    path.write_bytes(bytes(range(30)))
    return path


def _cancel_after(event: threading.Event, uploaded: int):
    def _on_progress(progress: UploadProgress) -> None:
        if progress.uploaded_bytes >= uploaded:
            event.set()

    return _on_progress


def test_small_file_goes_up_in_one_request(
    engine: UploadEngine, storage: FakeStorage, source_config, tmp_path: Path
) -> None:
    path = tmp_path / "note.txt"
    path.write_bytes(b"hello")
    seen: list[int] = []

    result = engine.upload_file(source_config, path, "docs/note.txt", on_progress=lambda p: seen.append(p.percent))

    assert (result.key, result.size, result.multipart, result.etag) == ("docs/note.txt", 5, False, "etag-5")
    assert storage.get(source_config, "docs/note.txt") == b"hello"
    assert storage.count("create_multipart_upload") == 0
    assert seen == [100]


def test_large_file_is_uploaded_in_parts(
    engine: UploadEngine, storage: FakeStorage, source_config, big_file: Path
) -> None:
    seen: list[UploadProgress] = []

    result = engine.upload_file(source_config, big_file, "big.bin", on_progress=seen.append)

    assert result.multipart is True
    assert result.resumed_parts == 0
    assert storage.get(source_config, "big.bin") == big_file.read_bytes()
    assert storage.count("upload_part") == 8
    assert [p.uploaded_bytes for p in seen][:2] == [4, 8]
    assert seen[-1].percent == 100
    assert engine.sessions.get_pending_sessions() == []
    assert engine.check_resumable_upload(source_config, big_file, "big.bin") is None


def test_cancelled_upload_resumes_from_completed_parts(
    engine: UploadEngine, storage: FakeStorage, source_config, big_file: Path
) -> None:
    cancel = threading.Event()

    with pytest.raises(UploadCancelledError):
        engine.upload_file(
            source_config, big_file, "big.bin", cancel_event=cancel, on_progress=_cancel_after(cancel, 8)
        )

    session = engine.check_resumable_upload(source_config, big_file, "big.bin")
    assert session is not None
    assert session.status == SessionStatus.CANCELLED
    assert engine.sessions.get_session_progress(session.id) == (2, 8)
    assert storage.get(source_config, "big.bin") is None

    result = engine.upload_file(source_config, big_file, "big.bin")

    assert result.resumed_parts == 2
    assert storage.get(source_config, "big.bin") == big_file.read_bytes()
    assert storage.calls.count(("upload_part", "big.bin#1")) == 1
    assert storage.calls.count(("upload_part", "big.bin#8")) == 1
    assert storage.count("create_multipart_upload") == 1
    assert engine.sessions.get_session(session.id) is None


def test_expired_remote_upload_starts_fresh(
    engine: UploadEngine, storage: FakeStorage, source_config, big_file: Path
) -> None:
    cancel = threading.Event()
    with pytest.raises(UploadCancelledError):
        engine.upload_file(
            source_config, big_file, "big.bin", cancel_event=cancel, on_progress=_cancel_after(cancel, 4)
        )
    storage.uploads.clear()

    result = engine.upload_file(source_config, big_file, "big.bin")

    assert result.resumed_parts == 0
    assert storage.count("create_multipart_upload") == 2
    assert storage.get(source_config, "big.bin") == big_file.read_bytes()


def test_modified_file_does_not_resume(
    engine: UploadEngine, storage: FakeStorage, source_config, big_file: Path
) -> None:
    cancel = threading.Event()
    with pytest.raises(UploadCancelledError):
        engine.upload_file(
            source_config, big_file, "big.bin", cancel_event=cancel, on_progress=_cancel_after(cancel, 4)
        )
    big_file.write_bytes(bytes(range(40)))

    result = engine.upload_file(source_config, big_file, "big.bin")

    assert result.resumed_parts == 0
    assert storage.get(source_config, "big.bin") == bytes(range(40))


def test_failed_part_aborts_and_forgets_the_session(
    engine: UploadEngine, storage: FakeStorage, source_config, big_file: Path
) -> None:
    storage.fail("upload_part", "big.bin#2")

    with pytest.raises(ProviderError):
        engine.upload_file(source_config, big_file, "big.bin")

    assert storage.count("abort_multipart_upload") == 1
    assert storage.uploads == {}
    assert engine.check_resumable_upload(source_config, big_file, "big.bin") is None
    assert storage.get(source_config, "big.bin") is None


def test_missing_file_is_an_upload_error(engine: UploadEngine, source_config, tmp_path: Path) -> None:
    with pytest.raises(UploadError, match="Failed to get file metadata"):
        engine.upload_file(source_config, tmp_path / "nope.bin", "nope.bin")


def test_workspace_upload_updates_cache(
    storage: FakeStorage, workspace, source_config, tmp_path: Path
) -> None:
    storage.put(source_config, "existing.txt", b"e")
    workspace.sync_bucket(source_config)
    path = tmp_path / "photo.jpg"
    path.write_bytes(b"\xff\xd8jpeg")

    workspace.upload_file(source_config, path, "albums/photo.jpg")

    contents = workspace.get_folder_contents(source_config, "albums/")
    assert [item.key for item in contents.files] == ["albums/photo.jpg"]
    assert contents.files[0].size == 6
