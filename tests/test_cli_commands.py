"""CLI workflows against the in-memory storage backend."""

from __future__ import annotations

import json
import os
from pathlib import Path
from typing import Any

import pytest
from click.testing import CliRunner

from bucketdock.cli import cli
from bucketdock.config import ConfigManager

from fakes import FakeStorage, make_config

SOURCE = make_config("minio", bucket="photos")
DEST = make_config("rustfs", bucket="archive")


def _env_with_home(tmp_path: Path) -> dict[str, Any]:
    env = dict(os.environ)
    env["HOME"] = str(tmp_path)
    return env


def _profile(config) -> dict[str, Any]:
    return config.model_dump(mode="json", exclude_none=True)


@pytest.fixture
def env(tmp_path: Path, storage: FakeStorage, monkeypatch: pytest.MonkeyPatch) -> dict[str, Any]:
    ConfigManager(config_path=tmp_path / ".bucketdock" / "config.yaml").save(
        {
            "cli": {"default_profile": "src"},
            "transfer": {"cache_flush_delay_ms": 0, "max_concurrent_moves": 2},
            "profiles": {"src": _profile(SOURCE), "dst": _profile(DEST)},
        }
    )
    monkeypatch.setattr("bucketdock.cli.get_adapter", storage.adapter)
    return _env_with_home(tmp_path)


def _seed(storage: FakeStorage) -> None:
    storage.put(SOURCE, "docs/a.txt", b"aaaa")
    storage.put(SOURCE, "docs/b.txt", b"bb")
    storage.put(SOURCE, "readme.md", b"hello")


def _json(result) -> Any:
    return json.loads(result.stdout)


def test_ls_before_sync_reports_cache_not_ready(env: dict[str, Any], storage: FakeStorage) -> None:
    _seed(storage)

    result = CliRunner().invoke(cli, ["ls", "--json"], env=env)

    assert result.exit_code == 1
    assert _json(result)["error"]["code"] == "cache_not_ready"


def test_sync_then_browse_search_and_size(env: dict[str, Any], storage: FakeStorage) -> None:
    _seed(storage)
    runner = CliRunner()

    synced = runner.invoke(cli, ["sync", "--json"], env=env)
    root = runner.invoke(cli, ["ls", "--json"], env=env)
    docs = runner.invoke(cli, ["ls", "docs", "--json"], env=env)
    found = runner.invoke(cli, ["search", "TXT a", "--json"], env=env)
    size = runner.invoke(cli, ["du", "docs/", "--json"], env=env)

    assert synced.exit_code == 0, synced.output
    assert _json(synced)["count"] == 3
    assert _json(root)["folders"] == ["docs/"]
    assert [item["key"] for item in _json(root)["files"]] == ["readme.md"]
    assert _json(docs)["prefix"] == "docs/"
    assert [item["key"] for item in _json(docs)["files"]] == ["docs/a.txt", "docs/b.txt"]
    assert [item["key"] for item in _json(found)["files"]] == ["docs/a.txt"]
    assert _json(size) == {"prefix": "docs/", "size": 6}


def test_sync_summary_line(env: dict[str, Any], storage: FakeStorage) -> None:
    _seed(storage)

    result = CliRunner().invoke(cli, ["sync", "--summary"], env=env)

    assert result.exit_code == 0
    assert "Sync summary for local/photos: objects=3." in result.output
    assert "fetching" not in result.output


def test_rm_reports_batch_result(env: dict[str, Any], storage: FakeStorage) -> None:
    _seed(storage)

    result = CliRunner().invoke(cli, ["rm", "docs/a.txt", "readme.md", "--json"], env=env)

    assert result.exit_code == 0
    payload = _json(result)
    assert (payload["deleted"], payload["failed"]) == (2, 0)
    assert storage.keys(SOURCE) == ["docs/b.txt"]


def test_mv_and_url(env: dict[str, Any], storage: FakeStorage) -> None:
    _seed(storage)
    runner = CliRunner()

    moved = runner.invoke(cli, ["mv", "readme.md", "docs/readme.md"], env=env)
    signed = runner.invoke(cli, ["url", "docs/readme.md", "--expires", "60"], env=env)

    assert moved.exit_code == 0
    assert storage.keys(SOURCE) == ["docs/a.txt", "docs/b.txt", "docs/readme.md"]
    assert signed.output.strip() == "https://signed.example/photos/docs/readme.md?expires=60"


def test_buckets_lists_names(env: dict[str, Any], storage: FakeStorage) -> None:
    _seed(storage)
    storage.put(DEST, "x.txt", b"x")

    result = CliRunner().invoke(cli, ["buckets", "--json"], env=env)

    assert result.exit_code == 0
    assert [bucket["name"] for bucket in _json(result)["buckets"]] == ["archive", "photos"]


def test_unknown_profile_is_a_config_error(env: dict[str, Any]) -> None:
    result = CliRunner().invoke(cli, ["--profile", "nope", "ls", "--json"], env=env)

    assert result.exit_code == 1
    error = _json(result)["error"]
    assert error["code"] == "config_error"
    assert "Unknown profile 'nope'" in error["message"]


def test_move_add_start_list_and_clear(env: dict[str, Any], storage: FakeStorage) -> None:
    _seed(storage)
    runner = CliRunner()

    added = runner.invoke(
        cli, ["move", "add", "docs/a.txt", "docs/b.txt", "--to", "dst", "--dest-prefix", "old/", "--delete-original"],
        env=env,
    )
    started = runner.invoke(cli, ["move", "start", "--to", "dst", "--timeout", "10", "--quiet"], env=env)
    listed = runner.invoke(cli, ["move", "list", "--json"], env=env)
    cleared = runner.invoke(cli, ["move", "clear"], env=env)

    assert added.exit_code == 0, added.output
    assert "Queued 2 moves to archive." in added.output
    assert started.exit_code == 0, started.output
    assert {task["status"] for task in _json(listed)["tasks"]} == {"success"}
    assert storage.keys(DEST) == ["old/docs/a.txt", "old/docs/b.txt"]
    assert storage.keys(SOURCE) == ["readme.md"]
    assert "Removed 2 move tasks." in cleared.output


def test_move_start_prints_summary(env: dict[str, Any], storage: FakeStorage) -> None:
    _seed(storage)
    runner = CliRunner()
    runner.invoke(cli, ["move", "add", "readme.md", "--to", "dst"], env=env)

    result = runner.invoke(cli, ["move", "start", "--to", "dst", "--timeout", "10"], env=env)

    assert result.exit_code == 0, result.output
    assert "Move summary for photos -> archive: success=1." in result.output
    assert storage.keys(SOURCE) == ["docs/a.txt", "docs/b.txt", "readme.md"]


def test_move_pause_and_resume_pending(env: dict[str, Any], storage: FakeStorage) -> None:
    _seed(storage)
    runner = CliRunner()
    runner.invoke(cli, ["move", "add", "readme.md", "--to", "dst"], env=env)

    paused = runner.invoke(cli, ["move", "pause"], env=env)
    resumed = runner.invoke(cli, ["move", "resume"], env=env)

    assert "Paused 1 pending moves." in paused.output
    assert "Resumed 1 moves." in resumed.output


def test_upload_file_and_folder(env: dict[str, Any], storage: FakeStorage, tmp_path: Path) -> None:
    single = tmp_path / "note.txt"
    single.write_text("note")
    folder = tmp_path / "album"
    (folder / "day1").mkdir(parents=True)
    (folder / "day1" / "a.jpg").write_bytes(b"a")
    (folder / "cover.jpg").write_bytes(b"c")
    runner = CliRunner()

    one = runner.invoke(cli, ["upload", str(single), "--key", "notes/n.txt"], env=env)
    many = runner.invoke(cli, ["upload", str(folder), "--prefix", "backup"], env=env)

    assert one.exit_code == 0, one.output
    assert many.exit_code == 0, many.output
    assert "files=2" in many.output
    assert storage.keys(SOURCE) == ["backup/album/cover.jpg", "backup/album/day1/a.jpg", "notes/n.txt"]


def test_upload_folder_rejects_key(env: dict[str, Any], tmp_path: Path) -> None:
    (tmp_path / "album").mkdir()

    result = CliRunner().invoke(cli, ["upload", str(tmp_path / "album"), "--key", "x"], env=env)

    assert result.exit_code != 0
    assert "--key only applies to single-file uploads" in result.output


def test_sessions_list_and_clean(env: dict[str, Any]) -> None:
    runner = CliRunner()

    listed = runner.invoke(cli, ["sessions", "list", "--json"], env=env)
    cleaned = runner.invoke(cli, ["sessions", "clean", "--days", "0"], env=env)

    assert _json(listed) == {"sessions": []}
    assert "Removed 0 upload sessions." in cleaned.output


def test_download_add_start_list_and_clear(env: dict[str, Any], storage: FakeStorage, tmp_path: Path) -> None:
    _seed(storage)
    target = tmp_path / "downloads"
    runner = CliRunner()

    added = runner.invoke(cli, ["download", "add", "docs/a.txt", "readme.md", "--dest", str(target)], env=env)
    started = runner.invoke(cli, ["download", "start", "--timeout", "10"], env=env)
    listed = runner.invoke(cli, ["download", "list", "--json"], env=env)
    cleared = runner.invoke(cli, ["download", "clear"], env=env)

    assert added.exit_code == 0, added.output
    assert "Queued 2 downloads" in added.output
    assert started.exit_code == 0, started.output
    assert "Download summary for photos: completed=2." in started.output
    assert {task["status"] for task in _json(listed)["tasks"]} == {"completed"}
    assert (target / "a.txt").read_bytes() == b"aaaa"
    assert (target / "readme.md").read_bytes() == b"hello"
    assert "Removed 2 download tasks." in cleared.output


def test_download_resume_of_unknown_task_is_an_error(env: dict[str, Any]) -> None:
    result = CliRunner().invoke(cli, ["download", "resume", "download-missing"], env=env)

    assert result.exit_code != 0
    assert "Unknown download task: download-missing" in result.output
