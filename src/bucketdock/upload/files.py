"""Local filesystem enumeration for choosing upload sources."""

from __future__ import annotations

import os
from pathlib import Path

from .errors import UploadError
from .models import FolderFile, LocalFileInfo


def get_file_info(path: Path | str) -> LocalFileInfo:
    """Return size, name, and modification time of a local file.

    Raises:
        UploadError: If the path does not exist or is not a regular file.
    """
    target = Path(path).expanduser()
    try:
        stat = target.stat()
    except OSError as exc:
        raise UploadError(f"Failed to get file metadata: {exc}") from exc
    if not target.is_file():
        raise UploadError(f"Not a file: {target}")
    return LocalFileInfo(path=target, name=target.name, size=stat.st_size, modified=int(stat.st_mtime))


def get_folder_files(folder: Path | str) -> list[FolderFile]:
    """Recursively list files under ``folder``, skipping hidden entries.

    Returns:
        list[FolderFile]: Files sorted by their ``/``-separated relative key.

    Raises:
        UploadError: If ``folder`` is not a directory or cannot be read.
    """
    root = Path(folder).expanduser()
    if not root.is_dir():
        raise UploadError(f"Not a directory: {root}")

    files: list[FolderFile] = []
    stack = [root]
    while stack:
        current = stack.pop()
        try:
            entries = list(os.scandir(current))
        except OSError as exc:
            raise UploadError(f"Failed to read directory {current}: {exc}") from exc
        for entry in entries:
            if entry.name.startswith("."):
                continue
            path = Path(entry.path)
            if entry.is_dir(follow_symlinks=True):
                stack.append(path)
            elif entry.is_file(follow_symlinks=True):
                files.append(
                    FolderFile(
                        path=path,
                        relative_key=path.relative_to(root).as_posix(),
                        size=entry.stat().st_size,
                    )
                )
    files.sort(key=lambda item: item.relative_key)
    return files


__all__ = ["get_file_info", "get_folder_files"]
