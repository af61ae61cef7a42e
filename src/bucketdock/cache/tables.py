"""Declarative tables of the workspace database.

The cache, the move queue, upload sessions and the download queue share one
SQLite file. Staging tables mirror their live twins column for column so a
sync can be swapped in with ``INSERT ... SELECT``.
"""

from __future__ import annotations

from typing import Optional

from sqlalchemy import Boolean, Index, Integer, Text
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column


class Base(DeclarativeBase):
    """Declarative base for every workspace table."""


class _FileColumns:
    bucket: Mapped[str] = mapped_column(Text, primary_key=True)
    account_id: Mapped[str] = mapped_column(Text, primary_key=True)
    key: Mapped[str] = mapped_column(Text, primary_key=True)
    parent_path: Mapped[str] = mapped_column(Text, nullable=False)
    name: Mapped[str] = mapped_column(Text, nullable=False)
    size: Mapped[int] = mapped_column(Integer, nullable=False)
    last_modified: Mapped[str] = mapped_column(Text, nullable=False)
    synced_at: Mapped[int] = mapped_column(Integer, nullable=False)


class _TreeColumns:
    bucket: Mapped[str] = mapped_column(Text, primary_key=True)
    account_id: Mapped[str] = mapped_column(Text, primary_key=True)
    path: Mapped[str] = mapped_column(Text, primary_key=True)
    parent_path: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    file_count: Mapped[int] = mapped_column(Integer, nullable=False)
    total_file_count: Mapped[int] = mapped_column(Integer, nullable=False)
    size: Mapped[int] = mapped_column(Integer, nullable=False)
    total_size: Mapped[int] = mapped_column(Integer, nullable=False)
    last_modified: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    last_updated: Mapped[int] = mapped_column(Integer, nullable=False)


class CachedFileRow(_FileColumns, Base):
    """Object metadata of one cached listing entry."""

    __tablename__ = "cached_files"
    __table_args__ = (Index("idx_cached_files_parent", "bucket", "account_id", "parent_path"),)


class StagedFileRow(_FileColumns, Base):
    __tablename__ = "staged_files"


class DirectoryNodeRow(_TreeColumns, Base):
    """Aggregated statistics of one folder prefix."""

    __tablename__ = "directory_tree"
    __table_args__ = (Index("idx_directory_tree_parent", "bucket", "account_id", "parent_path"),)


class StagedDirectoryNodeRow(_TreeColumns, Base):
    __tablename__ = "staged_directory_tree"


class SyncMetaRow(Base):
    __tablename__ = "sync_meta"

    bucket: Mapped[str] = mapped_column(Text, primary_key=True)
    account_id: Mapped[str] = mapped_column(Text, primary_key=True)
    last_sync: Mapped[int] = mapped_column(Integer, nullable=False)
    file_count: Mapped[int] = mapped_column(Integer, nullable=False)


class MoveSessionRow(Base):
    """A persisted move task."""

    __tablename__ = "move_sessions"
    __table_args__ = (
        Index("idx_move_sessions_source", "source_bucket", "source_account_id", "status"),
    )

    id: Mapped[str] = mapped_column(Text, primary_key=True)
    source_key: Mapped[str] = mapped_column(Text, nullable=False)
    dest_key: Mapped[str] = mapped_column(Text, nullable=False)
    source_bucket: Mapped[str] = mapped_column(Text, nullable=False)
    source_account_id: Mapped[str] = mapped_column(Text, nullable=False)
    source_provider: Mapped[str] = mapped_column(Text, nullable=False)
    dest_bucket: Mapped[str] = mapped_column(Text, nullable=False)
    dest_account_id: Mapped[str] = mapped_column(Text, nullable=False)
    dest_provider: Mapped[str] = mapped_column(Text, nullable=False)
    delete_original: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
    file_size: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    progress: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    transferred_bytes: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    status: Mapped[str] = mapped_column(Text, nullable=False, default="pending")
    error: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    upload_id: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    cleanup_error: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    cleanup_attempts: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    created_at: Mapped[int] = mapped_column(Integer, nullable=False)
    updated_at: Mapped[int] = mapped_column(Integer, nullable=False)


class MovePartRow(Base):
    """Checkpoint of one uploaded part of a multipart move."""

    __tablename__ = "move_parts"

    task_id: Mapped[str] = mapped_column(Text, primary_key=True)
    part_number: Mapped[int] = mapped_column(Integer, primary_key=True)
    etag: Mapped[str] = mapped_column(Text, nullable=False)


class UploadSessionRow(Base):
    """A resumable multipart upload of a local file."""

    __tablename__ = "upload_sessions"
    __table_args__ = (
        Index(
            "idx_upload_sessions_fingerprint",
            "account_id",
            "bucket",
            "object_key",
            "file_name",
            "file_size",
            "file_mtime",
        ),
    )

    id: Mapped[str] = mapped_column(Text, primary_key=True)
    file_path: Mapped[str] = mapped_column(Text, nullable=False)
    file_name: Mapped[str] = mapped_column(Text, nullable=False)
    file_size: Mapped[int] = mapped_column(Integer, nullable=False)
    file_mtime: Mapped[int] = mapped_column(Integer, nullable=False)
    object_key: Mapped[str] = mapped_column(Text, nullable=False)
    bucket: Mapped[str] = mapped_column(Text, nullable=False)
    account_id: Mapped[str] = mapped_column(Text, nullable=False)
    upload_id: Mapped[str] = mapped_column(Text, nullable=False)
    content_type: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    total_parts: Mapped[int] = mapped_column(Integer, nullable=False)
    status: Mapped[str] = mapped_column(Text, nullable=False, default="pending")
    created_at: Mapped[int] = mapped_column(Integer, nullable=False)
    updated_at: Mapped[int] = mapped_column(Integer, nullable=False)


class CompletedPartRow(Base):
    __tablename__ = "completed_parts"

    session_id: Mapped[str] = mapped_column(Text, primary_key=True)
    part_number: Mapped[int] = mapped_column(Integer, primary_key=True)
    etag: Mapped[str] = mapped_column(Text, nullable=False)


class DownloadSessionRow(Base):
    """A queued download of one object to a local folder."""

    __tablename__ = "download_sessions"
    __table_args__ = (
        Index("idx_download_sessions_scope", "bucket", "account_id", "status"),
        Index("idx_download_sessions_status", "status"),
    )

    id: Mapped[str] = mapped_column(Text, primary_key=True)
    object_key: Mapped[str] = mapped_column(Text, nullable=False)
    file_name: Mapped[str] = mapped_column(Text, nullable=False)
    file_size: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    downloaded_bytes: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    local_path: Mapped[str] = mapped_column(Text, nullable=False)
    bucket: Mapped[str] = mapped_column(Text, nullable=False)
    account_id: Mapped[str] = mapped_column(Text, nullable=False)
    status: Mapped[str] = mapped_column(Text, nullable=False, default="pending")
    error: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    created_at: Mapped[int] = mapped_column(Integer, nullable=False)
    updated_at: Mapped[int] = mapped_column(Integer, nullable=False)


__all__ = [
    "Base",
    "CachedFileRow",
    "StagedFileRow",
    "DirectoryNodeRow",
    "StagedDirectoryNodeRow",
    "SyncMetaRow",
    "MoveSessionRow",
    "MovePartRow",
    "UploadSessionRow",
    "CompletedPartRow",
    "DownloadSessionRow",
]
