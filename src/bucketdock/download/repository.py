"""Persistence of download tasks."""

from __future__ import annotations

import time
from typing import Any, Iterable, Optional, Sequence

from sqlalchemy import delete, func, select, update

from bucketdock.cache.database import Database
from bucketdock.cache.tables import DownloadSessionRow

from .errors import DownloadTaskNotFoundError
from .models import DownloadStatus, DownloadTask

_COLUMNS = frozenset(column.name for column in DownloadSessionRow.__table__.columns)


def _status_values(statuses: Iterable[DownloadStatus]) -> list[str]:
    return sorted(status.value for status in statuses)


def _to_task(row: DownloadSessionRow) -> DownloadTask:
    return DownloadTask.model_validate(row, from_attributes=True)


def _in_scope(bucket: str, account_id: str) -> tuple:
    return (DownloadSessionRow.bucket == bucket, DownloadSessionRow.account_id == account_id)


class DownloadSessionRepository:
    """CRUD for ``download_sessions`` rows."""

    def __init__(self, database: Database) -> None:
        self._db = database

    def insert(self, tasks: Sequence[DownloadTask]) -> None:
        with self._db.session() as session:
            session.add_all(DownloadSessionRow(**task.model_dump(mode="json")) for task in tasks)

    def get(self, task_id: str) -> DownloadTask:
        task = self.find(task_id)
        if task is None:
            raise DownloadTaskNotFoundError(f"Unknown download task: {task_id}")
        return task

    def find(self, task_id: str) -> Optional[DownloadTask]:
        with self._db.session() as session:
            row = session.get(DownloadSessionRow, task_id, populate_existing=True)
            return _to_task(row) if row else None

    def list_for_scope(self, bucket: str, account_id: str) -> list[DownloadTask]:
        """Return the scope's tasks, most recently touched first."""
        statement = (
            select(DownloadSessionRow)
            .where(*_in_scope(bucket, account_id))
            .order_by(DownloadSessionRow.updated_at.desc(), DownloadSessionRow.id)
        )
        with self._db.session() as session:
            return [_to_task(row) for row in session.scalars(statement)]

    def list_pending(self, bucket: str, account_id: str, limit: int) -> list[DownloadTask]:
        statement = (
            select(DownloadSessionRow)
            .where(*_in_scope(bucket, account_id), DownloadSessionRow.status == DownloadStatus.PENDING.value)
            .order_by(DownloadSessionRow.created_at, DownloadSessionRow.id)
            .limit(limit)
        )
        with self._db.session() as session:
            return [_to_task(row) for row in session.scalars(statement)]

    def count_active(self, bucket: str, account_id: str) -> int:
        statement = (
            select(func.count())
            .select_from(DownloadSessionRow)
            .where(*_in_scope(bucket, account_id), DownloadSessionRow.status == DownloadStatus.DOWNLOADING.value)
        )
        with self._db.session() as session:
            return int(session.scalar(statement) or 0)

    def transition(
        self,
        task_id: str,
        status: DownloadStatus,
        *,
        expected: Optional[Iterable[DownloadStatus]] = None,
        error: Optional[str] = None,
        **fields: Any,
    ) -> bool:
        """Set ``status`` on a task, optionally only from the ``expected`` statuses.

        Returns:
            bool: Whether a row was updated.
        """
        for name in fields:
            if name not in _COLUMNS:
                raise ValueError(f"Unknown download_sessions column: {name}")
        statement = update(DownloadSessionRow).where(DownloadSessionRow.id == task_id)
        if expected is not None:
            statement = statement.where(DownloadSessionRow.status.in_(_status_values(expected)))
        values = {**fields, "status": status.value, "error": error, "updated_at": int(time.time())}
        with self._db.session() as session:
            return session.execute(statement.values(**values)).rowcount > 0

    def set_status_where(
        self,
        bucket: str,
        account_id: str,
        status: DownloadStatus,
        current: Iterable[DownloadStatus],
    ) -> list[str]:
        """Move every matching task of a scope to ``status``; return their ids."""
        conditions = (*_in_scope(bucket, account_id), DownloadSessionRow.status.in_(_status_values(current)))
        with self._db.session() as session:
            ids = list(session.scalars(select(DownloadSessionRow.id).where(*conditions)))
            session.execute(
                update(DownloadSessionRow)
                .where(*conditions)
                .values(status=status.value, updated_at=int(time.time()))
            )
        return ids

    def update_fields(self, task_id: str, **fields: Any) -> None:
        for name in fields:
            if name not in _COLUMNS or name in {"id", "status"}:
                raise ValueError(f"Column cannot be updated directly: {name}")
        with self._db.session() as session:
            session.execute(
                update(DownloadSessionRow)
                .where(DownloadSessionRow.id == task_id)
                .values(**fields, updated_at=int(time.time()))
            )

    def delete(self, task_ids: Iterable[str]) -> None:
        ids = list(task_ids)
        if not ids:
            return
        with self._db.session() as session:
            session.execute(delete(DownloadSessionRow).where(DownloadSessionRow.id.in_(ids)))

    def delete_where(self, bucket: str, account_id: str, statuses: Iterable[DownloadStatus]) -> list[str]:
        conditions = (*_in_scope(bucket, account_id), DownloadSessionRow.status.in_(_status_values(statuses)))
        with self._db.session() as session:
            ids = list(session.scalars(select(DownloadSessionRow.id).where(*conditions)))
            self.delete(ids)
        return ids

    def pause_in_progress(self) -> list[str]:
        """Park every ``downloading`` task as ``paused``; used at startup."""
        running = DownloadSessionRow.status == DownloadStatus.DOWNLOADING.value
        with self._db.session() as session:
            ids = list(session.scalars(select(DownloadSessionRow.id).where(running)))
            session.execute(
                update(DownloadSessionRow)
                .where(running)
                .values(status=DownloadStatus.PAUSED.value, updated_at=int(time.time()))
            )
        return ids


__all__ = ["DownloadSessionRepository"]
