"""Persistence of move tasks and their multipart checkpoints."""

from __future__ import annotations

import time
from typing import Any, Iterable, Optional, Sequence

from sqlalchemy import delete, func, select, update

from bucketdock.cache.database import Database
from bucketdock.cache.tables import MovePartRow, MoveSessionRow
from bucketdock.providers.models import UploadedPart

from .errors import MoveTaskNotFoundError
from .models import ACTIVE_STATUSES, IN_PROGRESS_STATUSES, TERMINAL_STATUSES, MoveStatus, MoveTask

_COLUMNS = frozenset(column.name for column in MoveSessionRow.__table__.columns)


def _status_values(statuses: Iterable[MoveStatus]) -> list[str]:
    return sorted(status.value for status in statuses)


def _to_task(row: MoveSessionRow) -> MoveTask:
    return MoveTask.model_validate(row, from_attributes=True)


def _in_queue(source_bucket: str, source_account_id: str) -> tuple:
    return (
        MoveSessionRow.source_bucket == source_bucket,
        MoveSessionRow.source_account_id == source_account_id,
    )


class MoveSessionRepository:
    """CRUD for ``move_sessions`` rows.

    Status transitions that race with the scheduler are conditional updates
    so a row is only moved out of the state the caller observed.
    """

    def __init__(self, database: Database) -> None:
        self._db = database

    @property
    def database(self) -> Database:
        return self._db

    def insert(self, tasks: Sequence[MoveTask]) -> None:
        with self._db.session() as session:
            session.add_all(MoveSessionRow(**task.model_dump(mode="json")) for task in tasks)

    def get(self, task_id: str) -> MoveTask:
        task = self.find(task_id)
        if task is None:
            raise MoveTaskNotFoundError(f"Unknown move task: {task_id}")
        return task

    def find(self, task_id: str) -> Optional[MoveTask]:
        with self._db.session() as session:
            row = session.get(MoveSessionRow, task_id, populate_existing=True)
            return _to_task(row) if row else None

    def _list(self, *conditions: Any, order_by: Sequence[Any] = (), limit: Optional[int] = None) -> list[MoveTask]:
        statement = select(MoveSessionRow).where(*conditions)
        statement = statement.order_by(*(order_by or (MoveSessionRow.created_at, MoveSessionRow.id)))
        if limit is not None:
            statement = statement.limit(limit)
        with self._db.session() as session:
            return [_to_task(row) for row in session.scalars(statement)]

    def list_for_source(self, source_bucket: str, source_account_id: str) -> list[MoveTask]:
        return self._list(*_in_queue(source_bucket, source_account_id))

    def list_unfinished(self) -> list[MoveTask]:
        """Return every task that is not in a terminal status."""
        return self._list(MoveSessionRow.status.not_in(_status_values(TERMINAL_STATUSES)))

    def list_pending(self, source_bucket: str, source_account_id: str, limit: int) -> list[MoveTask]:
        return self._list(
            *_in_queue(source_bucket, source_account_id),
            MoveSessionRow.status == MoveStatus.PENDING.value,
            limit=limit,
        )

    def list_cleanup_pending(self, max_attempts: int) -> list[MoveTask]:
        return self._list(
            MoveSessionRow.status == MoveStatus.SUCCESS.value,
            MoveSessionRow.delete_original.is_(True),
            MoveSessionRow.cleanup_error.is_not(None),
            MoveSessionRow.cleanup_attempts < max_attempts,
            order_by=(MoveSessionRow.updated_at,),
        )

    def _count(self, *conditions: Any) -> int:
        with self._db.session() as session:
            return int(session.scalar(select(func.count()).select_from(MoveSessionRow).where(*conditions)) or 0)

    def count_active(self) -> int:
        """Return the number of tasks holding a concurrency slot, across all queues."""
        return self._count(
            MoveSessionRow.status.in_(_status_values(ACTIVE_STATUSES)), MoveSessionRow.progress < 100
        )

    def count_in_progress(self, source_bucket: str, source_account_id: str) -> int:
        return self._count(
            *_in_queue(source_bucket, source_account_id),
            MoveSessionRow.status.in_(_status_values(IN_PROGRESS_STATUSES)),
        )

    def transition(
        self,
        task_id: str,
        status: MoveStatus,
        *,
        expected: Optional[Iterable[MoveStatus]] = None,
        error: Optional[str] = None,
        **fields: Any,
    ) -> bool:
        """Set ``status`` (and optional extra columns) on a task.

        Args:
            task_id: Task to update.
            status: New status.
            expected: When given, only update rows currently in one of these statuses.
            error: Error message stored alongside the status (cleared when ``None``).
            **fields: Additional column values (``progress``, ``transferred_bytes``...).

        Returns:
            bool: Whether a row was updated.
        """
        for name in fields:
            if name not in _COLUMNS:
                raise ValueError(f"Unknown move_sessions column: {name}")
        statement = update(MoveSessionRow).where(MoveSessionRow.id == task_id)
        if expected is not None:
            statement = statement.where(MoveSessionRow.status.in_(_status_values(expected)))
        values = {**fields, "status": status.value, "error": error, "updated_at": int(time.time())}
        with self._db.session() as session:
            return session.execute(statement.values(**values)).rowcount > 0

    def set_status_where(
        self,
        source_bucket: str,
        source_account_id: str,
        status: MoveStatus,
        current: Iterable[MoveStatus],
    ) -> list[str]:
        """Move every matching task of a source queue to ``status``; return their ids."""
        conditions = (
            *_in_queue(source_bucket, source_account_id),
            MoveSessionRow.status.in_(_status_values(current)),
        )
        with self._db.session() as session:
            ids = list(session.scalars(select(MoveSessionRow.id).where(*conditions)))
            session.execute(
                update(MoveSessionRow)
                .where(*conditions)
                .values(status=status.value, updated_at=int(time.time()))
            )
        return ids

    def update_progress(self, task_id: str, progress: int, transferred_bytes: int) -> None:
        with self._db.session() as session:
            session.execute(
                update(MoveSessionRow)
                .where(MoveSessionRow.id == task_id)
                .values(progress=progress, transferred_bytes=transferred_bytes, updated_at=int(time.time()))
            )

    def update_fields(self, task_id: str, **fields: Any) -> None:
        for name in fields:
            if name not in _COLUMNS or name in {"id", "status"}:
                raise ValueError(f"Column cannot be updated directly: {name}")
        with self._db.session() as session:
            session.execute(
                update(MoveSessionRow)
                .where(MoveSessionRow.id == task_id)
                .values(**fields, updated_at=int(time.time()))
            )

    def delete(self, task_ids: Iterable[str]) -> None:
        ids = list(task_ids)
        if not ids:
            return
        with self._db.session() as session:
            session.execute(delete(MovePartRow).where(MovePartRow.task_id.in_(ids)))
            session.execute(delete(MoveSessionRow).where(MoveSessionRow.id.in_(ids)))

    def delete_where(
        self, source_bucket: str, source_account_id: str, statuses: Iterable[MoveStatus]
    ) -> list[str]:
        with self._db.session() as session:
            ids = list(
                session.scalars(
                    select(MoveSessionRow.id).where(
                        *_in_queue(source_bucket, source_account_id),
                        MoveSessionRow.status.in_(_status_values(statuses)),
                    )
                )
            )
            self.delete(ids)
        return ids

    def pause_in_progress(self) -> list[str]:
        """Park every in-progress task as ``paused``; used at startup."""
        in_progress = MoveSessionRow.status.in_(_status_values(IN_PROGRESS_STATUSES))
        with self._db.session() as session:
            ids = list(session.scalars(select(MoveSessionRow.id).where(in_progress)))
            session.execute(
                update(MoveSessionRow)
                .where(in_progress)
                .values(status=MoveStatus.PAUSED.value, updated_at=int(time.time()))
            )
        return ids

    # Multipart checkpoints ------------------------------------------------

    def save_part(self, task_id: str, part: UploadedPart) -> None:
        with self._db.session() as session:
            session.merge(MovePartRow(task_id=task_id, part_number=part.part_number, etag=part.etag))

    def get_parts(self, task_id: str) -> list[UploadedPart]:
        with self._db.session() as session:
            rows = session.scalars(
                select(MovePartRow).where(MovePartRow.task_id == task_id).order_by(MovePartRow.part_number)
            )
            return [UploadedPart(part_number=row.part_number, etag=row.etag) for row in rows]

    def clear_parts(self, task_id: str) -> None:
        with self._db.session() as session:
            session.execute(delete(MovePartRow).where(MovePartRow.task_id == task_id))
            session.execute(
                update(MoveSessionRow).where(MoveSessionRow.id == task_id).values(upload_id=None)
            )


__all__ = ["MoveSessionRepository"]
