"""Persistence of resumable multipart upload sessions."""

from __future__ import annotations

import time
import uuid
from typing import Iterable, Optional

from sqlalchemy import delete, func, select, update

from bucketdock.cache.database import Database
from bucketdock.cache.tables import CompletedPartRow, UploadSessionRow
from bucketdock.providers.models import UploadedPart

from .errors import UploadSessionNotFoundError
from .models import (
    FINISHED_SESSION_STATUSES,
    RESUMABLE_STATUSES,
    SessionStatus,
    UploadFingerprint,
    UploadSession,
)


def _values(statuses: Iterable[SessionStatus]) -> list[str]:
    return sorted(status.value for status in statuses)


def _to_session(row: UploadSessionRow) -> UploadSession:
    return UploadSession.model_validate(row, from_attributes=True)


class UploadSessionStore:
    """CRUD for ``upload_sessions`` and their ``completed_parts``."""

    def __init__(self, database: Database) -> None:
        self._db = database

    def create_session(
        self,
        fingerprint: UploadFingerprint,
        *,
        file_path: str,
        upload_id: str,
        total_parts: int,
        content_type: Optional[str] = None,
    ) -> UploadSession:
        now = int(time.time())
        session = UploadSession(
            id=uuid.uuid4().hex,
            file_path=file_path,
            file_name=fingerprint.file_name,
            file_size=fingerprint.file_size,
            file_mtime=fingerprint.file_mtime,
            object_key=fingerprint.object_key,
            bucket=fingerprint.bucket,
            account_id=fingerprint.account_id,
            upload_id=upload_id,
            content_type=content_type,
            total_parts=total_parts,
            status=SessionStatus.PENDING,
            created_at=now,
            updated_at=now,
        )
        with self._db.session() as db:
            db.add(UploadSessionRow(**session.model_dump(mode="json")))
        return session

    def get_session(self, session_id: str) -> Optional[UploadSession]:
        with self._db.session() as db:
            row = db.get(UploadSessionRow, session_id, populate_existing=True)
            return _to_session(row) if row else None

    def find_resumable_session(self, fingerprint: UploadFingerprint) -> Optional[UploadSession]:
        """Return the most recent unfinished session matching ``fingerprint``."""
        statement = (
            select(UploadSessionRow)
            .where(
                UploadSessionRow.account_id == fingerprint.account_id,
                UploadSessionRow.bucket == fingerprint.bucket,
                UploadSessionRow.object_key == fingerprint.object_key,
                UploadSessionRow.file_name == fingerprint.file_name,
                UploadSessionRow.file_size == fingerprint.file_size,
                UploadSessionRow.file_mtime == fingerprint.file_mtime,
                UploadSessionRow.status.in_(_values(RESUMABLE_STATUSES)),
            )
            .order_by(UploadSessionRow.updated_at.desc())
            .limit(1)
        )
        with self._db.session() as db:
            row = db.scalars(statement).first()
            return _to_session(row) if row else None

    def save_completed_parts(self, session_id: str, parts: Iterable[UploadedPart]) -> None:
        parts = list(parts)
        if not parts:
            return
        with self._db.session() as db:
            for part in parts:
                db.merge(CompletedPartRow(session_id=session_id, part_number=part.part_number, etag=part.etag))
            db.execute(
                update(UploadSessionRow)
                .where(UploadSessionRow.id == session_id)
                .values(updated_at=int(time.time()))
            )

    def get_completed_parts(self, session_id: str) -> list[UploadedPart]:
        with self._db.session() as db:
            rows = db.scalars(
                select(CompletedPartRow)
                .where(CompletedPartRow.session_id == session_id)
                .order_by(CompletedPartRow.part_number)
            )
            return [UploadedPart(part_number=row.part_number, etag=row.etag) for row in rows]

    def get_session_progress(self, session_id: str) -> tuple[int, int]:
        """Return ``(completed_parts, total_parts)`` for a session.

        Raises:
            UploadSessionNotFoundError: If the session does not exist.
        """
        session = self.get_session(session_id)
        if session is None:
            raise UploadSessionNotFoundError(f"Upload session not found: {session_id}")
        with self._db.session() as db:
            count = db.scalar(
                select(func.count())
                .select_from(CompletedPartRow)
                .where(CompletedPartRow.session_id == session_id)
            )
        return (int(count or 0), session.total_parts)

    def update_session_status(self, session_id: str, status: SessionStatus) -> None:
        with self._db.session() as db:
            db.execute(
                update(UploadSessionRow)
                .where(UploadSessionRow.id == session_id)
                .values(status=status.value, updated_at=int(time.time()))
            )

    def delete_session(self, session_id: str) -> None:
        with self._db.session() as db:
            db.execute(delete(CompletedPartRow).where(CompletedPartRow.session_id == session_id))
            db.execute(delete(UploadSessionRow).where(UploadSessionRow.id == session_id))

    def get_pending_sessions(self) -> list[UploadSession]:
        statuses = _values({SessionStatus.PENDING, SessionStatus.UPLOADING})
        with self._db.session() as db:
            rows = db.scalars(
                select(UploadSessionRow)
                .where(UploadSessionRow.status.in_(statuses))
                .order_by(UploadSessionRow.updated_at.desc())
            )
            return [_to_session(row) for row in rows]

    def cleanup_old_sessions(self, max_age_days: int = 7, *, now: Optional[int] = None) -> int:
        """Delete finished sessions last touched more than ``max_age_days`` ago.

        Returns:
            int: Number of sessions removed.
        """
        cutoff = (now if now is not None else int(time.time())) - max_age_days * 86400
        with self._db.session() as db:
            ids = list(
                db.scalars(
                    select(UploadSessionRow.id).where(
                        UploadSessionRow.updated_at < cutoff,
                        UploadSessionRow.status.in_(_values(FINISHED_SESSION_STATUSES)),
                    )
                )
            )
            if ids:
                db.execute(delete(CompletedPartRow).where(CompletedPartRow.session_id.in_(ids)))
                db.execute(delete(UploadSessionRow).where(UploadSessionRow.id.in_(ids)))
        return len(ids)


__all__ = ["UploadSessionStore"]
