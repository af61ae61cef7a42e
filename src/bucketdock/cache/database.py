"""SQLite engine and session handling shared by every persistent component."""

from __future__ import annotations

import logging
import threading
from contextlib import contextmanager
from pathlib import Path
from typing import Iterator, Optional

from sqlalchemy import create_engine, event
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session, sessionmaker
from sqlalchemy.pool import StaticPool

from .errors import CacheError
from .tables import Base

LOGGER = logging.getLogger(__name__)

MEMORY = ":memory:"


class Database:
    """Serialized access to one SQLite database through SQLAlchemy sessions.

    All work runs on a single pooled connection under a re-entrant lock.
    ``session()`` blocks may nest: inner blocks join the outer session and
    only the outermost block commits (or rolls back).
    """

    def __init__(self, path: Path | str = MEMORY) -> None:
        """Open (and create if needed) the database.

        Args:
            path: Database file, or ``":memory:"`` for a private in-memory database.

        Raises:
            CacheError: If the database cannot be opened or its tables created.
        """
        target = str(path)
        if target != MEMORY:
            resolved = Path(target).expanduser()
            resolved.parent.mkdir(parents=True, exist_ok=True)
            target = str(resolved)
        self._path = target
        self._lock = threading.RLock()
        self._active: Optional[Session] = None
        url = "sqlite://" if target == MEMORY else f"sqlite:///{target}"
        self._engine = create_engine(
            url,
            poolclass=StaticPool,
            connect_args={"check_same_thread": False},
        )
        event.listen(self._engine, "connect", self._configure_connection)
        try:
            Base.metadata.create_all(self._engine)
        except SQLAlchemyError as exc:
            self._engine.dispose()
            raise CacheError(f"Failed to open database at {target}: {exc}") from exc
        self._sessions = sessionmaker(bind=self._engine, expire_on_commit=False)
        LOGGER.debug("Opened database %s", target)

    def _configure_connection(self, dbapi_connection, connection_record) -> None:
        cursor = dbapi_connection.cursor()
        try:
            if self._path != MEMORY:
                cursor.execute("PRAGMA journal_mode=WAL")
            cursor.execute("PRAGMA synchronous=NORMAL")
        finally:
            cursor.close()

    @property
    def path(self) -> str:
        """Return the database location."""
        return self._path

    @contextmanager
    def session(self) -> Iterator[Session]:
        """Yield a session whose statements commit together.

        Raises:
            CacheError: If a statement or the commit fails.
        """
        with self._lock:
            if self._active is not None:
                yield self._active
                return
            session = self._sessions()
            self._active = session
            try:
                with session.begin():
                    yield session
            except SQLAlchemyError as exc:
                raise CacheError(f"Database operation failed: {exc}") from exc
            finally:
                self._active = None
                session.close()

    def close(self) -> None:
        """Release the pooled connection."""
        with self._lock:
            self._engine.dispose()


__all__ = ["Database", "MEMORY"]
