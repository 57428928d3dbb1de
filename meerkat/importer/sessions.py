"""In-memory import session store.

Sessions live in one process-wide map and are never written to disk. A
deployment with several worker processes needs sticky routing or a shared
implementation of ``ImportSessions``.
"""

from __future__ import annotations

import logging
import secrets
import threading
from collections.abc import Callable, Iterator
from contextlib import contextmanager
from datetime import datetime, timedelta
from typing import Protocol

from ..errors import NotFound
from ..models import utc_now
from .models import ColumnMapping, CsvUpload, ImportSession, RowPreview, VcfUpload

logger = logging.getLogger("meerkat.importer")

SESSION_TTL = timedelta(minutes=15)
SESSION_NOT_FOUND = "Import session expired or not found"


def new_session_id() -> str:
    """128 random bits as 32 hex characters."""
    return secrets.token_hex(16)


class RWLock:
    """Readers-writer lock: many readers or one writer."""

    def __init__(self) -> None:
        self._cond = threading.Condition()
        self._readers = 0
        self._writer = False

    @contextmanager
    def read(self) -> Iterator[None]:
        with self._cond:
            while self._writer:
                self._cond.wait()
            self._readers += 1
        try:
            yield
        finally:
            with self._cond:
                self._readers -= 1
                if self._readers == 0:
                    self._cond.notify_all()

    @contextmanager
    def write(self) -> Iterator[None]:
        with self._cond:
            while self._writer or self._readers:
                self._cond.wait()
            self._writer = True
        try:
            yield
        finally:
            with self._cond:
                self._writer = False
                self._cond.notify_all()


class ImportSessions(Protocol):
    """Storage for import sessions between upload and confirm."""

    def insert(self, user_id: int, data: CsvUpload | VcfUpload) -> ImportSession:
        """Create a session owned by ``user_id``."""
        ...

    def get(self, session_id: str, user_id: int) -> ImportSession:
        """Get a live session.

        Raises:
            NotFound: If the session is unknown, expired or owned by
                another user
        """
        ...

    def mark_previewed(
        self,
        session_id: str,
        user_id: int,
        rows: list[RowPreview],
        mappings: list[ColumnMapping] | None = None,
    ) -> ImportSession:
        """Cache preview rows on a session, enabling confirm."""
        ...

    def take(self, session_id: str, user_id: int) -> ImportSession:
        """Remove a live session and return it, so only one caller gets it.

        Raises:
            NotFound: As for ``get``, and when another caller took it first
        """
        ...

    def restore(self, session: ImportSession) -> None:
        """Put back a session taken by ``take`` whose import did not happen."""
        ...

    def delete(self, session_id: str) -> None:
        """Drop a session; unknown ids are ignored."""
        ...

    def sweep_expired(self) -> int:
        """Remove every expired session and return how many were removed."""
        ...


class MemoryImportSessions:
    """``ImportSessions`` kept in a dict guarded by a readers-writer lock."""

    def __init__(self, ttl: timedelta = SESSION_TTL, clock: Callable[[], datetime] = utc_now):
        """Initialize the store.

        Args:
            ttl: Lifetime of a session from its creation
            clock: Source of the current time
        """
        self.ttl = ttl
        self.clock = clock
        self._sessions: dict[str, ImportSession] = {}
        self._lock = RWLock()

    def __len__(self) -> int:
        with self._lock.read():
            return len(self._sessions)

    def __contains__(self, session_id: object) -> bool:
        with self._lock.read():
            return session_id in self._sessions

    def insert(self, user_id: int, data: CsvUpload | VcfUpload) -> ImportSession:
        now = self.clock()
        session = ImportSession(
            id=new_session_id(),
            user_id=user_id,
            data=data,
            created_at=now,
            expires_at=now + self.ttl,
        )
        with self._lock.write():
            self._sessions[session.id] = session
        return session

    def get(self, session_id: str, user_id: int) -> ImportSession:
        with self._lock.read():
            session = self._sessions.get(session_id)
        if session is None:
            raise NotFound(SESSION_NOT_FOUND)
        if self.clock() > session.expires_at:
            self._drop_if_expired(session_id)
            raise NotFound(SESSION_NOT_FOUND)
        if session.user_id != user_id:
            raise NotFound(SESSION_NOT_FOUND)
        return session

    def mark_previewed(
        self,
        session_id: str,
        user_id: int,
        rows: list[RowPreview],
        mappings: list[ColumnMapping] | None = None,
    ) -> ImportSession:
        session = self.get(session_id, user_id)
        with self._lock.write():
            if mappings is not None:
                session.mappings = mappings
            session.preview_rows = rows
            session.preview_cached = True
        return session

    def take(self, session_id: str, user_id: int) -> ImportSession:
        now = self.clock()
        with self._lock.write():
            session = self._sessions.get(session_id)
            if session is None or session.user_id != user_id:
                raise NotFound(SESSION_NOT_FOUND)
            del self._sessions[session_id]
        if now > session.expires_at:
            raise NotFound(SESSION_NOT_FOUND)
        return session

    def restore(self, session: ImportSession) -> None:
        with self._lock.write():
            self._sessions.setdefault(session.id, session)

    def delete(self, session_id: str) -> None:
        with self._lock.write():
            self._sessions.pop(session_id, None)

    def sweep_expired(self) -> int:
        now = self.clock()
        with self._lock.write():
            expired = [sid for sid, s in self._sessions.items() if now > s.expires_at]
            for sid in expired:
                del self._sessions[sid]
        if expired:
            logger.debug(f"Swept {len(expired)} expired import sessions")
        return len(expired)

    def _drop_if_expired(self, session_id: str) -> None:
        now = self.clock()
        with self._lock.write():
            session = self._sessions.get(session_id)
            if session is not None and now > session.expires_at:
                del self._sessions[session_id]
