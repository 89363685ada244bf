"""Session stores for upload coordination state.

The coordinator is stateless between requests; everything it needs to know
about an upload lives here.  Acknowledged parts are kept as one sub-record
per chunk index rather than inside the session row, so two acknowledgments
for different indices can never overwrite each other's work.

Two implementations:
    * DuckDBSessionStore  : persistent, file-backed (default)
    * InMemorySessionStore: process-local, used for tests and single-node dev

Both serialize access with a ``threading.Lock``: FastAPI runs the sync
coordinator calls in its thread pool and a DuckDB connection must not be
used from two threads at once.
"""
from __future__ import annotations

import logging
import threading
from abc import ABC, abstractmethod
from datetime import datetime, timezone
from typing import Dict, List, Optional

import duckdb

from .schemas import PartRecord, UploadSession, UploadStatus, utcnow

logger = logging.getLogger(__name__)

_ACTIVE = (UploadStatus.INITIATED.value, UploadStatus.IN_PROGRESS.value)


class SessionStore(ABC):
    """Keyed, TTL-aware persistence for ``UploadSession`` records."""

    @abstractmethod
    def create(self, session: UploadSession) -> None:
        """Persist a new session.  Raises ``ValueError`` if the id exists."""

    @abstractmethod
    def get(self, session_id: str) -> Optional[UploadSession]:
        """Return the session with its parts, expired or not, or None."""

    @abstractmethod
    def put_part(self, session_id: str, chunk_index: int, part: PartRecord) -> Optional[int]:
        """Upsert the part for one chunk index of an active session.

        Moves the session from ``initiated`` to ``in_progress``.

        Returns:
            Number of chunk indices with a recorded part, or None if the
            session is absent or no longer active (nothing is written).
        """

    @abstractmethod
    def transition(
        self,
        session_id: str,
        new_status: UploadStatus,
        expected: Optional[List[UploadStatus]] = None,
    ) -> bool:
        """Compare-and-set the status.  Returns False if nothing changed."""

    @abstractmethod
    def delete(self, session_id: str) -> bool:
        """Remove a session and its parts.  Returns False if absent."""

    @abstractmethod
    def list_expired(self, now: Optional[datetime] = None) -> List[UploadSession]:
        """Sessions whose lease has passed (parts not loaded)."""

    @abstractmethod
    def exists(self, session_id: str) -> bool:
        """True if a record exists for *session_id*, expired or not."""

    def close(self) -> None:
        """Release resources held by the store."""


# ---------------------------------------------------------------------------
# DuckDB
# ---------------------------------------------------------------------------

_CREATE_SESSIONS = """
CREATE TABLE IF NOT EXISTS upload_sessions (
    session_id   VARCHAR PRIMARY KEY,
    owner_id     VARCHAR NOT NULL,
    object_key   VARCHAR NOT NULL,
    file_name    VARCHAR NOT NULL,
    file_size    BIGINT NOT NULL,
    content_type VARCHAR NOT NULL,
    total_chunks INTEGER NOT NULL,
    status       VARCHAR NOT NULL,
    created_at   TIMESTAMP NOT NULL,
    updated_at   TIMESTAMP NOT NULL,
    lease_expiry TIMESTAMP NOT NULL
)
"""

_CREATE_PARTS = """
CREATE TABLE IF NOT EXISTS upload_parts (
    session_id  VARCHAR NOT NULL,
    chunk_index INTEGER NOT NULL,
    part_number INTEGER NOT NULL,
    proof_token VARCHAR NOT NULL,
    updated_at  TIMESTAMP NOT NULL,
    PRIMARY KEY (session_id, chunk_index)
)
"""

_INDEX = "CREATE INDEX IF NOT EXISTS idx_upload_sessions_lease ON upload_sessions(lease_expiry)"

_SESSION_COLUMNS = [
    "session_id", "owner_id", "object_key", "file_name", "file_size",
    "content_type", "total_chunks", "status", "created_at", "updated_at",
    "lease_expiry",
]


def _to_db(dt: datetime) -> datetime:
    """Naive UTC, as stored in TIMESTAMP columns."""
    if dt.tzinfo is None:
        return dt
    return dt.astimezone(timezone.utc).replace(tzinfo=None)


def _from_db(dt: datetime) -> datetime:
    return dt.replace(tzinfo=timezone.utc)


class DuckDBSessionStore(SessionStore):
    """DuckDB-backed session store with per-chunk part rows."""

    def __init__(self, db_path: str = "upload_sessions.duckdb") -> None:
        self._db_path = db_path
        self._lock = threading.Lock()
        self._conn = duckdb.connect(db_path)
        self._conn.execute(_CREATE_SESSIONS)
        self._conn.execute(_CREATE_PARTS)
        self._conn.execute(_INDEX)
        logger.info("[DuckDBSessionStore] Initialized with db=%s", db_path)

    def create(self, session: UploadSession) -> None:
        with self._lock:
            existing = self._conn.execute(
                "SELECT 1 FROM upload_sessions WHERE session_id = ?", [session.session_id]
            ).fetchone()
            if existing:
                raise ValueError(f"Session {session.session_id} already exists")
            self._conn.execute(
                """
                INSERT INTO upload_sessions
                  (session_id, owner_id, object_key, file_name, file_size,
                   content_type, total_chunks, status, created_at, updated_at,
                   lease_expiry)
                VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
                """,
                [
                    session.session_id,
                    session.owner_id,
                    session.object_key,
                    session.file_name,
                    session.file_size,
                    session.content_type,
                    session.total_chunks,
                    session.status.value,
                    _to_db(session.created_at),
                    _to_db(session.updated_at),
                    _to_db(session.lease_expiry),
                ],
            )
            for index, part in session.parts.items():
                self._write_part(session.session_id, index, part, session.updated_at)

    def get(self, session_id: str) -> Optional[UploadSession]:
        with self._lock:
            row = self._conn.execute(
                f"SELECT {', '.join(_SESSION_COLUMNS)} FROM upload_sessions WHERE session_id = ?",
                [session_id],
            ).fetchone()
            if row is None:
                return None
            part_rows = self._conn.execute(
                """
                SELECT chunk_index, part_number, proof_token
                FROM upload_parts
                WHERE session_id = ?
                ORDER BY chunk_index
                """,
                [session_id],
            ).fetchall()
        session = self._row_to_session(row)
        session.parts = {
            r[0]: PartRecord(part_number=r[1], proof_token=r[2]) for r in part_rows
        }
        return session

    def put_part(self, session_id: str, chunk_index: int, part: PartRecord) -> Optional[int]:
        now = utcnow()
        with self._lock:
            active = self._conn.execute(
                "SELECT status FROM upload_sessions WHERE session_id = ?", [session_id]
            ).fetchone()
            if active is None or active[0] not in _ACTIVE:
                return None
            self._write_part(session_id, chunk_index, part, now)
            self._conn.execute(
                """
                UPDATE upload_sessions
                SET status = ?, updated_at = ?
                WHERE session_id = ? AND status = ?
                """,
                [UploadStatus.IN_PROGRESS.value, _to_db(now), session_id, UploadStatus.INITIATED.value],
            )
            count = self._conn.execute(
                "SELECT COUNT(*) FROM upload_parts WHERE session_id = ?", [session_id]
            ).fetchone()[0]
        return int(count)

    def transition(
        self,
        session_id: str,
        new_status: UploadStatus,
        expected: Optional[List[UploadStatus]] = None,
    ) -> bool:
        params: list = [new_status.value, _to_db(utcnow()), session_id]
        clause = ""
        if expected:
            clause = f" AND status IN ({', '.join('?' for _ in expected)})"
            params.extend(s.value for s in expected)
        with self._lock:
            result = self._conn.execute(
                f"UPDATE upload_sessions SET status = ?, updated_at = ? "
                f"WHERE session_id = ?{clause} RETURNING session_id",
                params,
            ).fetchone()
        return result is not None

    def delete(self, session_id: str) -> bool:
        with self._lock:
            self._conn.execute("DELETE FROM upload_parts WHERE session_id = ?", [session_id])
            result = self._conn.execute(
                "DELETE FROM upload_sessions WHERE session_id = ? RETURNING session_id",
                [session_id],
            ).fetchone()
        return result is not None

    def list_expired(self, now: Optional[datetime] = None) -> List[UploadSession]:
        cutoff = _to_db(now or utcnow())
        with self._lock:
            rows = self._conn.execute(
                f"SELECT {', '.join(_SESSION_COLUMNS)} FROM upload_sessions "
                f"WHERE lease_expiry <= ? ORDER BY lease_expiry",
                [cutoff],
            ).fetchall()
        return [self._row_to_session(r) for r in rows]

    def exists(self, session_id: str) -> bool:
        with self._lock:
            row = self._conn.execute(
                "SELECT 1 FROM upload_sessions WHERE session_id = ?", [session_id]
            ).fetchone()
        return row is not None

    def close(self) -> None:
        with self._lock:
            self._conn.close()

    # -----------------------------------------------------------------------
    # Internal
    # -----------------------------------------------------------------------

    def _write_part(self, session_id: str, chunk_index: int, part: PartRecord, now: datetime) -> None:
        self._conn.execute(
            """
            INSERT OR REPLACE INTO upload_parts
              (session_id, chunk_index, part_number, proof_token, updated_at)
            VALUES (?, ?, ?, ?, ?)
            """,
            [session_id, chunk_index, part.part_number, part.proof_token, _to_db(now)],
        )

    @staticmethod
    def _row_to_session(row) -> UploadSession:
        d = dict(zip(_SESSION_COLUMNS, row))
        for key in ("created_at", "updated_at", "lease_expiry"):
            d[key] = _from_db(d[key])
        d["status"] = UploadStatus(d["status"])
        return UploadSession(**d)


# ---------------------------------------------------------------------------
# In-memory
# ---------------------------------------------------------------------------


class InMemorySessionStore(SessionStore):
    """Process-local store; sessions and parts are held in separate maps."""

    def __init__(self) -> None:
        self._sessions: Dict[str, UploadSession] = {}
        self._parts: Dict[str, Dict[int, PartRecord]] = {}
        self._lock = threading.Lock()

    def create(self, session: UploadSession) -> None:
        with self._lock:
            if session.session_id in self._sessions:
                raise ValueError(f"Session {session.session_id} already exists")
            self._sessions[session.session_id] = session.model_copy(update={"parts": {}}, deep=True)
            self._parts[session.session_id] = dict(session.parts)

    def get(self, session_id: str) -> Optional[UploadSession]:
        with self._lock:
            session = self._sessions.get(session_id)
            if session is None:
                return None
            return session.model_copy(update={"parts": dict(self._parts[session_id])}, deep=True)

    def put_part(self, session_id: str, chunk_index: int, part: PartRecord) -> Optional[int]:
        with self._lock:
            session = self._sessions.get(session_id)
            if session is None or session.status.is_terminal:
                return None
            parts = self._parts[session_id]
            parts[chunk_index] = part
            session.updated_at = utcnow()
            if session.status == UploadStatus.INITIATED:
                session.status = UploadStatus.IN_PROGRESS
            return len(parts)

    def transition(
        self,
        session_id: str,
        new_status: UploadStatus,
        expected: Optional[List[UploadStatus]] = None,
    ) -> bool:
        with self._lock:
            session = self._sessions.get(session_id)
            if session is None:
                return False
            if expected and session.status not in expected:
                return False
            session.status = new_status
            session.updated_at = utcnow()
            return True

    def delete(self, session_id: str) -> bool:
        with self._lock:
            self._parts.pop(session_id, None)
            return self._sessions.pop(session_id, None) is not None

    def list_expired(self, now: Optional[datetime] = None) -> List[UploadSession]:
        now = now or utcnow()
        with self._lock:
            expired = [s for s in self._sessions.values() if s.is_expired(now)]
            return [s.model_copy(deep=True) for s in sorted(expired, key=lambda s: s.lease_expiry)]

    def exists(self, session_id: str) -> bool:
        with self._lock:
            return session_id in self._sessions
