"""File metadata service for ChunkVault.

Tracks finalized files in DuckDB.  Two tables:
    files       : one row per stored object (name, size, key, url, type)
    owner_files : links owners to the files in their file set

The upload finalizer is the only writer; listing, starring, trashing and
sharing are handled elsewhere and read the same tables.
"""
import logging
import threading
from datetime import datetime, timezone
from typing import List, Optional

import duckdb

from .schemas import FileRecord, FileRecordCreate

logger = logging.getLogger(__name__)


class FileMetadataService:
    """Singleton service for file records and owner links."""

    _instance: Optional["FileMetadataService"] = None
    _db_path: str = "file_metadata.duckdb"

    def __init__(self, db_path: Optional[str] = None):
        """Initialize the metadata service."""
        if db_path:
            self._db_path = db_path

        self._connection: Optional[duckdb.DuckDBPyConnection] = None
        self._lock = threading.Lock()
        self._initialize_db()

    @classmethod
    def get_instance(cls, db_path: Optional[str] = None) -> "FileMetadataService":
        """Get or create the singleton instance."""
        if cls._instance is None:
            cls._instance = cls(db_path)
        return cls._instance

    @classmethod
    def reset_instance(cls) -> None:
        """Reset the singleton instance (for testing)."""
        if cls._instance:
            cls._instance.close()
        cls._instance = None

    def _get_connection(self) -> duckdb.DuckDBPyConnection:
        """Get or create database connection."""
        if self._connection is None:
            self._connection = duckdb.connect(self._db_path)
        return self._connection

    def _initialize_db(self) -> None:
        """Initialize the database schema."""
        conn = self._get_connection()
        conn.execute("""
            CREATE TABLE IF NOT EXISTS files (
                id VARCHAR PRIMARY KEY,
                owner_id VARCHAR NOT NULL,
                name VARCHAR NOT NULL,
                size BIGINT NOT NULL,
                key VARCHAR NOT NULL,
                url VARCHAR NOT NULL,
                type VARCHAR NOT NULL,
                starred BOOLEAN NOT NULL DEFAULT FALSE,
                is_deleted BOOLEAN NOT NULL DEFAULT FALSE,
                created_at TIMESTAMP NOT NULL
            )
        """)
        conn.execute("""
            CREATE TABLE IF NOT EXISTS owner_files (
                owner_id VARCHAR NOT NULL,
                file_id VARCHAR NOT NULL,
                linked_at TIMESTAMP NOT NULL,
                PRIMARY KEY (owner_id, file_id)
            )
        """)
        conn.execute("""
            CREATE INDEX IF NOT EXISTS idx_files_owner_id ON files(owner_id)
        """)

    def create_file_record(self, owner_id: str, attrs: FileRecordCreate) -> FileRecord:
        """Insert a file record for *owner_id*.

        Args:
            owner_id: Principal the file belongs to
            attrs: Name, size, key, url and content type of the file

        Returns:
            The created FileRecord (its ``id`` is the new file id)
        """
        record = FileRecord(owner_id=owner_id, **attrs.model_dump())
        with self._lock:
            self._get_connection().execute(
                """
                INSERT INTO files
                (id, owner_id, name, size, key, url, type, starred, is_deleted, created_at)
                VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
                """,
                [
                    record.id,
                    record.owner_id,
                    record.name,
                    record.size,
                    record.key,
                    record.url,
                    record.type,
                    record.starred,
                    record.is_deleted,
                    record.created_at.astimezone(timezone.utc).replace(tzinfo=None),
                ]
            )
        logger.info(
            "Created file record %s (%s, %s bytes) for %s", record.id, record.name, record.size, owner_id
        )
        return record

    def link_file_to_owner(self, owner_id: str, file_id: str) -> None:
        """Add *file_id* to the owner's file set (no-op if already linked)."""
        with self._lock:
            self._get_connection().execute(
                """
                INSERT OR IGNORE INTO owner_files (owner_id, file_id, linked_at)
                VALUES (?, ?, ?)
                """,
                [owner_id, file_id, datetime.now(timezone.utc).replace(tzinfo=None)]
            )

    def get_file(self, file_id: str) -> Optional[FileRecord]:
        """Get file metadata by ID."""
        with self._lock:
            row = self._get_connection().execute(
                """
                SELECT id, owner_id, name, size, key, url, type, starred, is_deleted, created_at
                FROM files
                WHERE id = ?
                """,
                [file_id]
            ).fetchone()

        if not row:
            return None
        return self._row_to_record(row)

    def get_owner_file_ids(self, owner_id: str) -> List[str]:
        """IDs of the files linked to *owner_id*, oldest link first."""
        with self._lock:
            rows = self._get_connection().execute(
                "SELECT file_id FROM owner_files WHERE owner_id = ? ORDER BY linked_at ASC",
                [owner_id]
            ).fetchall()
        return [r[0] for r in rows]

    def close(self) -> None:
        """Close the database connection."""
        if self._connection is not None:
            self._connection.close()
            self._connection = None

    @staticmethod
    def _row_to_record(row) -> FileRecord:
        return FileRecord(
            id=row[0],
            owner_id=row[1],
            name=row[2],
            size=row[3],
            key=row[4],
            url=row[5],
            type=row[6],
            starred=row[7],
            is_deleted=row[8],
            created_at=row[9].replace(tzinfo=timezone.utc),
        )
