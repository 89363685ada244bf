"""File metadata module for ChunkVault.

Finalized uploads are recorded here: one FileRecord per assembled object,
linked to the owner's file set.  Metadata is tracked in DuckDB.
"""

from .schemas import FileRecord, FileRecordCreate
from .service import FileMetadataService

__all__ = [
    "FileRecord",
    "FileRecordCreate",
    "FileMetadataService",
]
