"""Pydantic schemas for the chunked upload coordinator.

This module defines the data models for resumable multipart uploads:
- UploadSession: the coordination record held in the session store
- PartRecord: one acknowledged chunk (part number + ETag proof token)
- Request/response bodies for the /file upload endpoints

Chunk indices are 0-based (client view); part numbers are 1-based (object
store view), always ``part_number = chunk_index + 1``.

JSON bodies use camelCase keys (``uploadId``, ``chunkIndex`` ...) while the
Python attributes stay snake_case; every model accepts either form on input.
"""
from datetime import datetime, timezone
from enum import Enum
from typing import Dict, List, Optional

from pydantic import BaseModel, ConfigDict, Field
from pydantic.alias_generators import to_camel

from app.files.schemas import FileRecord

DEFAULT_CONTENT_TYPE = "application/octet-stream"


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


class UploadStatus(str, Enum):
    """Lifecycle states of an upload session.

    COMPLETED and CANCELLED are terminal: no chunk targets are issued and
    no acknowledgments are accepted once a session reaches either.
    """
    INITIATED = "initiated"
    IN_PROGRESS = "in_progress"
    COMPLETED = "completed"
    CANCELLED = "cancelled"

    @property
    def is_terminal(self) -> bool:
        return self in (UploadStatus.COMPLETED, UploadStatus.CANCELLED)


class _CamelModel(BaseModel):
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)


class PartRecord(_CamelModel):
    """A completed chunk's proof of write."""
    part_number: int = Field(..., ge=1)
    proof_token: str = Field(..., alias="etag", min_length=1)

    def to_s3(self) -> dict:
        return {"PartNumber": self.part_number, "ETag": self.proof_token}


class UploadSession(BaseModel):
    """Coordination record for one multipart upload.

    ``session_id`` is the object store's multipart UploadId and
    ``object_key`` the derived storage key; both are fixed at creation.
    ``parts`` maps chunk index to the latest acknowledged part for it.
    """
    session_id: str
    owner_id: str
    object_key: str
    file_name: str
    file_size: int = Field(..., ge=0)
    content_type: str = DEFAULT_CONTENT_TYPE
    total_chunks: int = Field(..., ge=1)
    status: UploadStatus = UploadStatus.INITIATED
    created_at: datetime = Field(default_factory=utcnow)
    updated_at: datetime = Field(default_factory=utcnow)
    lease_expiry: datetime
    parts: Dict[int, PartRecord] = Field(default_factory=dict)

    def is_expired(self, now: Optional[datetime] = None) -> bool:
        return (now or utcnow()) >= self.lease_expiry

    def missing_chunks(self) -> List[int]:
        return [i for i in range(self.total_chunks) if i not in self.parts]

    def sorted_parts(self) -> List[PartRecord]:
        """Recorded parts in ascending part-number order."""
        return sorted(self.parts.values(), key=lambda p: p.part_number)


# ---------------------------------------------------------------------------
# Requests
# ---------------------------------------------------------------------------


class InitiateUploadRequest(_CamelModel):
    file_name: str = Field(..., min_length=1, max_length=1024)
    file_size: int = Field(..., ge=0)
    total_chunks: int = Field(..., ge=1)
    content_type: Optional[str] = None


class ChunkTargetRequest(_CamelModel):
    session_id: str = Field(..., alias="uploadId", min_length=1)
    chunk_index: int


class MarkChunkRequest(_CamelModel):
    session_id: str = Field(..., alias="uploadId", min_length=1)
    chunk_index: int
    proof_token: str = Field(..., alias="etag", min_length=1)


class CompleteUploadRequest(_CamelModel):
    session_id: str = Field(..., alias="uploadId", min_length=1)
    file_name: Optional[str] = Field(default=None, max_length=1024)


class CancelUploadRequest(_CamelModel):
    session_id: str = Field(..., alias="uploadId", min_length=1)


# ---------------------------------------------------------------------------
# Responses
# ---------------------------------------------------------------------------


class InitiateUploadResponse(_CamelModel):
    session_id: str = Field(..., alias="uploadId")
    object_key: str = Field(..., alias="key")
    lease_expiry: datetime


class ChunkTarget(_CamelModel):
    """Short-lived, part-scoped write target handed to the client."""
    url: str
    part_number: int
    method: str = "PUT"
    expires_in: int


class ChunkAck(_CamelModel):
    session_id: str = Field(..., alias="uploadId")
    chunk_index: int
    part_number: int
    uploaded_chunks: int
    total_chunks: int


class CompleteUploadResponse(_CamelModel):
    """Finalized file descriptor returned by a successful completion."""
    message: str = "File uploaded successfully"
    file: FileRecord
    part_count: int


class CancelUploadResponse(_CamelModel):
    session_id: str = Field(..., alias="uploadId")
    cancelled: bool
    message: str


class UploadStatusResponse(_CamelModel):
    session_id: str = Field(..., alias="uploadId")
    object_key: str = Field(..., alias="key")
    status: UploadStatus
    total_chunks: int
    uploaded_chunks: List[int]
    missing_chunks: List[int]
    lease_expiry: datetime
