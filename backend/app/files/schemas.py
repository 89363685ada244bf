"""Pydantic schemas for file metadata records.

A FileRecord is written once an upload has been assembled in the object
store.  It carries the display name, size and content type declared by the
client together with the storage key and object URL of the final object.
"""
import uuid
from datetime import datetime, timezone

from pydantic import BaseModel, ConfigDict, Field
from pydantic.alias_generators import to_camel


class FileRecordCreate(BaseModel):
    """Attributes needed to create a file record."""
    name: str = Field(..., min_length=1, description="Original filename")
    size: int = Field(..., ge=0, description="File size in bytes")
    key: str = Field(..., min_length=1, description="Object store key")
    url: str = Field(..., description="Object URL")
    type: str = Field(..., description="MIME type of the file")


class FileRecord(BaseModel):
    """Persisted file metadata."""
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)

    id: str = Field(default_factory=lambda: str(uuid.uuid4()), description="Unique file ID")
    owner_id: str = Field(..., description="Principal who owns the file")
    name: str = Field(..., description="Original filename")
    size: int = Field(..., description="File size in bytes")
    key: str = Field(..., description="Object store key")
    url: str = Field(..., description="Object URL")
    type: str = Field(..., description="MIME type")
    starred: bool = Field(default=False)
    is_deleted: bool = Field(default=False)
    created_at: datetime = Field(default_factory=lambda: datetime.now(timezone.utc))
