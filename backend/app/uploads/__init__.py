"""Resumable chunked upload coordinator.

Splits large uploads into independently transmitted parts, tracks which
parts have landed in the object store, and assembles them exactly once.
Chunk bytes go straight from the client to the object store through
presigned URLs; this module only handles bookkeeping.
"""

from .errors import (
    AlreadyFinalized,
    Forbidden,
    IncompleteUpload,
    InvalidUpload,
    OutOfRange,
    SessionNotFound,
    StoreUnavailable,
    Unauthorized,
    UploadError,
)
from .schemas import PartRecord, UploadSession, UploadStatus
from .service import UploadCoordinator, get_coordinator, set_coordinator

__all__ = [
    "AlreadyFinalized",
    "Forbidden",
    "IncompleteUpload",
    "InvalidUpload",
    "OutOfRange",
    "SessionNotFound",
    "StoreUnavailable",
    "Unauthorized",
    "UploadError",
    "PartRecord",
    "UploadSession",
    "UploadStatus",
    "UploadCoordinator",
    "get_coordinator",
    "set_coordinator",
]
