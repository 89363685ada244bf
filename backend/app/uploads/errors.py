"""Error taxonomy for the chunked upload coordinator.

Every error raised by the coordinator derives from ``UploadError`` and
carries the HTTP status and machine-readable code the router renders.
All of them are per-request and recoverable: validation errors are raised
before any state is touched, and ``StoreUnavailable`` is raised before any
local mutation, so the caller may simply retry.
"""
from typing import List, Optional


class UploadError(Exception):
    """Base class for coordinator errors."""

    status_code: int = 400
    code: str = "upload_error"

    def __init__(self, message: str = "") -> None:
        super().__init__(message or self.code)
        self.message = message or self.code

    def to_dict(self) -> dict:
        return {"error": self.code, "detail": self.message}


class Unauthorized(UploadError):
    """No principal, or the presented credential is invalid."""
    status_code = 401
    code = "unauthorized"


class InvalidUpload(UploadError):
    """Declared upload parameters fail validation."""
    status_code = 422
    code = "invalid_request"


class Forbidden(UploadError):
    """The principal does not own the session."""
    status_code = 403
    code = "forbidden"


class SessionNotFound(UploadError):
    """The session is absent, expired, or terminal."""
    status_code = 404
    code = "session_not_found"

    def __init__(self, session_id: str, message: Optional[str] = None) -> None:
        super().__init__(message or f"Upload session {session_id} not found")
        self.session_id = session_id


class AlreadyFinalized(SessionNotFound):
    """The session exists but is completed or cancelled."""
    status_code = 409
    code = "already_finalized"

    def __init__(self, session_id: str, status: str) -> None:
        super().__init__(session_id, f"Upload session {session_id} is already {status}")
        self.status = status


class OutOfRange(UploadError):
    """Chunk index outside ``[0, total_chunks)``."""
    status_code = 400
    code = "out_of_range"

    def __init__(self, chunk_index: int, total_chunks: int) -> None:
        super().__init__(
            f"Chunk index {chunk_index} out of range; must be between 0 and {total_chunks - 1}"
        )
        self.chunk_index = chunk_index
        self.total_chunks = total_chunks


class IncompleteUpload(UploadError):
    """Completion requested while some chunks have no recorded part."""
    status_code = 409
    code = "incomplete_upload"

    def __init__(self, session_id: str, missing: List[int]) -> None:
        preview = missing[:20]
        suffix = "..." if len(missing) > len(preview) else ""
        super().__init__(
            f"Upload session {session_id} is missing {len(missing)} chunk(s): {preview}{suffix}"
        )
        self.session_id = session_id
        self.missing = missing


class StoreUnavailable(UploadError):
    """An object-store call failed; the operation can be retried as-is."""
    status_code = 503
    code = "store_unavailable"
