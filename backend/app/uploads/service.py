"""UploadCoordinator: server side of resumable chunked uploads.

Every public method is one stateless request: it reads what it needs from
the session store, talks to the object store where required, and writes
back.  Nothing is remembered in-process between calls, so any worker can
serve any request of any upload.

Flow for one file::

    initiate            -> opens a multipart upload, stores the session
    get_chunk_target    -> presigned PUT URL for part chunk_index + 1
    mark_chunk_uploaded -> records the part's ETag (last write wins)
    complete            -> assembles all parts, publishes the file record
    cancel              -> aborts the multipart upload, drops the session

Object-store calls always happen before any local mutation they depend on,
so a ``StoreUnavailable`` leaves the session exactly as it was.
"""
import logging
import re
from datetime import datetime, timedelta
from typing import Callable, Optional

from app.files.schemas import FileRecordCreate
from app.files.service import FileMetadataService

from .errors import (
    AlreadyFinalized,
    Forbidden,
    IncompleteUpload,
    InvalidUpload,
    OutOfRange,
    SessionNotFound,
    Unauthorized,
)
from .object_store import ObjectStore
from .schemas import (
    DEFAULT_CONTENT_TYPE,
    CancelUploadResponse,
    ChunkAck,
    ChunkTarget,
    CompleteUploadResponse,
    InitiateUploadResponse,
    PartRecord,
    UploadSession,
    UploadStatus,
    UploadStatusResponse,
    utcnow,
)
from .session_store import SessionStore

logger = logging.getLogger(__name__)

DEFAULT_SESSION_TTL = 3600
DEFAULT_MAX_CHUNKS = 10_000

_ACTIVE = [UploadStatus.INITIATED, UploadStatus.IN_PROGRESS]
_UNSAFE_KEY_CHARS = re.compile(r"[/\\\x00-\x1f]")

# ---------------------------------------------------------------------------
# Singleton
# ---------------------------------------------------------------------------

_coordinator: Optional["UploadCoordinator"] = None


def get_coordinator() -> Optional["UploadCoordinator"]:
    """Return the global UploadCoordinator, or None if not yet initialised."""
    return _coordinator


def set_coordinator(coordinator: Optional["UploadCoordinator"]) -> None:
    """Set (or replace) the global UploadCoordinator instance."""
    global _coordinator
    _coordinator = coordinator


def build_object_key(owner_id: str, file_name: str, now: datetime) -> str:
    """``owner/timestamp-filename`` with path separators removed from the name."""
    safe_name = _UNSAFE_KEY_CHARS.sub("_", file_name).strip() or "unnamed"
    return f"{owner_id}/{int(now.timestamp() * 1000)}-{safe_name}"


# ---------------------------------------------------------------------------
# Service
# ---------------------------------------------------------------------------


class UploadCoordinator:
    """Coordinates multipart uploads between clients and the object store.

    Args:
        session_store: Persistence for session state (shared by all workers).
        object_store: Multipart-capable object store client.
        metadata: File metadata collaborator the finalizer publishes to.
        session_ttl_seconds: Lease length of a new session.
        part_url_expiry_seconds: Lifetime of an issued chunk target.
        max_chunks: Upper bound on ``total_chunks`` (object-store part limit).
        clock: Returns the current UTC time; injectable for tests.
    """

    def __init__(
        self,
        session_store: SessionStore,
        object_store: ObjectStore,
        metadata: FileMetadataService,
        session_ttl_seconds: int = DEFAULT_SESSION_TTL,
        part_url_expiry_seconds: int = 3600,
        max_chunks: int = DEFAULT_MAX_CHUNKS,
        clock: Callable[[], datetime] = utcnow,
    ) -> None:
        self._sessions = session_store
        self._objects = object_store
        self._metadata = metadata
        self._ttl = timedelta(seconds=session_ttl_seconds)
        self._part_url_expiry = part_url_expiry_seconds
        self._max_chunks = max_chunks
        self._clock = clock

    @property
    def session_store(self) -> SessionStore:
        return self._sessions

    @property
    def object_store(self) -> ObjectStore:
        return self._objects

    # -----------------------------------------------------------------------
    # Session manager
    # -----------------------------------------------------------------------

    def initiate(
        self,
        owner_id: Optional[str],
        file_name: str,
        file_size: int,
        total_chunks: int,
        content_type: Optional[str] = None,
    ) -> InitiateUploadResponse:
        """Open a multipart upload and persist its session.

        Raises:
            Unauthorized: No owner.
            InvalidUpload: Bad declared size, chunk count or name.
            StoreUnavailable: The multipart upload could not be opened.
        """
        if not owner_id:
            raise Unauthorized("Upload requires an authenticated owner")
        if not file_name or not file_name.strip():
            raise InvalidUpload("fileName must not be empty")
        if file_size < 0:
            raise InvalidUpload("fileSize must be >= 0")
        if total_chunks < 1:
            raise InvalidUpload("totalChunks must be >= 1")
        if total_chunks > self._max_chunks:
            raise InvalidUpload(f"totalChunks must be <= {self._max_chunks}")

        now = self._clock()
        content_type = content_type or DEFAULT_CONTENT_TYPE
        object_key = build_object_key(owner_id, file_name, now)

        upload_id = self._objects.create_multipart_upload(object_key, content_type)
        session = UploadSession(
            session_id=upload_id,
            owner_id=owner_id,
            object_key=object_key,
            file_name=file_name,
            file_size=file_size,
            content_type=content_type,
            total_chunks=total_chunks,
            status=UploadStatus.INITIATED,
            created_at=now,
            updated_at=now,
            lease_expiry=now + self._ttl,
        )
        try:
            self._sessions.create(session)
        except Exception:
            logger.error("Failed to persist session %s; aborting multipart upload", upload_id)
            self._abort_quietly(object_key, upload_id)
            raise

        logger.info(
            "Initiated upload session %s for %s (%d chunks, %d bytes) key=%s",
            upload_id, owner_id, total_chunks, file_size, object_key,
        )
        return InitiateUploadResponse(
            session_id=upload_id,
            object_key=object_key,
            lease_expiry=session.lease_expiry,
        )

    # -----------------------------------------------------------------------
    # Chunk target issuer
    # -----------------------------------------------------------------------

    def get_chunk_target(self, session_id: str, chunk_index: int, principal: Optional[str]) -> ChunkTarget:
        """Issue a presigned write target for one chunk."""
        session = self._load(session_id, principal)
        self._check_index(session, chunk_index)
        target = self._objects.issue_part_target(
            session.object_key,
            session.session_id,
            chunk_index + 1,
            expires_in=self._part_url_expiry,
        )
        logger.debug("Issued target for session %s chunk %d", session_id, chunk_index)
        return target

    # -----------------------------------------------------------------------
    # Completion tracker
    # -----------------------------------------------------------------------

    def mark_chunk_uploaded(
        self,
        session_id: str,
        chunk_index: int,
        proof_token: str,
        principal: Optional[str],
    ) -> ChunkAck:
        """Record the ETag of an uploaded chunk; repeated calls overwrite."""
        session = self._load(session_id, principal)
        self._check_index(session, chunk_index)

        token = (proof_token or "").strip().strip('"')
        if not token:
            raise InvalidUpload("etag must not be empty")

        part = PartRecord(part_number=chunk_index + 1, proof_token=token)
        recorded = self._sessions.put_part(session_id, chunk_index, part)
        if recorded is None:
            # Completed, cancelled or deleted since _load.
            raise self._gone(session_id)

        logger.info(
            "Chunk %d/%d acknowledged for session %s",
            chunk_index + 1, session.total_chunks, session_id,
        )
        return ChunkAck(
            session_id=session_id,
            chunk_index=chunk_index,
            part_number=part.part_number,
            uploaded_chunks=recorded,
            total_chunks=session.total_chunks,
        )

    # -----------------------------------------------------------------------
    # Finalizer
    # -----------------------------------------------------------------------

    def complete(
        self,
        session_id: str,
        principal: Optional[str],
        file_name: Optional[str] = None,
    ) -> CompleteUploadResponse:
        """Assemble all parts and publish the file record.

        Raises:
            IncompleteUpload: Some chunk has no recorded part; session unchanged.
            StoreUnavailable: Assembly failed; session unchanged, retry is safe.
            AlreadyFinalized: Another request finalized or cancelled it first.
        """
        session = self._load(session_id, principal)
        missing = session.missing_chunks()
        if missing:
            logger.info("Session %s cannot complete; missing chunks %s", session_id, missing[:20])
            raise IncompleteUpload(session_id, missing)

        parts = session.sorted_parts()
        ref = self._objects.complete_multipart_upload(session.object_key, session.session_id, parts)

        # Only one completer may publish the file record.
        if not self._sessions.transition(session_id, UploadStatus.COMPLETED, expected=_ACTIVE):
            raise self._gone(session_id)

        try:
            record = self._metadata.create_file_record(
                session.owner_id,
                FileRecordCreate(
                    name=(file_name or "").strip() or session.file_name,
                    size=session.file_size,
                    key=session.object_key,
                    url=ref.location,
                    type=session.content_type,
                ),
            )
            self._metadata.link_file_to_owner(session.owner_id, record.id)
        except Exception:
            # Reopen the session so the caller can retry; S3 completion is idempotent.
            logger.error("Publishing file record for session %s failed; reopening it", session_id)
            self._sessions.transition(
                session_id, UploadStatus.IN_PROGRESS, expected=[UploadStatus.COMPLETED]
            )
            raise
        self._sessions.delete(session_id)

        logger.info(
            "Completed upload session %s -> file %s (%d parts, key=%s)",
            session_id, record.id, len(parts), session.object_key,
        )
        return CompleteUploadResponse(file=record, part_count=len(parts))

    # -----------------------------------------------------------------------
    # Cancellation
    # -----------------------------------------------------------------------

    def cancel(self, session_id: str, principal: Optional[str]) -> CancelUploadResponse:
        """Abort the upload and drop the session.  Unknown sessions are a no-op."""
        if not principal:
            raise Unauthorized("Cancel requires an authenticated principal")
        session = self._sessions.get(session_id)
        if session is not None and session.is_expired(self._clock()):
            # Expired leases count as absent; clean up on the owner's behalf.
            if session.owner_id == principal:
                self._abort_quietly(session.object_key, session.session_id)
                self._sessions.delete(session_id)
            session = None
        if session is None:
            return CancelUploadResponse(
                session_id=session_id,
                cancelled=False,
                message="No such upload session; nothing to cancel",
            )
        if session.owner_id != principal:
            raise Forbidden(f"Upload session {session_id} belongs to another user")

        if session.status != UploadStatus.COMPLETED:
            self._objects.abort_multipart_upload(session.object_key, session.session_id)
            self._sessions.transition(session_id, UploadStatus.CANCELLED, expected=_ACTIVE)
        self._sessions.delete(session_id)

        logger.info("Cancelled upload session %s", session_id)
        return CancelUploadResponse(
            session_id=session_id,
            cancelled=True,
            message="Upload cancelled",
        )

    # -----------------------------------------------------------------------
    # Status
    # -----------------------------------------------------------------------

    def get_status(self, session_id: str, principal: Optional[str]) -> UploadStatusResponse:
        """Report which chunk indices are already acknowledged."""
        session = self._load(session_id, principal, allow_terminal=True)
        return UploadStatusResponse(
            session_id=session.session_id,
            object_key=session.object_key,
            status=session.status,
            total_chunks=session.total_chunks,
            uploaded_chunks=sorted(session.parts),
            missing_chunks=session.missing_chunks(),
            lease_expiry=session.lease_expiry,
        )

    # -----------------------------------------------------------------------
    # Internal
    # -----------------------------------------------------------------------

    def _load(self, session_id: str, principal: Optional[str], allow_terminal: bool = False) -> UploadSession:
        if not principal:
            raise Unauthorized("Request requires an authenticated principal")
        session = self._sessions.get(session_id)
        if session is None or session.is_expired(self._clock()):
            raise SessionNotFound(session_id)
        if session.owner_id != principal:
            raise Forbidden(f"Upload session {session_id} belongs to another user")
        if session.status.is_terminal and not allow_terminal:
            raise AlreadyFinalized(session_id, session.status.value)
        return session

    @staticmethod
    def _check_index(session: UploadSession, chunk_index: int) -> None:
        if not 0 <= chunk_index < session.total_chunks:
            raise OutOfRange(chunk_index, session.total_chunks)

    def _gone(self, session_id: str) -> SessionNotFound:
        session = self._sessions.get(session_id)
        if session is not None and session.status.is_terminal:
            return AlreadyFinalized(session_id, session.status.value)
        return SessionNotFound(session_id)

    def _abort_quietly(self, object_key: str, upload_id: str) -> None:
        try:
            self._objects.abort_multipart_upload(object_key, upload_id)
        except Exception as exc:
            logger.warning("Abort of %s failed; the reaper will retry: %s", upload_id, exc)
