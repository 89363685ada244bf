"""Client-side upload driver.

Drives one file through the coordinator: initiate, then for every chunk
request a target, PUT the bytes, acknowledge the ETag, and finally complete.

State machine::

    idle -> initiating -> uploading <-> paused -> completing -> idle
                 |            |           |           |
                 +------------+-----------+-----------+--> failed / cancelled

``pause``, ``resume`` and ``cancel`` may be called from any thread while
``upload`` runs.  Workers check for them between chunks; a chunk already in
flight always finishes.  After a failure, ``retry`` asks the server which
chunks it already holds and sends only the rest.
"""
import logging
import math
import threading
from concurrent.futures import ThreadPoolExecutor
from enum import Enum
from pathlib import Path
from queue import Empty, Queue
from typing import Any, Callable, Dict, Iterable, Optional, Set, Union

from .api import CoordinatorClient

logger = logging.getLogger(__name__)

DEFAULT_CHUNK_SIZE = 5 * 1024 * 1024  # 5MB

ProgressCallback = Callable[[int, int], None]


def chunk_count(size: int, chunk_size: int = DEFAULT_CHUNK_SIZE) -> int:
    """Number of chunks for *size* bytes; an empty file still has one."""
    if chunk_size <= 0:
        raise ValueError("chunk_size must be positive")
    return max(1, math.ceil(size / chunk_size))


class DriverState(str, Enum):
    IDLE = "idle"
    INITIATING = "initiating"
    UPLOADING = "uploading"
    PAUSED = "paused"
    COMPLETING = "completing"
    CANCELLED = "cancelled"
    FAILED = "failed"


class UploadDriverError(Exception):
    """Base class for driver outcomes other than success."""


class UploadCancelled(UploadDriverError):
    """The upload was cancelled while it ran."""


class UploadFailed(UploadDriverError):
    """A chunk or the completion failed; ``retry()`` can pick it up."""

    def __init__(self, message: str, session_id: Optional[str] = None):
        super().__init__(message)
        self.session_id = session_id


class ChunkSource:
    """Random-access bytes to upload, from memory or from a file on disk."""

    def __init__(
        self,
        name: str,
        data: Optional[bytes] = None,
        path: Optional[Path] = None,
        content_type: Optional[str] = None,
    ):
        if (data is None) == (path is None):
            raise ValueError("Provide exactly one of data or path")
        self.name = name
        self.content_type = content_type
        self._data = data
        self._path = path
        self.size = len(data) if data is not None else path.stat().st_size

    @classmethod
    def from_path(cls, path: Union[str, Path], content_type: Optional[str] = None) -> "ChunkSource":
        path = Path(path)
        if not path.is_file():
            raise FileNotFoundError(f"File not found: {path}")
        return cls(path.name, path=path, content_type=content_type)

    @classmethod
    def from_bytes(cls, name: str, data: bytes, content_type: Optional[str] = None) -> "ChunkSource":
        return cls(name, data=data, content_type=content_type)

    def read(self, offset: int, length: int) -> bytes:
        if self._data is not None:
            return self._data[offset:offset + length]
        # Each read opens its own handle so workers never share a file position.
        with self._path.open("rb") as fh:
            fh.seek(offset)
            return fh.read(length)


class UploadDriver:
    """Uploads one source at a time through a ``CoordinatorClient``.

    Args:
        api:          Coordinator HTTP adapter.
        chunk_size:   Bytes per chunk (the last chunk may be shorter).
        max_workers:  Chunks transferred concurrently; 1 is sequential.
        on_progress:  Called as ``on_progress(completed, total)`` after each ack.
    """

    def __init__(
        self,
        api: CoordinatorClient,
        chunk_size: int = DEFAULT_CHUNK_SIZE,
        max_workers: int = 1,
        on_progress: Optional[ProgressCallback] = None,
    ):
        if max_workers < 1:
            raise ValueError("max_workers must be >= 1")
        self._api = api
        self._chunk_size = chunk_size
        self._max_workers = max_workers
        self._on_progress = on_progress

        self._cond = threading.Condition()
        self._state = DriverState.IDLE
        self._source: Optional[ChunkSource] = None
        self._session_id: Optional[str] = None
        self._total_chunks = 0
        self._completed: Set[int] = set()
        self._error: Optional[BaseException] = None

    # ------------------------------------------------------------------
    # Introspection
    # ------------------------------------------------------------------

    @property
    def state(self) -> DriverState:
        with self._cond:
            return self._state

    @property
    def session_id(self) -> Optional[str]:
        with self._cond:
            return self._session_id

    @property
    def total_chunks(self) -> int:
        with self._cond:
            return self._total_chunks

    @property
    def completed_chunks(self) -> int:
        with self._cond:
            return len(self._completed)

    @property
    def progress(self) -> float:
        with self._cond:
            if not self._total_chunks:
                return 0.0
            return len(self._completed) / self._total_chunks

    # ------------------------------------------------------------------
    # Public operations
    # ------------------------------------------------------------------

    def upload(self, source: ChunkSource) -> Dict[str, Any]:
        """Upload *source* from scratch and return the finalized file descriptor.

        Raises:
            UploadCancelled: ``cancel()`` was called while running.
            UploadFailed:    Initiation, a chunk, or completion failed.
        """
        total = chunk_count(source.size, self._chunk_size)
        with self._cond:
            self._require_startable()
            self._state = DriverState.INITIATING
            self._source = source
            self._session_id = None
            self._total_chunks = total
            self._completed = set()
            self._error = None

        try:
            resp = self._api.initiate(source.name, source.size, total, source.content_type)
        except Exception as exc:
            with self._cond:
                if self._state == DriverState.CANCELLED:
                    raise UploadCancelled("Upload cancelled") from exc
                self._state = DriverState.FAILED
            logger.error("Initiate failed for %s: %s", source.name, exc)
            raise UploadFailed(f"Could not initiate upload: {exc}") from exc

        session_id = resp["uploadId"]
        with self._cond:
            cancelled = self._state == DriverState.CANCELLED
            if not cancelled:
                self._session_id = session_id
                self._state = DriverState.UPLOADING
        if cancelled:
            # cancel() ran before the session id was known.
            self._cancel_remote(session_id)
            raise UploadCancelled("Upload cancelled")

        logger.info("Uploading %s as session %s (%d chunks)", source.name, session_id, total)
        return self._drive(range(total))

    def retry(self) -> Dict[str, Any]:
        """Continue a failed upload, sending only chunks the server lacks."""
        with self._cond:
            self._require_startable()
            source, session_id = self._source, self._session_id
        if source is None:
            raise RuntimeError("Nothing to retry")
        if session_id is None:
            return self.upload(source)
        return self.resume_session(session_id, source)

    def resume_session(self, session_id: str, source: ChunkSource) -> Dict[str, Any]:
        """Attach to an existing session (e.g. after a restart) and finish it."""
        with self._cond:
            self._require_startable()
            self._state = DriverState.INITIATING
            self._source = source
            self._session_id = session_id
            self._error = None

        try:
            status = self._api.status(session_id)
        except Exception as exc:
            with self._cond:
                if self._state != DriverState.CANCELLED:
                    self._state = DriverState.FAILED
            raise UploadFailed(f"Could not query session {session_id}: {exc}", session_id) from exc

        total = int(status["totalChunks"])
        expected = chunk_count(source.size, self._chunk_size)
        if total != expected:
            with self._cond:
                self._state = DriverState.FAILED
            raise UploadFailed(
                f"Session {session_id} has {total} chunks but source splits into {expected}",
                session_id,
            )

        with self._cond:
            if self._state == DriverState.CANCELLED:
                raise UploadCancelled("Upload cancelled")
            self._total_chunks = total
            self._completed = set(status.get("uploadedChunks", []))
            self._state = DriverState.UPLOADING
            pending = [i for i in range(total) if i not in self._completed]

        logger.info(
            "Resuming session %s: %d/%d chunks already uploaded",
            session_id, total - len(pending), total,
        )
        return self._drive(pending)

    def pause(self) -> bool:
        """Stop starting new chunks.  Returns False if not uploading."""
        with self._cond:
            if self._state != DriverState.UPLOADING:
                return False
            self._state = DriverState.PAUSED
        logger.info("Upload %s paused", self._session_id)
        return True

    def resume(self) -> bool:
        """Continue after ``pause()``.  Returns False if not paused."""
        with self._cond:
            if self._state != DriverState.PAUSED:
                return False
            self._state = DriverState.UPLOADING
            self._cond.notify_all()
        logger.info("Upload %s resumed", self._session_id)
        return True

    def cancel(self) -> bool:
        """Abort the running upload and tell the server, best-effort."""
        with self._cond:
            if self._state not in (
                DriverState.INITIATING,
                DriverState.UPLOADING,
                DriverState.PAUSED,
                DriverState.COMPLETING,
            ):
                return False
            session_id = self._session_id
            self._state = DriverState.CANCELLED
            self._session_id = None
            self._total_chunks = 0
            self._completed = set()
            self._cond.notify_all()

        if session_id:
            self._cancel_remote(session_id)
        return True

    # ------------------------------------------------------------------
    # Internal
    # ------------------------------------------------------------------

    def _require_startable(self) -> None:
        if self._state not in (DriverState.IDLE, DriverState.CANCELLED, DriverState.FAILED):
            raise RuntimeError(f"Upload already running (state={self._state.value})")

    def _cancel_remote(self, session_id: str) -> None:
        try:
            self._api.cancel(session_id)
            logger.info("Cancelled upload session %s", session_id)
        except Exception as exc:
            logger.warning("Server cancel of %s failed: %s", session_id, exc)

    def _drive(self, pending: Iterable[int]) -> Dict[str, Any]:
        queue: "Queue[int]" = Queue()
        for index in pending:
            queue.put(index)

        workers = max(1, min(self._max_workers, queue.qsize()))
        with ThreadPoolExecutor(max_workers=workers, thread_name_prefix="chunk-upload") as pool:
            for _ in range(workers):
                pool.submit(self._worker, queue)

        with self._cond:
            # A pause that lands after the last chunk still holds back completion.
            while self._state == DriverState.PAUSED and self._error is None:
                self._cond.wait()
            if self._state == DriverState.CANCELLED:
                raise UploadCancelled("Upload cancelled")
            session_id = self._session_id
            if self._error is not None:
                self._state = DriverState.FAILED
                raise UploadFailed(
                    f"Chunk upload failed: {self._error}", session_id
                ) from self._error
            self._state = DriverState.COMPLETING
            file_name = self._source.name

        try:
            result = self._api.complete(session_id, file_name)
        except Exception as exc:
            with self._cond:
                if self._state == DriverState.CANCELLED:
                    raise UploadCancelled("Upload cancelled") from exc
                self._state = DriverState.FAILED
            logger.error("Completion of %s failed: %s", session_id, exc)
            raise UploadFailed(f"Could not complete upload: {exc}", session_id) from exc

        with self._cond:
            if self._state == DriverState.CANCELLED:
                logger.warning("Session %s completed before cancel took effect", session_id)
                raise UploadCancelled("Upload cancelled")
            self._state = DriverState.IDLE
            self._session_id = None
        logger.info("Upload %s complete", session_id)
        return result

    def _wait_turn(self) -> bool:
        """Block while paused; False once the run should stop."""
        with self._cond:
            while self._state == DriverState.PAUSED and self._error is None:
                self._cond.wait()
            return self._state == DriverState.UPLOADING and self._error is None

    def _worker(self, queue: "Queue[int]") -> None:
        while self._wait_turn():
            try:
                index = queue.get_nowait()
            except Empty:
                return
            try:
                self._send_chunk(index)
            except Exception as exc:
                logger.warning("Chunk %d of %s failed: %s", index, self._session_id, exc)
                with self._cond:
                    if self._error is None:
                        self._error = exc
                    self._cond.notify_all()
                return

    def _send_chunk(self, index: int) -> None:
        with self._cond:
            session_id = self._session_id
            source = self._source
        if session_id is None or source is None:
            return

        data = source.read(index * self._chunk_size, self._chunk_size)
        target = self._api.get_upload_url(session_id, index)
        etag = self._api.put_chunk(target["url"], data)
        self._api.mark_chunk_uploaded(session_id, index, etag)

        with self._cond:
            if self._state == DriverState.CANCELLED:
                return
            self._completed.add(index)
            done, total = len(self._completed), self._total_chunks
        logger.debug("Chunk %d/%d of %s acknowledged", index + 1, total, session_id)
        if self._on_progress is not None:
            self._on_progress(done, total)
