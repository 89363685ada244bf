"""Background reclamation of abandoned uploads.

Lease expiry only makes a session unreachable; the multipart upload behind
it stays open (and billable) at the object store.  The reaper closes that
gap with two passes per sweep:

  1. expired sessions  : abort their multipart upload, then delete the record
  2. orphaned uploads  : multipart uploads older than the lease window with
                          no session record at all are aborted

A failed abort leaves the session record in place so the next sweep
retries it.
"""
from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Callable, Optional

from .errors import StoreUnavailable
from .object_store import ObjectStore
from .schemas import UploadStatus, utcnow
from .session_store import SessionStore

logger = logging.getLogger(__name__)


@dataclass
class SweepResult:
    expired_sessions: int = 0
    orphaned_uploads: int = 0
    failures: int = 0


class UploadReaper:
    """Periodic sweeper for expired sessions and orphaned multipart uploads."""

    def __init__(
        self,
        session_store: SessionStore,
        object_store: ObjectStore,
        lease_seconds: int = 3600,
        interval_seconds: int = 300,
        clock: Callable[[], datetime] = utcnow,
    ) -> None:
        self._sessions = session_store
        self._objects = object_store
        self._lease = timedelta(seconds=lease_seconds)
        self._interval = interval_seconds
        self._clock = clock
        self._sweep_task: Optional[asyncio.Task] = None  # type: ignore[type-arg]

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    async def start(self) -> None:
        """Start background sweep task."""
        self._sweep_task = asyncio.create_task(self._sweep_loop())
        logger.info("UploadReaper sweep task started (interval=%ss)", self._interval)

    async def stop(self) -> None:
        """Cancel the sweep task."""
        if self._sweep_task:
            self._sweep_task.cancel()
            try:
                await self._sweep_task
            except asyncio.CancelledError:
                pass
            self._sweep_task = None
        logger.info("UploadReaper stopped.")

    # ------------------------------------------------------------------
    # Sweeping
    # ------------------------------------------------------------------

    async def _sweep_loop(self) -> None:
        while True:
            await asyncio.sleep(self._interval)
            try:
                await asyncio.to_thread(self.sweep_once)
            except Exception as exc:  # pylint: disable=broad-except
                logger.error("UploadReaper sweep failed: %s", exc)

    def sweep_once(self) -> SweepResult:
        """Run both passes once and return what was reclaimed."""
        result = SweepResult()
        now = self._clock()
        self._reap_expired(now, result)
        self._reap_orphans(now, result)
        if result.expired_sessions or result.orphaned_uploads or result.failures:
            logger.info(
                "UploadReaper sweep: expired=%d orphaned=%d failures=%d",
                result.expired_sessions, result.orphaned_uploads, result.failures,
            )
        return result

    def _reap_expired(self, now: datetime, result: SweepResult) -> None:
        for session in self._sessions.list_expired(now):
            if session.status != UploadStatus.COMPLETED:
                try:
                    self._objects.abort_multipart_upload(session.object_key, session.session_id)
                except StoreUnavailable as exc:
                    logger.warning("Could not abort expired session %s: %s", session.session_id, exc)
                    result.failures += 1
                    continue
            self._sessions.delete(session.session_id)
            result.expired_sessions += 1
            logger.debug("Reaped expired session %s", session.session_id)

    def _reap_orphans(self, now: datetime, result: SweepResult) -> None:
        try:
            pending = self._objects.list_multipart_uploads(older_than=now - self._lease)
        except StoreUnavailable as exc:
            logger.warning("Could not list multipart uploads: %s", exc)
            result.failures += 1
            return
        for upload in pending:
            if self._sessions.exists(upload.upload_id):
                continue
            try:
                self._objects.abort_multipart_upload(upload.key, upload.upload_id)
            except StoreUnavailable as exc:
                logger.warning("Could not abort orphaned upload %s: %s", upload.upload_id, exc)
                result.failures += 1
                continue
            result.orphaned_uploads += 1
            logger.debug("Aborted orphaned upload %s key=%s", upload.upload_id, upload.key)
