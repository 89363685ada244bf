"""Shared test fixtures and configuration for backend tests."""
import hashlib
import itertools
from datetime import datetime, timedelta, timezone
from typing import Dict, List, Optional
from urllib.parse import parse_qs, quote, urlsplit

import pytest
from fastapi.testclient import TestClient

from app.auth import create_access_token
from app.config import AppConfig, JWTSecrets, Secrets, set_config
from app.files.service import FileMetadataService
from app.main import app
from app.uploads.errors import StoreUnavailable
from app.uploads.object_store import ObjectRef, ObjectStore, PendingUpload
from app.uploads.schemas import ChunkTarget, PartRecord
from app.uploads.service import UploadCoordinator, set_coordinator
from app.uploads.session_store import InMemorySessionStore

TEST_JWT_SECRET = "test-secret"
MiB = 1024 * 1024


class FakeClock:
    """Settable UTC clock."""

    def __init__(self, start: Optional[datetime] = None):
        self.now = start or datetime(2026, 1, 1, 12, 0, 0, tzinfo=timezone.utc)

    def __call__(self) -> datetime:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += timedelta(seconds=seconds)


class FakeObjectStore(ObjectStore):
    """In-process multipart object store.

    Presigned URLs point at ``https://fake-s3.local``; ``receive_part``
    plays the part of S3 answering a PUT to one of them.  Operations named
    in ``fail_ops`` raise ``StoreUnavailable``.
    """

    BASE_URL = "https://fake-s3.local"

    def __init__(self, clock=None):
        self._clock = clock or (lambda: datetime.now(timezone.utc))
        self._ids = itertools.count(1)
        self.uploads: Dict[str, dict] = {}
        self.objects: Dict[str, bytes] = {}
        self.completed: Dict[str, List[dict]] = {}
        self.finished: Dict[str, ObjectRef] = {}
        self.aborted: List[str] = []
        self.part_puts: Dict[int, int] = {}
        self.fail_ops: set = set()

    def _maybe_fail(self, op: str) -> None:
        if op in self.fail_ops:
            raise StoreUnavailable(f"Object store {op} failed: injected")

    def create_multipart_upload(self, key: str, content_type: str) -> str:
        self._maybe_fail("create_multipart_upload")
        upload_id = f"upload-{next(self._ids)}"
        self.uploads[upload_id] = {
            "key": key,
            "content_type": content_type,
            "initiated": self._clock(),
            "data": {},
        }
        return upload_id

    def issue_part_target(self, key, upload_id, part_number, expires_in=3600) -> ChunkTarget:
        self._maybe_fail("issue_part_target")
        url = f"{self.BASE_URL}/{quote(key)}?uploadId={upload_id}&partNumber={part_number}"
        return ChunkTarget(url=url, part_number=part_number, expires_in=expires_in)

    def receive_part(self, url: str, data: bytes) -> str:
        query = parse_qs(urlsplit(url).query)
        upload_id = query["uploadId"][0]
        part_number = int(query["partNumber"][0])
        self.uploads[upload_id]["data"][part_number] = data
        self.part_puts[part_number] = self.part_puts.get(part_number, 0) + 1
        return hashlib.md5(data).hexdigest()

    def complete_multipart_upload(self, key: str, upload_id: str, parts: List[PartRecord]) -> ObjectRef:
        self._maybe_fail("complete_multipart_upload")
        if upload_id in self.finished:
            # Completing an already assembled upload succeeds again.
            return self.finished[upload_id]
        upload = self.uploads.get(upload_id)
        if upload is None:
            raise StoreUnavailable(f"NoSuchUpload {upload_id}")
        data = upload["data"]
        for part in parts:
            if part.part_number in data and hashlib.md5(data[part.part_number]).hexdigest() != part.proof_token:
                raise StoreUnavailable(f"InvalidPart {part.part_number}")
        self.completed[key] = [p.to_s3() for p in parts]
        self.objects[key] = b"".join(data.get(p.part_number, b"") for p in parts)
        del self.uploads[upload_id]
        self.finished[upload_id] = ObjectRef(key=key, location=f"{self.BASE_URL}/{quote(key)}")
        return self.finished[upload_id]

    def abort_multipart_upload(self, key: str, upload_id: str) -> None:
        self._maybe_fail("abort_multipart_upload")
        self.uploads.pop(upload_id, None)
        self.aborted.append(upload_id)

    def list_multipart_uploads(self, older_than=None) -> List[PendingUpload]:
        self._maybe_fail("list_multipart_uploads")
        return [
            PendingUpload(key=u["key"], upload_id=upload_id, initiated=u["initiated"])
            for upload_id, u in self.uploads.items()
            if older_than is None or u["initiated"] < older_than
        ]


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def object_store(clock):
    return FakeObjectStore(clock=clock)


@pytest.fixture
def metadata(tmp_path):
    """File metadata service on a temporary DuckDB file."""
    FileMetadataService.reset_instance()
    service = FileMetadataService(db_path=str(tmp_path / "files.duckdb"))
    yield service
    service.close()


@pytest.fixture
def coordinator(object_store, metadata, clock):
    return UploadCoordinator(
        session_store=InMemorySessionStore(),
        object_store=object_store,
        metadata=metadata,
        session_ttl_seconds=3600,
        part_url_expiry_seconds=900,
        clock=clock,
    )


@pytest.fixture
def test_config():
    config = AppConfig(secrets=Secrets(jwt=JWTSecrets(secret_key=TEST_JWT_SECRET)))
    set_config(config)
    yield config
    set_config(None)


@pytest.fixture
def make_token(test_config):
    def _make(user_id: str, **kwargs) -> str:
        return create_access_token(user_id, TEST_JWT_SECRET, **kwargs)
    return _make


@pytest.fixture
def auth_headers(make_token):
    def _headers(user_id: str = "alice") -> dict:
        return {"Authorization": f"Bearer {make_token(user_id)}"}
    return _headers


@pytest.fixture
def api_client(coordinator, test_config):
    """TestClient for the app with the test coordinator installed.

    The lifespan is not entered, so no real S3 client or reaper is built.
    """
    set_coordinator(coordinator)
    yield TestClient(app)
    set_coordinator(None)
