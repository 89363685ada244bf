"""Object store client for S3 multipart uploads.

Implements the multipart contract the coordinator relies on:

    create_multipart_upload(key, content_type)         -> upload_id
    issue_part_target(key, upload_id, part_number)     -> ChunkTarget (presigned PUT)
    complete_multipart_upload(key, upload_id, parts)   -> ObjectRef
    abort_multipart_upload(key, upload_id)
    list_multipart_uploads(older_than)                 -> [PendingUpload]

Chunk bytes never pass through this service: the client PUTs each part
straight to the presigned ``upload_part`` URL and reports back the ETag.

Any botocore failure surfaces as ``StoreUnavailable`` so callers can retry
the same operation without special-casing AWS error types.
"""
import logging
from abc import ABC, abstractmethod
from contextlib import contextmanager
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Iterator, List, Optional
from urllib.parse import quote

import boto3
from botocore.config import Config
from botocore.exceptions import BotoCoreError, ClientError

from .errors import StoreUnavailable
from .schemas import ChunkTarget, PartRecord

logger = logging.getLogger(__name__)

DEFAULT_PART_URL_EXPIRY = 3600


@dataclass(frozen=True)
class ObjectRef:
    """Reference to an assembled object."""
    key: str
    location: str
    etag: Optional[str] = None


@dataclass(frozen=True)
class PendingUpload:
    """An open multipart upload as listed by the object store."""
    key: str
    upload_id: str
    initiated: datetime


class ObjectStore(ABC):
    """Abstract multipart-capable object store."""

    @abstractmethod
    def create_multipart_upload(self, key: str, content_type: str) -> str:
        """Open a multipart upload and return its upload id."""

    @abstractmethod
    def issue_part_target(
        self,
        key: str,
        upload_id: str,
        part_number: int,
        expires_in: int = DEFAULT_PART_URL_EXPIRY,
    ) -> ChunkTarget:
        """Return a short-lived write target scoped to one part."""

    @abstractmethod
    def complete_multipart_upload(self, key: str, upload_id: str, parts: List[PartRecord]) -> ObjectRef:
        """Assemble *parts* (ascending part number) into the final object."""

    @abstractmethod
    def abort_multipart_upload(self, key: str, upload_id: str) -> None:
        """Abort an upload and discard its staged parts.  Idempotent."""

    @abstractmethod
    def list_multipart_uploads(self, older_than: Optional[datetime] = None) -> List[PendingUpload]:
        """List open multipart uploads, optionally only those started before *older_than*."""


def _is_no_such_upload(exc: ClientError) -> bool:
    return exc.response.get("Error", {}).get("Code") in ("NoSuchUpload", "404")


@contextmanager
def _store_call(operation: str, key: str) -> Iterator[None]:
    try:
        yield
    except (ClientError, BotoCoreError) as exc:
        logger.error("[object_store] %s failed for key=%s: %s", operation, key, exc)
        raise StoreUnavailable(f"Object store {operation} failed: {exc}") from exc


class S3ObjectStore(ObjectStore):
    """Object store backed by S3 (or any S3-compatible endpoint) via boto3.

    Args:
        bucket:                Target bucket.
        region_name:           AWS region.
        endpoint_url:          Custom endpoint (MinIO, LocalStack ...).
        aws_access_key_id:     AWS access key.  ``None`` → default credential chain.
        aws_secret_access_key: AWS secret access key.
        aws_session_token:     Optional temporary-credential session token.
        client:                Pre-built boto3 S3 client (tests inject a mock).
    """

    def __init__(
        self,
        bucket: str,
        region_name: str = "us-east-1",
        endpoint_url: Optional[str] = None,
        aws_access_key_id: Optional[str] = None,
        aws_secret_access_key: Optional[str] = None,
        aws_session_token: Optional[str] = None,
        client: Optional[object] = None,
    ) -> None:
        self._bucket       = bucket
        self._region       = region_name
        self._endpoint_url = endpoint_url
        self._access_key   = aws_access_key_id
        self._secret_key   = aws_secret_access_key
        self._session_token = aws_session_token
        self._client       = client

    @property
    def bucket(self) -> str:
        return self._bucket

    def _get_client(self):
        """Return a cached boto3 S3 client."""
        if self._client is None:
            kwargs: dict = {
                "region_name": self._region,
                # Presigned upload_part URLs must use SigV4.
                "config": Config(signature_version="s3v4", retries={"max_attempts": 3, "mode": "standard"}),
            }
            if self._endpoint_url:
                kwargs["endpoint_url"] = self._endpoint_url
            if self._access_key and self._secret_key:
                kwargs["aws_access_key_id"]     = self._access_key
                kwargs["aws_secret_access_key"] = self._secret_key
            if self._session_token:
                kwargs["aws_session_token"] = self._session_token

            self._client = boto3.client("s3", **kwargs)
        return self._client

    def _object_url(self, key: str) -> str:
        if self._endpoint_url:
            return f"{self._endpoint_url.rstrip('/')}/{self._bucket}/{quote(key)}"
        return f"https://{self._bucket}.s3.{self._region}.amazonaws.com/{quote(key)}"

    # -----------------------------------------------------------------------
    # ObjectStore implementation
    # -----------------------------------------------------------------------

    def create_multipart_upload(self, key: str, content_type: str) -> str:
        with _store_call("create_multipart_upload", key):
            response = self._get_client().create_multipart_upload(
                Bucket=self._bucket,
                Key=key,
                ContentType=content_type,
            )
        upload_id = response["UploadId"]
        logger.info("[object_store] Opened multipart upload key=%s upload_id=%s", key, upload_id)
        return upload_id

    def issue_part_target(
        self,
        key: str,
        upload_id: str,
        part_number: int,
        expires_in: int = DEFAULT_PART_URL_EXPIRY,
    ) -> ChunkTarget:
        with _store_call("generate_presigned_url", key):
            url = self._get_client().generate_presigned_url(
                ClientMethod="upload_part",
                Params={
                    "Bucket": self._bucket,
                    "Key": key,
                    "UploadId": upload_id,
                    "PartNumber": part_number,
                },
                ExpiresIn=expires_in,
            )
        return ChunkTarget(url=url, part_number=part_number, method="PUT", expires_in=expires_in)

    def complete_multipart_upload(self, key: str, upload_id: str, parts: List[PartRecord]) -> ObjectRef:
        with _store_call("complete_multipart_upload", key):
            response = self._get_client().complete_multipart_upload(
                Bucket=self._bucket,
                Key=key,
                UploadId=upload_id,
                MultipartUpload={"Parts": [p.to_s3() for p in parts]},
            )
        location = response.get("Location") or self._object_url(key)
        logger.info(
            "[object_store] Completed multipart upload key=%s parts=%d", key, len(parts)
        )
        return ObjectRef(key=key, location=location, etag=(response.get("ETag") or "").strip('"') or None)

    def abort_multipart_upload(self, key: str, upload_id: str) -> None:
        with _store_call("abort_multipart_upload", key):
            try:
                self._get_client().abort_multipart_upload(
                    Bucket=self._bucket,
                    Key=key,
                    UploadId=upload_id,
                )
            except ClientError as exc:
                if not _is_no_such_upload(exc):
                    raise
                logger.info("[object_store] Upload %s already gone for key=%s", upload_id, key)
                return
        logger.info("[object_store] Aborted multipart upload key=%s upload_id=%s", key, upload_id)

    def list_multipart_uploads(self, older_than: Optional[datetime] = None) -> List[PendingUpload]:
        pending: List[PendingUpload] = []
        with _store_call("list_multipart_uploads", "*"):
            paginator = self._get_client().get_paginator("list_multipart_uploads")
            for page in paginator.paginate(Bucket=self._bucket):
                for upload in page.get("Uploads", []):
                    initiated = upload["Initiated"]
                    if initiated.tzinfo is None:
                        initiated = initiated.replace(tzinfo=timezone.utc)
                    if older_than is not None and initiated >= older_than:
                        continue
                    pending.append(
                        PendingUpload(key=upload["Key"], upload_id=upload["UploadId"], initiated=initiated)
                    )
        return pending
