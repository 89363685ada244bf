"""HTTP adapter between the upload driver and the ChunkVault API.

Two httpx clients are used:
    * the API client, which carries the caller's JWT and talks to ``/file``
    * the transfer client, which PUTs chunk bytes to presigned object-store
      URLs; it never sends credentials, the URL itself is the grant
"""
import logging
from typing import Any, Dict, Optional

import httpx

logger = logging.getLogger(__name__)

DEFAULT_TIMEOUT = 60.0


class CoordinatorAPIError(Exception):
    """Non-2xx response from the coordinator or the object store."""

    def __init__(self, status_code: int, code: str, detail: str):
        super().__init__(f"{status_code} {code}: {detail}")
        self.status_code = status_code
        self.code = code
        self.detail = detail

    @property
    def retryable(self) -> bool:
        return self.status_code >= 500


def _raise_for_error(resp: httpx.Response) -> None:
    if resp.is_success:
        return
    code, detail = "http_error", resp.text
    try:
        body = resp.json()
    except ValueError:
        body = None
    if isinstance(body, dict):
        code = body.get("error", code)
        detail = body.get("detail", detail)
    raise CoordinatorAPIError(resp.status_code, str(code), str(detail))


class CoordinatorClient:
    """Thin wrapper over the ``/file`` upload endpoints.

    Args:
        base_url:  API root, e.g. ``http://localhost:8000``.
        token:     JWT sent as ``Authorization: Bearer``.
        client:    Pre-built API client (tests pass a FastAPI TestClient).
        transfer:  Pre-built client for presigned chunk PUTs.
    """

    def __init__(
        self,
        base_url: str = "",
        token: Optional[str] = None,
        client: Optional[httpx.Client] = None,
        transfer: Optional[httpx.Client] = None,
        timeout: float = DEFAULT_TIMEOUT,
    ):
        self._headers: Dict[str, str] = {}
        if token:
            self._headers["Authorization"] = f"Bearer {token}"
        self._http = client or httpx.Client(base_url=base_url, timeout=timeout)
        self._transfer = transfer or httpx.Client(timeout=timeout)

    def _post(self, path: str, body: Dict[str, Any]) -> Dict[str, Any]:
        resp = self._http.post(path, json=body, headers=self._headers)
        _raise_for_error(resp)
        return resp.json()

    def initiate(
        self,
        file_name: str,
        file_size: int,
        total_chunks: int,
        content_type: Optional[str] = None,
    ) -> Dict[str, Any]:
        body: Dict[str, Any] = {
            "fileName": file_name,
            "fileSize": file_size,
            "totalChunks": total_chunks,
        }
        if content_type:
            body["contentType"] = content_type
        return self._post("/file/initiate-upload", body)

    def get_upload_url(self, upload_id: str, chunk_index: int) -> Dict[str, Any]:
        return self._post("/file/get-upload-url", {"uploadId": upload_id, "chunkIndex": chunk_index})

    def put_chunk(self, url: str, data: bytes) -> str:
        """PUT *data* to a presigned part URL and return its ETag, unquoted."""
        resp = self._transfer.put(url, content=data)
        _raise_for_error(resp)
        etag = resp.headers.get("ETag", "").strip().strip('"')
        if not etag:
            raise CoordinatorAPIError(resp.status_code, "missing_etag", "Object store returned no ETag")
        return etag

    def mark_chunk_uploaded(self, upload_id: str, chunk_index: int, etag: str) -> Dict[str, Any]:
        return self._post(
            "/file/mark-chunk-uploaded",
            {"uploadId": upload_id, "chunkIndex": chunk_index, "etag": etag},
        )

    def complete(self, upload_id: str, file_name: Optional[str] = None) -> Dict[str, Any]:
        body: Dict[str, Any] = {"uploadId": upload_id}
        if file_name:
            body["fileName"] = file_name
        return self._post("/file/complete-upload", body)

    def cancel(self, upload_id: str) -> Dict[str, Any]:
        return self._post("/file/cancel-upload", {"uploadId": upload_id})

    def status(self, upload_id: str) -> Dict[str, Any]:
        resp = self._http.get(f"/file/upload-status/{upload_id}", headers=self._headers)
        _raise_for_error(resp)
        return resp.json()

    def close(self) -> None:
        self._http.close()
        self._transfer.close()
