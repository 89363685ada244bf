"""FastAPI router for chunked upload endpoints.

Endpoints:
    POST /file/initiate-upload           - Open a multipart upload session
    POST /file/get-upload-url            - Presigned PUT URL for one chunk
    POST /file/mark-chunk-uploaded       - Record a chunk's ETag
    POST /file/complete-upload           - Assemble parts and publish the file
    POST /file/cancel-upload             - Abort the upload (idempotent)
    GET  /file/upload-status/{upload_id} - Acknowledged / missing chunk indices

Handlers are plain ``def`` so FastAPI runs the blocking store calls in its
thread pool.
"""
import logging

from fastapi import APIRouter, Depends, HTTPException, Request
from fastapi.responses import JSONResponse

from app.auth import Principal, get_principal

from .errors import UploadError
from .schemas import (
    CancelUploadRequest,
    CancelUploadResponse,
    ChunkAck,
    ChunkTarget,
    ChunkTargetRequest,
    CompleteUploadRequest,
    CompleteUploadResponse,
    InitiateUploadRequest,
    InitiateUploadResponse,
    MarkChunkRequest,
    UploadStatusResponse,
)
from .service import UploadCoordinator, get_coordinator

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/file", tags=["uploads"])


def get_upload_coordinator() -> UploadCoordinator:
    """Dependency returning the coordinator set up in the app lifespan."""
    coordinator = get_coordinator()
    if coordinator is None:
        raise HTTPException(status_code=503, detail="Upload service not initialised")
    return coordinator


async def upload_error_handler(request: Request, exc: UploadError) -> JSONResponse:
    """Render coordinator errors as ``{"error": code, "detail": message}``."""
    if exc.status_code >= 500:
        logger.error("%s %s failed: %s", request.method, request.url.path, exc.message)
    else:
        logger.info("%s %s rejected (%s): %s", request.method, request.url.path, exc.code, exc.message)
    return JSONResponse(exc.to_dict(), status_code=exc.status_code)


@router.post("/initiate-upload", response_model=InitiateUploadResponse)
def initiate_upload(
    body: InitiateUploadRequest,
    principal: Principal = Depends(get_principal),
    coordinator: UploadCoordinator = Depends(get_upload_coordinator),
) -> InitiateUploadResponse:
    """Open a multipart upload for the caller.

    Returns:
        uploadId (the session id), key (the object key) and leaseExpiry.
    """
    return coordinator.initiate(
        owner_id=principal.user_id,
        file_name=body.file_name,
        file_size=body.file_size,
        total_chunks=body.total_chunks,
        content_type=body.content_type,
    )


@router.post("/get-upload-url", response_model=ChunkTarget)
def get_upload_url(
    body: ChunkTargetRequest,
    principal: Principal = Depends(get_principal),
    coordinator: UploadCoordinator = Depends(get_upload_coordinator),
) -> ChunkTarget:
    """Issue a short-lived presigned URL for chunk ``chunkIndex``."""
    return coordinator.get_chunk_target(body.session_id, body.chunk_index, principal.user_id)


@router.post("/mark-chunk-uploaded", response_model=ChunkAck)
def mark_chunk_uploaded(
    body: MarkChunkRequest,
    principal: Principal = Depends(get_principal),
    coordinator: UploadCoordinator = Depends(get_upload_coordinator),
) -> ChunkAck:
    """Record the ETag returned by the object store for one chunk."""
    return coordinator.mark_chunk_uploaded(
        body.session_id, body.chunk_index, body.proof_token, principal.user_id
    )


@router.post("/complete-upload", response_model=CompleteUploadResponse)
def complete_upload(
    body: CompleteUploadRequest,
    principal: Principal = Depends(get_principal),
    coordinator: UploadCoordinator = Depends(get_upload_coordinator),
) -> CompleteUploadResponse:
    """Assemble all acknowledged parts and create the file record.

    Raises:
        409 incomplete_upload: Some chunk was never acknowledged.
        503 store_unavailable: Assembly failed; retry the same call.
    """
    return coordinator.complete(body.session_id, principal.user_id, file_name=body.file_name)


@router.post("/cancel-upload", response_model=CancelUploadResponse)
def cancel_upload(
    body: CancelUploadRequest,
    principal: Principal = Depends(get_principal),
    coordinator: UploadCoordinator = Depends(get_upload_coordinator),
) -> CancelUploadResponse:
    """Abort an upload.  Cancelling an unknown session succeeds."""
    return coordinator.cancel(body.session_id, principal.user_id)


@router.get("/upload-status/{upload_id}", response_model=UploadStatusResponse)
def upload_status(
    upload_id: str,
    principal: Principal = Depends(get_principal),
    coordinator: UploadCoordinator = Depends(get_upload_coordinator),
) -> UploadStatusResponse:
    """Report which chunks are acknowledged so a client can resume."""
    return coordinator.get_status(upload_id, principal.user_id)
