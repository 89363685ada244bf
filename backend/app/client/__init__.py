"""Client-side upload driver for the ChunkVault API."""

from .api import CoordinatorAPIError, CoordinatorClient
from .driver import (
    DEFAULT_CHUNK_SIZE,
    ChunkSource,
    DriverState,
    UploadCancelled,
    UploadDriver,
    UploadDriverError,
    UploadFailed,
    chunk_count,
)

__all__ = [
    "CoordinatorAPIError",
    "CoordinatorClient",
    "DEFAULT_CHUNK_SIZE",
    "ChunkSource",
    "DriverState",
    "UploadCancelled",
    "UploadDriver",
    "UploadDriverError",
    "UploadFailed",
    "chunk_count",
]
