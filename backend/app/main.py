"""ChunkVault Backend Application.

This is the main entry point for the ChunkVault backend service.
ChunkVault is a file-hosting backend whose uploads go straight from the
browser to S3 in resumable, independently transmitted chunks.

Modules:
    - uploads: chunked upload coordinator (sessions, chunk targets,
      acknowledgments, finalization, cancellation, reaper)
    - files: file metadata records written on finalization
    - auth: JWT principal resolution
"""
import logging
from contextlib import asynccontextmanager

from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware

from app.config import AppConfig, get_config
from app.files.service import FileMetadataService
from app.uploads.errors import UploadError
from app.uploads.object_store import S3ObjectStore
from app.uploads.reaper import UploadReaper
from app.uploads.router import router as uploads_router, upload_error_handler
from app.uploads.service import UploadCoordinator, get_coordinator, set_coordinator
from app.uploads.session_store import DuckDBSessionStore, InMemorySessionStore, SessionStore

# Configure logging
logging.basicConfig(
    level=logging.INFO,
    format="%(asctime)s - %(name)s - %(levelname)s - %(message)s"
)

# Silence verbose third-party loggers.
# botocore.auth logs the full SigV4 canonical request, including the
# x-amz-security-token, which would leak credentials into the console.
for _noisy in (
    "botocore",
    "boto3",
    "s3transfer",
    "urllib3",
    "urllib3.connectionpool",
    "httpx",
    "httpcore",
):
    logging.getLogger(_noisy).setLevel(logging.WARNING)

logger = logging.getLogger(__name__)


def build_session_store(config: AppConfig) -> SessionStore:
    if config.uploads.session_store == "memory":
        return InMemorySessionStore()
    return DuckDBSessionStore(config.database.sessions_path)


def build_coordinator(config: AppConfig) -> UploadCoordinator:
    """Wire the coordinator and its collaborators from config."""
    storage = config.storage
    aws = config.secrets.aws
    object_store = S3ObjectStore(
        bucket=storage.bucket,
        region_name=storage.region,
        endpoint_url=storage.endpoint_url,
        aws_access_key_id=aws.access_key_id or None,
        aws_secret_access_key=aws.secret_access_key or None,
        aws_session_token=aws.session_token or None,
    )
    return UploadCoordinator(
        session_store=build_session_store(config),
        object_store=object_store,
        metadata=FileMetadataService.get_instance(config.database.metadata_path),
        session_ttl_seconds=config.uploads.session_ttl_seconds,
        part_url_expiry_seconds=storage.part_url_expiry_seconds,
        max_chunks=config.uploads.max_chunks,
    )


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Application lifespan manager for startup/shutdown events."""
    # Startup
    config = get_config()

    configured_level = getattr(logging, config.logging.level.upper(), None)
    if configured_level is not None:
        logging.getLogger().setLevel(configured_level)
        logger.info("Root logger level set to %s", config.logging.level.upper())

    coordinator = get_coordinator()
    if coordinator is None:
        coordinator = build_coordinator(config)
        set_coordinator(coordinator)
        logger.info(
            "Upload coordinator ready: bucket=%s store=%s ttl=%ss",
            config.storage.bucket,
            config.uploads.session_store,
            config.uploads.session_ttl_seconds,
        )

    reaper = None
    if config.uploads.reaper_enabled:
        reaper = UploadReaper(
            session_store=coordinator.session_store,
            object_store=coordinator.object_store,
            lease_seconds=config.uploads.session_ttl_seconds,
            interval_seconds=config.uploads.reaper_interval_seconds,
        )
        await reaper.start()
    else:
        logger.info("Upload reaper disabled in config.")

    yield  # Application runs here

    # Shutdown
    if reaper is not None:
        await reaper.stop()
    coordinator.session_store.close()
    logger.info("Application shutdown complete")


# Create FastAPI application with metadata
app = FastAPI(
    title="ChunkVault API",
    description="File hosting backend with resumable chunked uploads",
    version="0.1.0",
    lifespan=lifespan,
)

app.add_middleware(
    CORSMiddleware,
    allow_origins=get_config().server.allowed_origins,
    allow_credentials=True,
    allow_methods=["GET", "POST", "PUT", "DELETE", "OPTIONS"],
    allow_headers=["Content-Type", "Authorization"],
)
app.add_exception_handler(UploadError, upload_error_handler)

# Register all routers
app.include_router(uploads_router)


@app.get("/health")
async def health() -> dict:
    """Health check endpoint.

    Returns:
        dict: Status object indicating the server is running.
    """
    return {"status": "ok"}
