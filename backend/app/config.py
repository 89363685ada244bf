"""ChunkVault application configuration.

Loads settings from two YAML files:
  * chunkvault.settings.yaml : non-secret configuration
  * chunkvault.secrets.yaml  : secrets (never committed)

Relative database paths are resolved against the directory holding the
settings file so the service behaves the same regardless of the working
directory it is launched from.
"""
from __future__ import annotations

import logging
from pathlib import Path
from typing import Any, Dict, List, Literal, Optional

import yaml
from pydantic import BaseModel, Field, field_validator

logger = logging.getLogger(__name__)

# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------

SETTINGS_FILE = Path("chunkvault.settings.yaml")
SECRETS_FILE  = Path("chunkvault.secrets.yaml")

# S3 rejects multipart uploads with more parts than this.
S3_MAX_PARTS = 10_000


def _load_yaml(path: Path) -> Dict[str, Any]:
    if not path.exists():
        logger.warning("Config file not found: %s", path)
        return {}
    with path.open(encoding="utf-8") as fh:
        return yaml.safe_load(fh) or {}


# ---------------------------------------------------------------------------
# Secrets models
# ---------------------------------------------------------------------------


class AwsSecrets(BaseModel):
    access_key_id:     Optional[str] = None
    secret_access_key: Optional[str] = None
    session_token:     Optional[str] = None


class JWTSecrets(BaseModel):
    secret_key: str = "change-me-in-production"
    algorithm:  str = "HS256"


class Secrets(BaseModel):
    aws: AwsSecrets = Field(default_factory=AwsSecrets)
    jwt: JWTSecrets = Field(default_factory=JWTSecrets)


# ---------------------------------------------------------------------------
# Settings models
# ---------------------------------------------------------------------------


class ServerSettings(BaseModel):
    host:            str       = "0.0.0.0"
    port:            int       = 8000
    allowed_origins: List[str] = Field(default_factory=lambda: ["http://localhost:3000"])


class LoggingSettings(BaseModel):
    level: str = "info"


class StorageSettings(BaseModel):
    """Object store (S3 or S3-compatible) settings."""
    bucket:                  str           = "chunkvault-uploads"
    region:                  str           = "us-east-1"
    endpoint_url:            Optional[str] = None
    part_url_expiry_seconds: int           = Field(default=3600, ge=1, le=7 * 24 * 3600)


class UploadSettings(BaseModel):
    """Chunked upload coordinator settings."""
    session_ttl_seconds:     int                           = Field(default=3600, ge=1)
    max_chunks:              int                           = Field(default=S3_MAX_PARTS, ge=1)
    session_store:           Literal["duckdb", "memory"]   = "duckdb"
    reaper_enabled:          bool                          = True
    reaper_interval_seconds: int                           = Field(default=300, ge=1)

    @field_validator("max_chunks")
    @classmethod
    def _cap_max_chunks(cls, value: int) -> int:
        if value > S3_MAX_PARTS:
            raise ValueError(f"max_chunks cannot exceed {S3_MAX_PARTS}")
        return value


class DatabaseSettings(BaseModel):
    sessions_path: str = "upload_sessions.duckdb"
    metadata_path: str = "file_metadata.duckdb"


class AppConfig(BaseModel):
    server:   ServerSettings   = Field(default_factory=ServerSettings)
    logging:  LoggingSettings  = Field(default_factory=LoggingSettings)
    storage:  StorageSettings  = Field(default_factory=StorageSettings)
    uploads:  UploadSettings   = Field(default_factory=UploadSettings)
    database: DatabaseSettings = Field(default_factory=DatabaseSettings)
    secrets:  Secrets          = Field(default_factory=Secrets)


# ---------------------------------------------------------------------------
# Path resolution
# ---------------------------------------------------------------------------


def _resolve_db_paths(config: AppConfig, base_dir: Path) -> None:
    """Make relative database paths absolute against *base_dir*."""
    db = config.database
    for attr in ("sessions_path", "metadata_path"):
        value = getattr(db, attr)
        if value == ":memory:":
            continue
        path = Path(value)
        if not path.is_absolute():
            setattr(db, attr, str(base_dir / path))


# ---------------------------------------------------------------------------
# Public loader
# ---------------------------------------------------------------------------


def load_config(
    settings_path: Optional[Path] = None,
    secrets_path: Optional[Path] = None,
) -> AppConfig:
    """Load and merge settings + secrets into a single *AppConfig* object."""
    settings_path = Path(settings_path) if settings_path else SETTINGS_FILE
    if secrets_path is None:
        secrets_path = settings_path.parent / SECRETS_FILE.name
    settings_data = _load_yaml(settings_path)
    secrets_data  = _load_yaml(Path(secrets_path))

    # Merge: secrets live under the "secrets" key in AppConfig
    settings_data["secrets"] = secrets_data

    config = AppConfig(**settings_data)
    _resolve_db_paths(config, settings_path.resolve().parent)
    logger.info(
        "Settings loaded (server=%s:%s, bucket=%s, session_store=%s)",
        config.server.host,
        config.server.port,
        config.storage.bucket,
        config.uploads.session_store,
    )
    return config


_config: Optional[AppConfig] = None


def get_config() -> AppConfig:
    """Return the process-wide config, loading it on first use."""
    global _config
    if _config is None:
        _config = load_config()
    return _config


def set_config(config: Optional[AppConfig]) -> None:
    """Replace (or clear, with ``None``) the process-wide config."""
    global _config
    _config = config
