"""KidsLink messaging configuration.

Loads settings from two YAML files:
  * kidslink.settings.yaml  - non-secret configuration
  * kidslink.secrets.yaml   - secrets (never committed)

Environment overrides:
  * KIDSLINK_SETTINGS / KIDSLINK_SECRETS - alternative file paths
  * JWT_SECRET - overrides ``jwt.secret_key`` from the secrets file
"""
from __future__ import annotations

import logging
import os
from functools import lru_cache
from pathlib import Path
from typing import Any, Dict, List, Literal, Optional

import yaml
from pydantic import BaseModel, Field, field_validator

logger = logging.getLogger(__name__)

# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------

SETTINGS_FILE = Path("kidslink.settings.yaml")
SECRETS_FILE  = Path("kidslink.secrets.yaml")

DEFAULT_JWT_SECRET = "dev_secret_change_me"


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


class JWTSecrets(BaseModel):
    secret_key: str = DEFAULT_JWT_SECRET


class Secrets(BaseModel):
    aws: AwsSecrets = Field(default_factory=AwsSecrets)
    jwt: JWTSecrets = Field(default_factory=JWTSecrets)


# ---------------------------------------------------------------------------
# Settings models
# ---------------------------------------------------------------------------


class ServerSettings(BaseModel):
    host:            str = "0.0.0.0"
    port:            int = 8000
    allowed_origins: List[str] = Field(default_factory=lambda: ["*"])


class DatabaseSettings(BaseModel):
    """DuckDB file backing the messaging store (``:memory:`` for tests)."""
    path: str = "kidslink.duckdb"


class AuthSettings(BaseModel):
    algorithm:         str       = "HS256"
    token_query_param: str       = "token"
    leeway_seconds:    int       = 0
    # Identities that are valid token subjects but have no stored user row.
    system_user_ids:   List[str] = Field(default_factory=lambda: ["admin"])


class ChatSettings(BaseModel):
    default_page_size:      int = 50
    max_page_size:          int = 100
    conversation_page_size: int = 20

    @field_validator("default_page_size", "max_page_size", "conversation_page_size")
    @classmethod
    def _positive(cls, value: int) -> int:
        if value < 1:
            raise ValueError("page sizes must be positive")
        return value


class ImageSettings(BaseModel):
    backend:          Literal["local", "s3"] = "local"
    folder:           str           = "kidslink/messages"
    max_size_bytes:   int           = 10 * 1024 * 1024
    public_base_url:  str           = "http://localhost:8000"
    # local backend
    upload_dir:       str           = "uploads"
    metadata_db_path: str           = "image_metadata.duckdb"
    # s3 backend
    s3_bucket:        Optional[str] = None
    s3_region:        str           = "us-east-1"
    s3_public_url:    Optional[str] = None


class LoggingSettings(BaseModel):
    level: str = "info"


class AppConfig(BaseModel):
    server:   ServerSettings   = Field(default_factory=ServerSettings)
    database: DatabaseSettings = Field(default_factory=DatabaseSettings)
    auth:     AuthSettings     = Field(default_factory=AuthSettings)
    chat:     ChatSettings     = Field(default_factory=ChatSettings)
    images:   ImageSettings    = Field(default_factory=ImageSettings)
    logging:  LoggingSettings  = Field(default_factory=LoggingSettings)
    secrets:  Secrets          = Field(default_factory=Secrets)


# ---------------------------------------------------------------------------
# Public loader
# ---------------------------------------------------------------------------


def load_config(
    settings_path: Optional[Path] = None,
    secrets_path: Optional[Path] = None,
) -> AppConfig:
    """Load and merge settings + secrets into a single *AppConfig* object."""
    settings_path = Path(settings_path or os.environ.get("KIDSLINK_SETTINGS", SETTINGS_FILE))
    secrets_path  = Path(secrets_path or os.environ.get("KIDSLINK_SECRETS", SECRETS_FILE))

    settings_data = _load_yaml(settings_path)
    secrets_data  = _load_yaml(secrets_path)

    # Secrets live under the "secrets" key in AppConfig
    settings_data["secrets"] = secrets_data

    env_secret = os.environ.get("JWT_SECRET")
    if env_secret:
        settings_data["secrets"].setdefault("jwt", {})
        settings_data["secrets"]["jwt"]["secret_key"] = env_secret

    config = AppConfig(**settings_data)
    if config.secrets.jwt.secret_key == DEFAULT_JWT_SECRET:
        logger.warning("Using the default JWT secret; set JWT_SECRET in production.")

    logger.info(
        "Settings loaded (server=%s:%s, database=%s, images.backend=%s)",
        config.server.host,
        config.server.port,
        config.database.path,
        config.images.backend,
    )
    return config


@lru_cache(maxsize=1)
def get_config() -> AppConfig:
    """Return the process-wide configuration, loading it on first use."""
    return load_config()
