"""
Ferry Configuration
-------------------
Bootstrap configuration for the gateway process.
Loads from environment variables and YAML config files.

Runtime-tunable values (retry/backoff, concurrency, intervals) live in the
SQLite-backed settings store instead; see ferry.store.settings.
"""

import os
import json
import logging
from pathlib import Path
from typing import Dict, Literal, Optional

import yaml
from pydantic import BaseModel, Field

from ferry.platform import get_data_dir, get_log_dir

logger = logging.getLogger("Ferry.Config")

DEFAULT_DATA_DIR = str(get_data_dir())
DEFAULT_LOG_DIR = str(get_log_dir())


def _parse_headers_env(name: str) -> Dict[str, str]:
    raw = os.environ.get(name)
    if raw is None or raw.strip() == "":
        return {}
    try:
        parsed = json.loads(raw)
    except json.JSONDecodeError:
        logger.warning("Ignoring invalid JSON object in %s", name)
        return {}
    if not isinstance(parsed, dict):
        logger.warning("Ignoring %s because it is not a JSON object", name)
        return {}
    return {str(k): str(v) for k, v in parsed.items()}


def _parse_positive_float_env(name: str, default: float) -> float:
    raw = os.environ.get(name)
    if raw is None or raw.strip() == "":
        return default
    try:
        value = float(raw)
        if value <= 0:
            raise ValueError
        return value
    except ValueError:
        logger.warning(
            "Invalid %s value '%s'; expected positive float. Using %.1f.",
            name,
            raw,
            default,
        )
        return default


class StoreConfig(BaseModel):
    """SQLite persistent store configuration."""
    path: str = os.path.join(DEFAULT_DATA_DIR, "ferry.db")


class StorageConfig(BaseModel):
    """Remote object storage backend configuration."""
    backend: Literal["local", "http"] = "local"
    local_root: str = os.path.join(DEFAULT_DATA_DIR, "storage")
    base_url: Optional[str] = None
    headers: Dict[str, str] = Field(default_factory=dict)
    timeout_seconds: float = 300.0


class LoggingConfig(BaseModel):
    level: str = "info"
    log_dir: str = DEFAULT_LOG_DIR
    file_name: str = "ferry.log"


class FerryConfig(BaseModel):
    """Root configuration for the gateway process."""
    data_dir: str = DEFAULT_DATA_DIR
    archive_dir: str = os.path.join(DEFAULT_DATA_DIR, "archive")
    api_temp_dir: str = os.path.join(DEFAULT_DATA_DIR, "api-data")
    store: StoreConfig = Field(default_factory=StoreConfig)
    storage: StorageConfig = Field(default_factory=StorageConfig)
    logging: LoggingConfig = Field(default_factory=LoggingConfig)

    @classmethod
    def for_data_dir(cls, data_dir: str) -> "FerryConfig":
        """Defaults with every derived path rooted under ``data_dir``."""
        return cls(
            data_dir=data_dir,
            archive_dir=os.path.join(data_dir, "archive"),
            api_temp_dir=os.path.join(data_dir, "api-data"),
            store=StoreConfig(path=os.path.join(data_dir, "ferry.db")),
            storage=StorageConfig(local_root=os.path.join(data_dir, "storage")),
        )

    @classmethod
    def from_env(cls) -> "FerryConfig":
        """
        Load configuration from environment variables.

        Environment variables override defaults:
        - FERRY_DATA_DIR: Base data directory
        - FERRY_DB_PATH: SQLite database file
        - FERRY_ARCHIVE_DIR / FERRY_API_TEMP_DIR: file staging areas
        - FERRY_STORAGE_BACKEND: "local" or "http"
        - FERRY_STORAGE_LOCAL_ROOT: root directory for the local backend
        - FERRY_STORAGE_URL: base URL for the http backend
        - FERRY_STORAGE_HEADERS: JSON object of extra request headers
        - FERRY_STORAGE_TIMEOUT_SECONDS: per-upload timeout
        - FERRY_LOG_LEVEL / FERRY_LOG_DIR: logging
        """
        data_dir = os.environ.get("FERRY_DATA_DIR", DEFAULT_DATA_DIR)
        backend = os.environ.get("FERRY_STORAGE_BACKEND", "local").strip().lower()
        if backend not in ("local", "http"):
            logger.warning("Unsupported FERRY_STORAGE_BACKEND=%r; falling back to 'local'", backend)
            backend = "local"

        return cls(
            data_dir=data_dir,
            archive_dir=os.environ.get("FERRY_ARCHIVE_DIR", os.path.join(data_dir, "archive")),
            api_temp_dir=os.environ.get("FERRY_API_TEMP_DIR", os.path.join(data_dir, "api-data")),
            store=StoreConfig(
                path=os.environ.get("FERRY_DB_PATH", os.path.join(data_dir, "ferry.db")),
            ),
            storage=StorageConfig(
                backend=backend,
                local_root=os.environ.get(
                    "FERRY_STORAGE_LOCAL_ROOT", os.path.join(data_dir, "storage")
                ),
                base_url=os.environ.get("FERRY_STORAGE_URL") or None,
                headers=_parse_headers_env("FERRY_STORAGE_HEADERS"),
                timeout_seconds=_parse_positive_float_env("FERRY_STORAGE_TIMEOUT_SECONDS", 300.0),
            ),
            logging=LoggingConfig(
                level=os.environ.get("FERRY_LOG_LEVEL", "info"),
                log_dir=os.environ.get("FERRY_LOG_DIR", DEFAULT_LOG_DIR),
            ),
        )

    @classmethod
    def from_yaml(cls, path: str) -> "FerryConfig":
        """Load configuration from a YAML file."""
        try:
            with open(path, "r") as f:
                data = yaml.safe_load(f) or {}
        except FileNotFoundError:
            logger.warning("Config file not found: %s; using environment defaults", path)
            return cls.from_env()
        return cls(**data)

    def ensure_directories(self) -> None:
        """Create data directories if they don't exist."""
        Path(self.data_dir).mkdir(parents=True, exist_ok=True)
        Path(self.archive_dir).mkdir(parents=True, exist_ok=True)
        Path(self.api_temp_dir).mkdir(parents=True, exist_ok=True)
        Path(self.store.path).parent.mkdir(parents=True, exist_ok=True)
        if self.storage.backend == "local":
            Path(self.storage.local_root).mkdir(parents=True, exist_ok=True)
