"""
Ferry Platform Abstraction
--------------------------
Cross-platform data and log directory resolution.

Environment overrides win; otherwise platformdirs picks the per-user location
for the current OS. Docker deployments mount /data.
"""

import os
import sys
import logging
from pathlib import Path
from typing import Any, Dict

import platformdirs

logger = logging.getLogger("Ferry.Platform")

IS_WINDOWS = sys.platform == "win32"

_APP_NAME = "ferry"
_APP_AUTHOR = "Ferry"


def is_running_in_docker() -> bool:
    """Detect if we're running inside a Docker container."""
    if os.environ.get("FERRY_DOCKER") == "1":
        return True
    return Path("/.dockerenv").exists()


def _resolve_dir(env_var: str, platformdirs_fn: str) -> Path:
    env_val = os.environ.get(env_var)
    if env_val:
        return Path(env_val).expanduser()
    fn = getattr(platformdirs, platformdirs_fn)
    return Path(fn(_APP_NAME, _APP_AUTHOR))


def get_data_dir() -> Path:
    """
    Get the Ferry data directory.

    Priority: FERRY_DATA_DIR env var > platformdirs.
    Docker override: /data when FERRY_DOCKER=1.

    Contains: ferry.db, archive/, api-data/
    """
    if is_running_in_docker():
        return Path(os.environ.get("FERRY_DATA_DIR", "/data"))
    return _resolve_dir("FERRY_DATA_DIR", "user_data_dir")


def get_log_dir() -> Path:
    """Priority: FERRY_LOG_DIR env var > platformdirs."""
    if is_running_in_docker():
        return Path(os.environ.get("FERRY_LOG_DIR", "/data/logs"))
    return _resolve_dir("FERRY_LOG_DIR", "user_log_dir")


def get_platform_info() -> Dict[str, Any]:
    """Platform diagnostics for the CLI status command."""
    return {
        "os": sys.platform,
        "python": sys.version.split()[0],
        "is_windows": IS_WINDOWS,
        "is_docker": is_running_in_docker(),
        "data_dir": str(get_data_dir()),
        "log_dir": str(get_log_dir()),
    }
