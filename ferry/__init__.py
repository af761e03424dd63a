"""
Ferry: ingestion-queue-delivery gateway for folder and API data sources.
"""

from ferry.core.errors import (
    ConfigurationError,
    FerryError,
    InvalidTransitionError,
    QueueItemNotFoundError,
    StorageBackendError,
)
from ferry.version import __version__

__all__ = [
    "__version__",
    "FerryError",
    "ConfigurationError",
    "InvalidTransitionError",
    "QueueItemNotFoundError",
    "StorageBackendError",
]
