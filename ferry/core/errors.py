"""
Ferry exceptions.
"""

from __future__ import annotations

from typing import Any, Optional


class FerryError(RuntimeError):
    """Base class for Ferry errors."""


class ConfigurationError(FerryError):
    """Raised when a source or component is started with unusable configuration."""


class QueueItemNotFoundError(FerryError):
    def __init__(self, item_id: int) -> None:
        self.item_id = item_id
        super().__init__(f"Queue item {item_id} not found")


class InvalidTransitionError(FerryError):
    """Raised when a queue item is moved along an edge the state machine forbids."""

    def __init__(self, item_id: int, current: Any, target: Any) -> None:
        self.item_id = item_id
        self.current = current
        self.target = target
        current_value = getattr(current, "value", current)
        target_value = getattr(target, "value", target)
        super().__init__(
            f"Illegal transition for queue item {item_id}: {current_value} -> {target_value}"
        )


class StorageBackendError(FerryError):
    """Raised when the remote storage backend cannot be reached at all."""

    def __init__(self, detail: str, *, status_code: Optional[int] = None) -> None:
        self.status_code = status_code
        status_hint = f" (status={status_code})" if status_code is not None else ""
        super().__init__(f"{detail}{status_hint}")
