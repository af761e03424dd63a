"""
Runtime key-value settings backed by the SQLite ``settings`` table.

Values are stored as text. Typed reads parse on the way out and return
``None`` on a parse failure so callers fall back to their own defaults.
"""

import json
import logging
from typing import Any, Dict, List, Optional, Tuple, Type, TypeVar

from ferry.store.sqlite_store import SQLiteStore

logger = logging.getLogger("Ferry.Settings")

T = TypeVar("T")

# (key, default, description, category)
_DEFAULTS: List[Tuple[str, str, str, str]] = [
    ("Storage.DefaultContainer", "ferry-data", "Container that receives uploads", "Storage"),
    ("Upload.MaxRetries", "5", "Delivery attempts before an item fails terminally", "Upload"),
    ("Upload.RetryDelaySeconds", "30", "Base retry delay in seconds", "Upload"),
    ("Upload.MaxRetryDelayMinutes", "15", "Upper bound for the retry delay in minutes", "Upload"),
    ("Upload.MaxConcurrentUploads", "3", "Concurrent deliveries per drain cycle", "Upload"),
    ("Upload.ProcessingIntervalSeconds", "10", "Seconds between drain cycles", "Upload"),
    ("Upload.MaxFileSizeMB", "100", "Largest file accepted by folder sources", "Upload"),
    ("Api.TimeoutSeconds", "30", "HTTP timeout for API sources", "Api"),
    ("Sources.RefreshIntervalMinutes", "5", "Minutes between source reconciliation passes", "Sources"),
    ("System.CleanupDays", "30", "Days before completed items are archived", "System"),
]

_TRUE_VALUES = {"1", "true", "yes", "on"}
_FALSE_VALUES = {"0", "false", "no", "off"}


class SettingsStore:
    """Typed access to the ``settings`` table with seeded defaults."""

    def __init__(
        self,
        store: SQLiteStore,
        *,
        archive_dir: Optional[str] = None,
        api_temp_dir: Optional[str] = None,
    ):
        self._store = store
        self._seed_defaults(archive_dir, api_temp_dir)

    def _seed_defaults(self, archive_dir: Optional[str], api_temp_dir: Optional[str]) -> None:
        rows = list(_DEFAULTS)
        if archive_dir:
            rows.append((
                "Monitoring.ArchivePath",
                archive_dir,
                "Root for completed, duplicate, failed and invalid files",
                "Monitoring",
            ))
        if api_temp_dir:
            rows.append((
                "Api.TempDirectory",
                api_temp_dir,
                "Staging directory for API payloads",
                "Api",
            ))
        with self._store.transaction():
            for key, value, description, category in rows:
                self._store.put_setting(
                    key, value, description=description, category=category, overwrite=False
                )

    def get_value(self, key: str) -> Optional[str]:
        row = self._store.get_setting_row(key)
        return row["value"] if row is not None else None

    def get_typed(self, key: str, value_type: Type[T]) -> Optional[T]:
        raw = self.get_value(key)
        if raw is None:
            return None
        try:
            return _coerce(raw, value_type)
        except (TypeError, ValueError) as exc:
            logger.warning("Setting %s=%r is not a valid %s: %s", key, raw, value_type.__name__, exc)
            return None

    def get_or_default(self, key: str, value_type: Type[T], default: T) -> T:
        value = self.get_typed(key, value_type)
        return default if value is None else value

    def set_value(
        self,
        key: str,
        value: Any,
        description: Optional[str] = None,
        category: Optional[str] = None,
    ) -> None:
        existing = self._store.get_setting_row(key)
        if existing is not None:
            description = description if description is not None else existing.get("description")
            category = category if category is not None else existing.get("category")
        if category is None and "." in key:
            category = key.split(".", 1)[0]
        self._store.put_setting(key, _serialize(value), description=description, category=category)
        logger.info("Setting %s updated", key)

    def get_category(self, category: str) -> Dict[str, str]:
        return {row["key"]: row["value"] for row in self._store.list_setting_rows(category)}

    def delete(self, key: str) -> bool:
        return self._store.delete_setting(key)

    def all(self) -> Dict[str, str]:
        return {row["key"]: row["value"] for row in self._store.list_setting_rows()}


def _serialize(value: Any) -> str:
    if isinstance(value, bool):
        return "true" if value else "false"
    if isinstance(value, (dict, list)):
        return json.dumps(value)
    return str(value)


def _coerce(raw: str, value_type: Type[Any]) -> Any:
    if value_type is bool:
        lowered = raw.strip().lower()
        if lowered in _TRUE_VALUES:
            return True
        if lowered in _FALSE_VALUES:
            return False
        raise ValueError("expected a boolean")
    if value_type is int:
        return int(raw.strip())
    if value_type is float:
        return float(raw.strip())
    if value_type is str:
        return raw
    if value_type in (dict, list):
        parsed = json.loads(raw)
        if not isinstance(parsed, value_type):
            raise ValueError(f"expected a JSON {value_type.__name__}")
        return parsed
    return value_type(raw)
