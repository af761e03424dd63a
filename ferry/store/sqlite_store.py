"""
Ferry SQLite Store
------------------
Persistent storage for queue items, progress records, the upload history
audit trail and data source configuration. SQLite provides ACID guarantees
and zero-config operation.

All access goes through one connection guarded by a re-entrant lock, so
multi-statement operations (dedup check-then-insert, pending claims) run
inside ``transaction()`` and are serialized against every other writer.
"""

import contextlib
import json
import logging
import sqlite3
import threading
import time
from pathlib import Path
from typing import Any, Dict, Iterator, List, Optional, Sequence, Tuple

from ferry.core.errors import FerryError
from ferry.core.types import (
    ContentType,
    DataSourceConfig,
    HistoryRecord,
    Origin,
    ProgressRecord,
    QueueItem,
    QueueState,
    SourceType,
)

logger = logging.getLogger("Ferry.SQLite")

SCHEMA_VERSION = 1

CREATE_QUEUE = """
CREATE TABLE IF NOT EXISTS upload_queue (
    id                  INTEGER PRIMARY KEY AUTOINCREMENT,
    source_path         TEXT NOT NULL,
    display_name        TEXT NOT NULL,
    content_type        TEXT NOT NULL DEFAULT 'other',
    origin              TEXT NOT NULL DEFAULT 'folder',
    size_bytes          INTEGER NOT NULL DEFAULT 0,
    content_hash        TEXT,
    state               TEXT NOT NULL DEFAULT 'pending',

    -- Retry bookkeeping
    attempt_count       INTEGER NOT NULL DEFAULT 0,
    max_attempts        INTEGER NOT NULL DEFAULT 5,
    last_error          TEXT,
    next_attempt_at     REAL,

    created_at          REAL NOT NULL,
    last_attempt_at     REAL,
    completed_at        REAL,

    destination_url     TEXT,
    upload_duration_ms  INTEGER,

    source_id           INTEGER
);
"""

CREATE_INDEXES = [
    # Dedup gate: at most one row per non-empty content hash.
    "CREATE UNIQUE INDEX IF NOT EXISTS idx_queue_hash ON upload_queue(content_hash) "
    "WHERE content_hash IS NOT NULL AND content_hash != '';",
    "CREATE INDEX IF NOT EXISTS idx_queue_state_created ON upload_queue(state, created_at);",
    "CREATE INDEX IF NOT EXISTS idx_queue_last_attempt ON upload_queue(last_attempt_at DESC);",
]

CREATE_PROGRESS = """
CREATE TABLE IF NOT EXISTS upload_progress (
    item_id         INTEGER PRIMARY KEY REFERENCES upload_queue(id) ON DELETE CASCADE,
    bytes_uploaded  INTEGER NOT NULL DEFAULT 0,
    total_bytes     INTEGER NOT NULL DEFAULT 0,
    status_message  TEXT,
    updated_at      REAL NOT NULL
);
"""

CREATE_HISTORY = """
CREATE TABLE IF NOT EXISTS upload_history (
    id                  INTEGER PRIMARY KEY AUTOINCREMENT,
    item_id             INTEGER,
    display_name        TEXT NOT NULL,
    content_type        TEXT NOT NULL,
    origin              TEXT NOT NULL,
    final_state         TEXT NOT NULL,
    finished_at         REAL NOT NULL,
    size_bytes          INTEGER NOT NULL DEFAULT 0,
    upload_duration_ms  INTEGER,
    total_attempts      INTEGER NOT NULL DEFAULT 0,
    destination_url     TEXT,
    final_error         TEXT
);
"""

CREATE_DATA_SOURCES = """
CREATE TABLE IF NOT EXISTS data_sources (
    id                        INTEGER PRIMARY KEY AUTOINCREMENT,
    name                      TEXT NOT NULL,
    source_type               TEXT NOT NULL,
    enabled                   INTEGER NOT NULL DEFAULT 1,
    folder_path               TEXT,
    api_endpoint              TEXT,
    api_key                   TEXT,
    polling_interval_minutes  REAL NOT NULL DEFAULT 5,
    file_pattern              TEXT DEFAULT '*.*',
    created_at                REAL NOT NULL,
    last_processed_at         REAL,
    additional_settings       TEXT DEFAULT '{}'
);
"""

CREATE_SETTINGS = """
CREATE TABLE IF NOT EXISTS settings (
    key          TEXT PRIMARY KEY,
    value        TEXT NOT NULL,
    description  TEXT,
    category     TEXT,
    updated_at   REAL NOT NULL
);
"""

SCHEMA_META = """
CREATE TABLE IF NOT EXISTS schema_meta (
    key   TEXT PRIMARY KEY,
    value TEXT
);
"""

_QUEUE_COLUMNS = (
    "source_path",
    "display_name",
    "content_type",
    "origin",
    "size_bytes",
    "content_hash",
    "state",
    "attempt_count",
    "max_attempts",
    "last_error",
    "next_attempt_at",
    "created_at",
    "last_attempt_at",
    "completed_at",
    "destination_url",
    "upload_duration_ms",
    "source_id",
)

_DATA_SOURCE_COLUMNS = (
    "name",
    "source_type",
    "enabled",
    "folder_path",
    "api_endpoint",
    "api_key",
    "polling_interval_minutes",
    "file_pattern",
    "last_processed_at",
    "additional_settings",
)


def _enum_value(value: Any) -> Any:
    return getattr(value, "value", value)


class SQLiteStore:
    """Durable record of queue items, progress, history and source configuration."""

    def __init__(self, db_path):
        self.db_path = Path(db_path) if not isinstance(db_path, Path) else db_path
        self.db_path.parent.mkdir(parents=True, exist_ok=True)
        self._conn: Optional[sqlite3.Connection] = None
        self._lock = threading.RLock()
        self._depth = 0
        self._initialize()

    def _get_conn(self) -> sqlite3.Connection:
        if self._conn is None:
            self._conn = sqlite3.connect(str(self.db_path), check_same_thread=False)
            self._conn.row_factory = sqlite3.Row
            self._conn.execute("PRAGMA journal_mode=WAL;")
            self._conn.execute("PRAGMA synchronous=NORMAL;")
            self._conn.execute("PRAGMA foreign_keys=ON;")
        return self._conn

    def _initialize(self):
        with self.transaction() as conn:
            conn.execute(CREATE_QUEUE)
            for idx in CREATE_INDEXES:
                conn.execute(idx)
            conn.execute(CREATE_PROGRESS)
            conn.execute(CREATE_HISTORY)
            conn.execute(CREATE_DATA_SOURCES)
            conn.execute(CREATE_SETTINGS)
            conn.execute(SCHEMA_META)
            conn.execute(
                "CREATE INDEX IF NOT EXISTS idx_history_finished ON upload_history(finished_at DESC);"
            )
            conn.execute(
                "INSERT OR IGNORE INTO schema_meta (key, value) VALUES (?, ?)",
                ("version", str(SCHEMA_VERSION)),
            )
        stored = self.get_meta("version")
        if stored is not None and stored.isdigit() and int(stored) > SCHEMA_VERSION:
            self.close()
            raise FerryError(
                f"Database {self.db_path} uses schema version {stored}; "
                f"this ferry supports up to {SCHEMA_VERSION}"
            )
        logger.info("SQLite store initialized at %s", self.db_path)

    @contextlib.contextmanager
    def transaction(self) -> Iterator[sqlite3.Connection]:
        """
        Run a block of statements atomically.

        Nested use joins the outer transaction; only the outermost block
        commits or rolls back.
        """
        with self._lock:
            conn = self._get_conn()
            self._depth += 1
            try:
                yield conn
            except Exception:
                if self._depth == 1:
                    conn.rollback()
                raise
            else:
                if self._depth == 1:
                    conn.commit()
            finally:
                self._depth -= 1

    def close(self) -> None:
        with self._lock:
            if self._conn is not None:
                self._conn.close()
                self._conn = None

    # ------------------------------------------------------------------
    # Row mapping
    # ------------------------------------------------------------------

    @staticmethod
    def _row_to_item(row: sqlite3.Row) -> QueueItem:
        d = dict(row)
        try:
            d["content_type"] = ContentType(d.get("content_type") or "other")
        except ValueError:
            d["content_type"] = ContentType.OTHER
        return QueueItem(**d)

    @staticmethod
    def _row_to_progress(row: sqlite3.Row) -> ProgressRecord:
        return ProgressRecord(**dict(row))

    @staticmethod
    def _row_to_history(row: sqlite3.Row) -> HistoryRecord:
        return HistoryRecord(**dict(row))

    @staticmethod
    def _row_to_source(row: sqlite3.Row) -> DataSourceConfig:
        d = dict(row)
        d["enabled"] = bool(d.get("enabled", 1))
        try:
            settings = json.loads(d.get("additional_settings") or "{}")
        except json.JSONDecodeError:
            logger.warning("Ignoring malformed additional_settings for data source %s", d.get("id"))
            settings = {}
        d["additional_settings"] = settings if isinstance(settings, dict) else {}
        return DataSourceConfig(**d)

    # ------------------------------------------------------------------
    # Queue items
    # ------------------------------------------------------------------

    def find_by_hash(self, content_hash: str) -> Optional[QueueItem]:
        with self.transaction() as conn:
            row = conn.execute(
                "SELECT * FROM upload_queue WHERE content_hash = ?", (content_hash,)
            ).fetchone()
        return self._row_to_item(row) if row is not None else None

    def insert_item(self, **fields: Any) -> QueueItem:
        """Insert a queue row. Raises sqlite3.IntegrityError on a duplicate hash."""
        values = {col: _enum_value(fields.get(col)) for col in _QUEUE_COLUMNS if col in fields}
        values.setdefault("created_at", time.time())
        columns = ", ".join(values)
        placeholders = ", ".join("?" for _ in values)
        with self.transaction() as conn:
            cursor = conn.execute(
                f"INSERT INTO upload_queue ({columns}) VALUES ({placeholders})",
                tuple(values.values()),
            )
            row = conn.execute(
                "SELECT * FROM upload_queue WHERE id = ?", (cursor.lastrowid,)
            ).fetchone()
        return self._row_to_item(row)

    def get_item(self, item_id: int) -> Optional[QueueItem]:
        with self.transaction() as conn:
            row = conn.execute("SELECT * FROM upload_queue WHERE id = ?", (item_id,)).fetchone()
        return self._row_to_item(row) if row is not None else None

    def update_item(self, item_id: int, **fields: Any) -> None:
        unknown = set(fields) - set(_QUEUE_COLUMNS)
        if unknown:
            raise ValueError(f"Unknown queue columns: {sorted(unknown)}")
        if not fields:
            return
        assignments = ", ".join(f"{col} = ?" for col in fields)
        params = tuple(_enum_value(v) for v in fields.values()) + (item_id,)
        with self.transaction() as conn:
            conn.execute(f"UPDATE upload_queue SET {assignments} WHERE id = ?", params)

    def list_items(
        self,
        *,
        state: Optional[QueueState] = None,
        order_by: str = "created_at",
        descending: bool = False,
        limit: Optional[int] = None,
        due_before: Optional[float] = None,
    ) -> List[QueueItem]:
        if order_by not in ("created_at", "last_attempt_at", "id"):
            raise ValueError(f"Unsupported ordering column: {order_by}")
        clauses: List[str] = []
        params: List[Any] = []
        if state is not None:
            clauses.append("state = ?")
            params.append(_enum_value(state))
        if due_before is not None:
            clauses.append("(next_attempt_at IS NULL OR next_attempt_at <= ?)")
            params.append(due_before)
        where = f"WHERE {' AND '.join(clauses)}" if clauses else ""
        direction = "DESC" if descending else "ASC"
        sql = f"SELECT * FROM upload_queue {where} ORDER BY {order_by} {direction}, id {direction}"
        if limit is not None:
            sql += " LIMIT ?"
            params.append(int(limit))
        with self.transaction() as conn:
            rows = conn.execute(sql, tuple(params)).fetchall()
        return [self._row_to_item(row) for row in rows]

    def count_by_state(self) -> Dict[str, int]:
        with self.transaction() as conn:
            rows = conn.execute(
                "SELECT state, COUNT(*) AS n FROM upload_queue GROUP BY state"
            ).fetchall()
        return {row["state"]: int(row["n"]) for row in rows}

    def totals(self) -> Tuple[int, int]:
        """Return (row count, summed size in bytes) across the whole queue."""
        with self.transaction() as conn:
            row = conn.execute(
                "SELECT COUNT(*) AS n, COALESCE(SUM(size_bytes), 0) AS total FROM upload_queue"
            ).fetchone()
        return int(row["n"]), int(row["total"])

    def update_state_where(
        self,
        *,
        from_state: QueueState,
        set_fields: Dict[str, Any],
        extra_where: str = "",
        extra_params: Sequence[Any] = (),
    ) -> List[int]:
        """Bulk-update every row in ``from_state``; returns the touched ids."""
        where = "state = ?"
        if extra_where:
            where += f" AND ({extra_where})"
        params = (_enum_value(from_state),) + tuple(extra_params)
        assignments = ", ".join(f"{col} = ?" for col in set_fields)
        with self.transaction() as conn:
            ids = [
                int(row["id"])
                for row in conn.execute(f"SELECT id FROM upload_queue WHERE {where}", params)
            ]
            if ids:
                conn.execute(
                    f"UPDATE upload_queue SET {assignments} WHERE {where}",
                    tuple(_enum_value(v) for v in set_fields.values()) + params,
                )
        return ids

    # ------------------------------------------------------------------
    # Progress
    # ------------------------------------------------------------------

    def upsert_progress(
        self,
        item_id: int,
        bytes_uploaded: int,
        total_bytes: int,
        status_message: Optional[str] = None,
    ) -> None:
        with self.transaction() as conn:
            conn.execute(
                """
                INSERT INTO upload_progress (item_id, bytes_uploaded, total_bytes, status_message, updated_at)
                VALUES (?, ?, ?, ?, ?)
                ON CONFLICT(item_id) DO UPDATE SET
                    bytes_uploaded = excluded.bytes_uploaded,
                    total_bytes = excluded.total_bytes,
                    status_message = excluded.status_message,
                    updated_at = excluded.updated_at
                """,
                (item_id, int(bytes_uploaded), int(total_bytes), status_message, time.time()),
            )

    def get_progress(self, item_id: int) -> Optional[ProgressRecord]:
        with self.transaction() as conn:
            row = conn.execute(
                "SELECT * FROM upload_progress WHERE item_id = ?", (item_id,)
            ).fetchone()
        return self._row_to_progress(row) if row is not None else None

    # ------------------------------------------------------------------
    # History
    # ------------------------------------------------------------------

    def insert_history(self, item: QueueItem, final_state: QueueState, **overrides: Any) -> int:
        record = {
            "item_id": item.id,
            "display_name": item.display_name,
            "content_type": item.content_type.value,
            "origin": item.origin.value,
            "final_state": final_state.value,
            "finished_at": time.time(),
            "size_bytes": item.size_bytes,
            "upload_duration_ms": item.upload_duration_ms,
            "total_attempts": item.attempt_count,
            "destination_url": item.destination_url,
            "final_error": item.last_error,
        }
        record.update(overrides)
        columns = ", ".join(record)
        placeholders = ", ".join("?" for _ in record)
        with self.transaction() as conn:
            cursor = conn.execute(
                f"INSERT INTO upload_history ({columns}) VALUES ({placeholders})",
                tuple(record.values()),
            )
        return int(cursor.lastrowid)

    def list_history(
        self, *, limit: int = 100, item_id: Optional[int] = None
    ) -> List[HistoryRecord]:
        safe_limit = max(1, min(10_000, int(limit)))
        with self.transaction() as conn:
            if item_id is None:
                rows = conn.execute(
                    "SELECT * FROM upload_history ORDER BY finished_at DESC, id DESC LIMIT ?",
                    (safe_limit,),
                ).fetchall()
            else:
                rows = conn.execute(
                    "SELECT * FROM upload_history WHERE item_id = ? "
                    "ORDER BY finished_at DESC, id DESC LIMIT ?",
                    (item_id, safe_limit),
                ).fetchall()
        return [self._row_to_history(row) for row in rows]

    # ------------------------------------------------------------------
    # Data sources
    # ------------------------------------------------------------------

    def add_data_source(
        self,
        *,
        name: str,
        source_type: SourceType,
        enabled: bool = True,
        folder_path: Optional[str] = None,
        api_endpoint: Optional[str] = None,
        api_key: Optional[str] = None,
        polling_interval_minutes: float = 5.0,
        file_pattern: Optional[str] = "*.*",
        additional_settings: Optional[Dict[str, Any]] = None,
    ) -> DataSourceConfig:
        with self.transaction() as conn:
            cursor = conn.execute(
                """
                INSERT INTO data_sources (
                    name, source_type, enabled, folder_path, api_endpoint, api_key,
                    polling_interval_minutes, file_pattern, created_at, additional_settings
                )
                VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
                """,
                (
                    name,
                    _enum_value(source_type),
                    1 if enabled else 0,
                    folder_path,
                    api_endpoint,
                    api_key,
                    float(polling_interval_minutes),
                    file_pattern,
                    time.time(),
                    json.dumps(additional_settings or {}),
                ),
            )
            source_id = int(cursor.lastrowid)
        source = self.get_data_source(source_id)
        if source is None:
            raise FerryError(f"Data source {source_id} vanished after insert")
        return source

    def get_data_source(self, source_id: int) -> Optional[DataSourceConfig]:
        with self.transaction() as conn:
            row = conn.execute("SELECT * FROM data_sources WHERE id = ?", (source_id,)).fetchone()
        return self._row_to_source(row) if row is not None else None

    def list_data_sources(
        self,
        *,
        source_type: Optional[SourceType] = None,
        enabled_only: bool = False,
    ) -> List[DataSourceConfig]:
        clauses: List[str] = []
        params: List[Any] = []
        if source_type is not None:
            clauses.append("source_type = ?")
            params.append(_enum_value(source_type))
        if enabled_only:
            clauses.append("enabled = 1")
        where = f"WHERE {' AND '.join(clauses)}" if clauses else ""
        with self.transaction() as conn:
            rows = conn.execute(
                f"SELECT * FROM data_sources {where} ORDER BY id ASC", tuple(params)
            ).fetchall()
        return [self._row_to_source(row) for row in rows]

    def update_data_source(self, source_id: int, **fields: Any) -> None:
        unknown = set(fields) - set(_DATA_SOURCE_COLUMNS)
        if unknown:
            raise ValueError(f"Unknown data source columns: {sorted(unknown)}")
        if not fields:
            return
        if "additional_settings" in fields:
            fields["additional_settings"] = json.dumps(fields["additional_settings"] or {})
        if "enabled" in fields:
            fields["enabled"] = 1 if fields["enabled"] else 0
        assignments = ", ".join(f"{col} = ?" for col in fields)
        params = tuple(_enum_value(v) for v in fields.values()) + (source_id,)
        with self.transaction() as conn:
            conn.execute(f"UPDATE data_sources SET {assignments} WHERE id = ?", params)

    def set_data_source_enabled(self, source_id: int, enabled: bool) -> None:
        self.update_data_source(source_id, enabled=enabled)

    def touch_data_source(self, source_id: int, when: Optional[float] = None) -> None:
        self.update_data_source(source_id, last_processed_at=when if when is not None else time.time())

    def delete_data_source(self, source_id: int) -> bool:
        with self.transaction() as conn:
            cursor = conn.execute("DELETE FROM data_sources WHERE id = ?", (source_id,))
        return cursor.rowcount > 0

    # ------------------------------------------------------------------
    # Settings (raw rows; typed access lives in ferry.store.settings)
    # ------------------------------------------------------------------

    def get_setting_row(self, key: str) -> Optional[Dict[str, Any]]:
        with self.transaction() as conn:
            row = conn.execute("SELECT * FROM settings WHERE key = ?", (key,)).fetchone()
        return dict(row) if row is not None else None

    def put_setting(
        self,
        key: str,
        value: str,
        *,
        description: Optional[str] = None,
        category: Optional[str] = None,
        overwrite: bool = True,
    ) -> None:
        verb = "INSERT OR REPLACE" if overwrite else "INSERT OR IGNORE"
        with self.transaction() as conn:
            conn.execute(
                f"{verb} INTO settings (key, value, description, category, updated_at) "
                "VALUES (?, ?, ?, ?, ?)",
                (key, value, description, category, time.time()),
            )

    def list_setting_rows(self, category: Optional[str] = None) -> List[Dict[str, Any]]:
        with self.transaction() as conn:
            if category is None:
                rows = conn.execute("SELECT * FROM settings ORDER BY key").fetchall()
            else:
                rows = conn.execute(
                    "SELECT * FROM settings WHERE category = ? ORDER BY key", (category,)
                ).fetchall()
        return [dict(row) for row in rows]

    def delete_setting(self, key: str) -> bool:
        with self.transaction() as conn:
            cursor = conn.execute("DELETE FROM settings WHERE key = ?", (key,))
        return cursor.rowcount > 0

    def get_meta(self, key: str, default: Optional[str] = None) -> Optional[str]:
        with self.transaction() as conn:
            row = conn.execute("SELECT value FROM schema_meta WHERE key = ?", (key,)).fetchone()
        if row is None:
            return default
        return row[0]
