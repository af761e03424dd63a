"""
Ferry Upload Queue
------------------
Durable queue of ingested objects and the lifecycle state machine that
governs them:

    pending -> processing -> completed -> archived
                          -> pending      (retryable failure, after backoff)
                          -> failed       (terminal)
    failed  -> pending                    (administrative reset)

``enqueue`` is the only dedup gate. Every terminal outcome also writes an
immutable history row.
"""

import logging
import sqlite3
import time
from datetime import timedelta
from typing import Any, Callable, Dict, Iterable, List, Optional, Tuple

from ferry.core.errors import InvalidTransitionError, QueueItemNotFoundError
from ferry.core.types import (
    ContentType,
    HistoryRecord,
    Origin,
    ProgressRecord,
    QueueItem,
    QueueState,
    is_transition_allowed,
)
from ferry.delivery.retry import RetryPolicy
from ferry.store.sqlite_store import SQLiteStore

logger = logging.getLogger("Ferry.Queue")

_SECONDS_PER_DAY = 86400.0


class UploadQueue:
    def __init__(
        self,
        store: SQLiteStore,
        retry_policy: Optional[RetryPolicy] = None,
        *,
        now_fn: Callable[[], float] = time.time,
    ) -> None:
        self._store = store
        self._retry = retry_policy or RetryPolicy()
        self._now_fn = now_fn

    @property
    def retry_policy(self) -> RetryPolicy:
        return self._retry

    # ------------------------------------------------------------------
    # Ingestion
    # ------------------------------------------------------------------

    def enqueue(
        self,
        source_path: str,
        content_type: ContentType,
        origin: Origin,
        size_bytes: int,
        content_hash: Optional[str] = None,
        *,
        display_name: Optional[str] = None,
        source_id: Optional[int] = None,
    ) -> QueueItem:
        """
        Add an object to the queue, or return the existing item for its hash.

        The lookup and insert share one store transaction, so two sources
        racing on identical content always observe a single row.
        """
        name = display_name or _basename(source_path)
        with self._store.transaction():
            if content_hash:
                existing = self._store.find_by_hash(content_hash)
                if existing is not None:
                    logger.info(
                        "Content already queued as item %d (%s); returning existing item",
                        existing.id,
                        existing.display_name,
                    )
                    return existing
            try:
                item = self._store.insert_item(
                    source_path=source_path,
                    display_name=name,
                    content_type=content_type,
                    origin=origin,
                    size_bytes=int(size_bytes),
                    content_hash=content_hash or None,
                    state=QueueState.PENDING,
                    attempt_count=0,
                    max_attempts=max(1, int(self._retry.max_retries)),
                    created_at=self._now_fn(),
                    source_id=source_id,
                )
            except sqlite3.IntegrityError:
                existing = self._store.find_by_hash(content_hash) if content_hash else None
                if existing is None:
                    raise
                return existing
        logger.info("Queued %s (%s, %d bytes) as item %d", name, origin.value, size_bytes, item.id)
        return item

    # ------------------------------------------------------------------
    # Queries
    # ------------------------------------------------------------------

    def get(self, item_id: int) -> Optional[QueueItem]:
        return self._store.get_item(item_id)

    def _require(self, item_id: int) -> QueueItem:
        item = self._store.get_item(item_id)
        if item is None:
            raise QueueItemNotFoundError(item_id)
        return item

    def find_by_hash(self, content_hash: str) -> Optional[QueueItem]:
        if not content_hash:
            return None
        return self._store.find_by_hash(content_hash)

    def is_duplicate(self, content_hash: str) -> bool:
        return self.find_by_hash(content_hash) is not None

    def list_pending(self) -> List[QueueItem]:
        return self._store.list_items(state=QueueState.PENDING, order_by="created_at")

    def list_failed(self) -> List[QueueItem]:
        return self._store.list_items(
            state=QueueState.FAILED, order_by="last_attempt_at", descending=True
        )

    def next_pending(self) -> Optional[QueueItem]:
        items = self._store.list_items(
            state=QueueState.PENDING,
            order_by="created_at",
            limit=1,
            due_before=self._now_fn(),
        )
        return items[0] if items else None

    def list_recent(self, count: int = 50) -> List[Tuple[QueueItem, Optional[ProgressRecord]]]:
        items = self._store.list_items(order_by="created_at", descending=True, limit=max(1, count))
        return [(item, self._store.get_progress(item.id)) for item in items]

    def summary(self) -> Dict[str, Any]:
        total_count, total_bytes = self._store.totals()
        by_state = {state.value: 0 for state in QueueState}
        by_state.update(self._store.count_by_state())
        return {
            "total_count": total_count,
            "total_bytes": total_bytes,
            "by_state": by_state,
            "generated_at": self._now_fn(),
        }

    def count(self, state: QueueState) -> int:
        return int(self._store.count_by_state().get(state.value, 0))

    def list_history(self, limit: int = 100) -> List[HistoryRecord]:
        return self._store.list_history(limit=limit)

    def get_progress(self, item_id: int) -> Optional[ProgressRecord]:
        return self._store.get_progress(item_id)

    # ------------------------------------------------------------------
    # State transitions
    # ------------------------------------------------------------------

    def transition(
        self, item_id: int, new_state: QueueState, error: Optional[str] = None
    ) -> QueueItem:
        with self._store.transaction():
            item = self._require(item_id)
            if not is_transition_allowed(item.state, new_state):
                raise InvalidTransitionError(item_id, item.state, new_state)

            fields: Dict[str, Any] = {"state": new_state}
            if error is not None:
                fields["last_error"] = error
            now = self._now_fn()
            if new_state == QueueState.COMPLETED:
                fields["completed_at"] = now
            elif new_state == QueueState.PENDING and item.state == QueueState.FAILED:
                fields.update(
                    attempt_count=0, last_error=None, last_attempt_at=None, next_attempt_at=None
                )
            self._store.update_item(item_id, **fields)
            updated = self._require(item_id)
            if new_state in (QueueState.COMPLETED, QueueState.FAILED):
                self._store.insert_history(updated, new_state, finished_at=now)
        logger.debug("Item %d: %s -> %s", item_id, item.state.value, new_state.value)
        return updated

    def record_progress(
        self,
        item_id: int,
        bytes_uploaded: int,
        total_bytes: int,
        message: Optional[str] = None,
    ) -> None:
        self._store.upsert_progress(item_id, bytes_uploaded, total_bytes, message)

    def complete_success(self, item_id: int, destination_url: str, duration_ms: int) -> QueueItem:
        with self._store.transaction():
            item = self._require(item_id)
            if not is_transition_allowed(item.state, QueueState.COMPLETED):
                raise InvalidTransitionError(item_id, item.state, QueueState.COMPLETED)
            now = self._now_fn()
            self._store.update_item(
                item_id,
                state=QueueState.COMPLETED,
                completed_at=now,
                destination_url=destination_url,
                upload_duration_ms=int(duration_ms),
                last_error=None,
                next_attempt_at=None,
            )
            updated = self._require(item_id)
            self._store.insert_history(updated, QueueState.COMPLETED, finished_at=now)
        logger.info("Item %d (%s) delivered to %s", item_id, updated.display_name, destination_url)
        return updated

    def increment_attempt(self, item_id: int, error: Optional[str] = None) -> QueueItem:
        """
        Record one failed delivery attempt.

        The item fails terminally once its attempts are exhausted or the
        error is classified non-retryable; otherwise it returns to pending
        and becomes claimable again after the backoff delay.
        """
        with self._store.transaction():
            item = self._require(item_id)
            if item.is_terminal:
                raise InvalidTransitionError(item_id, item.state, QueueState.FAILED)

            attempt = min(item.attempt_count + 1, item.max_attempts)
            now = self._now_fn()
            terminal = attempt >= item.max_attempts or not self._retry.should_retry(attempt, error)
            fields: Dict[str, Any] = {
                "attempt_count": attempt,
                "last_attempt_at": now,
                "last_error": error,
            }
            if terminal:
                fields.update(state=QueueState.FAILED, next_attempt_at=None)
            else:
                delay: timedelta = self._retry.delay_for(attempt)
                fields.update(
                    state=QueueState.PENDING, next_attempt_at=now + delay.total_seconds()
                )
            self._store.update_item(item_id, **fields)
            updated = self._require(item_id)
            if terminal:
                self._store.insert_history(updated, QueueState.FAILED, finished_at=now)

        if terminal:
            logger.warning(
                "Item %d (%s) failed permanently after %d attempt(s): %s",
                item_id,
                updated.display_name,
                attempt,
                error,
            )
        else:
            logger.info(
                "Item %d (%s) attempt %d failed; retry after %.0fs: %s",
                item_id,
                updated.display_name,
                attempt,
                (updated.next_attempt_at or now) - now,
                error,
            )
        return updated

    def claim_pending(self, limit: int) -> List[QueueItem]:
        """Atomically move up to ``limit`` due pending items to processing."""
        if limit <= 0:
            return []
        with self._store.transaction():
            due = self._store.list_items(
                state=QueueState.PENDING,
                order_by="created_at",
                limit=limit,
                due_before=self._now_fn(),
            )
            claimed: List[QueueItem] = []
            for item in due:
                self._store.update_item(item.id, state=QueueState.PROCESSING)
                claimed.append(item.model_copy(update={"state": QueueState.PROCESSING}))
        return claimed

    def reset_failed(self) -> int:
        ids = self._store.update_state_where(
            from_state=QueueState.FAILED,
            set_fields={
                "state": QueueState.PENDING,
                "attempt_count": 0,
                "last_error": None,
                "last_attempt_at": None,
                "next_attempt_at": None,
            },
        )
        if ids:
            logger.info("Reset %d failed item(s) to pending", len(ids))
        return len(ids)

    def recover_interrupted(self, exclude: Iterable[int] = ()) -> int:
        """
        Return items left in processing by an earlier run to pending.

        Ids in ``exclude`` belong to deliveries that are still running and
        stay in processing.
        """
        skip = sorted({int(item_id) for item_id in exclude})
        extra_where = ""
        if skip:
            placeholders = ", ".join("?" for _ in skip)
            extra_where = f"id NOT IN ({placeholders})"
        ids = self._store.update_state_where(
            from_state=QueueState.PROCESSING,
            set_fields={"state": QueueState.PENDING, "next_attempt_at": None},
            extra_where=extra_where,
            extra_params=skip,
        )
        if ids:
            logger.warning("Recovered %d interrupted item(s): %s", len(ids), ids)
        return len(ids)

    def archive_completed_older_than(self, days: float) -> int:
        cutoff = self._now_fn() - float(days) * _SECONDS_PER_DAY
        ids = self._store.update_state_where(
            from_state=QueueState.COMPLETED,
            set_fields={"state": QueueState.ARCHIVED},
            extra_where="completed_at IS NOT NULL AND completed_at < ?",
            extra_params=(cutoff,),
        )
        if ids:
            logger.info("Archived %d completed item(s) older than %s day(s)", len(ids), days)
        return len(ids)


def _basename(path: str) -> str:
    normalized = path.replace("\\", "/").rstrip("/")
    return normalized.rsplit("/", 1)[-1] or path
