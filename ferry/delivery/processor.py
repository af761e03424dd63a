"""
Ferry Upload Processor
----------------------
Drains the upload queue into the storage backend with bounded concurrency.

A drain cycle claims up to ``max_concurrent - in_flight`` due items and
delivers them concurrently, awaiting the whole batch. Free slots are
computed and claimed items registered in the in-flight map without
yielding to the event loop in between, so overlapping cycles (timer tick
plus a manual ``process_now``) never exceed the bound.
"""

import asyncio
import logging
import time
from collections import deque
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Callable, Deque, Dict, List, Optional, Set

from ferry.core.errors import FerryError
from ferry.core.types import ActiveUploadInfo, ProcessorStatus, QueueItem, QueueState
from ferry.delivery.queue import UploadQueue
from ferry.delivery.storage import StorageBackend, build_object_name
from ferry.ingestion.content import move_to_archive
from ferry.notify import (
    PROCESSOR_STATUS_CHANGED,
    UPLOAD_COMPLETED,
    UPLOAD_FAILED,
    UPLOAD_PROGRESS,
    Notifier,
)
from ferry.scheduling import PeriodicTask

logger = logging.getLogger("Ferry.Processor")

DEFAULT_CONTAINER = "ferry-data"
DEFAULT_MAX_CONCURRENT = 3
DEFAULT_INTERVAL_SECONDS = 10.0
INITIAL_DELAY_SECONDS = 5.0
STOP_TIMEOUT_SECONDS = 30.0
RECENT_ERROR_CAPACITY = 50

_BYTES_PER_MB = 1024.0 * 1024.0


class UploadProcessor:
    def __init__(
        self,
        queue: UploadQueue,
        backend: StorageBackend,
        settings=None,
        notifier: Optional[Notifier] = None,
        *,
        store=None,
        archive_root: Optional[str] = None,
        initial_delay: float = INITIAL_DELAY_SECONDS,
        stop_timeout: float = STOP_TIMEOUT_SECONDS,
        stop_poll_interval: float = 1.0,
        sleep_fn: Callable[[float], Any] = asyncio.sleep,
        now_fn: Callable[[], float] = time.time,
    ) -> None:
        self._queue = queue
        self._backend = backend
        self._settings = settings
        self._notifier = notifier
        self._store = store
        self._archive_root = archive_root
        self._initial_delay = initial_delay
        self._stop_timeout = stop_timeout
        self._stop_poll_interval = stop_poll_interval
        self._sleep_fn = sleep_fn
        self._now_fn = now_fn

        self._lock = asyncio.Lock()
        self._running = False
        self._paused = False
        self._started_at: Optional[float] = None
        self._timer: Optional[PeriodicTask] = None

        self._active: Dict[int, ActiveUploadInfo] = {}
        self._abandoned: Dict[int, ActiveUploadInfo] = {}
        self._deliveries: Dict[int, asyncio.Task] = {}
        self._recent_errors: Deque[str] = deque(maxlen=RECENT_ERROR_CAPACITY)
        self._ensured_containers: Set[str] = set()
        self._total_bytes_uploaded = 0
        self._completed_count = 0
        self._last_completed_at: Optional[float] = None

    @property
    def is_running(self) -> bool:
        return self._running

    @property
    def is_paused(self) -> bool:
        return self._paused

    @property
    def in_flight(self) -> int:
        return len(self._active)

    # ------------------------------------------------------------------
    # Settings
    # ------------------------------------------------------------------

    def _max_concurrent(self) -> int:
        if self._settings is None:
            return DEFAULT_MAX_CONCURRENT
        value = self._settings.get_or_default("Upload.MaxConcurrentUploads", int, DEFAULT_MAX_CONCURRENT)
        return max(1, value)

    def _interval_seconds(self) -> float:
        if self._settings is None:
            return DEFAULT_INTERVAL_SECONDS
        value = self._settings.get_or_default(
            "Upload.ProcessingIntervalSeconds", float, DEFAULT_INTERVAL_SECONDS
        )
        return max(1.0, value)

    def _container(self) -> str:
        if self._settings is None:
            return DEFAULT_CONTAINER
        return self._settings.get_value("Storage.DefaultContainer") or DEFAULT_CONTAINER

    def _archive_path(self) -> Path:
        configured = None
        if self._settings is not None:
            configured = self._settings.get_value("Monitoring.ArchivePath")
        return Path(configured or self._archive_root or "archive")

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    async def start(self) -> None:
        if self._running:
            logger.warning("Upload processor is already running")
            return
        async with self._lock:
            if self._running:
                return
            logger.info("Starting upload processor...")
            # Deliveries abandoned by an earlier stop keep their claim until they finish.
            busy = [item_id for item_id, task in self._deliveries.items() if not task.done()]
            for item_id in busy:
                info = self._abandoned.get(item_id)
                if info is not None:
                    self._active[item_id] = info
            self._abandoned.clear()
            self._queue.recover_interrupted(exclude=busy)
            self._running = True
            self._paused = False
            self._started_at = self._now_fn()
            self._timer = PeriodicTask(
                "upload-processor",
                self._on_tick,
                interval=self._interval_seconds,
                initial_delay=self._initial_delay,
                sleep_fn=self._sleep_fn,
            )
            self._timer.start()
            logger.info(
                "Upload processor started with %.0fs processing interval", self._interval_seconds()
            )
            self._publish(PROCESSOR_STATUS_CHANGED, {"running": True, "started_at": self._started_at})

    async def stop(self) -> None:
        if not self._running:
            logger.warning("Upload processor is not running")
            return
        async with self._lock:
            if not self._running:
                return
            logger.info("Stopping upload processor...")
            timer = self._timer
            self._timer = None
            if timer is not None:
                await timer.stop(wait=False)

            waited = 0.0
            while self._active and waited < self._stop_timeout:
                logger.info("Waiting for %d uploads to complete...", len(self._active))
                await self._sleep_fn(self._stop_poll_interval)
                waited += self._stop_poll_interval
            if self._active:
                logger.warning("Stopped with %d uploads still in progress", len(self._active))

            self._running = False
            self._paused = False
            self._abandoned.update(self._active)
            self._active.clear()
            logger.info("Upload processor stopped")
            self._publish(PROCESSOR_STATUS_CHANGED, {"running": False})

    def pause(self) -> None:
        self._paused = True
        logger.info("Upload processing paused")
        self._publish(PROCESSOR_STATUS_CHANGED, {"running": self._running, "paused": True})

    def resume(self) -> None:
        self._paused = False
        logger.info("Upload processing resumed")
        self._publish(PROCESSOR_STATUS_CHANGED, {"running": self._running, "paused": False})

    async def _on_tick(self) -> None:
        try:
            await self.process_pending()
        except Exception as exc:
            logger.error("Error in upload processing cycle: %s", exc)
            self._add_recent_error(f"Processing error: {exc}")

    # ------------------------------------------------------------------
    # Drain cycle
    # ------------------------------------------------------------------

    async def process_pending(self, max_concurrent: Optional[int] = None) -> int:
        """Run one drain cycle; returns the number of items claimed."""
        if not self._running or self._paused:
            return 0
        limit = max_concurrent if max_concurrent is not None else self._max_concurrent()
        if len(self._active) >= limit:
            logger.debug("Max concurrent uploads reached (%d/%d)", len(self._active), limit)
            return 0

        if not await self._backend.is_connected():
            logger.warning("Storage backend is not connected, skipping upload processing")
            self._add_recent_error("Storage backend connection failed")
            return 0

        container = self._container()
        if container not in self._ensured_containers:
            if await self._backend.ensure_container(container):
                self._ensured_containers.add(container)

        if not self._running or self._paused:
            return 0
        free = limit - len(self._active)
        if free <= 0:
            return 0
        claimed = self._queue.claim_pending(free)
        for item in claimed:
            self._active[item.id] = ActiveUploadInfo(
                item_id=item.id,
                display_name=item.display_name,
                total_bytes=item.size_bytes,
                started_at=self._now_fn(),
            )
        if not claimed:
            return 0

        # Shielded so a cancelled caller abandons, rather than cancels, the batch.
        tasks = [self._start_delivery(item, container) for item in claimed]
        results = await asyncio.shield(asyncio.gather(*tasks, return_exceptions=True))
        for item, result in zip(claimed, results):
            if isinstance(result, BaseException):
                logger.error("Delivery task for item %d raised: %s", item.id, result)
        return len(claimed)

    def _start_delivery(self, item: QueueItem, container: str) -> asyncio.Task:
        task = asyncio.create_task(self._deliver(item, container))
        self._deliveries[item.id] = task

        def _done(_: asyncio.Task) -> None:
            if self._deliveries.get(item.id) is task:
                del self._deliveries[item.id]
            self._abandoned.pop(item.id, None)

        task.add_done_callback(_done)
        return task

    async def process_now(self) -> int:
        return await self.process_pending()

    async def retry_failed(self) -> int:
        count = self._queue.reset_failed()
        logger.info("Reset %d failed uploads for retry", count)
        return count

    async def _deliver(self, item: QueueItem, container: str) -> None:
        info = self._active[item.id]
        try:
            info.status = "processing"
            source = Path(item.source_path)
            if not source.is_file():
                self._record_failure(item, "File not found")
                return

            def _progress(done: int, total: int) -> None:
                self.on_progress(item.id, done, total, "Uploading")

            info.status = "uploading"
            result = await self._backend.upload(
                source, container, build_object_name(item.display_name), _progress
            )

            if result.success:
                self._queue.complete_success(item.id, result.url or "", result.duration_ms)
                info.status = "completed"
                info.percent_complete = 100.0
                self._total_bytes_uploaded += result.bytes_sent
                self._completed_count += 1
                self._last_completed_at = self._now_fn()
                logger.info(
                    "Successfully uploaded %s (ID: %d) to %s", item.display_name, item.id, result.url
                )
                self._publish(UPLOAD_COMPLETED, {
                    "item_id": item.id,
                    "display_name": item.display_name,
                    "url": result.url,
                    "duration_seconds": result.duration_ms / 1000.0,
                })
                self._archive_source(item)
            else:
                info.status = "failed"
                self._record_failure(item, result.error or "Upload failed")
        except Exception as exc:
            info.status = "error"
            logger.error("Unexpected error processing upload %d (%s): %s", item.id, item.display_name, exc)
            self._record_failure(item, f"Unexpected error: {exc}")
        finally:
            self._active.pop(item.id, None)

    def _record_failure(self, item: QueueItem, error: str) -> None:
        attempts = item.attempt_count + 1
        try:
            updated = self._queue.increment_attempt(item.id, error)
            attempts = updated.attempt_count
        except FerryError as exc:
            logger.error("Failed to record attempt for item %d: %s", item.id, exc)
        self._add_recent_error(f"{item.display_name}: {error}")
        logger.error("Upload failed for %s (ID: %d): %s", item.display_name, item.id, error)
        self._publish(UPLOAD_FAILED, {
            "item_id": item.id,
            "display_name": item.display_name,
            "error": error,
            "attempt_count": attempts,
        })

    def on_progress(
        self, item_id: int, bytes_done: int, bytes_total: int, message: Optional[str] = None
    ) -> None:
        """Progress sink invoked by the storage backend during a transfer."""
        percent = (bytes_done / bytes_total * 100.0) if bytes_total > 0 else 0.0
        info = self._active.get(item_id)
        if info is not None:
            info.bytes_uploaded = bytes_done
            info.total_bytes = bytes_total
            info.percent_complete = percent
            info.status = message or "uploading"
        try:
            self._queue.record_progress(item_id, bytes_done, bytes_total, message)
        except Exception as exc:
            logger.error("Error updating upload progress for %d: %s", item_id, exc)
        self._publish(UPLOAD_PROGRESS, {
            "item_id": item_id,
            "display_name": info.display_name if info is not None else None,
            "percent_complete": percent,
            "bytes_uploaded": bytes_done,
            "total_bytes": bytes_total,
        })

    def _archive_source(self, item: QueueItem) -> None:
        source = Path(item.source_path)
        if not source.exists():
            return
        relative_root = None
        if self._store is not None and item.source_id is not None:
            config = self._store.get_data_source(item.source_id)
            if config is not None and config.folder_path:
                relative_root = config.folder_path
        try:
            move_to_archive(source, self._archive_path() / "completed", relative_root=relative_root)
        except FerryError as exc:
            logger.warning("Failed to archive source file %s: %s", source, exc)

    # ------------------------------------------------------------------
    # Status
    # ------------------------------------------------------------------

    def _add_recent_error(self, error: str) -> None:
        stamp = datetime.now(timezone.utc).strftime("%H:%M:%S")
        self._recent_errors.append(f"[{stamp}] {error}")

    def _average_mb_per_minute(self) -> float:
        if self._total_bytes_uploaded == 0 or not self._running or self._started_at is None:
            return 0.0
        elapsed_minutes = (self._now_fn() - self._started_at) / 60.0
        if elapsed_minutes <= 0:
            return 0.0
        return round(self._total_bytes_uploaded / _BYTES_PER_MB / elapsed_minutes, 2)

    def status(self) -> ProcessorStatus:
        active: List[ActiveUploadInfo] = [info.model_copy() for info in self._active.values()]
        return ProcessorStatus(
            running=self._running,
            paused=self._paused,
            started_at=self._started_at,
            active_uploads=len(active),
            pending_count=self._queue.count(QueueState.PENDING),
            failed_count=self._queue.count(QueueState.FAILED),
            completed_count=self._completed_count,
            total_bytes_uploaded=self._total_bytes_uploaded,
            average_mb_per_minute=self._average_mb_per_minute(),
            last_upload_completed_at=self._last_completed_at,
            recent_errors=list(self._recent_errors),
            active=active,
        )

    def _publish(self, event: str, payload: Dict[str, Any]) -> None:
        if self._notifier is not None:
            self._notifier.publish(event, payload)
