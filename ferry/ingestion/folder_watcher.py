"""
Ferry Folder Watcher
--------------------
Watches one folder data source and feeds new files into the upload queue.

Filesystem notifications arrive on the watchdog observer thread and are
handed to the event loop with ``call_soon_threadsafe``; each file is then
processed as a tracked asyncio task. Files already present when the
watcher starts are processed one at a time as a background backlog.

After a processing attempt a file is either queued (and later archived by
the upload processor) or moved to one of the ``duplicate``, ``invalid`` or
``failed`` quarantine folders under the archive root.
"""

import asyncio
import fnmatch
import logging
import os
import time
from pathlib import Path
from typing import Any, Awaitable, Callable, Dict, Optional, Set

from watchdog.events import FileSystemEvent, FileSystemEventHandler
from watchdog.observers import Observer

from ferry.core.errors import ConfigurationError, FerryError
from ferry.core.types import DataSourceConfig, Origin, QueueItem, QueueState
from ferry.delivery.queue import UploadQueue
from ferry.ingestion.content import (
    classify,
    compute_file_sha256,
    move_to_archive,
    normalize_folder_path,
    validate,
)
from ferry.ingestion.readiness import wait_until_ready
from ferry.scheduling import maybe_await

logger = logging.getLogger("Ferry.FolderWatcher")

SourceCallback = Callable[[int, str], Any]

DEBOUNCE_SECONDS = 2.0
DEBOUNCE_RETENTION_SECONDS = 300.0
BACKLOG_DELAY_SECONDS = 0.1
DEFAULT_MAX_FILE_SIZE_MB = 100

_MATCH_ALL_PATTERNS = {"", "*", "*.*"}
# A same-path hit in these states means the file is still waiting for delivery.
_IN_QUEUE_STATES = {QueueState.PENDING, QueueState.PROCESSING}


class _WatchHandler(FileSystemEventHandler):
    """Forwards file creations, modifications and moves-in to the watcher."""

    def __init__(self, watcher: "FolderWatcher") -> None:
        self._watcher = watcher

    def on_created(self, event: FileSystemEvent) -> None:
        if not event.is_directory:
            self._watcher._dispatch_from_thread(os.fsdecode(event.src_path), "created")

    def on_modified(self, event: FileSystemEvent) -> None:
        if not event.is_directory:
            self._watcher._dispatch_from_thread(os.fsdecode(event.src_path), "modified")

    def on_moved(self, event: FileSystemEvent) -> None:
        if not event.is_directory:
            self._watcher._dispatch_from_thread(os.fsdecode(event.dest_path), "created")


class FolderWatcher:
    def __init__(
        self,
        config: DataSourceConfig,
        queue: UploadQueue,
        settings=None,
        *,
        on_file_processed: Optional[SourceCallback] = None,
        on_error: Optional[SourceCallback] = None,
        archive_root: Optional[str] = None,
        ready_poll_interval: float = 0.5,
        ready_timeout: float = 10.0,
        debounce_seconds: float = DEBOUNCE_SECONDS,
        backlog_delay: float = BACKLOG_DELAY_SECONDS,
        observer_factory: Callable[[], Any] = Observer,
        now_fn: Callable[[], float] = time.monotonic,
    ) -> None:
        self._config = config
        self._queue = queue
        self._settings = settings
        self._on_file_processed = on_file_processed
        self._on_error = on_error
        self._archive_root = archive_root
        self._ready_poll_interval = ready_poll_interval
        self._ready_timeout = ready_timeout
        self._debounce_seconds = debounce_seconds
        self._backlog_delay = backlog_delay
        self._observer_factory = observer_factory
        self._now_fn = now_fn

        self._lock = asyncio.Lock()
        self._running = False
        self._observer: Optional[Any] = None
        self._loop: Optional[asyncio.AbstractEventLoop] = None
        self._folder: Optional[Path] = None
        self._recent: Dict[str, float] = {}
        self._tasks: Set[asyncio.Task] = set()

    @property
    def config(self) -> DataSourceConfig:
        return self._config

    @property
    def is_running(self) -> bool:
        return self._running

    @property
    def folder(self) -> Optional[Path]:
        return self._folder

    @property
    def _recursive(self) -> bool:
        return bool(self._config.additional_settings.get("recursive", False))

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    async def start(self) -> None:
        if self._running:
            return
        async with self._lock:
            if self._running:
                return

            raw_path = self._config.folder_path
            if not raw_path or not raw_path.strip():
                error = "Folder path is not configured"
                await self._report_error(error)
                raise ConfigurationError(error)

            create = bool(self._config.additional_settings.get("createIfMissing", True))
            try:
                folder = normalize_folder_path(raw_path, create_if_missing=create)
            except (OSError, ValueError) as exc:
                error = f"Failed to validate folder path: {raw_path}. Error: {exc}"
                logger.error(error)
                await self._report_error(error)
                raise ConfigurationError(error) from exc

            self._loop = asyncio.get_running_loop()
            observer = self._observer_factory()
            observer.schedule(_WatchHandler(self), str(folder), recursive=self._recursive)
            observer.start()
            self._observer = observer
            self._folder = folder
            self._running = True
            logger.info(
                "Started folder watcher for %s monitoring %s with pattern %s",
                self._config.name,
                folder,
                self._config.file_pattern or "*.*",
            )
            self._track(self._process_existing_files(folder))

    async def stop(self) -> None:
        if not self._running:
            return
        async with self._lock:
            if not self._running:
                return
            self._running = False
            observer = self._observer
            self._observer = None
            if observer is not None:
                observer.stop()
                await asyncio.to_thread(observer.join, 5.0)
            self._recent.clear()
            logger.info("Stopped folder watcher for %s", self._config.name)

    async def drain(self) -> None:
        """Wait for every file task started so far to finish."""
        while self._tasks:
            await asyncio.gather(*list(self._tasks), return_exceptions=True)

    # ------------------------------------------------------------------
    # Event plumbing
    # ------------------------------------------------------------------

    def _track(self, coro: Awaitable[Any]) -> asyncio.Task:
        task = asyncio.ensure_future(coro)
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)
        return task

    def _dispatch_from_thread(self, path: str, event: str) -> None:
        loop = self._loop
        if loop is None or loop.is_closed():
            return
        loop.call_soon_threadsafe(self._dispatch, path, event)

    def _dispatch(self, path: str, event: str) -> None:
        if not self._running or not self.matches(Path(path)):
            return
        self._track(self.process_file(path, event))

    def matches(self, path: Path) -> bool:
        if self._is_under_archive(path):
            return False
        pattern = (self._config.file_pattern or "").strip()
        if pattern in _MATCH_ALL_PATTERNS:
            return True
        return fnmatch.fnmatch(path.name, pattern)

    def _is_under_archive(self, path: Path) -> bool:
        try:
            path.resolve().relative_to(Path(self._archive_path()).resolve())
        except (ValueError, OSError):
            return False
        return True

    async def _process_existing_files(self, folder: Path) -> None:
        try:
            iterator = folder.rglob("*") if self._recursive else folder.iterdir()
            files = sorted(p for p in iterator if p.is_file() and self.matches(p))
        except OSError as exc:
            error = f"Error processing existing files: {exc}"
            logger.error("Error processing existing files in %s: %s", folder, exc)
            await self._report_error(error)
            return

        logger.info("Processing %d existing files in %s", len(files), folder)
        for path in files:
            if not self._running:
                break
            await self.process_file(str(path), "existing")
            await asyncio.sleep(self._backlog_delay)

    # ------------------------------------------------------------------
    # Per-file processing
    # ------------------------------------------------------------------

    async def process_file(self, file_path: str, event: str = "created") -> Optional[QueueItem]:
        """
        Validate, hash and enqueue one file.

        Returns the queue item the file maps to, or None when it was
        debounced, skipped or quarantined.
        """
        path = Path(file_path)
        key = str(path)
        now = self._now_fn()
        last = self._recent.get(key)
        if last is not None and now - last < self._debounce_seconds:
            return None
        self._recent[key] = now

        try:
            if not path.is_file():
                logger.debug("File vanished before processing (%s): %s", event, path)
                return None

            ready = await wait_until_ready(
                path, poll_interval=self._ready_poll_interval, timeout=self._ready_timeout
            )
            if not ready:
                logger.warning(
                    "File may still be in use after waiting %.1fs, processing anyway: %s",
                    self._ready_timeout,
                    path,
                )

            verdict = await asyncio.to_thread(self._check_file, path)
            if verdict == "skip":
                logger.debug("Skipping empty file: %s", path)
                return None
            if verdict == "invalid":
                logger.warning("Quarantining invalid file: %s", path)
                self._quarantine(path, "invalid")
                return None

            content_hash = await asyncio.to_thread(compute_file_sha256, path)
            size = path.stat().st_size

            existing = self._queue.find_by_hash(content_hash)
            if existing is not None:
                return self._handle_duplicate(path, existing)

            item = self._queue.enqueue(
                str(path),
                classify(path.name),
                Origin.FOLDER,
                size,
                content_hash,
                source_id=self._config.id,
            )
            if item.source_path != str(path):
                return self._handle_duplicate(path, item)

            logger.info("Added file to upload queue: %s (ID: %d)", path.name, item.id)
            await self._report_processed(path.name)
            return item
        except Exception as exc:
            error = f"Error processing file {path}: {exc}"
            logger.error(error)
            await self._report_error(error)
            self._quarantine(path, "failed")
            return None
        finally:
            self._prune_recent(now)

    def _handle_duplicate(self, path: Path, existing: QueueItem) -> Optional[QueueItem]:
        if existing.source_path == str(path) and existing.state in _IN_QUEUE_STATES:
            logger.debug("File already queued as item %d: %s", existing.id, path)
            return existing
        logger.info("Duplicate file detected, skipping: %s (matches item %d)", path.name, existing.id)
        self._quarantine(path, "duplicate")
        return None

    def _check_file(self, path: Path) -> str:
        size = path.stat().st_size
        if size == 0:
            return "skip"
        max_mb = DEFAULT_MAX_FILE_SIZE_MB
        if self._settings is not None:
            max_mb = self._settings.get_or_default("Upload.MaxFileSizeMB", int, max_mb)
        if size > max_mb * 1024 * 1024:
            logger.warning(
                "File too large (%dMB > %dMB): %s", size // (1024 * 1024), max_mb, path
            )
            return "invalid"
        if not validate(classify(path.name), path):
            return "invalid"
        return "ok"

    def _archive_path(self) -> str:
        if self._settings is not None:
            configured = self._settings.get_value("Monitoring.ArchivePath")
            if configured:
                return configured
        if self._archive_root:
            return self._archive_root
        folder = self._folder or Path(self._config.folder_path or ".")
        return str(folder.parent / "archive")

    def _quarantine(self, path: Path, reason: str) -> None:
        if not path.exists():
            return
        try:
            move_to_archive(path, Path(self._archive_path()) / reason, relative_root=self._folder)
            logger.debug("Moved file to archive (%s): %s", reason, path.name)
        except FerryError as exc:
            logger.error("Failed to archive file %s: %s", path, exc)

    def _prune_recent(self, now: float) -> None:
        cutoff = now - DEBOUNCE_RETENTION_SECONDS
        for key in [k for k, seen in self._recent.items() if seen < cutoff]:
            self._recent.pop(key, None)

    async def _report_processed(self, file_name: str) -> None:
        if self._on_file_processed is None:
            return
        try:
            await maybe_await(self._on_file_processed(self._config.id, file_name))
        except Exception as exc:
            logger.warning("File-processed callback failed for %s: %s", self._config.name, exc)

    async def _report_error(self, message: str) -> None:
        if self._on_error is None:
            return
        try:
            await maybe_await(self._on_error(self._config.id, message))
        except Exception as exc:
            logger.warning("Error callback failed for %s: %s", self._config.name, exc)
