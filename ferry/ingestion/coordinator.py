"""
Source coordinators.

A coordinator owns the running watchers (or pollers) for every enabled
data source of one type and periodically reconciles them against the
stored configuration: sources that disappeared or were disabled are
stopped, new ones are started, and sources whose configuration changed
are restarted. Source-wide errors are recorded on that source's status
without affecting the others.
"""

import asyncio
import logging
import time
from typing import Any, Callable, Dict, Optional, Protocol

from ferry.core.types import CoordinatorStatus, DataSourceConfig, SourceStatus, SourceType
from ferry.delivery.queue import UploadQueue
from ferry.ingestion.api_poller import ApiPoller
from ferry.ingestion.folder_watcher import FolderWatcher
from ferry.scheduling import PeriodicTask
from ferry.store.sqlite_store import SQLiteStore

logger = logging.getLogger("Ferry.Coordinator")

DEFAULT_REFRESH_MINUTES = 5.0

SourceCallback = Callable[[int, str], Any]


class SourceRunner(Protocol):
    @property
    def config(self) -> DataSourceConfig: ...

    @property
    def is_running(self) -> bool: ...

    async def start(self) -> None: ...

    async def stop(self) -> None: ...


RunnerFactory = Callable[[DataSourceConfig, SourceCallback, SourceCallback], SourceRunner]


class SourceCoordinator:
    def __init__(
        self,
        source_type: SourceType,
        store: SQLiteStore,
        runner_factory: RunnerFactory,
        settings=None,
        *,
        sleep_fn: Callable[[float], Any] = asyncio.sleep,
        now_fn: Callable[[], float] = time.time,
    ) -> None:
        self.source_type = source_type
        self._store = store
        self._runner_factory = runner_factory
        self._settings = settings
        self._sleep_fn = sleep_fn
        self._now_fn = now_fn

        self._lock = asyncio.Lock()
        self._refresh_lock = asyncio.Lock()
        self._running = False
        self._started_at: Optional[float] = None
        self._timer: Optional[PeriodicTask] = None
        self._runners: Dict[int, SourceRunner] = {}
        self._statuses: Dict[int, SourceStatus] = {}
        self._total_processed = 0

    @property
    def is_running(self) -> bool:
        return self._running

    def runner(self, source_id: int) -> Optional[SourceRunner]:
        return self._runners.get(source_id)

    def _refresh_interval(self) -> float:
        minutes = DEFAULT_REFRESH_MINUTES
        if self._settings is not None:
            minutes = self._settings.get_or_default(
                "Sources.RefreshIntervalMinutes", float, DEFAULT_REFRESH_MINUTES
            )
        return max(1.0, minutes * 60.0)

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    async def start(self) -> None:
        if self._running:
            logger.warning("%s coordinator is already running", self.source_type.value)
            return
        async with self._lock:
            if self._running:
                return
            logger.info("Starting %s coordinator...", self.source_type.value)
            self._started_at = self._now_fn()
            self._running = True
            await self.refresh()
            interval = self._refresh_interval()
            self._timer = PeriodicTask(
                f"{self.source_type.value}-coordinator",
                self.refresh,
                interval=self._refresh_interval,
                initial_delay=interval,
                sleep_fn=self._sleep_fn,
            )
            self._timer.start()
            logger.info(
                "%s coordinator started with %d active source(s)",
                self.source_type.value,
                len(self._runners),
            )

    async def stop(self) -> None:
        if not self._running:
            logger.warning("%s coordinator is not running", self.source_type.value)
            return
        async with self._lock:
            if not self._running:
                return
            logger.info("Stopping %s coordinator...", self.source_type.value)
            timer = self._timer
            self._timer = None
            if timer is not None:
                await timer.stop()
            async with self._refresh_lock:
                for source_id in list(self._runners):
                    await self._stop_runner(source_id)
                self._statuses.clear()
            self._running = False
            logger.info("%s coordinator stopped", self.source_type.value)

    # ------------------------------------------------------------------
    # Reconciliation
    # ------------------------------------------------------------------

    async def refresh(self) -> None:
        """Reconcile running sources with the enabled configuration."""
        if not self._running:
            return
        async with self._refresh_lock:
            try:
                sources = self._store.list_data_sources(
                    source_type=self.source_type, enabled_only=True
                )
            except Exception as exc:
                logger.error("Failed to refresh %s data sources: %s", self.source_type.value, exc)
                return
            logger.debug("Refreshing %d enabled %s source(s)", len(sources), self.source_type.value)

            current = {source.id: source for source in sources}
            for source_id in set(self._runners) - set(current):
                await self._stop_runner(source_id)
                logger.info("Stopped %s runner for data source %d", self.source_type.value, source_id)
            for source_id in set(self._statuses) - set(current):
                self._statuses.pop(source_id, None)

            for source in sources:
                runner = self._runners.get(source.id)
                if runner is not None and runner.config.runtime_fingerprint() != source.runtime_fingerprint():
                    logger.info("Configuration of data source %d changed; restarting", source.id)
                    await self._stop_runner(source.id)
                    runner = None
                if runner is None:
                    await self._start_runner(source)

    async def _start_runner(self, source: DataSourceConfig) -> bool:
        status = self._statuses.get(source.id)
        if status is None:
            status = SourceStatus(
                id=source.id,
                name=source.name,
                source_type=source.source_type,
                enabled=source.enabled,
            )
            self._statuses[source.id] = status
        else:
            status.name = source.name
            status.enabled = source.enabled

        runner = self._runner_factory(source, self._on_processed, self._on_error)
        try:
            await runner.start()
        except Exception as exc:
            status.active = False
            if status.last_error is None:
                status.last_error = str(exc)
                status.last_error_at = self._now_fn()
            logger.error("Failed to start %s source %s: %s", self.source_type.value, source.name, exc)
            return False
        self._runners[source.id] = runner
        status.active = True
        logger.info("Started %s runner for %s", self.source_type.value, source.name)
        return True

    async def _stop_runner(self, source_id: int) -> None:
        runner = self._runners.pop(source_id, None)
        if runner is None:
            return
        try:
            await runner.stop()
        except Exception as exc:
            logger.error("Error stopping %s runner %d: %s", self.source_type.value, source_id, exc)
        status = self._statuses.get(source_id)
        if status is not None:
            status.active = False

    # ------------------------------------------------------------------
    # Per-source management
    # ------------------------------------------------------------------

    async def start_source(self, source_id: int) -> bool:
        """Enable a source and start its runner when the coordinator is running."""
        source = self._store.get_data_source(source_id)
        if source is None or source.source_type != self.source_type:
            return False
        self._store.set_data_source_enabled(source_id, True)
        if not self._running:
            return True
        async with self._refresh_lock:
            if source_id in self._runners:
                return True
            refreshed = self._store.get_data_source(source_id)
            return await self._start_runner(refreshed)

    async def stop_source(self, source_id: int) -> bool:
        """Disable a source and stop its runner."""
        source = self._store.get_data_source(source_id)
        if source is None or source.source_type != self.source_type:
            return False
        self._store.set_data_source_enabled(source_id, False)
        async with self._refresh_lock:
            await self._stop_runner(source_id)
            status = self._statuses.get(source_id)
            if status is not None:
                status.enabled = False
        return True

    # ------------------------------------------------------------------
    # Callbacks and status
    # ------------------------------------------------------------------

    def _on_processed(self, source_id: int, name: str) -> None:
        self._total_processed += 1
        status = self._statuses.get(source_id)
        if status is not None:
            status.last_activity = self._now_fn()
            status.items_processed += 1
            status.last_error = None
            status.last_error_at = None
        logger.debug("Item processed from source %d: %s", source_id, name)

    def _on_error(self, source_id: int, error: str) -> None:
        status = self._statuses.get(source_id)
        if status is not None:
            status.last_error = error
            status.last_error_at = self._now_fn()
        logger.error("Error in data source %d: %s", source_id, error)

    def status(self) -> CoordinatorStatus:
        statuses = [status.model_copy() for status in self._statuses.values()]
        activity = [s.last_activity for s in statuses if s.last_activity is not None]
        return CoordinatorStatus(
            source_type=self.source_type,
            running=self._running,
            started_at=self._started_at,
            active_runners=len(self._runners),
            total_items_processed=self._total_processed,
            last_activity=max(activity) if activity else None,
            sources=statuses,
        )


def folder_coordinator(
    store: SQLiteStore,
    queue: UploadQueue,
    settings=None,
    *,
    archive_root: Optional[str] = None,
    **watcher_kwargs: Any,
) -> SourceCoordinator:
    def _factory(config: DataSourceConfig, on_processed: SourceCallback, on_error: SourceCallback):
        return FolderWatcher(
            config,
            queue,
            settings,
            on_file_processed=on_processed,
            on_error=on_error,
            archive_root=archive_root,
            **watcher_kwargs,
        )

    return SourceCoordinator(SourceType.FOLDER, store, _factory, settings)


def api_coordinator(
    store: SQLiteStore,
    queue: UploadQueue,
    settings=None,
    *,
    temp_dir: Optional[str] = None,
    **poller_kwargs: Any,
) -> SourceCoordinator:
    def _factory(config: DataSourceConfig, on_processed: SourceCallback, on_error: SourceCallback):
        return ApiPoller(
            config,
            queue,
            settings,
            store=store,
            on_item_processed=on_processed,
            on_error=on_error,
            temp_dir=temp_dir,
            **poller_kwargs,
        )

    return SourceCoordinator(SourceType.API, store, _factory, settings)
