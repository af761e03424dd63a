"""
Ferry Gateway
-------------
Composition root: builds the store, settings, queue, storage backend,
upload processor and both source coordinators from a ``FerryConfig`` and
runs them as one unit.

Start order is processor, folder coordinator, API coordinator, retention
sweep; stop runs in reverse.
"""

import asyncio
import logging
from typing import Any, Callable, Dict, Optional

import httpx

from ferry.core.config import FerryConfig, StorageConfig
from ferry.core.errors import ConfigurationError
from ferry.delivery.processor import UploadProcessor
from ferry.delivery.queue import UploadQueue
from ferry.delivery.retry import RetryPolicy
from ferry.delivery.storage import HttpObjectStorageBackend, LocalDirectoryBackend, StorageBackend
from ferry.ingestion.coordinator import SourceCoordinator, api_coordinator, folder_coordinator
from ferry.notify import Notifier
from ferry.platform import get_platform_info
from ferry.scheduling import PeriodicTask
from ferry.store.settings import SettingsStore
from ferry.store.sqlite_store import SQLiteStore

logger = logging.getLogger("Ferry.Gateway")

RETENTION_SWEEP_INTERVAL_SECONDS = 6 * 3600.0
RETENTION_SWEEP_INITIAL_DELAY_SECONDS = 60.0
DEFAULT_CLEANUP_DAYS = 30.0


def build_backend(
    config: StorageConfig, *, http_client: Optional[httpx.AsyncClient] = None
) -> StorageBackend:
    if config.backend == "http":
        if not config.base_url:
            raise ConfigurationError("HTTP storage backend requires a base URL (FERRY_STORAGE_URL)")
        return HttpObjectStorageBackend(
            config.base_url,
            headers=config.headers,
            timeout=config.timeout_seconds,
            http_client=http_client,
        )
    return LocalDirectoryBackend(config.local_root)


class Gateway:
    def __init__(
        self,
        config: FerryConfig,
        *,
        backend: Optional[StorageBackend] = None,
        notifier: Optional[Notifier] = None,
        sleep_fn: Callable[[float], Any] = asyncio.sleep,
    ) -> None:
        self.config = config
        config.ensure_directories()

        self.store = SQLiteStore(config.store.path)
        self.settings = SettingsStore(
            self.store, archive_dir=config.archive_dir, api_temp_dir=config.api_temp_dir
        )
        self.retry_policy = RetryPolicy(self.settings)
        self.queue = UploadQueue(self.store, self.retry_policy)
        self.backend = backend or build_backend(config.storage)
        self.notifier = notifier or Notifier()

        self.processor = UploadProcessor(
            self.queue,
            self.backend,
            self.settings,
            self.notifier,
            store=self.store,
            archive_root=config.archive_dir,
            sleep_fn=sleep_fn,
        )
        self.folders: SourceCoordinator = folder_coordinator(
            self.store, self.queue, self.settings, archive_root=config.archive_dir
        )
        self.apis: SourceCoordinator = api_coordinator(
            self.store, self.queue, self.settings, temp_dir=config.api_temp_dir
        )
        self._retention = PeriodicTask(
            "retention-sweep",
            self.run_retention_sweep,
            interval=RETENTION_SWEEP_INTERVAL_SECONDS,
            initial_delay=RETENTION_SWEEP_INITIAL_DELAY_SECONDS,
            sleep_fn=sleep_fn,
        )
        self._running = False

    @property
    def is_running(self) -> bool:
        return self._running

    async def start(self) -> None:
        if self._running:
            return
        logger.info("Starting Ferry gateway (data_dir=%s)", self.config.data_dir)
        await self.processor.start()
        await self.folders.start()
        await self.apis.start()
        self._retention.start()
        self._running = True
        logger.info("Ferry gateway started")

    async def stop(self) -> None:
        if not self._running:
            return
        logger.info("Stopping Ferry gateway...")
        await self._retention.stop()
        await self.apis.stop()
        await self.folders.stop()
        await self.processor.stop()
        self._running = False
        logger.info("Ferry gateway stopped")

    async def close(self) -> None:
        await self.stop()
        close = getattr(self.backend, "close", None)
        if close is not None:
            await close()
        self.store.close()

    async def __aenter__(self) -> "Gateway":
        await self.start()
        return self

    async def __aexit__(self, exc_type, exc, tb) -> None:
        await self.close()

    # ------------------------------------------------------------------
    # Management operations
    # ------------------------------------------------------------------

    async def process_now(self) -> int:
        return await self.processor.process_now()

    async def retry_failed(self) -> int:
        return await self.processor.retry_failed()

    def pause(self) -> None:
        self.processor.pause()

    def resume(self) -> None:
        self.processor.resume()

    def archive_completed(self, days: Optional[float] = None) -> int:
        if days is None:
            days = self.settings.get_or_default("System.CleanupDays", float, DEFAULT_CLEANUP_DAYS)
        return self.queue.archive_completed_older_than(days)

    async def run_retention_sweep(self) -> None:
        archived = self.archive_completed()
        logger.info("Retention sweep archived %d item(s)", archived)

    def status(self) -> Dict[str, Any]:
        return {
            "running": self._running,
            "processor": self.processor.status().model_dump(),
            "folder_sources": self.folders.status().model_dump(),
            "api_sources": self.apis.status().model_dump(),
            "queue": self.queue.summary(),
            "retention": self._retention.status,
            "platform": get_platform_info(),
        }
