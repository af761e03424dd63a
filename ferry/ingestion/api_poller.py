"""
Ferry API Poller
----------------
Polls one API data source on a fixed cadence and stages each logical item
of the response as a file in the API temp directory before enqueueing it.

A failed poll (transport error, timeout, non-success status, malformed
body) is reported to the owning coordinator and leaves the queue untouched.
"""

import asyncio
import logging
import tempfile
import time
from pathlib import Path
from typing import Any, Callable, Dict, Optional

import httpx

from ferry.core.errors import ConfigurationError
from ferry.core.types import DataSourceConfig, Origin
from ferry.delivery.queue import UploadQueue
from ferry.ingestion.content import compute_sha256
from ferry.ingestion.items import ApiItem, ItemIdStrategy, build_items
from ferry.scheduling import PeriodicTask, maybe_await
from ferry.version import __version__

logger = logging.getLogger("Ferry.ApiPoller")

SourceCallback = Callable[[int, str], Any]

DEFAULT_TIMEOUT_SECONDS = 30.0
USER_AGENT = f"ferry/{__version__}"


class ApiPoller:
    def __init__(
        self,
        config: DataSourceConfig,
        queue: UploadQueue,
        settings=None,
        *,
        store=None,
        on_item_processed: Optional[SourceCallback] = None,
        on_error: Optional[SourceCallback] = None,
        temp_dir: Optional[str] = None,
        http_client: Optional[httpx.AsyncClient] = None,
        sleep_fn: Callable[[float], Any] = asyncio.sleep,
    ) -> None:
        self._config = config
        self._queue = queue
        self._settings = settings
        self._store = store
        self._on_item_processed = on_item_processed
        self._on_error = on_error
        self._temp_dir = temp_dir
        self._client = http_client
        self._owns_client = http_client is None
        self._sleep_fn = sleep_fn

        self._lock = asyncio.Lock()
        self._running = False
        self._task: Optional[PeriodicTask] = None
        self._headers: Dict[str, str] = {}
        self._timeout = DEFAULT_TIMEOUT_SECONDS
        self._id_strategy = ItemIdStrategy.from_settings(config.additional_settings)
        self._last_poll_at: Optional[float] = None

    @property
    def config(self) -> DataSourceConfig:
        return self._config

    @property
    def is_running(self) -> bool:
        return self._running

    @property
    def last_poll_at(self) -> Optional[float]:
        return self._last_poll_at

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    async def start(self) -> None:
        if self._running:
            return
        async with self._lock:
            if self._running:
                return
            logger.info("Starting API poller for endpoint: %s", self._config.api_endpoint)
            if not self._config.api_endpoint or not self._config.api_endpoint.strip():
                error = "API endpoint is not configured"
                await self._report_error(error)
                raise ConfigurationError(error)

            self._configure_client()
            interval = max(1.0, float(self._config.polling_interval_minutes) * 60.0)
            self._task = PeriodicTask(
                f"api-poller-{self._config.id}",
                self.poll_once,
                interval=interval,
                initial_delay=0.0,
                sleep_fn=self._sleep_fn,
            )
            self._running = True
            self._task.start()
            logger.info(
                "Started API poller for %s polling %s every %s minutes",
                self._config.name,
                self._config.api_endpoint,
                self._config.polling_interval_minutes,
            )

    async def stop(self) -> None:
        if not self._running:
            return
        async with self._lock:
            if not self._running:
                return
            self._running = False
            task = self._task
            self._task = None
            if task is not None:
                # Lets a poll in progress finish before the client closes.
                await task.stop()
            if self._owns_client and self._client is not None:
                await self._client.aclose()
                self._client = None
            logger.info("Stopped API poller for %s", self._config.name)

    def _configure_client(self) -> None:
        if self._settings is not None:
            self._timeout = self._settings.get_or_default(
                "Api.TimeoutSeconds", float, DEFAULT_TIMEOUT_SECONDS
            )
        headers: Dict[str, str] = {"User-Agent": USER_AGENT}
        if self._config.api_key:
            headers["X-API-Key"] = self._config.api_key
        custom = self._config.additional_settings.get("headers")
        if isinstance(custom, dict):
            headers.update({str(k): str(v) for k, v in custom.items()})
        elif custom is not None:
            logger.warning("Ignoring non-object headers setting for %s", self._config.name)
        self._headers = headers
        if self._client is None:
            self._client = httpx.AsyncClient()
            self._owns_client = True

    # ------------------------------------------------------------------
    # Polling
    # ------------------------------------------------------------------

    async def poll_once(self) -> int:
        """Run one poll cycle; returns the number of items newly queued."""
        if self._client is None or not self._headers:
            self._configure_client()
        endpoint = self._config.api_endpoint or ""
        logger.debug("Polling API %s at %s", self._config.name, endpoint)
        try:
            response = await self._client.get(endpoint, headers=self._headers, timeout=self._timeout)
            response.raise_for_status()
            media_type = response.headers.get("content-type", "")
            data_field = self._config.additional_settings.get("dataField")
            items = build_items(
                response.content,
                media_type,
                self._config.name,
                strategy=self._id_strategy,
                data_field=str(data_field) if data_field else None,
            )
            queued = 0
            for item in items:
                if await self._stage_and_enqueue(item):
                    queued += 1
        except httpx.TimeoutException:
            logger.error("Timeout polling %s at %s", self._config.name, endpoint)
            await self._report_error("API request timed out")
            return 0
        except httpx.HTTPStatusError as exc:
            logger.error("HTTP error polling %s: %s", self._config.name, exc)
            await self._report_error(
                f"HTTP error polling API: status {exc.response.status_code}"
            )
            return 0
        except httpx.HTTPError as exc:
            logger.error("HTTP error polling %s: %s", self._config.name, exc)
            await self._report_error(f"HTTP error polling API: {exc}")
            return 0
        except Exception as exc:
            logger.error("Unexpected error polling %s: %s", self._config.name, exc)
            await self._report_error(f"Unexpected error polling API: {exc}")
            return 0

        self._last_poll_at = time.time()
        if self._store is not None:
            self._store.touch_data_source(self._config.id)
        logger.debug("Processed %d item(s) from API %s, %d queued", len(items), self._config.name, queued)
        return queued

    def _staging_dir(self) -> Path:
        configured = None
        if self._settings is not None:
            configured = self._settings.get_value("Api.TempDirectory")
        directory = Path(
            configured or self._temp_dir or Path(tempfile.gettempdir()) / "ferry" / "api-data"
        )
        directory.mkdir(parents=True, exist_ok=True)
        return directory

    async def _stage_and_enqueue(self, item: ApiItem) -> bool:
        content_hash = compute_sha256(item.body)
        if self._queue.is_duplicate(content_hash):
            logger.debug("Duplicate data detected from API %s, skipping", self._config.name)
            return False

        path = _unique_path(self._staging_dir(), item.file_name)
        await asyncio.to_thread(path.write_bytes, item.body)
        queued = self._queue.enqueue(
            str(path),
            item.content_type,
            Origin.API,
            len(item.body),
            content_hash,
            source_id=self._config.id,
        )
        if queued.source_path != str(path):
            # Another source queued the same content first.
            path.unlink(missing_ok=True)
            return False
        logger.info("Added API data to upload queue: %s (ID: %d)", item.file_name, queued.id)
        await self._report_processed(item.file_name)
        return True

    async def _report_processed(self, file_name: str) -> None:
        if self._on_item_processed is None:
            return
        try:
            await maybe_await(self._on_item_processed(self._config.id, file_name))
        except Exception as exc:
            logger.warning("Item-processed callback failed for %s: %s", self._config.name, exc)

    async def _report_error(self, message: str) -> None:
        if self._on_error is None:
            return
        try:
            await maybe_await(self._on_error(self._config.id, message))
        except Exception as exc:
            logger.warning("Error callback failed for %s: %s", self._config.name, exc)


def _unique_path(directory: Path, file_name: str) -> Path:
    path = directory / file_name
    counter = 1
    while path.exists():
        path = directory / f"{Path(file_name).stem}_{counter}{Path(file_name).suffix}"
        counter += 1
    return path
