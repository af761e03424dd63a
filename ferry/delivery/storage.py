"""
Ferry Storage Backends
----------------------
Remote object storage used exclusively by the upload processor.

Failures the remote side reports are returned as an unsuccessful
``UploadResult`` whose ``error`` text the retry policy can classify
("Authentication failed", "Access denied", "File too large", ...).
Transport failures raise ``StorageBackendError``.
"""

import asyncio
import logging
import os
import time
from datetime import datetime, timezone
from pathlib import Path
from typing import AsyncIterator, Callable, Dict, Optional, Protocol, runtime_checkable

import httpx

from ferry.core.errors import StorageBackendError
from ferry.core.types import UploadResult
from ferry.ingestion.content import safe_file_name

logger = logging.getLogger("Ferry.Storage")

ProgressCallback = Callable[[int, int], None]

DEFAULT_CHUNK_SIZE = 1024 * 1024

_STATUS_ERRORS: Dict[int, str] = {
    400: "Invalid blob name",
    401: "Authentication failed",
    403: "Access denied",
    404: "Container not found",
    413: "File too large",
}


@runtime_checkable
class StorageBackend(Protocol):
    async def is_connected(self) -> bool: ...

    async def ensure_container(self, name: str) -> bool: ...

    async def upload(
        self,
        path: Path,
        container: str,
        object_name: str,
        progress: Optional[ProgressCallback] = None,
    ) -> UploadResult: ...


def build_object_name(file_name: str, now: Optional[datetime] = None) -> str:
    """Timestamp-namespaced object name: ``YYYY/MM/DD/YYYYMMDD_HHMMSS_fff_<name>``."""
    moment = now or datetime.now(timezone.utc)
    stamp = moment.strftime("%Y%m%d_%H%M%S_") + f"{moment.microsecond // 1000:03d}"
    safe = safe_file_name(file_name).replace(" ", "_")
    return f"{moment:%Y/%m/%d}/{stamp}_{safe}"


def _elapsed_ms(started: float) -> int:
    return int((time.perf_counter() - started) * 1000)


class LocalDirectoryBackend:
    """Stores objects as files under ``root/<container>/<object name>``."""

    def __init__(self, root: str, *, chunk_size: int = DEFAULT_CHUNK_SIZE) -> None:
        self.root = Path(root)
        self.chunk_size = chunk_size

    async def is_connected(self) -> bool:
        try:
            self.root.mkdir(parents=True, exist_ok=True)
        except OSError as exc:
            logger.error("Storage root %s is unavailable: %s", self.root, exc)
            return False
        return os.access(self.root, os.W_OK)

    async def ensure_container(self, name: str) -> bool:
        try:
            (self.root / name).mkdir(parents=True, exist_ok=True)
        except OSError as exc:
            logger.error("Failed to create container %s: %s", name, exc)
            return False
        return True

    async def upload(
        self,
        path: Path,
        container: str,
        object_name: str,
        progress: Optional[ProgressCallback] = None,
    ) -> UploadResult:
        started = time.perf_counter()
        destination = self.root / container / object_name
        try:
            total = path.stat().st_size
        except FileNotFoundError:
            return UploadResult(success=False, error=f"File not found: {path}")

        sent = 0
        try:
            destination.parent.mkdir(parents=True, exist_ok=True)
            with path.open("rb") as src, destination.open("wb") as dst:
                while True:
                    chunk = await asyncio.to_thread(src.read, self.chunk_size)
                    if not chunk:
                        break
                    await asyncio.to_thread(dst.write, chunk)
                    sent += len(chunk)
                    if progress is not None:
                        progress(sent, total)
        except FileNotFoundError:
            return UploadResult(success=False, error=f"File not found: {path}")
        except PermissionError as exc:
            return UploadResult(success=False, error=f"Access denied: {exc}")
        except OSError as exc:
            raise StorageBackendError(f"Local storage write failed: {exc}") from exc

        logger.debug("Stored %s as %s (%d bytes)", path.name, destination, sent)
        return UploadResult(
            success=True,
            url=destination.resolve().as_uri(),
            bytes_sent=sent,
            duration_ms=_elapsed_ms(started),
        )


class HttpObjectStorageBackend:
    """
    Object storage reached over HTTP: ``PUT {base_url}/{container}/{object}``.

    The request body is streamed from disk in chunks and progress is
    reported as each chunk is handed to the transport.
    """

    def __init__(
        self,
        base_url: str,
        *,
        headers: Optional[Dict[str, str]] = None,
        timeout: float = 300.0,
        chunk_size: int = DEFAULT_CHUNK_SIZE,
        http_client: Optional[httpx.AsyncClient] = None,
    ) -> None:
        self.base_url = base_url.rstrip("/")
        self.headers = dict(headers or {})
        self.timeout = timeout
        self.chunk_size = chunk_size
        self._owns_client = http_client is None
        self._client = http_client or httpx.AsyncClient(headers=self.headers)

    async def close(self) -> None:
        if self._owns_client:
            await self._client.aclose()

    def _url(self, *parts: str) -> str:
        return "/".join([self.base_url, *(part.strip("/") for part in parts)])

    async def is_connected(self) -> bool:
        try:
            response = await self._client.head(self.base_url, headers=self.headers, timeout=10.0)
        except httpx.HTTPError as exc:
            logger.warning("Storage endpoint %s unreachable: %s", self.base_url, exc)
            return False
        if response.status_code >= 500:
            logger.warning("Storage endpoint %s unhealthy (status=%d)", self.base_url, response.status_code)
            return False
        return True

    async def ensure_container(self, name: str) -> bool:
        try:
            response = await self._client.put(
                self._url(name), headers=self.headers, timeout=self.timeout
            )
        except httpx.HTTPError as exc:
            logger.error("Failed to ensure container %s: %s", name, exc)
            return False
        if response.is_success or response.status_code == 409:
            return True
        logger.error("Failed to ensure container %s (status=%d)", name, response.status_code)
        return False

    async def _stream(
        self, path: Path, total: int, progress: Optional[ProgressCallback]
    ) -> AsyncIterator[bytes]:
        sent = 0
        with path.open("rb") as handle:
            while True:
                chunk = await asyncio.to_thread(handle.read, self.chunk_size)
                if not chunk:
                    break
                sent += len(chunk)
                yield chunk
                if progress is not None:
                    progress(sent, total)

    async def upload(
        self,
        path: Path,
        container: str,
        object_name: str,
        progress: Optional[ProgressCallback] = None,
    ) -> UploadResult:
        started = time.perf_counter()
        try:
            total = path.stat().st_size
        except FileNotFoundError:
            return UploadResult(success=False, error=f"File not found: {path}")

        url = self._url(container, object_name)
        headers = dict(self.headers)
        headers["Content-Length"] = str(total)
        try:
            response = await self._client.put(
                url,
                content=self._stream(path, total, progress),
                headers=headers,
                timeout=self.timeout,
            )
        except FileNotFoundError:
            return UploadResult(success=False, error=f"File not found: {path}")
        except httpx.HTTPError as exc:
            raise StorageBackendError(f"Upload to {url} failed: {exc}") from exc

        if not response.is_success:
            reason = _STATUS_ERRORS.get(response.status_code, "Upload rejected")
            logger.warning("Upload of %s rejected (status=%d)", path.name, response.status_code)
            return UploadResult(
                success=False,
                error=f"{reason} (status={response.status_code})",
                duration_ms=_elapsed_ms(started),
            )

        return UploadResult(
            success=True,
            url=url,
            bytes_sent=total,
            duration_ms=_elapsed_ms(started),
            etag=response.headers.get("etag"),
        )
