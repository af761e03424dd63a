"""Tests for the storage backends."""

from datetime import datetime, timezone

import httpx
import pytest

from ferry.core.errors import StorageBackendError
from ferry.delivery.retry import RetryPolicy
from ferry.delivery.storage import (
    HttpObjectStorageBackend,
    LocalDirectoryBackend,
    StorageBackend,
    build_object_name,
)


def test_object_names_are_timestamp_namespaced():
    now = datetime(2024, 2, 9, 8, 7, 6, 543000, tzinfo=timezone.utc)
    assert build_object_name("my report?.json", now) == "2024/02/09/20240209_080706_543_my_report_.json"


def test_backends_satisfy_protocol(tmp_path):
    assert isinstance(LocalDirectoryBackend(str(tmp_path)), StorageBackend)
    client = httpx.AsyncClient(transport=httpx.MockTransport(lambda request: httpx.Response(200)))
    assert isinstance(HttpObjectStorageBackend("http://store", http_client=client), StorageBackend)


# ─────────────────────────────────────────────
# Local directory backend
# ─────────────────────────────────────────────

@pytest.mark.asyncio
async def test_local_upload_copies_in_chunks_with_progress(tmp_path):
    source = tmp_path / "in" / "data.bin"
    source.parent.mkdir()
    source.write_bytes(b"x" * 25)
    backend = LocalDirectoryBackend(str(tmp_path / "store"), chunk_size=10)
    progress = []

    assert await backend.is_connected() is True
    assert await backend.ensure_container("bucket") is True
    result = await backend.upload(source, "bucket", "2024/01/01/data.bin", lambda d, t: progress.append((d, t)))

    assert result.success is True
    assert result.bytes_sent == 25
    assert result.url.startswith("file://")
    assert (tmp_path / "store" / "bucket" / "2024" / "01" / "01" / "data.bin").read_bytes() == b"x" * 25
    assert progress == [(10, 25), (20, 25), (25, 25)]
    assert source.exists()


@pytest.mark.asyncio
async def test_local_upload_of_missing_file_is_non_retryable(tmp_path):
    backend = LocalDirectoryBackend(str(tmp_path / "store"))
    result = await backend.upload(tmp_path / "gone.txt", "bucket", "gone.txt")
    assert result.success is False
    assert RetryPolicy().should_retry(1, result.error) is False


# ─────────────────────────────────────────────
# HTTP object storage backend
# ─────────────────────────────────────────────

def _client(handler):
    return httpx.AsyncClient(transport=httpx.MockTransport(handler))


@pytest.mark.asyncio
async def test_http_upload_streams_body_with_headers(tmp_path):
    source = tmp_path / "photo.png"
    source.write_bytes(b"p" * 30)
    seen = {}

    def handler(request):
        seen["method"] = request.method
        seen["url"] = str(request.url)
        seen["body"] = request.content
        seen["auth"] = request.headers.get("authorization")
        seen["length"] = request.headers.get("content-length")
        return httpx.Response(201, headers={"ETag": '"abc"'})

    backend = HttpObjectStorageBackend(
        "http://store.test/",
        headers={"Authorization": "Bearer k"},
        chunk_size=8,
        http_client=_client(handler),
    )
    progress = []
    result = await backend.upload(source, "bucket", "2024/01/01/photo.png", lambda d, t: progress.append(d))

    assert result.success is True
    assert result.url == "http://store.test/bucket/2024/01/01/photo.png"
    assert result.etag == '"abc"'
    assert result.bytes_sent == 30
    assert seen == {
        "method": "PUT",
        "url": "http://store.test/bucket/2024/01/01/photo.png",
        "body": b"p" * 30,
        "auth": "Bearer k",
        "length": "30",
    }
    assert progress[-1] == 30


@pytest.mark.asyncio
@pytest.mark.parametrize(
    "status,fragment,retryable",
    [
        (401, "Authentication failed", False),
        (403, "Access denied", False),
        (413, "File too large", False),
        (400, "Invalid blob name", False),
        (503, "Upload rejected", True),
    ],
)
async def test_http_status_mapped_to_classifiable_errors(tmp_path, status, fragment, retryable):
    source = tmp_path / "a.txt"
    source.write_bytes(b"abc")
    backend = HttpObjectStorageBackend(
        "http://store.test", http_client=_client(lambda request: httpx.Response(status))
    )

    result = await backend.upload(source, "bucket", "a.txt")

    assert result.success is False
    assert fragment in result.error
    assert f"status={status}" in result.error
    assert RetryPolicy().should_retry(1, result.error) is retryable


@pytest.mark.asyncio
async def test_http_transport_failure_raises(tmp_path):
    source = tmp_path / "a.txt"
    source.write_bytes(b"abc")

    def handler(request):
        raise httpx.ConnectError("connection refused", request=request)

    backend = HttpObjectStorageBackend("http://store.test", http_client=_client(handler))
    with pytest.raises(StorageBackendError):
        await backend.upload(source, "bucket", "a.txt")
    assert await backend.is_connected() is False


@pytest.mark.asyncio
async def test_http_connectivity_and_container():
    calls = []

    def handler(request):
        calls.append((request.method, request.url.path))
        if request.method == "HEAD":
            return httpx.Response(404)
        return httpx.Response(409)

    backend = HttpObjectStorageBackend("http://store.test", http_client=_client(handler))
    assert await backend.is_connected() is True
    assert await backend.ensure_container("bucket") is True
    assert [method for method, _ in calls] == ["HEAD", "PUT"]
    assert calls[1][1] == "/bucket"


@pytest.mark.asyncio
async def test_http_unhealthy_endpoint_is_disconnected():
    backend = HttpObjectStorageBackend(
        "http://store.test", http_client=_client(lambda request: httpx.Response(502))
    )
    assert await backend.is_connected() is False
    assert await backend.ensure_container("bucket") is False


@pytest.mark.asyncio
async def test_owned_client_is_closed():
    backend = HttpObjectStorageBackend("http://store.test")
    await backend.close()
    assert backend._client.is_closed
