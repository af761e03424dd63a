"""End-to-end tests for the composed gateway."""

import asyncio

import pytest

from ferry.core.config import FerryConfig, StorageConfig
from ferry.core.errors import ConfigurationError
from ferry.core.types import ContentType, Origin, QueueState, SourceType
from ferry.delivery.storage import HttpObjectStorageBackend, LocalDirectoryBackend
from ferry.gateway import Gateway, build_backend
from ferry.notify import UPLOAD_COMPLETED


def test_build_backend_selection(tmp_path):
    assert isinstance(build_backend(StorageConfig(local_root=str(tmp_path))), LocalDirectoryBackend)
    with pytest.raises(ConfigurationError):
        build_backend(StorageConfig(backend="http"))


@pytest.mark.asyncio
async def test_build_http_backend():
    backend = build_backend(StorageConfig(backend="http", base_url="http://store.test/"))
    assert isinstance(backend, HttpObjectStorageBackend)
    assert backend.base_url == "http://store.test"
    await backend.close()


@pytest.mark.asyncio
async def test_folder_file_is_delivered_end_to_end(tmp_path):
    config = FerryConfig.for_data_dir(str(tmp_path / "data"))
    inbox = tmp_path / "inbox"
    inbox.mkdir()
    (inbox / "reading.json").write_text('{"id": 42, "value": 3.5}')

    gateway = Gateway(config)
    completed = []
    gateway.notifier.subscribe(
        lambda event, payload: completed.append(payload) if event == UPLOAD_COMPLETED else None
    )
    gateway.store.add_data_source(name="inbox", source_type=SourceType.FOLDER, folder_path=str(inbox))

    async with gateway:
        assert gateway.is_running
        for _ in range(300):
            if gateway.queue.list_pending():
                break
            await asyncio.sleep(0.05)
        (item,) = gateway.queue.list_pending()
        assert item.origin == Origin.FOLDER
        assert item.content_type == ContentType.STRUCTURED

        assert await gateway.process_now() == 1
        delivered = gateway.queue.get(item.id)
        status = gateway.status()

    assert not gateway.is_running
    assert delivered.state == QueueState.COMPLETED
    assert delivered.destination_url.startswith("file://")
    assert completed and completed[0]["item_id"] == item.id
    stored = list((tmp_path / "data" / "storage" / "ferry-data").rglob("*reading.json"))
    assert len(stored) == 1
    assert not (inbox / "reading.json").exists()
    assert list((tmp_path / "data" / "archive" / "completed").glob("*_reading.json"))

    assert status["running"] is True
    assert status["processor"]["completed_count"] == 1
    assert status["folder_sources"]["active_runners"] == 1
    assert status["api_sources"]["active_runners"] == 0
    assert status["queue"]["by_state"]["completed"] == 1
    assert "platform" in status


@pytest.mark.asyncio
async def test_management_operations(tmp_path):
    gateway = Gateway(FerryConfig.for_data_dir(str(tmp_path)))
    try:
        item = gateway.queue.enqueue("/missing/a.txt", ContentType.OTHER, Origin.API, 1, "h")
        gateway.queue.increment_attempt(item.id, "Access denied")
        assert await gateway.retry_failed() == 1

        gateway.pause()
        assert gateway.processor.is_paused
        gateway.resume()
        assert not gateway.processor.is_paused

        assert gateway.archive_completed() == 0
        await gateway.run_retention_sweep()
    finally:
        await gateway.close()


@pytest.mark.asyncio
async def test_start_and_stop_are_idempotent(tmp_path):
    gateway = Gateway(FerryConfig.for_data_dir(str(tmp_path)))
    await gateway.start()
    await gateway.start()
    assert gateway.processor.is_running
    assert gateway.folders.is_running
    assert gateway.apis.is_running

    await gateway.stop()
    await gateway.stop()
    assert not gateway.processor.is_running
    assert not gateway.folders.is_running
    await gateway.close()
