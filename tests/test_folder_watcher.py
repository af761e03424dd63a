"""Tests for the folder watcher."""

import asyncio
import json

import pytest
from watchdog.events import FileCreatedEvent, FileMovedEvent

from ferry.core.errors import ConfigurationError
from ferry.core.types import ContentType, DataSourceConfig, Origin, QueueState, SourceType
from ferry.delivery.queue import UploadQueue
from ferry.ingestion.folder_watcher import FolderWatcher
from ferry.store.settings import SettingsStore
from ferry.store.sqlite_store import SQLiteStore


class _StubObserver:
    instances = []

    def __init__(self):
        self.scheduled = []
        self.started = False
        self.stopped = False
        self.joined = False
        _StubObserver.instances.append(self)

    def schedule(self, handler, path, recursive=False):
        self.scheduled.append((handler, path, recursive))

    def start(self):
        self.started = True

    def stop(self):
        self.stopped = True

    def join(self, timeout=None):
        self.joined = True


class _Clock:
    def __init__(self):
        self.now = 1000.0

    def __call__(self):
        return self.now


class _Recorder:
    def __init__(self):
        self.processed = []
        self.errors = []

    def on_processed(self, source_id, name):
        self.processed.append((source_id, name))

    async def on_error(self, source_id, message):
        self.errors.append((source_id, message))


@pytest.fixture(autouse=True)
def _reset_observers():
    _StubObserver.instances.clear()


@pytest.fixture
def store(tmp_path):
    store = SQLiteStore(tmp_path / "ferry.db")
    yield store
    store.close()


@pytest.fixture
def queue(store):
    return UploadQueue(store)


@pytest.fixture
def inbox(tmp_path):
    path = tmp_path / "inbox"
    path.mkdir()
    return path


@pytest.fixture
def archive(tmp_path):
    return tmp_path / "archive"


def _config(folder, **overrides):
    values = dict(
        id=1,
        name="inbox",
        source_type=SourceType.FOLDER,
        folder_path=str(folder),
        file_pattern="*.*",
    )
    values.update(overrides)
    return DataSourceConfig(**values)


def _watcher(config, queue, archive, recorder=None, settings=None, **kwargs):
    recorder = recorder or _Recorder()
    kwargs.setdefault("ready_poll_interval", 0.01)
    kwargs.setdefault("ready_timeout", 0.5)
    kwargs.setdefault("backlog_delay", 0.0)
    return FolderWatcher(
        config,
        queue,
        settings,
        on_file_processed=recorder.on_processed,
        on_error=recorder.on_error,
        archive_root=str(archive),
        observer_factory=_StubObserver,
        **kwargs,
    )


def _quarantined(archive, reason):
    folder = archive / reason
    return sorted(p.name for p in folder.iterdir()) if folder.exists() else []


# ─────────────────────────────────────────────
# Lifecycle
# ─────────────────────────────────────────────

@pytest.mark.asyncio
async def test_start_processes_existing_backlog(queue, inbox, archive):
    (inbox / "a.json").write_text(json.dumps({"id": 1}))
    (inbox / "b.txt").write_text("plain text")
    recorder = _Recorder()
    watcher = _watcher(_config(inbox), queue, archive, recorder)

    await watcher.start()
    await watcher.drain()
    await watcher.stop()

    pending = queue.list_pending()
    assert sorted(item.display_name for item in pending) == ["a.json", "b.txt"]
    assert {item.origin for item in pending} == {Origin.FOLDER}
    assert {item.source_id for item in pending} == {1}
    by_name = {item.display_name: item for item in pending}
    assert by_name["a.json"].content_type == ContentType.STRUCTURED
    assert sorted(name for _, name in recorder.processed) == ["a.json", "b.txt"]
    assert (inbox / "a.json").exists()


@pytest.mark.asyncio
async def test_start_and_stop_are_idempotent(queue, inbox, archive):
    watcher = _watcher(_config(inbox, additional_settings={"recursive": True}), queue, archive)

    await watcher.start()
    await watcher.start()
    assert watcher.is_running
    assert len(_StubObserver.instances) == 1
    observer = _StubObserver.instances[0]
    assert observer.started
    assert observer.scheduled[0][1] == str(inbox.resolve())
    assert observer.scheduled[0][2] is True

    await watcher.stop()
    await watcher.stop()
    assert not watcher.is_running
    assert observer.stopped and observer.joined


@pytest.mark.asyncio
async def test_concurrent_start_and_stop_leave_consistent_state(queue, inbox, archive):
    watcher = _watcher(_config(inbox), queue, archive)
    await asyncio.gather(watcher.start(), watcher.start(), watcher.start())
    assert len(_StubObserver.instances) == 1
    await asyncio.gather(watcher.stop(), watcher.stop())
    assert not watcher.is_running


@pytest.mark.asyncio
async def test_missing_folder_path_fails_fast(queue, archive):
    recorder = _Recorder()
    watcher = _watcher(_config("", folder_path=""), queue, archive, recorder)

    with pytest.raises(ConfigurationError):
        await watcher.start()
    assert not watcher.is_running
    assert recorder.errors == [(1, "Folder path is not configured")]
    assert _StubObserver.instances == []


@pytest.mark.asyncio
async def test_missing_folder_without_auto_create_fails(queue, tmp_path, archive):
    recorder = _Recorder()
    config = _config(tmp_path / "nope", additional_settings={"createIfMissing": False})
    watcher = _watcher(config, queue, archive, recorder)

    with pytest.raises(ConfigurationError):
        await watcher.start()
    assert len(recorder.errors) == 1
    assert "Failed to validate folder path" in recorder.errors[0][1]


@pytest.mark.asyncio
async def test_missing_folder_is_created_by_default(queue, tmp_path, archive):
    target = tmp_path / "created" / "inbox"
    watcher = _watcher(_config(target), queue, archive)
    await watcher.start()
    await watcher.stop()
    assert target.is_dir()


# ─────────────────────────────────────────────
# Event handling
# ─────────────────────────────────────────────

@pytest.mark.asyncio
async def test_observer_events_are_marshalled_onto_the_loop(queue, inbox, archive):
    recorder = _Recorder()
    watcher = _watcher(_config(inbox), queue, archive, recorder)
    await watcher.start()
    await watcher.drain()
    handler = _StubObserver.instances[0].scheduled[0][0]

    created = inbox / "new.txt"
    created.write_text("fresh")
    await asyncio.to_thread(handler.on_created, FileCreatedEvent(str(created)))

    moved = inbox / "moved.txt"
    moved.write_text("moved in")
    await asyncio.to_thread(
        handler.on_moved, FileMovedEvent(str(inbox.parent / "elsewhere.txt"), str(moved))
    )

    for _ in range(50):
        await asyncio.sleep(0.01)
        await watcher.drain()
        if len(queue.list_pending()) == 2:
            break
    await watcher.stop()

    assert sorted(item.display_name for item in queue.list_pending()) == ["moved.txt", "new.txt"]


@pytest.mark.asyncio
async def test_pattern_filters_files(queue, inbox, archive):
    watcher = _watcher(_config(inbox, file_pattern="*.json"), queue, archive)
    assert watcher.matches(inbox / "data.json")
    assert not watcher.matches(inbox / "data.txt")

    everything = _watcher(_config(inbox, file_pattern="*"), queue, archive)
    assert everything.matches(inbox / "anything")
    assert not everything.matches(archive / "completed" / "x.json")


# ─────────────────────────────────────────────
# Per-file processing
# ─────────────────────────────────────────────

@pytest.mark.asyncio
async def test_duplicate_content_is_quarantined(queue, inbox, archive):
    recorder = _Recorder()
    watcher = _watcher(_config(inbox), queue, archive, recorder)
    (inbox / "first.txt").write_text("same bytes")
    (inbox / "second.txt").write_text("same bytes")

    first = await watcher.process_file(str(inbox / "first.txt"))
    second = await watcher.process_file(str(inbox / "second.txt"))

    assert first is not None
    assert second is None
    assert len(queue.list_pending()) == 1
    assert not (inbox / "second.txt").exists()
    assert (inbox / "first.txt").exists()
    assert _quarantined(archive, "duplicate")[0].endswith("_second.txt")
    assert [name for _, name in recorder.processed] == ["first.txt"]


@pytest.mark.asyncio
async def test_reprocessing_the_same_path_keeps_the_file(queue, inbox, archive):
    clock = _Clock()
    watcher = _watcher(_config(inbox), queue, archive, now_fn=clock)
    path = inbox / "a.txt"
    path.write_text("content")

    first = await watcher.process_file(str(path))
    clock.now += 10
    again = await watcher.process_file(str(path))

    assert again is not None and again.id == first.id
    assert path.exists()
    assert _quarantined(archive, "duplicate") == []


@pytest.mark.asyncio
@pytest.mark.parametrize("archive_after", [False, True])
async def test_redropped_delivered_file_is_quarantined(queue, inbox, archive, archive_after):
    clock = _Clock()
    watcher = _watcher(_config(inbox), queue, archive, now_fn=clock)
    path = inbox / "a.txt"
    path.write_text("content")

    first = await watcher.process_file(str(path))
    (claimed,) = queue.claim_pending(1)
    queue.complete_success(claimed.id, "file:///a", 5)
    if archive_after:
        assert queue.archive_completed_older_than(-1) == 1
    path.unlink()

    path.write_text("content")
    clock.now += 10
    assert await watcher.process_file(str(path)) is None

    assert not path.exists()
    assert len(_quarantined(archive, "duplicate")) == 1
    assert queue.get(first.id).state == (QueueState.ARCHIVED if archive_after else QueueState.COMPLETED)


@pytest.mark.asyncio
async def test_debounce_skips_rapid_repeat_events(queue, inbox, archive):
    clock = _Clock()
    watcher = _watcher(_config(inbox), queue, archive, now_fn=clock)
    path = inbox / "a.txt"
    path.write_text("content")

    assert await watcher.process_file(str(path), "created") is not None
    clock.now += 1.0
    assert await watcher.process_file(str(path), "modified") is None
    clock.now += 1.5
    assert await watcher.process_file(str(path), "modified") is not None


@pytest.mark.asyncio
async def test_invalid_structured_file_is_quarantined(queue, inbox, archive):
    watcher = _watcher(_config(inbox), queue, archive)
    path = inbox / "broken.json"
    path.write_text("{not json")

    assert await watcher.process_file(str(path)) is None
    assert queue.list_pending() == []
    assert not path.exists()
    assert len(_quarantined(archive, "invalid")) == 1


@pytest.mark.asyncio
async def test_oversized_file_is_quarantined(store, queue, inbox, archive):
    settings = SettingsStore(store)
    settings.set_value("Upload.MaxFileSizeMB", 0)
    watcher = _watcher(_config(inbox), queue, archive, settings=settings)
    path = inbox / "big.txt"
    path.write_text("more than zero megabytes")

    assert await watcher.process_file(str(path)) is None
    assert len(_quarantined(archive, "invalid")) == 1


@pytest.mark.asyncio
async def test_archive_path_setting_wins(store, queue, inbox, tmp_path, archive):
    configured = tmp_path / "configured-archive"
    settings = SettingsStore(store, archive_dir=str(configured))
    watcher = _watcher(_config(inbox), queue, archive, settings=settings)
    path = inbox / "broken.json"
    path.write_text("[1,")

    await watcher.process_file(str(path))
    assert len(_quarantined(configured, "invalid")) == 1
    assert _quarantined(archive, "invalid") == []


@pytest.mark.asyncio
async def test_empty_file_is_skipped_and_left_in_place(queue, inbox, archive):
    watcher = _watcher(_config(inbox), queue, archive)
    path = inbox / "empty.txt"
    path.write_bytes(b"")

    assert await watcher.process_file(str(path)) is None
    assert path.exists()
    assert queue.list_pending() == []


@pytest.mark.asyncio
async def test_vanished_file_is_ignored(queue, inbox, archive):
    recorder = _Recorder()
    watcher = _watcher(_config(inbox), queue, archive, recorder)
    assert await watcher.process_file(str(inbox / "ghost.txt")) is None
    assert recorder.errors == []


class _ExplodingQueue:
    def find_by_hash(self, content_hash):
        return None

    def enqueue(self, *args, **kwargs):
        raise RuntimeError("database is locked")


@pytest.mark.asyncio
async def test_unexpected_error_quarantines_file_and_reports(inbox, archive):
    recorder = _Recorder()
    watcher = _watcher(_config(inbox), _ExplodingQueue(), archive, recorder)
    path = inbox / "poison.txt"
    path.write_text("payload")

    assert await watcher.process_file(str(path)) is None
    assert not path.exists()
    assert len(_quarantined(archive, "failed")) == 1
    assert len(recorder.errors) == 1
    assert "database is locked" in recorder.errors[0][1]


@pytest.mark.asyncio
async def test_queued_item_is_pending_with_hash(queue, inbox, archive):
    watcher = _watcher(_config(inbox), queue, archive)
    path = inbox / "photo.png"
    path.write_bytes(b"\x89PNG fake")

    item = await watcher.process_file(str(path))
    assert item.state == QueueState.PENDING
    assert item.content_type == ContentType.BINARY
    assert item.size_bytes == len(b"\x89PNG fake")
    assert queue.is_duplicate(item.content_hash)
