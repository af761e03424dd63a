"""Tests for the upload queue state machine, dedup gate and bulk operations."""

import threading

import pytest

from ferry.core.errors import InvalidTransitionError, QueueItemNotFoundError
from ferry.core.types import ContentType, Origin, QueueState
from ferry.delivery.queue import UploadQueue
from ferry.delivery.retry import RetryPolicy
from ferry.store.sqlite_store import SQLiteStore


class _Clock:
    def __init__(self, start=1_700_000_000.0):
        self.now = start

    def __call__(self):
        return self.now

    def advance(self, seconds):
        self.now += seconds


@pytest.fixture
def store(tmp_path):
    store = SQLiteStore(tmp_path / "queue.db")
    yield store
    store.close()


@pytest.fixture
def clock():
    return _Clock()


@pytest.fixture
def queue(store, clock):
    return UploadQueue(store, RetryPolicy(base_delay=10, max_delay=60, max_retries=5), now_fn=clock)


def _enqueue(queue, name, content_hash=None, size=100, origin=Origin.FOLDER):
    return queue.enqueue(f"/data/in/{name}", ContentType.OTHER, origin, size, content_hash)


def _fail_terminally(queue, item_id):
    queue.transition(item_id, QueueState.PROCESSING)
    return queue.transition(item_id, QueueState.FAILED, "broken")


# ─────────────────────────────────────────────
# Dedup gate
# ─────────────────────────────────────────────

def test_enqueue_same_hash_returns_existing_item(queue):
    first = _enqueue(queue, "a.txt", "h1")
    second = _enqueue(queue, "a.txt", "h1")

    assert second.id == first.id
    assert len(queue.list_pending()) == 1
    assert queue.is_duplicate("h1")
    assert not queue.is_duplicate("h2")


def test_identical_content_from_different_origins_is_one_item(queue):
    folder = _enqueue(queue, "a.json", "same")
    api = queue.enqueue("/tmp/api/b.json", ContentType.STRUCTURED, Origin.API, 100, "same")
    assert api.id == folder.id
    assert api.origin == Origin.FOLDER


def test_enqueue_without_hash_always_inserts(queue):
    a = _enqueue(queue, "a.txt")
    b = _enqueue(queue, "a.txt", "")
    assert a.id != b.id
    assert b.content_hash is None


def test_new_item_defaults(queue, clock):
    item = queue.enqueue(
        "/data/in/report.json",
        ContentType.STRUCTURED,
        Origin.FOLDER,
        42,
        "abc",
        source_id=7,
    )
    assert item.state == QueueState.PENDING
    assert item.display_name == "report.json"
    assert item.attempt_count == 0
    assert item.max_attempts == 5
    assert item.created_at == clock.now
    assert item.source_id == 7


def test_concurrent_enqueue_of_same_hash_creates_one_row(queue):
    results = []
    barrier = threading.Barrier(8)

    def worker(index):
        barrier.wait()
        results.append(_enqueue(queue, f"copy-{index}.bin", "racing-hash").id)

    threads = [threading.Thread(target=worker, args=(i,)) for i in range(8)]
    for t in threads:
        t.start()
    for t in threads:
        t.join()

    assert len(set(results)) == 1
    assert queue.summary()["total_count"] == 1


# ─────────────────────────────────────────────
# Ordering and queries
# ─────────────────────────────────────────────

def test_list_pending_is_oldest_first(queue, clock):
    ids = []
    for name in ("one", "two", "three"):
        ids.append(_enqueue(queue, name).id)
        clock.advance(1)
    assert [item.id for item in queue.list_pending()] == ids
    assert queue.next_pending().id == ids[0]


def test_list_failed_is_most_recent_failure_first(queue, clock):
    a = _enqueue(queue, "a")
    b = _enqueue(queue, "b")
    queue.increment_attempt(a.id, "Access denied")
    clock.advance(5)
    queue.increment_attempt(b.id, "File not found")

    failed = queue.list_failed()
    assert [item.id for item in failed] == [b.id, a.id]


def test_summary_and_recent(queue):
    a = _enqueue(queue, "a", size=10)
    _enqueue(queue, "b", size=30)
    queue.record_progress(a.id, 5, 10, "Uploading")

    summary = queue.summary()
    assert summary["total_count"] == 2
    assert summary["total_bytes"] == 40
    assert summary["by_state"]["pending"] == 2
    assert summary["by_state"]["completed"] == 0

    recent = queue.list_recent(10)
    assert len(recent) == 2
    newest_item, _ = recent[0]
    assert newest_item.display_name == "b"
    by_id = {item.id: progress for item, progress in recent}
    assert by_id[a.id].bytes_uploaded == 5


def test_unknown_item_raises(queue):
    with pytest.raises(QueueItemNotFoundError):
        queue.transition(999, QueueState.PROCESSING)
    with pytest.raises(QueueItemNotFoundError):
        queue.increment_attempt(999, "x")
    assert queue.get(999) is None


# ─────────────────────────────────────────────
# State machine
# ─────────────────────────────────────────────

def test_completed_cannot_return_to_pending(queue):
    item = _enqueue(queue, "a")
    queue.transition(item.id, QueueState.PROCESSING)
    queue.complete_success(item.id, "file:///dest/a", 12)

    with pytest.raises(InvalidTransitionError):
        queue.transition(item.id, QueueState.PENDING)
    with pytest.raises(InvalidTransitionError):
        queue.transition(item.id, QueueState.PROCESSING)


def test_archived_reachable_only_from_completed(queue):
    pending = _enqueue(queue, "p")
    failed = _enqueue(queue, "f")
    _fail_terminally(queue, failed.id)

    with pytest.raises(InvalidTransitionError):
        queue.transition(pending.id, QueueState.ARCHIVED)
    with pytest.raises(InvalidTransitionError):
        queue.transition(failed.id, QueueState.ARCHIVED)

    done = _enqueue(queue, "d")
    queue.transition(done.id, QueueState.PROCESSING)
    queue.transition(done.id, QueueState.COMPLETED)
    archived = queue.transition(done.id, QueueState.ARCHIVED)
    assert archived.state == QueueState.ARCHIVED


def test_transition_to_completed_stamps_time(queue, clock):
    item = _enqueue(queue, "a")
    queue.transition(item.id, QueueState.PROCESSING)
    clock.advance(3)
    done = queue.transition(item.id, QueueState.COMPLETED)
    assert done.completed_at == clock.now


def test_complete_success_records_destination_and_history(queue):
    item = _enqueue(queue, "a", size=256)
    queue.transition(item.id, QueueState.PROCESSING)
    done = queue.complete_success(item.id, "https://store/c/a", 1500)

    assert done.state == QueueState.COMPLETED
    assert done.destination_url == "https://store/c/a"
    assert done.upload_duration_ms == 1500

    history = queue.list_history()
    assert len(history) == 1
    assert history[0].final_state == QueueState.COMPLETED
    assert history[0].size_bytes == 256
    assert history[0].upload_duration_ms == 1500


# ─────────────────────────────────────────────
# Retry bookkeeping
# ─────────────────────────────────────────────

def test_retryable_failure_returns_to_pending_with_backoff(queue, clock):
    item = _enqueue(queue, "a")
    queue.claim_pending(1)

    retried = queue.increment_attempt(item.id, "connection reset")
    assert retried.state == QueueState.PENDING
    assert retried.attempt_count == 1
    assert retried.last_error == "connection reset"
    assert retried.next_attempt_at == clock.now + 10

    assert queue.claim_pending(5) == []
    assert [i.id for i in queue.list_pending()] == [item.id]

    clock.advance(10)
    claimed = queue.claim_pending(5)
    assert [i.id for i in claimed] == [item.id]
    assert claimed[0].state == QueueState.PROCESSING


def test_attempts_exhausted_is_terminal_with_history(queue, clock):
    item = _enqueue(queue, "a")
    seen = []
    for _ in range(5):
        updated = queue.increment_attempt(item.id, "connection reset")
        seen.append(updated.attempt_count)
        clock.advance(3600)

    assert seen == [1, 2, 3, 4, 5]
    final = queue.get(item.id)
    assert final.state == QueueState.FAILED
    assert final.attempt_count == final.max_attempts == 5

    history = queue.list_history()
    assert len(history) == 1
    assert history[0].final_state == QueueState.FAILED
    assert history[0].total_attempts == 5
    assert history[0].final_error == "connection reset"

    with pytest.raises(InvalidTransitionError):
        queue.increment_attempt(item.id, "again")
    assert queue.get(item.id).attempt_count == 5


def test_non_retryable_failure_is_terminal_in_one_step(queue):
    item = _enqueue(queue, "a")
    failed = queue.increment_attempt(item.id, "File not found")
    assert failed.state == QueueState.FAILED
    assert failed.attempt_count == 1


def test_reset_failed_clears_bookkeeping(queue):
    ids = []
    for name in ("a", "b", "c"):
        item = _enqueue(queue, name)
        queue.increment_attempt(item.id, "Access denied")
        ids.append(item.id)
    untouched = _enqueue(queue, "pending")

    assert queue.reset_failed() == 3

    for item_id in ids:
        item = queue.get(item_id)
        assert item.state == QueueState.PENDING
        assert item.attempt_count == 0
        assert item.last_error is None
        assert item.next_attempt_at is None
    assert queue.get(untouched.id).state == QueueState.PENDING
    assert queue.count(QueueState.PENDING) == 4


def test_reset_single_item_via_transition(queue):
    item = _enqueue(queue, "a")
    queue.increment_attempt(item.id, "Access denied")
    reset = queue.transition(item.id, QueueState.PENDING)
    assert reset.attempt_count == 0
    assert reset.last_error is None


# ─────────────────────────────────────────────
# Claiming, recovery and archival
# ─────────────────────────────────────────────

def test_claim_pending_respects_limit_and_order(queue, clock):
    ids = []
    for name in ("a", "b", "c"):
        ids.append(_enqueue(queue, name).id)
        clock.advance(1)

    claimed = queue.claim_pending(2)
    assert [i.id for i in claimed] == ids[:2]
    assert queue.count(QueueState.PROCESSING) == 2
    assert [i.id for i in queue.list_pending()] == ids[2:]
    assert queue.claim_pending(0) == []


def test_recover_interrupted_returns_processing_to_pending(queue, clock):
    a = _enqueue(queue, "a")
    queue.increment_attempt(a.id, "timeout")
    b = _enqueue(queue, "b")
    clock.advance(10)
    assert len(queue.claim_pending(10)) == 2

    assert queue.recover_interrupted() == 2
    assert queue.count(QueueState.PROCESSING) == 0
    assert queue.get(a.id).attempt_count == 1
    assert queue.get(b.id).state == QueueState.PENDING


def test_recover_interrupted_skips_excluded_ids(queue, clock):
    a = _enqueue(queue, "a")
    b = _enqueue(queue, "b")
    assert len(queue.claim_pending(10)) == 2

    assert queue.recover_interrupted(exclude=[a.id]) == 1
    assert queue.get(a.id).state == QueueState.PROCESSING
    assert queue.get(b.id).state == QueueState.PENDING


def test_archive_completed_older_than(queue, clock):
    old = _enqueue(queue, "old")
    queue.transition(old.id, QueueState.PROCESSING)
    queue.complete_success(old.id, "url-old", 1)

    clock.advance(40 * 86400)
    fresh = _enqueue(queue, "fresh")
    queue.transition(fresh.id, QueueState.PROCESSING)
    queue.complete_success(fresh.id, "url-fresh", 1)

    assert queue.archive_completed_older_than(30) == 1
    assert queue.get(old.id).state == QueueState.ARCHIVED
    assert queue.get(fresh.id).state == QueueState.COMPLETED


def test_archived_item_still_blocks_duplicate_content(queue, clock):
    item = _enqueue(queue, "a", "h-archived")
    queue.transition(item.id, QueueState.PROCESSING)
    queue.complete_success(item.id, "url", 1)
    clock.advance(31 * 86400)
    queue.archive_completed_older_than(30)

    assert _enqueue(queue, "again", "h-archived").id == item.id
