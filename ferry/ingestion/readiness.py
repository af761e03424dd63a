"""
Write-completion wait for files landing in a watched folder.

A file counts as ready once an exclusive non-blocking lock can be taken on
it and its size has not changed since the previous poll.
"""

import asyncio
import logging
import time
from pathlib import Path
from typing import Any, Awaitable, Callable, Optional

import portalocker

logger = logging.getLogger("Ferry.Readiness")

DEFAULT_POLL_INTERVAL = 0.5
DEFAULT_TIMEOUT = 10.0


def try_exclusive_lock(path: Path) -> bool:
    """True when no other process holds a lock on ``path``."""
    try:
        with path.open("rb") as handle:
            portalocker.lock(handle, portalocker.LOCK_EX | portalocker.LOCK_NB)
            portalocker.unlock(handle)
        return True
    except (portalocker.exceptions.LockException, OSError):
        return False


async def wait_until_ready(
    path: Path,
    *,
    poll_interval: float = DEFAULT_POLL_INTERVAL,
    timeout: float = DEFAULT_TIMEOUT,
    sleep_fn: Callable[[float], Awaitable[Any]] = asyncio.sleep,
    now_fn: Callable[[], float] = time.monotonic,
) -> bool:
    """
    Poll ``path`` until it is ready or ``timeout`` elapses.

    Returns False on timeout; the caller decides whether to proceed.
    """
    deadline = now_fn() + timeout
    previous_size: Optional[int] = None
    while True:
        try:
            size = path.stat().st_size
        except OSError:
            size = None
        if size is not None and size == previous_size:
            if await asyncio.to_thread(try_exclusive_lock, path):
                return True
        previous_size = size
        if now_fn() >= deadline:
            logger.warning("File %s did not become ready within %.1fs", path, timeout)
            return False
        await sleep_fn(poll_interval)
