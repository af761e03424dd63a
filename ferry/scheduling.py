"""
Periodic task runner used by every recurring timer in the gateway.

Each component owns its own ``PeriodicTask`` and starts/stops it with its
own lifecycle. A tick awaits its callback before sleeping again, so a slow
callback delays the next tick instead of overlapping it.
"""

from __future__ import annotations

import asyncio
import inspect
import logging
import time
from typing import Any, Awaitable, Callable, Dict, Optional, Union

logger = logging.getLogger("Ferry.Scheduler")

IntervalSource = Union[float, Callable[[], float]]


async def maybe_await(result: Any) -> Any:
    """Await ``result`` when a callback returned an awaitable."""
    if inspect.isawaitable(result):
        return await result
    return result


class PeriodicTask:
    """
    Run ``callback`` after ``initial_delay`` seconds, then every ``interval``.

    ``interval`` may be a callable so the cadence follows runtime settings.
    """

    def __init__(
        self,
        name: str,
        callback: Callable[[], Awaitable[Any]],
        *,
        interval: IntervalSource,
        initial_delay: float = 0.0,
        now_fn: Callable[[], float] = time.time,
        sleep_fn: Callable[[float], Awaitable[Any]] = asyncio.sleep,
    ) -> None:
        self.name = name
        self._callback = callback
        self._interval = interval
        self._initial_delay = max(0.0, float(initial_delay))
        self._now_fn = now_fn
        self._sleep_fn = sleep_fn
        self._task: Optional[asyncio.Task] = None
        self._running = False
        self._ticking: Optional[asyncio.Task] = None

        self._tick_count = 0
        self._failure_count = 0
        self._last_error: Optional[str] = None
        self._last_tick_at: Optional[float] = None
        self._next_tick_epoch: Optional[float] = None

    @property
    def running(self) -> bool:
        return self._running

    @property
    def status(self) -> Dict[str, Any]:
        return {
            "name": self.name,
            "running": self._running,
            "tick_count": self._tick_count,
            "failure_count": self._failure_count,
            "last_error": self._last_error,
            "last_tick_at": self._last_tick_at,
            "next_tick_epoch": self._next_tick_epoch,
        }

    def _current_interval(self) -> float:
        interval = self._interval() if callable(self._interval) else self._interval
        return max(0.0, float(interval))

    def start(self) -> bool:
        if self._running:
            return False
        self._running = True
        self._task = asyncio.create_task(self._run_loop(), name=f"ferry-{self.name}")
        logger.debug("Periodic task %s started", self.name)
        return True

    @property
    def in_tick(self) -> bool:
        return self._ticking is not None and self._ticking is self._task

    async def stop(self, *, wait: bool = True) -> bool:
        """
        Stop the loop without interrupting a callback that is running.

        A sleeping loop is cancelled. A loop inside a tick is left to finish
        that tick and then exits; ``wait`` decides whether to await it.
        """
        if not self._running and self._task is None:
            return False
        self._running = False
        self._next_tick_epoch = None
        task = self._task
        self._task = None
        if task is not None and task is not asyncio.current_task():
            if self._ticking is task:
                if wait:
                    await asyncio.shield(task)
            else:
                task.cancel()
                try:
                    await task
                except asyncio.CancelledError:
                    pass
        logger.debug("Periodic task %s stopped", self.name)
        return True

    async def _tick(self) -> None:
        self._tick_count += 1
        self._last_tick_at = self._now_fn()
        try:
            await self._callback()
        except asyncio.CancelledError:
            raise
        except Exception as exc:
            self._failure_count += 1
            self._last_error = str(exc)
            logger.error("Periodic task %s tick #%d failed: %s", self.name, self._tick_count, exc)

    async def _run_loop(self) -> None:
        delay = self._initial_delay
        current = asyncio.current_task()
        try:
            while self._running and self._task is current:
                self._next_tick_epoch = self._now_fn() + delay
                try:
                    await self._sleep_fn(delay)
                except asyncio.CancelledError:
                    break
                if not self._running or self._task is not current:
                    break
                self._ticking = current
                try:
                    await self._tick()
                finally:
                    if self._ticking is current:
                        self._ticking = None
                delay = self._current_interval()
        finally:
            if self._task is current or self._task is None:
                self._next_tick_epoch = None
