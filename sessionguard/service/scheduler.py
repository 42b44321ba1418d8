"""Cancelable periodic tasks owned by the session manager."""

from __future__ import annotations

import asyncio
import inspect
from typing import Any, Awaitable, Callable, Optional, Union

from sessionguard.logging import get_logger

logger = get_logger(__name__)

TickCallback = Callable[[], Union[Awaitable[Any], Any]]


class PeriodicTask:
    """Runs ``callback`` every ``interval`` seconds until stopped.

    The first tick happens one interval after :meth:`start`. Errors raised by
    a tick are logged and do not stop the loop.
    """

    def __init__(self, name: str, interval: float, callback: TickCallback) -> None:
        if interval <= 0:
            raise ValueError("interval must be positive")
        self.name = name
        self.interval = interval
        self.callback = callback
        self.ticks = 0
        self._task: Optional[asyncio.Task] = None

    @property
    def running(self) -> bool:
        return self._task is not None and not self._task.done()

    def start(self) -> bool:
        """Schedule the loop on the running event loop.

        Returns False when there is no running loop (synchronous callers),
        in which case nothing is scheduled.
        """
        if self.running:
            return True
        try:
            loop = asyncio.get_running_loop()
        except RuntimeError:
            logger.debug("periodic_task_no_loop", task=self.name)
            return False
        self._task = loop.create_task(self._run(), name=f"sessionguard:{self.name}")
        logger.debug("periodic_task_started", task=self.name, interval=self.interval)
        return True

    def cancel(self) -> None:
        """Request cancellation without waiting (safe from inside a tick)."""
        task = self._task
        self._task = None
        if task is not None and not task.done() and task is not _current_task():
            task.cancel()

    async def stop(self) -> None:
        task = self._task
        self._task = None
        if task is None or task.done():
            return
        if task is _current_task():
            # Stopping from within our own tick: let the loop exit on its own
            return
        task.cancel()
        try:
            await task
        except asyncio.CancelledError:
            pass
        logger.debug("periodic_task_stopped", task=self.name, ticks=self.ticks)

    async def _run(self) -> None:
        me = asyncio.current_task()
        while self._task is me:
            await asyncio.sleep(self.interval)
            if self._task is not me:
                break
            self.ticks += 1
            try:
                result = self.callback()
                if inspect.isawaitable(result):
                    await result
            except asyncio.CancelledError:
                raise
            except Exception as exc:
                logger.error(
                    "periodic_task_tick_failed",
                    task=self.name,
                    error=str(exc),
                    error_type=type(exc).__name__,
                )


def _current_task() -> Optional[asyncio.Task]:
    try:
        return asyncio.current_task()
    except RuntimeError:
        return None
