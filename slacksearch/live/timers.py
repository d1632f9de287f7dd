"""Timer abstraction driving the live poll scheduler."""

from __future__ import annotations

import asyncio
import logging
from contextlib import suppress
from typing import Awaitable, Callable, Optional, Protocol, Set, runtime_checkable

logger = logging.getLogger(__name__)

TimerCallback = Callable[[], Awaitable[object]]


@runtime_checkable
class PollTimer(Protocol):
    @property
    def is_running(self) -> bool: ...

    def start(self, callback: TimerCallback) -> None: ...

    async def stop(self) -> None: ...


class AsyncioHeartbeat:
    """Fire ``callback`` every ``period`` seconds on the running event loop.

    Each firing runs as its own task and is not awaited by the loop, so a slow
    callback does not delay the next heartbeat. Callbacks must guard against
    overlapping runs themselves.
    """

    def __init__(self, period: float = 1.0):
        if period <= 0:
            raise ValueError("period must be > 0")
        self.period = period
        self._task: Optional[asyncio.Task[None]] = None
        self._callbacks: Set[asyncio.Task[object]] = set()

    @property
    def is_running(self) -> bool:
        return self._task is not None and not self._task.done()

    def start(self, callback: TimerCallback) -> None:
        if self.is_running:
            return
        self._task = asyncio.create_task(self._run(callback))
        logger.debug("Heartbeat started (period=%ss)", self.period)

    async def stop(self) -> None:
        pending = [task for task in (self._task, *self._callbacks) if task is not None]
        for task in pending:
            task.cancel()
        for task in pending:
            with suppress(asyncio.CancelledError):
                await task
        self._task = None
        self._callbacks.clear()
        logger.debug("Heartbeat stopped")

    async def _run(self, callback: TimerCallback) -> None:
        while True:
            await asyncio.sleep(self.period)
            task = asyncio.create_task(self._fire(callback))
            self._callbacks.add(task)
            task.add_done_callback(self._callbacks.discard)

    @staticmethod
    async def _fire(callback: TimerCallback) -> None:
        try:
            await callback()
        except asyncio.CancelledError:
            raise
        except Exception:
            logger.exception("Heartbeat callback crashed; continuing")
