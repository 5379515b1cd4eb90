"""Timer and job primitives for the single-threaded event loop."""
from __future__ import annotations

import asyncio
import logging
from contextlib import suppress
from typing import Awaitable, Callable, Optional, Set

logger = logging.getLogger(__name__)

Job = Callable[[], Awaitable[None]]


class DebounceTimer:
    """Single-slot cancellable timer.

    ``arm`` cancels any pending deadline before scheduling the new one, so at
    most one callback is ever outstanding.
    """

    def __init__(self, delay: float, callback: Job) -> None:
        self.delay = delay
        self._callback = callback
        self._handle: Optional[asyncio.TimerHandle] = None
        self._tasks: Set[asyncio.Task] = set()

    @property
    def armed(self) -> bool:
        return self._handle is not None

    def arm(self) -> None:
        loop = asyncio.get_running_loop()
        self.disarm()
        self._handle = loop.call_later(self.delay, self._fire)

    def disarm(self) -> None:
        if self._handle is not None:
            self._handle.cancel()
            self._handle = None

    def _fire(self) -> None:
        self._handle = None
        task = asyncio.get_running_loop().create_task(self._callback())
        self._tasks.add(task)
        task.add_done_callback(self._finished)

    def _finished(self, task: asyncio.Task) -> None:
        self._tasks.discard(task)
        if not task.cancelled() and task.exception() is not None:
            logger.error("[TIMER] callback failed: %r", task.exception())

    async def drain(self) -> None:
        """Wait for callbacks that already fired."""
        if self._tasks:
            await asyncio.gather(*self._tasks, return_exceptions=True)


class Coalescer:
    """Runs ``job`` on request; requests made while it runs collapse into one rerun."""

    def __init__(self, job: Job, name: str = "job") -> None:
        self._job = job
        self.name = name
        self._task: Optional[asyncio.Task] = None
        self._again = False

    @property
    def running(self) -> bool:
        return self._task is not None and not self._task.done()

    def request(self) -> asyncio.Task:
        if self.running:
            self._again = True
            return self._task
        self._task = asyncio.get_running_loop().create_task(self._run())
        return self._task

    async def _run(self) -> None:
        while True:
            self._again = False
            try:
                await self._job()
            except Exception:
                logger.exception("[%s] run failed", self.name)
            if not self._again:
                break

    async def wait(self) -> None:
        if self._task is not None:
            await asyncio.gather(self._task, return_exceptions=True)

    def cancel(self) -> None:
        self._again = False
        if self.running:
            self._task.cancel()


class Heartbeat:
    """Runs ``job`` every ``interval`` seconds until stopped."""

    def __init__(self, interval: float, job: Job, name: str = "heartbeat") -> None:
        self.interval = interval
        self._job = job
        self.name = name
        self._task: Optional[asyncio.Task] = None

    @property
    def running(self) -> bool:
        return self._task is not None and not self._task.done()

    def start(self) -> None:
        if self.running:
            return
        self._task = asyncio.get_running_loop().create_task(self._run())

    async def _run(self) -> None:
        while True:
            await asyncio.sleep(self.interval)
            try:
                await self._job()
            except Exception:
                logger.exception("[%s] beat failed", self.name)

    async def stop(self) -> None:
        task, self._task = self._task, None
        if task is not None and not task.done():
            task.cancel()
            with suppress(asyncio.CancelledError):
                await task
