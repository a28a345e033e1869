"""In-process background work: a task channel and a per-key debouncer.

Webhook handlers and the ingestion worker never await follow-up work
directly. They submit it to the :class:`TaskChannel`, whose consumers are
the only place those failures are observed and handled.
"""

from __future__ import annotations

import asyncio
import contextlib
import functools
import inspect
import logging
from collections.abc import Awaitable, Callable
from dataclasses import dataclass

logger = logging.getLogger(__name__)

TaskFactory = Callable[[], Awaitable[object]]
ErrorHandler = Callable[[Exception], Awaitable[None]]

DEFAULT_MAX_PENDING = 10_000
DEFAULT_CONCURRENCY = 4


@dataclass
class Task:
    name: str
    factory: TaskFactory
    on_error: ErrorHandler | None = None


@dataclass
class TaskChannelStats:
    submitted: int = 0
    completed: int = 0
    failed: int = 0
    dropped: int = 0


class TaskChannel:
    """Bounded queue of fire-and-forget coroutines with a consumer pool."""

    def __init__(self, *, max_pending: int = DEFAULT_MAX_PENDING, concurrency: int = DEFAULT_CONCURRENCY) -> None:
        self._queue: asyncio.Queue[Task] = asyncio.Queue(maxsize=max_pending)
        self._concurrency = max(1, concurrency)
        self._workers: list[asyncio.Task[None]] = []
        self.stats = TaskChannelStats()

    @property
    def is_running(self) -> bool:
        return bool(self._workers)

    @property
    def pending(self) -> int:
        return self._queue.qsize()

    def submit(self, name: str, factory: TaskFactory, *, on_error: ErrorHandler | None = None) -> bool:
        """Queue work without waiting for it. Returns False when the channel is full."""
        try:
            self._queue.put_nowait(Task(name=name, factory=factory, on_error=on_error))
        except asyncio.QueueFull:
            self.stats.dropped += 1
            logger.warning("Task channel full; dropping %s", name)
            return False
        self.stats.submitted += 1
        return True

    async def start(self) -> None:
        if self._workers:
            return
        self._workers = [
            asyncio.create_task(self._consume(i), name=f"task-channel-{i}") for i in range(self._concurrency)
        ]
        logger.info("Task channel started with %d consumers", self._concurrency)

    async def join(self) -> None:
        """Wait until every submitted task has been processed."""
        await self._queue.join()

    async def stop(self, *, drain_timeout: float = 5.0) -> None:
        if not self._workers:
            return
        try:
            await asyncio.wait_for(self._queue.join(), timeout=drain_timeout)
        except TimeoutError:
            logger.warning("Task channel stopped with %d tasks pending", self._queue.qsize())
        for worker in self._workers:
            worker.cancel()
        for worker in self._workers:
            with contextlib.suppress(asyncio.CancelledError):
                await worker
        self._workers = []
        logger.info("Task channel stopped")

    async def _consume(self, index: int) -> None:
        while True:
            task = await self._queue.get()
            try:
                await task.factory()
                self.stats.completed += 1
            except asyncio.CancelledError:
                raise
            except Exception as e:
                self.stats.failed += 1
                logger.warning("Background task %s failed: %s", task.name, e)
                if task.on_error is not None:
                    try:
                        await task.on_error(e)
                    except Exception:
                        logger.exception("Error handler for %s failed", task.name)
            finally:
                self._queue.task_done()


class Debouncer:
    """Trailing per-key debounce.

    Each ``trigger(key)`` (re)starts the key's timer; ``callback(key)`` fires
    once the key has been quiet for ``delay_seconds``. A coroutine callback
    runs as a tracked task that :meth:`drain` waits for.
    """

    def __init__(self, delay_seconds: float, callback: Callable[[str], object]) -> None:
        self._delay = delay_seconds
        self._callback = callback
        self._timers: dict[str, asyncio.TimerHandle] = {}
        self._inflight: set[asyncio.Task[object]] = set()

    @property
    def pending_keys(self) -> list[str]:
        return list(self._timers)

    def trigger(self, key: str) -> None:
        existing = self._timers.pop(key, None)
        if existing is not None:
            existing.cancel()
        loop = asyncio.get_running_loop()
        self._timers[key] = loop.call_later(self._delay, self._fire, key)

    def _fire(self, key: str) -> None:
        self._timers.pop(key, None)
        try:
            result = self._callback(key)
        except Exception:
            logger.exception("Debounced callback failed for %s", key)
            return
        if inspect.isawaitable(result):
            task = asyncio.ensure_future(result)
            self._inflight.add(task)
            task.add_done_callback(functools.partial(self._settle, key))

    def _settle(self, key: str, task: asyncio.Task[object]) -> None:
        self._inflight.discard(task)
        if not task.cancelled() and task.exception() is not None:
            logger.error("Debounced callback failed for %s: %s", key, task.exception())

    def flush(self) -> None:
        """Fire every pending key now."""
        for key in list(self._timers):
            handle = self._timers.pop(key)
            handle.cancel()
            self._fire(key)

    async def drain(self) -> None:
        """Wait for callbacks that are still running."""
        while self._inflight:
            await asyncio.gather(*list(self._inflight), return_exceptions=True)

    def cancel_all(self) -> None:
        for handle in self._timers.values():
            handle.cancel()
        self._timers.clear()
