from __future__ import annotations

import asyncio
import contextlib
import logging
from collections.abc import Awaitable, Callable
from dataclasses import dataclass
from functools import lru_cache
from typing import Any

from focus_queue.core.config import get_settings

logger = logging.getLogger(__name__)

WriteFactory = Callable[[], Awaitable[Any]]


@dataclass(slots=True)
class _WriteBackJob:
    name: str
    factory: WriteFactory


class WriteBackQueue:
    """Bounded queue of best-effort store corrections drained by one worker task.

    A correction that cannot be queued or keeps failing is logged and dropped;
    the next read recomputes it.
    """

    def __init__(
        self,
        *,
        max_size: int = 256,
        max_attempts: int = 3,
        retry_base_seconds: float = 0.5,
        retry_max_seconds: float = 10.0,
        sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep,
    ) -> None:
        self.max_size = max(1, max_size)
        self.max_attempts = max(1, max_attempts)
        self.retry_base_seconds = max(0.0, retry_base_seconds)
        self.retry_max_seconds = max(0.0, retry_max_seconds)
        self._sleep = sleep
        self._queue: asyncio.Queue[_WriteBackJob] | None = None
        self._worker: asyncio.Task[None] | None = None
        self._loop: asyncio.AbstractEventLoop | None = None
        self.completed = 0
        self.failed = 0
        self.dropped = 0

    def submit(self, name: str, factory: WriteFactory) -> bool:
        queue = self._ensure_worker()
        try:
            queue.put_nowait(_WriteBackJob(name=name, factory=factory))
        except asyncio.QueueFull:
            self.dropped += 1
            logger.warning("writeback dropped name=%s reason=queue_full size=%s", name, self.max_size)
            return False
        return True

    async def flush(self) -> None:
        if self._queue is None or self._loop is not asyncio.get_running_loop():
            return
        await self._queue.join()

    async def close(self) -> None:
        if self._worker is None:
            return
        if self._loop is asyncio.get_running_loop():
            await self.flush()
            self._worker.cancel()
            with contextlib.suppress(asyncio.CancelledError):
                await self._worker
        self._worker = None
        self._queue = None
        self._loop = None

    def _ensure_worker(self) -> asyncio.Queue[_WriteBackJob]:
        loop = asyncio.get_running_loop()
        if self._queue is None or self._loop is not loop or self._worker is None or self._worker.done():
            if self._queue is not None and self._loop is not loop and self._queue.qsize():
                logger.warning("writeback discarded pending=%s reason=event_loop_changed", self._queue.qsize())
            self._queue = asyncio.Queue(maxsize=self.max_size)
            self._loop = loop
            self._worker = loop.create_task(self._run(self._queue), name="focus-queue-writeback")
        return self._queue

    async def _run(self, queue: asyncio.Queue[_WriteBackJob]) -> None:
        while True:
            job = await queue.get()
            try:
                await self._execute(job)
            finally:
                queue.task_done()

    async def _execute(self, job: _WriteBackJob) -> None:
        for attempt in range(1, self.max_attempts + 1):
            try:
                await job.factory()
            except asyncio.CancelledError:
                raise
            except Exception as exc:
                if attempt >= self.max_attempts:
                    self.failed += 1
                    logger.error("writeback failed name=%s attempts=%s error=%s", job.name, attempt, exc)
                    return
                delay = self._compute_retry_delay_seconds(attempt=attempt)
                logger.warning(
                    "writeback retry name=%s attempt=%s delay=%.2fs error=%s",
                    job.name,
                    attempt,
                    delay,
                    exc,
                )
                await self._sleep(delay)
            else:
                self.completed += 1
                return

    def _compute_retry_delay_seconds(self, *, attempt: int) -> float:
        if self.retry_base_seconds <= 0:
            return 0.0
        multiplier = max(0, attempt - 1)
        delay = self.retry_base_seconds * (2**multiplier)
        return min(delay, self.retry_max_seconds)


@lru_cache
def get_writeback_queue() -> WriteBackQueue:
    settings = get_settings()
    return WriteBackQueue(
        max_size=settings.writeback_queue_size,
        max_attempts=settings.writeback_max_attempts,
        retry_base_seconds=settings.writeback_retry_base_seconds,
        retry_max_seconds=settings.writeback_retry_max_seconds,
    )
