"""
Bounded background work queue.

Used for memory ingestion so a slow embedding call never delays a turn.
Jobs run one at a time on a single worker task. When the queue is full the
oldest pending job is discarded. Job failures are logged and do not stop
the worker.
"""

import asyncio
from typing import Any, Awaitable, Callable

import structlog

logger = structlog.get_logger()

Job = Callable[[], Awaitable[Any]]

DEFAULT_CAPACITY = 100


class BackgroundQueue:
    """Single-worker FIFO of coroutine factories."""

    def __init__(self, name: str = "background", capacity: int = DEFAULT_CAPACITY):
        self.name = name
        self.capacity = capacity
        self._queue: asyncio.Queue[Job] = asyncio.Queue(maxsize=capacity)
        self._worker: asyncio.Task | None = None
        self._closed = False
        self.dropped = 0
        self.failed = 0

    @property
    def pending(self) -> int:
        return self._queue.qsize()

    def submit(self, job: Job) -> None:
        """Queue ``job``; starts the worker on first use."""
        if self._closed:
            logger.warning("Background queue closed, job discarded", queue=self.name)
            return

        if self._queue.full():
            self._queue.get_nowait()
            self._queue.task_done()
            self.dropped += 1
            logger.warning(
                "Background queue full, dropped oldest job",
                queue=self.name,
                capacity=self.capacity,
                dropped=self.dropped,
            )

        self._queue.put_nowait(job)
        self._ensure_worker()

    def _ensure_worker(self) -> None:
        if self._worker is None or self._worker.done():
            self._worker = asyncio.get_running_loop().create_task(self._run())

    async def _run(self) -> None:
        while True:
            job = await self._queue.get()
            try:
                await job()
            except Exception as e:
                self.failed += 1
                logger.warning("Background job failed", queue=self.name, error=str(e))
            finally:
                self._queue.task_done()

    async def drain(self) -> None:
        """Wait until every queued job has run."""
        idle = self._worker is None or self._worker.done()
        if self._queue.empty() and idle:
            return
        self._ensure_worker()
        await self._queue.join()

    async def close(self, drain: bool = True) -> None:
        """Stop accepting jobs, optionally finish pending ones, stop the worker."""
        self._closed = True
        if drain:
            await self.drain()
        if self._worker is not None:
            self._worker.cancel()
            try:
                await self._worker
            except asyncio.CancelledError:
                pass
            self._worker = None
