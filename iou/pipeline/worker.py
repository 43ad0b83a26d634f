"""
Ingestion worker pool.

Objects are queued by id once stored; a fixed number of asyncio workers
consume the queue and run the per-object pipeline. Different objects are
processed concurrently; a failure in one object's pipeline is logged and
the worker moves on.
"""

import asyncio
import logging
from typing import Any, Awaitable, Callable, Optional
from uuid import UUID

logger = logging.getLogger(__name__)

Handler = Callable[[UUID], Awaitable[Any]]


class WorkerPool:
    """Fixed-size pool of asyncio workers over one queue."""

    def __init__(self, handler: Handler, worker_count: int = 4):
        if worker_count < 1:
            raise ValueError("worker_count must be at least 1")
        self._handler = handler
        self._worker_count = worker_count
        self._queue: Optional[asyncio.Queue] = None
        self._workers: list[asyncio.Task] = []
        self.processed = 0
        self.failed = 0

    @property
    def running(self) -> bool:
        return bool(self._workers)

    @property
    def pending(self) -> int:
        return 0 if self._queue is None else self._queue.qsize()

    async def start(self) -> None:
        if self.running:
            return
        self._queue = asyncio.Queue()
        self._workers = [
            asyncio.create_task(self._work(n), name=f"iou-worker-{n}")
            for n in range(self._worker_count)
        ]
        logger.info("Started %d ingestion worker(s)", self._worker_count)

    async def submit(self, object_id: UUID) -> None:
        """Queue an object; starts the pool on first use."""
        if not self.running:
            await self.start()
        await self._queue.put(object_id)

    async def drain(self) -> None:
        """Wait until every queued object has been processed."""
        if self._queue is not None:
            await self._queue.join()

    async def stop(self, drain: bool = True) -> None:
        if not self.running:
            return
        if drain:
            await self.drain()
        for task in self._workers:
            task.cancel()
        await asyncio.gather(*self._workers, return_exceptions=True)
        self._workers = []
        self._queue = None
        logger.info(
            "Stopped ingestion workers (%d processed, %d failed)", self.processed, self.failed
        )

    async def _work(self, n: int) -> None:
        assert self._queue is not None
        queue = self._queue
        while True:
            object_id = await queue.get()
            try:
                await self._handler(object_id)
                self.processed += 1
            except asyncio.CancelledError:
                raise
            except Exception:
                self.failed += 1
                logger.exception("Worker %d failed to process object %s", n, object_id)
            finally:
                queue.task_done()
