"""In-process work queue that hands new jobs to the executor."""
from __future__ import annotations

import asyncio
from typing import List, Optional, Set

import structlog

from scrapecache.orchestrator.executor import ExecutionRequest, JobExecutor

LOGGER = structlog.get_logger(__name__)


class JobQueue:
    """Detached execution of scrape jobs on a pool of asyncio workers.

    The store, not this queue, is the durable record: pending jobs are
    re-enqueued from the store when a worker starts and on every
    `recover_pending` tick. A job id already waiting or running is not
    queued twice.
    """

    def __init__(self) -> None:
        self._queue: asyncio.Queue[ExecutionRequest] = asyncio.Queue()
        self._workers: List[asyncio.Task] = []
        self._queued: Set[str] = set()

    def enqueue(self, request: ExecutionRequest) -> None:
        """Schedule a job to run as soon as a worker is free."""
        if request.job_id in self._queued:
            LOGGER.debug("job_already_queued", job_id=request.job_id)
            return
        self._queued.add(request.job_id)
        self._queue.put_nowait(request)
        LOGGER.debug("job_enqueued", job_id=request.job_id, depth=self._queue.qsize())

    def empty(self) -> bool:
        return self._queue.empty()

    def qsize(self) -> int:
        return self._queue.qsize()

    @property
    def running(self) -> bool:
        return any(not task.done() for task in self._workers)

    def start(self, executor: JobExecutor, *, concurrency: int = 1) -> None:
        """Spawn worker tasks; calling it again while running is a no-op."""
        if self.running:
            return
        self._workers = [
            asyncio.create_task(self._worker(executor, index), name=f"scrape-worker-{index}")
            for index in range(max(1, concurrency))
        ]

    async def _worker(self, executor: JobExecutor, index: int) -> None:
        while True:
            request = await self._queue.get()
            try:
                await executor.run(request)
            except Exception:  # pragma: no cover - executor records job failures itself
                LOGGER.exception("worker_error", worker=index, job_id=request.job_id)
            finally:
                self._queued.discard(request.job_id)
                self._queue.task_done()

    async def join(self, timeout: Optional[float] = None) -> None:
        """Wait until every enqueued job has been processed."""
        if timeout is None:
            await self._queue.join()
        else:
            await asyncio.wait_for(self._queue.join(), timeout=timeout)

    async def stop(self) -> None:
        for task in self._workers:
            task.cancel()
        await asyncio.gather(*self._workers, return_exceptions=True)
        self._workers = []
