"""Per-queue pools of asyncio stage workers.

Each queue gets its own pool with its own concurrency limit, so a slow
embedding backlog never starves text extraction.  A worker loops:
claim → process → claim, sleeping ``poll_interval`` when its queue is
empty.  Stopping cancels the loops; a job interrupted mid-flight stays
``active`` and is handed out again by stalled-job recovery.
"""

from __future__ import annotations

import asyncio
import contextlib
import uuid
from collections.abc import Awaitable, Callable

import structlog

from agentkb.config.settings import Settings
from agentkb.interfaces.job_queue import IJobQueue
from agentkb.models.jobs import Job, QueueName
from agentkb.utils.logging import get_logger

# Settings prefix for each queue's concurrency knob.
_CONCURRENCY_KEYS: dict[QueueName, str] = {
    QueueName.TEXT_EXTRACTION: "extraction",
    QueueName.CHUNKING: "chunking",
    QueueName.EMBEDDINGS: "embeddings",
    QueueName.VECTOR_STORAGE: "vector_storage",
    QueueName.FILE_DELETION: "deletion",
}


class StageWorkerPool:
    """``concurrency`` workers pulling jobs from one queue."""

    def __init__(
        self,
        job_queue: IJobQueue,
        queue: QueueName,
        process: Callable[[Job], Awaitable[None]],
        concurrency: int,
        poll_interval: float = 1.0,
    ) -> None:
        self._job_queue = job_queue
        self._queue = queue
        self._process = process
        self._concurrency = max(1, concurrency)
        self._poll_interval = poll_interval
        self._tasks: list[asyncio.Task] = []
        self._logger: structlog.BoundLogger = get_logger(__name__)

    @property
    def running(self) -> bool:
        return any(not t.done() for t in self._tasks)

    def start(self) -> None:
        if self.running:
            return
        self._tasks = [
            asyncio.create_task(self._work(f"{self._queue.value}-{i}-{uuid.uuid4().hex[:6]}"))
            for i in range(self._concurrency)
        ]
        self._logger.info("worker_pool_started", queue=self._queue.value, concurrency=self._concurrency)

    async def stop(self) -> None:
        for task in self._tasks:
            task.cancel()
        for task in self._tasks:
            with contextlib.suppress(asyncio.CancelledError):
                await task
        self._tasks = []
        self._logger.info("worker_pool_stopped", queue=self._queue.value)

    async def _work(self, worker_id: str) -> None:
        while True:
            try:
                job = await self._job_queue.claim(self._queue, worker_id)
            except Exception as exc:
                self._logger.error("job_claim_failed", queue=self._queue.value, error=str(exc))
                job = None
            if job is None:
                await asyncio.sleep(self._poll_interval)
                continue
            await self._process(job)


class WorkerSupervisor:
    """Owns one :class:`StageWorkerPool` per handled queue.

    Parameters
    ----------
    job_queue:
        The durable queue.
    queues:
        Queues to serve; every claimed job goes to *process* regardless
        of queue.
    process:
        Job dispatcher, normally ``IngestionOrchestrator.process``.
    settings:
        Per-queue concurrency, poll interval and stalled-job timeout.
    """

    def __init__(
        self,
        job_queue: IJobQueue,
        queues: list[QueueName],
        process: Callable[[Job], Awaitable[None]],
        settings: Settings,
    ) -> None:
        self._job_queue = job_queue
        self._settings = settings
        self._pools = [
            StageWorkerPool(
                job_queue,
                queue,
                process,
                concurrency=settings.stage_concurrency(_CONCURRENCY_KEYS[queue]),
                poll_interval=settings.queue_poll_interval_seconds,
            )
            for queue in queues
        ]
        self._logger: structlog.BoundLogger = get_logger(__name__)

    async def start(self) -> int:
        """Recover stalled jobs, then start every pool; returns jobs recovered."""
        recovered = await self._job_queue.requeue_stalled(self._settings.stalled_job_timeout_seconds)
        for pool in self._pools:
            pool.start()
        self._logger.info("workers_started", pools=len(self._pools), stalled_recovered=recovered)
        return recovered

    async def stop(self) -> None:
        await asyncio.gather(*(pool.stop() for pool in self._pools))
