"""Abstract base class for the durable job queue.

Delivery is at-least-once: a job claimed by a worker that dies stays
``active`` until :meth:`IJobQueue.requeue_stalled` hands it out again, so
handlers must be idempotent.
"""

from __future__ import annotations

from abc import ABC, abstractmethod
from typing import Any

from agentkb.models.jobs import Job, JobStatus, QueueName, RetryPolicy


# Concrete implementation: SQLiteJobQueue (agentkb/providers/queue/)
class IJobQueue(ABC):
    """Durable per-queue job storage with atomic claims and retry/backoff."""

    @abstractmethod
    async def initialize(self) -> None:
        """Create tables if they do not exist."""

    @abstractmethod
    async def enqueue(
        self,
        queue: QueueName,
        job_type: str,
        payload: dict[str, Any],
        policy: RetryPolicy,
        dedupe_key: str | None = None,
        delay_seconds: float = 0.0,
    ) -> str:
        """Add a job and return its id.

        When *dedupe_key* matches an existing job, no new job is created
        and the existing job's id is returned.
        """

    @abstractmethod
    async def claim(self, queue: QueueName, worker_id: str) -> Job | None:
        """Atomically take the oldest available job of *queue*, or ``None``."""

    @abstractmethod
    async def complete(self, job_id: str) -> None:
        """Mark a claimed job as completed."""

    @abstractmethod
    async def fail(self, job_id: str, error: str, retryable: bool = True) -> JobStatus:
        """Record a failed attempt.

        Returns ``waiting`` when the job was rescheduled with backoff and
        ``failed`` when retries are exhausted or *retryable* is ``False``.
        """

    @abstractmethod
    async def get(self, job_id: str) -> Job | None:
        """Return the job or ``None``."""

    @abstractmethod
    async def requeue_stalled(self, older_than_seconds: float) -> int:
        """Return stale ``active`` jobs to ``waiting``; returns how many.

        Jobs whose stalled claim was their last attempt are marked ``failed``
        instead and are not counted.
        """

    @abstractmethod
    async def counts(self, queue: QueueName) -> dict[str, int]:
        """Return job counts per status for *queue*."""
