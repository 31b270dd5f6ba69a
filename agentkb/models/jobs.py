"""Durable queue job models."""

from __future__ import annotations

from datetime import datetime
from enum import Enum
from typing import Any

from pydantic import BaseModel, ConfigDict, Field

from agentkb.models.documents import StageName, utc_now


class QueueName(str, Enum):  # noqa: UP042
    """One queue per pipeline stage plus the deletion queue."""

    TEXT_EXTRACTION = "text-extraction"
    CHUNKING = "chunking"
    EMBEDDINGS = "embeddings"
    VECTOR_STORAGE = "vector-storage"
    FILE_DELETION = "file-deletion"

    @classmethod
    def for_stage(cls, stage: StageName) -> QueueName:
        return _STAGE_QUEUES[stage]

    @property
    def stage(self) -> StageName | None:
        for stage, queue in _STAGE_QUEUES.items():
            if queue is self:
                return stage
        return None


_STAGE_QUEUES: dict[StageName, QueueName] = {
    StageName.TEXT_EXTRACTION: QueueName.TEXT_EXTRACTION,
    StageName.CHUNKING: QueueName.CHUNKING,
    StageName.EMBEDDINGS: QueueName.EMBEDDINGS,
    StageName.VECTOR_STORAGE: QueueName.VECTOR_STORAGE,
}


class JobStatus(str, Enum):  # noqa: UP042
    WAITING = "waiting"
    ACTIVE = "active"
    COMPLETED = "completed"
    FAILED = "failed"


class RetryPolicy(BaseModel):
    """Attempt cap and exponential backoff base for a job type."""

    model_config = ConfigDict(frozen=True)

    max_attempts: int = Field(default=3, ge=1)
    backoff_seconds: float = Field(default=2.0, ge=0.0)


class Job(BaseModel):
    """A unit of work claimed from a queue.

    ``attempts`` counts claims, so it is ``1`` while the first attempt
    runs.  ``payload`` carries the accumulated stage context.
    """

    model_config = ConfigDict(frozen=True)

    job_id: str
    queue: QueueName
    job_type: str
    payload: dict[str, Any] = Field(default_factory=dict)
    status: JobStatus = JobStatus.WAITING
    attempts: int = Field(default=0, ge=0)
    max_attempts: int = Field(default=3, ge=1)
    backoff_seconds: float = Field(default=2.0, ge=0.0)
    dedupe_key: str | None = None
    last_error: str | None = None
    worker_id: str | None = None
    available_at: datetime = Field(default_factory=utc_now)
    created_at: datetime = Field(default_factory=utc_now)
    updated_at: datetime = Field(default_factory=utc_now)

    @property
    def is_last_attempt(self) -> bool:
        return self.attempts >= self.max_attempts
