"""Deletion job models.

A deletion job removes one or more files from every backend that may hold
data for them.  Backends are tried in a fixed order and each one's outcome
is recorded per target so a retry can skip what is already confirmed.
"""

from __future__ import annotations

from datetime import datetime
from enum import Enum

from pydantic import BaseModel, ConfigDict, Field

from agentkb.models.documents import utc_now


class DeletionStatus(str, Enum):  # noqa: UP042
    QUEUED = "queued"
    ACTIVE = "active"
    COMPLETED = "completed"
    FAILED = "failed"
    CANCELLED = "cancelled"


class DeletionBackend(str, Enum):  # noqa: UP042
    """Backends in the order they are deleted from."""

    OBJECT_STORAGE = "object_storage"
    VECTOR_STORE = "vector_store"
    METADATA_STORE = "metadata_store"


DELETION_ORDER: tuple[DeletionBackend, ...] = (
    DeletionBackend.OBJECT_STORAGE,
    DeletionBackend.VECTOR_STORE,
    DeletionBackend.METADATA_STORE,
)


class BackendOutcome(str, Enum):  # noqa: UP042
    PENDING = "pending"
    DELETED = "deleted"
    ALREADY_DELETED = "already_deleted"
    SKIPPED = "skipped"
    FAILED = "failed"


CONFIRMED_OUTCOMES = frozenset(
    {BackendOutcome.DELETED, BackendOutcome.ALREADY_DELETED, BackendOutcome.SKIPPED}
)


class DeletionTarget(BaseModel):
    """Per-file deletion progress inside a job."""

    model_config = ConfigDict(frozen=True)

    file_id: str
    storage_key: str = ""
    vectors_possible: bool = Field(
        default=False,
        description="True when the vector-storage stage ever left pending.",
    )
    outcomes: dict[DeletionBackend, BackendOutcome] = Field(
        default_factory=lambda: {backend: BackendOutcome.PENDING for backend in DELETION_ORDER}
    )
    errors: dict[DeletionBackend, str] = Field(default_factory=dict)

    @property
    def confirmed(self) -> list[DeletionBackend]:
        return [b for b in DELETION_ORDER if self.outcomes.get(b) in CONFIRMED_OUTCOMES]

    @property
    def succeeded(self) -> bool:
        return len(self.confirmed) == len(DELETION_ORDER)


class DeletionJob(BaseModel):
    """A persisted deletion request."""

    model_config = ConfigDict(frozen=True)

    job_id: str
    tenant_id: str
    agent_id: str
    targets: list[DeletionTarget]
    status: DeletionStatus = DeletionStatus.QUEUED
    attempts: int = Field(default=0, ge=0)
    last_error: str | None = None
    created_at: datetime = Field(default_factory=utc_now)
    updated_at: datetime = Field(default_factory=utc_now)
    completed_at: datetime | None = None

    @property
    def file_ids(self) -> list[str]:
        return [t.file_id for t in self.targets]

    @property
    def confirmed_backends(self) -> dict[str, list[DeletionBackend]]:
        return {t.file_id: t.confirmed for t in self.targets}


class BatchDeletionItem(BaseModel):
    """Outcome of one file inside a batch deletion request."""

    model_config = ConfigDict(frozen=True)

    file_id: str
    job_id: str | None = None
    success: bool
    status: DeletionStatus | None = None
    error: str | None = None


class BatchDeletionReport(BaseModel):
    """Per-file success / failure list for a batch deletion."""

    model_config = ConfigDict(frozen=True)

    items: list[BatchDeletionItem] = Field(default_factory=list)

    @property
    def successful(self) -> list[str]:
        return [i.file_id for i in self.items if i.success]

    @property
    def failed(self) -> list[str]:
        return [i.file_id for i in self.items if not i.success]
