"""File (document) models and the per-stage processing record.

A :class:`KnowledgeFile` is one uploaded source file.  Its processing
progress lives in a :class:`ProcessingRecord`: one :class:`StageRecord`
per pipeline stage.  The stage record is the single authoritative status
for a file -- the overall :class:`FileStatus` is derived from it (see
:func:`agentkb.pipeline.status_aggregator.derive_file_status`) together
with the intake marker, which only the upload and deletion paths write.

All models are frozen; updates produce new instances via
``model_copy(update={...})``.
"""

from __future__ import annotations

from datetime import datetime, timezone
from enum import Enum
from typing import Any

from pydantic import BaseModel, ConfigDict, Field


def utc_now() -> datetime:
    """Return the current time as an aware UTC datetime."""
    return datetime.now(timezone.utc)


# ---------------------------------------------------------------------------
# Enumerations
# ---------------------------------------------------------------------------


class StageName(str, Enum):  # noqa: UP042
    """Pipeline stages, in execution order."""

    TEXT_EXTRACTION = "textExtraction"
    CHUNKING = "chunking"
    EMBEDDINGS = "embeddings"
    VECTOR_STORAGE = "vectorStorage"

    @property
    def position(self) -> int:
        return STAGE_ORDER.index(self)

    @property
    def settings_key(self) -> str:
        """Prefix used by the per-stage ``Settings`` fields."""
        return _SETTINGS_KEYS[self]


STAGE_ORDER: tuple[StageName, ...] = (
    StageName.TEXT_EXTRACTION,
    StageName.CHUNKING,
    StageName.EMBEDDINGS,
    StageName.VECTOR_STORAGE,
)

_SETTINGS_KEYS: dict[StageName, str] = {
    StageName.TEXT_EXTRACTION: "extraction",
    StageName.CHUNKING: "chunking",
    StageName.EMBEDDINGS: "embeddings",
    StageName.VECTOR_STORAGE: "vector_storage",
}


class StageStatus(str, Enum):  # noqa: UP042
    """Sub-status of a single stage."""

    PENDING = "pending"
    PROCESSING = "processing"
    COMPLETED = "completed"
    FAILED = "failed"


class FileStatus(str, Enum):  # noqa: UP042
    """Overall, derived status of a file."""

    UPLOADING = "uploading"
    QUEUED = "queued"
    PROCESSING = "processing"
    COMPLETED = "completed"
    FAILED = "failed"
    CANCELLED = "cancelled"


class IntakeState(str, Enum):  # noqa: UP042
    """Intake marker written outside the stage workers.

    ``uploading`` on acceptance, ``queued`` once stage 1 is scheduled and
    ``cancelled`` as soon as a deletion is requested.
    """

    UPLOADING = "uploading"
    QUEUED = "queued"
    CANCELLED = "cancelled"


# ---------------------------------------------------------------------------
# Stage record
# ---------------------------------------------------------------------------


class StageRecord(BaseModel):
    """Status, timestamps and counters of one stage for one file.

    ``counters`` holds the stage-specific results:

    * textExtraction: ``extracted_length``, ``extraction_method``
    * chunking: ``chunk_count``, ``strategy``, ``chunk_size``, ``chunk_overlap``, ``unit``
    * embeddings: ``embedding_count``, ``total_tokens``, ``model``
    * vectorStorage: ``vectors_stored``, ``collection``
    """

    model_config = ConfigDict(frozen=True)

    stage: StageName
    status: StageStatus = StageStatus.PENDING
    attempts: int = Field(default=0, ge=0)
    exhausted: bool = Field(
        default=False,
        description="True once the stage failed terminally (attempt cap or validation).",
    )
    queued_at: datetime | None = None
    started_at: datetime | None = None
    completed_at: datetime | None = None
    failed_at: datetime | None = None
    last_error: str | None = None
    counters: dict[str, Any] = Field(default_factory=dict)

    @property
    def is_terminal_failure(self) -> bool:
        return self.status == StageStatus.FAILED and self.exhausted


class ProcessingRecord(BaseModel):
    """The four stage records of a file, addressable by :class:`StageName`."""

    model_config = ConfigDict(frozen=True)

    stages: dict[StageName, StageRecord] = Field(
        default_factory=lambda: {stage: StageRecord(stage=stage) for stage in STAGE_ORDER}
    )

    def get(self, stage: StageName) -> StageRecord:
        return self.stages.get(stage) or StageRecord(stage=stage)

    def ordered(self) -> list[StageRecord]:
        return [self.get(stage) for stage in STAGE_ORDER]

    def last_completed(self) -> StageName | None:
        """Return the last stage of the completed prefix, or ``None``."""
        last: StageName | None = None
        for record in self.ordered():
            if record.status != StageStatus.COMPLETED:
                break
            last = record.stage
        return last

    def next_incomplete(self) -> StageName | None:
        """Return the first stage that is not completed, or ``None`` when done."""
        for record in self.ordered():
            if record.status != StageStatus.COMPLETED:
                return record.stage
        return None


# ---------------------------------------------------------------------------
# File
# ---------------------------------------------------------------------------


class KnowledgeFile(BaseModel):
    """One uploaded source file belonging to an agent."""

    model_config = ConfigDict(frozen=True)

    file_id: str
    tenant_id: str
    agent_id: str
    filename: str
    storage_key: str = Field(description="Object-storage key of the original bytes.")
    content_hash: str = Field(description="SHA-256 of the uploaded bytes.")
    size_bytes: int = Field(ge=0)
    mime_type: str
    intake: IntakeState = IntakeState.UPLOADING
    generation: int = Field(
        default=0,
        ge=0,
        description="Incremented by every reprocess request; part of job dedupe keys.",
    )
    created_at: datetime = Field(default_factory=utc_now)
    updated_at: datetime = Field(default_factory=utc_now)
    deleted_at: datetime | None = None
    processing: ProcessingRecord = Field(default_factory=ProcessingRecord)

    @property
    def is_deleted(self) -> bool:
        return self.deleted_at is not None or self.intake == IntakeState.CANCELLED

    def stage(self, stage: StageName) -> StageRecord:
        return self.processing.get(stage)
