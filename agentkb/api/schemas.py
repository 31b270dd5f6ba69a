"""Pydantic request/response schemas for the agentkb HTTP API.

Defines the public contract for every REST endpoint: agent registration,
file upload and status, deletion jobs, retrieval, and health.

# ─── HOW SCHEMAS WORK ──────────────────────────────────────────────────
#
# These models define the *shape* of every HTTP request and response
# body.  FastAPI uses them to validate incoming JSON (bad requests get a
# 422), to serialize outgoing objects (response_model=...), and to
# generate the OpenAPI docs at /docs.
#
# Convention: request schemas end with "Request", response schemas end
# with "Response".  Domain models (KnowledgeFile, DeletionJob, ...) are
# converted with the ``from_*`` classmethods so internal fields such as
# storage keys never reach the client.
# ──────────────────────────────────────────────────────────────────────
"""

from __future__ import annotations

from datetime import datetime
from typing import Any

from pydantic import BaseModel, Field

from agentkb.models.agent import Agent, AgentStatus
from agentkb.models.deletion import BackendOutcome, BatchDeletionReport, DeletionJob, DeletionStatus
from agentkb.models.documents import FileStatus, KnowledgeFile, StageStatus
from agentkb.models.rag import ContextSource, RetrievedContext
from agentkb.pipeline.status_aggregator import derive_file_status


class RegisterAgentRequest(BaseModel):
    """Create (or look up) an agent for the tenant in the path."""

    agent_id: str = Field(min_length=1, max_length=128)
    name: str = ""


class AgentStatusResponse(BaseModel):
    """Derived agent status plus the file counters behind it."""

    agent_id: str
    tenant_id: str
    name: str
    status: AgentStatus
    file_count: int
    completed_count: int
    failed_count: int
    status_changed_at: datetime | None = None

    @classmethod
    def from_agent(cls, agent: Agent) -> AgentStatusResponse:
        return cls(
            agent_id=agent.agent_id,
            tenant_id=agent.tenant_id,
            name=agent.name,
            status=agent.status,
            file_count=agent.file_count,
            completed_count=agent.completed_count,
            failed_count=agent.failed_count,
            status_changed_at=agent.status_changed_at,
        )


class StageStatusResponse(BaseModel):
    """One stage of a file's processing record."""

    stage: str
    status: StageStatus
    attempts: int
    exhausted: bool
    queued_at: datetime | None = None
    started_at: datetime | None = None
    completed_at: datetime | None = None
    failed_at: datetime | None = None
    last_error: str | None = None
    counters: dict[str, Any] = Field(default_factory=dict)


class FileStatusResponse(BaseModel):
    """Overall (derived) status of a file and its four stage records."""

    file_id: str
    agent_id: str
    filename: str
    mime_type: str
    size_bytes: int
    status: FileStatus
    generation: int
    created_at: datetime
    deleted_at: datetime | None = None
    stages: list[StageStatusResponse]

    @classmethod
    def from_file(cls, file: KnowledgeFile) -> FileStatusResponse:
        return cls(
            file_id=file.file_id,
            agent_id=file.agent_id,
            filename=file.filename,
            mime_type=file.mime_type,
            size_bytes=file.size_bytes,
            status=derive_file_status(file),
            generation=file.generation,
            created_at=file.created_at,
            deleted_at=file.deleted_at,
            stages=[
                StageStatusResponse(
                    stage=record.stage.value,
                    status=record.status,
                    attempts=record.attempts,
                    exhausted=record.exhausted,
                    queued_at=record.queued_at,
                    started_at=record.started_at,
                    completed_at=record.completed_at,
                    failed_at=record.failed_at,
                    last_error=record.last_error,
                    counters=record.counters,
                )
                for record in file.processing.ordered()
            ],
        )


class FileUploadResponse(BaseModel):
    """Returned after an upload is accepted and its first stage queued."""

    file: FileStatusResponse
    job_id: str


class JobQueuedResponse(BaseModel):
    """Returned by enqueue-style endpoints such as reprocess."""

    file_id: str
    job_id: str


class DeletionTargetResponse(BaseModel):
    file_id: str
    outcomes: dict[str, BackendOutcome]
    errors: dict[str, str] = Field(default_factory=dict)


class DeletionJobResponse(BaseModel):
    """Status of a deletion job with per-backend outcomes for each file."""

    job_id: str
    agent_id: str
    status: DeletionStatus
    attempts: int
    last_error: str | None = None
    created_at: datetime
    updated_at: datetime
    completed_at: datetime | None = None
    targets: list[DeletionTargetResponse]

    @classmethod
    def from_job(cls, job: DeletionJob) -> DeletionJobResponse:
        return cls(
            job_id=job.job_id,
            agent_id=job.agent_id,
            status=job.status,
            attempts=job.attempts,
            last_error=job.last_error,
            created_at=job.created_at,
            updated_at=job.updated_at,
            completed_at=job.completed_at,
            targets=[
                DeletionTargetResponse(
                    file_id=target.file_id,
                    outcomes={backend.value: outcome for backend, outcome in target.outcomes.items()},
                    errors={backend.value: message for backend, message in target.errors.items()},
                )
                for target in job.targets
            ],
        )


class BatchDeleteRequest(BaseModel):
    file_ids: list[str] = Field(min_length=1, max_length=500)


class BatchDeleteItemResponse(BaseModel):
    file_id: str
    success: bool
    job_id: str | None = None
    status: DeletionStatus | None = None
    error: str | None = None


class BatchDeleteResponse(BaseModel):
    """Per-file outcome of a batch deletion request."""

    requested: int
    accepted: int
    rejected: int
    items: list[BatchDeleteItemResponse]

    @classmethod
    def from_report(cls, report: BatchDeletionReport) -> BatchDeleteResponse:
        return cls(
            requested=len(report.items),
            accepted=len(report.successful),
            rejected=len(report.failed),
            items=[BatchDeleteItemResponse(**item.model_dump()) for item in report.items],
        )


class RetrieveRequest(BaseModel):
    """Query plus optional overrides of the configured retrieval defaults."""

    query: str = Field(max_length=8000)
    limit: int | None = Field(default=None, ge=1, le=50)
    threshold: float | None = Field(default=None, ge=0.0, le=1.0)
    max_chars: int | None = Field(default=None, ge=1)
    max_tokens: int | None = Field(default=None, ge=1)


class RetrieveResponse(BaseModel):
    """Assembled context window with citations.

    ``grounded`` is false (and ``reason`` set) when no usable passage was
    found; callers must not treat an empty ``context`` as grounding.
    """

    grounded: bool
    reason: str | None = None
    context: str = ""
    sources: list[ContextSource] = Field(default_factory=list)
    total_chars: int = 0
    total_tokens: int = 0
    truncated: bool = False
    model: str = ""
    excluded_model_mismatch: int = 0

    @classmethod
    def from_context(cls, context: RetrievedContext) -> RetrieveResponse:
        return cls(
            grounded=context.grounded,
            reason=context.reason,
            context=context.context_text,
            sources=context.sources,
            total_chars=context.total_chars,
            total_tokens=context.total_tokens,
            truncated=context.truncated,
            model=context.model,
            excluded_model_mismatch=context.excluded_model_mismatch,
        )


class HealthResponse(BaseModel):
    """Application health check response."""

    status: str
    version: str
    providers: dict[str, Any]
    queues: dict[str, dict[str, int]] = Field(default_factory=dict)


class ErrorResponse(BaseModel):
    """Standard error response body."""

    error: str
    detail: str | None = None
