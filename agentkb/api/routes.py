"""FastAPI route definitions for the agentkb API.

Every route is a thin adapter over :class:`KnowledgeBaseService`: it
parses the request, calls one facade method with the tenant from the
path, and converts the domain result into a response schema.  Errors
raised by the facade are turned into HTTP status codes by
``ErrorHandlingMiddleware``.

# ─── API ROUTE MAP ─────────────────────────────────────────────────────
#
# Endpoint                                              Method  Description
# ───────────────────────────────────────────────────────────────────────
# /api/v1/tenants/{t}/agents                            POST    Register agent
# /api/v1/tenants/{t}/agents/{a}/status                 GET     Agent status
# /api/v1/tenants/{t}/agents/{a}/files                  GET     List files
# /api/v1/tenants/{t}/agents/{a}/files                  POST    Upload + enqueue
# /api/v1/tenants/{t}/agents/{a}/files/{f}/status       GET     File stage record
# /api/v1/tenants/{t}/agents/{a}/files/{f}/reprocess    POST    Reset + re-ingest
# /api/v1/tenants/{t}/agents/{a}/files/{f}              DELETE  Queue deletion
# /api/v1/tenants/{t}/agents/{a}/files/batch-delete     POST    Batch deletion
# /api/v1/tenants/{t}/deletions/{job}                   GET     Deletion status
# /api/v1/tenants/{t}/deletions/{job}/retry             POST    Retry deletion
# /api/v1/tenants/{t}/deletions/{job}/cancel            POST    Cancel deletion
# /api/v1/tenants/{t}/agents/{a}/retrieve               POST    Context window
# /api/v1/health                                        GET     Health check
#
# Dependencies are resolved from app.state (populated at startup in
# main.py by build_components) through Annotated[..., Depends(helper)] aliases.
# ──────────────────────────────────────────────────────────────────────
"""

from __future__ import annotations

from typing import Annotated, Any

import structlog
from fastapi import APIRouter, Depends, Request, UploadFile, status

from agentkb import __version__
from agentkb.api.schemas import (
    AgentStatusResponse,
    BatchDeleteRequest,
    BatchDeleteResponse,
    DeletionJobResponse,
    ErrorResponse,
    FileStatusResponse,
    FileUploadResponse,
    HealthResponse,
    JobQueuedResponse,
    RegisterAgentRequest,
    RetrieveRequest,
    RetrieveResponse,
)
from agentkb.interfaces.job_queue import IJobQueue
from agentkb.models.jobs import QueueName
from agentkb.services.knowledge_base_service import KnowledgeBaseService
from agentkb.utils.errors import IngestionValidationError
from agentkb.utils.logging import get_logger

_logger: structlog.BoundLogger = get_logger(__name__)

router = APIRouter(prefix="/api/v1")

_UPLOAD_CHUNK_SIZE = 64 * 1024

_ERROR_RESPONSES: dict[int | str, dict[str, Any]] = {
    403: {"model": ErrorResponse},
    404: {"model": ErrorResponse},
    409: {"model": ErrorResponse},
    422: {"model": ErrorResponse},
    503: {"model": ErrorResponse},
}


# ---------------------------------------------------------------------------
# Dependency injection helpers: resolve singletons from app.state
# ---------------------------------------------------------------------------


def _get_service(request: Request) -> KnowledgeBaseService:
    return request.app.state.kb_service


def _get_job_queue(request: Request) -> IJobQueue | None:
    return getattr(request.app.state, "job_queue", None)


ServiceDep = Annotated[KnowledgeBaseService, Depends(_get_service)]
JobQueueDep = Annotated[IJobQueue | None, Depends(_get_job_queue)]


# ---------------------------------------------------------------------------
# Agents
# ---------------------------------------------------------------------------


@router.post(
    "/tenants/{tenant_id}/agents",
    response_model=AgentStatusResponse,
    status_code=status.HTTP_201_CREATED,
    responses=_ERROR_RESPONSES,
    summary="Register an agent knowledge base for a tenant",
)
async def register_agent(
    tenant_id: str, body: RegisterAgentRequest, service: ServiceDep
) -> AgentStatusResponse:
    agent = await service.register_agent(tenant_id, body.agent_id, name=body.name)
    return AgentStatusResponse.from_agent(agent)


@router.get(
    "/tenants/{tenant_id}/agents/{agent_id}/status",
    response_model=AgentStatusResponse,
    responses=_ERROR_RESPONSES,
    summary="Derived agent status",
)
async def get_agent_status(tenant_id: str, agent_id: str, service: ServiceDep) -> AgentStatusResponse:
    agent = await service.get_agent_status(tenant_id, agent_id)
    return AgentStatusResponse.from_agent(agent)


# ---------------------------------------------------------------------------
# Files
# ---------------------------------------------------------------------------


@router.get(
    "/tenants/{tenant_id}/agents/{agent_id}/files",
    response_model=list[FileStatusResponse],
    responses=_ERROR_RESPONSES,
    summary="List the agent's live files",
)
async def list_files(tenant_id: str, agent_id: str, service: ServiceDep) -> list[FileStatusResponse]:
    files = await service.list_files(tenant_id, agent_id)
    return [FileStatusResponse.from_file(f) for f in files]


@router.post(
    "/tenants/{tenant_id}/agents/{agent_id}/files",
    response_model=FileUploadResponse,
    status_code=status.HTTP_202_ACCEPTED,
    responses=_ERROR_RESPONSES,
    summary="Upload a source file and queue its ingestion",
)
async def upload_file(
    tenant_id: str,
    agent_id: str,
    file: UploadFile,
    request: Request,
    service: ServiceDep,
) -> FileUploadResponse:
    """Stream the upload, rejecting it as soon as it passes the size limit."""
    max_bytes = request.app.state.settings.max_upload_bytes
    parts: list[bytes] = []
    total = 0
    while True:
        part = await file.read(_UPLOAD_CHUNK_SIZE)
        if not part:
            break
        total += len(part)
        if total > max_bytes:
            raise IngestionValidationError(
                message=f"Upload {file.filename!r} exceeds the {max_bytes} byte limit",
            )
        parts.append(part)
    data = b"".join(parts)

    mime_type = (file.content_type or "application/octet-stream").split(";")[0].strip().lower()
    created, job_id = await service.upload_file(
        tenant_id, agent_id, file.filename or "upload", data, mime_type
    )
    _logger.info(
        "file_upload_accepted",
        tenant_id=tenant_id,
        agent_id=agent_id,
        file_id=created.file_id,
        size_bytes=created.size_bytes,
        mime_type=mime_type,
    )
    return FileUploadResponse(file=FileStatusResponse.from_file(created), job_id=job_id)


@router.get(
    "/tenants/{tenant_id}/agents/{agent_id}/files/{file_id}/status",
    response_model=FileStatusResponse,
    responses=_ERROR_RESPONSES,
    summary="Stage record and derived status of one file",
)
async def get_file_status(
    tenant_id: str, agent_id: str, file_id: str, service: ServiceDep
) -> FileStatusResponse:
    file = await service.get_file_status(tenant_id, agent_id, file_id)
    return FileStatusResponse.from_file(file)


@router.post(
    "/tenants/{tenant_id}/agents/{agent_id}/files/{file_id}/reprocess",
    response_model=JobQueuedResponse,
    status_code=status.HTTP_202_ACCEPTED,
    responses=_ERROR_RESPONSES,
    summary="Reset every stage and ingest the file again",
)
async def reprocess_file(
    tenant_id: str, agent_id: str, file_id: str, service: ServiceDep
) -> JobQueuedResponse:
    job_id = await service.reprocess_file(tenant_id, agent_id, file_id)
    return JobQueuedResponse(file_id=file_id, job_id=job_id)


# ---------------------------------------------------------------------------
# Deletion
# ---------------------------------------------------------------------------


@router.post(
    "/tenants/{tenant_id}/agents/{agent_id}/files/batch-delete",
    response_model=BatchDeleteResponse,
    status_code=status.HTTP_202_ACCEPTED,
    responses=_ERROR_RESPONSES,
    summary="Queue deletion of several files",
)
async def batch_delete_files(
    tenant_id: str, agent_id: str, body: BatchDeleteRequest, service: ServiceDep
) -> BatchDeleteResponse:
    report = await service.delete_files(tenant_id, agent_id, body.file_ids)
    return BatchDeleteResponse.from_report(report)


@router.delete(
    "/tenants/{tenant_id}/agents/{agent_id}/files/{file_id}",
    response_model=DeletionJobResponse,
    status_code=status.HTTP_202_ACCEPTED,
    responses=_ERROR_RESPONSES,
    summary="Queue deletion of one file",
)
async def delete_file(
    tenant_id: str, agent_id: str, file_id: str, service: ServiceDep
) -> DeletionJobResponse:
    job = await service.delete_file(tenant_id, agent_id, file_id)
    return DeletionJobResponse.from_job(job)


@router.get(
    "/tenants/{tenant_id}/deletions/{job_id}",
    response_model=DeletionJobResponse,
    responses=_ERROR_RESPONSES,
    summary="Per-backend status of a deletion job",
)
async def get_deletion_status(tenant_id: str, job_id: str, service: ServiceDep) -> DeletionJobResponse:
    job = await service.get_deletion_status(tenant_id, job_id)
    return DeletionJobResponse.from_job(job)


@router.post(
    "/tenants/{tenant_id}/deletions/{job_id}/retry",
    response_model=DeletionJobResponse,
    status_code=status.HTTP_202_ACCEPTED,
    responses=_ERROR_RESPONSES,
    summary="Retry the unconfirmed backends of a failed deletion job",
)
async def retry_deletion(tenant_id: str, job_id: str, service: ServiceDep) -> DeletionJobResponse:
    job = await service.retry_deletion(tenant_id, job_id)
    return DeletionJobResponse.from_job(job)


@router.post(
    "/tenants/{tenant_id}/deletions/{job_id}/cancel",
    response_model=DeletionJobResponse,
    responses=_ERROR_RESPONSES,
    summary="Cancel a deletion job that has not started running",
)
async def cancel_deletion(tenant_id: str, job_id: str, service: ServiceDep) -> DeletionJobResponse:
    job = await service.cancel_deletion(tenant_id, job_id)
    return DeletionJobResponse.from_job(job)


# ---------------------------------------------------------------------------
# Retrieval
# ---------------------------------------------------------------------------


@router.post(
    "/tenants/{tenant_id}/agents/{agent_id}/retrieve",
    response_model=RetrieveResponse,
    responses=_ERROR_RESPONSES,
    summary="Assemble a cited context window for a query",
)
async def retrieve(
    tenant_id: str, agent_id: str, body: RetrieveRequest, service: ServiceDep
) -> RetrieveResponse:
    context = await service.retrieve(
        tenant_id,
        agent_id,
        body.query,
        limit=body.limit,
        threshold=body.threshold,
        max_chars=body.max_chars,
        max_tokens=body.max_tokens,
    )
    return RetrieveResponse.from_context(context)


# ---------------------------------------------------------------------------
# Health
# ---------------------------------------------------------------------------


@router.get(
    "/health",
    response_model=HealthResponse,
    summary="Application health check",
)
async def health_check(request: Request, job_queue: JobQueueDep) -> HealthResponse:
    """Return version, provider availability and per-queue job counts."""
    providers: dict[str, Any] = {}
    if hasattr(request.app.state, "provider_registry"):
        providers = dict(request.app.state.provider_registry)

    queues: dict[str, dict[str, int]] = {}
    queue_ok = True
    if job_queue is not None:
        try:
            for queue in QueueName:
                queues[queue.value] = await job_queue.counts(queue)
        except Exception as exc:
            _logger.warning("health_queue_check_failed", error=str(exc))
            queue_ok = False

    embedding_ok = bool(providers.get("embedding", False))
    if embedding_ok and queue_ok:
        health = "healthy"
    elif queue_ok:
        health = "degraded"
    else:
        health = "unhealthy"

    return HealthResponse(status=health, version=__version__, providers=providers, queues=queues)
