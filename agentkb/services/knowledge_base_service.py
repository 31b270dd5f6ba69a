"""Tenant-scoped facade over ingestion, status, deletion and retrieval.

Every operation takes the caller's tenant id and verifies it against the
metadata store before doing anything else; a mismatch raises
:class:`TenantAccessError`.  The HTTP routes and the CLI call this class
only.
"""

from __future__ import annotations

import hashlib
import re
import uuid

import structlog

from agentkb.config.settings import Settings
from agentkb.interfaces.metadata_store import IMetadataStore
from agentkb.interfaces.object_storage import IObjectStorage
from agentkb.interfaces.text_extractor import ITextExtractor
from agentkb.models.agent import Agent
from agentkb.models.deletion import BatchDeletionItem, BatchDeletionReport, DeletionJob
from agentkb.models.documents import KnowledgeFile
from agentkb.models.rag import RetrievedContext
from agentkb.pipeline.orchestrator import IngestionOrchestrator
from agentkb.services.deletion_service import DeletionWorkflow
from agentkb.services.retrieval_service import RetrievalService
from agentkb.utils.errors import IngestionValidationError, NotFoundError, TenantAccessError

logger = structlog.get_logger(logger_name=__name__)

_UNSAFE_FILENAME_RE = re.compile(r"[^A-Za-z0-9._-]+")


class KnowledgeBaseService:
    """The operations exposed to the outside world."""

    def __init__(
        self,
        store: IMetadataStore,
        storage: IObjectStorage,
        extractor: ITextExtractor,
        orchestrator: IngestionOrchestrator,
        deletion: DeletionWorkflow,
        retrieval: RetrievalService,
        settings: Settings,
    ) -> None:
        self._store = store
        self._storage = storage
        self._extractor = extractor
        self._orchestrator = orchestrator
        self._deletion = deletion
        self._retrieval = retrieval
        self._settings = settings

    # ------------------------------------------------------------------
    # Agents
    # ------------------------------------------------------------------

    async def register_agent(self, tenant_id: str, agent_id: str, name: str = "") -> Agent:
        existing = await self._store.get_agent(agent_id)
        if existing is not None:
            self._check_tenant(existing.tenant_id, tenant_id, f"agent {agent_id}")
            return existing
        agent = await self._store.upsert_agent(Agent(agent_id=agent_id, tenant_id=tenant_id, name=name))
        self._check_tenant(agent.tenant_id, tenant_id, f"agent {agent_id}")
        logger.info("agent_registered", tenant_id=tenant_id, agent_id=agent_id)
        return agent

    async def get_agent_status(self, tenant_id: str, agent_id: str) -> Agent:
        return await self._agent(tenant_id, agent_id)

    async def list_files(self, tenant_id: str, agent_id: str) -> list[KnowledgeFile]:
        await self._agent(tenant_id, agent_id)
        return await self._store.list_files(agent_id)

    # ------------------------------------------------------------------
    # Ingestion
    # ------------------------------------------------------------------

    async def upload_file(
        self,
        tenant_id: str,
        agent_id: str,
        filename: str,
        data: bytes,
        mime_type: str,
    ) -> tuple[KnowledgeFile, str]:
        """Store the bytes, create the file row and queue ingestion.

        Returns the created file and the id of its first stage job.

        Raises
        ------
        IngestionValidationError
            Empty or oversized upload, unsupported MIME type, or the same
            bytes already uploaded to this agent.
        """
        await self._agent(tenant_id, agent_id)
        if not data:
            raise IngestionValidationError(message=f"Upload {filename!r} is empty")
        if len(data) > self._settings.max_upload_bytes:
            raise IngestionValidationError(
                message=(
                    f"Upload {filename!r} is {len(data)} bytes; the limit is "
                    f"{self._settings.max_upload_bytes}"
                ),
            )
        if not self._extractor.supports(mime_type):
            raise IngestionValidationError(message=f"Unsupported MIME type: {mime_type}")

        digest = hashlib.sha256(data).hexdigest()
        duplicate = await self._store.find_file_by_hash(agent_id, digest)
        if duplicate is not None:
            raise IngestionValidationError(
                message=f"{filename!r} duplicates file {duplicate.file_id} of agent {agent_id}",
            )

        file_id = uuid.uuid4().hex
        safe_name = _UNSAFE_FILENAME_RE.sub("_", filename).strip("._") or "upload"
        storage_key = f"{tenant_id}/{agent_id}/{file_id}/{safe_name}"
        await self._storage.put(storage_key, data, content_type=mime_type)

        file = await self._store.create_file(
            KnowledgeFile(
                file_id=file_id,
                tenant_id=tenant_id,
                agent_id=agent_id,
                filename=filename,
                storage_key=storage_key,
                content_hash=digest,
                size_bytes=len(data),
                mime_type=mime_type,
            )
        )
        job_id = await self._orchestrator.enqueue(file)
        refreshed = await self._store.get_file(file_id)
        return refreshed or file, job_id

    async def enqueue_ingestion(self, tenant_id: str, agent_id: str, file_id: str) -> str:
        file = await self._file(tenant_id, agent_id, file_id)
        return await self._orchestrator.enqueue(file)

    async def reprocess_file(self, tenant_id: str, agent_id: str, file_id: str) -> str:
        await self._file(tenant_id, agent_id, file_id)
        return await self._orchestrator.reprocess(file_id)

    async def get_file_status(self, tenant_id: str, agent_id: str, file_id: str) -> KnowledgeFile:
        return await self._file(tenant_id, agent_id, file_id, allow_deleted=True)

    # ------------------------------------------------------------------
    # Deletion
    # ------------------------------------------------------------------

    async def delete_file(self, tenant_id: str, agent_id: str, file_id: str) -> DeletionJob:
        await self._file(tenant_id, agent_id, file_id, allow_deleted=True)
        return await self._deletion.delete_file(file_id)

    async def delete_files(self, tenant_id: str, agent_id: str, file_ids: list[str]) -> BatchDeletionReport:
        """Delete several files; files failing the ownership check are reported, not raised."""
        await self._agent(tenant_id, agent_id)
        allowed: list[str] = []
        rejected: list[BatchDeletionItem] = []
        for file_id in dict.fromkeys(file_ids):
            try:
                await self._file(tenant_id, agent_id, file_id, allow_deleted=True)
            except (NotFoundError, TenantAccessError) as exc:
                rejected.append(BatchDeletionItem(file_id=file_id, success=False, error=exc.message))
                continue
            allowed.append(file_id)

        report = await self._deletion.delete_files(allowed) if allowed else BatchDeletionReport()
        return BatchDeletionReport(items=[*report.items, *rejected])

    async def get_deletion_status(self, tenant_id: str, job_id: str) -> DeletionJob:
        job = await self._deletion.get_job(job_id)
        self._check_tenant(job.tenant_id, tenant_id, f"deletion job {job_id}")
        return job

    async def retry_deletion(self, tenant_id: str, job_id: str) -> DeletionJob:
        await self.get_deletion_status(tenant_id, job_id)
        return await self._deletion.retry(job_id)

    async def cancel_deletion(self, tenant_id: str, job_id: str) -> DeletionJob:
        await self.get_deletion_status(tenant_id, job_id)
        return await self._deletion.cancel(job_id)

    # ------------------------------------------------------------------
    # Retrieval
    # ------------------------------------------------------------------

    async def retrieve(
        self,
        tenant_id: str,
        agent_id: str,
        query: str,
        limit: int | None = None,
        threshold: float | None = None,
        max_chars: int | None = None,
        max_tokens: int | None = None,
    ) -> RetrievedContext:
        await self._agent(tenant_id, agent_id)
        return await self._retrieval.retrieve(
            tenant_id,
            agent_id,
            query,
            limit=limit,
            threshold=threshold,
            max_chars=max_chars,
            max_tokens=max_tokens,
        )

    # ------------------------------------------------------------------
    # Ownership checks
    # ------------------------------------------------------------------

    async def _agent(self, tenant_id: str, agent_id: str) -> Agent:
        agent = await self._store.get_agent(agent_id)
        if agent is None:
            raise NotFoundError(message=f"Agent not found: {agent_id}")
        self._check_tenant(agent.tenant_id, tenant_id, f"agent {agent_id}")
        return agent

    async def _file(
        self, tenant_id: str, agent_id: str, file_id: str, allow_deleted: bool = False
    ) -> KnowledgeFile:
        await self._agent(tenant_id, agent_id)
        file = await self._store.get_file(file_id)
        if file is None or (file.is_deleted and not allow_deleted):
            raise NotFoundError(message=f"File not found: {file_id}")
        self._check_tenant(file.tenant_id, tenant_id, f"file {file_id}")
        if file.agent_id != agent_id:
            raise TenantAccessError(message=f"File {file_id} does not belong to agent {agent_id}")
        return file

    @staticmethod
    def _check_tenant(owner: str, tenant_id: str, what: str) -> None:
        if owner != tenant_id:
            logger.warning("tenant_access_denied", tenant_id=tenant_id, resource=what)
            raise TenantAccessError(message=f"{what} does not belong to tenant {tenant_id}")
