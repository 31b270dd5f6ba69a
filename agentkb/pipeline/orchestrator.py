"""Ingestion orchestrator: the per-file, four-stage job graph.

    upload ──enqueue()──► text-extraction ──► chunking ──► embeddings ──► vector-storage
                               queue            queue        queue           queue

Every stage job follows the same pattern in :meth:`IngestionOrchestrator.handle`:

    1. Load the file.  Deleted / reprocessed files (stale generation) are
       acknowledged without work.  An already-completed stage (duplicate
       delivery) is acknowledged and only makes sure the next stage exists.
    2. Mark the stage ``processing`` (attempt counter + start timestamp).
    3. Take the accumulated artifacts from the job payload, or re-derive
       them with :meth:`resume` when the payload has none (crash recovery,
       duplicate delivery, consistency repair).
    4. Run the stage under its per-attempt deadline
       (``<stage>_timeout_seconds``).  An overrun raises a retryable
       :class:`StageTimeoutError`.
    5. Persist ``completed`` with the stage counters.  The store rejects
       the write if the file was cancelled meanwhile, in which case the
       result is dropped.  Then enqueue the next stage carrying the
       artifacts, or, after the last stage, recompute the agent status.

Failures write ``failed`` on the stage.  Validation errors and the last
allowed attempt mark the stage ``exhausted`` (the file is then ``failed``
until an explicit reprocess); anything else goes back to the queue for a
backoff retry.

The orchestrator is constructed explicitly in ``agentkb/main.py`` with all
of its collaborators; it holds no global state.
"""

from __future__ import annotations

import asyncio
import hashlib
import uuid
from collections.abc import Awaitable, Callable
from dataclasses import dataclass, field
from typing import Any

import structlog

from agentkb.config.settings import Settings
from agentkb.interfaces.embedding_provider import model_family
from agentkb.interfaces.job_queue import IJobQueue
from agentkb.interfaces.metadata_store import IMetadataStore
from agentkb.interfaces.object_storage import IObjectStorage
from agentkb.interfaces.text_extractor import ITextExtractor
from agentkb.interfaces.vector_store_provider import IVectorStoreProvider
from agentkb.models.documents import (
    STAGE_ORDER,
    FileStatus,
    IntakeState,
    KnowledgeFile,
    StageName,
    StageStatus,
)
from agentkb.models.jobs import Job, QueueName, RetryPolicy
from agentkb.models.rag import Chunk, ChunkStrategy, Embedding, VectorMetadata, VectorRecord
from agentkb.pipeline.progress_tracker import ProgressTracker
from agentkb.pipeline.status_aggregator import StatusAggregator, derive_file_status
from agentkb.services.ingestion.chunker import ChunkingEngine
from agentkb.services.ingestion.embedding_coordinator import EmbeddingBatchCoordinator
from agentkb.utils.errors import (
    ConsistencyError,
    EmbeddingModelMismatchError,
    FileCancelledError,
    IngestionValidationError,
    InvalidTransitionError,
    NotFoundError,
    PipelineError,
    StageTimeoutError,
    TenantAccessError,
)
from agentkb.utils.logging import bind_job_context, get_logger

JobHandler = Callable[[Job], Awaitable[None]]

# Errors that no retry can fix.
_NON_RETRYABLE = (IngestionValidationError, EmbeddingModelMismatchError, TenantAccessError)

# Overall progress reached when each stage completes.
_STAGE_PROGRESS: dict[StageName, float] = {
    StageName.TEXT_EXTRACTION: 20.0,
    StageName.CHUNKING: 35.0,
    StageName.EMBEDDINGS: 85.0,
    StageName.VECTOR_STORAGE: 100.0,
}

_RECORD_NAMESPACE = uuid.UUID("6f1c3b52-9a0e-4c57-8d4e-2b7f0a1e9c33")


def vector_record_id(tenant_id: str, file_id: str, ordinal: int) -> str:
    """Deterministic vector id, so re-running a write overwrites instead of duplicating."""
    return str(uuid.uuid5(_RECORD_NAMESPACE, f"{tenant_id}:{file_id}:{ordinal}"))


def chunks_digest(chunks: list[Chunk]) -> str:
    """SHA-256 over the ordered chunk hashes; identifies a chunk boundary set."""
    digest = hashlib.sha256()
    for chunk in chunks:
        digest.update(f"{chunk.ordinal}:{chunk.start}:{chunk.end}:{chunk.content_hash}\n".encode())
    return digest.hexdigest()


@dataclass
class StageInput:
    """Artifacts a stage consumes, from the job payload or from :meth:`resume`."""

    text: str | None = None
    extraction_method: str | None = None
    chunks: list[Chunk] | None = None
    embeddings: list[Embedding] | None = None
    resumed: bool = False

    def to_payload(self) -> dict[str, Any]:
        payload: dict[str, Any] = {}
        if self.text is not None:
            payload["text"] = self.text
        if self.extraction_method is not None:
            payload["extraction_method"] = self.extraction_method
        if self.chunks is not None:
            payload["chunks"] = [c.model_dump(mode="json") for c in self.chunks]
        if self.embeddings is not None:
            payload["embeddings"] = [e.model_dump(mode="json") for e in self.embeddings]
        return payload

    @classmethod
    def from_payload(cls, payload: dict[str, Any]) -> StageInput:
        return cls(
            text=payload.get("text"),
            extraction_method=payload.get("extraction_method"),
            chunks=[Chunk.model_validate(c) for c in payload["chunks"]] if "chunks" in payload else None,
            embeddings=(
                [Embedding.model_validate(e) for e in payload["embeddings"]]
                if "embeddings" in payload
                else None
            ),
        )


@dataclass
class StageOutput:
    counters: dict[str, Any] = field(default_factory=dict)
    next_input: StageInput | None = None


class IngestionOrchestrator:
    """Runs the per-file ingestion job graph over a durable queue.

    Parameters
    ----------
    queue:
        Durable job queue shared by all stages.
    store:
        Metadata store; every stage write goes through its atomic
        ``transition_stage``.
    storage:
        Object storage holding the uploaded bytes.
    extractor, chunker, coordinator, vector_store:
        The per-stage workers.
    aggregator:
        Recomputes agent status after terminal stage changes.
    tracker:
        Receives per-file progress updates.
    settings:
        Stage attempt limits and backoff bases.
    """

    def __init__(
        self,
        queue: IJobQueue,
        store: IMetadataStore,
        storage: IObjectStorage,
        extractor: ITextExtractor,
        chunker: ChunkingEngine,
        coordinator: EmbeddingBatchCoordinator,
        vector_store: IVectorStoreProvider,
        aggregator: StatusAggregator,
        tracker: ProgressTracker,
        settings: Settings,
    ) -> None:
        self._queue = queue
        self._store = store
        self._storage = storage
        self._extractor = extractor
        self._chunker = chunker
        self._coordinator = coordinator
        self._vector_store = vector_store
        self._aggregator = aggregator
        self._tracker = tracker
        self._settings = settings
        self._logger: structlog.BoundLogger = get_logger(__name__)

        self._stage_runners: dict[StageName, Callable[[KnowledgeFile, StageInput], Awaitable[StageOutput]]] = {
            StageName.TEXT_EXTRACTION: self._run_extraction,
            StageName.CHUNKING: self._run_chunking,
            StageName.EMBEDDINGS: self._run_embeddings,
            StageName.VECTOR_STORAGE: self._run_vector_storage,
        }
        self._handlers: dict[QueueName, JobHandler] = {
            QueueName.for_stage(stage): self.handle for stage in STAGE_ORDER
        }

    @property
    def handlers(self) -> dict[QueueName, JobHandler]:
        """Queue → job handler map consumed by the worker pools and :meth:`drain`."""
        return dict(self._handlers)

    def register_handler(self, queue: QueueName, handler: JobHandler) -> None:
        """Attach a handler for a non-stage queue (the deletion queue)."""
        self._handlers[queue] = handler

    def retry_policy(self, stage: StageName) -> RetryPolicy:
        key = stage.settings_key
        return RetryPolicy(
            max_attempts=self._settings.stage_max_attempts(key),
            backoff_seconds=self._settings.stage_backoff_seconds(key),
        )

    # ------------------------------------------------------------------
    # Intake
    # ------------------------------------------------------------------

    async def enqueue(self, file: KnowledgeFile) -> str:
        """Schedule stage 1 for an ``uploading`` or ``queued`` file; returns the job id."""
        status = derive_file_status(file)
        if status == FileStatus.CANCELLED:
            raise FileCancelledError(message=f"File {file.file_id} is deleted")
        if status not in (FileStatus.UPLOADING, FileStatus.QUEUED):
            raise InvalidTransitionError(
                message=f"File {file.file_id} is {status.value}; use reprocess to run it again",
            )

        if not await self._store.set_intake(file.file_id, IntakeState.QUEUED):
            raise FileCancelledError(message=f"File {file.file_id} was deleted before enqueue")
        job_id = await self._enqueue_stage(file, StageName.TEXT_EXTRACTION, StageInput())
        self._logger.info(
            "file_enqueued",
            file_id=file.file_id,
            tenant_id=file.tenant_id,
            agent_id=file.agent_id,
            job_id=job_id,
            generation=file.generation,
        )
        await self._aggregator.recompute(file.agent_id)
        return job_id

    async def reprocess(self, file_id: str) -> str:
        """Reset every stage to ``pending``, drop the file's vectors and run it again."""
        file = await self._store.get_file(file_id)
        if file is None:
            raise NotFoundError(message=f"File not found: {file_id}")

        reset = await self._store.reset_stages(file_id)
        removed = await self._vector_store.delete_by_file(reset.tenant_id, reset.agent_id, file_id)
        self._logger.info(
            "file_reprocess_requested",
            file_id=file_id,
            generation=reset.generation,
            vectors_removed=removed,
        )
        return await self.enqueue(reset)

    # ------------------------------------------------------------------
    # Job handling
    # ------------------------------------------------------------------

    async def process(self, job: Job) -> None:
        """Dispatch a claimed job to its queue's handler.

        A handler that raises instead of acknowledging its job has the
        attempt failed (and retried) here, so a claim is never left hanging.
        """
        handler = self._handlers.get(job.queue)
        if handler is None:
            await self._queue.fail(job.job_id, f"No handler for queue {job.queue.value}", retryable=False)
            return
        try:
            await handler(job)
        except Exception as exc:
            self._logger.exception(
                "job_handler_crashed",
                job_id=job.job_id,
                queue=job.queue.value,
                error=str(exc),
            )
            await self._queue.fail(job.job_id, str(exc), retryable=True)

    async def handle(self, job: Job) -> None:
        """Run one stage job and acknowledge it on the queue."""
        stage = job.queue.stage
        if stage is None:
            raise PipelineError(message=f"Queue {job.queue.value} is not an ingestion stage")
        file_id = job.payload.get("file_id")
        generation = job.payload.get("generation", 0)

        with bind_job_context(job_id=job.job_id, file_id=file_id, stage=stage.value, attempt=job.attempts):
            file = await self._store.get_file(file_id) if file_id else None
            if file is None or file.is_deleted or file.generation != generation:
                self._logger.info("stage_job_discarded", reason="file_gone_or_stale")
                await self._queue.complete(job.job_id)
                return

            record = file.stage(stage)
            if record.status == StageStatus.COMPLETED:
                self._logger.info("stage_duplicate_delivery")
                await self._ensure_next_stage(file, stage)
                await self._queue.complete(job.job_id)
                return
            if record.is_terminal_failure:
                self._logger.info("stage_job_discarded", reason="stage_exhausted")
                await self._queue.complete(job.job_id)
                return

            try:
                await self._store.transition_stage(
                    file_id, stage, StageStatus.PROCESSING, generation=generation
                )
            except FileCancelledError:
                await self._queue.complete(job.job_id)
                return
            except InvalidTransitionError as exc:
                self._logger.error("stage_start_rejected", error=str(exc))
                await self._queue.fail(job.job_id, str(exc), retryable=False)
                return

            try:
                output = await self._run_with_deadline(stage, file, job)
            except FileCancelledError:
                self._logger.info("stage_aborted_file_cancelled")
                await self._queue.complete(job.job_id)
                return
            except Exception as exc:
                await self._record_failure(job, file, stage, exc)
                return

            await self._record_success(job, file, stage, output)

    async def _run_with_deadline(self, stage: StageName, file: KnowledgeFile, job: Job) -> StageOutput:
        """Resume the stage input if needed and run the stage under its attempt deadline."""

        async def _attempt() -> StageOutput:
            stage_input = StageInput.from_payload(job.payload)
            if self._needs_resume(stage, stage_input):
                stage_input = await self.resume(file, stage)
            return await self._stage_runners[stage](file, stage_input)

        timeout = self._settings.stage_timeout_seconds(stage.settings_key)
        if timeout <= 0:
            return await _attempt()
        try:
            return await asyncio.wait_for(_attempt(), timeout=timeout)
        except asyncio.TimeoutError as exc:
            raise StageTimeoutError(
                message=f"Stage {stage.value} exceeded {timeout}s for file {file.file_id}",
                provider_name="orchestrator",
            ) from exc

    async def resume(self, file: KnowledgeFile, stage: StageName | None = None) -> StageInput:
        """Re-derive the input of *stage* (default: the first incomplete stage).

        Inputs are rebuilt from the object-storage bytes and the persisted
        chunking parameters.  Chunking is deterministic, so the rebuilt
        chunks must match the digest recorded when chunking completed.
        Embeddings are not rebuilt here: the vector-storage stage embeds
        lazily, through the cache, only when vectors are actually missing.
        """
        stage = stage or file.processing.next_incomplete()
        if stage is None or stage == StageName.TEXT_EXTRACTION:
            return StageInput(resumed=True)

        data = await self._download(file)
        extracted = await self._extractor.extract(data, file.mime_type)
        if stage == StageName.CHUNKING:
            return StageInput(text=extracted.text, extraction_method=extracted.method, resumed=True)

        params = file.stage(StageName.CHUNKING).counters
        if not params:
            raise PipelineError(message=f"File {file.file_id} has no persisted chunking parameters")
        chunks = self._chunker.chunk(
            extracted.text,
            ChunkStrategy(params["strategy"]),
            size=params["chunk_size"],
            overlap=params["chunk_overlap"],
            file_id=file.file_id,
        )
        expected = params.get("chunks_digest")
        if expected and chunks_digest(chunks) != expected:
            raise PipelineError(
                message=f"Re-derived chunks for {file.file_id} differ from the persisted boundaries",
            )
        self._logger.info(
            "stage_input_resumed",
            file_id=file.file_id,
            stage=stage.value,
            chunk_count=len(chunks),
        )
        return StageInput(extraction_method=extracted.method, chunks=chunks, resumed=True)

    async def drain(self, max_jobs: int | None = None, worker_id: str = "drain") -> int:
        """Process claimable jobs in-process until every queue is idle.

        Jobs held back by a retry backoff are left for later.  Returns how
        many jobs were handled.
        """
        handled = 0
        while max_jobs is None or handled < max_jobs:
            progressed = False
            for queue in list(self._handlers):
                job = await self._queue.claim(queue, worker_id)
                if job is None:
                    continue
                progressed = True
                handled += 1
                await self.process(job)
                if max_jobs is not None and handled >= max_jobs:
                    break
            if not progressed:
                break
        self._logger.info("queues_drained", jobs_handled=handled)
        return handled

    # ------------------------------------------------------------------
    # Stage runners
    # ------------------------------------------------------------------

    async def _run_extraction(self, file: KnowledgeFile, stage_input: StageInput) -> StageOutput:
        data = await self._download(file)
        extracted = await self._extractor.extract(data, file.mime_type)
        if not extracted.text.strip():
            raise IngestionValidationError(
                message=f"No text could be extracted from {file.filename}",
                provider_name="extractor",
            )
        counters = {
            "extracted_length": len(extracted.text),
            "extraction_method": extracted.method,
        }
        if extracted.page_count is not None:
            counters["page_count"] = extracted.page_count
        return StageOutput(
            counters=counters,
            next_input=StageInput(text=extracted.text, extraction_method=extracted.method),
        )

    async def _run_chunking(self, file: KnowledgeFile, stage_input: StageInput) -> StageOutput:
        text = stage_input.text or ""
        strategy = self._chunker.select_strategy(file.mime_type, len(text))
        size, overlap = self._chunker.resolve_parameters(strategy)
        chunks = self._chunker.chunk(text, strategy, size=size, overlap=overlap, file_id=file.file_id)
        if not chunks:
            raise IngestionValidationError(
                message=f"Extracted text of {file.filename} produced no chunks",
                provider_name="chunker",
            )
        return StageOutput(
            counters={
                "chunk_count": len(chunks),
                "strategy": strategy.value,
                "chunk_size": size,
                "chunk_overlap": overlap,
                "unit": chunks[0].unit,
                "chunks_digest": chunks_digest(chunks),
            },
            next_input=StageInput(extraction_method=stage_input.extraction_method, chunks=chunks),
        )

    async def _run_embeddings(self, file: KnowledgeFile, stage_input: StageInput) -> StageOutput:
        chunks = stage_input.chunks or []

        async def _progress(done: int, total: int) -> None:
            start = _STAGE_PROGRESS[StageName.CHUNKING]
            span = _STAGE_PROGRESS[StageName.EMBEDDINGS] - start
            await self._tracker.update(
                file.file_id,
                StageName.EMBEDDINGS,
                start + span * done / max(total, 1),
                f"Embedded {done}/{total} chunks",
            )

        embeddings, stats = await self._coordinator.embed(chunks, on_progress=_progress)
        return StageOutput(
            counters={
                "embedding_count": stats.total_embeddings,
                "total_tokens": stats.total_tokens,
                "model": stats.model,
                "batches": stats.batches,
                "retries": stats.retries,
                "cache_hits": stats.cache_hits,
            },
            next_input=StageInput(
                extraction_method=stage_input.extraction_method,
                chunks=chunks,
                embeddings=embeddings,
            ),
        )

    async def _run_vector_storage(self, file: KnowledgeFile, stage_input: StageInput) -> StageOutput:
        chunks = stage_input.chunks or []
        model = self._coordinator.model
        collection_model = await self._vector_store.collection_model(file.tenant_id)
        if collection_model and model_family(collection_model) != model_family(model):
            raise EmbeddingModelMismatchError(
                message=(
                    f"Tenant collection was built with {collection_model}; "
                    f"refusing to add {model} vectors"
                ),
                provider_name=self._vector_store.get_provider_name(),
            )
        collection = await self._vector_store.ensure_collection(file.tenant_id, model)

        embeddings = stage_input.embeddings
        if embeddings is None:
            existing = await self._vector_store.count_by_file(file.tenant_id, file.agent_id, file.file_id)
            if existing == len(chunks):
                # Vectors landed on an earlier attempt; only the metadata write is missing.
                self._logger.info("vectors_already_present", file_id=file.file_id, count=existing)
                return StageOutput(counters={"vectors_stored": existing, "collection": collection})
            embeddings, _ = await self._coordinator.embed(chunks)

        await self._ensure_live(file)
        records = self._build_records(file, chunks, embeddings, stage_input.extraction_method or "")
        stored = await self._vector_store.upsert(file.tenant_id, file.agent_id, file.file_id, records)

        # A deletion may have swept the vectors before this upsert landed.
        current = await self._store.get_file(file.file_id)
        if current is None or current.is_deleted or current.generation != file.generation:
            await self._vector_store.delete_by_file(file.tenant_id, file.agent_id, file.file_id)
            raise FileCancelledError(message=f"File {file.file_id} was deleted during vector storage")

        return StageOutput(counters={"vectors_stored": stored, "collection": collection})

    # ------------------------------------------------------------------
    # Private helpers
    # ------------------------------------------------------------------

    async def _record_success(
        self, job: Job, file: KnowledgeFile, stage: StageName, output: StageOutput
    ) -> None:
        try:
            await self._store.transition_stage(
                file.file_id,
                stage,
                StageStatus.COMPLETED,
                generation=file.generation,
                counters=output.counters,
            )
        except FileCancelledError:
            self._logger.info("stage_result_dropped_file_cancelled")
            await self._queue.complete(job.job_id)
            return
        except Exception as exc:
            if stage == StageName.VECTOR_STORAGE:
                exc = ConsistencyError(
                    message=f"Vectors stored for {file.file_id} but the stage write failed: {exc}",
                    provider_name=self._store.__class__.__name__,
                )
            # The next attempt resumes from the payload and rewrites the result.
            await self._queue.fail(job.job_id, str(exc), retryable=True)
            self._logger.error("stage_result_write_failed", error=str(exc))
            return

        self._logger.info("stage_completed", **output.counters)
        await self._tracker.update(
            file.file_id, stage, _STAGE_PROGRESS[stage], f"{stage.value} completed"
        )

        if stage == StageName.VECTOR_STORAGE:
            self._logger.info(
                "file_ingestion_completed",
                file_id=file.file_id,
                tenant_id=file.tenant_id,
                agent_id=file.agent_id,
            )
            await self._queue.complete(job.job_id)
            await self._aggregator.recompute(file.agent_id)
            self._tracker.evict(file.file_id)
            return

        next_stage = STAGE_ORDER[stage.position + 1]
        await self._enqueue_stage(file, next_stage, output.next_input or StageInput())
        await self._queue.complete(job.job_id)

    async def _record_failure(
        self, job: Job, file: KnowledgeFile, stage: StageName, exc: Exception
    ) -> None:
        non_retryable = isinstance(exc, _NON_RETRYABLE)
        exhausted = non_retryable or job.is_last_attempt
        error = str(exc)

        log = self._logger.error if exhausted else self._logger.warning
        log(
            "stage_failed",
            error=error,
            error_type=type(exc).__name__,
            exhausted=exhausted,
            max_attempts=job.max_attempts,
        )

        try:
            await self._store.transition_stage(
                file.file_id,
                stage,
                StageStatus.FAILED,
                generation=file.generation,
                error=error,
                exhausted=exhausted,
            )
        except FileCancelledError:
            await self._queue.complete(job.job_id)
            return

        await self._queue.fail(job.job_id, error, retryable=not exhausted)
        if exhausted:
            await self._aggregator.recompute(file.agent_id)
            self._tracker.evict(file.file_id)

    async def _enqueue_stage(self, file: KnowledgeFile, stage: StageName, stage_input: StageInput) -> str:
        await self._store.mark_stage_queued(file.file_id, stage, file.generation)
        payload = {
            "file_id": file.file_id,
            "tenant_id": file.tenant_id,
            "agent_id": file.agent_id,
            "generation": file.generation,
            **stage_input.to_payload(),
        }
        return await self._queue.enqueue(
            QueueName.for_stage(stage),
            job_type=stage.value,
            payload=payload,
            policy=self.retry_policy(stage),
            dedupe_key=f"{file.file_id}:{stage.value}:{file.generation}",
        )

    async def _ensure_next_stage(self, file: KnowledgeFile, stage: StageName) -> None:
        """After a duplicate delivery, make sure the following stage is scheduled."""
        if stage == StageName.VECTOR_STORAGE:
            return
        next_stage = STAGE_ORDER[stage.position + 1]
        if file.stage(next_stage).status == StageStatus.PENDING:
            await self._enqueue_stage(file, next_stage, StageInput())

    @staticmethod
    def _needs_resume(stage: StageName, stage_input: StageInput) -> bool:
        if stage == StageName.CHUNKING:
            return stage_input.text is None
        if stage in (StageName.EMBEDDINGS, StageName.VECTOR_STORAGE):
            return stage_input.chunks is None
        return False

    async def _download(self, file: KnowledgeFile) -> bytes:
        try:
            return await self._storage.get(file.storage_key)
        except NotFoundError as exc:
            await self._ensure_live(file)
            raise IngestionValidationError(
                message=f"Uploaded object {file.storage_key} is missing",
                provider_name=self._storage.get_provider_name(),
            ) from exc

    async def _ensure_live(self, file: KnowledgeFile) -> None:
        current = await self._store.get_file(file.file_id)
        if current is None or current.is_deleted or current.generation != file.generation:
            raise FileCancelledError(message=f"File {file.file_id} was deleted or reprocessed")

    def _build_records(
        self,
        file: KnowledgeFile,
        chunks: list[Chunk],
        embeddings: list[Embedding],
        extraction_method: str,
    ) -> list[VectorRecord]:
        by_ordinal = {e.ordinal: e for e in embeddings}
        preview_chars = self._settings.retrieval_preview_chars
        records: list[VectorRecord] = []
        for chunk in chunks:
            embedding = by_ordinal.get(chunk.ordinal)
            if embedding is None or embedding.content_hash != chunk.content_hash:
                raise PipelineError(
                    message=f"Embedding for chunk {chunk.ordinal} of {file.file_id} is missing or stale",
                )
            records.append(
                VectorRecord(
                    record_id=vector_record_id(file.tenant_id, file.file_id, chunk.ordinal),
                    vector=embedding.vector,
                    document=chunk.text,
                    metadata=VectorMetadata(
                        tenant_id=file.tenant_id,
                        agent_id=file.agent_id,
                        file_id=file.file_id,
                        chunk_ordinal=chunk.ordinal,
                        content_hash=chunk.content_hash,
                        preview=chunk.text[:preview_chars],
                        extraction_method=extraction_method,
                        filename=file.filename,
                        mime_type=file.mime_type,
                        chunk_method=chunk.method.value,
                        start_offset=chunk.start,
                        end_offset=chunk.end,
                        embedding_model=embedding.model,
                        token_count=embedding.token_count,
                    ),
                )
            )
        return records
