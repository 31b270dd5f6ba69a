"""Multi-backend file deletion with per-backend outcomes and retry.

Deleting a file touches three backends, by default in this order:

    object storage → vector store → metadata store (tombstone)

The order comes from ``deletion.backend_order`` in ``config/config.yaml``
and must name every backend exactly once.

Before any of them is touched the file's intake marker is set to
``cancelled``; stage workers check it before every write, so in-flight
ingestion jobs abort instead of resurrecting data.  A failing backend does
not stop the later ones.  The deletion job records each backend's outcome
per file and a retry skips everything already confirmed.

Single-file jobs are named ``file-deletion-{file_id}``, so duplicate
requests collapse onto one job.

A queued job can be cancelled; its queue job is then acknowledged without
touching any backend.  The file stays cancelled for ingestion, and a later
delete request queues a fresh job.
"""

from __future__ import annotations

from collections.abc import Sequence
from datetime import timedelta

import structlog

from agentkb.config.settings import Settings
from agentkb.interfaces.job_queue import IJobQueue
from agentkb.interfaces.metadata_store import IMetadataStore
from agentkb.interfaces.object_storage import IObjectStorage
from agentkb.interfaces.vector_store_provider import IVectorStoreProvider
from agentkb.models.deletion import (
    CONFIRMED_OUTCOMES,
    DELETION_ORDER,
    BackendOutcome,
    BatchDeletionItem,
    BatchDeletionReport,
    DeletionBackend,
    DeletionJob,
    DeletionStatus,
    DeletionTarget,
)
from agentkb.models.documents import IntakeState, StageName, StageStatus, utc_now
from agentkb.models.jobs import Job, QueueName, RetryPolicy
from agentkb.pipeline.progress_tracker import ProgressTracker
from agentkb.pipeline.status_aggregator import StatusAggregator
from agentkb.utils.concurrency import throttled_gather
from agentkb.utils.errors import ConfigurationError, InvalidTransitionError, NotFoundError, PipelineError

logger = structlog.get_logger(logger_name=__name__)

_IN_FLIGHT = frozenset({DeletionStatus.QUEUED, DeletionStatus.ACTIVE})


def deletion_job_id(file_id: str) -> str:
    return f"file-deletion-{file_id}"


class DeletionWorkflow:
    """Creates, executes and retries deletion jobs."""

    def __init__(
        self,
        store: IMetadataStore,
        storage: IObjectStorage,
        vector_store: IVectorStoreProvider,
        queue: IJobQueue,
        aggregator: StatusAggregator,
        settings: Settings,
        tracker: ProgressTracker | None = None,
        backend_order: Sequence[str] | None = None,
    ) -> None:
        self._store = store
        self._storage = storage
        self._vector_store = vector_store
        self._queue = queue
        self._aggregator = aggregator
        self._settings = settings
        self._tracker = tracker
        self._backend_order = self._resolve_order(backend_order)
        self._policy = RetryPolicy(
            max_attempts=settings.stage_max_attempts("deletion"),
            backoff_seconds=settings.stage_backoff_seconds("deletion"),
        )

    # ------------------------------------------------------------------
    # Requests
    # ------------------------------------------------------------------

    async def delete_file(self, file_id: str) -> DeletionJob:
        """Cancel the file's ingestion and queue its deletion job.

        Returns the in-flight job unchanged when one already exists.  A
        file whose earlier deletion completed gets a fresh job, which then
        reports ``already_deleted`` for every backend.
        """
        job_id = deletion_job_id(file_id)
        existing = await self._store.get_deletion_job(job_id)
        if existing is not None and existing.status in _IN_FLIGHT:
            logger.info("deletion_request_collapsed", file_id=file_id, job_id=job_id)
            return existing
        if existing is not None and existing.status == DeletionStatus.FAILED:
            return await self.retry(job_id)

        file = await self._store.get_file(file_id)
        if file is None and existing is None:
            raise NotFoundError(message=f"File not found: {file_id}")

        if file is not None:
            # Cancellation marker first: stage workers abort from here on.
            await self._store.set_intake(file_id, IntakeState.CANCELLED)
            repeat = file.deleted_at is not None
            target = DeletionTarget(
                file_id=file_id,
                storage_key=file.storage_key,
                vectors_possible=repeat
                or file.stage(StageName.VECTOR_STORAGE).status != StageStatus.PENDING,
            )
            tenant_id, agent_id = file.tenant_id, file.agent_id
        else:
            previous = existing.targets[0]
            target = DeletionTarget(
                file_id=file_id,
                storage_key=previous.storage_key,
                vectors_possible=True,
            )
            tenant_id, agent_id = existing.tenant_id, existing.agent_id

        job = DeletionJob(job_id=job_id, tenant_id=tenant_id, agent_id=agent_id, targets=[target])
        await self._store.save_deletion_job(job)
        await self._queue.enqueue(
            QueueName.FILE_DELETION,
            job_type="file-deletion",
            payload={"deletion_job_id": job_id},
            policy=self._policy,
            dedupe_key=job_id,
        )
        logger.info(
            "deletion_queued",
            job_id=job_id,
            file_id=file_id,
            tenant_id=tenant_id,
            agent_id=agent_id,
            vectors_possible=target.vectors_possible,
        )
        await self._aggregator.recompute(agent_id)
        return job

    async def delete_files(self, file_ids: list[str]) -> BatchDeletionReport:
        """Apply :meth:`delete_file` to every id; one report item per file."""
        unique_ids = list(dict.fromkeys(file_ids))
        results = await throttled_gather(
            [self.delete_file(fid) for fid in unique_ids],
            limit=self._settings.stage_concurrency("deletion"),
        )

        items: list[BatchDeletionItem] = []
        for file_id, result in zip(unique_ids, results):
            if isinstance(result, BaseException):
                logger.warning("batch_deletion_item_failed", file_id=file_id, error=str(result))
                items.append(BatchDeletionItem(file_id=file_id, success=False, error=str(result)))
            else:
                items.append(
                    BatchDeletionItem(
                        file_id=file_id,
                        job_id=result.job_id,
                        success=True,
                        status=result.status,
                    )
                )
        report = BatchDeletionReport(items=items)
        logger.info(
            "batch_deletion_requested",
            requested=len(unique_ids),
            accepted=len(report.successful),
            rejected=len(report.failed),
        )
        return report

    async def retry(self, job_id: str) -> DeletionJob:
        """Re-queue a failed job; confirmed backends are skipped on the next run."""
        job = await self._store.get_deletion_job(job_id)
        if job is None:
            raise NotFoundError(message=f"Deletion job not found: {job_id}")
        if job.status != DeletionStatus.FAILED:
            logger.info("deletion_retry_ignored", job_id=job_id, status=job.status.value)
            return job

        job = job.model_copy(update={"status": DeletionStatus.QUEUED, "updated_at": utc_now()})
        await self._store.save_deletion_job(job)
        await self._queue.enqueue(
            QueueName.FILE_DELETION,
            job_type="file-deletion",
            payload={"deletion_job_id": job_id},
            policy=self._policy,
            dedupe_key=job_id,
        )
        logger.info("deletion_retry_queued", job_id=job_id, confirmed=job.confirmed_backends)
        return job

    async def cancel(self, job_id: str) -> DeletionJob:
        """Cancel a job that has not started running.

        Completed, failed and running jobs are rejected with
        :class:`InvalidTransitionError`; cancelling twice returns the
        cancelled job.
        """
        job = await self._store.get_deletion_job(job_id)
        if job is None:
            raise NotFoundError(message=f"Deletion job not found: {job_id}")
        if job.status == DeletionStatus.CANCELLED:
            return job
        if job.status != DeletionStatus.QUEUED:
            raise InvalidTransitionError(
                message=f"Cannot cancel deletion job {job_id} in {job.status.value} state",
            )

        job = job.model_copy(update={"status": DeletionStatus.CANCELLED, "updated_at": utc_now()})
        await self._store.save_deletion_job(job)
        logger.info("deletion_cancelled", job_id=job_id, confirmed=job.confirmed_backends)
        return job

    async def get_job(self, job_id: str) -> DeletionJob:
        job = await self._store.get_deletion_job(job_id)
        if job is None:
            raise NotFoundError(message=f"Deletion job not found: {job_id}")
        return job

    async def purge_expired(self, retention_hours: float | None = None) -> dict[str, int]:
        """Remove finished deletion jobs and tombstones older than the retention window."""
        hours = self._settings.deletion_retention_hours if retention_hours is None else retention_hours
        cutoff = utc_now() - timedelta(hours=hours)
        jobs = await self._store.purge_deletion_jobs(cutoff)
        files = await self._store.purge_deleted_files(cutoff)
        logger.info("deletion_purge_complete", retention_hours=hours, jobs_purged=jobs, files_purged=files)
        return {"jobs_purged": jobs, "files_purged": files}

    # ------------------------------------------------------------------
    # Execution
    # ------------------------------------------------------------------

    async def handle_job(self, queue_job: Job) -> None:
        """Queue handler for ``file-deletion`` jobs."""
        job_id = queue_job.payload.get("deletion_job_id")
        if not job_id:
            await self._queue.fail(queue_job.job_id, "payload has no deletion_job_id", retryable=False)
            return
        current = await self._store.get_deletion_job(job_id)
        if current is not None and current.status == DeletionStatus.CANCELLED:
            logger.info("deletion_job_skipped_cancelled", job_id=job_id)
            await self._queue.complete(queue_job.job_id)
            return
        try:
            job = await self.execute(job_id, will_retry=not queue_job.is_last_attempt)
        except NotFoundError as exc:
            await self._queue.fail(queue_job.job_id, str(exc), retryable=False)
            return

        if job.status == DeletionStatus.COMPLETED:
            await self._queue.complete(queue_job.job_id)
        else:
            await self._queue.fail(queue_job.job_id, job.last_error or "deletion failed")

    async def execute(self, job_id: str, will_retry: bool = False) -> DeletionJob:
        """Run every unconfirmed backend of every target once.

        The job ends ``completed`` when every backend of every target is
        confirmed; otherwise ``queued`` when the queue will retry it, or
        ``failed`` (retry manually with :meth:`retry`).
        """
        job = await self._store.get_deletion_job(job_id)
        if job is None:
            raise NotFoundError(message=f"Deletion job not found: {job_id}")
        if job.status in (DeletionStatus.COMPLETED, DeletionStatus.CANCELLED):
            return job

        job = job.model_copy(
            update={"status": DeletionStatus.ACTIVE, "attempts": job.attempts + 1, "updated_at": utc_now()}
        )
        await self._store.save_deletion_job(job)

        targets = [await self._execute_target(job, target) for target in job.targets]
        errors = [
            f"{t.file_id}/{backend.value}: {message}"
            for t in targets
            for backend, message in t.errors.items()
        ]
        succeeded = all(t.succeeded for t in targets)
        now = utc_now()
        if succeeded:
            status = DeletionStatus.COMPLETED
        else:
            status = DeletionStatus.QUEUED if will_retry else DeletionStatus.FAILED

        job = job.model_copy(
            update={
                "targets": targets,
                "status": status,
                "last_error": "; ".join(errors) or None,
                "updated_at": now,
                "completed_at": now if succeeded else None,
            }
        )
        await self._store.save_deletion_job(job)

        log = logger.info if succeeded else logger.error
        log(
            "deletion_job_finished",
            job_id=job_id,
            status=status.value,
            attempt=job.attempts,
            confirmed={fid: [b.value for b in bs] for fid, bs in job.confirmed_backends.items()},
            errors=errors,
        )

        if any(t.outcomes.get(DeletionBackend.METADATA_STORE) in CONFIRMED_OUTCOMES for t in targets):
            await self._aggregator.recompute(job.agent_id)
        if self._tracker is not None:
            for target in targets:
                if target.succeeded:
                    self._tracker.forget(target.file_id)
        return job

    async def _execute_target(self, job: DeletionJob, target: DeletionTarget) -> DeletionTarget:
        outcomes = dict(target.outcomes)
        errors = dict(target.errors)
        for backend in self._backend_order:
            if outcomes.get(backend) in CONFIRMED_OUTCOMES:
                continue
            try:
                outcome = await self._delete_from(backend, job, target)
            except Exception as exc:
                outcomes[backend] = BackendOutcome.FAILED
                errors[backend] = str(exc)
                logger.warning(
                    "deletion_backend_failed",
                    job_id=job.job_id,
                    file_id=target.file_id,
                    backend=backend.value,
                    error=str(exc),
                )
                continue
            outcomes[backend] = outcome
            errors.pop(backend, None)
            logger.info(
                "deletion_backend_done",
                job_id=job.job_id,
                file_id=target.file_id,
                backend=backend.value,
                outcome=outcome.value,
            )
        return target.model_copy(update={"outcomes": outcomes, "errors": errors})

    @staticmethod
    def _resolve_order(names: Sequence[str] | None) -> tuple[DeletionBackend, ...]:
        if not names:
            return DELETION_ORDER
        try:
            order = tuple(DeletionBackend(name) for name in names)
        except ValueError as exc:
            raise ConfigurationError(message=f"Unknown deletion backend in {list(names)}") from exc
        if sorted(order) != sorted(DELETION_ORDER):
            raise ConfigurationError(
                message=f"Deletion backend order must name every backend once, got {list(names)}",
            )
        return order

    async def _delete_from(
        self, backend: DeletionBackend, job: DeletionJob, target: DeletionTarget
    ) -> BackendOutcome:
        if backend == DeletionBackend.OBJECT_STORAGE:
            if not target.storage_key:
                return BackendOutcome.SKIPPED
            removed = await self._storage.delete(target.storage_key)
            return BackendOutcome.DELETED if removed else BackendOutcome.ALREADY_DELETED

        if backend == DeletionBackend.VECTOR_STORE:
            if not target.vectors_possible:
                return BackendOutcome.SKIPPED
            count = await self._vector_store.delete_by_file(job.tenant_id, job.agent_id, target.file_id)
            return BackendOutcome.DELETED if count > 0 else BackendOutcome.ALREADY_DELETED

        if backend == DeletionBackend.METADATA_STORE:
            marked = await self._store.mark_deleted(target.file_id)
            return BackendOutcome.DELETED if marked else BackendOutcome.ALREADY_DELETED

        raise PipelineError(message=f"Unknown deletion backend: {backend}")
