"""Abstract base class for the metadata store (files, agents, deletion jobs).

The one rule every implementation must honour: stage writes are single,
atomic, stage-scoped operations.  :meth:`IMetadataStore.transition_stage`
touches exactly one stage of one file and checks, in the same write, that

* the stage's current status is a legal source for the target status,
* every earlier stage is ``completed`` when the target is not ``pending``,
* the file is not deleted and the caller's generation is current.

Workers never read a record, modify it in Python and write it back.
"""

from __future__ import annotations

from abc import ABC, abstractmethod
from datetime import datetime
from typing import Any

from agentkb.models.agent import Agent, AgentStatus
from agentkb.models.deletion import DeletionJob
from agentkb.models.documents import IntakeState, KnowledgeFile, StageName, StageRecord, StageStatus


# Concrete implementation: SQLiteMetadataStore (agentkb/providers/metadata/)
class IMetadataStore(ABC):
    """Persistence for files, agents and deletion jobs."""

    @abstractmethod
    async def initialize(self) -> None:
        """Create tables and indexes if they do not exist."""

    # -- Agents ---------------------------------------------------------

    @abstractmethod
    async def upsert_agent(self, agent: Agent) -> Agent:
        """Register an agent (idempotent); the stored row wins on conflict."""

    @abstractmethod
    async def get_agent(self, agent_id: str) -> Agent | None:
        """Return the agent or ``None``."""

    @abstractmethod
    async def save_agent_status(
        self,
        agent_id: str,
        status: AgentStatus,
        file_count: int,
        completed_count: int,
        failed_count: int,
    ) -> Agent:
        """Persist a derived agent status and its counters."""

    # -- Files ----------------------------------------------------------

    @abstractmethod
    async def create_file(self, file: KnowledgeFile) -> KnowledgeFile:
        """Insert a new file with all stages ``pending``."""

    @abstractmethod
    async def get_file(self, file_id: str) -> KnowledgeFile | None:
        """Return the file (including tombstoned ones) or ``None``."""

    @abstractmethod
    async def find_file_by_hash(self, agent_id: str, content_hash: str) -> KnowledgeFile | None:
        """Return a live file of *agent_id* with the same content hash."""

    @abstractmethod
    async def list_files(self, agent_id: str, include_deleted: bool = False) -> list[KnowledgeFile]:
        """Return the agent's files, oldest first."""

    @abstractmethod
    async def set_intake(self, file_id: str, intake: IntakeState) -> bool:
        """Set the intake marker of a live file; ``False`` if deleted or missing."""

    @abstractmethod
    async def mark_stage_queued(self, file_id: str, stage: StageName, generation: int) -> bool:
        """Record the queued timestamp of a stage; ``False`` if the file is gone."""

    @abstractmethod
    async def transition_stage(
        self,
        file_id: str,
        stage: StageName,
        target: StageStatus,
        *,
        generation: int,
        counters: dict[str, Any] | None = None,
        error: str | None = None,
        exhausted: bool = False,
    ) -> StageRecord:
        """Atomically move one stage of one file to *target*.

        Raises
        ------
        agentkb.utils.errors.NotFoundError
            The file does not exist.
        agentkb.utils.errors.FileCancelledError
            The file was deleted or reprocessed (stale generation).
        agentkb.utils.errors.InvalidTransitionError
            The transition is not allowed from the stored state.
        """

    @abstractmethod
    async def reset_stages(self, file_id: str) -> KnowledgeFile:
        """Reset every stage to ``pending`` and bump the generation (reprocess)."""

    @abstractmethod
    async def mark_deleted(self, file_id: str) -> bool:
        """Tombstone a file; ``False`` if it was already deleted."""

    @abstractmethod
    async def purge_deleted_files(self, before: datetime) -> int:
        """Hard-delete tombstones older than *before*."""

    # -- Deletion jobs --------------------------------------------------

    @abstractmethod
    async def save_deletion_job(self, job: DeletionJob) -> DeletionJob:
        """Insert or replace a deletion job."""

    @abstractmethod
    async def get_deletion_job(self, job_id: str) -> DeletionJob | None:
        """Return the deletion job or ``None``."""

    @abstractmethod
    async def purge_deletion_jobs(self, before: datetime) -> int:
        """Delete terminal deletion jobs last updated before *before*."""
