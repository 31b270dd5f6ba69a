"""File and agent status derivation.

File status is a pure function of the stage record plus the intake marker;
agent status is a pure function of its live files' statuses.  Only
:class:`StatusAggregator` persists an agent status, and it does so after
every terminal stage change (completion, exhaustion, deletion, reprocess).

Agent status rules::

    no live files                          → draft
    every file completed                   → trained
    some file failed, none still in flight → error
    otherwise                              → training
"""

from __future__ import annotations

import asyncio
from collections.abc import Callable, Iterable

import structlog

from agentkb.interfaces.metadata_store import IMetadataStore
from agentkb.models.agent import Agent, AgentStatus
from agentkb.models.documents import FileStatus, IntakeState, KnowledgeFile, StageStatus

logger = structlog.get_logger(logger_name=__name__)

_IN_FLIGHT = frozenset({FileStatus.UPLOADING, FileStatus.QUEUED, FileStatus.PROCESSING})


def derive_file_status(file: KnowledgeFile) -> FileStatus:
    """Return the overall status of *file*."""
    if file.is_deleted:
        return FileStatus.CANCELLED

    records = file.processing.ordered()
    if all(r.status == StageStatus.COMPLETED for r in records):
        return FileStatus.COMPLETED
    if any(r.is_terminal_failure for r in records):
        return FileStatus.FAILED
    if any(r.status != StageStatus.PENDING for r in records):
        return FileStatus.PROCESSING
    if file.intake == IntakeState.QUEUED or any(r.queued_at for r in records):
        return FileStatus.QUEUED
    return FileStatus.UPLOADING


def derive_agent_status(files: Iterable[KnowledgeFile]) -> AgentStatus:
    """Return the agent status for its files; cancelled files are ignored."""
    statuses = [derive_file_status(f) for f in files]
    statuses = [s for s in statuses if s != FileStatus.CANCELLED]
    if not statuses:
        return AgentStatus.DRAFT
    if all(s == FileStatus.COMPLETED for s in statuses):
        return AgentStatus.TRAINED
    if any(s == FileStatus.FAILED for s in statuses) and not any(s in _IN_FLIGHT for s in statuses):
        return AgentStatus.ERROR
    return AgentStatus.TRAINING


class StatusAggregator:
    """Recomputes, persists and broadcasts agent status.

    Listeners are called as ``callback(agent, previous_status)`` whenever
    the persisted status changes; the ``trained`` transition is the
    "agent ready" notification.
    """

    def __init__(self, store: IMetadataStore) -> None:
        self._store = store
        self._listeners: list[Callable] = []

    def register_listener(self, callback: Callable) -> None:
        if callback not in self._listeners:
            self._listeners.append(callback)

    def unregister_listener(self, callback: Callable) -> None:
        if callback in self._listeners:
            self._listeners.remove(callback)

    async def recompute(self, agent_id: str) -> Agent | None:
        """Derive and persist the agent's status; returns the stored agent."""
        previous = await self._store.get_agent(agent_id)
        if previous is None:
            logger.warning("status_recompute_unknown_agent", agent_id=agent_id)
            return None

        files = await self._store.list_files(agent_id)
        statuses = [derive_file_status(f) for f in files]
        status = derive_agent_status(files)
        agent = await self._store.save_agent_status(
            agent_id,
            status,
            file_count=len(files),
            completed_count=sum(1 for s in statuses if s == FileStatus.COMPLETED),
            failed_count=sum(1 for s in statuses if s == FileStatus.FAILED),
        )

        if agent.status != previous.status:
            logger.info(
                "agent_status_changed",
                agent_id=agent_id,
                tenant_id=agent.tenant_id,
                previous=previous.status.value,
                status=agent.status.value,
                file_count=agent.file_count,
            )
            await self._notify_listeners(agent, previous.status)
        return agent

    async def _notify_listeners(self, agent: Agent, previous: AgentStatus) -> None:
        for callback in list(self._listeners):
            try:
                result = callback(agent, previous)
                if asyncio.iscoroutine(result):
                    await result
            except Exception as exc:
                logger.warning(
                    "agent_status_listener_error",
                    agent_id=agent.agent_id,
                    error=str(exc),
                    callback=getattr(callback, "__name__", repr(callback)),
                )
