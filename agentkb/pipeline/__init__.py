"""Ingestion pipeline orchestration: state machine, stage workers and status."""

from agentkb.pipeline.orchestrator import IngestionOrchestrator, StageInput
from agentkb.pipeline.progress_tracker import ProgressTracker
from agentkb.pipeline.status_aggregator import StatusAggregator, derive_agent_status, derive_file_status
from agentkb.pipeline.worker_pool import StageWorkerPool, WorkerSupervisor

__all__ = [
    "IngestionOrchestrator",
    "ProgressTracker",
    "StageInput",
    "StageWorkerPool",
    "StatusAggregator",
    "WorkerSupervisor",
    "derive_agent_status",
    "derive_file_status",
]
