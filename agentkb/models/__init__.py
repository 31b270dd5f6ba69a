"""Pydantic models for files, chunks, vectors, agents, deletions and queue jobs."""

from agentkb.models.agent import Agent, AgentStatus
from agentkb.models.deletion import (
    BackendOutcome,
    BatchDeletionItem,
    BatchDeletionReport,
    DeletionBackend,
    DeletionJob,
    DeletionStatus,
    DeletionTarget,
)
from agentkb.models.documents import (
    STAGE_ORDER,
    FileStatus,
    IntakeState,
    KnowledgeFile,
    ProcessingRecord,
    StageName,
    StageRecord,
    StageStatus,
)
from agentkb.models.jobs import Job, JobStatus, QueueName, RetryPolicy
from agentkb.models.rag import (
    Chunk,
    ChunkStrategy,
    ContextSource,
    Embedding,
    EmbeddingBatchResult,
    EmbeddingStats,
    RetrievedContext,
    VectorMatch,
    VectorMetadata,
    VectorRecord,
)

__all__ = [
    "STAGE_ORDER",
    "Agent",
    "AgentStatus",
    "BackendOutcome",
    "BatchDeletionItem",
    "BatchDeletionReport",
    "Chunk",
    "ChunkStrategy",
    "ContextSource",
    "DeletionBackend",
    "DeletionJob",
    "DeletionStatus",
    "DeletionTarget",
    "Embedding",
    "EmbeddingBatchResult",
    "EmbeddingStats",
    "FileStatus",
    "IntakeState",
    "Job",
    "JobStatus",
    "KnowledgeFile",
    "ProcessingRecord",
    "QueueName",
    "RetrievedContext",
    "RetryPolicy",
    "StageName",
    "StageRecord",
    "StageStatus",
    "VectorMatch",
    "VectorMetadata",
    "VectorRecord",
]
