"""Document ingestion building blocks.

1. **Chunk** (chunker.py / ChunkingEngine) -- splits extracted text into
   ordered, overlapping spans under one of four strategies.

2. **Embed** (embedding_coordinator.py / EmbeddingBatchCoordinator) --
   turns chunks into vectors in capped batches with per-batch retry.

Sequencing the stages is the job of
:class:`agentkb.pipeline.orchestrator.IngestionOrchestrator`.
"""

from agentkb.services.ingestion.chunker import ChunkingEngine
from agentkb.services.ingestion.embedding_coordinator import EmbeddingBatchCoordinator

__all__ = ["ChunkingEngine", "EmbeddingBatchCoordinator"]
