"""Chunk, embedding, vector-record and retrieval models.

RAG data flow through these models:

    extracted text ──chunk()──→ Chunk[] ──embed()──→ Embedding[]
        ──build records──→ VectorRecord[] ──upsert──→ vector store
    query ──embed──→ search ──→ VectorMatch[] ──assemble──→ RetrievedContext

Chunks and embeddings are ephemeral: they live in job payloads between
stages and are never stored on their own.  Only :class:`VectorRecord`
persists, and its metadata is enough to cite a retrieved passage without
going back to the metadata store.
"""

from __future__ import annotations

from enum import Enum

from pydantic import BaseModel, ConfigDict, Field


class ChunkStrategy(str, Enum):  # noqa: UP042
    """Available chunking strategies."""

    FIXED = "fixed"
    RECURSIVE = "recursive"
    MARKDOWN = "markdown"
    TOKEN = "token"


# ---------------------------------------------------------------------------
# Chunk: an ephemeral span of extracted text.
# ---------------------------------------------------------------------------
class Chunk(BaseModel):
    """A contiguous span of a file's extracted text.

    ``text == source_text[start:end]`` always holds, so offsets can be used
    for citation highlighting.  Ordinals are contiguous from ``0``.
    """

    model_config = ConfigDict(frozen=True)

    file_id: str
    ordinal: int = Field(ge=0)
    start: int = Field(ge=0, description="Inclusive start offset into the extracted text.")
    end: int = Field(ge=0, description="Exclusive end offset into the extracted text.")
    text: str
    content_hash: str = Field(description="SHA-256 of the chunk text.")
    method: ChunkStrategy
    size: int = Field(gt=0, description="Maximum chunk length in units.")
    overlap: int = Field(ge=0, description="Maximum shared units between neighbours.")
    unit: str = Field(default="chars", description='"chars" or a "tokens:..." label.')


# ---------------------------------------------------------------------------
# Embeddings
# ---------------------------------------------------------------------------
class Embedding(BaseModel):
    """A vector bound 1:1 to a chunk (by ordinal and content hash)."""

    model_config = ConfigDict(frozen=True)

    ordinal: int = Field(ge=0)
    content_hash: str
    vector: list[float]
    model: str
    token_count: int = Field(default=0, ge=0)


class EmbeddingBatchResult(BaseModel):
    """What an embedding provider returns for one batch call."""

    model_config = ConfigDict(frozen=True)

    vectors: list[list[float]]
    model: str
    total_tokens: int = Field(default=0, ge=0)


class EmbeddingStats(BaseModel):
    """Aggregate stats for an embedding run."""

    model_config = ConfigDict(frozen=True)

    total_embeddings: int = 0
    total_tokens: int = 0
    model: str = ""
    batches: int = 0
    retries: int = 0
    cache_hits: int = 0


# ---------------------------------------------------------------------------
# Vector records
# ---------------------------------------------------------------------------
class VectorMetadata(BaseModel):
    """Provenance stored next to every vector.

    All values are scalars so the model flattens directly into vector
    store metadata (ChromaDB only accepts str / int / float / bool).
    """

    model_config = ConfigDict(frozen=True)

    tenant_id: str
    agent_id: str
    file_id: str
    chunk_ordinal: int
    content_hash: str
    preview: str = Field(description="First characters of the chunk text.")
    extraction_method: str
    filename: str = ""
    mime_type: str = ""
    chunk_method: str = ""
    start_offset: int = 0
    end_offset: int = 0
    embedding_model: str = ""
    token_count: int = 0


class VectorRecord(BaseModel):
    """A vector plus its document text and provenance metadata."""

    model_config = ConfigDict(frozen=True)

    record_id: str = Field(description="Deterministic id: UUID5(tenant, file, ordinal).")
    vector: list[float]
    document: str
    metadata: VectorMetadata


class VectorMatch(BaseModel):
    """One search hit, scored by cosine similarity (higher is closer)."""

    model_config = ConfigDict(frozen=True)

    record_id: str
    score: float
    document: str
    metadata: VectorMetadata


# ---------------------------------------------------------------------------
# Retrieval output
# ---------------------------------------------------------------------------
class ContextSource(BaseModel):
    """Citation data for one passage included in the context window."""

    model_config = ConfigDict(frozen=True)

    file_id: str
    filename: str
    chunk_ordinal: int
    score: float
    start_offset: int
    end_offset: int
    preview: str


class RetrievedContext(BaseModel):
    """The assembled retrieval result handed to chat orchestration.

    ``grounded`` is ``False`` whenever nothing usable was found; ``reason``
    then says why (``no_completed_files``, ``no_matches``,
    ``below_threshold``) so the caller can decide whether to answer
    without grounding.
    """

    model_config = ConfigDict(frozen=True)

    tenant_id: str
    agent_id: str
    query: str
    grounded: bool
    reason: str | None = None
    model: str = ""
    context_text: str = ""
    sources: list[ContextSource] = Field(default_factory=list)
    total_chars: int = 0
    total_tokens: int = 0
    truncated: bool = False
    excluded_model_mismatch: int = Field(
        default=0,
        description="Matches dropped because they were embedded with another model.",
    )
