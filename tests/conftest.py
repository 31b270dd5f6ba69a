"""Shared pytest fixtures for the agentkb test suite."""

from __future__ import annotations

import hashlib
import struct
from dataclasses import dataclass
from pathlib import Path

import pytest
import pytest_asyncio

from agentkb.config.settings import Settings
from agentkb.interfaces.embedding_provider import IEmbeddingProvider
from agentkb.interfaces.vector_store_provider import IVectorStoreProvider
from agentkb.models.documents import KnowledgeFile
from agentkb.models.jobs import QueueName
from agentkb.models.rag import EmbeddingBatchResult, VectorMatch, VectorRecord
from agentkb.pipeline.orchestrator import IngestionOrchestrator
from agentkb.pipeline.progress_tracker import ProgressTracker
from agentkb.pipeline.status_aggregator import StatusAggregator
from agentkb.providers.cache.ttl_embedding_cache import TTLEmbeddingCache
from agentkb.providers.extraction.document_text_extractor import DocumentTextExtractor
from agentkb.providers.metadata.sqlite_metadata_store import SQLiteMetadataStore
from agentkb.providers.queue.sqlite_job_queue import SQLiteJobQueue
from agentkb.providers.storage.local_object_storage import LocalObjectStorage
from agentkb.services.deletion_service import DeletionWorkflow
from agentkb.services.ingestion.chunker import ChunkingEngine
from agentkb.services.ingestion.embedding_coordinator import EmbeddingBatchCoordinator
from agentkb.services.knowledge_base_service import KnowledgeBaseService
from agentkb.services.retrieval_service import RetrievalService
from agentkb.utils.errors import RAGError, TenantAccessError

# ---------------------------------------------------------------------------
# Embedding fakes
# ---------------------------------------------------------------------------

_EMBEDDING_DIM = 128


def _hash_to_vector(text: str, dim: int = _EMBEDDING_DIM) -> list[float]:
    """Generate a deterministic unit-length vector by hashing *text*.

    Same text always produces the same vector; unrelated texts land close
    to orthogonal.
    """
    digest = hashlib.sha256(text.encode("utf-8")).digest()
    raw = digest
    while len(raw) < dim * 4:
        raw += hashlib.sha256(raw).digest()
    raw = raw[: dim * 4]
    values = list(struct.unpack(f"<{dim}i", raw))
    magnitude = max(sum(float(v) * v for v in values) ** 0.5, 1e-10)
    return [v / magnitude for v in values]


class MockEmbeddingProvider(IEmbeddingProvider):
    """In-memory deterministic embedding provider for tests.

    ``calls`` records every batch, so tests can assert on batching and on
    which texts were (re-)embedded.
    """

    def __init__(self, model: str = "mock-embedding-v1") -> None:
        self.model = model
        self.calls: list[list[str]] = []

    async def embed(self, texts: list[str], model: str | None = None) -> EmbeddingBatchResult:
        self.calls.append(list(texts))
        return EmbeddingBatchResult(
            vectors=[_hash_to_vector(t) for t in texts],
            model=model or self.model,
            total_tokens=sum(max(1, len(t.split())) for t in texts),
        )

    async def embed_single(self, text: str, model: str | None = None) -> list[float]:
        return _hash_to_vector(text)

    def get_model_name(self) -> str:
        return self.model

    def get_dimension(self) -> int:
        return _EMBEDDING_DIM

    def get_provider_name(self) -> str:
        return "mock-embedding"

    def is_available(self) -> bool:
        return True


# ---------------------------------------------------------------------------
# Vector store fake
# ---------------------------------------------------------------------------


class InMemoryVectorStore(IVectorStoreProvider):
    """Dict-backed vector store with one "collection" per tenant.

    Set ``fail_deletes`` / ``fail_upserts`` to simulate an unavailable
    backend.
    """

    def __init__(self) -> None:
        self.collections: dict[str, str] = {}
        self.records: dict[str, dict[str, VectorRecord]] = {}
        self.ensure_calls = 0
        self.upsert_calls = 0
        self.fail_deletes = False
        self.fail_upserts = False

    async def ensure_collection(self, tenant_id: str, embedding_model: str) -> str:
        self.ensure_calls += 1
        self.collections.setdefault(tenant_id, embedding_model)
        self.records.setdefault(tenant_id, {})
        return f"kb-{tenant_id}"

    async def collection_model(self, tenant_id: str) -> str | None:
        return self.collections.get(tenant_id)

    async def upsert(
        self,
        tenant_id: str,
        agent_id: str,
        file_id: str,
        records: list[VectorRecord],
    ) -> int:
        if self.fail_upserts:
            raise RAGError(message="vector store unavailable", provider_name="memory")
        for record in records:
            meta = record.metadata
            if (meta.tenant_id, meta.agent_id, meta.file_id) != (tenant_id, agent_id, file_id):
                raise TenantAccessError(message=f"Record {record.record_id} belongs elsewhere")
        self.upsert_calls += 1
        bucket = self.records.setdefault(tenant_id, {})
        for record in records:
            bucket[record.record_id] = record
        return len(records)

    async def delete_by_file(self, tenant_id: str, agent_id: str, file_id: str) -> int:
        if self.fail_deletes:
            raise RAGError(message="vector store unavailable", provider_name="memory")
        bucket = self.records.get(tenant_id, {})
        doomed = [
            rid
            for rid, r in bucket.items()
            if r.metadata.agent_id == agent_id and r.metadata.file_id == file_id
        ]
        for rid in doomed:
            del bucket[rid]
        return len(doomed)

    async def count_by_file(self, tenant_id: str, agent_id: str, file_id: str) -> int:
        return sum(
            1
            for r in self.records.get(tenant_id, {}).values()
            if r.metadata.agent_id == agent_id and r.metadata.file_id == file_id
        )

    async def search(
        self,
        tenant_id: str,
        agent_id: str,
        query_vector: list[float],
        limit: int,
        threshold: float,
    ) -> list[VectorMatch]:
        scored: list[VectorMatch] = []
        for record in self.records.get(tenant_id, {}).values():
            if record.metadata.agent_id != agent_id:
                continue
            dot = sum(a * b for a, b in zip(query_vector, record.vector))
            score = max(0.0, min(1.0, dot))
            if score < threshold:
                continue
            scored.append(
                VectorMatch(
                    record_id=record.record_id,
                    score=score,
                    document=record.document,
                    metadata=record.metadata,
                )
            )
        scored.sort(key=lambda m: m.score, reverse=True)
        return scored[:limit]

    def get_provider_name(self) -> str:
        return "memory"

    def file_records(self, tenant_id: str, file_id: str) -> list[VectorRecord]:
        return sorted(
            (r for r in self.records.get(tenant_id, {}).values() if r.metadata.file_id == file_id),
            key=lambda r: r.metadata.chunk_ordinal,
        )


async def _no_sleep(_: float) -> None:
    return None


# ---------------------------------------------------------------------------
# Settings and stores
# ---------------------------------------------------------------------------


@pytest.fixture
def settings(tmp_path: Path) -> Settings:
    """Settings rooted in ``tmp_path`` with immediate retries and small chunks."""
    return Settings(
        _env_file=None,
        openai_api_key="sk-test-key",
        data_dir=str(tmp_path),
        object_storage_dir=str(tmp_path / "objects"),
        metadata_db_path=str(tmp_path / "meta.db"),
        queue_db_path=str(tmp_path / "queue.db"),
        chromadb_persist_dir=str(tmp_path / "chroma"),
        chunk_size=200,
        chunk_overlap=20,
        token_chunk_size=50,
        token_chunk_overlap=5,
        tokenizer_model="",
        embedding_batch_size=4,
        embedding_retry_base_seconds=0.0,
        extraction_backoff_seconds=0.0,
        chunking_backoff_seconds=0.0,
        embeddings_backoff_seconds=0.0,
        vector_storage_backoff_seconds=0.0,
        deletion_backoff_seconds=0.0,
        retrieval_threshold=0.5,
        run_workers_in_process=False,
    )


@pytest_asyncio.fixture
async def metadata_store(settings: Settings) -> SQLiteMetadataStore:
    store = SQLiteMetadataStore(settings.metadata_db_path)
    await store.initialize()
    return store


@pytest_asyncio.fixture
async def job_queue(settings: Settings) -> SQLiteJobQueue:
    queue = SQLiteJobQueue(settings.queue_db_path)
    await queue.initialize()
    return queue


@pytest.fixture
def mock_embedding_provider() -> MockEmbeddingProvider:
    """Deterministic hash-based embeddings."""
    return MockEmbeddingProvider()


@pytest.fixture
def vector_store() -> InMemoryVectorStore:
    return InMemoryVectorStore()


@pytest.fixture
def tmp_chromadb(tmp_path: Path):
    """A throwaway persistent ChromaDB client."""
    import chromadb

    persist_dir = str(tmp_path / "chromadb_test")
    client = chromadb.PersistentClient(
        path=persist_dir,
        settings=chromadb.config.Settings(anonymized_telemetry=False),
    )
    return client, persist_dir


# ---------------------------------------------------------------------------
# Full object graph
# ---------------------------------------------------------------------------


@dataclass
class KBHarness:
    """Every component of a knowledge base wired against test backends."""

    settings: Settings
    store: SQLiteMetadataStore
    queue: SQLiteJobQueue
    storage: LocalObjectStorage
    extractor: DocumentTextExtractor
    vector_store: InMemoryVectorStore
    embedding_provider: MockEmbeddingProvider
    tracker: ProgressTracker
    aggregator: StatusAggregator
    orchestrator: IngestionOrchestrator
    deletion: DeletionWorkflow
    retrieval: RetrievalService
    kb: KnowledgeBaseService

    async def upload(
        self,
        text: str,
        tenant_id: str = "tenant-a",
        agent_id: str = "agent-1",
        filename: str = "notes.txt",
        mime_type: str = "text/plain",
    ) -> KnowledgeFile:
        await self.kb.register_agent(tenant_id, agent_id)
        file, _ = await self.kb.upload_file(
            tenant_id, agent_id, filename, text.encode("utf-8"), mime_type
        )
        return file

    async def file(self, file_id: str) -> KnowledgeFile:
        file = await self.store.get_file(file_id)
        assert file is not None
        return file

    async def run_stage(self, queue: QueueName) -> bool:
        """Claim and process one job from *queue*; ``False`` when it was empty."""
        job = await self.queue.claim(queue, "test-worker")
        if job is None:
            return False
        await self.orchestrator.process(job)
        return True


def build_harness(
    settings: Settings,
    store: SQLiteMetadataStore,
    queue: SQLiteJobQueue,
    vector_store: InMemoryVectorStore,
    embedding_provider: MockEmbeddingProvider,
) -> KBHarness:
    storage = LocalObjectStorage(settings.object_storage_dir)
    extractor = DocumentTextExtractor()
    chunker = ChunkingEngine(
        default_size=settings.chunk_size,
        default_overlap=settings.chunk_overlap,
        token_size=settings.token_chunk_size,
        token_overlap=settings.token_chunk_overlap,
    )
    coordinator = EmbeddingBatchCoordinator(
        provider=embedding_provider,
        cache=TTLEmbeddingCache(max_size=1000, ttl=600),
        batch_size=settings.embedding_batch_size,
        max_retries=2,
        retry_base_seconds=0.0,
        sleep=_no_sleep,
    )
    tracker = ProgressTracker()
    aggregator = StatusAggregator(store)
    orchestrator = IngestionOrchestrator(
        queue=queue,
        store=store,
        storage=storage,
        extractor=extractor,
        chunker=chunker,
        coordinator=coordinator,
        vector_store=vector_store,
        aggregator=aggregator,
        tracker=tracker,
        settings=settings,
    )
    deletion = DeletionWorkflow(
        store=store,
        storage=storage,
        vector_store=vector_store,
        queue=queue,
        aggregator=aggregator,
        settings=settings,
        tracker=tracker,
    )
    orchestrator.register_handler(QueueName.FILE_DELETION, deletion.handle_job)
    retrieval = RetrievalService(
        store=store,
        vector_store=vector_store,
        embedding_provider=embedding_provider,
        settings=settings,
    )
    kb = KnowledgeBaseService(
        store=store,
        storage=storage,
        extractor=extractor,
        orchestrator=orchestrator,
        deletion=deletion,
        retrieval=retrieval,
        settings=settings,
    )
    return KBHarness(
        settings=settings,
        store=store,
        queue=queue,
        storage=storage,
        extractor=extractor,
        vector_store=vector_store,
        embedding_provider=embedding_provider,
        tracker=tracker,
        aggregator=aggregator,
        orchestrator=orchestrator,
        deletion=deletion,
        retrieval=retrieval,
        kb=kb,
    )


@pytest.fixture
def harness(
    settings: Settings,
    metadata_store: SQLiteMetadataStore,
    job_queue: SQLiteJobQueue,
    vector_store: InMemoryVectorStore,
    mock_embedding_provider: MockEmbeddingProvider,
) -> KBHarness:
    """A fully wired knowledge base over SQLite in ``tmp_path`` and in-memory vectors."""
    return build_harness(settings, metadata_store, job_queue, vector_store, mock_embedding_provider)


@pytest.fixture
def sample_text() -> str:
    """Several paragraphs of plain text, long enough for multiple chunks at size 200."""
    return (
        "Onboarding checklist for new support engineers. Read the escalation "
        "policy before your first shift and shadow a senior engineer for two days.\n\n"
        "Refunds are processed within five business days. Customers on the annual "
        "plan receive a prorated refund; monthly plans are refunded in full during "
        "the first fourteen days.\n\n"
        "Password resets are self-service. If the reset email does not arrive, check "
        "the spam folder, then confirm the address on file matches the login.\n\n"
        "Outages are announced on the status page. Link customers to the incident "
        "rather than estimating a resolution time yourself."
    )
