"""Unit tests for RetrievalService context assembly."""

from __future__ import annotations

from unittest.mock import AsyncMock

import pytest

from agentkb.config.settings import Settings
from agentkb.models.documents import (
    STAGE_ORDER,
    KnowledgeFile,
    ProcessingRecord,
    StageRecord,
    StageStatus,
)
from agentkb.models.rag import VectorMetadata, VectorRecord
from agentkb.services.retrieval_service import RetrievalService
from agentkb.utils.errors import EmbeddingModelMismatchError
from tests.conftest import InMemoryVectorStore, MockEmbeddingProvider, _hash_to_vector

_REFUND = "Refunds are processed within five business days of the request."
_RESET = "Password resets are self-service from the login page."


def _file(file_id: str, completed: bool = True) -> KnowledgeFile:
    status = StageStatus.COMPLETED if completed else StageStatus.PENDING
    return KnowledgeFile(
        file_id=file_id,
        tenant_id="tenant-a",
        agent_id="agent-1",
        filename=f"{file_id}.txt",
        storage_key=f"tenant-a/agent-1/{file_id}/{file_id}.txt",
        content_hash=f"hash-{file_id}",
        size_bytes=100,
        mime_type="text/plain",
        processing=ProcessingRecord(
            stages={stage: StageRecord(stage=stage, status=status) for stage in STAGE_ORDER}
        ),
    )


def _record(
    text: str,
    file_id: str = "f-1",
    ordinal: int = 0,
    record_id: str | None = None,
    model: str = "mock-embedding-v1",
) -> VectorRecord:
    return VectorRecord(
        record_id=record_id or f"{file_id}-{ordinal}",
        vector=_hash_to_vector(text),
        document=text,
        metadata=VectorMetadata(
            tenant_id="tenant-a",
            agent_id="agent-1",
            file_id=file_id,
            chunk_ordinal=ordinal,
            content_hash=f"h-{file_id}-{ordinal}",
            preview=text[:20],
            extraction_method="utf8_decode",
            filename=f"{file_id}.txt",
            start_offset=ordinal * 100,
            end_offset=ordinal * 100 + len(text),
            embedding_model=model,
        ),
    )


class _Fixture:
    def __init__(self, settings: Settings) -> None:
        self.store = AsyncMock()
        self.store.list_files.return_value = [_file("f-1")]
        self.vectors = InMemoryVectorStore()
        self.service = RetrievalService(
            store=self.store,
            vector_store=self.vectors,
            embedding_provider=MockEmbeddingProvider(),
            settings=settings,
        )

    async def add(self, *records: VectorRecord) -> None:
        await self.vectors.ensure_collection("tenant-a", "mock-embedding-v1")
        by_file: dict[str, list[VectorRecord]] = {}
        for record in records:
            by_file.setdefault(record.metadata.file_id, []).append(record)
        for file_id, batch in by_file.items():
            await self.vectors.upsert("tenant-a", "agent-1", file_id, batch)


@pytest.fixture()
def kb(settings: Settings) -> _Fixture:
    return _Fixture(settings)


# ======================================================================
# Grounded results
# ======================================================================


class TestGroundedRetrieval:
    @pytest.mark.asyncio
    async def test_best_passage_with_citation(self, kb: _Fixture) -> None:
        await kb.add(_record(_REFUND, ordinal=0), _record(_RESET, ordinal=1))

        result = await kb.service.retrieve("tenant-a", "agent-1", _REFUND)

        assert result.grounded is True
        assert result.reason is None
        assert result.model == "mock-embedding-v1"
        assert result.context_text == _REFUND
        assert len(result.sources) == 1
        source = result.sources[0]
        assert source.file_id == "f-1"
        assert source.filename == "f-1.txt"
        assert source.chunk_ordinal == 0
        assert source.score == pytest.approx(1.0, abs=1e-3)
        assert source.preview == _REFUND[:20]
        assert result.total_chars == len(_REFUND)
        assert result.total_tokens == len(_REFUND.split())
        assert result.truncated is False

    @pytest.mark.asyncio
    async def test_duplicate_passages_collapse(self, kb: _Fixture) -> None:
        await kb.add(
            _record(_REFUND, ordinal=0, record_id="a"),
            _record(_REFUND, ordinal=0, record_id="b"),
        )

        result = await kb.service.retrieve("tenant-a", "agent-1", _REFUND)

        assert len(result.sources) == 1

    @pytest.mark.asyncio
    async def test_passages_joined_with_blank_line(self, kb: _Fixture) -> None:
        await kb.add(_record(_REFUND, ordinal=0), _record(_REFUND, ordinal=1))

        result = await kb.service.retrieve("tenant-a", "agent-1", _REFUND)

        assert result.context_text == f"{_REFUND}\n\n{_REFUND}"
        assert sorted(s.chunk_ordinal for s in result.sources) == [0, 1]
        assert result.total_chars == 2 * len(_REFUND) + 2

    @pytest.mark.asyncio
    async def test_limit_caps_sources(self, kb: _Fixture) -> None:
        await kb.add(*[_record(_REFUND, ordinal=i) for i in range(4)])

        result = await kb.service.retrieve("tenant-a", "agent-1", _REFUND, limit=2)

        assert len(result.sources) == 2


# ======================================================================
# Budgets
# ======================================================================


class TestContextBudget:
    @pytest.mark.asyncio
    async def test_char_budget_stops_before_overflow(self, kb: _Fixture) -> None:
        await kb.add(_record(_REFUND, ordinal=0), _record(_REFUND, ordinal=1))

        result = await kb.service.retrieve(
            "tenant-a", "agent-1", _REFUND, max_chars=len(_REFUND) + 1
        )

        assert len(result.sources) == 1
        assert result.context_text == _REFUND
        assert result.truncated is True

    @pytest.mark.asyncio
    async def test_oversized_single_passage_is_cut(self, kb: _Fixture) -> None:
        await kb.add(_record(_REFUND))

        result = await kb.service.retrieve("tenant-a", "agent-1", _REFUND, max_chars=10)

        assert result.grounded is True
        assert result.context_text == _REFUND[:10]
        assert result.total_chars == 10
        assert result.truncated is True

    @pytest.mark.asyncio
    async def test_token_budget_cuts_on_token_boundary(self, kb: _Fixture) -> None:
        await kb.add(_record(_REFUND))

        result = await kb.service.retrieve("tenant-a", "agent-1", _REFUND, max_tokens=3)

        assert result.context_text.rstrip() == "Refunds are processed"
        assert result.total_tokens == 3

    @pytest.mark.asyncio
    async def test_zero_budget_is_ungrounded(self, kb: _Fixture) -> None:
        await kb.add(_record(_REFUND))

        result = await kb.service.retrieve("tenant-a", "agent-1", _REFUND, max_chars=0)

        assert result.grounded is False
        assert result.reason == "over_budget"


# ======================================================================
# Ungrounded results
# ======================================================================


class TestUngroundedRetrieval:
    @pytest.mark.asyncio
    async def test_no_completed_files(self, kb: _Fixture) -> None:
        kb.store.list_files.return_value = [_file("f-1", completed=False)]
        await kb.add(_record(_REFUND))

        result = await kb.service.retrieve("tenant-a", "agent-1", _REFUND)

        assert result.grounded is False
        assert result.reason == "no_completed_files"
        assert result.context_text == ""

    @pytest.mark.asyncio
    async def test_vectors_of_incomplete_files_ignored(self, kb: _Fixture) -> None:
        kb.store.list_files.return_value = [_file("f-1"), _file("f-2", completed=False)]
        await kb.add(_record(_REFUND, file_id="f-2"))

        result = await kb.service.retrieve("tenant-a", "agent-1", _REFUND)

        assert result.grounded is False
        assert result.reason == "no_matches"

    @pytest.mark.asyncio
    async def test_empty_collection(self, kb: _Fixture) -> None:
        result = await kb.service.retrieve("tenant-a", "agent-1", _REFUND)
        assert result.reason == "no_matches"

    @pytest.mark.asyncio
    async def test_below_threshold(self, kb: _Fixture) -> None:
        await kb.add(_record(_RESET))

        result = await kb.service.retrieve("tenant-a", "agent-1", "an unrelated question")

        assert result.grounded is False
        assert result.reason == "below_threshold"

    @pytest.mark.asyncio
    async def test_blank_query(self, kb: _Fixture) -> None:
        result = await kb.service.retrieve("tenant-a", "agent-1", "   ")

        assert result.reason == "empty_query"
        kb.store.list_files.assert_not_awaited()


# ======================================================================
# Embedding model compatibility
# ======================================================================


class TestModelCompatibility:
    @pytest.mark.asyncio
    async def test_collection_built_with_other_model(self, kb: _Fixture) -> None:
        await kb.vectors.ensure_collection("tenant-a", "text-embedding-3-large")

        with pytest.raises(EmbeddingModelMismatchError, match="text-embedding-3-large"):
            await kb.service.retrieve("tenant-a", "agent-1", _REFUND)

    @pytest.mark.asyncio
    async def test_provider_prefix_is_same_family(self, kb: _Fixture) -> None:
        await kb.vectors.ensure_collection("tenant-a", "openai/mock-embedding-v1")
        await kb.add(_record(_REFUND))

        result = await kb.service.retrieve("tenant-a", "agent-1", _REFUND)

        assert result.grounded is True

    @pytest.mark.asyncio
    async def test_mismatched_records_counted_and_skipped(self, kb: _Fixture) -> None:
        await kb.add(
            _record(_REFUND, ordinal=0, model="other-model"),
            _record(_REFUND, ordinal=1),
        )

        result = await kb.service.retrieve("tenant-a", "agent-1", _REFUND)

        assert [s.chunk_ordinal for s in result.sources] == [1]
        assert result.excluded_model_mismatch == 1
