"""Unit tests for ChunkingEngine: strategies, coverage and parameter validation."""

from __future__ import annotations

import pytest

from agentkb.models.rag import ChunkStrategy
from agentkb.services.ingestion.chunker import (
    ChunkingEngine,
    content_hash,
    pack_segments,
    reassemble,
    split_on_separators,
)
from agentkb.utils.errors import ConfigurationError, IngestionValidationError
from agentkb.utils.tokens import TokenCounter

# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------

_MARKDOWN_DOC = (
    "# Returns policy\n"
    "\n"
    "Items may be returned within thirty days of delivery.\n"
    "\n"
    "## Exceptions\n"
    "\n"
    "| Item | Window |\n"
    "|------|--------|\n"
    "| Gift cards | none |\n"
    "| Electronics | 14 days |\n"
    "\n"
    "```python\n"
    "def refund(order):\n"
    "    return order.total\n"
    "```\n"
    "\n"
    "- Keep the receipt\n"
    "- Use original packaging\n"
)


def _make_engine(size: int = 200, overlap: int = 20) -> ChunkingEngine:
    return ChunkingEngine(default_size=size, default_overlap=overlap, token_size=20, token_overlap=4)


def _assert_covers(text: str, chunks) -> None:
    assert chunks[0].start == 0
    assert chunks[-1].end == len(text)
    for previous, current in zip(chunks, chunks[1:]):
        assert current.start <= previous.end, "Windows must not leave a gap"
        assert current.start > previous.start
    for chunk in chunks:
        assert chunk.text == text[chunk.start : chunk.end]
    assert reassemble(chunks) == text


# ---------------------------------------------------------------------------
# Coverage and ordering
# ---------------------------------------------------------------------------


class TestCoverage:
    @pytest.mark.parametrize("strategy", list(ChunkStrategy))
    def test_every_strategy_reassembles_input(self, strategy: ChunkStrategy, sample_text: str) -> None:
        chunks = _make_engine().chunk(sample_text, strategy)

        assert len(chunks) > 1
        _assert_covers(sample_text, chunks)

    def test_ordinals_are_contiguous_from_zero(self, sample_text: str) -> None:
        chunks = _make_engine().chunk(sample_text, ChunkStrategy.RECURSIVE, file_id="f-1")

        assert [c.ordinal for c in chunks] == list(range(len(chunks)))
        assert all(c.file_id == "f-1" for c in chunks)

    def test_chunks_respect_size_limit(self, sample_text: str) -> None:
        chunks = _make_engine(size=150, overlap=30).chunk(sample_text, ChunkStrategy.RECURSIVE)
        assert all(len(c.text) <= 150 for c in chunks)

    def test_neighbours_share_at_most_overlap(self, sample_text: str) -> None:
        chunks = _make_engine(size=150, overlap=30).chunk(sample_text, ChunkStrategy.FIXED)
        for previous, current in zip(chunks, chunks[1:]):
            assert previous.end - current.start <= 30

    def test_short_text_is_single_chunk(self) -> None:
        chunks = _make_engine().chunk("A single sentence.", ChunkStrategy.RECURSIVE)

        assert len(chunks) == 1
        assert chunks[0].text == "A single sentence."

    @pytest.mark.parametrize("text", ["", "   \n\t  "])
    def test_empty_or_whitespace_text_returns_no_chunks(self, text: str) -> None:
        assert _make_engine().chunk(text, ChunkStrategy.FIXED) == []


# ---------------------------------------------------------------------------
# Determinism and metadata
# ---------------------------------------------------------------------------


class TestChunkMetadata:
    def test_same_input_yields_same_hashes(self, sample_text: str) -> None:
        engine = _make_engine()
        first = engine.chunk(sample_text, ChunkStrategy.RECURSIVE)
        second = engine.chunk(sample_text, ChunkStrategy.RECURSIVE)

        assert [c.content_hash for c in first] == [c.content_hash for c in second]
        assert first[0].content_hash == content_hash(first[0].text)

    def test_parameters_recorded_on_chunks(self, sample_text: str) -> None:
        chunks = _make_engine().chunk(sample_text, "fixed", size=120, overlap=10)

        assert all(c.method == ChunkStrategy.FIXED for c in chunks)
        assert all((c.size, c.overlap, c.unit) == (120, 10, "chars") for c in chunks)

    def test_token_strategy_uses_token_defaults_and_unit(self, sample_text: str) -> None:
        chunks = _make_engine().chunk(sample_text, ChunkStrategy.TOKEN)

        assert chunks[0].size == 20
        assert chunks[0].overlap == 4
        assert chunks[0].unit == "tokens:words"
        counter = TokenCounter(None)
        assert all(counter.count(c.text) <= 20 for c in chunks)


# ---------------------------------------------------------------------------
# Strategy behaviour
# ---------------------------------------------------------------------------


class TestRecursiveStrategy:
    def test_prefers_paragraph_boundaries(self, sample_text: str) -> None:
        chunks = _make_engine(size=260, overlap=0).chunk(sample_text, ChunkStrategy.RECURSIVE)
        for chunk in chunks[:-1]:
            assert chunk.text.endswith("\n\n") or chunk.text.endswith(". ")

    def test_split_on_separators_falls_back_to_hard_cut(self) -> None:
        text = "x" * 25
        spans = split_on_separators(text, 0, len(text), 10, ("\n\n", " ", ""))
        assert spans == [(0, 10), (10, 20), (20, 25)]


class TestMarkdownStrategy:
    def test_table_and_code_block_stay_whole(self) -> None:
        chunks = _make_engine(size=120, overlap=0).chunk(_MARKDOWN_DOC, ChunkStrategy.MARKDOWN)

        _assert_covers(_MARKDOWN_DOC, chunks)
        table = "| Item | Window |\n|------|--------|\n| Gift cards | none |\n| Electronics | 14 days |\n"
        code = "```python\ndef refund(order):\n    return order.total\n```\n"
        assert any(table in c.text for c in chunks)
        assert any(code in c.text for c in chunks)

    def test_heading_travels_with_following_block(self) -> None:
        chunks = _make_engine(size=120, overlap=0).chunk(_MARKDOWN_DOC, ChunkStrategy.MARKDOWN)
        for chunk in chunks:
            assert not chunk.text.rstrip().endswith("## Exceptions")


class TestPackSegments:
    def test_overlap_restarts_on_trailing_segments(self) -> None:
        segments = [(0, 5), (5, 10), (10, 15), (15, 20)]
        windows = pack_segments(segments, [5, 5, 5, 5], size=10, overlap=5)
        assert windows == [(0, 10), (5, 15), (10, 20)]

    def test_oversized_segment_gets_its_own_window(self) -> None:
        windows = pack_segments([(0, 3), (3, 20)], [3, 17], size=10, overlap=0)
        assert windows == [(0, 3), (3, 20)]


# ---------------------------------------------------------------------------
# Validation and strategy selection
# ---------------------------------------------------------------------------


class TestParameterValidation:
    @pytest.mark.parametrize(
        ("size", "overlap"),
        [(0, 0), (-5, 0), (100, -1), (100, 100), (100, 150)],
    )
    def test_invalid_parameters_rejected(self, size: int, overlap: int) -> None:
        with pytest.raises(IngestionValidationError):
            _make_engine().chunk("some text", ChunkStrategy.FIXED, size=size, overlap=overlap)

    def test_unknown_strategy_rejected(self) -> None:
        with pytest.raises(IngestionValidationError, match="Unknown chunking strategy"):
            _make_engine().chunk("some text", "semantic")

    def test_resolve_parameters_uses_defaults(self) -> None:
        engine = _make_engine(size=300, overlap=30)
        assert engine.resolve_parameters(ChunkStrategy.RECURSIVE) == (300, 30)
        assert engine.resolve_parameters(ChunkStrategy.TOKEN) == (20, 4)


class TestSelectStrategy:
    @pytest.mark.parametrize(
        ("mime_type", "expected"),
        [
            ("text/markdown", ChunkStrategy.MARKDOWN),
            ("text/plain; charset=utf-8", ChunkStrategy.RECURSIVE),
            ("application/pdf", ChunkStrategy.RECURSIVE),
            ("application/json", ChunkStrategy.FIXED),
            ("text/csv", ChunkStrategy.FIXED),
        ],
    )
    def test_known_mime_types(self, mime_type: str, expected: ChunkStrategy) -> None:
        assert _make_engine().select_strategy(mime_type, 10_000) == expected

    def test_unknown_mime_type_uses_length(self) -> None:
        assert _make_engine().select_strategy("application/x-thing", 500) == ChunkStrategy.FIXED
        assert _make_engine().select_strategy("application/x-thing", 10_000) == ChunkStrategy.RECURSIVE
        assert _make_engine().select_strategy("application/x-thing", 60_000) == ChunkStrategy.TOKEN

    def test_configured_mapping_overrides_builtin(self) -> None:
        engine = ChunkingEngine(mime_strategies={"Application/JSON": "recursive", "text/x-rst": "markdown"})

        assert engine.select_strategy("application/json", 10_000) == ChunkStrategy.RECURSIVE
        assert engine.select_strategy("text/x-rst", 500) == ChunkStrategy.MARKDOWN
        assert engine.select_strategy("text/markdown", 500) == ChunkStrategy.MARKDOWN

    def test_unknown_configured_strategy_rejected(self) -> None:
        with pytest.raises(ConfigurationError):
            ChunkingEngine(mime_strategies={"text/plain": "sentences"})
