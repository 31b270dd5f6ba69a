"""Retrieval and context assembly for chat-time grounding.

    query ──embed──► search(tenant, agent) ──► filter ──► dedupe ──► budget ──► RetrievedContext

Only files whose ingestion is currently ``completed`` contribute passages;
vectors of a file that is mid-reprocess or being deleted are ignored even
though they may still sit in the collection.  When nothing usable is
found the result is explicitly ungrounded and carries a reason instead of
an empty context string.
"""

from __future__ import annotations

import structlog

from agentkb.config.settings import Settings
from agentkb.interfaces.embedding_provider import IEmbeddingProvider, model_family
from agentkb.interfaces.metadata_store import IMetadataStore
from agentkb.interfaces.vector_store_provider import IVectorStoreProvider
from agentkb.models.documents import FileStatus
from agentkb.models.rag import ContextSource, RetrievedContext, VectorMatch
from agentkb.pipeline.status_aggregator import derive_file_status
from agentkb.utils.errors import EmbeddingModelMismatchError
from agentkb.utils.tokens import TokenCounter

logger = structlog.get_logger(logger_name=__name__)

_PASSAGE_SEPARATOR = "\n\n"

# Extra candidates requested so filtering still leaves ``limit`` passages.
_OVERFETCH_FACTOR = 2


class RetrievalService:
    """Assembles a bounded, cited context window for one agent."""

    def __init__(
        self,
        store: IMetadataStore,
        vector_store: IVectorStoreProvider,
        embedding_provider: IEmbeddingProvider,
        settings: Settings,
        token_counter: TokenCounter | None = None,
    ) -> None:
        self._store = store
        self._vector_store = vector_store
        self._embedding_provider = embedding_provider
        self._settings = settings
        self._token_counter = token_counter or TokenCounter(None)

    async def retrieve(
        self,
        tenant_id: str,
        agent_id: str,
        query: str,
        limit: int | None = None,
        threshold: float | None = None,
        max_chars: int | None = None,
        max_tokens: int | None = None,
    ) -> RetrievedContext:
        """Return the context window for *query*.

        Raises
        ------
        EmbeddingModelMismatchError
            The tenant collection was built with a different model family
            than the one queries are embedded with.
        """
        limit = self._settings.retrieval_limit if limit is None else limit
        threshold = self._settings.retrieval_threshold if threshold is None else threshold
        max_chars = self._settings.retrieval_max_chars if max_chars is None else max_chars
        max_tokens = self._settings.retrieval_max_tokens if max_tokens is None else max_tokens
        model = self._embedding_provider.get_model_name()

        def ungrounded(reason: str, excluded: int = 0) -> RetrievedContext:
            logger.info(
                "retrieval_ungrounded",
                tenant_id=tenant_id,
                agent_id=agent_id,
                reason=reason,
                excluded_model_mismatch=excluded,
            )
            return RetrievedContext(
                tenant_id=tenant_id,
                agent_id=agent_id,
                query=query,
                grounded=False,
                reason=reason,
                model=model,
                excluded_model_mismatch=excluded,
            )

        if not query.strip() or limit <= 0:
            return ungrounded("empty_query")

        files = await self._store.list_files(agent_id)
        completed = {f.file_id for f in files if derive_file_status(f) == FileStatus.COMPLETED}
        if not completed:
            return ungrounded("no_completed_files")

        collection_model = await self._vector_store.collection_model(tenant_id)
        if collection_model and model_family(collection_model) != model_family(model):
            raise EmbeddingModelMismatchError(
                message=(
                    f"Collection for tenant {tenant_id} was built with {collection_model}, "
                    f"queries use {model}"
                ),
                provider_name=self._vector_store.get_provider_name(),
            )

        query_vector = await self._embedding_provider.embed_single(query, model=model)
        candidates = await self._vector_store.search(
            tenant_id, agent_id, query_vector, limit=limit * _OVERFETCH_FACTOR, threshold=0.0
        )
        if not candidates:
            return ungrounded("no_matches")

        above = [m for m in candidates if m.score >= threshold]
        if not above:
            return ungrounded("below_threshold")

        selected, excluded = self._select(above, completed, model, limit)
        if not selected:
            return ungrounded("no_matches", excluded)

        return self._assemble(tenant_id, agent_id, query, model, selected, excluded, max_chars, max_tokens)

    # ------------------------------------------------------------------
    # Private helpers
    # ------------------------------------------------------------------

    @staticmethod
    def _select(
        matches: list[VectorMatch], completed: set[str], model: str, limit: int
    ) -> tuple[list[VectorMatch], int]:
        """Keep completed-file, same-model, first-seen passages in score order."""
        family = model_family(model)
        seen: set[tuple[str, int]] = set()
        selected: list[VectorMatch] = []
        excluded = 0
        for match in sorted(matches, key=lambda m: m.score, reverse=True):
            meta = match.metadata
            if meta.file_id not in completed:
                continue
            if meta.embedding_model and model_family(meta.embedding_model) != family:
                excluded += 1
                continue
            key = (meta.file_id, meta.chunk_ordinal)
            if key in seen:
                continue
            seen.add(key)
            selected.append(match)
            if len(selected) >= limit:
                break
        return selected, excluded

    def _assemble(
        self,
        tenant_id: str,
        agent_id: str,
        query: str,
        model: str,
        matches: list[VectorMatch],
        excluded: int,
        max_chars: int,
        max_tokens: int,
    ) -> RetrievedContext:
        passages: list[str] = []
        sources: list[ContextSource] = []
        total_chars = 0
        total_tokens = 0
        truncated = False

        for match in matches:
            separator = len(_PASSAGE_SEPARATOR) if passages else 0
            text = match.document
            chars = len(text)
            tokens = self._token_counter.count(text)

            fits = (
                total_chars + separator + chars <= max_chars
                and total_tokens + tokens <= max_tokens
            )
            if not fits:
                truncated = True
                if passages:
                    break
                # The single best passage alone is over budget: cut it down.
                text = self._cut(text, max_chars, max_tokens)
                chars = len(text)
                tokens = self._token_counter.count(text)
                if not text:
                    break

            passages.append(text)
            total_chars += separator + chars
            total_tokens += tokens
            meta = match.metadata
            sources.append(
                ContextSource(
                    file_id=meta.file_id,
                    filename=meta.filename,
                    chunk_ordinal=meta.chunk_ordinal,
                    score=round(match.score, 4),
                    start_offset=meta.start_offset,
                    end_offset=meta.end_offset,
                    preview=meta.preview[: self._settings.retrieval_preview_chars],
                )
            )
            if truncated:
                break

        context = RetrievedContext(
            tenant_id=tenant_id,
            agent_id=agent_id,
            query=query,
            grounded=bool(sources),
            reason=None if sources else "over_budget",
            model=model,
            context_text=_PASSAGE_SEPARATOR.join(passages),
            sources=sources,
            total_chars=total_chars,
            total_tokens=total_tokens,
            truncated=truncated,
            excluded_model_mismatch=excluded,
        )
        logger.info(
            "retrieval_complete",
            tenant_id=tenant_id,
            agent_id=agent_id,
            sources=len(sources),
            total_chars=total_chars,
            total_tokens=total_tokens,
            truncated=truncated,
            top_score=sources[0].score if sources else 0.0,
        )
        return context

    def _cut(self, text: str, max_chars: int, max_tokens: int) -> str:
        text = text[: max(0, max_chars)]
        if self._token_counter.count(text) <= max_tokens:
            return text
        spans = self._token_counter.spans(text)
        if max_tokens <= 0 or not spans:
            return ""
        return text[: spans[min(max_tokens, len(spans)) - 1][1]]
