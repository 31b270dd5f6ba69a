"""Embedding batch coordinator.

Turns a file's chunk list into embeddings through an
:class:`IEmbeddingProvider`, one capped batch at a time.  Failure handling
is per batch:

* :class:`TransientError` (rate limit, unreachable provider) and a batch
  that overruns ``batch_timeout_seconds`` retry *that batch only*, after
  ``retry_base_seconds * 2**(attempt-1)`` seconds, up to ``max_retries``
  times;
* any other error fails the run immediately;
* once a batch has used up its retries the last error propagates and no
  partial result is returned.

Vectors already produced by an earlier attempt of the same stage are taken
from the optional :class:`IEmbeddingCache`, keyed by model and chunk
content hash, so a retried stage re-embeds only what is missing.
"""

from __future__ import annotations

import asyncio
from typing import Awaitable, Callable

import structlog

from agentkb.interfaces.embedding_cache import IEmbeddingCache
from agentkb.interfaces.embedding_provider import IEmbeddingProvider
from agentkb.models.rag import Chunk, Embedding, EmbeddingStats
from agentkb.utils.concurrency import backoff_delay
from agentkb.utils.errors import RAGError, StageTimeoutError, TransientError

logger = structlog.get_logger(logger_name=__name__)

ProgressCallback = Callable[[int, int], Awaitable[None] | None]


class EmbeddingBatchCoordinator:
    """Batches chunks into embedding calls with per-batch retry.

    Parameters
    ----------
    provider:
        The embedding service.
    cache:
        Optional vector cache consulted before any provider call.
    batch_size:
        Default number of texts per provider request.
    max_retries:
        Retries per batch after the first attempt.
    retry_base_seconds:
        Base of the exponential retry delay.
    batch_timeout_seconds:
        Deadline for one provider call; ``0`` disables it.
    sleep:
        Injected for tests so backoff does not slow the suite down.
    """

    def __init__(
        self,
        provider: IEmbeddingProvider,
        cache: IEmbeddingCache | None = None,
        batch_size: int = 100,
        max_retries: int = 5,
        retry_base_seconds: float = 1.0,
        batch_timeout_seconds: float = 60.0,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ) -> None:
        self._provider = provider
        self._cache = cache
        self._batch_size = batch_size
        self._max_retries = max_retries
        self._retry_base_seconds = retry_base_seconds
        self._batch_timeout_seconds = batch_timeout_seconds
        self._sleep = sleep

    @property
    def model(self) -> str:
        return self._provider.get_model_name()

    async def embed(
        self,
        chunks: list[Chunk],
        model: str | None = None,
        batch_size: int | None = None,
        on_progress: ProgressCallback | None = None,
    ) -> tuple[list[Embedding], EmbeddingStats]:
        """Embed *chunks* and return embeddings in chunk order plus stats.

        *on_progress* is called with ``(embedded_so_far, total)`` after the
        cache lookup and after every batch.
        """
        model = model or self._provider.get_model_name()
        size = batch_size or self._batch_size
        if size <= 0:
            raise RAGError(message=f"batch_size must be positive, got {size}", provider_name="embedding")

        total = len(chunks)
        if total == 0:
            return [], EmbeddingStats(model=model)

        resolved: dict[int, tuple[list[float], int]] = {}
        cache_hits = 0
        if self._cache is not None:
            cached = await self._cache.get_many(model, [c.content_hash for c in chunks])
            for chunk in chunks:
                if chunk.content_hash in cached:
                    resolved[chunk.ordinal] = cached[chunk.content_hash]
            cache_hits = len(resolved)
            if cache_hits:
                await self._notify(on_progress, cache_hits, total)

        missing = [c for c in chunks if c.ordinal not in resolved]
        batches = 0
        retries = 0
        total_tokens = sum(tokens for _, tokens in resolved.values())

        for start in range(0, len(missing), size):
            batch = missing[start : start + size]
            vectors, batch_tokens, batch_retries = await self._embed_batch(
                [c.text for c in batch], model, batch_index=batches
            )
            batches += 1
            retries += batch_retries
            total_tokens += batch_tokens

            per_chunk = self._split_tokens(batch_tokens, len(batch))
            fresh = {}
            for chunk, vector, tokens in zip(batch, vectors, per_chunk):
                resolved[chunk.ordinal] = (vector, tokens)
                fresh[chunk.content_hash] = (vector, tokens)
            if self._cache is not None:
                await self._cache.put_many(model, fresh)

            await self._notify(on_progress, len(resolved), total)

        embeddings = [
            Embedding(
                ordinal=chunk.ordinal,
                content_hash=chunk.content_hash,
                vector=resolved[chunk.ordinal][0],
                model=model,
                token_count=resolved[chunk.ordinal][1],
            )
            for chunk in chunks
        ]
        stats = EmbeddingStats(
            total_embeddings=len(embeddings),
            total_tokens=total_tokens,
            model=model,
            batches=batches,
            retries=retries,
            cache_hits=cache_hits,
        )
        logger.info(
            "embedding_run_complete",
            model=model,
            total_embeddings=stats.total_embeddings,
            total_tokens=stats.total_tokens,
            batches=batches,
            retries=retries,
            cache_hits=cache_hits,
        )
        return embeddings, stats

    # ------------------------------------------------------------------
    # Private helpers
    # ------------------------------------------------------------------

    async def _embed_batch(
        self, texts: list[str], model: str, batch_index: int
    ) -> tuple[list[list[float]], int, int]:
        """Embed one batch, retrying transient failures; returns (vectors, tokens, retries)."""
        attempt = 0
        while True:
            attempt += 1
            try:
                result = await self._call_provider(texts, model)
            except TransientError as exc:
                if attempt > self._max_retries:
                    logger.error(
                        "embedding_batch_exhausted",
                        batch=batch_index,
                        attempts=attempt,
                        error=str(exc),
                    )
                    raise
                delay = backoff_delay(self._retry_base_seconds, attempt)
                logger.warning(
                    "embedding_batch_retry",
                    batch=batch_index,
                    attempt=attempt,
                    delay_seconds=delay,
                    error=str(exc),
                )
                await self._sleep(delay)
                continue

            if len(result.vectors) != len(texts):
                raise RAGError(
                    message=(
                        f"Provider returned {len(result.vectors)} vectors for "
                        f"{len(texts)} inputs"
                    ),
                    provider_name=self._provider.get_provider_name(),
                )
            return result.vectors, result.total_tokens, attempt - 1

    async def _call_provider(self, texts: list[str], model: str):
        if self._batch_timeout_seconds <= 0:
            return await self._provider.embed(texts, model=model)
        try:
            return await asyncio.wait_for(
                self._provider.embed(texts, model=model),
                timeout=self._batch_timeout_seconds,
            )
        except asyncio.TimeoutError as exc:
            raise StageTimeoutError(
                message=f"Embedding batch exceeded {self._batch_timeout_seconds}s",
                provider_name=self._provider.get_provider_name(),
            ) from exc

    @staticmethod
    def _split_tokens(total: int, count: int) -> list[int]:
        """Spread a batch's token usage over its chunks (remainder on the leading chunks)."""
        if count == 0:
            return []
        share, remainder = divmod(total, count)
        return [share + (1 if i < remainder else 0) for i in range(count)]

    @staticmethod
    async def _notify(callback: ProgressCallback | None, done: int, total: int) -> None:
        if callback is None:
            return
        try:
            result = callback(done, total)
            if asyncio.iscoroutine(result):
                await result
        except Exception as exc:
            logger.warning("embedding_progress_callback_failed", error=str(exc))
