"""Abstract base class for text-embedding service providers.

Defines the contract for generating embedding vectors from text.  The
pipeline's :class:`~agentkb.services.embedding_coordinator.EmbeddingBatchCoordinator`
owns batching and retries; a provider only performs one call per batch
and maps its backend's failures onto the agentkb error taxonomy.
"""

from __future__ import annotations

from abc import ABC, abstractmethod

from agentkb.models.rag import EmbeddingBatchResult


# Concrete implementation: OpenAIEmbeddingProvider (agentkb/providers/embedding/)
class IEmbeddingProvider(ABC):
    """Contract for text-embedding services used by ingestion and retrieval."""

    @abstractmethod
    async def embed(self, texts: list[str], model: str | None = None) -> EmbeddingBatchResult:
        """Generate embedding vectors for one batch of texts.

        Parameters
        ----------
        texts:
            The batch to embed.  The caller keeps batches within the
            provider's payload limit.
        model:
            Model to use; ``None`` means :meth:`get_model_name`.

        Returns
        -------
        EmbeddingBatchResult
            Vectors corresponding positionally to *texts*, the model name
            actually used and the total token usage of the call.

        Raises
        ------
        agentkb.utils.errors.RateLimitError
            The provider throttled the call.
        agentkb.utils.errors.ProviderUnavailableError
            Network failure, timeout or a 5xx response.
        agentkb.utils.errors.RAGError
            Any other, non-retryable provider failure.
        """

    @abstractmethod
    async def embed_single(self, text: str, model: str | None = None) -> list[float]:
        """Generate an embedding vector for a single text (e.g. a search query)."""

    @abstractmethod
    def get_model_name(self) -> str:
        """Return the default model name, e.g. ``"text-embedding-3-small"``."""

    @abstractmethod
    def get_dimension(self) -> int:
        """Return the dimensionality of the vectors produced by the default model."""

    @abstractmethod
    def get_provider_name(self) -> str:
        """Return a short identifier such as ``"openai_embedding"``."""

    @abstractmethod
    def is_available(self) -> bool:
        """Return ``True`` if credentials are configured."""


def model_family(model: str) -> str:
    """Return the family part of a model name.

    Two models are compatible for retrieval only when their families
    match.  Provider prefixes (``"openai/"``) are ignored, so
    ``"openai/text-embedding-3-small"`` and ``"text-embedding-3-small"``
    belong to the same family.
    """
    return model.rsplit("/", 1)[-1].strip().lower()
