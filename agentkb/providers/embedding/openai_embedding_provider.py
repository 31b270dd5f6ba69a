"""OpenAI-compatible embedding provider adapter.

Wraps the ``openai`` async client to implement :class:`IEmbeddingProvider`.
Supports real OpenAI and OpenAI-compatible services (TogetherAI, Azure
proxies) via a custom ``base_url`` and model name.

One :meth:`OpenAIEmbeddingProvider.embed` call is exactly one API request;
batching and retries belong to the embedding coordinator.  This adapter's
job is to translate SDK failures into the agentkb taxonomy so the
coordinator can tell a throttled batch from a broken request:

    openai.RateLimitError                       → RateLimitError
    openai.APITimeoutError / APIConnectionError → ProviderUnavailableError
    openai.APIStatusError with status >= 500    → ProviderUnavailableError
    any other openai.APIError                   → RAGError (not retried)
"""

from __future__ import annotations

import openai
import structlog

from agentkb.config.settings import Settings
from agentkb.interfaces.embedding_provider import IEmbeddingProvider
from agentkb.models.rag import EmbeddingBatchResult
from agentkb.utils.errors import ProviderUnavailableError, RAGError, RateLimitError

logger = structlog.get_logger(logger_name=__name__)

# Hard per-request input limit of the embeddings endpoint.
_OPENAI_BATCH_LIMIT = 2048

# Known embedding model dimensions.
_MODEL_DIMENSIONS: dict[str, int] = {
    "text-embedding-3-small": 1536,
    "text-embedding-3-large": 3072,
    "text-embedding-ada-002": 1536,
    "BAAI/bge-base-en-v1.5": 768,
    "BAAI/bge-large-en-v1.5": 1024,
}


class OpenAIEmbeddingProvider(IEmbeddingProvider):
    """Embedding provider backed by an OpenAI-compatible embeddings API.

    Uses ``text-embedding-3-small`` (1536 dims) unless
    ``openai_embedding_model`` says otherwise.
    """

    def __init__(self, settings: Settings, client: openai.AsyncOpenAI | None = None) -> None:
        self._api_key = settings.openai_api_key

        client_kwargs: dict = {"api_key": self._api_key or "unset", "max_retries": 0}
        if settings.openai_base_url:
            client_kwargs["base_url"] = settings.openai_base_url

        # SDK-level retries are disabled: the coordinator retries the failed batch itself.
        self._client = client or openai.AsyncOpenAI(**client_kwargs)
        self._model = settings.openai_embedding_model or "text-embedding-3-small"
        self._dimension = _MODEL_DIMENSIONS.get(self._model, 1536)
        self._provider_label = (
            "openai-compatible_embedding" if settings.openai_base_url else "openai_embedding"
        )

    # ------------------------------------------------------------------
    # IEmbeddingProvider implementation
    # ------------------------------------------------------------------

    async def embed(self, texts: list[str], model: str | None = None) -> EmbeddingBatchResult:
        """Embed one batch of texts with a single API request."""
        model = model or self._model
        if not texts:
            return EmbeddingBatchResult(vectors=[], model=model, total_tokens=0)
        if len(texts) > _OPENAI_BATCH_LIMIT:
            raise RAGError(
                message=f"Batch of {len(texts)} exceeds the {_OPENAI_BATCH_LIMIT}-input limit",
                provider_name=self.get_provider_name(),
            )

        try:
            response = await self._client.embeddings.create(input=texts, model=model)
        except openai.RateLimitError as exc:
            raise RateLimitError(
                message=f"{self._provider_label} rate limited: {exc}",
                provider_name=self.get_provider_name(),
            ) from exc
        except (openai.APITimeoutError, openai.APIConnectionError) as exc:
            raise ProviderUnavailableError(
                message=f"{self._provider_label} unreachable: {exc}",
                provider_name=self.get_provider_name(),
            ) from exc
        except openai.APIStatusError as exc:
            if exc.status_code >= 500:
                raise ProviderUnavailableError(
                    message=f"{self._provider_label} server error {exc.status_code}: {exc}",
                    provider_name=self.get_provider_name(),
                ) from exc
            raise RAGError(
                message=f"{self._provider_label} API error {exc.status_code}: {exc}",
                provider_name=self.get_provider_name(),
            ) from exc
        except openai.APIError as exc:
            raise RAGError(
                message=f"{self._provider_label} API error: {exc}",
                provider_name=self.get_provider_name(),
            ) from exc

        vectors = [item.embedding for item in sorted(response.data, key=lambda d: d.index)]
        tokens = response.usage.total_tokens if response.usage else 0
        logger.info(
            "openai_embedding_batch",
            model=response.model or model,
            provider=self._provider_label,
            batch_size=len(texts),
            tokens=tokens,
        )
        return EmbeddingBatchResult(vectors=vectors, model=model, total_tokens=tokens)

    async def embed_single(self, text: str, model: str | None = None) -> list[float]:
        """Generate an embedding vector for a single text string."""
        result = await self.embed([text], model=model)
        return result.vectors[0]

    def get_model_name(self) -> str:
        return self._model

    def get_dimension(self) -> int:
        return self._dimension

    def get_provider_name(self) -> str:
        return self._provider_label

    def is_available(self) -> bool:
        """Return ``True`` if an API key is configured."""
        return bool(self._api_key)
