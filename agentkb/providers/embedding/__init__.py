"""Embedding provider implementations.

Embeddings convert chunk text into numeric vectors that capture semantic
meaning.  The vectors are stored in ChromaDB and compared by cosine
similarity at retrieval time.

    OpenAIEmbeddingProvider: text-embedding-3-small (1536 dims) by default;
        also talks to OpenAI-compatible endpoints through ``openai_base_url``.
"""

from agentkb.providers.embedding.openai_embedding_provider import OpenAIEmbeddingProvider

__all__ = ["OpenAIEmbeddingProvider"]
