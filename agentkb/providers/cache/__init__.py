"""Embedding cache implementations."""

from agentkb.providers.cache.ttl_embedding_cache import TTLEmbeddingCache

__all__ = ["TTLEmbeddingCache"]
