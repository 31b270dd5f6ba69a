"""Abstract base class for the content-hash embedding cache.

Chunk boundaries are deterministic, so a retried embedding stage produces
the same content hashes as the attempt that failed.  Caching vectors by
``(model, content_hash)`` lets the retry skip every batch that already
succeeded -- including one whose response was lost to a client-side
timeout -- instead of re-spending provider quota.
"""

from __future__ import annotations

from abc import ABC, abstractmethod


# Concrete implementation: TTLEmbeddingCache (agentkb/providers/cache/)
class IEmbeddingCache(ABC):
    """Vector cache keyed by embedding model and chunk content hash."""

    @abstractmethod
    async def get_many(self, model: str, content_hashes: list[str]) -> dict[str, tuple[list[float], int]]:
        """Return ``{content_hash: (vector, token_count)}`` for the cached hashes."""

    @abstractmethod
    async def put_many(self, model: str, entries: dict[str, tuple[list[float], int]]) -> None:
        """Store ``{content_hash: (vector, token_count)}`` entries."""

    @abstractmethod
    async def clear(self) -> None:
        """Drop every entry."""
