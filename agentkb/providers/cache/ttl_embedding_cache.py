"""In-memory embedding cache using cachetools.TTLCache.

Suitable for a single worker process: a retried embedding stage usually
lands on the same process that ran the failed attempt.  Can be swapped for
a shared backend via the :class:`IEmbeddingCache` interface.
"""

from __future__ import annotations

import structlog
from cachetools import TTLCache

from agentkb.interfaces.embedding_cache import IEmbeddingCache

logger = structlog.get_logger(logger_name=__name__)


class TTLEmbeddingCache(IEmbeddingCache):
    """Vectors keyed by ``model:content_hash`` in a ``cachetools.TTLCache``.

    Parameters
    ----------
    max_size:
        Maximum number of vectors before the least-recently-used one is
        evicted.
    ttl:
        Time-to-live in seconds for every entry.
    """

    def __init__(self, max_size: int = 10000, ttl: int = 3600) -> None:
        self._cache: TTLCache[str, tuple[list[float], int]] = TTLCache(maxsize=max_size, ttl=ttl)

    async def get_many(self, model: str, content_hashes: list[str]) -> dict[str, tuple[list[float], int]]:
        found: dict[str, tuple[list[float], int]] = {}
        for content_hash in content_hashes:
            entry = self._cache.get(self._key(model, content_hash))
            if entry is not None:
                found[content_hash] = entry
        if found:
            logger.debug("embedding_cache_hit", model=model, hits=len(found), requested=len(content_hashes))
        return found

    async def put_many(self, model: str, entries: dict[str, tuple[list[float], int]]) -> None:
        for content_hash, entry in entries.items():
            self._cache[self._key(model, content_hash)] = entry

    async def clear(self) -> None:
        self._cache.clear()

    def __len__(self) -> int:
        return len(self._cache)

    @staticmethod
    def _key(model: str, content_hash: str) -> str:
        return f"{model}:{content_hash}"
