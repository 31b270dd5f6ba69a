"""Shared concurrency primitives.

Three helpers are exposed:

1. **throttled_gather** -- ``asyncio.gather`` with every awaitable wrapped in
   a semaphore acquire/release.  Batch deletion uses it to fan out per-file
   jobs without hammering the storage backends.

2. **KeyedLocks** -- lazily created ``asyncio.Lock`` objects keyed by a
   string.  The vector store adapter serializes collection creation per
   tenant with it.

3. **backoff_delay** -- the exponential backoff schedule shared by the
   embedding coordinator (per batch) and the job queue (per stage attempt).
"""

from __future__ import annotations

import asyncio
from typing import Awaitable, TypeVar

_T = TypeVar("_T")


async def throttled_gather(
    coros: list[Awaitable[_T]],
    semaphore: asyncio.Semaphore | None = None,
    limit: int = 4,
    return_exceptions: bool = True,
) -> list[_T | BaseException]:
    """Run awaitables concurrently with at most *limit* in flight.

    Parameters
    ----------
    coros:
        Awaitable objects to execute concurrently.
    semaphore:
        Optional semaphore shared with other callers.  When omitted a
        fresh one sized by *limit* is created for this call.
    limit:
        Concurrency limit used when no semaphore is supplied.
    return_exceptions:
        If ``True``, exceptions are returned in the results list rather
        than being raised.  Mirrors ``asyncio.gather`` semantics.

    Returns
    -------
    list[_T | BaseException]
        Results in the same order as the input coroutines.
    """
    if semaphore is None:
        semaphore = asyncio.Semaphore(max(1, limit))

    async def _wrapped(coro: Awaitable[_T]) -> _T:
        async with semaphore:
            return await coro

    return await asyncio.gather(*(_wrapped(c) for c in coros), return_exceptions=return_exceptions)


class KeyedLocks:
    """A registry of ``asyncio.Lock`` objects, one per key.

    Locks are created on first use and never removed; the key space
    (tenants) is small and long-lived.
    """

    def __init__(self) -> None:
        self._locks: dict[str, asyncio.Lock] = {}

    def get(self, key: str) -> asyncio.Lock:
        lock = self._locks.get(key)
        if lock is None:
            lock = asyncio.Lock()
            self._locks[key] = lock
        return lock

    def __len__(self) -> int:
        return len(self._locks)


def backoff_delay(base_seconds: float, attempt: int, max_seconds: float = 300.0) -> float:
    """Return the exponential backoff delay before retry number *attempt*.

    ``attempt`` is 1-based: the first retry waits *base_seconds*, the second
    twice that, and so on, capped at *max_seconds*.
    """
    if base_seconds <= 0 or attempt <= 0:
        return 0.0
    return min(max_seconds, base_seconds * (2 ** (attempt - 1)))
