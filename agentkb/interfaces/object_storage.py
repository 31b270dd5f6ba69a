"""Abstract base class for object storage (original uploaded bytes)."""

from __future__ import annotations

from abc import ABC, abstractmethod


# Concrete implementation: LocalObjectStorage (agentkb/providers/storage/)
class IObjectStorage(ABC):
    """Key/value blob storage for uploaded files."""

    @abstractmethod
    async def put(self, key: str, data: bytes, content_type: str = "application/octet-stream") -> str:
        """Store *data* under *key* (overwriting) and return the key."""

    @abstractmethod
    async def get(self, key: str) -> bytes:
        """Return the bytes stored under *key*.

        Raises
        ------
        agentkb.utils.errors.NotFoundError
            Nothing is stored under *key*.
        """

    @abstractmethod
    async def delete(self, key: str) -> bool:
        """Delete *key*; return ``False`` when it did not exist."""

    @abstractmethod
    async def exists(self, key: str) -> bool:
        """Return ``True`` if *key* is stored."""

    @abstractmethod
    def get_provider_name(self) -> str:
        """Return a short identifier such as ``"local_storage"``."""
