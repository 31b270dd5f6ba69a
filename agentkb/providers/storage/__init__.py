"""Object storage implementations."""

from agentkb.providers.storage.local_object_storage import LocalObjectStorage

__all__ = ["LocalObjectStorage"]
