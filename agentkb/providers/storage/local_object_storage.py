"""Filesystem-backed object storage.

Objects live under ``root/<key>``; keys are slash-separated
(``tenant/agent/file_id/filename``).  Writes go to a temporary sibling
first and are renamed into place, so a crashed upload never leaves a
truncated object behind.  Filesystem calls run on ``asyncio.to_thread``.
"""

from __future__ import annotations

import asyncio
import os
from pathlib import Path

import structlog

from agentkb.interfaces.object_storage import IObjectStorage
from agentkb.utils.errors import NotFoundError, ProviderUnavailableError

logger = structlog.get_logger(logger_name=__name__)


class LocalObjectStorage(IObjectStorage):
    """Stores uploaded bytes on the local filesystem."""

    def __init__(self, root: str | Path = "./data/objects") -> None:
        self._root = Path(root).resolve()

    async def put(self, key: str, data: bytes, content_type: str = "application/octet-stream") -> str:
        path = self._path(key)
        try:
            await asyncio.to_thread(self._write, path, data)
        except OSError as exc:
            raise ProviderUnavailableError(
                message=f"Could not write object {key}: {exc}",
                provider_name=self.get_provider_name(),
            ) from exc
        logger.info("object_stored", key=key, size=len(data), content_type=content_type)
        return key

    async def get(self, key: str) -> bytes:
        path = self._path(key)
        try:
            return await asyncio.to_thread(path.read_bytes)
        except FileNotFoundError as exc:
            raise NotFoundError(
                message=f"Object not found: {key}",
                provider_name=self.get_provider_name(),
            ) from exc
        except OSError as exc:
            raise ProviderUnavailableError(
                message=f"Could not read object {key}: {exc}",
                provider_name=self.get_provider_name(),
            ) from exc

    async def delete(self, key: str) -> bool:
        path = self._path(key)
        try:
            await asyncio.to_thread(path.unlink)
        except FileNotFoundError:
            logger.info("object_already_deleted", key=key)
            return False
        except OSError as exc:
            raise ProviderUnavailableError(
                message=f"Could not delete object {key}: {exc}",
                provider_name=self.get_provider_name(),
            ) from exc
        logger.info("object_deleted", key=key)
        return True

    async def exists(self, key: str) -> bool:
        return await asyncio.to_thread(self._path(key).is_file)

    def get_provider_name(self) -> str:
        return "local_storage"

    # ------------------------------------------------------------------
    # Private helpers
    # ------------------------------------------------------------------

    def _path(self, key: str) -> Path:
        path = (self._root / key).resolve()
        if self._root not in path.parents:
            raise NotFoundError(
                message=f"Invalid object key: {key}",
                provider_name=self.get_provider_name(),
            )
        return path

    @staticmethod
    def _write(path: Path, data: bytes) -> None:
        path.parent.mkdir(parents=True, exist_ok=True)
        tmp = path.with_name(path.name + ".part")
        tmp.write_bytes(data)
        os.replace(tmp, path)
