"""Per-file ingestion progress with callback-based listener notification.

Tracks the current stage and completion percentage of each file and
broadcasts updates to registered listener callbacks.  Listeners are keyed
by file id, plus a wildcard key (``"*"``) for consumers that want every
file (the CLI progress printer, the API's status stream).

    Orchestrator ──update()──→ ProgressTracker ──callback()──→ listeners

Snapshots live only while a file is in flight: the orchestrator evicts
them when ingestion completes or fails for good.

Listener errors are caught and logged, so one broken listener can't block
a stage worker.  Both sync and async callbacks are supported.
"""

from __future__ import annotations

import asyncio
from collections.abc import Callable
from dataclasses import dataclass

import structlog

from agentkb.models.documents import StageName
from agentkb.utils.logging import get_logger

ALL_FILES = "*"


@dataclass
class _FileProgress:
    """Internal snapshot of a single file's progress; never serialized."""

    stage: StageName = StageName.TEXT_EXTRACTION
    progress: float = 0.0
    message: str = ""


class ProgressTracker:
    """Tracks and broadcasts per-file ingestion progress via callbacks."""

    def __init__(self) -> None:
        self._statuses: dict[str, _FileProgress] = {}
        self._listeners: dict[str, list[Callable]] = {}
        self._logger: structlog.BoundLogger = get_logger(__name__)

    # ------------------------------------------------------------------
    # Public API
    # ------------------------------------------------------------------

    async def update(
        self,
        file_id: str,
        stage: StageName,
        progress: float,
        message: str = "",
    ) -> None:
        """Record a progress update and notify listeners.

        Parameters
        ----------
        file_id:
            The file being processed.
        stage:
            The stage reporting progress.
        progress:
            Overall completion percentage for the file (0.0 – 100.0).
        message:
            Human-readable status message.
        """
        progress = max(0.0, min(100.0, progress))
        self._statuses[file_id] = _FileProgress(stage=stage, progress=progress, message=message)

        self._logger.debug(
            "progress_update",
            file_id=file_id,
            stage=stage.value,
            progress=round(progress, 1),
            message=message,
        )
        await self._notify_listeners(file_id, stage, progress, message)

    def register_listener(self, file_id: str, callback: Callable) -> None:
        """Register ``callback(file_id, stage, progress, message)`` for a file or ``"*"``."""
        listeners = self._listeners.setdefault(file_id, [])
        if callback not in listeners:
            listeners.append(callback)

    def unregister_listener(self, file_id: str, callback: Callable) -> None:
        listeners = self._listeners.get(file_id, [])
        if callback in listeners:
            listeners.remove(callback)

    def get_status(self, file_id: str) -> dict:
        """Return ``{"stage", "progress", "message"}`` for a file.

        Returns zeroed defaults when the file has not reported progress in
        this process.
        """
        status = self._statuses.get(file_id)
        if status is None:
            return {"stage": StageName.TEXT_EXTRACTION.value, "progress": 0.0, "message": ""}
        return {"stage": status.stage.value, "progress": status.progress, "message": status.message}

    def evict(self, file_id: str) -> None:
        """Drop a file's snapshot once it is terminal; listeners stay registered."""
        self._statuses.pop(file_id, None)

    def forget(self, file_id: str) -> None:
        """Drop a file's snapshot and listeners (after deletion)."""
        self._statuses.pop(file_id, None)
        self._listeners.pop(file_id, None)

    def tracked_files(self) -> list[str]:
        return list(self._statuses)

    # ------------------------------------------------------------------
    # Private helpers
    # ------------------------------------------------------------------

    async def _notify_listeners(
        self,
        file_id: str,
        stage: StageName,
        progress: float,
        message: str,
    ) -> None:
        listeners = [*self._listeners.get(file_id, []), *self._listeners.get(ALL_FILES, [])]
        for callback in listeners:
            try:
                result = callback(file_id, stage, progress, message)
                if asyncio.iscoroutine(result):
                    await result
            except Exception as exc:
                self._logger.warning(
                    "listener_callback_error",
                    file_id=file_id,
                    error=str(exc),
                    callback=getattr(callback, "__name__", repr(callback)),
                )
