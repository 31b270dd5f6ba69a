"""Durable job queue implementations."""

from agentkb.providers.queue.sqlite_job_queue import SQLiteJobQueue

__all__ = ["SQLiteJobQueue"]
