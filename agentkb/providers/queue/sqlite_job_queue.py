"""SQLite-backed durable job queue.

One ``jobs`` table holds every queue; a job is claimed by flipping it from
``waiting`` to ``active`` inside a ``BEGIN IMMEDIATE`` transaction, so two
workers can never claim the same row.  Delivery is at-least-once: a claim
whose worker disappears stays ``active`` until :meth:`requeue_stalled`
returns it to ``waiting``, or marks it ``failed`` when that claim was its
last attempt.

Failed attempts are rescheduled with ``backoff_seconds * 2**(attempts-1)``
until ``max_attempts`` claims have been spent.
"""

from __future__ import annotations

import json
import uuid
from datetime import datetime, timedelta
from pathlib import Path
from typing import Any

import aiosqlite
import structlog

from agentkb.interfaces.job_queue import IJobQueue
from agentkb.models.documents import utc_now
from agentkb.models.jobs import Job, JobStatus, QueueName, RetryPolicy
from agentkb.utils.concurrency import backoff_delay
from agentkb.utils.errors import NotFoundError

logger = structlog.get_logger(logger_name=__name__)

_DEFAULT_DB_PATH = Path("data/queue.db")

_CREATE_TABLE_SQL = """\
CREATE TABLE IF NOT EXISTS jobs (
    job_id          TEXT PRIMARY KEY,
    queue           TEXT NOT NULL,
    job_type        TEXT NOT NULL,
    payload         TEXT NOT NULL,
    status          TEXT NOT NULL DEFAULT 'waiting',
    attempts        INTEGER NOT NULL DEFAULT 0,
    max_attempts    INTEGER NOT NULL,
    backoff_seconds REAL NOT NULL,
    dedupe_key      TEXT,
    last_error      TEXT,
    worker_id       TEXT,
    available_at    TEXT NOT NULL,
    created_at      TEXT NOT NULL,
    updated_at      TEXT NOT NULL
);
"""

_CREATE_INDICES_SQL = [
    "CREATE INDEX IF NOT EXISTS idx_jobs_claim ON jobs(queue, status, available_at);",
    "CREATE INDEX IF NOT EXISTS idx_jobs_active ON jobs(status, updated_at);",
    # A dedupe key is unique among live jobs only, so a finished job's key
    # can be enqueued again (deletion retries).
    "CREATE UNIQUE INDEX IF NOT EXISTS idx_jobs_dedupe_live ON jobs(dedupe_key) "
    "WHERE dedupe_key IS NOT NULL AND status IN ('waiting', 'active');",
]

_SELECT_LIVE_DEDUPE_SQL = """\
SELECT job_id FROM jobs
WHERE dedupe_key = ? AND status IN ('waiting', 'active');
"""

_INSERT_SQL = """\
INSERT INTO jobs
    (job_id, queue, job_type, payload, status, attempts, max_attempts,
     backoff_seconds, dedupe_key, available_at, created_at, updated_at)
VALUES (?, ?, ?, ?, 'waiting', 0, ?, ?, ?, ?, ?, ?);
"""

_SELECT_NEXT_SQL = """\
SELECT job_id FROM jobs
WHERE queue = ? AND status = 'waiting' AND available_at <= ?
ORDER BY available_at, created_at
LIMIT 1;
"""


class SQLiteJobQueue(IJobQueue):
    """Durable job queue persisted with ``aiosqlite``."""

    def __init__(self, db_path: str | Path = _DEFAULT_DB_PATH) -> None:
        self._db_path = Path(db_path)

    async def initialize(self) -> None:
        """Create the jobs table and indices if they don't exist."""
        self._db_path.parent.mkdir(parents=True, exist_ok=True)
        async with aiosqlite.connect(str(self._db_path)) as db:
            await db.execute("PRAGMA journal_mode=WAL;")
            await db.execute(_CREATE_TABLE_SQL)
            for idx_sql in _CREATE_INDICES_SQL:
                await db.execute(idx_sql)
            await db.commit()
        logger.info("job_queue_initialized", path=str(self._db_path))

    async def enqueue(
        self,
        queue: QueueName,
        job_type: str,
        payload: dict[str, Any],
        policy: RetryPolicy,
        dedupe_key: str | None = None,
        delay_seconds: float = 0.0,
    ) -> str:
        now = utc_now()
        job_id = uuid.uuid4().hex
        available_at = now + timedelta(seconds=max(0.0, delay_seconds))

        async with aiosqlite.connect(str(self._db_path)) as db:
            await db.execute("BEGIN IMMEDIATE")
            if dedupe_key is not None:
                cursor = await db.execute(_SELECT_LIVE_DEDUPE_SQL, (dedupe_key,))
                row = await cursor.fetchone()
                if row is not None:
                    await db.rollback()
                    logger.info(
                        "job_deduplicated",
                        queue=queue.value,
                        dedupe_key=dedupe_key,
                        job_id=row[0],
                    )
                    return row[0]
            await db.execute(
                _INSERT_SQL,
                (
                    job_id,
                    queue.value,
                    job_type,
                    json.dumps(payload),
                    policy.max_attempts,
                    policy.backoff_seconds,
                    dedupe_key,
                    available_at.isoformat(),
                    now.isoformat(),
                    now.isoformat(),
                ),
            )
            await db.commit()

        logger.info(
            "job_enqueued",
            queue=queue.value,
            job_type=job_type,
            job_id=job_id,
            dedupe_key=dedupe_key,
            delay_seconds=delay_seconds,
        )
        return job_id

    async def claim(self, queue: QueueName, worker_id: str) -> Job | None:
        now = utc_now().isoformat()
        async with aiosqlite.connect(str(self._db_path)) as db:
            db.row_factory = aiosqlite.Row
            await db.execute("BEGIN IMMEDIATE")
            cursor = await db.execute(_SELECT_NEXT_SQL, (queue.value, now))
            row = await cursor.fetchone()
            if row is None:
                await db.rollback()
                return None
            await db.execute(
                "UPDATE jobs SET status = 'active', attempts = attempts + 1, "
                "worker_id = ?, updated_at = ? WHERE job_id = ?",
                (worker_id, now, row["job_id"]),
            )
            await db.commit()
            cursor = await db.execute("SELECT * FROM jobs WHERE job_id = ?", (row["job_id"],))
            claimed = await cursor.fetchone()

        job = self._row_to_job(claimed)
        logger.debug(
            "job_claimed",
            queue=queue.value,
            job_id=job.job_id,
            attempt=job.attempts,
            worker_id=worker_id,
        )
        return job

    async def complete(self, job_id: str) -> None:
        async with aiosqlite.connect(str(self._db_path)) as db:
            await db.execute(
                "UPDATE jobs SET status = 'completed', updated_at = ? WHERE job_id = ?",
                (utc_now().isoformat(), job_id),
            )
            await db.commit()

    async def fail(self, job_id: str, error: str, retryable: bool = True) -> JobStatus:
        job = await self.get(job_id)
        if job is None:
            raise NotFoundError(message=f"Job not found: {job_id}", provider_name="sqlite_queue")

        now = utc_now()
        if retryable and job.attempts < job.max_attempts:
            delay = backoff_delay(job.backoff_seconds, job.attempts)
            status = JobStatus.WAITING
            available_at = now + timedelta(seconds=delay)
        else:
            delay = 0.0
            status = JobStatus.FAILED
            available_at = job.available_at

        async with aiosqlite.connect(str(self._db_path)) as db:
            await db.execute(
                "UPDATE jobs SET status = ?, last_error = ?, worker_id = NULL, "
                "available_at = ?, updated_at = ? WHERE job_id = ?",
                (status.value, error, available_at.isoformat(), now.isoformat(), job_id),
            )
            await db.commit()

        logger.info(
            "job_failed_attempt",
            queue=job.queue.value,
            job_id=job_id,
            attempt=job.attempts,
            max_attempts=job.max_attempts,
            status=status.value,
            retry_in_seconds=delay,
        )
        return status

    async def get(self, job_id: str) -> Job | None:
        async with aiosqlite.connect(str(self._db_path)) as db:
            db.row_factory = aiosqlite.Row
            cursor = await db.execute("SELECT * FROM jobs WHERE job_id = ?", (job_id,))
            row = await cursor.fetchone()
        return self._row_to_job(row) if row is not None else None

    async def requeue_stalled(self, older_than_seconds: float) -> int:
        now = utc_now()
        cutoff = (now - timedelta(seconds=older_than_seconds)).isoformat()
        async with aiosqlite.connect(str(self._db_path)) as db:
            # A stalled claim that was the final attempt has nothing left to spend.
            exhausted = await db.execute(
                "UPDATE jobs SET status = 'failed', worker_id = NULL, "
                "last_error = 'worker stalled on final attempt', updated_at = ? "
                "WHERE status = 'active' AND updated_at <= ? AND attempts >= max_attempts",
                (now.isoformat(), cutoff),
            )
            requeued = await db.execute(
                "UPDATE jobs SET status = 'waiting', worker_id = NULL, available_at = ?, "
                "updated_at = ? WHERE status = 'active' AND updated_at <= ?",
                (now.isoformat(), now.isoformat(), cutoff),
            )
            await db.commit()
        if exhausted.rowcount:
            logger.error("stalled_jobs_failed", count=exhausted.rowcount)
        if requeued.rowcount:
            logger.warning("stalled_jobs_requeued", count=requeued.rowcount)
        return requeued.rowcount

    async def counts(self, queue: QueueName) -> dict[str, int]:
        async with aiosqlite.connect(str(self._db_path)) as db:
            cursor = await db.execute(
                "SELECT status, COUNT(*) FROM jobs WHERE queue = ? GROUP BY status",
                (queue.value,),
            )
            rows = await cursor.fetchall()
        counts = {status.value: 0 for status in JobStatus}
        counts.update({status: count for status, count in rows})
        return counts

    def get_provider_name(self) -> str:
        return "sqlite_queue"

    @staticmethod
    def _row_to_job(row: aiosqlite.Row) -> Job:
        return Job(
            job_id=row["job_id"],
            queue=QueueName(row["queue"]),
            job_type=row["job_type"],
            payload=json.loads(row["payload"]),
            status=JobStatus(row["status"]),
            attempts=row["attempts"],
            max_attempts=row["max_attempts"],
            backoff_seconds=row["backoff_seconds"],
            dedupe_key=row["dedupe_key"],
            last_error=row["last_error"],
            worker_id=row["worker_id"],
            available_at=datetime.fromisoformat(row["available_at"]),
            created_at=datetime.fromisoformat(row["created_at"]),
            updated_at=datetime.fromisoformat(row["updated_at"]),
        )
