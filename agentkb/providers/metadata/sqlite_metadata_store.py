"""SQLite-backed metadata store for agents, files and deletion jobs.

Persists to ``data/agentkb.db`` via ``aiosqlite``.  Stage status lives in
its own ``file_stages`` table, one row per (file, stage), so that a stage
write is a single conditional ``UPDATE`` touching exactly one row.  The
``WHERE`` clause of that update carries the whole transition check: the
allowed source statuses, the "earlier stages completed" rule and the
cancellation / generation guard.  A zero row count is then diagnosed to
raise the precise error.
"""

from __future__ import annotations

import json
from datetime import datetime
from pathlib import Path
from typing import Any

import aiosqlite
import structlog

from agentkb.interfaces.metadata_store import IMetadataStore
from agentkb.models.agent import Agent, AgentStatus
from agentkb.models.deletion import DeletionJob, DeletionStatus, DeletionTarget
from agentkb.models.documents import (
    STAGE_ORDER,
    IntakeState,
    KnowledgeFile,
    ProcessingRecord,
    StageName,
    StageRecord,
    StageStatus,
    utc_now,
)
from agentkb.pipeline.state_machine import allowed_sources
from agentkb.utils.errors import FileCancelledError, InvalidTransitionError, NotFoundError

logger = structlog.get_logger(logger_name=__name__)

_DEFAULT_DB_PATH = Path("data/agentkb.db")

_CREATE_TABLES_SQL = [
    """\
CREATE TABLE IF NOT EXISTS agents (
    agent_id          TEXT PRIMARY KEY,
    tenant_id         TEXT NOT NULL,
    name              TEXT NOT NULL DEFAULT '',
    status            TEXT NOT NULL DEFAULT 'draft',
    file_count        INTEGER NOT NULL DEFAULT 0,
    completed_count   INTEGER NOT NULL DEFAULT 0,
    failed_count      INTEGER NOT NULL DEFAULT 0,
    created_at        TEXT NOT NULL,
    status_changed_at TEXT
);
""",
    """\
CREATE TABLE IF NOT EXISTS files (
    file_id       TEXT PRIMARY KEY,
    tenant_id     TEXT NOT NULL,
    agent_id      TEXT NOT NULL,
    filename      TEXT NOT NULL,
    storage_key   TEXT NOT NULL,
    content_hash  TEXT NOT NULL,
    size_bytes    INTEGER NOT NULL,
    mime_type     TEXT NOT NULL,
    intake        TEXT NOT NULL DEFAULT 'uploading',
    generation    INTEGER NOT NULL DEFAULT 0,
    created_at    TEXT NOT NULL,
    updated_at    TEXT NOT NULL,
    deleted_at    TEXT
);
""",
    """\
CREATE TABLE IF NOT EXISTS file_stages (
    file_id       TEXT NOT NULL,
    stage         TEXT NOT NULL,
    position      INTEGER NOT NULL,
    status        TEXT NOT NULL DEFAULT 'pending',
    attempts      INTEGER NOT NULL DEFAULT 0,
    exhausted     INTEGER NOT NULL DEFAULT 0,
    queued_at     TEXT,
    started_at    TEXT,
    completed_at  TEXT,
    failed_at     TEXT,
    last_error    TEXT,
    counters      TEXT NOT NULL DEFAULT '{}',
    PRIMARY KEY (file_id, stage)
);
""",
    """\
CREATE TABLE IF NOT EXISTS deletion_jobs (
    job_id        TEXT PRIMARY KEY,
    tenant_id     TEXT NOT NULL,
    agent_id      TEXT NOT NULL,
    status        TEXT NOT NULL,
    attempts      INTEGER NOT NULL DEFAULT 0,
    last_error    TEXT,
    targets       TEXT NOT NULL,
    created_at    TEXT NOT NULL,
    updated_at    TEXT NOT NULL,
    completed_at  TEXT
);
""",
]

_CREATE_INDICES_SQL = [
    "CREATE INDEX IF NOT EXISTS idx_files_agent ON files(agent_id);",
    "CREATE INDEX IF NOT EXISTS idx_files_agent_hash ON files(agent_id, content_hash);",
    "CREATE INDEX IF NOT EXISTS idx_deletion_jobs_status ON deletion_jobs(status, updated_at);",
]

_FILE_COLUMNS = (
    "file_id, tenant_id, agent_id, filename, storage_key, content_hash, size_bytes, "
    "mime_type, intake, generation, created_at, updated_at, deleted_at"
)

_STAGE_COLUMNS = (
    "file_id, stage, status, attempts, exhausted, queued_at, started_at, "
    "completed_at, failed_at, last_error, counters"
)

# The live-file guard shared by every worker-side write.
_LIVE_FILE_GUARD = (
    "EXISTS (SELECT 1 FROM files f WHERE f.file_id = file_stages.file_id "
    "AND f.deleted_at IS NULL AND f.intake != 'cancelled' AND f.generation = ?)"
)

_EARLIER_COMPLETED_GUARD = (
    "NOT EXISTS (SELECT 1 FROM file_stages e WHERE e.file_id = file_stages.file_id "
    "AND e.position < file_stages.position AND e.status != 'completed')"
)


def _ts(value: datetime | None) -> str | None:
    return value.isoformat() if value is not None else None


def _dt(value: str | None) -> datetime | None:
    return datetime.fromisoformat(value) if value else None


def _read_back(value: Any, kind: str, key: str) -> Any:
    """Return a row re-read after a write; a purge may have removed it meanwhile."""
    if value is None:
        raise NotFoundError(message=f"{kind} {key} disappeared after write", provider_name="sqlite")
    return value


class SQLiteMetadataStore(IMetadataStore):
    """SQLite-backed persistence for the knowledge base metadata."""

    def __init__(self, db_path: str | Path = _DEFAULT_DB_PATH) -> None:
        self._db_path = Path(db_path)

    async def initialize(self) -> None:
        """Create the tables and indices if they don't exist."""
        self._db_path.parent.mkdir(parents=True, exist_ok=True)
        async with aiosqlite.connect(str(self._db_path)) as db:
            await db.execute("PRAGMA journal_mode=WAL;")
            for table_sql in _CREATE_TABLES_SQL:
                await db.execute(table_sql)
            for idx_sql in _CREATE_INDICES_SQL:
                await db.execute(idx_sql)
            await db.commit()
        logger.info("metadata_db_initialized", path=str(self._db_path))

    # ------------------------------------------------------------------
    # Agents
    # ------------------------------------------------------------------

    async def upsert_agent(self, agent: Agent) -> Agent:
        async with aiosqlite.connect(str(self._db_path)) as db:
            await db.execute(
                "INSERT INTO agents (agent_id, tenant_id, name, status, created_at) "
                "VALUES (?, ?, ?, ?, ?) ON CONFLICT(agent_id) DO NOTHING",
                (
                    agent.agent_id,
                    agent.tenant_id,
                    agent.name,
                    agent.status.value,
                    _ts(agent.created_at),
                ),
            )
            await db.commit()
        return _read_back(await self.get_agent(agent.agent_id), "Agent", agent.agent_id)

    async def get_agent(self, agent_id: str) -> Agent | None:
        async with aiosqlite.connect(str(self._db_path)) as db:
            db.row_factory = aiosqlite.Row
            cursor = await db.execute("SELECT * FROM agents WHERE agent_id = ?", (agent_id,))
            row = await cursor.fetchone()
        if row is None:
            return None
        return Agent(
            agent_id=row["agent_id"],
            tenant_id=row["tenant_id"],
            name=row["name"],
            status=AgentStatus(row["status"]),
            file_count=row["file_count"],
            completed_count=row["completed_count"],
            failed_count=row["failed_count"],
            created_at=_dt(row["created_at"]),
            status_changed_at=_dt(row["status_changed_at"]),
        )

    async def save_agent_status(
        self,
        agent_id: str,
        status: AgentStatus,
        file_count: int,
        completed_count: int,
        failed_count: int,
    ) -> Agent:
        now = _ts(utc_now())
        async with aiosqlite.connect(str(self._db_path)) as db:
            cursor = await db.execute(
                "UPDATE agents SET "
                "status_changed_at = CASE WHEN status != ? THEN ? ELSE status_changed_at END, "
                "status = ?, file_count = ?, completed_count = ?, failed_count = ? "
                "WHERE agent_id = ?",
                (
                    status.value,
                    now,
                    status.value,
                    file_count,
                    completed_count,
                    failed_count,
                    agent_id,
                ),
            )
            await db.commit()
            if cursor.rowcount == 0:
                raise NotFoundError(message=f"Agent not found: {agent_id}", provider_name="sqlite")
        return _read_back(await self.get_agent(agent_id), "Agent", agent_id)

    # ------------------------------------------------------------------
    # Files
    # ------------------------------------------------------------------

    async def create_file(self, file: KnowledgeFile) -> KnowledgeFile:
        async with aiosqlite.connect(str(self._db_path)) as db:
            await db.execute(
                f"INSERT INTO files ({_FILE_COLUMNS}) VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)",
                (
                    file.file_id,
                    file.tenant_id,
                    file.agent_id,
                    file.filename,
                    file.storage_key,
                    file.content_hash,
                    file.size_bytes,
                    file.mime_type,
                    file.intake.value,
                    file.generation,
                    _ts(file.created_at),
                    _ts(file.updated_at),
                    _ts(file.deleted_at),
                ),
            )
            await db.executemany(
                "INSERT INTO file_stages (file_id, stage, position) VALUES (?, ?, ?)",
                [(file.file_id, stage.value, stage.position) for stage in STAGE_ORDER],
            )
            await db.commit()
        logger.info(
            "file_created",
            file_id=file.file_id,
            tenant_id=file.tenant_id,
            agent_id=file.agent_id,
            filename=file.filename,
            size_bytes=file.size_bytes,
        )
        return _read_back(await self.get_file(file.file_id), "File", file.file_id)

    async def get_file(self, file_id: str) -> KnowledgeFile | None:
        async with aiosqlite.connect(str(self._db_path)) as db:
            db.row_factory = aiosqlite.Row
            cursor = await db.execute(
                f"SELECT {_FILE_COLUMNS} FROM files WHERE file_id = ?", (file_id,)
            )
            row = await cursor.fetchone()
            if row is None:
                return None
            stages = await self._load_stages(db, [file_id])
        return self._row_to_file(row, stages.get(file_id, {}))

    async def find_file_by_hash(self, agent_id: str, content_hash: str) -> KnowledgeFile | None:
        async with aiosqlite.connect(str(self._db_path)) as db:
            cursor = await db.execute(
                "SELECT file_id FROM files WHERE agent_id = ? AND content_hash = ? "
                "AND deleted_at IS NULL AND intake != 'cancelled' "
                "ORDER BY created_at LIMIT 1",
                (agent_id, content_hash),
            )
            row = await cursor.fetchone()
        if row is None:
            return None
        return await self.get_file(row[0])

    async def list_files(self, agent_id: str, include_deleted: bool = False) -> list[KnowledgeFile]:
        query = f"SELECT {_FILE_COLUMNS} FROM files WHERE agent_id = ?"
        if not include_deleted:
            query += " AND deleted_at IS NULL AND intake != 'cancelled'"
        query += " ORDER BY created_at, file_id"

        async with aiosqlite.connect(str(self._db_path)) as db:
            db.row_factory = aiosqlite.Row
            cursor = await db.execute(query, (agent_id,))
            rows = await cursor.fetchall()
            stages = await self._load_stages(db, [r["file_id"] for r in rows])
        return [self._row_to_file(r, stages.get(r["file_id"], {})) for r in rows]

    async def set_intake(self, file_id: str, intake: IntakeState) -> bool:
        async with aiosqlite.connect(str(self._db_path)) as db:
            cursor = await db.execute(
                "UPDATE files SET intake = ?, updated_at = ? "
                "WHERE file_id = ? AND deleted_at IS NULL AND intake != 'cancelled'",
                (intake.value, _ts(utc_now()), file_id),
            )
            await db.commit()
        return cursor.rowcount > 0

    async def mark_stage_queued(self, file_id: str, stage: StageName, generation: int) -> bool:
        async with aiosqlite.connect(str(self._db_path)) as db:
            cursor = await db.execute(
                f"UPDATE file_stages SET queued_at = ? "
                f"WHERE file_id = ? AND stage = ? AND {_LIVE_FILE_GUARD}",
                (_ts(utc_now()), file_id, stage.value, generation),
            )
            await db.commit()
        return cursor.rowcount > 0

    async def transition_stage(
        self,
        file_id: str,
        stage: StageName,
        target: StageStatus,
        *,
        generation: int,
        counters: dict[str, Any] | None = None,
        error: str | None = None,
        exhausted: bool = False,
    ) -> StageRecord:
        now = _ts(utc_now())
        sets = ["status = ?", "exhausted = ?"]
        params: list[Any] = [target.value, int(exhausted and target == StageStatus.FAILED)]

        if target == StageStatus.PROCESSING:
            sets += ["attempts = attempts + 1", "started_at = ?"]
            params.append(now)
        elif target == StageStatus.COMPLETED:
            sets += ["completed_at = ?", "last_error = NULL"]
            params.append(now)
        elif target == StageStatus.FAILED:
            sets += ["failed_at = ?", "last_error = ?"]
            params += [now, error]
        if counters is not None:
            sets.append("counters = ?")
            params.append(json.dumps(counters, sort_keys=True))

        sources = sorted(s.value for s in allowed_sources(target))
        where = [
            "file_id = ?",
            "stage = ?",
            f"status IN ({', '.join('?' for _ in sources)})",
            _LIVE_FILE_GUARD,
        ]
        params += [file_id, stage.value, *sources, generation]
        if target != StageStatus.PENDING:
            where.append(_EARLIER_COMPLETED_GUARD)

        async with aiosqlite.connect(str(self._db_path)) as db:
            db.row_factory = aiosqlite.Row
            cursor = await db.execute(
                f"UPDATE file_stages SET {', '.join(sets)} WHERE {' AND '.join(where)}",
                params,
            )
            await db.commit()
            if cursor.rowcount == 0:
                await self._diagnose_rejected_transition(db, file_id, stage, target, generation)
            cursor = await db.execute(
                f"SELECT {_STAGE_COLUMNS} FROM file_stages WHERE file_id = ? AND stage = ?",
                (file_id, stage.value),
            )
            row = await cursor.fetchone()

        record = self._row_to_stage(row)
        logger.info(
            "stage_transition",
            file_id=file_id,
            stage=stage.value,
            status=target.value,
            attempts=record.attempts,
            exhausted=record.exhausted,
        )
        return record

    async def reset_stages(self, file_id: str) -> KnowledgeFile:
        now = _ts(utc_now())
        async with aiosqlite.connect(str(self._db_path)) as db:
            db.row_factory = aiosqlite.Row
            await db.execute("BEGIN IMMEDIATE")
            cursor = await db.execute(
                "UPDATE files SET generation = generation + 1, updated_at = ? "
                "WHERE file_id = ? AND deleted_at IS NULL AND intake != 'cancelled'",
                (now, file_id),
            )
            if cursor.rowcount == 0:
                await db.rollback()
                file = await self.get_file(file_id)
                if file is None:
                    raise NotFoundError(message=f"File not found: {file_id}", provider_name="sqlite")
                raise FileCancelledError(
                    message=f"File {file_id} is deleted and cannot be reprocessed",
                    provider_name="sqlite",
                )
            await db.execute(
                "UPDATE file_stages SET status = 'pending', attempts = 0, exhausted = 0, "
                "queued_at = NULL, started_at = NULL, completed_at = NULL, failed_at = NULL, "
                "last_error = NULL, counters = '{}' WHERE file_id = ?",
                (file_id,),
            )
            await db.commit()

        file = _read_back(await self.get_file(file_id), "File", file_id)
        logger.info("file_stages_reset", file_id=file_id, generation=file.generation)
        return file

    async def mark_deleted(self, file_id: str) -> bool:
        now = _ts(utc_now())
        async with aiosqlite.connect(str(self._db_path)) as db:
            cursor = await db.execute(
                "UPDATE files SET deleted_at = ?, intake = 'cancelled', updated_at = ? "
                "WHERE file_id = ? AND deleted_at IS NULL",
                (now, now, file_id),
            )
            await db.commit()
        return cursor.rowcount > 0

    async def purge_deleted_files(self, before: datetime) -> int:
        cutoff = _ts(before)
        async with aiosqlite.connect(str(self._db_path)) as db:
            await db.execute(
                "DELETE FROM file_stages WHERE file_id IN "
                "(SELECT file_id FROM files WHERE deleted_at IS NOT NULL AND deleted_at < ?)",
                (cutoff,),
            )
            cursor = await db.execute(
                "DELETE FROM files WHERE deleted_at IS NOT NULL AND deleted_at < ?",
                (cutoff,),
            )
            await db.commit()
        return cursor.rowcount

    # ------------------------------------------------------------------
    # Deletion jobs
    # ------------------------------------------------------------------

    async def save_deletion_job(self, job: DeletionJob) -> DeletionJob:
        targets = json.dumps([t.model_dump(mode="json") for t in job.targets])
        async with aiosqlite.connect(str(self._db_path)) as db:
            await db.execute(
                "INSERT OR REPLACE INTO deletion_jobs "
                "(job_id, tenant_id, agent_id, status, attempts, last_error, targets, "
                "created_at, updated_at, completed_at) VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?)",
                (
                    job.job_id,
                    job.tenant_id,
                    job.agent_id,
                    job.status.value,
                    job.attempts,
                    job.last_error,
                    targets,
                    _ts(job.created_at),
                    _ts(job.updated_at),
                    _ts(job.completed_at),
                ),
            )
            await db.commit()
        return job

    async def get_deletion_job(self, job_id: str) -> DeletionJob | None:
        async with aiosqlite.connect(str(self._db_path)) as db:
            db.row_factory = aiosqlite.Row
            cursor = await db.execute("SELECT * FROM deletion_jobs WHERE job_id = ?", (job_id,))
            row = await cursor.fetchone()
        if row is None:
            return None
        return DeletionJob(
            job_id=row["job_id"],
            tenant_id=row["tenant_id"],
            agent_id=row["agent_id"],
            status=DeletionStatus(row["status"]),
            attempts=row["attempts"],
            last_error=row["last_error"],
            targets=[DeletionTarget.model_validate(t) for t in json.loads(row["targets"])],
            created_at=_dt(row["created_at"]),
            updated_at=_dt(row["updated_at"]),
            completed_at=_dt(row["completed_at"]),
        )

    async def purge_deletion_jobs(self, before: datetime) -> int:
        async with aiosqlite.connect(str(self._db_path)) as db:
            cursor = await db.execute(
                "DELETE FROM deletion_jobs WHERE status IN ('completed', 'cancelled') "
                "AND updated_at < ?",
                (_ts(before),),
            )
            await db.commit()
        return cursor.rowcount

    def get_provider_name(self) -> str:
        return "sqlite_metadata"

    # ------------------------------------------------------------------
    # Private helpers
    # ------------------------------------------------------------------

    async def _diagnose_rejected_transition(
        self,
        db: aiosqlite.Connection,
        file_id: str,
        stage: StageName,
        target: StageStatus,
        generation: int,
    ) -> None:
        cursor = await db.execute(
            "SELECT deleted_at, intake, generation FROM files WHERE file_id = ?", (file_id,)
        )
        row = await cursor.fetchone()
        if row is None:
            raise NotFoundError(message=f"File not found: {file_id}", provider_name="sqlite")
        if row["deleted_at"] is not None or row["intake"] == IntakeState.CANCELLED.value:
            raise FileCancelledError(
                message=f"File {file_id} was deleted; {stage.value} write discarded",
                provider_name="sqlite",
            )
        if row["generation"] != generation:
            raise FileCancelledError(
                message=(
                    f"File {file_id} was reprocessed (generation {row['generation']}, "
                    f"job generation {generation}); {stage.value} write discarded"
                ),
                provider_name="sqlite",
            )

        cursor = await db.execute(
            "SELECT stage, status FROM file_stages WHERE file_id = ? ORDER BY position",
            (file_id,),
        )
        statuses = {r["stage"]: r["status"] for r in await cursor.fetchall()}
        raise InvalidTransitionError(
            message=(
                f"{stage.value}: {statuses.get(stage.value)} -> {target.value} rejected "
                f"(stages: {statuses})"
            ),
            provider_name="sqlite",
        )

    async def _load_stages(
        self, db: aiosqlite.Connection, file_ids: list[str]
    ) -> dict[str, dict[StageName, StageRecord]]:
        if not file_ids:
            return {}
        placeholders = ", ".join("?" for _ in file_ids)
        cursor = await db.execute(
            f"SELECT {_STAGE_COLUMNS} FROM file_stages WHERE file_id IN ({placeholders})",
            file_ids,
        )
        grouped: dict[str, dict[StageName, StageRecord]] = {}
        for row in await cursor.fetchall():
            record = self._row_to_stage(row)
            grouped.setdefault(row["file_id"], {})[record.stage] = record
        return grouped

    @staticmethod
    def _row_to_stage(row: aiosqlite.Row) -> StageRecord:
        return StageRecord(
            stage=StageName(row["stage"]),
            status=StageStatus(row["status"]),
            attempts=row["attempts"],
            exhausted=bool(row["exhausted"]),
            queued_at=_dt(row["queued_at"]),
            started_at=_dt(row["started_at"]),
            completed_at=_dt(row["completed_at"]),
            failed_at=_dt(row["failed_at"]),
            last_error=row["last_error"],
            counters=json.loads(row["counters"] or "{}"),
        )

    @staticmethod
    def _row_to_file(row: aiosqlite.Row, stages: dict[StageName, StageRecord]) -> KnowledgeFile:
        records = {stage: stages.get(stage) or StageRecord(stage=stage) for stage in STAGE_ORDER}
        return KnowledgeFile(
            file_id=row["file_id"],
            tenant_id=row["tenant_id"],
            agent_id=row["agent_id"],
            filename=row["filename"],
            storage_key=row["storage_key"],
            content_hash=row["content_hash"],
            size_bytes=row["size_bytes"],
            mime_type=row["mime_type"],
            intake=IntakeState(row["intake"]),
            generation=row["generation"],
            created_at=_dt(row["created_at"]),
            updated_at=_dt(row["updated_at"]),
            deleted_at=_dt(row["deleted_at"]),
            processing=ProcessingRecord(stages=records),
        )
