# SPDX-License-Identifier: LGPL-2.1-only
# Copyright (c) 2026 Akshat Kotpalliwar (alias IntegerAlex)

"""
Cleanup Job Store - Persistent audit trail for scan and cleanup runs.

Every run is recorded, whatever its outcome, so a human can triage it
without re-running anything:
1. cleanup_jobs - one row per run (configuration and metrics as JSON)
2. cleanup_job_items - one row per orphan candidate with its outcome

Job rows are never deleted.
"""

import json
from dataclasses import asdict
from datetime import datetime, UTC
from pathlib import Path
from typing import Dict, Iterable, List, Sequence

import aiosqlite
import structlog
from ulid import ULID

from medialife.exceptions import JobNotFoundError, JobStateError, MetadataStoreError
from medialife.jobs.state import (
    CleanupJob,
    JobConfiguration,
    JobMetrics,
    JobStatus,
    JobType,
    OrphanItemStatus,
    OrphanedFileEntry,
    TERMINAL_STATUSES,
    TriggerSource,
    ensure_transition,
)
from medialife.metadata.store import to_iso

logger = structlog.get_logger()

_JOB_COLUMNS = (
    "id",
    "job_type",
    "status",
    "configuration",
    "metrics",
    "triggered_by",
    "executed_by",
    "created_at",
    "started_at",
    "completed_at",
    "execution_log",
    "error_log",
)
_SELECT_JOB = f"SELECT {', '.join(_JOB_COLUMNS)} FROM cleanup_jobs"


def _parse(value: str | None) -> datetime | None:
    return datetime.fromisoformat(value) if value else None


def _row_to_job(row: tuple) -> CleanupJob:
    record = dict(zip(_JOB_COLUMNS, row))
    return CleanupJob(
        id=record["id"],
        job_type=JobType(record["job_type"]),
        status=JobStatus(record["status"]),
        configuration=JobConfiguration.from_dict(json.loads(record["configuration"])),
        metrics=JobMetrics.from_dict(json.loads(record["metrics"])),
        triggered_by=TriggerSource(record["triggered_by"]),
        executed_by=record["executed_by"],
        created_at=datetime.fromisoformat(record["created_at"]),
        started_at=_parse(record["started_at"]),
        completed_at=_parse(record["completed_at"]),
        execution_log=json.loads(record["execution_log"]),
        error_log=json.loads(record["error_log"]),
    )


def _log_line(message: str) -> str:
    return f"[{datetime.now(UTC).isoformat()}] {message}"


async def init_jobs_db(db_path: Path) -> None:
    """
    Initialize the cleanup job schema. Idempotent.

    Args:
        db_path: Path to the SQLite database file
    """
    try:
        async with aiosqlite.connect(db_path) as db:
            await db.execute("""
                CREATE TABLE IF NOT EXISTS cleanup_jobs (
                    id TEXT PRIMARY KEY,
                    job_type TEXT NOT NULL,
                    status TEXT NOT NULL,
                    configuration TEXT NOT NULL,
                    metrics TEXT NOT NULL,
                    triggered_by TEXT NOT NULL,
                    executed_by TEXT,
                    created_at TEXT NOT NULL,
                    started_at TEXT,
                    completed_at TEXT,
                    execution_log TEXT NOT NULL DEFAULT '[]',
                    error_log TEXT NOT NULL DEFAULT '[]'
                )
            """)

            await db.execute("""
                CREATE TABLE IF NOT EXISTS cleanup_job_items (
                    id INTEGER PRIMARY KEY AUTOINCREMENT,
                    job_id TEXT NOT NULL,
                    s3_key TEXT NOT NULL,
                    size INTEGER NOT NULL DEFAULT 0,
                    last_modified TEXT,
                    status TEXT NOT NULL,
                    error TEXT,
                    updated_at TEXT NOT NULL,
                    UNIQUE (job_id, s3_key),
                    FOREIGN KEY (job_id) REFERENCES cleanup_jobs(id)
                )
            """)

            await db.execute("""
                CREATE INDEX IF NOT EXISTS idx_jobs_status
                ON cleanup_jobs(status)
            """)

            await db.execute("""
                CREATE INDEX IF NOT EXISTS idx_jobs_created_at
                ON cleanup_jobs(created_at)
            """)

            await db.execute("""
                CREATE INDEX IF NOT EXISTS idx_job_items_key
                ON cleanup_job_items(s3_key)
            """)

            await db.commit()

        logger.info("jobs_db_initialized", db_path=str(db_path))

    except Exception as e:
        raise MetadataStoreError(
            f"Failed to initialize cleanup job tables: {e}",
            details={"db_path": str(db_path)},
        )


async def create_job(
    db: aiosqlite.Connection,
    job_type: JobType,
    configuration: JobConfiguration,
    triggered_by: TriggerSource,
    executed_by: str | None = None,
) -> CleanupJob:
    """
    Record a new job in ``pending``.

    Returns:
        The created CleanupJob
    """
    now = datetime.now(UTC)
    job = CleanupJob(
        id=str(ULID()),
        job_type=JobType(job_type),
        status=JobStatus.PENDING,
        configuration=configuration,
        metrics=JobMetrics(),
        triggered_by=TriggerSource(triggered_by),
        executed_by=executed_by,
        created_at=now,
        execution_log=[_log_line(f"{JobType(job_type).value} job created")],
    )

    await db.execute(
        f"""
        INSERT INTO cleanup_jobs ({', '.join(_JOB_COLUMNS)})
        VALUES ({', '.join('?' for _ in _JOB_COLUMNS)})
        """,
        (
            job.id,
            job.job_type.value,
            job.status.value,
            json.dumps(asdict(job.configuration)),
            json.dumps(asdict(job.metrics)),
            job.triggered_by.value,
            job.executed_by,
            to_iso(now),
            None,
            None,
            json.dumps(job.execution_log),
            json.dumps([]),
        ),
    )
    await db.commit()

    logger.info(
        "cleanup_job_created",
        job_id=job.id,
        job_type=job.job_type.value,
        triggered_by=job.triggered_by.value,
    )
    return job


async def get_job(
    db: aiosqlite.Connection,
    job_id: str,
    include_items: bool = True,
) -> CleanupJob | None:
    async with db.execute(f"{_SELECT_JOB} WHERE id = ?", (job_id,)) as cursor:
        row = await cursor.fetchone()

    if row is None:
        return None

    job = _row_to_job(row)
    if include_items:
        job.orphaned_files = await get_job_items(db, job_id)
    return job


async def _require_job(db: aiosqlite.Connection, job_id: str) -> CleanupJob:
    job = await get_job(db, job_id, include_items=False)
    if job is None:
        raise JobNotFoundError(f"Cleanup job {job_id} not found", details={"job_id": job_id})
    return job


async def get_job_status(db: aiosqlite.Connection, job_id: str) -> JobStatus | None:
    async with db.execute("SELECT status FROM cleanup_jobs WHERE id = ?", (job_id,)) as cursor:
        row = await cursor.fetchone()
        return JobStatus(row[0]) if row else None


async def start_job(db: aiosqlite.Connection, job_id: str) -> CleanupJob:
    """pending -> running."""
    job = await _require_job(db, job_id)
    ensure_transition(job.status, JobStatus.RUNNING)

    now = datetime.now(UTC)
    job.execution_log.append(_log_line("job started"))
    await db.execute(
        """
        UPDATE cleanup_jobs
        SET status = ?, started_at = ?, execution_log = ?
        WHERE id = ?
        """,
        (JobStatus.RUNNING.value, to_iso(now), json.dumps(job.execution_log), job_id),
    )
    await db.commit()

    job.status = JobStatus.RUNNING
    job.started_at = now
    logger.info("cleanup_job_started", job_id=job_id)
    return job


async def upsert_job_items(
    db: aiosqlite.Connection,
    job_id: str,
    entries: Iterable[OrphanedFileEntry],
) -> None:
    """
    Insert or update itemized results for a job.

    An existing item keeps its size and last_modified when the new entry
    carries none.
    """
    now = to_iso(datetime.now(UTC))
    rows = [
        (
            job_id,
            entry.key,
            entry.size,
            to_iso(entry.last_modified) if entry.last_modified else None,
            OrphanItemStatus(entry.status).value,
            entry.error,
            now,
        )
        for entry in entries
    ]
    if not rows:
        return

    await db.executemany(
        """
        INSERT INTO cleanup_job_items
            (job_id, s3_key, size, last_modified, status, error, updated_at)
        VALUES (?, ?, ?, ?, ?, ?, ?)
        ON CONFLICT(job_id, s3_key) DO UPDATE SET
            size = CASE WHEN excluded.size > 0 THEN excluded.size ELSE size END,
            last_modified = COALESCE(excluded.last_modified, last_modified),
            status = excluded.status,
            error = excluded.error,
            updated_at = excluded.updated_at
        """,
        rows,
    )
    await db.commit()


async def get_job_items(
    db: aiosqlite.Connection,
    job_id: str,
    status: OrphanItemStatus | None = None,
) -> List[OrphanedFileEntry]:
    query = """
        SELECT s3_key, size, last_modified, status, error
        FROM cleanup_job_items
        WHERE job_id = ?
    """
    params: List = [job_id]
    if status is not None:
        query += " AND status = ?"
        params.append(OrphanItemStatus(status).value)
    query += " ORDER BY id"

    items: List[OrphanedFileEntry] = []
    async with db.execute(query, params) as cursor:
        async for row in cursor:
            items.append(
                OrphanedFileEntry(
                    key=row[0],
                    size=row[1],
                    last_modified=_parse(row[2]),
                    status=OrphanItemStatus(row[3]),
                    error=row[4],
                )
            )
    return items


async def append_execution_log(db: aiosqlite.Connection, job_id: str, message: str) -> None:
    await _append_log(db, job_id, "execution_log", message)


async def append_error_log(db: aiosqlite.Connection, job_id: str, message: str) -> None:
    await _append_log(db, job_id, "error_log", message)


async def _append_log(db: aiosqlite.Connection, job_id: str, column: str, message: str) -> None:
    async with db.execute(f"SELECT {column} FROM cleanup_jobs WHERE id = ?", (job_id,)) as cursor:
        row = await cursor.fetchone()
    if row is None:
        raise JobNotFoundError(f"Cleanup job {job_id} not found", details={"job_id": job_id})

    entries = json.loads(row[0])
    entries.append(_log_line(message))
    await db.execute(
        f"UPDATE cleanup_jobs SET {column} = ? WHERE id = ?",
        (json.dumps(entries), job_id),
    )
    await db.commit()


async def update_job_metrics(
    db: aiosqlite.Connection,
    job_id: str,
    metrics: JobMetrics,
) -> None:
    await db.execute(
        "UPDATE cleanup_jobs SET metrics = ? WHERE id = ?",
        (json.dumps(asdict(metrics)), job_id),
    )
    await db.commit()


async def complete_job(
    db: aiosqlite.Connection,
    job_id: str,
    metrics: JobMetrics,
    status: JobStatus,
) -> CleanupJob:
    """
    Record final metrics and move a running job to ``status``.

    A job cancelled while it ran keeps ``cancelled``; its metrics are still
    stored so the record shows what was done before the cancellation.
    """
    job = await _require_job(db, job_id)

    if job.status == JobStatus.CANCELLED:
        final = JobStatus.CANCELLED
    else:
        ensure_transition(job.status, status)
        final = status

    now = datetime.now(UTC)
    job.execution_log.append(
        _log_line(
            f"job finished as {final.value}: deleted={metrics.files_deleted} "
            f"errors={metrics.deletion_errors} found={metrics.orphaned_files_found}"
        )
    )
    await db.execute(
        """
        UPDATE cleanup_jobs
        SET status = ?, metrics = ?, completed_at = ?, execution_log = ?
        WHERE id = ?
        """,
        (
            final.value,
            json.dumps(asdict(metrics)),
            to_iso(now),
            json.dumps(job.execution_log),
            job_id,
        ),
    )
    await db.commit()

    job.status = final
    job.metrics = metrics
    job.completed_at = now
    logger.info(
        "cleanup_job_completed",
        job_id=job_id,
        status=final.value,
        deleted=metrics.files_deleted,
        errors=metrics.deletion_errors,
    )
    return job


async def fail_job(
    db: aiosqlite.Connection,
    job_id: str,
    error: str,
    metrics: JobMetrics | None = None,
) -> CleanupJob:
    """
    Move a job to ``failed`` and record the cause in its error log.

    Args:
        db: SQLite database connection
        job_id: Job to fail
        error: Cause, appended to the error log
        metrics: Progress reached before the failure; stored with the job

    A job that already reached a terminal status only gets the error
    appended.
    """
    job = await _require_job(db, job_id)
    job.error_log.append(_log_line(error))

    now = datetime.now(UTC)
    if job.status in TERMINAL_STATUSES:
        await db.execute(
            "UPDATE cleanup_jobs SET error_log = ? WHERE id = ?",
            (json.dumps(job.error_log), job_id),
        )
    else:
        job.status = JobStatus.FAILED
        job.completed_at = now
        if metrics is not None:
            job.metrics = metrics
        await db.execute(
            """
            UPDATE cleanup_jobs
            SET status = ?, completed_at = ?, error_log = ?, metrics = ?
            WHERE id = ?
            """,
            (
                JobStatus.FAILED.value,
                to_iso(now),
                json.dumps(job.error_log),
                json.dumps(asdict(job.metrics)),
                job_id,
            ),
        )
    await db.commit()

    logger.error("cleanup_job_failed", job_id=job_id, error=error)
    return job


async def cancel_job(
    db: aiosqlite.Connection,
    job_id: str,
    cancelled_by: str | None = None,
) -> CleanupJob:
    """
    Mark a pending or running job cancelled.

    Raises:
        JobNotFoundError: No such job
        JobStateError: The job already finished
    """
    job = await _require_job(db, job_id)
    if job.status in TERMINAL_STATUSES:
        raise JobStateError(
            f"Cleanup job {job_id} already {job.status.value}",
            details={"job_id": job_id, "status": job.status.value},
        )
    ensure_transition(job.status, JobStatus.CANCELLED)

    now = datetime.now(UTC)
    job.execution_log.append(_log_line(f"cancellation requested by {cancelled_by or 'unknown'}"))
    await db.execute(
        """
        UPDATE cleanup_jobs
        SET status = ?, completed_at = ?, execution_log = ?
        WHERE id = ?
        """,
        (JobStatus.CANCELLED.value, to_iso(now), json.dumps(job.execution_log), job_id),
    )
    await db.commit()

    job.status = JobStatus.CANCELLED
    job.completed_at = now
    logger.warning("cleanup_job_cancelled", job_id=job_id, cancelled_by=cancelled_by)
    return job


async def list_jobs(
    db: aiosqlite.Connection,
    limit: int = 50,
    offset: int = 0,
    status: JobStatus | None = None,
    job_type: JobType | None = None,
) -> List[CleanupJob]:
    """
    List jobs newest first, without their items.

    Args:
        db: SQLite database connection
        limit: Maximum number of records to return
        offset: Number of records to skip
        status: Optional status filter
        job_type: Optional job type filter
    """
    query = _SELECT_JOB
    clauses: List[str] = []
    params: List = []

    if status is not None:
        clauses.append("status = ?")
        params.append(JobStatus(status).value)
    if job_type is not None:
        clauses.append("job_type = ?")
        params.append(JobType(job_type).value)

    if clauses:
        query += " WHERE " + " AND ".join(clauses)
    query += " ORDER BY created_at DESC, id DESC LIMIT ? OFFSET ?"
    params.extend([limit, offset])

    async with db.execute(query, params) as cursor:
        return [_row_to_job(row) async for row in cursor]


async def find_running_jobs(
    db: aiosqlite.Connection,
    job_types: Sequence[JobType],
) -> List[CleanupJob]:
    placeholders = ", ".join("?" for _ in job_types)
    async with db.execute(
        f"{_SELECT_JOB} WHERE status IN (?, ?) AND job_type IN ({placeholders})",
        (JobStatus.PENDING.value, JobStatus.RUNNING.value, *[JobType(t).value for t in job_types]),
    ) as cursor:
        return [_row_to_job(row) async for row in cursor]


async def lookup_known_sizes(db: aiosqlite.Connection, keys: Sequence[str]) -> Dict[str, int]:
    """
    Sizes recorded for these keys by earlier jobs.

    Used to report storage reclaimed by a cleanup request that only carries
    keys.
    """
    sizes: Dict[str, int] = {}
    keys = list(keys)
    # Stay well under SQLite's bound-parameter limit
    for start in range(0, len(keys), 500):
        chunk = keys[start : start + 500]
        placeholders = ", ".join("?" for _ in chunk)
        async with db.execute(
            f"""
            SELECT s3_key, MAX(size)
            FROM cleanup_job_items
            WHERE s3_key IN ({placeholders}) AND size > 0
            GROUP BY s3_key
            """,
            chunk,
        ) as cursor:
            async for row in cursor:
                sizes[row[0]] = row[1]
    return sizes


async def get_job_stats(db: aiosqlite.Connection) -> dict:
    """
    Aggregate job statistics.

    Returns:
        Dict with totals by status and type, and deleted/reclaimed sums
    """
    stats: dict = {}

    async with db.execute("SELECT COUNT(*) FROM cleanup_jobs") as cursor:
        row = await cursor.fetchone()
        stats["total_jobs"] = row[0] if row else 0

    async with db.execute(
        "SELECT status, COUNT(*) FROM cleanup_jobs GROUP BY status"
    ) as cursor:
        stats["jobs_by_status"] = {row[0]: row[1] async for row in cursor}

    async with db.execute(
        "SELECT job_type, COUNT(*) FROM cleanup_jobs GROUP BY job_type"
    ) as cursor:
        stats["jobs_by_type"] = {row[0]: row[1] async for row in cursor}

    total_deleted = 0
    total_reclaimed = 0
    async with db.execute("SELECT metrics FROM cleanup_jobs") as cursor:
        async for row in cursor:
            metrics = json.loads(row[0])
            total_deleted += int(metrics.get("files_deleted", 0))
            total_reclaimed += int(metrics.get("storage_reclaimed", 0))
    stats["total_files_deleted"] = total_deleted
    stats["total_storage_reclaimed"] = total_reclaimed

    async with db.execute(
        "SELECT created_at FROM cleanup_jobs ORDER BY created_at DESC LIMIT 1"
    ) as cursor:
        row = await cursor.fetchone()
        stats["last_job_at"] = row[0] if row else None

    return stats
