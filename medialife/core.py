# SPDX-License-Identifier: LGPL-2.1-only
# Copyright (c) 2026 Akshat Kotpalliwar (alias IntegerAlex)

"""
Media Lifecycle Core - Orchestration of scans, cleanups and audits.

Every flow below is a linear sequence of awaited steps and every one of
them is recorded as a CleanupJob, including runs that fail:

- run_scan: verification job, always dry-run
- run_cleanup: deletes an explicit, pre-validated key list
- run_audit_cycle: scheduled scan, deleting only when auto_delete is on
- cancel_cleanup_job: bookkeeping-only cancellation
"""

import asyncio
from dataclasses import dataclass, field
from datetime import datetime, timedelta, UTC
from pathlib import Path
from typing import Any, Dict, List, Sequence, TypedDict

import aiosqlite
import structlog

from medialife.config import LifecycleConfig
from medialife.exceptions import CleanupInProgressError, JobNotFoundError, ValidationError
from medialife.jobs.sqlite_jobs import (
    append_execution_log,
    cancel_job,
    complete_job,
    create_job,
    fail_job,
    find_running_jobs,
    get_job,
    get_job_stats,
    get_job_status,
    init_jobs_db,
    list_jobs,
    lookup_known_sizes,
    start_job,
    upsert_job_items,
)
from medialife.jobs.state import (
    CleanupJob,
    JobConfiguration,
    JobMetrics,
    JobStatus,
    JobType,
    OrphanItemStatus,
    OrphanedFileEntry,
    TriggerSource,
    resolve_final_status,
)
from medialife.metadata.cache import ValidKeyCache
from medialife.metadata.store import (
    get_metadata_generation,
    get_metadata_stats,
    init_metadata_db,
    mark_media_deleted,
    mark_stale_staging_orphaned,
)
from medialife.reconcile.executor import (
    CleanupResult,
    delete_orphans,
    filter_referenced_keys,
    find_records_for_key,
    protection_reason,
)
from medialife.reconcile.paths import (
    validate_cleanup_keys,
    validate_scan_prefixes,
)
from medialife.reconcile.scanner import (
    OrphanCandidate,
    ScanMetrics,
    ScanResult,
    ValidKeySet,
    build_valid_key_set,
    scan_for_orphans,
)
from medialife.storage import S3StorageAdapter, StorageAdapter
from medialife.upload.metrics import UploadMetricsCollector

logger = structlog.get_logger()

# Job types that delete objects and are subject to the single-flight guard
DESTRUCTIVE_JOB_TYPES = (JobType.CLEANUP, JobType.AUDIT)


@dataclass
class ScanReport:
    """Result of a verification scan."""

    job_id: str
    candidates: List[OrphanCandidate]
    metrics: ScanMetrics
    truncated: bool
    stale_records_marked: int


@dataclass
class CleanupReport:
    """Result of a cleanup or audit run."""

    job_id: str
    job_type: str
    status: str
    dry_run: bool
    files_scanned: int = 0
    orphaned_files_found: int = 0
    deleted: int = 0
    failed: int = 0
    storage_reclaimed: int = 0
    errors: List[str] = field(default_factory=list)
    deleted_keys: List[str] = field(default_factory=list)
    # key -> reason the key was left alone
    skipped: Dict[str, str] = field(default_factory=dict)


@dataclass
class LifecycleMetrics:
    total_scans: int
    total_cleanups: int
    total_deleted: int
    total_reclaimed_bytes: int
    last_run_at: datetime | None
    last_error: str | None
    jobs: dict
    metadata: dict


class LifecycleState(TypedDict):
    """Runtime state shared by every flow."""

    db_path: Path
    storage: StorageAdapter
    s3_session: Any  # aiobotocore session, None with an injected adapter
    key_cache: ValidKeyCache
    upload_metrics: UploadMetricsCollector
    cleanup_lock: asyncio.Lock
    scheduler: Any  # APScheduler instance when scheduling is on
    last_run_at: datetime | None
    total_scans: int
    total_cleanups: int
    total_deleted: int
    total_reclaimed: int
    last_error: str | None


async def initialize_lifecycle_state(
    config: LifecycleConfig,
    storage: StorageAdapter | None = None,
) -> LifecycleState:
    """
    Initialize runtime state.

    Creates the data directory, initializes the metadata and job tables, and
    builds an aiobotocore-backed storage adapter unless one is injected.

    Args:
        config: Lifecycle configuration
        storage: Optional storage adapter (tests pass an in-memory one)

    Returns:
        Initialized LifecycleState dictionary
    """
    config.data_path.mkdir(parents=True, exist_ok=True)
    await init_metadata_db(config.db_path)
    await init_jobs_db(config.db_path)

    session = None
    if storage is None:
        from aiobotocore.session import get_session

        session = get_session()
        storage = S3StorageAdapter(
            session,
            bucket=config.bucket,
            region=config.region,
            endpoint_url=config.endpoint_url,
        )

    return LifecycleState(
        db_path=config.db_path,
        storage=storage,
        s3_session=session,
        key_cache=ValidKeyCache(config.valid_key_cache_ttl),
        upload_metrics=UploadMetricsCollector(),
        cleanup_lock=asyncio.Lock(),
        scheduler=None,
        last_run_at=None,
        total_scans=0,
        total_cleanups=0,
        total_deleted=0,
        total_reclaimed=0,
        last_error=None,
    )


def _check_scan_limits(max_files: int, retention_days: int) -> None:
    if max_files < 1:
        raise ValidationError(f"max_files must be >= 1, got {max_files}")
    if retention_days < 0:
        raise ValidationError(f"retention_days must be >= 0, got {retention_days}")


def _overlaps(a: Sequence[str], b: Sequence[str]) -> bool:
    return any(x.startswith(y) or y.startswith(x) for x in a for y in b)


async def _ensure_no_overlapping_cleanup(
    db: aiosqlite.Connection,
    prefixes: Sequence[str],
) -> None:
    """
    Raises:
        CleanupInProgressError: A destructive job over overlapping prefixes
            is pending or running
    """
    for job in await find_running_jobs(db, DESTRUCTIVE_JOB_TYPES):
        if job.configuration.dry_run:
            continue
        if _overlaps(prefixes, job.configuration.include_directories):
            raise CleanupInProgressError(
                f"Cleanup job {job.id} is already running over overlapping prefixes",
                details={
                    "running_job_id": job.id,
                    "prefixes": list(job.configuration.include_directories),
                },
            )


async def _valid_keys(
    db: aiosqlite.Connection,
    state: LifecycleState,
    prefixes: Sequence[str],
    retention_days: int,
) -> ValidKeySet:
    cache = state["key_cache"]
    generation = await get_metadata_generation(db)
    cache_key = cache.derive_key(prefixes, retention_days, generation)
    cached = cache.get(cache_key)
    if cached is not None:
        logger.debug("valid_key_set_cache_hit", keys=len(cached))
        return cached

    valid = await build_valid_key_set(db)
    cache.put(cache_key, valid)
    return valid


def _scan_metrics(scan: ScanResult) -> JobMetrics:
    return JobMetrics(
        files_scanned=scan.metrics.files_scanned,
        files_processed=scan.metrics.files_scanned,
        orphaned_files_found=scan.metrics.orphaned_files_found,
    )


async def _fail_scan(
    db: aiosqlite.Connection,
    state: LifecycleState,
    job: CleanupJob,
    error: Exception,
    progress: ScanResult,
    items_recorded: bool = False,
) -> None:
    """Fail a scanning job, keeping the metrics and candidates reached so far."""
    state["last_error"] = str(error)
    if not items_recorded and progress.candidates:
        await _record_candidates(db, job, progress.candidates)
    await fail_job(
        db,
        job.id,
        f"{type(error).__name__}: {error}",
        metrics=_scan_metrics(progress),
    )


async def _record_candidates(
    db: aiosqlite.Connection,
    job: CleanupJob,
    candidates: Sequence[OrphanCandidate],
) -> None:
    await upsert_job_items(
        db,
        job.id,
        [
            OrphanedFileEntry(key=c.key, size=c.size, last_modified=c.last_modified)
            for c in candidates
        ],
    )


async def _scan(
    config: LifecycleConfig,
    state: LifecycleState,
    db: aiosqlite.Connection,
    job: CleanupJob,
    prefixes: List[str],
    max_files: int,
    retention_days: int,
    progress: ScanResult,
):
    now = datetime.now(UTC)
    stale = await mark_stale_staging_orphaned(db, now - timedelta(days=retention_days), now)
    if stale:
        state["key_cache"].invalidate()
        await append_execution_log(db, job.id, f"{stale} stale staging record(s) marked orphaned")

    valid = await _valid_keys(db, state, prefixes, retention_days)
    result = await scan_for_orphans(
        state["storage"],
        valid,
        prefixes=prefixes,
        allowed_prefixes=config.allowed_prefixes,
        max_files=max_files,
        retention_days=retention_days,
        exclude_patterns=config.exclude_patterns,
        page_size=config.list_page_size,
        now=now,
        progress=progress,
    )

    await _record_candidates(db, job, result.candidates)
    await append_execution_log(
        db,
        job.id,
        f"scanned {result.metrics.files_scanned} object(s), "
        f"found {result.metrics.orphaned_files_found} orphan(s)"
        + (" (stopped at max_files)" if result.truncated else ""),
    )
    return result, stale


async def run_scan(
    config: LifecycleConfig,
    state: LifecycleState,
    prefixes: Sequence[str] | None = None,
    max_files: int | None = None,
    retention_days: int | None = None,
    triggered_by: TriggerSource = TriggerSource.API,
    executed_by: str | None = None,
) -> ScanReport:
    """
    Run a verification scan. Never deletes anything.

    Args:
        config: Lifecycle configuration
        state: Runtime state
        prefixes: Prefixes to scan (defaults to config.scan_prefixes)
        max_files: Ceiling on enumerated objects
        retention_days: Override of config.retention_days
        triggered_by: Trigger source recorded on the job
        executed_by: Identity recorded on the job

    Returns:
        ScanReport with the job id, candidates and metrics

    Raises:
        ValidationError: Unsafe or non-allow-listed prefixes; no job is created
    """
    prefixes = validate_scan_prefixes(list(prefixes or config.scan_prefixes), config.allowed_prefixes)
    max_files = max_files if max_files is not None else config.max_files_to_scan
    retention_days = retention_days if retention_days is not None else config.retention_days
    _check_scan_limits(max_files, retention_days)

    async with aiosqlite.connect(state["db_path"]) as db:
        job = await create_job(
            db,
            JobType.VERIFICATION,
            JobConfiguration(
                dry_run=True,
                include_directories=prefixes,
                exclude_patterns=list(config.exclude_patterns),
                max_files_to_process=max_files,
                retention_days=retention_days,
            ),
            triggered_by,
            executed_by,
        )
        await start_job(db, job.id)

        progress = ScanResult()
        try:
            result, stale = await _scan(
                config, state, db, job, prefixes, max_files, retention_days, progress
            )
            await complete_job(db, job.id, _scan_metrics(result), JobStatus.COMPLETED)
        except Exception as e:
            await _fail_scan(db, state, job, e, progress)
            raise

    state["total_scans"] += 1
    state["last_run_at"] = datetime.now(UTC)

    return ScanReport(
        job_id=job.id,
        candidates=result.candidates,
        metrics=result.metrics,
        truncated=result.truncated,
        stale_records_marked=stale,
    )


async def _tombstone_records(db: aiosqlite.Connection, key: str, retention_days: int) -> int:
    """
    Mark the records of a deleted key as deleted.

    A record that became protected after the reference guard ran (confirmed
    in the meantime, say) is left as it is and logged.
    """
    count = 0
    for media in await find_records_for_key(db, key):
        reason = await protection_reason(db, media, retention_days)
        if reason is not None:
            logger.warning(
                "deleted_object_still_referenced",
                key=key,
                media_id=media.id,
                reason=reason,
            )
            continue
        await mark_media_deleted(db, media.id)
        count += 1
    return count


async def _execute_deletions(
    config: LifecycleConfig,
    state: LifecycleState,
    db: aiosqlite.Connection,
    job: CleanupJob,
    keys: List[str],
    dry_run: bool,
    files_scanned: int = 0,
    known_sizes: Dict[str, int] | None = None,
) -> CleanupReport:
    """Reference guard, delete, tombstone, and record the outcome on ``job``."""
    sizes = dict(known_sizes) if known_sizes is not None else await lookup_known_sizes(db, keys)

    if known_sizes is None:
        await upsert_job_items(
            db,
            job.id,
            [OrphanedFileEntry(key=key, size=sizes.get(key, 0)) for key in keys],
        )

    safe, referenced = await filter_referenced_keys(db, keys, config.retention_days)
    if referenced:
        await upsert_job_items(
            db,
            job.id,
            [
                OrphanedFileEntry(key=key, status=OrphanItemStatus.SKIPPED, error=reason)
                for key, reason in referenced.items()
            ],
        )
        await append_execution_log(
            db, job.id, f"{len(referenced)} key(s) skipped: still referenced"
        )

    async def still_wanted() -> bool:
        return await get_job_status(db, job.id) != JobStatus.CANCELLED

    if safe:
        result = await delete_orphans(
            state["storage"],
            safe,
            dry_run=dry_run,
            batch_size=config.delete_batch_size,
            max_key_length=config.max_key_length,
            should_continue=still_wanted,
        )
    else:
        result = CleanupResult(dry_run=dry_run)

    outcomes: List[OrphanedFileEntry] = []
    outcomes.extend(
        OrphanedFileEntry(key=key, status=OrphanItemStatus.DELETED) for key in result.deleted_keys
    )
    outcomes.extend(
        OrphanedFileEntry(key=key, status=OrphanItemStatus.FAILED, error=error)
        for key, error in result.failures.items()
    )
    outcomes.extend(
        OrphanedFileEntry(
            key=key,
            status=OrphanItemStatus.SKIPPED,
            error="job cancelled before this batch was sent",
        )
        for key in result.skipped
    )
    await upsert_job_items(db, job.id, outcomes)

    tombstoned = 0
    for key in result.deleted_keys:
        tombstoned += await _tombstone_records(db, key, config.retention_days)
    if result.deleted_keys:
        state["key_cache"].invalidate()
        await append_execution_log(
            db,
            job.id,
            f"deleted {len(result.deleted_keys)} object(s), {tombstoned} record(s) marked deleted",
        )

    reclaimed = sum(sizes.get(key, 0) for key in result.deleted_keys)
    metrics = JobMetrics(
        files_scanned=files_scanned,
        files_processed=len(keys),
        orphaned_files_found=len(keys),
        files_deleted=result.deleted,
        deletion_errors=result.failed,
        storage_reclaimed=reclaimed,
    )
    cancelled = await get_job_status(db, job.id) == JobStatus.CANCELLED
    finished = await complete_job(
        db, job.id, metrics, resolve_final_status(result.failed, cancelled)
    )

    state["total_deleted"] += result.deleted
    state["total_reclaimed"] += reclaimed

    skipped = dict(referenced)
    skipped.update({key: "job cancelled" for key in result.skipped})

    return CleanupReport(
        job_id=job.id,
        job_type=job.job_type.value,
        status=finished.status.value,
        dry_run=dry_run,
        files_scanned=files_scanned,
        orphaned_files_found=len(keys),
        deleted=result.deleted,
        failed=result.failed,
        storage_reclaimed=reclaimed,
        errors=result.errors,
        deleted_keys=result.deleted_keys,
        skipped=skipped,
    )


def _prefixes_for_keys(config: LifecycleConfig, keys: Sequence[str]) -> List[str]:
    return [p for p in config.allowed_prefixes if any(k.startswith(p) for k in keys)]


async def run_cleanup(
    config: LifecycleConfig,
    state: LifecycleState,
    keys: Sequence[str],
    dry_run: bool = False,
    triggered_by: TriggerSource = TriggerSource.API,
    executed_by: str | None = None,
) -> CleanupReport:
    """
    Delete an explicit key list.

    Keys are validated before a job is created; a single unsafe key rejects
    the whole request with zero storage calls.

    Raises:
        ValidationError: Unsafe keys, too many keys, or keys outside the
            allow-list
        CleanupInProgressError: An overlapping destructive job is running
    """
    validated = validate_cleanup_keys(
        keys,
        max_length=config.max_key_length,
        max_keys=config.max_cleanup_keys,
        allowed_prefixes=config.allowed_prefixes,
    )
    prefixes = _prefixes_for_keys(config, validated)

    async with aiosqlite.connect(state["db_path"]) as db:
        async with state["cleanup_lock"]:
            if not dry_run:
                await _ensure_no_overlapping_cleanup(db, prefixes)
            job = await create_job(
                db,
                JobType.CLEANUP,
                JobConfiguration(
                    dry_run=dry_run,
                    include_directories=prefixes,
                    exclude_patterns=list(config.exclude_patterns),
                    max_files_to_process=len(validated),
                    retention_days=config.retention_days,
                ),
                triggered_by,
                executed_by,
            )
            await start_job(db, job.id)

        logger.info(
            "cleanup_started",
            job_id=job.id,
            keys=len(validated),
            dry_run=dry_run,
            executed_by=executed_by,
        )

        try:
            report = await _execute_deletions(config, state, db, job, validated, dry_run)
        except Exception as e:
            state["last_error"] = str(e)
            await fail_job(db, job.id, f"{type(e).__name__}: {e}")
            raise

    state["total_cleanups"] += 1
    state["last_run_at"] = datetime.now(UTC)
    return report


async def run_audit_cycle(
    config: LifecycleConfig,
    state: LifecycleState,
    triggered_by: TriggerSource = TriggerSource.SCHEDULED,
    executed_by: str | None = "scheduler",
) -> CleanupReport:
    """
    Scan the configured prefixes and, with auto_delete on, delete the
    candidates, all under one audit job.
    """
    prefixes = validate_scan_prefixes(list(config.scan_prefixes), config.allowed_prefixes)
    dry_run = not config.auto_delete

    async with aiosqlite.connect(state["db_path"]) as db:
        async with state["cleanup_lock"]:
            if not dry_run:
                await _ensure_no_overlapping_cleanup(db, prefixes)
            job = await create_job(
                db,
                JobType.AUDIT,
                JobConfiguration(
                    dry_run=dry_run,
                    include_directories=prefixes,
                    exclude_patterns=list(config.exclude_patterns),
                    max_files_to_process=config.max_files_to_scan,
                    retention_days=config.retention_days,
                ),
                triggered_by,
                executed_by,
            )
            await start_job(db, job.id)

        progress = ScanResult()
        scanned = False
        try:
            result, _ = await _scan(
                config,
                state,
                db,
                job,
                prefixes,
                config.max_files_to_scan,
                config.retention_days,
                progress,
            )
            scanned = True
            keys = [c.key for c in result.candidates]

            if dry_run or not keys:
                finished = await complete_job(
                    db, job.id, _scan_metrics(result), JobStatus.COMPLETED
                )
                report = CleanupReport(
                    job_id=job.id,
                    job_type=JobType.AUDIT.value,
                    status=finished.status.value,
                    dry_run=dry_run,
                    files_scanned=result.metrics.files_scanned,
                    orphaned_files_found=result.metrics.orphaned_files_found,
                )
            else:
                report = await _execute_deletions(
                    config,
                    state,
                    db,
                    job,
                    keys,
                    dry_run=False,
                    files_scanned=result.metrics.files_scanned,
                    known_sizes={c.key: c.size for c in result.candidates},
                )
        except Exception as e:
            # Once deletions began the items carry their outcomes; keep them
            await _fail_scan(db, state, job, e, progress, items_recorded=scanned)
            raise

    state["total_scans"] += 1
    state["last_run_at"] = datetime.now(UTC)
    logger.info(
        "audit_cycle_completed",
        job_id=report.job_id,
        status=report.status,
        found=report.orphaned_files_found,
        deleted=report.deleted,
    )
    return report


async def cancel_cleanup_job(
    state: LifecycleState,
    job_id: str,
    cancelled_by: str | None = None,
) -> CleanupJob:
    """
    Mark a job cancelled. An in-flight delete batch still completes.

    Raises:
        JobNotFoundError: No such job
        JobStateError: The job already finished
    """
    async with aiosqlite.connect(state["db_path"]) as db:
        return await cancel_job(db, job_id, cancelled_by)


async def get_cleanup_job(state: LifecycleState, job_id: str) -> CleanupJob:
    async with aiosqlite.connect(state["db_path"]) as db:
        job = await get_job(db, job_id)
    if job is None:
        raise JobNotFoundError(f"Cleanup job {job_id} not found", details={"job_id": job_id})
    return job


async def list_cleanup_jobs(
    state: LifecycleState,
    limit: int = 50,
    offset: int = 0,
    status: JobStatus | None = None,
    job_type: JobType | None = None,
) -> List[CleanupJob]:
    async with aiosqlite.connect(state["db_path"]) as db:
        return await list_jobs(db, limit, offset, status, job_type)


async def get_metrics(state: LifecycleState) -> LifecycleMetrics:
    """Counters from this process plus persisted job and metadata stats."""
    async with aiosqlite.connect(state["db_path"]) as db:
        jobs = await get_job_stats(db)
        metadata = await get_metadata_stats(db)

    return LifecycleMetrics(
        total_scans=state["total_scans"],
        total_cleanups=state["total_cleanups"],
        total_deleted=state["total_deleted"],
        total_reclaimed_bytes=state["total_reclaimed"],
        last_run_at=state["last_run_at"],
        last_error=state["last_error"],
        jobs=jobs,
        metadata=metadata,
    )


async def shutdown_lifecycle_state(state: LifecycleState) -> None:
    """Stop the scheduler and drop cached key sets."""
    scheduler = state["scheduler"]
    if scheduler is not None and scheduler.running:
        scheduler.shutdown(wait=False)
        state["scheduler"] = None

    state["key_cache"].invalidate()
    logger.info("lifecycle_state_shutdown_complete")
