# SPDX-License-Identifier: LGPL-2.1-only
# Copyright (c) 2026 Akshat Kotpalliwar (alias IntegerAlex)

"""
Cleanup Job Tests.

These tests verify the audit trail:
- State machine transitions and terminal states
- Metrics invariants
- Partial runs, failures and cancellations are fully persisted
- Only one destructive job per prefix at a time
"""

from pathlib import Path
from unittest.mock import AsyncMock

import aiosqlite
import pytest

from medialife.core import (
    cancel_cleanup_job,
    get_cleanup_job,
    get_metrics,
    list_cleanup_jobs,
    run_audit_cycle,
    run_cleanup,
    run_scan,
)
from medialife.exceptions import (
    CleanupInProgressError,
    JobNotFoundError,
    JobStateError,
)
from medialife.jobs.state import (
    JobConfiguration,
    JobMetrics,
    JobStatus,
    JobType,
    OrphanItemStatus,
    TriggerSource,
    can_transition,
    ensure_transition,
    is_terminal,
    resolve_final_status,
)


# ============================================================================
# State machine
# ============================================================================

def test_allowed_transitions():
    assert can_transition(JobStatus.PENDING, JobStatus.RUNNING)
    assert can_transition(JobStatus.PENDING, JobStatus.CANCELLED)
    assert can_transition(JobStatus.RUNNING, JobStatus.PARTIAL)
    assert can_transition(JobStatus.RUNNING, JobStatus.CANCELLED)
    assert not can_transition(JobStatus.PENDING, JobStatus.COMPLETED)
    assert not can_transition(JobStatus.COMPLETED, JobStatus.RUNNING)
    assert not can_transition(JobStatus.CANCELLED, JobStatus.RUNNING)


def test_terminal_states_have_no_exits():
    for status in JobStatus:
        if is_terminal(status):
            for target in JobStatus:
                assert not can_transition(status, target)


def test_ensure_transition_raises():
    with pytest.raises(JobStateError) as exc_info:
        ensure_transition(JobStatus.FAILED, JobStatus.RUNNING)

    assert exc_info.value.details == {"from": "failed", "to": "running"}


def test_resolve_final_status():
    assert resolve_final_status(0) == JobStatus.COMPLETED
    assert resolve_final_status(2) == JobStatus.PARTIAL
    assert resolve_final_status(0, cancelled=True) == JobStatus.CANCELLED


def test_metrics_invariant_enforced():
    JobMetrics(orphaned_files_found=12, files_deleted=10, deletion_errors=2)

    with pytest.raises(JobStateError):
        JobMetrics(orphaned_files_found=2, files_deleted=2, deletion_errors=1)


def test_job_configuration_from_dict_defaults():
    config = JobConfiguration.from_dict({"include_directories": ["forms/"]})

    assert config.dry_run is True
    assert config.include_directories == ["forms/"]
    assert config.max_files_to_process == 1000


# ============================================================================
# Persistence
# ============================================================================

@pytest.mark.asyncio
async def test_job_round_trip(metadata_db: Path):
    from medialife.jobs.sqlite_jobs import (
        complete_job,
        create_job,
        get_job,
        start_job,
        upsert_job_items,
    )
    from medialife.jobs.state import OrphanedFileEntry

    async with aiosqlite.connect(metadata_db) as db:
        job = await create_job(
            db,
            JobType.CLEANUP,
            JobConfiguration(dry_run=False, include_directories=["forms/"]),
            TriggerSource.MANUAL,
            executed_by="ops@example.gov",
        )
        assert job.status == JobStatus.PENDING

        await start_job(db, job.id)
        await upsert_job_items(db, job.id, [OrphanedFileEntry(key="forms/a.jpg", size=10)])
        # A later update without a size keeps the recorded one
        await upsert_job_items(
            db,
            job.id,
            [OrphanedFileEntry(key="forms/a.jpg", status=OrphanItemStatus.DELETED)],
        )
        await complete_job(
            db,
            job.id,
            JobMetrics(orphaned_files_found=1, files_processed=1, files_deleted=1, storage_reclaimed=10),
            JobStatus.COMPLETED,
        )

        stored = await get_job(db, job.id)

    assert stored.status == JobStatus.COMPLETED
    assert stored.triggered_by == TriggerSource.MANUAL
    assert stored.executed_by == "ops@example.gov"
    assert stored.configuration.include_directories == ["forms/"]
    assert stored.metrics.files_deleted == 1
    assert stored.started_at is not None and stored.completed_at is not None
    assert [(i.key, i.size, i.status) for i in stored.orphaned_files] == [
        ("forms/a.jpg", 10, OrphanItemStatus.DELETED)
    ]
    assert any("job started" in line for line in stored.execution_log)

    data = stored.to_dict()
    assert data["status"] == "completed"
    assert data["orphaned_files"][0]["status"] == "deleted"


@pytest.mark.asyncio
async def test_complete_rejects_invalid_transition(metadata_db: Path):
    from medialife.jobs.sqlite_jobs import complete_job, create_job

    async with aiosqlite.connect(metadata_db) as db:
        job = await create_job(db, JobType.VERIFICATION, JobConfiguration(), TriggerSource.API)

        with pytest.raises(JobStateError):
            await complete_job(db, job.id, JobMetrics(), JobStatus.COMPLETED)


# ============================================================================
# Runs recorded as jobs
# ============================================================================

@pytest.mark.asyncio
async def test_partial_run_is_recorded(test_config, test_state, fake_storage):
    """100 scanned, 12 found, 10 deleted, 2 failed -> partial, deletionErrors=2."""
    config = test_config.with_updates(auto_delete=True)

    for i in range(88):
        fake_storage.add_object(f"forms/images/fresh{i:03d}.jpg", size=50, age_days=1)
    for i in range(12):
        fake_storage.add_object(f"forms/misc/old{i:03d}.bin", size=100, age_days=90)
    fake_storage.failing_keys = {"forms/misc/old000.bin", "forms/misc/old001.bin"}

    report = await run_audit_cycle(config, test_state)

    assert report.status == "partial"
    assert report.files_scanned == 100
    assert report.orphaned_files_found == 12
    assert report.deleted == 10
    assert report.failed == 2
    assert report.storage_reclaimed == 1000

    job = await get_cleanup_job(test_state, report.job_id)
    assert job.job_type == JobType.AUDIT
    assert job.status == JobStatus.PARTIAL
    assert job.triggered_by == TriggerSource.SCHEDULED
    assert job.metrics.files_scanned == 100
    assert job.metrics.orphaned_files_found == 12
    assert job.metrics.files_deleted == 10
    assert job.metrics.deletion_errors == 2

    failed = [i for i in job.orphaned_files if i.status == OrphanItemStatus.FAILED]
    assert sorted(i.key for i in failed) == sorted(fake_storage.failing_keys)
    assert all("AccessDenied" in i.error for i in failed)
    assert sum(1 for i in job.orphaned_files if i.status == OrphanItemStatus.DELETED) == 10


@pytest.mark.asyncio
async def test_audit_without_auto_delete_only_reports(test_config, test_state, fake_storage):
    fake_storage.add_object("forms/misc/old.bin", age_days=90)

    report = await run_audit_cycle(test_config, test_state)

    assert report.dry_run is True
    assert report.status == "completed"
    assert report.orphaned_files_found == 1
    assert fake_storage.delete_calls == []


@pytest.mark.asyncio
async def test_cleanup_uses_sizes_from_earlier_scan(test_config, test_state, fake_storage):
    fake_storage.add_object("forms/misc/old.bin", size=4096, age_days=90)

    scan = await run_scan(test_config, test_state)
    report = await run_cleanup(test_config, test_state, [c.key for c in scan.candidates])

    assert report.deleted == 1
    assert report.storage_reclaimed == 4096

    metrics = await get_metrics(test_state)
    assert metrics.total_scans == 1
    assert metrics.total_cleanups == 1
    assert metrics.total_deleted == 1
    assert metrics.jobs["jobs_by_type"] == {"verification": 1, "cleanup": 1}


@pytest.mark.asyncio
async def test_batch_exception_fails_every_key_in_batch(test_config, test_state, fake_storage):
    fake_storage.add_object("forms/misc/a.bin", age_days=90)
    fake_storage.add_object("forms/misc/b.bin", age_days=90)
    fake_storage.delete_exception = ConnectionError("connection reset by peer")

    report = await run_cleanup(test_config, test_state, ["forms/misc/a.bin", "forms/misc/b.bin"])

    assert report.status == "partial"
    assert report.deleted == 0
    assert report.failed == 2
    # No automatic retry of failed deletes
    assert len(fake_storage.delete_calls) == 1


@pytest.mark.asyncio
async def test_scan_failure_is_persisted(test_config, test_state, fake_storage):
    fake_storage.list_objects = AsyncMock(side_effect=RuntimeError("listing exploded"))

    with pytest.raises(RuntimeError):
        await run_scan(test_config, test_state)

    (job,) = await list_cleanup_jobs(test_state)
    assert job.status == JobStatus.FAILED
    assert any("RuntimeError: listing exploded" in line for line in job.error_log)
    assert test_state["last_error"] == "listing exploded"


@pytest.mark.asyncio
async def test_missing_key_in_response_counts_as_failed(test_config, test_state, fake_storage):
    from medialife.storage import DeleteBatchResult

    fake_storage.delete_objects = AsyncMock(return_value=DeleteBatchResult(deleted=["forms/misc/a.bin"]))

    report = await run_cleanup(test_config, test_state, ["forms/misc/a.bin", "forms/misc/b.bin"])

    assert report.deleted == 1
    assert report.failed == 1
    assert report.status == "partial"


def _fail_after_first_page(fake_storage) -> None:
    original = fake_storage.list_objects

    async def flaky(prefix, continuation_token=None, max_keys=1000):
        if continuation_token is not None:
            raise ConnectionError("listing interrupted")
        return await original(prefix, continuation_token=continuation_token, max_keys=max_keys)

    fake_storage.list_objects = flaky


@pytest.mark.asyncio
async def test_failed_scan_keeps_progress(test_config, test_state, fake_storage):
    """A listing error midway keeps the pages already scanned on the job."""
    config = test_config.with_updates(list_page_size=2)
    for name in ("a", "b", "c", "d"):
        fake_storage.add_object(f"forms/misc/{name}.bin", size=10, age_days=90)
    _fail_after_first_page(fake_storage)

    with pytest.raises(ConnectionError):
        await run_scan(config, test_state)

    (listed,) = await list_cleanup_jobs(test_state)
    job = await get_cleanup_job(test_state, listed.id)
    assert job.status == JobStatus.FAILED
    assert job.metrics.files_scanned == 2
    assert job.metrics.orphaned_files_found == 2
    assert [i.key for i in job.orphaned_files] == ["forms/misc/a.bin", "forms/misc/b.bin"]
    assert all(i.status == OrphanItemStatus.FOUND for i in job.orphaned_files)
    assert any("ConnectionError" in line for line in job.error_log)


@pytest.mark.asyncio
async def test_failed_audit_keeps_progress(test_config, test_state, fake_storage):
    config = test_config.with_updates(list_page_size=2)
    for name in ("a", "b", "c"):
        fake_storage.add_object(f"forms/misc/{name}.bin", age_days=90)
    _fail_after_first_page(fake_storage)

    with pytest.raises(ConnectionError):
        await run_audit_cycle(config, test_state)

    (listed,) = await list_cleanup_jobs(test_state)
    job = await get_cleanup_job(test_state, listed.id)
    assert job.job_type == JobType.AUDIT
    assert job.status == JobStatus.FAILED
    assert job.metrics.files_scanned == 2
    assert len(job.orphaned_files) == 2


@pytest.mark.asyncio
async def test_fail_job_stores_metrics(metadata_db: Path):
    from medialife.jobs.sqlite_jobs import create_job, fail_job, get_job, start_job

    async with aiosqlite.connect(metadata_db) as db:
        job = await create_job(db, JobType.VERIFICATION, JobConfiguration(), TriggerSource.API)
        await start_job(db, job.id)
        await fail_job(
            db,
            job.id,
            "TimeoutError: storage timed out",
            metrics=JobMetrics(files_scanned=7, files_processed=7, orphaned_files_found=3),
        )
        stored = await get_job(db, job.id)

    assert stored.status == JobStatus.FAILED
    assert stored.metrics.files_scanned == 7
    assert stored.metrics.orphaned_files_found == 3
    assert stored.error_log[-1].endswith("TimeoutError: storage timed out")


@pytest.mark.asyncio
async def test_conflicting_delete_response_counts_key_as_failed(test_config, test_state, fake_storage):
    """An error for a key wins over a success for it; foreign keys are ignored."""
    from medialife.storage import DeleteBatchResult, DeleteFailure

    a, b = "forms/misc/a.bin", "forms/misc/b.bin"
    fake_storage.delete_objects = AsyncMock(
        return_value=DeleteBatchResult(
            deleted=[a, b],
            errors=[
                DeleteFailure(key=b, code="InternalError", message="We encountered an internal error"),
                DeleteFailure(key="forms/misc/other.bin", code="InternalError", message="Not ours"),
            ],
        )
    )

    report = await run_cleanup(test_config, test_state, [a, b])

    assert report.deleted == 1
    assert report.failed == 1
    assert report.status == "partial"
    assert report.deleted_keys == [a]

    job = await get_cleanup_job(test_state, report.job_id)
    statuses = {i.key: i.status for i in job.orphaned_files}
    assert statuses == {a: OrphanItemStatus.DELETED, b: OrphanItemStatus.FAILED}

# ============================================================================
# Cancellation
# ============================================================================

@pytest.mark.asyncio
async def test_cancel_job_and_terminal_errors(test_state):
    from medialife.jobs.sqlite_jobs import create_job

    async with aiosqlite.connect(test_state["db_path"]) as db:
        job = await create_job(db, JobType.CLEANUP, JobConfiguration(), TriggerSource.API)

    cancelled = await cancel_cleanup_job(test_state, job.id, cancelled_by="admin")
    assert cancelled.status == JobStatus.CANCELLED

    with pytest.raises(JobStateError):
        await cancel_cleanup_job(test_state, job.id)

    with pytest.raises(JobNotFoundError):
        await cancel_cleanup_job(test_state, "01NOSUCHJOB")

    with pytest.raises(JobNotFoundError):
        await get_cleanup_job(test_state, "01NOSUCHJOB")


@pytest.mark.asyncio
async def test_cancel_between_batches_skips_remaining_keys(test_config, test_state, fake_storage):
    """
    Cancelling a running cleanup lets the in-flight batch finish and marks
    every later key skipped.
    """
    config = test_config.with_updates(delete_batch_size=2)
    keys = [f"forms/misc/k{i}.bin" for i in range(5)]
    for key in keys:
        fake_storage.add_object(key, age_days=90)

    async def cancel_running_job(batch):
        if len(fake_storage.delete_calls) == 1:
            (running,) = await list_cleanup_jobs(test_state, status=JobStatus.RUNNING)
            await cancel_cleanup_job(test_state, running.id, cancelled_by="admin")

    fake_storage.on_delete = cancel_running_job

    report = await run_cleanup(config, test_state, keys)

    assert report.status == "cancelled"
    assert report.deleted == 2
    assert sorted(report.skipped) == keys[2:]
    assert len(fake_storage.delete_calls) == 1

    job = await get_cleanup_job(test_state, report.job_id)
    assert job.status == JobStatus.CANCELLED
    assert job.metrics.files_deleted == 2
    skipped = [i.key for i in job.orphaned_files if i.status == OrphanItemStatus.SKIPPED]
    assert sorted(skipped) == keys[2:]


# ============================================================================
# Single-flight guard
# ============================================================================

@pytest.mark.asyncio
async def test_overlapping_destructive_job_is_refused(test_config, test_state, fake_storage):
    from medialife.jobs.sqlite_jobs import create_job, start_job

    fake_storage.add_object("forms/misc/a.bin", age_days=90)

    async with aiosqlite.connect(test_state["db_path"]) as db:
        stuck = await create_job(
            db,
            JobType.CLEANUP,
            JobConfiguration(dry_run=False, include_directories=["forms/"]),
            TriggerSource.API,
        )
        await start_job(db, stuck.id)

    with pytest.raises(CleanupInProgressError) as exc_info:
        await run_cleanup(test_config, test_state, ["forms/misc/a.bin"])
    assert exc_info.value.details["running_job_id"] == stuck.id
    assert fake_storage.delete_calls == []

    # Dry runs never delete, so they are not blocked
    report = await run_cleanup(test_config, test_state, ["forms/misc/a.bin"], dry_run=True)
    assert report.dry_run is True

    # Once the stale job is cancelled the cleanup may proceed
    await cancel_cleanup_job(test_state, stuck.id)
    report = await run_cleanup(test_config, test_state, ["forms/misc/a.bin"])
    assert report.deleted == 1


@pytest.mark.asyncio
async def test_list_jobs_filters(test_config, test_state, fake_storage):
    fake_storage.add_object("forms/misc/a.bin", age_days=90)

    await run_scan(test_config, test_state)
    await run_cleanup(test_config, test_state, ["forms/misc/a.bin"], dry_run=True)

    all_jobs = await list_cleanup_jobs(test_state)
    scans = await list_cleanup_jobs(test_state, job_type=JobType.VERIFICATION)
    completed = await list_cleanup_jobs(test_state, status=JobStatus.COMPLETED)

    assert len(all_jobs) == 2
    assert [j.job_type for j in scans] == [JobType.VERIFICATION]
    assert len(completed) == 2
