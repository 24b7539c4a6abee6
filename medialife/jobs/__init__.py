# SPDX-License-Identifier: LGPL-2.1-only
# Copyright (c) 2026 Akshat Kotpalliwar (alias IntegerAlex)

"""
Cleanup Jobs - Job state machine and the persisted audit trail.
"""

from medialife.jobs.state import (
    CleanupJob,
    JobConfiguration,
    JobMetrics,
    JobStatus,
    JobType,
    OrphanItemStatus,
    TriggerSource,
)

from medialife.jobs.sqlite_jobs import (
    init_jobs_db,
    create_job,
    get_job,
    list_jobs,
    cancel_job,
    get_job_stats,
)

__all__ = [
    # Types
    "CleanupJob",
    "JobConfiguration",
    "JobMetrics",
    "JobStatus",
    "JobType",
    "OrphanItemStatus",
    "TriggerSource",
    # Persistence
    "init_jobs_db",
    "create_job",
    "get_job",
    "list_jobs",
    "cancel_job",
    "get_job_stats",
]
