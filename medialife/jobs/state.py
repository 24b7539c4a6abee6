# SPDX-License-Identifier: LGPL-2.1-only
# Copyright (c) 2026 Akshat Kotpalliwar (alias IntegerAlex)

"""
Cleanup Job - Audit entity and state machine for scan/cleanup runs.

    pending -> running | cancelled | failed
    running -> completed | partial | failed | cancelled

completed, partial, failed and cancelled are terminal. Cancelling a
running job only changes bookkeeping; an in-flight storage call finishes.
"""

from dataclasses import asdict, dataclass, field
from datetime import datetime
from enum import Enum
from typing import Any, Dict, List

from medialife.exceptions import JobStateError


class JobType(str, Enum):
    VERIFICATION = "verification"
    CLEANUP = "cleanup"
    AUDIT = "audit"


class JobStatus(str, Enum):
    PENDING = "pending"
    RUNNING = "running"
    COMPLETED = "completed"
    FAILED = "failed"
    PARTIAL = "partial"
    CANCELLED = "cancelled"


class TriggerSource(str, Enum):
    MANUAL = "manual"
    SCHEDULED = "scheduled"
    API = "api"


class OrphanItemStatus(str, Enum):
    FOUND = "found"
    DELETED = "deleted"
    FAILED = "failed"
    SKIPPED = "skipped"


ALLOWED_JOB_TRANSITIONS: Dict[JobStatus, frozenset] = {
    JobStatus.PENDING: frozenset({JobStatus.RUNNING, JobStatus.CANCELLED, JobStatus.FAILED}),
    JobStatus.RUNNING: frozenset(
        {JobStatus.COMPLETED, JobStatus.PARTIAL, JobStatus.FAILED, JobStatus.CANCELLED}
    ),
    JobStatus.COMPLETED: frozenset(),
    JobStatus.FAILED: frozenset(),
    JobStatus.PARTIAL: frozenset(),
    JobStatus.CANCELLED: frozenset(),
}

TERMINAL_STATUSES = frozenset(
    {JobStatus.COMPLETED, JobStatus.FAILED, JobStatus.PARTIAL, JobStatus.CANCELLED}
)


def is_terminal(status: JobStatus) -> bool:
    return status in TERMINAL_STATUSES


def can_transition(current: JobStatus, target: JobStatus) -> bool:
    return target in ALLOWED_JOB_TRANSITIONS[current]


def ensure_transition(current: JobStatus, target: JobStatus) -> None:
    """
    Raises:
        JobStateError: target is not reachable from current
    """
    if not can_transition(current, target):
        raise JobStateError(
            f"Invalid job transition: {current.value} -> {target.value}",
            details={"from": current.value, "to": target.value},
        )


def resolve_final_status(failed: int, cancelled: bool = False) -> JobStatus:
    """Terminal status of a run that got through its work without crashing."""
    if cancelled:
        return JobStatus.CANCELLED
    if failed > 0:
        return JobStatus.PARTIAL
    return JobStatus.COMPLETED


@dataclass
class JobConfiguration:
    dry_run: bool = True
    include_directories: List[str] = field(default_factory=list)
    exclude_patterns: List[str] = field(default_factory=list)
    max_files_to_process: int = 1000
    retention_days: int = 30

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "JobConfiguration":
        return cls(
            dry_run=bool(data.get("dry_run", True)),
            include_directories=list(data.get("include_directories", [])),
            exclude_patterns=list(data.get("exclude_patterns", [])),
            max_files_to_process=int(data.get("max_files_to_process", 1000)),
            retention_days=int(data.get("retention_days", 30)),
        )


@dataclass
class JobMetrics:
    """Aggregate counters; deleted + errors never exceeds found."""

    files_scanned: int = 0
    files_processed: int = 0
    orphaned_files_found: int = 0
    files_deleted: int = 0
    deletion_errors: int = 0
    storage_reclaimed: int = 0

    def __post_init__(self) -> None:
        if self.files_deleted + self.deletion_errors > self.orphaned_files_found:
            raise JobStateError(
                "files_deleted + deletion_errors exceeds orphaned_files_found",
                details=asdict(self),
            )

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "JobMetrics":
        return cls(**{k: int(data.get(k, 0)) for k in cls.__dataclass_fields__})


@dataclass
class OrphanedFileEntry:
    key: str
    size: int = 0
    last_modified: datetime | None = None
    status: OrphanItemStatus = OrphanItemStatus.FOUND
    error: str | None = None

    def to_dict(self) -> dict:
        return {
            "key": self.key,
            "size": self.size,
            "last_modified": self.last_modified.isoformat() if self.last_modified else None,
            "status": self.status.value,
            "error": self.error,
        }


@dataclass
class CleanupJob:
    """Persisted record of one scan, cleanup or audit run."""

    id: str
    job_type: JobType
    status: JobStatus
    configuration: JobConfiguration
    metrics: JobMetrics
    triggered_by: TriggerSource
    executed_by: str | None
    created_at: datetime
    started_at: datetime | None = None
    completed_at: datetime | None = None
    orphaned_files: List[OrphanedFileEntry] = field(default_factory=list)
    execution_log: List[str] = field(default_factory=list)
    error_log: List[str] = field(default_factory=list)

    @property
    def finished(self) -> bool:
        return self.status in TERMINAL_STATUSES

    def to_dict(self, include_items: bool = True) -> dict:
        data = {
            "id": self.id,
            "job_type": self.job_type.value,
            "status": self.status.value,
            "configuration": asdict(self.configuration),
            "metrics": asdict(self.metrics),
            "triggered_by": self.triggered_by.value,
            "executed_by": self.executed_by,
            "created_at": self.created_at.isoformat(),
            "started_at": self.started_at.isoformat() if self.started_at else None,
            "completed_at": self.completed_at.isoformat() if self.completed_at else None,
            "execution_log": list(self.execution_log),
            "error_log": list(self.error_log),
        }
        if include_items:
            data["orphaned_files"] = [item.to_dict() for item in self.orphaned_files]
        return data
