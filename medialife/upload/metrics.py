# SPDX-License-Identifier: LGPL-2.1-only
# Copyright (c) 2026 Akshat Kotpalliwar (alias IntegerAlex)

"""
Upload Metrics - In-memory collector for upload start/success/error events.

The batch upload processor receives a collector by injection; the default
one keeps the most recent events in a bounded ring and can summarize them
for the admin API.
"""

from collections import deque
from dataclasses import asdict, dataclass, field
from datetime import datetime, UTC
from enum import Enum
from typing import Dict, List, Protocol

import structlog
from ulid import ULID

logger = structlog.get_logger()

# Batch success rate below which a warning is logged
LOW_SUCCESS_RATE_THRESHOLD = 90.0


class UploadEventType(str, Enum):
    START = "start"
    SUCCESS = "success"
    ERROR = "error"


@dataclass(frozen=True)
class UploadEvent:
    """A single upload lifecycle event."""

    timestamp: datetime
    type: UploadEventType
    filename: str
    file_size: int
    session_id: str
    duration: float | None = None
    error: str | None = None
    error_type: str | None = None


@dataclass
class UploadMetricsSummary:
    """Aggregate view over the collected events."""

    total_attempts: int
    successful_uploads: int
    failed_uploads: int
    average_upload_time: float
    error_breakdown: Dict[str, int] = field(default_factory=dict)
    min_time: float = 0.0
    max_time: float = 0.0
    p95_time: float = 0.0


class MetricsCollector(Protocol):
    """What the batch upload processor needs from a metrics sink."""

    def record_upload_start(self, filename: str, file_size: int) -> None: ...

    def record_upload_success(self, filename: str, file_size: int, duration: float) -> None: ...

    def record_upload_error(
        self,
        filename: str,
        file_size: int,
        duration: float,
        error: str,
        error_type: str,
    ) -> None: ...

    def record_batch_upload(
        self,
        total: int,
        successful: int,
        failed: int,
        total_time: float,
        errors: List[str],
    ) -> None: ...


class UploadMetricsCollector:
    """Default MetricsCollector keeping the last ``max_events`` events."""

    def __init__(self, max_events: int = 1000):
        self.max_events = max_events
        self.session_id = str(ULID())
        self._events: deque[UploadEvent] = deque(maxlen=max_events)

    def _add(self, event: UploadEvent) -> None:
        self._events.append(event)

    def record_upload_start(self, filename: str, file_size: int) -> None:
        self._add(
            UploadEvent(
                timestamp=datetime.now(UTC),
                type=UploadEventType.START,
                filename=filename,
                file_size=file_size,
                session_id=self.session_id,
            )
        )
        logger.debug("upload_started", filename=filename, file_size=file_size)

    def record_upload_success(self, filename: str, file_size: int, duration: float) -> None:
        self._add(
            UploadEvent(
                timestamp=datetime.now(UTC),
                type=UploadEventType.SUCCESS,
                filename=filename,
                file_size=file_size,
                session_id=self.session_id,
                duration=duration,
            )
        )
        throughput = (file_size / duration / 1024) if duration > 0 else None
        logger.info(
            "upload_succeeded",
            filename=filename,
            file_size=file_size,
            duration=round(duration, 3),
            kb_per_second=round(throughput, 2) if throughput is not None else None,
        )

    def record_upload_error(
        self,
        filename: str,
        file_size: int,
        duration: float,
        error: str,
        error_type: str,
    ) -> None:
        self._add(
            UploadEvent(
                timestamp=datetime.now(UTC),
                type=UploadEventType.ERROR,
                filename=filename,
                file_size=file_size,
                session_id=self.session_id,
                duration=duration,
                error=error,
                error_type=error_type,
            )
        )
        logger.warning(
            "upload_failed",
            filename=filename,
            file_size=file_size,
            duration=round(duration, 3),
            error=error,
            error_type=error_type,
        )

    def record_batch_upload(
        self,
        total: int,
        successful: int,
        failed: int,
        total_time: float,
        errors: List[str],
    ) -> None:
        if total == 0:
            return

        success_rate = successful / total * 100
        logger.info(
            "batch_upload_metrics",
            total=total,
            successful=successful,
            failed=failed,
            success_rate=round(success_rate, 1),
            avg_time_per_file=round(total_time / total, 3),
            session_id=self.session_id,
        )

        if success_rate < LOW_SUCCESS_RATE_THRESHOLD:
            logger.error(
                "low_upload_success_rate",
                success_rate=round(success_rate, 1),
                threshold=LOW_SUCCESS_RATE_THRESHOLD,
                errors=errors,
            )

    @property
    def events(self) -> List[UploadEvent]:
        return list(self._events)

    def get_metrics(self) -> UploadMetricsSummary:
        """Summarize success/error events currently held."""
        successes = [e for e in self._events if e.type == UploadEventType.SUCCESS]
        failures = [e for e in self._events if e.type == UploadEventType.ERROR]
        total = len(successes) + len(failures)

        if total == 0:
            return UploadMetricsSummary(
                total_attempts=0,
                successful_uploads=0,
                failed_uploads=0,
                average_upload_time=0.0,
            )

        durations = sorted(
            e.duration for e in successes + failures if e.duration is not None
        )

        breakdown: Dict[str, int] = {}
        for event in failures:
            key = event.error_type or "unknown"
            breakdown[key] = breakdown.get(key, 0) + 1

        return UploadMetricsSummary(
            total_attempts=total,
            successful_uploads=len(successes),
            failed_uploads=len(failures),
            average_upload_time=sum(durations) / len(durations) if durations else 0.0,
            error_breakdown=breakdown,
            min_time=durations[0] if durations else 0.0,
            max_time=durations[-1] if durations else 0.0,
            p95_time=durations[int(len(durations) * 0.95)] if durations else 0.0,
        )

    def export_metrics(self) -> dict:
        """Summary plus raw events, JSON-friendly."""
        return {
            "summary": asdict(self.get_metrics()),
            "events": [
                {**asdict(e), "timestamp": e.timestamp.isoformat(), "type": e.type.value}
                for e in self._events
            ],
            "session_id": self.session_id,
        }

    def reset(self) -> None:
        self._events.clear()
        self.session_id = str(ULID())
        logger.info("upload_metrics_reset", session_id=self.session_id)
