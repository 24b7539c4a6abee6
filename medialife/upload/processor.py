# SPDX-License-Identifier: LGPL-2.1-only
# Copyright (c) 2026 Akshat Kotpalliwar (alias IntegerAlex)

"""
Batch Upload Processor - Drives a file set into object storage.

Files are split into fixed-size batches. Batches always run one after
another; the files inside one batch run sequentially or in parallel
depending on configuration. Each file owns its own retry loop:

1. Attempt the injected upload function under a per-file timeout
2. On failure, classify the error
3. Retry retryable categories with bounded exponential backoff
4. Give up after max_retries + 1 attempts or on a non-retryable failure

Programming errors raised by the upload function are not classified and
propagate out of the run.
"""

import asyncio
import inspect
import random
import time
from dataclasses import dataclass, field
from datetime import datetime, UTC
from enum import Enum
from os import PathLike
from pathlib import Path
from typing import Any, Awaitable, Callable, List, Mapping, Sequence

import structlog
from ulid import ULID

from medialife.config import BatchUploadConfig
from medialife.exceptions import UploadTimeoutError
from medialife.upload.classifier import (
    ErrorCategory,
    classify_error,
    is_programming_error,
    is_retryable,
)
from medialife.upload.metrics import MetricsCollector, UploadMetricsCollector

logger = structlog.get_logger()

UploadFunction = Callable[[Any, int], Awaitable[Any]]
ProgressCallback = Callable[["BatchUploadProgress"], Any]
SleepFunction = Callable[[float], Awaitable[Any]]


class TaskStatus(str, Enum):
    PENDING = "pending"
    UPLOADING = "uploading"
    RETRYING = "retrying"
    SUCCEEDED = "succeeded"
    FAILED = "failed"


@dataclass
class UploadTask:
    """Per-file record, owned by exactly one file's retry loop."""

    file: Any
    index: int
    name: str
    size: int
    status: TaskStatus = TaskStatus.PENDING
    attempts: int = 0
    started_at: datetime | None = None
    finished_at: datetime | None = None
    last_error: str | None = None


@dataclass(frozen=True)
class BatchUploadError:
    """A file that failed permanently within one run."""

    file_index: int
    file_name: str
    error: str
    retryable: bool
    attempts: int
    category: ErrorCategory
    timestamp: datetime


@dataclass(frozen=True)
class UploadResult:
    """A file that landed in storage."""

    file_index: int
    file_name: str
    file_id: str
    url: str
    file_size: int
    duration_seconds: float
    attempts: int


@dataclass(frozen=True)
class BatchUploadProgress:
    """Snapshot emitted after every file transition and batch boundary."""

    total_files: int
    processed_files: int
    successful_files: int
    failed_files: int
    current_batch: int
    total_batches: int
    current_file: str | None
    percentage: float
    estimated_time_remaining: float | None


@dataclass
class BatchUploadResult:
    """Outcome of one upload_files() run."""

    success: bool
    total_files: int
    successful_files: int
    failed_files: int
    total_batches: int
    successful_uploads: List[UploadResult] = field(default_factory=list)
    failed_uploads: List[BatchUploadError] = field(default_factory=list)
    batch_sizes: List[int] = field(default_factory=list)
    total_time: float = 0.0
    average_time_per_file: float = 0.0
    session_id: str = ""


@dataclass
class _Run:
    total_files: int
    total_batches: int
    started: float
    current_batch: int = 0
    successful: List[UploadResult] = field(default_factory=list)
    failed: List[BatchUploadError] = field(default_factory=list)

    @property
    def processed(self) -> int:
        return len(self.successful) + len(self.failed)


def _file_name(file: Any, index: int) -> str:
    if isinstance(file, (str, PathLike)):
        return Path(file).name
    for attr in ("filename", "name"):
        value = getattr(file, attr, None)
        if isinstance(value, str) and value:
            return value
    return f"file_{index}"


def _file_size(file: Any) -> int:
    size = getattr(file, "size", None)
    if isinstance(size, int):
        return size
    if isinstance(file, (bytes, bytearray)):
        return len(file)
    return 0


def _extract_identity(response: Any, index: int) -> tuple[str, str]:
    """Pull (file_id, url) out of whatever the upload function returned."""
    if isinstance(response, Mapping):
        file_id = response.get("id") or response.get("file_id")
        url = response.get("url")
    else:
        file_id = getattr(response, "id", None) or getattr(response, "file_id", None)
        url = getattr(response, "url", None)

    return (
        str(file_id) if file_id is not None else f"file_{index}",
        str(url) if url else "success",
    )


def split_into_batches(items: Sequence[Any], batch_size: int) -> List[List[Any]]:
    """Split items into ceil(len / batch_size) consecutive batches."""
    if batch_size < 1:
        raise ValueError(f"batch_size must be >= 1, got {batch_size}")
    return [list(items[i : i + batch_size]) for i in range(0, len(items), batch_size)]


class BatchUploadProcessor:
    """
    Upload a file set in bounded batches with retry and progress reporting.

    Args:
        upload_function: ``async (file, index) -> response``; the response
            may carry ``id``/``url`` either as mapping keys or attributes
        config: Batch settings (defaults to BatchUploadConfig())
        progress_callback: Called with a BatchUploadProgress snapshot; may
            be a plain function or a coroutine function
        metrics: Sink for start/success/error events
        sleep: Awaitable sleep, replaced in tests
        rng: Random source for retry jitter
    """

    def __init__(
        self,
        upload_function: UploadFunction,
        config: BatchUploadConfig | None = None,
        progress_callback: ProgressCallback | None = None,
        metrics: MetricsCollector | None = None,
        sleep: SleepFunction = asyncio.sleep,
        rng: random.Random | None = None,
        clock: Callable[[], float] = time.monotonic,
    ):
        self.upload_function = upload_function
        self.config = config or BatchUploadConfig()
        self.progress_callback = progress_callback
        self.metrics = metrics if metrics is not None else UploadMetricsCollector()
        self.policy = self.config.retry_policy()
        self._sleep = sleep
        self._rng = rng
        self._clock = clock

    async def upload_files(self, files: Sequence[Any]) -> BatchUploadResult:
        """
        Upload every file, returning structured per-file outcomes.

        A file that exhausts its retries is failed for this run only; the
        caller resubmits the failed subset if it wants another try.
        """
        files = list(files)
        batches = split_into_batches(files, self.config.batch_size)
        run = _Run(
            total_files=len(files),
            total_batches=len(batches),
            started=self._clock(),
        )
        session_id = str(ULID())

        logger.info(
            "batch_upload_started",
            session_id=session_id,
            total_files=len(files),
            total_batches=len(batches),
            batch_size=self.config.batch_size,
            concurrent=self.config.concurrent,
        )

        index = 0
        for batch_number, batch in enumerate(batches, start=1):
            run.current_batch = batch_number
            tasks = []
            for file in batch:
                tasks.append(
                    UploadTask(
                        file=file,
                        index=index,
                        name=_file_name(file, index),
                        size=_file_size(file),
                    )
                )
                index += 1

            logger.info(
                "upload_batch_started",
                session_id=session_id,
                batch=batch_number,
                files=len(tasks),
            )
            await self._emit_progress(run, current_file=None)

            if self.config.concurrent:
                await self._run_parallel(run, tasks)
            else:
                for task in tasks:
                    await self._upload_one(run, task)

            logger.info(
                "upload_batch_completed",
                session_id=session_id,
                batch=batch_number,
                processed=run.processed,
                failed=len(run.failed),
            )
            await self._emit_progress(run, current_file=None)

            if batch_number < len(batches) and self.config.delay_between_batches > 0:
                await self._sleep(self.config.delay_between_batches)

        total_time = self._clock() - run.started
        result = BatchUploadResult(
            success=not run.failed,
            total_files=len(files),
            successful_files=len(run.successful),
            failed_files=len(run.failed),
            total_batches=len(batches),
            successful_uploads=sorted(run.successful, key=lambda r: r.file_index),
            failed_uploads=sorted(run.failed, key=lambda e: e.file_index),
            batch_sizes=[len(b) for b in batches],
            total_time=total_time,
            average_time_per_file=total_time / len(files) if files else 0.0,
            session_id=session_id,
        )

        self.metrics.record_batch_upload(
            total=result.total_files,
            successful=result.successful_files,
            failed=result.failed_files,
            total_time=total_time,
            errors=[e.error for e in result.failed_uploads],
        )
        logger.info(
            "batch_upload_completed",
            session_id=session_id,
            successful=result.successful_files,
            failed=result.failed_files,
            duration=round(total_time, 3),
        )
        return result

    async def _run_parallel(self, run: _Run, tasks: List[UploadTask]) -> None:
        pending = [asyncio.create_task(self._upload_one(run, task)) for task in tasks]
        try:
            await asyncio.gather(*pending)
        except BaseException:
            # A sibling raised a programming error (or we were cancelled)
            for p in pending:
                p.cancel()
            await asyncio.gather(*pending, return_exceptions=True)
            raise

    async def _upload_one(self, run: _Run, task: UploadTask) -> None:
        """Retry loop for one file; only this coroutine touches ``task``."""
        task.started_at = datetime.now(UTC)

        while True:
            task.attempts += 1
            task.status = TaskStatus.UPLOADING if task.attempts == 1 else TaskStatus.RETRYING
            self.metrics.record_upload_start(task.name, task.size)
            attempt_started = self._clock()

            try:
                response = await asyncio.wait_for(
                    self.upload_function(task.file, task.index),
                    timeout=self.config.timeout_seconds,
                )
            except Exception as exc:
                duration = self._clock() - attempt_started
                error: Exception = exc
                if isinstance(exc, asyncio.TimeoutError):
                    error = UploadTimeoutError(
                        f"Upload timed out after {self.config.timeout_seconds}s",
                        details={"file": task.name},
                    )

                if is_programming_error(error):
                    task.status = TaskStatus.FAILED
                    task.finished_at = datetime.now(UTC)
                    logger.error(
                        "upload_function_bug",
                        file=task.name,
                        index=task.index,
                        error=repr(error),
                    )
                    raise

                category = classify_error(error)
                task.last_error = str(error)
                self.metrics.record_upload_error(
                    task.name, task.size, duration, str(error), category.value
                )

                if self.policy.should_retry(task.attempts, category):
                    delay = self.policy.compute_delay(task.attempts, self._rng)
                    task.status = TaskStatus.RETRYING
                    logger.info(
                        "upload_retry_scheduled",
                        file=task.name,
                        attempt=task.attempts,
                        category=category.value,
                        delay=round(delay, 3),
                    )
                    await self._emit_progress(run, current_file=task.name)
                    await self._sleep(delay)
                    continue

                task.status = TaskStatus.FAILED
                task.finished_at = datetime.now(UTC)
                run.failed.append(
                    BatchUploadError(
                        file_index=task.index,
                        file_name=task.name,
                        error=str(error),
                        retryable=is_retryable(category),
                        attempts=task.attempts,
                        category=category,
                        timestamp=task.finished_at,
                    )
                )
                logger.warning(
                    "upload_failed_permanently",
                    file=task.name,
                    attempts=task.attempts,
                    category=category.value,
                )
                await self._emit_progress(run, current_file=task.name)
                return

            duration = self._clock() - attempt_started
            file_id, url = _extract_identity(response, task.index)
            task.status = TaskStatus.SUCCEEDED
            task.finished_at = datetime.now(UTC)
            self.metrics.record_upload_success(task.name, task.size, duration)
            run.successful.append(
                UploadResult(
                    file_index=task.index,
                    file_name=task.name,
                    file_id=file_id,
                    url=url,
                    file_size=task.size,
                    duration_seconds=duration,
                    attempts=task.attempts,
                )
            )
            await self._emit_progress(run, current_file=task.name)
            return

    def _snapshot(self, run: _Run, current_file: str | None) -> BatchUploadProgress:
        processed = run.processed
        remaining = run.total_files - processed
        eta = None
        if processed:
            elapsed = self._clock() - run.started
            eta = elapsed / processed * remaining

        return BatchUploadProgress(
            total_files=run.total_files,
            processed_files=processed,
            successful_files=len(run.successful),
            failed_files=len(run.failed),
            current_batch=run.current_batch,
            total_batches=run.total_batches,
            current_file=current_file,
            percentage=(processed / run.total_files * 100) if run.total_files else 100.0,
            estimated_time_remaining=eta,
        )

    async def _emit_progress(self, run: _Run, current_file: str | None) -> None:
        if self.progress_callback is None:
            return
        outcome = self.progress_callback(self._snapshot(run, current_file))
        if inspect.isawaitable(outcome):
            await outcome
