# SPDX-License-Identifier: LGPL-2.1-only
# Copyright (c) 2026 Akshat Kotpalliwar (alias IntegerAlex)

"""
Cleanup Executor - Deletes a validated key list in storage-sized batches.

Safety layers, in order:
1. Every key is validated before the first storage call
2. Dry-run makes zero delete calls
3. Keys still referenced by live records are skipped (reference guard)
4. Deletes go out in batches of at most 1000 keys; a batch that fails as a
   whole fails every key in it

Failed deletes are reported, never retried here.
"""

from dataclasses import dataclass, field
from datetime import datetime, timedelta, UTC
from typing import Awaitable, Callable, Dict, List, Sequence, Tuple

import aiosqlite
import structlog

from medialife.config import STORAGE_BATCH_LIMIT
from medialife.exceptions import ReconciliationRaceError
from medialife.metadata.store import (
    NON_TERMINAL_SUBMISSION_STATUSES,
    MediaObject,
    UploadStatus,
    find_media_objects_by_filename,
    get_submission_status,
)
from medialife.reconcile.paths import keys_for_media_object, validate_cleanup_keys
from medialife.storage import StorageAdapter

logger = structlog.get_logger()

ContinueCheck = Callable[[], Awaitable[bool]]


@dataclass
class CleanupResult:
    """Aggregated outcome of one delete_orphans() call."""

    deleted: int = 0
    failed: int = 0
    errors: List[str] = field(default_factory=list)
    deleted_keys: List[str] = field(default_factory=list)
    # key -> error message
    failures: Dict[str, str] = field(default_factory=dict)
    # Keys never sent because the run was cancelled
    skipped: List[str] = field(default_factory=list)
    dry_run: bool = False
    batches: int = 0


def _chunks(keys: List[str], size: int) -> List[List[str]]:
    return [keys[i : i + size] for i in range(0, len(keys), size)]


async def delete_orphans(
    storage: StorageAdapter,
    keys: Sequence[str],
    dry_run: bool = False,
    batch_size: int = STORAGE_BATCH_LIMIT,
    max_key_length: int = 1024,
    should_continue: ContinueCheck | None = None,
) -> CleanupResult:
    """
    Delete the given keys from storage.

    Args:
        storage: Storage adapter
        keys: Explicit key list (validated again here)
        dry_run: Report only, make no delete calls
        batch_size: Keys per DeleteObjects call (capped at 1000)
        max_key_length: Longest key accepted
        should_continue: Checked between batches; returning False stops the
            run and marks the remaining keys skipped

    Returns:
        CleanupResult with per-key outcomes

    Raises:
        ValidationError: Any key is unsafe; nothing has been deleted
    """
    validated = validate_cleanup_keys(keys, max_length=max_key_length)
    batch_size = max(1, min(batch_size, STORAGE_BATCH_LIMIT))

    if dry_run:
        logger.info("cleanup_dry_run", keys=len(validated))
        return CleanupResult(dry_run=True)

    result = CleanupResult()
    batches = _chunks(validated, batch_size)

    for number, batch in enumerate(batches, start=1):
        if number > 1 and should_continue is not None and not await should_continue():
            remaining = [key for later in batches[number - 1 :] for key in later]
            result.skipped.extend(remaining)
            logger.warning(
                "cleanup_stopped_between_batches",
                batch=number,
                skipped=len(remaining),
            )
            break

        result.batches += 1
        try:
            response = await storage.delete_objects(batch)
        except Exception as e:
            message = f"Batch delete failed: {e}"
            for key in batch:
                result.failures[key] = message
            result.failed += len(batch)
            result.errors.append(message)
            logger.error(
                "delete_batch_failed",
                batch=number,
                keys=len(batch),
                error=str(e),
            )
            continue

        batch_keys = set(batch)
        errored: Dict[str, str] = {}
        for failure in response.errors:
            if failure.key not in batch_keys:
                logger.warning(
                    "delete_error_outside_batch",
                    batch=number,
                    key=failure.key,
                    code=failure.code,
                )
                continue
            errored[failure.key] = f"{failure.code}: {failure.message}"
            result.errors.append(f"{failure.key}: {failure.code} - {failure.message}")

        reported = set(errored)
        for key in response.deleted:
            # An error for the same key wins over a success
            if key not in batch_keys or key in errored or key in reported:
                continue
            reported.add(key)
            result.deleted_keys.append(key)
        result.failures.update(errored)

        # The store answered but never mentioned these keys
        for key in batch:
            if key not in reported:
                result.failures[key] = "No result reported for key"
                result.errors.append(f"{key}: no result reported")

        result.deleted = len(result.deleted_keys)
        result.failed = len(result.failures)

        logger.info(
            "delete_batch_completed",
            batch=number,
            of=len(batches),
            deleted=len(response.deleted),
            errors=len(response.errors),
        )

    result.deleted = len(result.deleted_keys)
    result.failed = len(result.failures)
    logger.info(
        "cleanup_completed",
        deleted=result.deleted,
        failed=result.failed,
        skipped=len(result.skipped),
    )
    return result


async def find_records_for_key(db: aiosqlite.Connection, key: str) -> List[MediaObject]:
    """Every non-deleted record that maps onto this storage key, newest first."""
    filename = key.rsplit("/", 1)[-1]
    return [
        media
        for media in await find_media_objects_by_filename(db, filename)
        if key in keys_for_media_object(media)
    ]


async def protection_reason(
    db: aiosqlite.Connection,
    media: MediaObject,
    retention_days: int,
    now: datetime | None = None,
) -> str | None:
    """
    Why this record still holds its object, or None when it does not.

    Only the owning-submission relationship is inspected; other reference
    paths to the same object are not.
    """
    now = now or datetime.now(UTC)

    if media.upload_status == UploadStatus.CONFIRMED:
        if media.submission_id is None:
            return "record is confirmed"
        status = await get_submission_status(db, media.submission_id)
        if status is None or status in NON_TERMINAL_SUBMISSION_STATUSES:
            return f"owning submission is {status.value if status else 'missing'}"

    elif media.upload_status == UploadStatus.STAGING:
        if media.created_at > now - timedelta(days=retention_days):
            return "staging upload is inside the retention window"

    return None


async def check_reconciliation_race(
    db: aiosqlite.Connection,
    key: str,
    retention_days: int,
    now: datetime | None = None,
) -> None:
    """
    Raise if any record mapping onto a key picked for deletion still holds it.

    Raises:
        ReconciliationRaceError: The key must not be deleted
    """
    for media in await find_records_for_key(db, key):
        reason = await protection_reason(db, media, retention_days, now)
        if reason is not None:
            raise ReconciliationRaceError(
                key,
                reason,
                details={"media_id": media.id, "submission_id": media.submission_id},
            )


async def filter_referenced_keys(
    db: aiosqlite.Connection,
    keys: Sequence[str],
    retention_days: int,
    now: datetime | None = None,
) -> Tuple[List[str], Dict[str, str]]:
    """
    Split keys into those safe to delete and those still referenced.

    Returns:
        (safe_keys, {skipped_key: reason})
    """
    safe: List[str] = []
    skipped: Dict[str, str] = {}

    for key in keys:
        try:
            await check_reconciliation_race(db, key, retention_days, now)
        except ReconciliationRaceError as e:
            skipped[key] = e.reason
            logger.warning("cleanup_key_still_referenced", key=key, reason=e.reason)
            continue
        safe.append(key)

    return safe, skipped
