# SPDX-License-Identifier: LGPL-2.1-only
# Copyright (c) 2026 Akshat Kotpalliwar (alias IntegerAlex)

"""
Orphan Scanner - Finds storage objects the metadata store no longer tracks.

The scan works in two steps:
1. Materialize every valid key from the metadata store into a set
2. Page through storage under the allow-listed prefixes and report each
   object that is absent from the set and older than the retention window

Objects younger than the retention window are never reported, whatever the
metadata says; they may be uploads that have not been reconciled yet.
"""

from dataclasses import dataclass, field
from datetime import datetime, timedelta, UTC
from fnmatch import fnmatchcase
from typing import FrozenSet, List, Sequence, Set
from urllib.parse import unquote

import aiosqlite
import structlog

from medialife.metadata.store import UploadStatus, iter_media_objects
from medialife.reconcile.paths import keys_for_media_object, validate_scan_prefixes
from medialife.storage import StorageAdapter

logger = structlog.get_logger()

# Records in these states keep their objects alive
PROTECTED_STATUSES = frozenset({UploadStatus.STAGING, UploadStatus.CONFIRMED})


@dataclass(frozen=True)
class OrphanCandidate:
    key: str
    size: int
    last_modified: datetime


@dataclass
class ScanMetrics:
    files_scanned: int = 0
    orphaned_files_found: int = 0
    reclaimable_bytes: int = 0


@dataclass
class ScanResult:
    candidates: List[OrphanCandidate] = field(default_factory=list)
    metrics: ScanMetrics = field(default_factory=ScanMetrics)
    # True when the ceiling stopped the scan before storage ran out
    truncated: bool = False


@dataclass(frozen=True)
class ValidKeySet:
    """Keys referenced by live metadata records."""

    keys: FrozenSet[str]
    built_at: datetime
    record_count: int

    def contains(self, key: str) -> bool:
        """Membership check against the literal and URL-decoded key."""
        return key in self.keys or unquote(key) in self.keys

    def __len__(self) -> int:
        return len(self.keys)


async def build_valid_key_set(db: aiosqlite.Connection) -> ValidKeySet:
    """
    Read every MediaObject and collect the keys that must not be reclaimed.

    Only ``staging`` and ``confirmed`` records protect their objects;
    ``orphaned`` and ``deleted`` records do not.
    """
    keys: Set[str] = set()
    record_count = 0

    async for media in iter_media_objects(db):
        record_count += 1
        if media.upload_status not in PROTECTED_STATUSES:
            continue
        for key in keys_for_media_object(media):
            keys.add(key)
            keys.add(unquote(key))

    logger.info("valid_key_set_built", records=record_count, keys=len(keys))
    return ValidKeySet(
        keys=frozenset(keys),
        built_at=datetime.now(UTC),
        record_count=record_count,
    )


def is_directory_marker(key: str) -> bool:
    return key.endswith("/")


def is_excluded(key: str, exclude_patterns: Sequence[str]) -> bool:
    return any(fnmatchcase(key, pattern) for pattern in exclude_patterns)


async def scan_for_orphans(
    storage: StorageAdapter,
    valid_keys: ValidKeySet,
    prefixes: Sequence[str],
    allowed_prefixes: Sequence[str],
    max_files: int,
    retention_days: int,
    exclude_patterns: Sequence[str] = (),
    page_size: int = 1000,
    now: datetime | None = None,
    progress: ScanResult | None = None,
) -> ScanResult:
    """
    Enumerate storage and compute orphan candidates.

    Args:
        storage: Storage adapter to list from
        valid_keys: Materialized keys from the metadata store
        prefixes: Prefixes to scan (checked against allowed_prefixes)
        allowed_prefixes: Allow-list of scannable prefixes
        max_files: Ceiling on objects enumerated across all prefixes
        retention_days: Minimum age before an object can be reported
        exclude_patterns: Glob patterns never reported
        page_size: Objects requested per listing call
        now: Reference time (defaults to the current UTC time)
        progress: Result filled in place as pages arrive; a caller keeps
            what was scanned before a listing call fails

    Returns:
        ScanResult with candidates and aggregate metrics

    Raises:
        ValidationError: A prefix is unsafe or not allow-listed
    """
    prefixes = validate_scan_prefixes(prefixes, allowed_prefixes)
    now = now or datetime.now(UTC)
    cutoff = now - timedelta(days=retention_days)

    result = progress if progress is not None else ScanResult()
    seen: Set[str] = set()

    logger.info(
        "orphan_scan_started",
        prefixes=prefixes,
        max_files=max_files,
        retention_days=retention_days,
        cutoff=cutoff.isoformat(),
    )

    for prefix in prefixes:
        token: str | None = None

        while True:
            remaining = max_files - result.metrics.files_scanned
            if remaining <= 0:
                result.truncated = True
                break

            page = await storage.list_objects(
                prefix,
                continuation_token=token,
                max_keys=min(page_size, remaining),
            )

            for obj in page.objects:
                if result.metrics.files_scanned >= max_files:
                    result.truncated = True
                    break
                # Overlapping prefixes list the same object twice
                if obj.key in seen:
                    continue
                seen.add(obj.key)
                result.metrics.files_scanned += 1

                if is_directory_marker(obj.key):
                    continue
                if is_excluded(obj.key, exclude_patterns):
                    continue
                if valid_keys.contains(obj.key):
                    continue
                if obj.last_modified >= cutoff:
                    continue

                result.candidates.append(
                    OrphanCandidate(
                        key=obj.key,
                        size=obj.size,
                        last_modified=obj.last_modified,
                    )
                )
                result.metrics.orphaned_files_found += 1
                result.metrics.reclaimable_bytes += obj.size

            token = page.next_token
            if token is None or result.truncated:
                break

        if result.truncated:
            break

    logger.info(
        "orphan_scan_completed",
        files_scanned=result.metrics.files_scanned,
        orphans_found=result.metrics.orphaned_files_found,
        reclaimable_bytes=result.metrics.reclaimable_bytes,
        truncated=result.truncated,
    )
    return result
