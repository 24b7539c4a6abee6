# SPDX-License-Identifier: LGPL-2.1-only
# Copyright (c) 2026 Akshat Kotpalliwar (alias IntegerAlex)

"""
Metadata Store - MediaObject and submission records in SQLite.

This is the directory-of-record the reconciliation engine compares object
storage against. Every row read back is validated into a MediaObject;
nothing downstream trusts a raw row by its shape.

MediaObject lifecycle:
    staging   -> confirmed | orphaned | deleted
    confirmed -> orphaned | deleted
    orphaned  -> confirmed | deleted
    deleted   (final, kept as a tombstone)
"""

from dataclasses import dataclass, replace
from datetime import datetime, UTC
from enum import Enum
from pathlib import Path
from typing import Any, AsyncIterator, Dict, List, Mapping

import aiosqlite
import structlog
from ulid import ULID

from medialife.exceptions import MetadataStoreError, ValidationError

logger = structlog.get_logger()


class UploadStatus(str, Enum):
    STAGING = "staging"
    CONFIRMED = "confirmed"
    ORPHANED = "orphaned"
    DELETED = "deleted"


class SubmissionStatus(str, Enum):
    PENDING = "pending"
    REVIEWING = "reviewing"
    RESOLVED = "resolved"
    DISMISSED = "dismissed"


NON_TERMINAL_SUBMISSION_STATUSES = frozenset(
    {SubmissionStatus.PENDING, SubmissionStatus.REVIEWING}
)

ALLOWED_MEDIA_TRANSITIONS: Dict[UploadStatus, frozenset] = {
    UploadStatus.STAGING: frozenset(
        {UploadStatus.CONFIRMED, UploadStatus.ORPHANED, UploadStatus.DELETED}
    ),
    UploadStatus.CONFIRMED: frozenset({UploadStatus.ORPHANED, UploadStatus.DELETED}),
    UploadStatus.ORPHANED: frozenset({UploadStatus.CONFIRMED, UploadStatus.DELETED}),
    UploadStatus.DELETED: frozenset(),
}

_MEDIA_COLUMNS = (
    "id",
    "filename",
    "prefix",
    "url",
    "upload_status",
    "size",
    "content_type",
    "submission_id",
    "created_at",
    "updated_at",
    "expires_at",
)
_SELECT_MEDIA = f"SELECT {', '.join(_MEDIA_COLUMNS)} FROM media_objects"


def to_iso(value: datetime) -> str:
    """Normalize a timestamp to the UTC ISO form stored in every table."""
    if value.tzinfo is None:
        value = value.replace(tzinfo=UTC)
    return value.astimezone(UTC).isoformat(timespec="microseconds")


def _parse_timestamp(value: Any, field_name: str) -> datetime:
    if isinstance(value, datetime):
        return value if value.tzinfo else value.replace(tzinfo=UTC)
    if isinstance(value, str) and value:
        try:
            parsed = datetime.fromisoformat(value)
        except ValueError as e:
            raise ValidationError(
                f"Invalid {field_name} timestamp: {value!r}"
            ) from e
        return parsed if parsed.tzinfo else parsed.replace(tzinfo=UTC)
    raise ValidationError(f"Missing {field_name} timestamp")


@dataclass(frozen=True)
class MediaObject:
    """A validated media record."""

    id: str
    filename: str
    upload_status: UploadStatus
    created_at: datetime
    prefix: str | None = None
    url: str | None = None
    size: int = 0
    content_type: str | None = None
    submission_id: str | None = None
    updated_at: datetime | None = None
    expires_at: datetime | None = None

    @property
    def storage_key(self) -> str | None:
        """prefix + filename, or None for legacy rows without a prefix."""
        if not self.prefix:
            return None
        return f"{self.prefix}{self.filename}"

    @classmethod
    def from_record(cls, record: Mapping[str, Any]) -> "MediaObject":
        """
        Build a MediaObject from an untyped record.

        Raises:
            ValidationError: Required fields missing or status unknown
        """
        media_id = record.get("id")
        filename = record.get("filename")
        if not media_id:
            raise ValidationError("Media record is missing 'id'", details={"record": dict(record)})
        if not isinstance(filename, str) or not filename:
            raise ValidationError(
                "Media record is missing 'filename'", details={"id": str(media_id)}
            )

        raw_status = record.get("upload_status")
        try:
            status = UploadStatus(raw_status)
        except ValueError as e:
            raise ValidationError(
                f"Unknown upload_status {raw_status!r}", details={"id": str(media_id)}
            ) from e

        prefix = record.get("prefix") or None
        if prefix is not None and not prefix.endswith("/"):
            prefix = f"{prefix}/"

        updated_at = record.get("updated_at")
        expires_at = record.get("expires_at")
        size = record.get("size")

        return cls(
            id=str(media_id),
            filename=filename,
            upload_status=status,
            created_at=_parse_timestamp(record.get("created_at"), "created_at"),
            prefix=prefix,
            url=record.get("url") or None,
            size=int(size) if size is not None else 0,
            content_type=record.get("content_type") or None,
            submission_id=record.get("submission_id") or None,
            updated_at=_parse_timestamp(updated_at, "updated_at") if updated_at else None,
            expires_at=_parse_timestamp(expires_at, "expires_at") if expires_at else None,
        )

    @classmethod
    def from_row(cls, row: tuple) -> "MediaObject":
        return cls.from_record(dict(zip(_MEDIA_COLUMNS, row)))

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "filename": self.filename,
            "prefix": self.prefix,
            "url": self.url,
            "upload_status": self.upload_status.value,
            "size": self.size,
            "content_type": self.content_type,
            "submission_id": self.submission_id,
            "created_at": self.created_at.isoformat(),
            "updated_at": self.updated_at.isoformat() if self.updated_at else None,
            "expires_at": self.expires_at.isoformat() if self.expires_at else None,
        }


async def init_metadata_db(db_path: Path) -> None:
    """
    Initialize the metadata schema. Idempotent.

    Args:
        db_path: Path to the SQLite database file
    """
    try:
        async with aiosqlite.connect(db_path) as db:
            await db.execute("""
                CREATE TABLE IF NOT EXISTS media_objects (
                    id TEXT PRIMARY KEY,
                    filename TEXT NOT NULL,
                    prefix TEXT,
                    url TEXT,
                    upload_status TEXT NOT NULL,
                    size INTEGER NOT NULL DEFAULT 0,
                    content_type TEXT,
                    submission_id TEXT,
                    created_at TEXT NOT NULL,
                    updated_at TEXT NOT NULL,
                    expires_at TEXT
                )
            """)

            await db.execute("""
                CREATE TABLE IF NOT EXISTS submissions (
                    id TEXT PRIMARY KEY,
                    status TEXT NOT NULL,
                    created_at TEXT NOT NULL,
                    updated_at TEXT NOT NULL
                )
            """)

            await db.execute("""
                CREATE INDEX IF NOT EXISTS idx_media_status
                ON media_objects(upload_status)
            """)

            await db.execute("""
                CREATE INDEX IF NOT EXISTS idx_media_filename
                ON media_objects(filename)
            """)

            await db.execute("""
                CREATE INDEX IF NOT EXISTS idx_media_submission
                ON media_objects(submission_id)
            """)

            # Single row, bumped on every media_objects write
            await db.execute("""
                CREATE TABLE IF NOT EXISTS metadata_generation (
                    id INTEGER PRIMARY KEY CHECK (id = 1),
                    value INTEGER NOT NULL
                )
            """)

            await db.execute(
                "INSERT OR IGNORE INTO metadata_generation (id, value) VALUES (1, 0)"
            )

            await db.commit()

        logger.info("metadata_db_initialized", db_path=str(db_path))

    except Exception as e:
        raise MetadataStoreError(
            f"Failed to initialize metadata database: {e}",
            details={"db_path": str(db_path)},
        )


async def _bump_generation(db: aiosqlite.Connection) -> None:
    await db.execute("UPDATE metadata_generation SET value = value + 1 WHERE id = 1")


async def get_metadata_generation(db: aiosqlite.Connection) -> int:
    """
    Counter that changes whenever a media record is written.

    Anything derived from media records (such as a valid-key set) is stale
    once the generation it was built at differs from this value.
    """
    async with db.execute("SELECT value FROM metadata_generation WHERE id = 1") as cursor:
        row = await cursor.fetchone()
        return row[0] if row else 0


async def create_media_object(
    db: aiosqlite.Connection,
    filename: str,
    prefix: str | None = None,
    url: str | None = None,
    size: int = 0,
    content_type: str | None = None,
    submission_id: str | None = None,
    status: UploadStatus = UploadStatus.STAGING,
    expires_at: datetime | None = None,
    created_at: datetime | None = None,
) -> MediaObject:
    """
    Insert a media record, normally as ``staging`` at upload time.

    Returns:
        The validated MediaObject as stored
    """
    now = datetime.now(UTC)
    record = {
        "id": str(ULID()),
        "filename": filename,
        "prefix": prefix,
        "url": url,
        "upload_status": UploadStatus(status).value,
        "size": size,
        "content_type": content_type,
        "submission_id": submission_id,
        "created_at": to_iso(created_at or now),
        "updated_at": to_iso(now),
        "expires_at": to_iso(expires_at) if expires_at else None,
    }
    media = MediaObject.from_record(record)

    await db.execute(
        f"""
        INSERT INTO media_objects ({', '.join(_MEDIA_COLUMNS)})
        VALUES ({', '.join('?' for _ in _MEDIA_COLUMNS)})
        """,
        tuple(record[c] for c in _MEDIA_COLUMNS),
    )
    await _bump_generation(db)
    await db.commit()

    logger.debug(
        "media_object_created",
        media_id=media.id,
        filename=filename,
        status=media.upload_status.value,
    )
    return media


async def get_media_object(db: aiosqlite.Connection, media_id: str) -> MediaObject | None:
    async with db.execute(f"{_SELECT_MEDIA} WHERE id = ?", (media_id,)) as cursor:
        row = await cursor.fetchone()
        return MediaObject.from_row(row) if row else None


async def find_media_objects_by_filename(
    db: aiosqlite.Connection,
    filename: str,
    include_deleted: bool = False,
) -> List[MediaObject]:
    """All records carrying this filename, newest first."""
    query = f"{_SELECT_MEDIA} WHERE filename = ?"
    params: List[Any] = [filename]
    if not include_deleted:
        query += " AND upload_status != ?"
        params.append(UploadStatus.DELETED.value)
    query += " ORDER BY created_at DESC"

    async with db.execute(query, params) as cursor:
        return [MediaObject.from_row(row) async for row in cursor]


async def find_media_objects(
    db: aiosqlite.Connection,
    status: UploadStatus | None = None,
    prefix: str | None = None,
    submission_id: str | None = None,
    limit: int = 100,
    offset: int = 0,
) -> List[MediaObject]:
    """
    Filtered, paginated find over media records.

    Args:
        db: SQLite database connection
        status: Optional upload status filter
        prefix: Optional exact prefix filter
        submission_id: Optional owning submission filter
        limit: Maximum number of records to return
        offset: Number of records to skip
    """
    query = _SELECT_MEDIA
    clauses: List[str] = []
    params: List[Any] = []

    if status is not None:
        clauses.append("upload_status = ?")
        params.append(UploadStatus(status).value)
    if prefix is not None:
        clauses.append("prefix = ?")
        params.append(prefix)
    if submission_id is not None:
        clauses.append("submission_id = ?")
        params.append(submission_id)

    if clauses:
        query += " WHERE " + " AND ".join(clauses)
    query += " ORDER BY created_at, id LIMIT ? OFFSET ?"
    params.extend([limit, offset])

    async with db.execute(query, params) as cursor:
        return [MediaObject.from_row(row) async for row in cursor]


async def iter_media_objects(
    db: aiosqlite.Connection,
    page_size: int = 500,
) -> AsyncIterator[MediaObject]:
    """
    Yield every media record, one page at a time.

    A malformed row raises ValidationError instead of being skipped; a
    skipped row would make its object look untracked.
    """
    last_id = ""
    while True:
        async with db.execute(
            f"{_SELECT_MEDIA} WHERE id > ? ORDER BY id LIMIT ?",
            (last_id, page_size),
        ) as cursor:
            rows = await cursor.fetchall()

        if not rows:
            return

        for row in rows:
            yield MediaObject.from_row(row)
        last_id = rows[-1][0]


async def update_media_status(
    db: aiosqlite.Connection,
    media_id: str,
    new_status: UploadStatus,
) -> MediaObject:
    """
    Move a record to a new status, enforcing the lifecycle rules.

    Raises:
        MetadataStoreError: Record does not exist
        ValidationError: Transition not allowed
    """
    current = await get_media_object(db, media_id)
    if current is None:
        raise MetadataStoreError(f"Media object {media_id} not found")

    new_status = UploadStatus(new_status)
    if new_status == current.upload_status:
        return current
    if new_status not in ALLOWED_MEDIA_TRANSITIONS[current.upload_status]:
        raise ValidationError(
            f"Cannot move media object from {current.upload_status.value} to {new_status.value}",
            details={"media_id": media_id},
        )

    now = datetime.now(UTC)
    await db.execute(
        "UPDATE media_objects SET upload_status = ?, updated_at = ? WHERE id = ?",
        (new_status.value, to_iso(now), media_id),
    )
    await _bump_generation(db)
    await db.commit()

    logger.info(
        "media_status_changed",
        media_id=media_id,
        old_status=current.upload_status.value,
        new_status=new_status.value,
    )
    return replace(current, upload_status=new_status, updated_at=now)


async def mark_media_deleted(db: aiosqlite.Connection, media_id: str) -> MediaObject:
    """Tombstone a record whose object was removed from storage."""
    return await update_media_status(db, media_id, UploadStatus.DELETED)


async def mark_stale_staging_orphaned(
    db: aiosqlite.Connection,
    cutoff: datetime,
    now: datetime | None = None,
) -> int:
    """
    Move ``staging`` records created before ``cutoff`` to ``orphaned``.

    Records with an ``expires_at`` still in the future are left alone.

    Returns:
        Number of records updated
    """
    now = now or datetime.now(UTC)
    cursor = await db.execute(
        """
        UPDATE media_objects
        SET upload_status = ?, updated_at = ?
        WHERE upload_status = ?
          AND created_at < ?
          AND (expires_at IS NULL OR expires_at <= ?)
        """,
        (
            UploadStatus.ORPHANED.value,
            to_iso(now),
            UploadStatus.STAGING.value,
            to_iso(cutoff),
            to_iso(now),
        ),
    )
    if cursor.rowcount:
        await _bump_generation(db)
    await db.commit()

    if cursor.rowcount:
        logger.info("stale_staging_marked_orphaned", count=cursor.rowcount)
    return cursor.rowcount


async def upsert_submission(
    db: aiosqlite.Connection,
    submission_id: str,
    status: SubmissionStatus,
) -> None:
    now = to_iso(datetime.now(UTC))
    await db.execute(
        """
        INSERT INTO submissions (id, status, created_at, updated_at)
        VALUES (?, ?, ?, ?)
        ON CONFLICT(id) DO UPDATE SET
            status = excluded.status,
            updated_at = excluded.updated_at
        """,
        (submission_id, SubmissionStatus(status).value, now, now),
    )
    await db.commit()


async def get_submission_status(
    db: aiosqlite.Connection,
    submission_id: str,
) -> SubmissionStatus | None:
    async with db.execute(
        "SELECT status FROM submissions WHERE id = ?", (submission_id,)
    ) as cursor:
        row = await cursor.fetchone()

    if row is None:
        return None
    try:
        return SubmissionStatus(row[0])
    except ValueError as e:
        raise ValidationError(
            f"Unknown submission status {row[0]!r}",
            details={"submission_id": submission_id},
        ) from e


async def confirm_submission_media(db: aiosqlite.Connection, submission_id: str) -> int:
    """
    Confirm the staging/orphaned media owned by a finalized submission.

    Returns:
        Number of records confirmed
    """
    cursor = await db.execute(
        """
        UPDATE media_objects
        SET upload_status = ?, updated_at = ?
        WHERE submission_id = ? AND upload_status IN (?, ?)
        """,
        (
            UploadStatus.CONFIRMED.value,
            to_iso(datetime.now(UTC)),
            submission_id,
            UploadStatus.STAGING.value,
            UploadStatus.ORPHANED.value,
        ),
    )
    if cursor.rowcount:
        await _bump_generation(db)
    await db.commit()

    logger.info("submission_media_confirmed", submission_id=submission_id, count=cursor.rowcount)
    return cursor.rowcount


async def get_metadata_stats(db: aiosqlite.Connection) -> dict:
    """Counts of media records by status, plus tracked bytes."""
    stats: dict = {}

    async with db.execute(
        "SELECT upload_status, COUNT(*) FROM media_objects GROUP BY upload_status"
    ) as cursor:
        stats["media_by_status"] = {row[0]: row[1] async for row in cursor}

    async with db.execute(
        "SELECT COUNT(*), SUM(size) FROM media_objects WHERE upload_status != ?",
        (UploadStatus.DELETED.value,),
    ) as cursor:
        row = await cursor.fetchone()
        stats["tracked_objects"] = row[0] if row else 0
        stats["tracked_bytes"] = (row[1] or 0) if row else 0

    async with db.execute("SELECT COUNT(*) FROM submissions") as cursor:
        row = await cursor.fetchone()
        stats["total_submissions"] = row[0] if row else 0

    return stats
