# SPDX-License-Identifier: LGPL-2.1-only
# Copyright (c) 2026 Akshat Kotpalliwar (alias IntegerAlex)

"""
Upload Surface - Accepts a file set and lands it in storage.

Per file: validate name, size and type, stream the bytes to storage, then
record a ``staging`` MediaObject. The run always returns per-file outcomes;
partial failure never raises.
"""

import asyncio
import mimetypes
import re
from dataclasses import dataclass
from pathlib import Path
from typing import Callable, Sequence

import aiofiles
import aiosqlite
import structlog
from ulid import ULID

from medialife.config import LifecycleConfig
from medialife.core import LifecycleState
from medialife.exceptions import ValidationError
from medialife.metadata.store import create_media_object, find_media_objects_by_filename
from medialife.reconcile.paths import file_extension, storage_folder_for
from medialife.upload.processor import BatchUploadProcessor, BatchUploadResult, ProgressCallback

logger = structlog.get_logger()

MAX_FILENAME_LENGTH = 255

# Stored access URLs look like /api/form-media/file/<name>
MEDIA_URL_ROUTE = "/api/form-media/file/"


def sanitize_filename(name: str) -> str:
    """
    Make a client-supplied filename safe to use inside an object key.

    Unsafe characters become ``_``, dot runs collapse, leading/trailing dots
    are stripped and the result is capped at 255 characters.
    """
    cleaned = re.sub(r"[^a-zA-Z0-9.-]", "_", name)
    cleaned = re.sub(r"\.{2,}", ".", cleaned)
    cleaned = cleaned.strip(".")
    return cleaned[:MAX_FILENAME_LENGTH] or "file"


@dataclass(frozen=True)
class FileItem:
    """A file to upload, either in memory or on local disk."""

    name: str
    data: bytes | None = None
    path: Path | None = None
    content_type: str | None = None

    @property
    def size(self) -> int:
        if self.data is not None:
            return len(self.data)
        if self.path is not None:
            try:
                return Path(self.path).stat().st_size
            except OSError:
                return 0
        return 0

    async def read(self) -> bytes:
        if self.data is not None:
            return self.data
        if self.path is None:
            raise ValidationError(f"File {self.name!r} has neither data nor path")
        async with aiofiles.open(self.path, "rb") as handle:
            return await handle.read()


def validate_upload(item: FileItem, config: LifecycleConfig) -> None:
    """
    Raises:
        ValidationError: Empty, too large, or disallowed type
    """
    size = item.size
    limit = config.upload.max_file_size_bytes
    if size <= 0:
        raise ValidationError(f"File {item.name!r} is empty")
    if size > limit:
        raise ValidationError(
            f"File {item.name!r} is too large: {size} bytes (limit {limit})",
            details={"size": size, "limit": limit},
        )

    extension = file_extension(item.name)
    if extension not in config.upload.allowed_extensions:
        raise ValidationError(
            f"Unsupported file type {extension or '(none)'!r} for {item.name!r}",
            details={"allowed": list(config.upload.allowed_extensions)},
        )


def build_object_name(run_token: str, index: int, original_name: str) -> str:
    """Unique per run and index, so a retried attempt reuses the same key."""
    return f"{run_token}_{index}_{sanitize_filename(original_name)}"


async def upload_media_files(
    config: LifecycleConfig,
    state: LifecycleState,
    files: Sequence[FileItem],
    submission_id: str | None = None,
    progress_callback: ProgressCallback | None = None,
    sleep: Callable = asyncio.sleep,
) -> BatchUploadResult:
    """
    Upload a file set through the batch processor.

    Args:
        config: Lifecycle configuration (upload settings live in config.upload)
        state: Runtime state (storage adapter, metadata path, metrics)
        files: Files to upload
        submission_id: Optional owning submission recorded on each row
        progress_callback: Receives BatchUploadProgress snapshots
        sleep: Awaitable sleep used between retries and batches

    Returns:
        BatchUploadResult with one outcome per file
    """
    run_token = str(ULID()).lower()
    storage = state["storage"]

    async with aiosqlite.connect(state["db_path"]) as db:

        async def upload_one(item: FileItem, index: int) -> dict:
            validate_upload(item, config)

            name = build_object_name(run_token, index, item.name)
            prefix = storage_folder_for(name)
            key = f"{prefix}{name}"
            content_type = (
                item.content_type
                or mimetypes.guess_type(item.name)[0]
                or "application/octet-stream"
            )

            body = await item.read()
            await storage.put_object(key, body, content_type=content_type)

            existing = [
                m for m in await find_media_objects_by_filename(db, name) if m.prefix == prefix
            ]
            media = existing[0] if existing else await create_media_object(
                db,
                filename=name,
                prefix=prefix,
                url=f"{MEDIA_URL_ROUTE}{name}",
                size=len(body),
                content_type=content_type,
                submission_id=submission_id,
            )

            logger.debug("media_uploaded", key=key, media_id=media.id, size=len(body))
            return {"id": media.id, "url": media.url}

        processor = BatchUploadProcessor(
            upload_one,
            config=config.upload,
            progress_callback=progress_callback,
            metrics=state["upload_metrics"],
            sleep=sleep,
        )
        return await processor.upload_files(list(files))
