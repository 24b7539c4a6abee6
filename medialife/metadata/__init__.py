# SPDX-License-Identifier: LGPL-2.1-only
# Copyright (c) 2026 Akshat Kotpalliwar (alias IntegerAlex)

"""
Metadata Store - MediaObject records and the valid-key cache.
"""

from medialife.metadata.store import (
    init_metadata_db,
    create_media_object,
    get_media_object,
    find_media_objects,
    find_media_objects_by_filename,
    update_media_status,
    mark_media_deleted,
    upsert_submission,
    confirm_submission_media,
    get_metadata_generation,
    MediaObject,
    UploadStatus,
    SubmissionStatus,
)

from medialife.metadata.cache import ValidKeyCache

__all__ = [
    # Store functions
    "init_metadata_db",
    "create_media_object",
    "get_media_object",
    "find_media_objects",
    "find_media_objects_by_filename",
    "update_media_status",
    "mark_media_deleted",
    "upsert_submission",
    "confirm_submission_media",
    "get_metadata_generation",
    # Types
    "MediaObject",
    "UploadStatus",
    "SubmissionStatus",
    # Cache
    "ValidKeyCache",
]
