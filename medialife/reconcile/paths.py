# SPDX-License-Identifier: LGPL-2.1-only
# Copyright (c) 2026 Akshat Kotpalliwar (alias IntegerAlex)

"""
Key and prefix rules shared by the scanner, the executor and uploads.

Nothing in this module touches storage or the metadata store; every
check here runs before any network call is made.
"""

from pathlib import PurePosixPath
from typing import Iterable, List, Sequence, Set
from urllib.parse import unquote, urlparse

from medialife.errors import explain_prefix_not_allowed, explain_unsafe_key
from medialife.exceptions import ValidationError
from medialife.metadata.store import MediaObject

MEDIA_ROOT = "forms/"

# Extension -> folder under MEDIA_ROOT
STORAGE_FOLDERS = {
    "images": ("jpg", "jpeg", "png", "webp", "gif", "avif", "svg"),
    "documents": ("pdf", "doc", "docx", "txt", "rtf"),
    "videos": ("mp4", "mov", "avi", "webm", "mkv", "mpeg"),
    "audio": ("mp3", "wav", "ogg", "aac", "m4a"),
}
FALLBACK_FOLDER = "misc"

# Marker in stored access URLs that precedes the object name
FILE_ROUTE_MARKER = "/file/"


def file_extension(filename: str) -> str:
    return PurePosixPath(filename).suffix.lstrip(".").lower()


def storage_folder_for(filename: str) -> str:
    """Folder (with trailing slash) an upload of this name is stored under."""
    extension = file_extension(filename)
    for folder, extensions in STORAGE_FOLDERS.items():
        if extension in extensions:
            return f"{MEDIA_ROOT}{folder}/"
    return f"{MEDIA_ROOT}{FALLBACK_FOLDER}/"


def _path_problem(value: str) -> str | None:
    if ".." in value:
        return "contains a parent-directory token"
    if value.startswith("/"):
        return "is an absolute path"
    if "\\" in value:
        return "contains a backslash"
    if any(ord(ch) < 32 for ch in value):
        return "contains control characters"
    return None


def validate_scan_prefixes(
    prefixes: Sequence[str],
    allowed_prefixes: Sequence[str],
) -> List[str]:
    """
    Check requested scan prefixes against the allow-list.

    Returns:
        The prefixes, deduplicated in order

    Raises:
        ValidationError: A prefix is unsafe or not on the allow-list
    """
    if not prefixes:
        raise ValidationError("At least one prefix is required")

    checked: List[str] = []
    for prefix in prefixes:
        if not isinstance(prefix, str) or not prefix:
            raise ValidationError(f"Invalid prefix: {prefix!r}")

        problem = _path_problem(prefix)
        if problem:
            raise ValidationError(
                f"Prefix {prefix!r} {problem}",
                details={"prefix": prefix},
            )

        if not any(prefix.startswith(allowed) for allowed in allowed_prefixes):
            raise ValidationError(
                explain_prefix_not_allowed(prefix, list(allowed_prefixes)),
                details={"prefix": prefix},
            )

        if prefix not in checked:
            checked.append(prefix)

    return checked


def validate_object_key(key: str, max_length: int = 1024) -> None:
    """
    Reject keys that are empty, too long, or path-unsafe.

    Raises:
        ValidationError: The key must not be sent to storage
    """
    if not isinstance(key, str) or not key:
        raise ValidationError("Object key must be a non-empty string", details={"key": key})

    if len(key) > max_length:
        raise ValidationError(
            explain_unsafe_key(key, f"longer than {max_length} characters"),
            details={"length": len(key)},
        )

    problem = _path_problem(key)
    if problem:
        raise ValidationError(explain_unsafe_key(key, problem), details={"key": key})


def validate_cleanup_keys(
    keys: Iterable[str],
    max_length: int = 1024,
    max_keys: int | None = None,
    allowed_prefixes: Sequence[str] | None = None,
) -> List[str]:
    """
    Validate a whole cleanup request before anything destructive happens.

    Every key is checked; the error lists all rejected keys, not just the
    first one.

    Returns:
        The keys, deduplicated in order
    """
    if isinstance(keys, (str, bytes)):
        raise ValidationError("Cleanup keys must be a list of strings")

    keys = list(keys)
    if not keys:
        raise ValidationError("No files provided for cleanup")
    if max_keys is not None and len(keys) > max_keys:
        raise ValidationError(
            f"Too many keys in one cleanup request: {len(keys)} > {max_keys}",
            details={"keys": len(keys), "max_keys": max_keys},
        )

    rejected: List[dict] = []
    unique: List[str] = []
    seen: Set[str] = set()

    for key in keys:
        try:
            validate_object_key(key, max_length)
        except ValidationError as e:
            rejected.append({"key": str(key)[:120], "reason": e.message})
            continue

        if allowed_prefixes is not None and not any(
            key.startswith(prefix) for prefix in allowed_prefixes
        ):
            rejected.append(
                {"key": key[:120], "reason": explain_prefix_not_allowed(key, list(allowed_prefixes))}
            )
            continue

        if key not in seen:
            seen.add(key)
            unique.append(key)

    if rejected:
        raise ValidationError(
            f"{len(rejected)} key(s) rejected before cleanup",
            details={"rejected": rejected},
        )

    return unique


def _keys_from_url(url: str, media: MediaObject) -> Set[str]:
    path = unquote(urlparse(url).path)
    if not path:
        return set()

    if FILE_ROUTE_MARKER in path:
        name = path.split(FILE_ROUTE_MARKER, 1)[1].strip("/")
        if not name:
            return set()
        if "/" in name:
            return {name}
        keys = {f"{storage_folder_for(name)}{name}"}
        if media.prefix:
            keys.add(f"{media.prefix}{name}")
        return keys

    # Direct object URL: the path is the key (minus a leading bucket-less slash)
    return {path.lstrip("/")}


def keys_for_media_object(media: MediaObject) -> Set[str]:
    """
    Every storage key a record may correspond to.

    Derived from prefix + filename, from a stored access URL, and for legacy
    records lacking a prefix from the extension-derived folder.
    """
    keys: Set[str] = set()

    if media.storage_key:
        keys.add(media.storage_key)

    if media.url:
        keys.update(k for k in _keys_from_url(media.url, media) if k)

    if not media.prefix:
        keys.add(f"{storage_folder_for(media.filename)}{media.filename}")

    return keys
