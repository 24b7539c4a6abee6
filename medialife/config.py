# SPDX-License-Identifier: LGPL-2.1-only
# Copyright (c) 2026 Akshat Kotpalliwar (alias IntegerAlex)

"""
Media Lifecycle Configuration - Immutable configuration data structures.

All configuration is frozen (immutable) after creation to prevent
accidental modification while an upload run or cleanup job is in flight.
"""

from dataclasses import dataclass, field, replace
from pathlib import Path
from typing import List
import re


MB = 1024 * 1024

# S3 DeleteObjects / ListObjectsV2 hard limit
STORAGE_BATCH_LIMIT = 1000

DEFAULT_ALLOWED_EXTENSIONS = (
    "jpg", "jpeg", "png", "webp", "gif",
    "mp4", "mpeg", "mov", "webm",
    "mp3", "wav", "ogg",
    "pdf", "doc", "docx",
)


def _validate_bucket_name(bucket: str) -> bool:
    """
    Validate bucket name according to S3 rules.

    Rules:
    - 3-63 characters
    - Lowercase letters, numbers, hyphens
    - Must start and end with letter or number
    - No consecutive periods
    - Not formatted as IP address
    """
    if not bucket or len(bucket) < 3 or len(bucket) > 63:
        return False

    if not re.match(r"^[a-z0-9][a-z0-9.-]*[a-z0-9]$", bucket):
        return False

    if ".." in bucket:
        return False

    if re.match(r"^\d+\.\d+\.\d+\.\d+$", bucket):
        return False

    return True


def _validate_cron_time(time_str: str) -> bool:
    """Validate HH:MM time format."""
    if not time_str:
        return False
    try:
        parts = time_str.split(":")
        if len(parts) != 2:
            return False
        hour, minute = int(parts[0]), int(parts[1])
        return 0 <= hour <= 23 and 0 <= minute <= 59
    except (ValueError, AttributeError):
        return False


def _validate_prefix(prefix: str) -> bool:
    """A configured prefix is relative, traversal-free and ends with '/'."""
    if not isinstance(prefix, str) or not prefix:
        return False
    if prefix.startswith("/") or ".." in prefix or "\\" in prefix:
        return False
    return prefix.endswith("/")


@dataclass(frozen=True)
class BatchUploadConfig:
    """Settings for one batch upload run."""

    # Files per batch; batches always run one after another
    batch_size: int = 2

    # Run the files of one batch in parallel
    concurrent: bool = False

    # Pause between batches in seconds
    delay_between_batches: float = 0.1

    # Retries after the first attempt (attempts = max_retries + 1)
    max_retries: int = 3

    # Backoff: base * 2^(attempt-1), clamped to retry_max_delay
    retry_base_delay: float = 1.0
    retry_max_delay: float = 10.0

    # Fraction of the delay added as random jitter (0 disables)
    retry_jitter: float = 0.3

    # Per-attempt upload timeout in seconds
    timeout_seconds: float = 60.0

    max_file_size_bytes: int = 50 * MB

    allowed_extensions: tuple = DEFAULT_ALLOWED_EXTENSIONS

    def __post_init__(self) -> None:
        errors: List[str] = []

        if self.batch_size < 1:
            errors.append(f"batch_size must be >= 1, got {self.batch_size}")
        if self.max_retries < 0:
            errors.append(f"max_retries must be >= 0, got {self.max_retries}")
        if self.retry_base_delay < 0:
            errors.append(f"retry_base_delay must be >= 0, got {self.retry_base_delay}")
        if self.retry_max_delay < self.retry_base_delay:
            errors.append("retry_max_delay must be >= retry_base_delay")
        if not 0 <= self.retry_jitter <= 1:
            errors.append(f"retry_jitter must be within [0, 1], got {self.retry_jitter}")
        if self.timeout_seconds <= 0:
            errors.append(f"timeout_seconds must be > 0, got {self.timeout_seconds}")
        if self.delay_between_batches < 0:
            errors.append("delay_between_batches must be >= 0")
        if self.max_file_size_bytes < 1:
            errors.append("max_file_size_bytes must be >= 1")

        if errors:
            from medialife.exceptions import ConfigurationError

            raise ConfigurationError(
                "Upload configuration validation failed",
                details={"errors": errors},
            )

    def retry_policy(self):
        """Build the RetryPolicy described by these settings."""
        from medialife.upload.retry import RetryPolicy

        return RetryPolicy(
            max_retries=self.max_retries,
            base_delay=self.retry_base_delay,
            max_delay=self.retry_max_delay,
            jitter=self.retry_jitter,
        )


@dataclass(frozen=True)
class LifecycleConfig:
    """
    Immutable configuration for media lifecycle management.

    Covers both halves of the system: pushing uploads into object storage
    and reconciling object storage against the metadata store.
    """

    # Required: bucket holding media objects
    bucket: str

    region: str = "us-east-1"

    # S3-compatible endpoint (R2, MinIO); None means AWS
    endpoint_url: str | None = None

    # Directory holding the sqlite metadata store
    data_path: Path = field(default_factory=lambda: Path("./medialife_data"))

    # Prefixes a scan is ever allowed to touch
    allowed_prefixes: List[str] = field(default_factory=lambda: ["forms/"])

    # Prefixes scanned when the caller names none
    scan_prefixes: List[str] = field(default_factory=lambda: ["forms/"])

    # Glob patterns never reported as orphans
    exclude_patterns: List[str] = field(default_factory=list)

    # Minimum object age before it can be reclaimed
    retention_days: int = 30

    # Ceiling on objects enumerated by one scan
    max_files_to_scan: int = 1000

    list_page_size: int = STORAGE_BATCH_LIMIT
    delete_batch_size: int = STORAGE_BATCH_LIMIT

    max_key_length: int = 1024

    # Ceiling on keys accepted by one cleanup request
    max_cleanup_keys: int = 10000

    # Seconds a materialized valid-key set stays fresh
    valid_key_cache_ttl: float = 60.0

    # Scheduled audits delete what they find
    auto_delete: bool = False

    # Daily schedule in HH:MM format (UTC)
    schedule_cron: str | None = None

    upload: BatchUploadConfig = field(default_factory=BatchUploadConfig)

    def __post_init__(self) -> None:
        """Validate configuration after creation."""
        errors: List[str] = []

        if not _validate_bucket_name(self.bucket):
            errors.append(f"Invalid bucket name: {self.bucket}")

        if self.retention_days < 0:
            errors.append(f"retention_days must be >= 0, got {self.retention_days}")

        if not self.allowed_prefixes:
            errors.append("allowed_prefixes must not be empty")

        for prefix in self.allowed_prefixes:
            if not _validate_prefix(prefix):
                errors.append(f"Invalid allowed prefix: {prefix!r}")

        for prefix in self.scan_prefixes:
            if not any(prefix.startswith(allowed) for allowed in self.allowed_prefixes):
                errors.append(f"Scan prefix {prefix!r} is not covered by allowed_prefixes")

        if self.max_files_to_scan < 1:
            errors.append(f"max_files_to_scan must be >= 1, got {self.max_files_to_scan}")

        if not 1 <= self.list_page_size <= STORAGE_BATCH_LIMIT:
            errors.append(f"list_page_size must be 1-{STORAGE_BATCH_LIMIT}, got {self.list_page_size}")

        if not 1 <= self.delete_batch_size <= STORAGE_BATCH_LIMIT:
            errors.append(
                f"delete_batch_size must be 1-{STORAGE_BATCH_LIMIT}, got {self.delete_batch_size}"
            )

        if self.max_key_length < 1:
            errors.append("max_key_length must be >= 1")

        if self.max_cleanup_keys < 1:
            errors.append("max_cleanup_keys must be >= 1")

        if self.valid_key_cache_ttl < 0:
            errors.append("valid_key_cache_ttl must be >= 0")

        if self.schedule_cron and not _validate_cron_time(self.schedule_cron):
            errors.append(f"Invalid schedule_cron format: {self.schedule_cron}, expected HH:MM")

        if errors:
            from medialife.exceptions import ConfigurationError

            raise ConfigurationError(
                "Configuration validation failed",
                details={"errors": errors},
            )

        if self.auto_delete:
            import sys

            print(
                "\u26a0\ufe0f  WARNING: auto_delete enabled. Scheduled audits will delete objects.",
                file=sys.stderr,
            )

    @property
    def db_path(self) -> Path:
        """Path of the sqlite file holding media objects and cleanup jobs."""
        return self.data_path / "metadata.db"

    def with_updates(self, **kwargs) -> "LifecycleConfig":
        """
        Create a new config with updated values.

        Since the config is frozen, this creates a new (re-validated) instance.
        """
        return replace(self, **kwargs)
