# SPDX-License-Identifier: LGPL-2.1-only
# Copyright (c) 2026 Akshat Kotpalliwar (alias IntegerAlex)

"""
Media Lifecycle Builder - Functional builder pattern for configuration.

Each function takes a config dict and returns a new dict with the
modification applied (immutable updates). build_config() turns the dict
into a validated LifecycleConfig.
"""

from pathlib import Path
from typing import Any, Callable, Dict, List

from medialife.config import BatchUploadConfig, LifecycleConfig, STORAGE_BATCH_LIMIT


# Type alias for builder functions
ConfigDict = Dict[str, Any]
BuilderFunc = Callable[[ConfigDict], ConfigDict]


def create_empty_config() -> ConfigDict:
    """
    Create an initial configuration dictionary with every default.

    Returns:
        Dict with default values for all configuration fields
    """
    return {
        "bucket": "",
        "region": "us-east-1",
        "endpoint_url": None,
        "data_path": Path("./medialife_data"),
        "allowed_prefixes": ["forms/"],
        "scan_prefixes": ["forms/"],
        "exclude_patterns": [],
        "retention_days": 30,
        "max_files_to_scan": 1000,
        "list_page_size": STORAGE_BATCH_LIMIT,
        "delete_batch_size": STORAGE_BATCH_LIMIT,
        "max_key_length": 1024,
        "max_cleanup_keys": 10000,
        "valid_key_cache_ttl": 60.0,
        "auto_delete": False,
        "schedule_cron": None,
        "upload": BatchUploadConfig(),
    }


def with_bucket(config: ConfigDict, bucket_name: str) -> ConfigDict:
    """
    Set the bucket holding media objects.

    Args:
        config: Current configuration dictionary
        bucket_name: Name of the bucket

    Returns:
        New configuration dictionary with bucket set
    """
    return {**config, "bucket": bucket_name}


def with_region(config: ConfigDict, region: str) -> ConfigDict:
    return {**config, "region": region}


def with_endpoint(config: ConfigDict, endpoint_url: str) -> ConfigDict:
    """Point at an S3-compatible store such as R2 or MinIO."""
    return {**config, "endpoint_url": endpoint_url}


def with_data_path(config: ConfigDict, data_path: Path | str) -> ConfigDict:
    return {**config, "data_path": Path(data_path)}


def allow_prefixes(config: ConfigDict, prefixes: List[str]) -> ConfigDict:
    """
    Replace the allow-list of prefixes a scan or cleanup may touch.

    Args:
        config: Current configuration dictionary
        prefixes: Prefixes such as ['forms/', 'uploads/']

    Returns:
        New configuration dictionary with the allow-list set
    """
    return {**config, "allowed_prefixes": list(prefixes)}


def scan_prefixes(config: ConfigDict, prefixes: List[str]) -> ConfigDict:
    """Set the prefixes scanned when the caller names none."""
    return {**config, "scan_prefixes": list(prefixes)}


def exclude_patterns(config: ConfigDict, patterns: List[str]) -> ConfigDict:
    """
    Add glob patterns for keys that are never reported as orphans.

    Args:
        config: Current configuration dictionary
        patterns: Glob patterns (e.g., ['forms/misc/keep-*'])

    Returns:
        New configuration dictionary with patterns added
    """
    return {**config, "exclude_patterns": list(config["exclude_patterns"]) + list(patterns)}


def retain_objects_older_than(config: ConfigDict, days: int) -> ConfigDict:
    """
    Set the retention window in days.

    Objects younger than this are never reported, even when untracked.

    Args:
        config: Current configuration dictionary
        days: Minimum age in days before an object can be reclaimed

    Returns:
        New configuration dictionary with retention period set
    """
    if days < 0:
        raise ValueError(f"retention days must be >= 0, got {days}")
    return {**config, "retention_days": days}


def limit_scan_to(config: ConfigDict, max_files: int) -> ConfigDict:
    """Cap the number of objects one scan enumerates."""
    if max_files < 1:
        raise ValueError(f"max_files_to_scan must be >= 1, got {max_files}")
    return {**config, "max_files_to_scan": max_files}


def with_storage_batch_sizes(
    config: ConfigDict,
    list_page_size: int | None = None,
    delete_batch_size: int | None = None,
) -> ConfigDict:
    """
    Set listing page size and delete batch size (each 1-1000).
    """
    updated = dict(config)
    for key, value in (
        ("list_page_size", list_page_size),
        ("delete_batch_size", delete_batch_size),
    ):
        if value is None:
            continue
        if value < 1 or value > STORAGE_BATCH_LIMIT:
            raise ValueError(f"{key} must be 1-{STORAGE_BATCH_LIMIT}, got {value}")
        updated[key] = value
    return updated


def run_daily_at(config: ConfigDict, time: str) -> ConfigDict:
    """
    Set the daily audit time (UTC).

    Args:
        config: Current configuration dictionary
        time: Time in HH:MM format (e.g., '02:30' for 2:30 AM UTC)

    Returns:
        New configuration dictionary with schedule set
    """
    parts = time.split(":")
    if len(parts) != 2:
        raise ValueError(f"Invalid time format: {time}, expected HH:MM")
    try:
        hour, minute = int(parts[0]), int(parts[1])
    except ValueError:
        raise ValueError(f"Invalid time format: {time}, expected HH:MM")
    if not (0 <= hour <= 23 and 0 <= minute <= 59):
        raise ValueError(f"Invalid time: {time}")

    return {**config, "schedule_cron": time}


def enable_auto_delete(config: ConfigDict) -> ConfigDict:
    """
    Let scheduled audits delete the orphans they find.

    WARNING: This enables unattended deletion of storage objects!

    Args:
        config: Current configuration dictionary

    Returns:
        New configuration dictionary with auto_delete on
    """
    import sys

    print(
        "\u26a0\ufe0f  WARNING: auto_delete will be enabled. Scheduled audits will delete objects.",
        file=sys.stderr,
    )
    return {**config, "auto_delete": True}


def with_upload_settings(config: ConfigDict, **settings: Any) -> ConfigDict:
    """
    Override batch upload settings.

    Example:
        with_upload_settings(c, batch_size=4, concurrent=True, max_retries=5)

    Returns:
        New configuration dictionary with a new BatchUploadConfig
    """
    current: BatchUploadConfig = config["upload"]
    from dataclasses import replace

    return {**config, "upload": replace(current, **settings)}


def build_config(config_dict: ConfigDict) -> LifecycleConfig:
    """
    Validate and build an immutable LifecycleConfig.

    Args:
        config_dict: Configuration dictionary built using builder functions

    Returns:
        Validated, immutable LifecycleConfig instance

    Raises:
        ConfigurationError: If validation fails
    """
    if not config_dict.get("bucket"):
        from medialife.exceptions import ConfigurationError

        raise ConfigurationError("bucket is required")

    return LifecycleConfig(**config_dict)


def pipe(*funcs: BuilderFunc) -> BuilderFunc:
    """
    Compose multiple builder functions into a single function.

        config = pipe(
            lambda c: with_bucket(c, "media-bucket"),
            lambda c: retain_objects_older_than(c, 14),
            enable_auto_delete,
        )(create_empty_config())

    Args:
        *funcs: Builder functions to compose

    Returns:
        A single function that applies all functions in sequence
    """

    def composed(config: ConfigDict) -> ConfigDict:
        result = config
        for func in funcs:
            result = func(result)
        return result

    return composed


def build_from_steps(*steps: BuilderFunc) -> LifecycleConfig:
    """
    Build config by applying a sequence of builder functions.

    Example:
        config = build_from_steps(
            lambda c: with_bucket(c, "media-bucket"),
            lambda c: allow_prefixes(c, ["forms/"]),
        )
    """
    return build_config(pipe(*steps)(create_empty_config()))


def create_config(
    bucket: str,
    *,
    region: str = "us-east-1",
    endpoint_url: str | None = None,
    data_path: str | Path | None = None,
    allowed_prefixes: List[str] | None = None,
    prefixes_to_scan: List[str] | None = None,
    patterns_to_exclude: List[str] | None = None,
    retention_days: int = 30,
    max_files_to_scan: int | None = None,
    auto_delete: bool = False,
    schedule_cron: str | None = None,
    upload: Dict[str, Any] | None = None,
    **kwargs: Any,
) -> LifecycleConfig:
    """
    Create a LifecycleConfig from simple parameters.

    This is the recommended user-facing API for creating configurations.

    Args:
        bucket: Bucket name (required)
        region: Region (default: "us-east-1")
        endpoint_url: S3-compatible endpoint (optional)
        data_path: Directory for the metadata database (default: "./medialife_data")
        allowed_prefixes: Allow-list of prefixes (default: ["forms/"])
        prefixes_to_scan: Default scan prefixes (default: the allow-list)
        patterns_to_exclude: Glob patterns never reported as orphans
        retention_days: Minimum object age before reclaiming (default: 30)
        max_files_to_scan: Ceiling per scan (default: 1000)
        auto_delete: Scheduled audits delete what they find (default: False)
        schedule_cron: Daily audit time in HH:MM format (optional)
        upload: Batch upload overrides, e.g. {"batch_size": 4}
        **kwargs: Additional configuration options

    Returns:
        Validated, immutable LifecycleConfig instance

    Example:
        config = create_config(
            bucket="media-bucket",
            allowed_prefixes=["forms/"],
            retention_days=30,
            schedule_cron="03:00",
        )
    """
    config_dict = create_empty_config()
    config_dict = with_bucket(config_dict, bucket)

    if region:
        config_dict = with_region(config_dict, region)

    if endpoint_url:
        config_dict = with_endpoint(config_dict, endpoint_url)

    if data_path:
        config_dict = with_data_path(config_dict, data_path)

    if allowed_prefixes:
        config_dict = allow_prefixes(config_dict, allowed_prefixes)
        # Scan defaults follow the allow-list unless given separately
        config_dict = scan_prefixes(config_dict, allowed_prefixes)

    if prefixes_to_scan:
        config_dict = scan_prefixes(config_dict, prefixes_to_scan)

    if patterns_to_exclude:
        config_dict = exclude_patterns(config_dict, patterns_to_exclude)

    if retention_days is not None:
        config_dict = retain_objects_older_than(config_dict, retention_days)

    if max_files_to_scan is not None:
        config_dict = limit_scan_to(config_dict, max_files_to_scan)

    if schedule_cron:
        config_dict = run_daily_at(config_dict, schedule_cron)

    if auto_delete:
        config_dict = enable_auto_delete(config_dict)

    if upload:
        config_dict = with_upload_settings(config_dict, **upload)

    for key, value in kwargs.items():
        if key in config_dict:
            config_dict[key] = value

    return build_config(config_dict)
