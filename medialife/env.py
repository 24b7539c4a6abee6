# SPDX-License-Identifier: LGPL-2.1-only
# Copyright (c) 2026 Akshat Kotpalliwar (alias IntegerAlex)

"""
Environment-based configuration helpers and safety profiles.

These helpers are small, convenient wrappers around create_config() and
LifecycleConfig.with_updates(). They make it easy to:

- Build a configuration from environment variables
- Apply ready-made safety profiles
"""

from __future__ import annotations

import os
from pathlib import Path
from typing import List

from medialife.builder import create_config
from medialife.config import LifecycleConfig
from medialife.errors import (
    explain_invalid_bool_env,
    explain_invalid_max_files_env,
    explain_invalid_retention_days_env,
    explain_missing_bucket_env,
)
from medialife.exceptions import ConfigurationError

_TRUE_VALUES = {"1", "true", "yes", "on"}
_FALSE_VALUES = {"0", "false", "no", "off"}


def _parse_retention_days(value: str | None) -> int:
    if not value:
        return 30
    try:
        days = int(value)
    except (TypeError, ValueError) as exc:
        raise ConfigurationError(explain_invalid_retention_days_env(value)) from exc
    if days < 0:
        raise ConfigurationError(explain_invalid_retention_days_env(value))
    return days


def _parse_max_files(value: str | None) -> int | None:
    if not value:
        return None
    try:
        count = int(value)
    except (TypeError, ValueError) as exc:
        raise ConfigurationError(explain_invalid_max_files_env(value)) from exc
    if count < 1:
        raise ConfigurationError(explain_invalid_max_files_env(value))
    return count


def _parse_bool(name: str, value: str | None) -> bool:
    if not value:
        return False
    lowered = value.strip().lower()
    if lowered in _TRUE_VALUES:
        return True
    if lowered in _FALSE_VALUES:
        return False
    raise ConfigurationError(explain_invalid_bool_env(name, value))


def _parse_prefixes(value: str | None) -> List[str]:
    if not value:
        return []
    return [p.strip() for p in value.split(",") if p.strip()]


def create_config_from_env() -> LifecycleConfig:
    """
    Create a LifecycleConfig from environment variables.

    Required:
        - S3_BUCKET: Name of the bucket holding media objects

    Optional environment variables:
        - AWS_REGION: Region (default: us-east-1)
        - S3_ENDPOINT_URL: S3-compatible endpoint (R2, MinIO)
        - MEDIALIFE_DATA_PATH: Metadata directory (default: ./medialife_data)
        - MEDIALIFE_RETENTION_DAYS: Non-negative integer (default: 30)
        - MEDIALIFE_ALLOWED_PREFIXES: Comma-separated prefixes, e.g. "forms/,uploads/"
        - MEDIALIFE_MAX_FILES: Positive integer scan ceiling (default: 1000)
        - MEDIALIFE_SCHEDULE_CRON: Daily audit time in HH:MM (UTC)
        - MEDIALIFE_AUTO_DELETE: 'true' | 'false' (default: false)
    """

    bucket = os.getenv("S3_BUCKET")
    if not bucket:
        raise ConfigurationError(explain_missing_bucket_env())

    data_path_env = os.getenv("MEDIALIFE_DATA_PATH")

    return create_config(
        bucket=bucket,
        region=os.getenv("AWS_REGION", "us-east-1"),
        endpoint_url=os.getenv("S3_ENDPOINT_URL") or None,
        data_path=Path(data_path_env) if data_path_env else None,
        allowed_prefixes=_parse_prefixes(os.getenv("MEDIALIFE_ALLOWED_PREFIXES")) or None,
        retention_days=_parse_retention_days(os.getenv("MEDIALIFE_RETENTION_DAYS")),
        max_files_to_scan=_parse_max_files(os.getenv("MEDIALIFE_MAX_FILES")),
        schedule_cron=os.getenv("MEDIALIFE_SCHEDULE_CRON") or None,
        auto_delete=_parse_bool("MEDIALIFE_AUTO_DELETE", os.getenv("MEDIALIFE_AUTO_DELETE")),
    )


# ============================================================================
# Profiles
# ============================================================================

def safe_defaults(config: LifecycleConfig) -> LifecycleConfig:
    """
    Apply conservative, safety-first defaults.

    - Scheduled audits never delete
    - Ensure at least 30 days retention
    - Smaller scan ceiling
    """

    return config.with_updates(
        auto_delete=False,
        retention_days=max(config.retention_days, 30),
        max_files_to_scan=min(config.max_files_to_scan, 1000),
    )


def aggressive_cleanup(config: LifecycleConfig) -> LifecycleConfig:
    """
    Apply a more aggressive cleanup profile.

    - Scheduled audits delete what they find
    - Shorter retention (at most 7 days)
    - Larger scan ceiling
    """

    return config.with_updates(
        auto_delete=True,
        retention_days=min(config.retention_days, 7),
        max_files_to_scan=max(config.max_files_to_scan, 10000),
    )


def compliance_friendly(config: LifecycleConfig) -> LifecycleConfig:
    """
    Apply a compliance-friendly profile.

    - Report only, never delete on a schedule
    - Longer retention (at least 90 days)
    - Keeps exports and legal holds out of every scan
    """

    patterns = list(config.exclude_patterns)
    for p in ("*/legal-hold/*", "*/exports/*"):
        if p not in patterns:
            patterns.append(p)

    return config.with_updates(
        auto_delete=False,
        retention_days=max(config.retention_days, 90),
        exclude_patterns=patterns,
    )
