# SPDX-License-Identifier: LGPL-2.1-only
# Copyright (c) 2026 Akshat Kotpalliwar (alias IntegerAlex)

"""
Human-friendly error message helpers for medialife.

These helpers centralize wording for common configuration and input errors
so that all modules present consistent, actionable messages.
"""


def explain_missing_bucket_env() -> str:
    """
    Explain that the S3 bucket environment variable is missing.
    """

    return (
        "Object storage bucket is not configured. "
        "Set the S3_BUCKET environment variable or pass bucket=... to create_config()."
    )


def explain_invalid_retention_days_env(value: str | None) -> str:
    """
    Explain that MEDIALIFE_RETENTION_DAYS is invalid.
    """

    return (
        f"Invalid MEDIALIFE_RETENTION_DAYS value: {value!r}. "
        "It must be a non-negative integer number of days."
    )


def explain_invalid_max_files_env(value: str | None) -> str:
    """
    Explain that MEDIALIFE_MAX_FILES is invalid.
    """

    return (
        f"Invalid MEDIALIFE_MAX_FILES value: {value!r}. "
        "It must be a positive integer."
    )


def explain_invalid_bool_env(name: str, value: str | None) -> str:
    """
    Explain that a boolean environment variable is invalid.
    """

    return (
        f"Invalid {name} value: {value!r}. "
        "Expected one of: 'true', 'false', '1', '0', 'yes', 'no'."
    )


def explain_prefix_not_allowed(prefix: str, allowed: list[str]) -> str:
    """
    Explain that a scan prefix is outside the allow-list.
    """

    return (
        f"Prefix {prefix!r} is not on the allow-list. "
        f"Allowed prefixes: {', '.join(allowed) or '(none)'}."
    )


def explain_unsafe_key(key: str, reason: str) -> str:
    """
    Explain why an object key was rejected before any storage call.
    """

    return f"Unsafe object key {key[:120]!r}: {reason}."
