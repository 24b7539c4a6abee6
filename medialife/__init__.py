# SPDX-License-Identifier: LGPL-2.1-only
# Copyright (c) 2026 Akshat Kotpalliwar (alias IntegerAlex)

"""
Media Lifecycle Manager - Batch uploads and orphaned-object reconciliation.

Pushes user files into object storage in retried, paced batches, and
reclaims storage objects the metadata store no longer references, with a
retention window, prefix allow-list and a persisted job audit trail.
Package name: medialife.
"""

__version__ = "0.1.0"

# Configuration creation (user-facing API)
from medialife.builder import create_config

# Core functions
from medialife.core import (
    initialize_lifecycle_state,
    run_scan,
    run_cleanup,
    run_audit_cycle,
    cancel_cleanup_job,
    get_metrics,
    shutdown_lifecycle_state,
)

# Upload surface
from medialife.upload.surface import FileItem, upload_media_files

# Environment-based configuration and profiles (additional helpers)
from medialife.env import (
    create_config_from_env,
    safe_defaults,
    aggressive_cleanup,
    compliance_friendly,
)

__all__ = [
    # Version
    "__version__",
    # Configuration creation (primary user-facing APIs)
    "create_config",
    "create_config_from_env",
    "safe_defaults",
    "aggressive_cleanup",
    "compliance_friendly",
    # Core orchestration functions
    "initialize_lifecycle_state",
    "run_scan",
    "run_cleanup",
    "run_audit_cycle",
    "cancel_cleanup_job",
    "get_metrics",
    "shutdown_lifecycle_state",
    # Uploads
    "FileItem",
    "upload_media_files",
]
