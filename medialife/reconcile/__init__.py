# SPDX-License-Identifier: LGPL-2.1-only
# Copyright (c) 2026 Akshat Kotpalliwar (alias IntegerAlex)

"""
Reconciliation - Orphan scanning and guarded deletion.
"""

from medialife.reconcile.paths import (
    validate_scan_prefixes,
    validate_cleanup_keys,
    keys_for_media_object,
)

from medialife.reconcile.scanner import (
    build_valid_key_set,
    scan_for_orphans,
    OrphanCandidate,
    ScanResult,
)

from medialife.reconcile.executor import (
    delete_orphans,
    filter_referenced_keys,
    CleanupResult,
)

__all__ = [
    "validate_scan_prefixes",
    "validate_cleanup_keys",
    "keys_for_media_object",
    "build_valid_key_set",
    "scan_for_orphans",
    "OrphanCandidate",
    "ScanResult",
    "delete_orphans",
    "filter_referenced_keys",
    "CleanupResult",
]
