# SPDX-License-Identifier: LGPL-2.1-only
# Copyright (c) 2026 Akshat Kotpalliwar (alias IntegerAlex)

"""
Batch Uploads - Paced, retried uploads with error classification and metrics.

The upload surface (medialife.upload.surface) is imported separately since
it depends on the runtime state defined in medialife.core.
"""

from medialife.upload.classifier import (
    ErrorCategory,
    classify_error,
    is_programming_error,
    is_retryable,
)

from medialife.upload.retry import RetryPolicy

from medialife.upload.metrics import (
    UploadMetricsCollector,
    UploadMetricsSummary,
)

from medialife.upload.processor import (
    BatchUploadProcessor,
    BatchUploadProgress,
    BatchUploadResult,
    split_into_batches,
)

__all__ = [
    # Classifier
    "ErrorCategory",
    "classify_error",
    "is_programming_error",
    "is_retryable",
    # Retry
    "RetryPolicy",
    # Metrics
    "UploadMetricsCollector",
    "UploadMetricsSummary",
    # Processor
    "BatchUploadProcessor",
    "BatchUploadProgress",
    "BatchUploadResult",
    "split_into_batches",
]
