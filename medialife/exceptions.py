# SPDX-License-Identifier: LGPL-2.1-only
# Copyright (c) 2026 Akshat Kotpalliwar (alias IntegerAlex)

"""
Media Lifecycle Exceptions - Custom exceptions for the medialife package.

The hierarchy mirrors how failures are handled:

- ValidationError: malformed or unsafe input, never retried
- TransientError (NetworkError, ServerError, UploadTimeoutError): retried
  with bounded backoff by the batch upload processor
- AuthorizationError: surfaced immediately
- ReconciliationRaceError: object still referenced, skipped and logged
"""


class MediaLifecycleError(Exception):
    """Base exception for all medialife errors."""

    def __init__(self, message: str, details: dict | None = None):
        self.message = message
        self.details = details or {}
        super().__init__(message)

    def __str__(self) -> str:
        if self.details:
            return f"{self.message} | Details: {self.details}"
        return self.message


class ConfigurationError(MediaLifecycleError):
    """Raised when configuration is invalid."""

    pass


class ValidationError(MediaLifecycleError):
    """Raised for malformed or unsafe input (paths, sizes, types)."""

    pass


class TransientError(MediaLifecycleError):
    """Base class for failures that may succeed on a later attempt."""

    pass


class NetworkError(TransientError):
    """Raised when the backing store cannot be reached."""

    pass


class ServerError(TransientError):
    """Raised when the backing store answers with a 5xx-class failure."""

    def __init__(
        self,
        message: str,
        status_code: int | None = None,
        details: dict | None = None,
    ):
        self.status_code = status_code
        super().__init__(message, details)


class UploadTimeoutError(TransientError):
    """Raised when a single upload runs past its timeout."""

    pass


class AuthorizationError(MediaLifecycleError):
    """Raised when the caller lacks administrative rights."""

    pass


class ReconciliationRaceError(MediaLifecycleError):
    """Raised when a cleanup key is still referenced by a live record."""

    def __init__(self, key: str, reason: str, details: dict | None = None):
        self.key = key
        self.reason = reason
        super().__init__(f"Object {key!r} is still referenced: {reason}", details)


class StorageOperationError(MediaLifecycleError):
    """Raised when object storage operations fail."""

    pass


class MetadataStoreError(MediaLifecycleError):
    """Raised when metadata store operations fail."""

    pass


class JobStateError(MediaLifecycleError):
    """Raised on an invalid cleanup job state transition."""

    pass


class JobNotFoundError(MediaLifecycleError):
    """Raised when a cleanup job does not exist."""

    pass


class CleanupInProgressError(MediaLifecycleError):
    """Raised when an overlapping cleanup is already running."""

    pass
