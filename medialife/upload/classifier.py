# SPDX-License-Identifier: LGPL-2.1-only
# Copyright (c) 2026 Akshat Kotpalliwar (alias IntegerAlex)

"""
Upload Error Classifier - Decides whether a failed upload may be retried.

Classification looks at the exception type first, then at any HTTP-like
status code carried by the exception, and finally at the message text.
"""

import asyncio
from enum import Enum

from botocore.exceptions import (
    ClientError,
    ConnectionClosedError,
    EndpointConnectionError,
    ReadTimeoutError,
    ConnectTimeoutError,
)

from medialife.exceptions import (
    AuthorizationError,
    NetworkError,
    ServerError,
    UploadTimeoutError,
    ValidationError,
)


class ErrorCategory(str, Enum):
    """Failure category of a single upload attempt."""

    VALIDATION = "validation"
    AUTHORIZATION = "authorization"
    NETWORK = "network"
    SERVER = "server"
    TIMEOUT = "timeout"
    UNKNOWN = "unknown"


RETRYABLE_CATEGORIES = frozenset(
    {
        ErrorCategory.NETWORK,
        ErrorCategory.SERVER,
        ErrorCategory.TIMEOUT,
        ErrorCategory.UNKNOWN,
    }
)

# Bugs in the upload function, never classified or retried
PROGRAMMING_ERRORS = (
    AssertionError,
    AttributeError,
    ImportError,
    NameError,
    NotImplementedError,
    TypeError,
)

_NETWORK_MARKERS = ("network", "connection", "offline", "fetch", "unreachable")
_VALIDATION_MARKERS = ("invalid", "unsupported", "too large", "validation", "file signature")
_AUTH_MARKERS = ("unauthorized", "forbidden", "access denied")


def is_programming_error(error: BaseException) -> bool:
    """Return True for exceptions that indicate a bug rather than a failure."""
    return isinstance(error, PROGRAMMING_ERRORS)


def is_retryable(category: ErrorCategory) -> bool:
    """Return True if uploads failing with this category may be retried."""
    return category in RETRYABLE_CATEGORIES


def _status_code(error: BaseException) -> int | None:
    if isinstance(error, ClientError):
        meta = error.response.get("ResponseMetadata", {})
        status = meta.get("HTTPStatusCode")
        if status is not None:
            return int(status)

    for attr in ("status_code", "status"):
        value = getattr(error, attr, None)
        if isinstance(value, int):
            return value

    response = getattr(error, "response", None)
    value = getattr(response, "status_code", None)
    if isinstance(value, int):
        return value

    return None


def _category_from_status(status: int) -> ErrorCategory | None:
    if status in (408, 504):
        return ErrorCategory.TIMEOUT
    if status in (0, 503):
        return ErrorCategory.NETWORK
    if status in (401, 403):
        return ErrorCategory.AUTHORIZATION
    if status in (400, 404, 411, 413, 415, 422):
        return ErrorCategory.VALIDATION
    if 500 <= status < 600:
        return ErrorCategory.SERVER
    return None


def classify_error(error: BaseException) -> ErrorCategory:
    """
    Categorize an upload failure.

    Args:
        error: Exception raised by an upload attempt

    Returns:
        The ErrorCategory the failure belongs to
    """
    # Our own taxonomy
    if isinstance(error, ValidationError):
        return ErrorCategory.VALIDATION
    if isinstance(error, AuthorizationError):
        return ErrorCategory.AUTHORIZATION
    if isinstance(error, UploadTimeoutError):
        return ErrorCategory.TIMEOUT
    if isinstance(error, NetworkError):
        return ErrorCategory.NETWORK
    if isinstance(error, ServerError):
        return ErrorCategory.SERVER

    # Transport-level failures
    if isinstance(error, (asyncio.TimeoutError, ReadTimeoutError, ConnectTimeoutError)):
        return ErrorCategory.TIMEOUT
    if isinstance(error, (EndpointConnectionError, ConnectionClosedError, ConnectionError)):
        return ErrorCategory.NETWORK

    status = _status_code(error)
    if status is not None:
        category = _category_from_status(status)
        if category is not None:
            return category

    message = str(error).lower()
    if "timeout" in message or "timed out" in message:
        return ErrorCategory.TIMEOUT
    if any(marker in message for marker in _NETWORK_MARKERS):
        return ErrorCategory.NETWORK
    if any(marker in message for marker in _AUTH_MARKERS):
        return ErrorCategory.AUTHORIZATION
    if any(marker in message for marker in _VALIDATION_MARKERS):
        return ErrorCategory.VALIDATION

    return ErrorCategory.UNKNOWN
