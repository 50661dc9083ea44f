"""Error taxonomy for the reconciliation core.

Every error raised by the core carries an ErrorKind so the operator-facing
layer can report the last error kind without inspecting exception classes.

Remote adapter errors are classified exactly once, at the boundary, by
classify_remote_error(). After that they propagate with the classification
attached and are never swallowed.
"""

from __future__ import annotations

from enum import Enum
from typing import Any


class ErrorKind(str, Enum):
    """Classification attached to every core error."""

    NOT_FOUND = "not_found"
    AMBIGUOUS = "ambiguous"
    REQUIRES_REPLACEMENT = "requires_replacement"
    RETRYABLE = "retryable"
    FATAL = "fatal"
    PARTIAL_FAILURE = "partial_failure"
    TIMEOUT = "timeout"
    LOCK_TIMEOUT = "lock_timeout"
    INVALID_PLAN = "invalid_plan"
    CANCELLED = "cancelled"


class ProvisionerError(Exception):
    """Base class for all reconciliation core errors."""

    kind: ErrorKind = ErrorKind.FATAL


class NotFoundError(ProvisionerError):
    """Raised when a referenced remote object does not exist."""

    kind = ErrorKind.NOT_FOUND

    def __init__(self, message: str, object_id: str = "") -> None:
        super().__init__(message)
        self.object_id = object_id


class RetryableRemoteError(ProvisionerError):
    """Raised when the remote object is busy with a concurrent operation."""

    kind = ErrorKind.RETRYABLE


class FatalRemoteError(ProvisionerError):
    """Raised for remote failures that retrying will not fix."""

    kind = ErrorKind.FATAL


class InvalidPlanError(ProvisionerError):
    """Raised when a plan or a desired state is rejected before any remote call."""

    kind = ErrorKind.INVALID_PLAN


class OperationTimeoutError(ProvisionerError, TimeoutError):
    """Raised when a blocking remote call exceeds the timeout budget."""

    kind = ErrorKind.TIMEOUT

    def __init__(self, message: str, operation: str = "") -> None:
        super().__init__(message)
        self.operation = operation


class LockTimeoutError(OperationTimeoutError):
    """Raised when a lock scope could not be acquired within the budget."""

    kind = ErrorKind.LOCK_TIMEOUT

    def __init__(self, message: str, scope_key: str) -> None:
        super().__init__(message, operation=f"lock {scope_key}")
        self.scope_key = scope_key


# Remote adapters may signal busy objects with these substrings instead of
# raising RetryableRemoteError directly
BUSY_MARKERS = (
    "busy completing an operation",
    "is busy",
    "another operation is in progress",
)


def classify_remote_error(error: BaseException) -> ProvisionerError:
    """Classify an exception raised by a remote adapter.

    Args:
        error: The exception raised by the Remote Resource API.

    Returns:
        The error itself when already classified, otherwise a
        RetryableRemoteError or FatalRemoteError chained to the original.
    """
    if isinstance(error, ProvisionerError):
        return error

    message = str(error)
    lowered = message.lower()
    if any(marker in lowered for marker in BUSY_MARKERS):
        classified: ProvisionerError = RetryableRemoteError(message)
    else:
        classified = FatalRemoteError(f"{type(error).__name__}: {message}")
    classified.__cause__ = error
    return classified


def error_kind(error: BaseException | None) -> ErrorKind | None:
    """Return the ErrorKind of an error, or None when there is no error."""
    if error is None:
        return None
    kind: Any = getattr(error, "kind", None)
    if isinstance(kind, ErrorKind):
        return kind
    return ErrorKind.FATAL
