# src/mongo_mirror/exceptions.py
"""Custom exceptions for the mongo-mirror application."""

from pymongo.errors import ConnectionFailure, OperationFailure, PyMongoError

# Server codes for a change stream whose resume point fell off the oplog.
HISTORY_LOST_CODES: frozenset = frozenset({136, 280, 286})

# WriteConflict, ExecutionTimeout and the interruption family.
_RETRYABLE_CODES: frozenset = frozenset({112, 50, 11600, 11602, 189, 91})


class MirrorError(Exception):
    """Base exception for all application-specific errors."""

    pass


class ConfigError(MirrorError):
    """Raised for configuration-related issues."""

    pass


class CheckpointError(MirrorError):
    """Raised when the checkpoint file cannot be read or written."""

    pass


class CheckpointMismatch(CheckpointError):
    """Raised when a stored checkpoint does not match the configured strategy."""

    pass


class InvalidResumeValue(MirrorError):
    """Raised when a resume value cannot be parsed as its declared type."""

    pass


class UnsupportedFieldType(MirrorError):
    """Raised when the sync field holds a value of an unsupported type."""

    pass


class ResumeTokenExpired(MirrorError):
    """Raised when the change stream can no longer resume from its token."""

    pass


class ChangeStreamInvalidated(MirrorError):
    """Raised when the source change stream reports an invalidate event."""

    pass


def is_retryable(error: BaseException) -> bool:
    """
    Decide whether a driver error is transient and worth retrying.

    Args:
        error (BaseException): The exception raised by a source or target call.

    Returns:
        bool: True for network failures and transient server conditions.
    """
    if isinstance(error, ConnectionFailure):
        return True
    if not isinstance(error, PyMongoError):
        return False
    if error.has_error_label("RetryableWriteError") or error.has_error_label(
        "TransientTransactionError"
    ):
        return True
    if isinstance(error, OperationFailure):
        return error.code in _RETRYABLE_CODES
    return False
