"""Failure taxonomy for the sync engine.

Handlers and clients raise; only the worker loop decides what a failure means
for the task that caused it:

- TransientError: retried until the task runs out of attempts.
- PermanentError: the task is failed immediately.
- MappingMissingError: the subject is gone, the task completes as a no-op.
- FatalSyncError: the worker cycle stops and reports the error.
"""
from __future__ import annotations


class SyncError(Exception):
    pass


class TransientError(SyncError):
    pass


class PermanentError(SyncError):
    pass


class FatalSyncError(SyncError):
    pass


class MappingMissingError(SyncError):
    pass


class RateLimitedError(TransientError):
    def __init__(self, message: str = "rate_limited", retry_after: float = 10.0):
        super().__init__(message)
        self.retry_after = retry_after


class ServerError(TransientError):
    def __init__(self, message: str, status_code: int | None = None):
        super().__init__(message)
        self.status_code = status_code


class NetworkError(TransientError):
    pass


class IntegrityError(TransientError):
    """Downloaded or uploaded bytes do not match the expected size/fingerprint."""


class ParentNotReadyError(TransientError):
    pass


class IncorrectOffsetError(TransientError):
    def __init__(self, message: str, correct_offset: int):
        super().__init__(message)
        self.correct_offset = correct_offset


class TaskValidationError(PermanentError):
    pass


class UnknownTaskError(PermanentError):
    pass


class RemoteApiError(PermanentError):
    def __init__(self, message: str, status_code: int | None = None, summary: str = ""):
        super().__init__(message)
        self.status_code = status_code
        self.summary = summary


class RemoteConflictError(RemoteApiError):
    pass


class RemoteNotFoundError(MappingMissingError):
    pass


class UnauthorizedError(FatalSyncError):
    pass


class ConfigurationError(FatalSyncError):
    pass


class SchemaMissingError(FatalSyncError):
    pass
