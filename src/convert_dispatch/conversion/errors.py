"""
Dispatch error types.

All errors inherit from DispatchError so the transport can catch them in one
place. Validation and not-found errors are raised synchronously to callers;
backend and storage errors raised during background execution are recorded
on the job instead.
"""

from typing import Iterable


class DispatchError(Exception):
    """Base exception for all dispatch failures."""
    pass


class ValidationError(DispatchError):
    """Raised when a request cannot be matched to a conversion."""

    def __init__(self, reason: str, suggestions: Iterable[str] = ()):
        self.reason = reason
        self.suggestions = list(suggestions)
        super().__init__(reason)


class UploadTooLargeError(ValidationError):
    def __init__(self, max_bytes: int):
        self.max_bytes = max_bytes
        super().__init__(f"upload exceeds {max_bytes / (1024 * 1024):g} MB")


class NotFoundError(DispatchError):
    """Raised for unknown jobs and for jobs owned by another caller.

    The message is identical in both cases.
    """

    def __init__(self, job_id: str):
        self.job_id = job_id
        super().__init__(f"Job '{job_id}' not found")


class BackendError(DispatchError):
    """Raised when the external conversion backend fails."""

    def __init__(self, message: str, status_code: int | None = None):
        self.status_code = status_code
        super().__init__(message)


class StorageError(DispatchError):
    """Raised when upload or output files cannot be read or written."""
    pass
