"""Error taxonomy for transcription jobs.

Every failure that reaches the orchestrator is one of these. The message is
what gets recorded against the operation, so providers put the remote
provider's own wording in it.
"""

from typing import Optional


class TranscriptionError(Exception):
    """Base class. ``retryable`` says whether the job-level retry may help."""

    retryable = True

    def __init__(self, message: str):
        super().__init__(message)
        self.message = message


class ConfigurationError(TranscriptionError):
    """A required config field is missing. Raised before any network call."""

    retryable = False

    def __init__(self, message: str, errors: Optional[list[str]] = None):
        super().__init__(message)
        self.errors = errors or []


class NetworkError(TranscriptionError):
    """Transport-level failure (DNS, connect, read timeout, reset)."""


class RemoteRejection(TranscriptionError):
    """Non-success HTTP status with the remote-provided message."""

    retryable = False

    def __init__(self, message: str, status_code: int):
        super().__init__(message)
        self.status_code = status_code


class RemoteJobFailure(TranscriptionError):
    """The remote job reported Failed or Cancelled."""


class PollTimeout(TranscriptionError):
    """Poll budget exhausted before the remote job finished."""


class TranscriptionCancelled(TranscriptionError):
    """The job was cancelled locally while it was running."""


class RetryRejected(TranscriptionError):
    """A retry request was refused."""

    retryable = False


class MaxRetriesExceeded(RetryRejected):
    """The per-job retry ceiling has been reached."""
