"""
Defines custom exception types for the media job queue.

These exceptions allow pipelines to fail with a specific, expressive reason
instead of a generic `Exception`. Every one of them is caught at the pipeline
boundary and turned into exactly one terminal progress event, so none of them
ever reaches the queue that owns the job.

All custom exceptions inherit from the base `MediaQueueException`.
"""
from typing import Optional


class MediaQueueException(Exception):
    """Base class for all custom exceptions in the media job queue."""

    pass


# --- Input errors: deterministic, never retried ---
class InputException(MediaQueueException):
    """
    Base class for problems with what the caller asked for.

    Retrying an input error without changing the input reproduces the same
    failure, so these end the job immediately.
    """

    pass


class InvalidPayloadException(InputException):
    """Raised when a payload is missing a field or carries a value of the wrong shape."""

    pass


class UnsupportedFormatException(InputException):
    """Raised when no conversion route exists for the input/output combination."""

    pass


class NoDurationFoundException(InputException):
    """
    Raised when the duration of an input cannot be determined.

    Bitrate allocation and encoder progress both need a positive duration, and a
    guessed value is never used in its place.
    """

    pass


class OutputPathException(InputException):
    """Raised when an output-path policy returns a path that breaks its contract."""

    pass


# --- Process errors ---
class ProcessException(MediaQueueException):
    """Base class for failures of an external tool."""

    pass


class ProcessSpawnException(ProcessException):
    """Raised when an executable cannot be started (missing, permission denied, ...)."""

    pass


class ProcessFailedException(ProcessException):
    """
    Raised when a tool exits with a non-zero code that was not caused by cancellation.

    Attributes:
        returncode: The exit code reported by the process.
    """

    def __init__(self, message: str, returncode: Optional[int] = None):
        super().__init__(message)
        self.returncode = returncode


class OutputMissingException(MediaQueueException):
    """Raised when a tool reported success but its output file is missing or empty."""

    pass


# --- Control flow ---
class JobCanceledException(MediaQueueException):
    """
    Raised at a stage boundary once the job's cancellation flag is set.

    This is not an error. The pipeline boundary recognises it, cleans up partial
    output and lets the already-delivered `canceled` event stand.
    """

    pass
