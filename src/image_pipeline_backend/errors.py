"""
Error taxonomy for the image pipeline.

Submission-time errors are raised synchronously to the caller; processing-time
errors only ever surface through status events.
"""

from __future__ import annotations


class PipelineError(Exception):
    """Base class for all pipeline errors."""


class BatchValidationError(PipelineError, ValueError):
    """Raised when a submitted batch is empty or larger than the configured maximum."""


class TransformError(PipelineError):
    """Base class for failures raised by transform functions."""


class TransientTransformError(TransformError):
    """A transform failure worth retrying (bounded by the retry policy)."""


class PermanentTransformError(TransformError):
    """A transform failure that no retry can fix, such as corrupt content."""


class InjectedFault(TransientTransformError):
    """Failure forced by a fault-injection predicate."""


class StoreIOError(PipelineError):
    """The job store file could not be read or written."""


class QueueConnectivityError(PipelineError):
    """The broker is unreachable or the connection dropped mid-operation."""


class IllegalTransitionError(PipelineError):
    """A worker attempted a status change the lifecycle does not allow."""

    def __init__(self, current: str, requested: str) -> None:
        super().__init__(f"Illegal status transition {current} -> {requested}")
        self.current = current
        self.requested = requested
