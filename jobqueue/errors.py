"""
Error taxonomy for the job queue.

Only StoreUnavailable ever reaches producers. Handler problems are routed
through the failure path by the dispatcher, and reporting races are logged
rather than raised.
"""


class QueueError(Exception):
    """Base class for job queue errors."""


class StoreUnavailable(QueueError):
    """The job store could not be reached (connection refused, timeout)."""

    def __init__(self, operation: str, cause: Exception | None = None):
        self.operation = operation
        self.cause = cause
        detail = f": {cause}" if cause is not None else ""
        super().__init__(f"job store unavailable during {operation}{detail}")


class HandlerMissing(QueueError):
    """No handler is registered for a job type."""

    def __init__(self, job_type: str):
        self.job_type = job_type
        super().__init__(f"no handler for job type: {job_type}")


class HandlerError(QueueError):
    """Raised by handlers to signal that processing failed."""
