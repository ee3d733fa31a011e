"""
Type definitions for the job queue.
Contains the job record, handler input/output types, and payload schemas.
"""

from jobqueue.types.job import (
    Job,
    JobContext,
    JobResult,
    QueueStats,
)
from jobqueue.types.payloads import (
    EmailPayload,
    PaymentPayload,
    ReportPayload,
)

__all__ = [
    # Job types
    "Job",
    "JobResult",
    "JobContext",
    "QueueStats",
    # Payload types
    "EmailPayload",
    "PaymentPayload",
    "ReportPayload",
]
