"""
Job-related type definitions.
"""

import json
from dataclasses import dataclass, field
from datetime import UTC, datetime
from typing import Any, TypeVar
from uuid import uuid4

from pydantic import BaseModel, Field

from jobqueue.constants import DEFAULT_MAX_RETRIES, TERMINAL_STATES, JobState

PayloadT = TypeVar("PayloadT", bound=BaseModel)


def utc_now() -> datetime:
    """Current time as an aware UTC datetime."""
    return datetime.now(UTC)


class Job(BaseModel):
    """
    The unit of work stored in the queue.

    `id` is the only correlation key across queue states. `payload` is an
    opaque serialized blob agreed between producer and handler; the queue
    never inspects it.
    """

    id: str = Field(default_factory=lambda: str(uuid4()))
    job_type: str
    payload: str
    created_at: datetime = Field(default_factory=utc_now)
    retry_count: int = 0
    max_retries: int = DEFAULT_MAX_RETRIES
    error_message: str | None = None

    state: JobState = JobState.PENDING
    lease_owner: str | None = None
    claimed_at: datetime | None = None
    available_at: datetime | None = None
    finished_at: datetime | None = None
    result: str | None = None

    # Lease deadline lives in the in-flight index, not in the record
    lease_expires_at: datetime | None = Field(default=None, exclude=True)

    @property
    def is_terminal(self) -> bool:
        """Check if the job reached completed or dead-letter."""
        return self.state in TERMINAL_STATES

    def payload_as(self, model: type[PayloadT]) -> PayloadT:
        """Decode the payload into the given pydantic model."""
        return model.model_validate_json(self.payload)

    def payload_json(self) -> Any:
        """Decode the payload as plain JSON."""
        return json.loads(self.payload)

    def to_record(self) -> dict[str, str]:
        """
        Flatten the job into a Redis hash mapping.

        None values are omitted; absent fields read back as None.
        """
        data = self.model_dump(mode="json", exclude_none=True)
        return {key: str(value) for key, value in data.items()}

    @classmethod
    def from_record(cls, record: dict[str, str]) -> "Job":
        """Rebuild a job from a Redis hash mapping."""
        return cls.model_validate(record)


class JobResult(BaseModel):
    """
    Result of job execution.
    Returned by job handlers after processing.
    """

    success: bool
    output: dict[str, Any] | None = None
    error: str | None = None


@dataclass
class JobContext:
    """
    Context passed to job handlers during execution.
    Contains the claimed job and lease information for the handler.
    """

    job: Job
    worker_id: str
    lease_expires_at: datetime
    started_at: datetime = field(default_factory=utc_now)

    @property
    def job_id(self) -> str:
        return self.job.id

    @property
    def attempt(self) -> int:
        """1-based attempt number of this execution."""
        return self.job.retry_count + 1

    @property
    def is_last_attempt(self) -> bool:
        """Check if a failure now would dead-letter the job."""
        return self.job.retry_count + 1 >= self.job.max_retries

    @property
    def remaining_attempts(self) -> int:
        """Get remaining retry attempts after this one."""
        return max(0, self.job.max_retries - self.attempt)


class QueueStats(BaseModel):
    """Number of jobs held in each queue state."""

    pending: int = 0
    scheduled: int = 0
    in_flight: int = 0
    completed: int = 0
    dead_letter: int = 0

    def as_dict(self) -> dict[str, int]:
        return {
            JobState.PENDING.value: self.pending,
            JobState.SCHEDULED.value: self.scheduled,
            JobState.IN_FLIGHT.value: self.in_flight,
            JobState.COMPLETED.value: self.completed,
            JobState.DEAD_LETTER.value: self.dead_letter,
        }
