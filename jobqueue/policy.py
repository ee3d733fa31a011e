"""
Retry / dead-letter policy.

Decides, after a failed attempt has been counted, whether a job goes back
into rotation (optionally after a backoff delay) or is archived in the
dead-letter list for good.
"""

from dataclasses import dataclass
from typing import Literal

from jobqueue.config import Settings, get_settings
from jobqueue.types.job import Job

BackoffStrategy = Literal["none", "fixed", "exponential"]


@dataclass(frozen=True, slots=True)
class RetryDecision:
    retry: bool
    delay_seconds: float = 0.0


@dataclass(frozen=True, slots=True)
class RetryPolicy:
    """
    Bounded retry with configurable backoff.

    A job is retried while its retry_count (already incremented for the
    current failure) is below max_retries. The default strategy, "none",
    retries immediately on the next poll cycle.
    """

    strategy: BackoffStrategy = "none"
    base_seconds: float = 1.0
    max_seconds: float = 300.0

    @classmethod
    def from_settings(cls, settings: Settings | None = None) -> "RetryPolicy":
        settings = settings or get_settings()
        return cls(
            strategy=settings.retry_backoff_strategy,
            base_seconds=settings.retry_backoff_base_seconds,
            max_seconds=settings.retry_backoff_max_seconds,
        )

    def should_retry(self, job: Job) -> bool:
        return job.retry_count < job.max_retries

    def delay_for(self, retry_count: int) -> float:
        """
        Backoff before the given retry.

        Args:
            retry_count: Number of failures recorded so far (>= 1).

        Returns:
            Delay in seconds, capped at max_seconds.
        """
        if self.strategy == "none" or retry_count <= 0:
            return 0.0
        if self.strategy == "fixed":
            delay = self.base_seconds
        else:
            delay = self.base_seconds * (2 ** (retry_count - 1))
        return max(0.0, min(delay, self.max_seconds))

    def decide(self, job: Job) -> RetryDecision:
        if not self.should_retry(job):
            return RetryDecision(retry=False)
        return RetryDecision(retry=True, delay_seconds=self.delay_for(job.retry_count))
