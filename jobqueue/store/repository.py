"""
Job store operations.
Implements the core data access patterns for queue management on Redis.
"""

import functools
import json
import logging
from collections.abc import Awaitable, Callable
from dataclasses import dataclass
from datetime import UTC, datetime, timedelta
from typing import Any, ParamSpec, TypeVar

from pydantic import ValidationError
from redis.asyncio import Redis
from redis.exceptions import ConnectionError as RedisConnectionError
from redis.exceptions import TimeoutError as RedisTimeoutError
from redis.exceptions import WatchError

from jobqueue.config import Settings, get_settings
from jobqueue.constants import (
    KEY_COMPLETED,
    KEY_DEAD_LETTER,
    KEY_IN_FLIGHT,
    KEY_JOB_RECORD,
    KEY_PENDING,
    KEY_SCHEDULED,
    MAX_REPORT_ATTEMPTS,
    JobState,
)
from jobqueue.errors import QueueError, StoreUnavailable
from jobqueue.observability.metrics import get_metrics
from jobqueue.policy import RetryPolicy
from jobqueue.store.scripts import CLAIM_JOB, EXTEND_LEASE, RECOVER_EXPIRED
from jobqueue.types.job import Job, QueueStats, utc_now

logger = logging.getLogger(__name__)

P = ParamSpec("P")
R = TypeVar("R")


def _to_ms(moment: datetime) -> int:
    return int(moment.timestamp() * 1000)


def _from_ms(value: float) -> datetime:
    return datetime.fromtimestamp(value / 1000, tz=UTC)


def store_operation(
    operation: str,
) -> Callable[[Callable[P, Awaitable[R]]], Callable[P, Awaitable[R]]]:
    """
    Translate transport failures into StoreUnavailable.

    Args:
        operation: Name recorded in the error and the store error metric.
    """
    def decorator(func: Callable[P, Awaitable[R]]) -> Callable[P, Awaitable[R]]:
        @functools.wraps(func)
        async def wrapper(*args: P.args, **kwargs: P.kwargs) -> R:
            try:
                return await func(*args, **kwargs)
            except (RedisConnectionError, RedisTimeoutError) as e:
                get_metrics().record_store_error(operation)
                raise StoreUnavailable(operation, e) from e
        return wrapper
    return decorator


@dataclass(frozen=True, slots=True)
class StoreKeys:
    """Redis key layout under a common prefix."""

    prefix: str

    @property
    def pending(self) -> str:
        return f"{self.prefix}:{KEY_PENDING}"

    @property
    def in_flight(self) -> str:
        return f"{self.prefix}:{KEY_IN_FLIGHT}"

    @property
    def completed(self) -> str:
        return f"{self.prefix}:{KEY_COMPLETED}"

    @property
    def dead_letter(self) -> str:
        return f"{self.prefix}:{KEY_DEAD_LETTER}"

    @property
    def scheduled(self) -> str:
        return f"{self.prefix}:{KEY_SCHEDULED}"

    @property
    def job_prefix(self) -> str:
        return f"{self.prefix}:{KEY_JOB_RECORD}:"

    def job(self, job_id: str) -> str:
        return f"{self.job_prefix}{job_id}"


class JobStore:
    """
    Shared job store backed by Redis.

    Implements atomic operations for:
    - Job submission (record write + push to the pending head)
    - Claiming (pop the pending tail into the in-flight index, via Lua)
    - Completion and failure reporting (WATCH/MULTI on the job record)
    - Lease extension and expiry recovery

    Pending, completed and dead-letter are lists of job ids. In-flight is a
    sorted set of job id -> lease deadline, so reporting looks a job up by
    key instead of scanning. Records live in one hash per job.
    """

    def __init__(
        self,
        client: Redis,
        settings: Settings | None = None,
        policy: RetryPolicy | None = None,
    ):
        """
        Initialize the store.

        Args:
            client: The async Redis client.
            settings: Optional settings override.
            policy: Retry policy applied on failure. Built from settings
                when omitted.
        """
        self._redis = client
        self._settings = settings or get_settings()
        self._policy = policy or RetryPolicy.from_settings(self._settings)
        self.keys = StoreKeys(self._settings.queue_key_prefix)

        self._claim_script = client.register_script(CLAIM_JOB)
        self._extend_script = client.register_script(EXTEND_LEASE)
        self._recover_script = client.register_script(RECOVER_EXPIRED)

    @property
    def policy(self) -> RetryPolicy:
        return self._policy

    @store_operation("push")
    async def push(self, job: Job) -> Job:
        """
        Store a new job and push it onto the head of the pending list.

        Args:
            job: The job to store. Must be in the pending state.

        Returns:
            The stored job.
        """
        async with self._redis.pipeline(transaction=True) as pipe:
            pipe.hset(self.keys.job(job.id), mapping=job.to_record())
            pipe.lpush(self.keys.pending, job.id)
            await pipe.execute()

        logger.info(
            "Job pushed to pending",
            extra={"job_id": job.id, "job_type": job.job_type},
        )
        return job

    @store_operation("claim")
    async def claim(
        self,
        worker_id: str,
        now: datetime | None = None,
    ) -> Job | None:
        """
        Atomically move the oldest pending job into in-flight.

        This is the critical path for job distribution. The pop, the lease
        and the record update happen in one Lua script, so two dispatchers
        can never claim the same job. Scheduled retries whose backoff has
        elapsed are promoted to the pending head first.

        Args:
            worker_id: The claiming dispatcher.
            now: Override of the current time (tests).

        Returns:
            The claimed job, or None if nothing is claimable.
        """
        now = now or utc_now()
        lease_expires_at = now + timedelta(
            seconds=self._settings.worker_lease_duration_seconds
        )

        job_id = await self._claim_script(
            keys=[self.keys.pending, self.keys.in_flight, self.keys.scheduled],
            args=[
                _to_ms(now),
                _to_ms(lease_expires_at),
                worker_id,
                self.keys.job_prefix,
                now.isoformat(),
                self._settings.reaper_batch_size,
            ],
        )
        if job_id is None:
            return None

        record = await self._redis.hgetall(self.keys.job(job_id))
        if not record:
            # Dangling id with no record; drop it so it is not re-leased forever
            await self._redis.zrem(self.keys.in_flight, job_id)
            logger.error(
                "Claimed job has no record, discarding",
                extra={"job_id": job_id, "worker_id": worker_id},
            )
            return None

        try:
            job = Job.from_record(record)
        except ValidationError as e:
            await self._dead_letter_invalid(job_id, e, now)
            return None
        job.lease_expires_at = lease_expires_at

        logger.info(
            "Claimed job",
            extra={
                "job_id": job.id,
                "job_type": job.job_type,
                "worker_id": worker_id,
                "retry_count": job.retry_count,
            },
        )
        return job

    async def _dead_letter_invalid(
        self,
        job_id: str,
        error: ValidationError,
        now: datetime,
    ) -> None:
        """
        Move a claimed job whose record cannot be decoded to dead-letter.

        Such a job can never be dispatched, so retrying it only loops it
        through lease expiry. Only the state fields of the raw record are
        rewritten; the rest is kept for inspection.
        """
        message = f"invalid job record: {error.error_count()} validation error(s)"
        key = self.keys.job(job_id)

        async with self._redis.pipeline(transaction=True) as pipe:
            pipe.zrem(self.keys.in_flight, job_id)
            pipe.hdel(key, "lease_owner", "claimed_at")
            pipe.hset(
                key,
                mapping={
                    "state": JobState.DEAD_LETTER.value,
                    "error_message": message,
                    "finished_at": now.isoformat(),
                },
            )
            pipe.lpush(self.keys.dead_letter, job_id)
            await pipe.execute()

        logger.error(
            "Claimed job has an invalid record, moved to dead-letter",
            extra={"job_id": job_id, "error": str(error)},
        )

    @store_operation("complete")
    async def complete(
        self,
        job_id: str,
        result: dict[str, Any] | None = None,
        worker_id: str | None = None,
    ) -> Job | None:
        """
        Mark an in-flight job as completed.

        A job that is not in flight (already reported, recovered by the
        reaper, or owned by another dispatcher when worker_id is given)
        is left untouched.

        Args:
            job_id: The job id.
            result: Optional handler output.
            worker_id: If given, the lease owner must match.

        Returns:
            The completed job, or None if there was nothing to complete.
        """
        def transition(job: Job, now: datetime) -> str:
            job.state = JobState.COMPLETED
            job.finished_at = now
            job.lease_owner = None
            job.result = json.dumps(result, default=str) if result is not None else None
            return self.keys.completed

        job = await self._resolve(job_id, worker_id, "complete", transition)
        if job is not None:
            logger.info("Job completed", extra={"job_id": job_id})
        return job

    @store_operation("fail")
    async def fail(
        self,
        job_id: str,
        error: str,
        worker_id: str | None = None,
    ) -> Job | None:
        """
        Handle job failure. Either retry or move to dead-letter.

        The retry count is incremented and the error recorded before the
        retry policy is consulted. A retried job re-enters at the pending
        head (or the scheduled set when a backoff delay applies); a job
        that exhausted its retries is pushed to dead-letter for good.

        Args:
            job_id: The job id.
            error: Failure reason, overwrites any previous one.
            worker_id: If given, the lease owner must match.

        Returns:
            The updated job, or None if there was nothing to fail.
        """
        def transition(job: Job, now: datetime) -> str:
            job.retry_count += 1
            job.error_message = error
            job.lease_owner = None
            job.claimed_at = None

            decision = self._policy.decide(job)
            if not decision.retry:
                job.state = JobState.DEAD_LETTER
                job.finished_at = now
                return self.keys.dead_letter
            if decision.delay_seconds > 0:
                job.state = JobState.SCHEDULED
                job.available_at = now + timedelta(seconds=decision.delay_seconds)
                return self.keys.scheduled
            job.state = JobState.PENDING
            return self.keys.pending

        job = await self._resolve(job_id, worker_id, "fail", transition)
        if job is None:
            return None

        if job.state == JobState.DEAD_LETTER:
            logger.error(
                f"Job failed permanently after {job.retry_count} attempts",
                extra={"job_id": job_id, "error": error},
            )
        else:
            logger.warning(
                f"Job failed, retrying ({job.retry_count}/{job.max_retries})",
                extra={
                    "job_id": job_id,
                    "error": error,
                    "available_at": job.available_at.isoformat() if job.available_at else None,
                },
            )
        return job

    async def _resolve(
        self,
        job_id: str,
        worker_id: str | None,
        operation: str,
        transition: Callable[[Job, datetime], str],
    ) -> Job | None:
        """
        Move an in-flight job to the location chosen by `transition`.

        Runs optimistically under WATCH on the job record. Every state change
        rewrites that record, so a concurrent claim, recovery or duplicate
        report aborts the transaction and the check is re-evaluated.
        """
        key = self.keys.job(job_id)

        for _ in range(MAX_REPORT_ATTEMPTS):
            async with self._redis.pipeline(transaction=True) as pipe:
                try:
                    await pipe.watch(key)

                    lease = await pipe.zscore(self.keys.in_flight, job_id)
                    record = await pipe.hgetall(key)
                    if lease is None or not record:
                        self._record_race(operation, job_id, "job is not in flight")
                        return None

                    job = Job.from_record(record)
                    if worker_id is not None and job.lease_owner != worker_id:
                        self._record_race(
                            operation, job_id, f"lease is owned by {job.lease_owner}"
                        )
                        return None

                    now = utc_now()
                    target = transition(job, now)

                    pipe.multi()
                    pipe.zrem(self.keys.in_flight, job_id)
                    pipe.delete(key)
                    pipe.hset(key, mapping=job.to_record())
                    if target == self.keys.scheduled:
                        pipe.zadd(target, {job_id: _to_ms(job.available_at)})
                    else:
                        pipe.lpush(target, job_id)
                    await pipe.execute()
                    return job

                except WatchError:
                    logger.debug(
                        "Job record changed during report, retrying",
                        extra={"job_id": job_id, "operation": operation},
                    )

        raise QueueError(
            f"could not {operation} job {job_id}: record kept changing"
        )

    def _record_race(self, operation: str, job_id: str, reason: str) -> None:
        logger.warning(
            f"Cannot {operation} job: {reason}",
            extra={"job_id": job_id, "operation": operation},
        )
        get_metrics().record_reporting_race(operation)

    @store_operation("extend_lease")
    async def extend_lease(
        self,
        job_id: str,
        worker_id: str,
        extension_seconds: int | None = None,
    ) -> bool:
        """
        Extend the lease on an in-flight job (heartbeat).

        Args:
            job_id: The job id.
            worker_id: The worker identifier (must match the lease owner).
            extension_seconds: Lease extension duration.

        Returns:
            True if lease was extended, False otherwise.
        """
        if extension_seconds is None:
            extension_seconds = self._settings.worker_lease_duration_seconds

        deadline = utc_now() + timedelta(seconds=extension_seconds)
        extended = await self._extend_script(
            keys=[self.keys.in_flight, self.keys.job(job_id)],
            args=[worker_id, _to_ms(deadline), job_id],
        )
        return bool(extended)

    @store_operation("recover_expired_leases")
    async def recover_expired_leases(self, now: datetime | None = None) -> int:
        """
        Return in-flight jobs with expired leases to the pending list.

        Recovered jobs go to the pending tail, so they are the next to be
        claimed. Their retry count is unchanged.

        Args:
            now: Override of the current time (tests).

        Returns:
            Number of recovered jobs.
        """
        now = now or utc_now()
        recovered = await self._recover_script(
            keys=[self.keys.in_flight, self.keys.pending],
            args=[_to_ms(now), self._settings.reaper_batch_size, self.keys.job_prefix],
        )

        if recovered:
            logger.warning(
                f"Recovered {len(recovered)} jobs with expired leases",
                extra={"job_ids": list(recovered)},
            )
        return len(recovered)

    @store_operation("get_job")
    async def get_job(self, job_id: str) -> Job | None:
        """
        Get a job by id.

        Args:
            job_id: The job id.

        Returns:
            The Job or None if not found.
        """
        async with self._redis.pipeline(transaction=False) as pipe:
            pipe.hgetall(self.keys.job(job_id))
            pipe.zscore(self.keys.in_flight, job_id)
            record, lease = await pipe.execute()

        if not record:
            return None

        job = Job.from_record(record)
        if lease is not None:
            job.lease_expires_at = _from_ms(lease)
        return job

    @store_operation("list_ids")
    async def list_ids(self, state: JobState, limit: int = 100) -> list[str]:
        """
        List job ids held in one queue state.

        List-backed states are returned head first (most recent first);
        sorted states in deadline order.

        Args:
            state: The queue state.
            limit: Maximum number of ids.
        """
        if limit <= 0:
            return []
        if state == JobState.IN_FLIGHT:
            return await self._redis.zrange(self.keys.in_flight, 0, limit - 1)
        if state == JobState.SCHEDULED:
            return await self._redis.zrange(self.keys.scheduled, 0, limit - 1)

        key = {
            JobState.PENDING: self.keys.pending,
            JobState.COMPLETED: self.keys.completed,
            JobState.DEAD_LETTER: self.keys.dead_letter,
        }[state]
        return await self._redis.lrange(key, 0, limit - 1)

    async def list_jobs(self, state: JobState, limit: int = 100) -> list[Job]:
        """
        List full job records held in one queue state.

        Records that no longer decode are skipped with a warning.
        """
        jobs = []
        for job_id in await self.list_ids(state, limit):
            try:
                job = await self.get_job(job_id)
            except ValidationError:
                logger.warning("Skipping undecodable job record", extra={"job_id": job_id})
                continue
            if job is not None:
                jobs.append(job)
        return jobs

    @store_operation("get_stats")
    async def get_stats(self) -> QueueStats:
        """
        Get the number of jobs in each queue state.

        Returns:
            QueueStats with one count per state.
        """
        async with self._redis.pipeline(transaction=False) as pipe:
            pipe.llen(self.keys.pending)
            pipe.zcard(self.keys.scheduled)
            pipe.zcard(self.keys.in_flight)
            pipe.llen(self.keys.completed)
            pipe.llen(self.keys.dead_letter)
            pending, scheduled, in_flight, completed, dead_letter = await pipe.execute()

        return QueueStats(
            pending=pending,
            scheduled=scheduled,
            in_flight=in_flight,
            completed=completed,
            dead_letter=dead_letter,
        )
