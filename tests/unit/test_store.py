"""
Unit tests for the job store.
"""

import asyncio
from datetime import timedelta

import fakeredis
import pytest

from jobqueue.config import Settings
from jobqueue.constants import JobState
from jobqueue.errors import StoreUnavailable
from jobqueue.policy import RetryPolicy
from jobqueue.store import JobStore
from jobqueue.types.job import Job, utc_now


def make_job(job_type: str = "echo", max_retries: int = 3) -> Job:
    return Job(job_type=job_type, payload='{"message": "test"}', max_retries=max_retries)


async def locations(store: JobStore, job_id: str) -> list[str]:
    """Every queue structure currently holding the job id."""
    redis = store._redis
    found = []
    for name, key in (
        ("pending", store.keys.pending),
        ("completed", store.keys.completed),
        ("dead_letter", store.keys.dead_letter),
    ):
        found.extend([name] * (await redis.lrange(key, 0, -1)).count(job_id))
    if await redis.zscore(store.keys.in_flight, job_id) is not None:
        found.append("in_flight")
    if await redis.zscore(store.keys.scheduled, job_id) is not None:
        found.append("scheduled")
    return found


class TestJobStore:
    """Tests for JobStore."""

    async def test_push_adds_to_pending_head(self, store: JobStore):
        """Test that pushed jobs land on the head of the pending list."""
        first = await store.push(make_job())
        second = await store.push(make_job())

        ids = await store.list_ids(JobState.PENDING)

        assert ids == [second.id, first.id]
        assert await locations(store, first.id) == ["pending"]

    async def test_claim_returns_oldest_job(self, store: JobStore):
        """Test that claims pop from the tail, oldest first."""
        first = await store.push(make_job())
        await store.push(make_job())

        claimed = await store.claim("worker-1")

        assert claimed is not None
        assert claimed.id == first.id
        assert claimed.state == JobState.IN_FLIGHT
        assert claimed.lease_owner == "worker-1"
        assert claimed.claimed_at is not None
        assert claimed.lease_expires_at > utc_now()
        assert await locations(store, first.id) == ["in_flight"]

    async def test_claim_empty_queue(self, store: JobStore):
        """Test claiming from an empty queue."""
        assert await store.claim("worker-1") is None

    async def test_concurrent_claims_single_job(self, store: JobStore):
        """Test that two simultaneous claims on one job give it to exactly one."""
        job = await store.push(make_job())

        results = await asyncio.gather(store.claim("worker-1"), store.claim("worker-2"))

        claimed = [r for r in results if r is not None]
        assert len(claimed) == 1
        assert claimed[0].id == job.id

    async def test_concurrent_claims_no_duplicates(self, store: JobStore):
        """Test that many dispatchers claiming together never share a job."""
        pushed = {(await store.push(make_job())).id for _ in range(20)}

        async def drain(worker_id: str) -> list[str]:
            ids = []
            while (job := await store.claim(worker_id)) is not None:
                ids.append(job.id)
                await asyncio.sleep(0)
            return ids

        batches = await asyncio.gather(*(drain(f"worker-{n}") for n in range(5)))
        claimed = [job_id for batch in batches for job_id in batch]

        assert len(claimed) == len(pushed)
        assert set(claimed) == pushed

    async def test_complete_job(self, store: JobStore):
        """Test successful job completion."""
        job = await store.push(make_job())
        await store.claim("worker-1")

        completed = await store.complete(job.id, result={"sent": True}, worker_id="worker-1")

        assert completed is not None
        assert completed.state == JobState.COMPLETED
        assert completed.finished_at is not None
        assert completed.lease_owner is None
        assert completed.result == '{"sent": true}'
        assert await locations(store, job.id) == ["completed"]

    async def test_complete_twice_is_noop(self, store: JobStore):
        """Test that a duplicate completion report is harmless."""
        job = await store.push(make_job())
        await store.claim("worker-1")

        first = await store.complete(job.id)
        second = await store.complete(job.id)

        assert first is not None
        assert second is None
        assert await store._redis.llen(store.keys.completed) == 1

    async def test_complete_unknown_job(self, store: JobStore):
        """Test completing a job id that was never claimed."""
        assert await store.complete("does-not-exist") is None

    async def test_complete_by_non_owner(self, store: JobStore):
        """Test that a dispatcher cannot report a job leased to another."""
        job = await store.push(make_job())
        await store.claim("worker-1")

        assert await store.complete(job.id, worker_id="worker-2") is None
        assert await locations(store, job.id) == ["in_flight"]

    async def test_fail_job_with_retry(self, store: JobStore):
        """Test job failure with retries left goes back to pending."""
        job = await store.push(make_job(max_retries=3))
        await store.claim("worker-1")

        failed = await store.fail(job.id, error="Test error")

        assert failed is not None
        assert failed.state == JobState.PENDING
        assert failed.retry_count == 1
        assert failed.error_message == "Test error"
        assert failed.lease_owner is None
        assert await locations(store, job.id) == ["pending"]

    async def test_retried_job_reenters_at_head(self, store: JobStore):
        """Test that a retry is pushed on the head, behind already pending jobs."""
        first = await store.push(make_job())
        second = await store.push(make_job())

        await store.claim("worker-1")
        await store.fail(first.id, error="boom")

        assert (await store.list_ids(JobState.PENDING))[0] == first.id
        assert (await store.claim("worker-1")).id == second.id
        assert (await store.claim("worker-1")).id == first.id

    async def test_fail_job_to_dead_letter(self, store: JobStore):
        """Test job failure moves to dead-letter after max retries."""
        job = await store.push(make_job(max_retries=1))
        await store.claim("worker-1")

        failed = await store.fail(job.id, error="Final error")

        assert failed is not None
        assert failed.state == JobState.DEAD_LETTER
        assert failed.retry_count == 1
        assert failed.finished_at is not None
        assert await locations(store, job.id) == ["dead_letter"]

    async def test_retry_bound_equals_max_retries(self, store: JobStore):
        """Test that a job is failed exactly max_retries times before dead-letter."""
        job = await store.push(make_job(max_retries=3))

        failures = 0
        while True:
            claimed = await store.claim("worker-1")
            if claimed is None:
                break
            failed = await store.fail(claimed.id, error=f"failure {failures + 1}")
            failures += 1
            assert await locations(store, job.id) in (["pending"], ["dead_letter"])
            if failed.state == JobState.DEAD_LETTER:
                break

        final = await store.get_job(job.id)
        assert failures == 3
        assert final.retry_count == final.max_retries == 3
        assert final.error_message == "failure 3"
        assert await store.claim("worker-1") is None

    async def test_max_retries_two(self, store: JobStore):
        """Test the retry counts for a job with max_retries=2 that always fails."""
        job = await store.push(make_job(max_retries=2))

        await store.claim("worker-1")
        first = await store.fail(job.id, error="boom")
        assert first.state == JobState.PENDING
        assert first.retry_count == 1

        await store.claim("worker-1")
        second = await store.fail(job.id, error="boom")
        assert second.state == JobState.DEAD_LETTER
        assert second.retry_count == 2

    async def test_zero_max_retries_dead_letters_immediately(self, store: JobStore):
        """Test that max_retries=0 dead-letters on the first failure."""
        job = await store.push(make_job(max_retries=0))
        await store.claim("worker-1")

        failed = await store.fail(job.id, error="boom")

        assert failed.state == JobState.DEAD_LETTER
        assert failed.retry_count == 1

    async def test_fail_not_in_flight(self, store: JobStore):
        """Test failing a job that is still pending."""
        job = await store.push(make_job())

        assert await store.fail(job.id, error="boom") is None
        assert await locations(store, job.id) == ["pending"]

    async def test_terminal_states_are_stable(self, store: JobStore):
        """Test that completed and dead-lettered jobs are never mutated again."""
        done = await store.push(make_job())
        await store.claim("worker-1")
        await store.complete(done.id)

        dead = await store.push(make_job(max_retries=1))
        await store.claim("worker-1")
        await store.fail(dead.id, error="fatal")

        before = {
            job_id: await store._redis.hgetall(store.keys.job(job_id))
            for job_id in (done.id, dead.id)
        }

        for job_id in (done.id, dead.id):
            assert await store.complete(job_id) is None
            assert await store.fail(job_id, error="again") is None
            assert await store.extend_lease(job_id, "worker-1") is False
        assert await store.recover_expired_leases(now=utc_now() + timedelta(days=1)) == 0

        for job_id, record in before.items():
            assert await store._redis.hgetall(store.keys.job(job_id)) == record
        assert await locations(store, done.id) == ["completed"]
        assert await locations(store, dead.id) == ["dead_letter"]
        assert (await store.get_job(done.id)).is_terminal is True

    async def test_claim_dead_letters_invalid_record(self, store: JobStore):
        """Test that a record which cannot be decoded is dead-lettered on claim."""
        await store._redis.hset(
            store.keys.job("bad"),
            mapping={"id": "bad", "job_type": "echo", "payload": "{}", "retry_count": "oops"},
        )
        await store._redis.lpush(store.keys.pending, "bad")

        assert await store.claim("worker-1") is None

        assert await locations(store, "bad") == ["dead_letter"]
        record = await store._redis.hgetall(store.keys.job("bad"))
        assert record["state"] == JobState.DEAD_LETTER
        assert record["error_message"].startswith("invalid job record")
        assert "lease_owner" not in record
        assert await store.recover_expired_leases(now=utc_now() + timedelta(days=1)) == 0
        assert await store.list_jobs(JobState.DEAD_LETTER) == []

    async def test_claim_skips_past_invalid_record(self, store: JobStore):
        """Test that a valid job behind an invalid one is still dispatched."""
        await store._redis.hset(
            store.keys.job("bad"),
            mapping={"id": "bad", "job_type": "echo", "payload": "{}", "retry_count": "oops"},
        )
        await store._redis.lpush(store.keys.pending, "bad")
        good = await store.push(make_job())

        assert await store.claim("worker-1") is None
        claimed = await store.claim("worker-1")

        assert claimed is not None
        assert claimed.id == good.id

    async def test_extend_lease(self, store: JobStore):
        """Test that only the lease owner can extend the lease."""
        job = await store.push(make_job())
        claimed = await store.claim("worker-1")
        before = await store._redis.zscore(store.keys.in_flight, job.id)

        assert await store.extend_lease(job.id, "worker-2") is False
        assert await store.extend_lease(job.id, "worker-1", extension_seconds=600) is True

        after = await store._redis.zscore(store.keys.in_flight, job.id)
        assert after > before
        assert claimed.lease_expires_at is not None

    async def test_recover_expired_leases(self, store: JobStore):
        """Test that an orphaned in-flight job returns to pending."""
        job = await store.push(make_job())
        await store.claim("crashed-worker")

        recovered = await store.recover_expired_leases(now=utc_now() + timedelta(minutes=1))

        assert recovered == 1
        recovered_job = await store.get_job(job.id)
        assert recovered_job.state == JobState.PENDING
        assert recovered_job.lease_owner is None
        assert recovered_job.retry_count == 0
        assert await locations(store, job.id) == ["pending"]

        reclaimed = await store.claim("new-worker")
        assert reclaimed.id == job.id
        assert reclaimed.lease_owner == "new-worker"

    async def test_recovered_job_is_claimed_next(self, store: JobStore):
        """Test that recovered jobs go to the tail, ahead of other pending work."""
        orphan = await store.push(make_job())
        await store.claim("crashed-worker")
        await store.push(make_job())

        await store.recover_expired_leases(now=utc_now() + timedelta(minutes=1))

        assert (await store.claim("worker-1")).id == orphan.id

    async def test_recover_ignores_live_leases(self, store: JobStore):
        """Test that unexpired leases are left alone."""
        job = await store.push(make_job())
        await store.claim("worker-1")

        assert await store.recover_expired_leases() == 0
        assert await locations(store, job.id) == ["in_flight"]

    async def test_late_report_after_recovery(self, store: JobStore):
        """Test that the original owner cannot report a job it lost to recovery."""
        job = await store.push(make_job())
        await store.claim("worker-1")
        await store.recover_expired_leases(now=utc_now() + timedelta(minutes=1))
        await store.claim("worker-2")

        assert await store.complete(job.id, worker_id="worker-1") is None
        assert await store.complete(job.id, worker_id="worker-2") is not None

    async def test_backoff_schedules_retry(self, redis_client, test_settings: Settings):
        """Test that a retry with backoff is not claimable until its delay passes."""
        store = JobStore(
            redis_client,
            test_settings,
            policy=RetryPolicy(strategy="fixed", base_seconds=30),
        )
        job = await store.push(make_job())
        await store.claim("worker-1")

        failed = await store.fail(job.id, error="transient")

        assert failed.state == JobState.SCHEDULED
        assert failed.available_at > utc_now()
        assert await locations(store, job.id) == ["scheduled"]
        assert await store.claim("worker-1") is None

        claimed = await store.claim("worker-1", now=utc_now() + timedelta(seconds=31))
        assert claimed is not None
        assert claimed.id == job.id
        assert claimed.retry_count == 1
        assert await locations(store, job.id) == ["in_flight"]

    async def test_get_job_not_found(self, store: JobStore):
        """Test getting a non-existent job."""
        assert await store.get_job("missing") is None

    async def test_get_job_reports_lease(self, store: JobStore):
        """Test that in-flight jobs carry their lease deadline."""
        job = await store.push(make_job())
        await store.claim("worker-1")

        fetched = await store.get_job(job.id)

        assert fetched.state == JobState.IN_FLIGHT
        assert fetched.lease_expires_at is not None

    async def test_get_stats(self, store: JobStore):
        """Test counting jobs per state."""
        for _ in range(3):
            await store.push(make_job())
        done = await store.claim("worker-1")
        await store.complete(done.id)
        await store.claim("worker-1")

        stats = await store.get_stats()

        assert stats.pending == 1
        assert stats.in_flight == 1
        assert stats.completed == 1
        assert stats.dead_letter == 0
        assert stats.scheduled == 0


class TestStoreUnavailable:
    """Tests for store connectivity failures."""

    @pytest.fixture
    def offline_store(self, test_settings: Settings) -> JobStore:
        server = fakeredis.FakeServer()
        server.connected = False
        return JobStore(
            fakeredis.FakeAsyncRedis(server=server, decode_responses=True),
            test_settings,
        )

    async def test_push_raises_store_unavailable(self, offline_store: JobStore):
        with pytest.raises(StoreUnavailable) as exc_info:
            await offline_store.push(make_job())

        assert exc_info.value.operation == "push"

    async def test_claim_raises_store_unavailable(self, offline_store: JobStore):
        with pytest.raises(StoreUnavailable):
            await offline_store.claim("worker-1")
