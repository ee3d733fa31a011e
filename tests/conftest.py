"""
Pytest configuration and shared fixtures.
"""

import json
from collections.abc import AsyncGenerator
from typing import Any
from uuid import uuid4

import fakeredis
import pytest
import pytest_asyncio

from jobqueue.client import JobQueueClient
from jobqueue.config import Settings
from jobqueue.store import JobStore
from jobqueue.types.job import Job, JobContext, utc_now
from jobqueue.worker.handlers import HandlerRegistry


@pytest.fixture
def test_settings() -> Settings:
    """Create test settings with a key prefix unique to the test."""
    return Settings(
        queue_key_prefix=f"test:{uuid4().hex[:8]}",
        log_level="DEBUG",
        log_format="console",
        worker_poll_interval_ms=10,
        worker_lease_duration_seconds=5,
        worker_heartbeat_interval_seconds=0.05,
        reaper_interval_seconds=1,
        default_max_retries=3,
        retry_backoff_strategy="none",
        metrics_enabled=False,
        tracing_enabled=False,
    )


@pytest_asyncio.fixture
async def redis_client() -> AsyncGenerator[fakeredis.FakeAsyncRedis, None]:
    """In-process Redis with Lua scripting support."""
    client = fakeredis.FakeAsyncRedis(server=fakeredis.FakeServer(), decode_responses=True)

    yield client

    await client.flushall()
    await client.aclose()


@pytest.fixture
def store(redis_client, test_settings: Settings) -> JobStore:
    """Create a job store on the fake Redis."""
    return JobStore(redis_client, test_settings)


@pytest.fixture
def queue_client(store: JobStore, test_settings: Settings) -> JobQueueClient:
    """Create a producer client."""
    return JobQueueClient(store, test_settings)


@pytest.fixture
def registry() -> HandlerRegistry:
    """An empty handler registry."""
    return HandlerRegistry()


@pytest.fixture
def sample_payload() -> dict[str, Any]:
    """Create a sample job payload."""
    return {"to": "user@example.com", "subject": "Welcome", "body": "Hello!"}


@pytest.fixture
def make_context():
    """Factory for handler contexts around an unsaved job."""

    def factory(job_type: str = "echo", payload: Any = None, **job_fields: Any) -> JobContext:
        job = Job(
            job_type=job_type,
            payload=payload if isinstance(payload, str) else json.dumps(payload or {}),
            **job_fields,
        )
        return JobContext(job=job, worker_id="test-worker", lease_expires_at=utc_now())

    return factory
