"""
Producer-facing job queue client.

The surrounding application enqueues work here and gets a job id back
immediately; execution happens later in a worker process.
"""

import json
import logging
from typing import Any

from pydantic import BaseModel

from jobqueue.config import Settings, get_settings
from jobqueue.constants import SPAN_ENQUEUE_JOB, JobState
from jobqueue.observability.metrics import get_metrics
from jobqueue.observability.tracing import get_tracer, set_span_attributes
from jobqueue.store.repository import JobStore
from jobqueue.types.job import Job, QueueStats

logger = logging.getLogger(__name__)


def serialize_payload(payload: Any) -> str:
    """
    Serialize a payload to the opaque text stored with the job.

    Args:
        payload: A pydantic model, pre-serialized str/bytes, or any
            JSON-serializable value.

    Returns:
        The serialized payload.

    Raises:
        TypeError: If the payload cannot be serialized.
    """
    if isinstance(payload, BaseModel):
        return payload.model_dump_json()
    if isinstance(payload, str):
        return payload
    if isinstance(payload, bytes):
        try:
            return payload.decode("utf-8")
        except UnicodeDecodeError as e:
            raise TypeError(
                "Job payload bytes are not UTF-8 text; encode binary data "
                "(for example as base64 inside a JSON document) before enqueueing"
            ) from e
    try:
        return json.dumps(payload)
    except (TypeError, ValueError) as e:
        raise TypeError(f"Job payload is not serializable: {e}") from e


class JobQueueClient:
    """
    Fire-and-forget job submission plus read-only inspection.

    Example:
        client = JobQueueClient(JobStore(get_client()))
        job_id = await client.enqueue("SendEmail", EmailPayload(to="a@b.c"))
    """

    def __init__(self, store: JobStore, settings: Settings | None = None):
        self._store = store
        self._settings = settings or get_settings()
        self._metrics = get_metrics()

    async def enqueue(
        self,
        job_type: str,
        payload: Any,
        max_retries: int | None = None,
    ) -> str:
        """
        Submit a job to the pending list.

        The job type is not validated here; an unknown type fails at
        dispatch time and follows the normal retry/dead-letter path.

        Args:
            job_type: Tag selecting the handler.
            payload: Job payload, see serialize_payload.
            max_retries: Per-job retry ceiling. Defaults to the configured one.

        Returns:
            The new job id.

        Raises:
            StoreUnavailable: If the store cannot be reached. Not retried here.
            TypeError: If the payload cannot be serialized.
            ValueError: If max_retries is negative.
        """
        if max_retries is None:
            max_retries = self._settings.default_max_retries
        if max_retries < 0:
            raise ValueError("max_retries must be >= 0")

        job = Job(
            job_type=job_type,
            payload=serialize_payload(payload),
            max_retries=max_retries,
        )

        with get_tracer().start_as_current_span(SPAN_ENQUEUE_JOB) as span:
            set_span_attributes(span, job_id=job.id, job_type=job_type)
            await self._store.push(job)

        self._metrics.record_job_enqueued(job_type)
        logger.info(
            f"Job of type {job_type} enqueued",
            extra={"job_id": job.id, "max_retries": max_retries},
        )
        return job.id

    async def get_job(self, job_id: str) -> Job | None:
        """Get a job record by id, in whatever state it is."""
        return await self._store.get_job(job_id)

    async def get_stats(self) -> QueueStats:
        """Get the number of jobs in each queue state."""
        return await self._store.get_stats()

    async def list_dead_letter(self, limit: int = 50) -> list[Job]:
        """
        List permanently failed jobs, most recent first.

        Args:
            limit: Maximum number of jobs to return.
        """
        return await self._store.list_jobs(JobState.DEAD_LETTER, limit)
