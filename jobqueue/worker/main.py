"""
Worker process for executing jobs.

Each Dispatcher is one independent peer loop: it claims the next pending
job, runs its handler and reports the outcome back to the store. A
WorkerPool runs several dispatchers against the same store; they do not
know about each other.
"""

import asyncio
import logging
import os
import time
from contextlib import suppress

from jobqueue.config import Settings, get_settings
from jobqueue.constants import (
    HEARTBEAT_JOIN_TIMEOUT_SECONDS,
    SPAN_CLAIM_JOB,
    SPAN_COMPLETE_JOB,
    SPAN_EXECUTE_JOB,
    SPAN_FAIL_JOB,
    FailureOutcome,
    JobState,
)
from jobqueue.lifecycle import install_shutdown_handlers, remove_shutdown_handlers
from jobqueue.observability.logging import job_log_context, setup_logging
from jobqueue.observability.metrics import get_metrics, start_metrics_server
from jobqueue.observability.tracing import get_tracer, set_span_attributes, setup_tracing
from jobqueue.store import JobStore, close_store, init_store
from jobqueue.types.job import Job, JobContext, JobResult, utc_now
from jobqueue.worker.handlers import HandlerRegistry, create_default_registry, execute_job

logger = logging.getLogger(__name__)


def default_worker_id() -> str:
    return f"{os.uname().nodename}-{os.getpid()}"


class Dispatcher:
    """
    A single dispatcher loop.

    State machine: Idle -> Claiming -> (Empty: sleep poll interval) or
    (Dispatching -> report outcome) -> Idle.

    Features:
    - Atomic claims through the store's claim script
    - Heartbeat to extend the lease while a handler runs
    - Store errors during claim are logged and retried after the poll
      interval; the loop never exits on its own
    - Graceful stop: the current job finishes and is reported
    """

    def __init__(
        self,
        store: JobStore,
        registry: HandlerRegistry,
        worker_id: str | None = None,
        poll_interval: float | None = None,
        settings: Settings | None = None,
    ):
        """
        Initialize the dispatcher.

        Args:
            store: The shared job store.
            registry: Handlers by job type.
            worker_id: Unique dispatcher identifier. Defaults to hostname + PID.
            poll_interval: Seconds between polls when the queue is empty.
            settings: Optional settings override.
        """
        settings = settings or get_settings()

        self.worker_id = worker_id or settings.worker_id or default_worker_id()
        self.poll_interval = (
            poll_interval if poll_interval is not None else settings.worker_poll_interval_seconds
        )
        self.heartbeat_interval = settings.worker_heartbeat_interval_seconds
        self.handler_timeout = settings.worker_handler_timeout_seconds

        self._store = store
        self._registry = registry
        self._running = False
        self._stop_event = asyncio.Event()
        self._current_job: Job | None = None
        self._metrics = get_metrics()

    @property
    def running(self) -> bool:
        return self._running

    @property
    def current_job(self) -> Job | None:
        return self._current_job

    async def start(self) -> None:
        """Run the dispatch loop until stopped."""
        logger.info("Dispatcher starting", extra={"worker_id": self.worker_id})

        self._running = True
        self._stop_event.clear()

        while self._running:
            try:
                processed = await self.run_once()
            except Exception as e:
                logger.exception(
                    f"Error in dispatcher loop: {e}",
                    extra={"worker_id": self.worker_id},
                )
                processed = False

            # Only an empty (or failed) poll waits; after a job, claim again at once
            if not processed and self._running:
                await self._idle()

        logger.info("Dispatcher stopped", extra={"worker_id": self.worker_id})

    async def stop(self) -> None:
        """Stop claiming new jobs. A job already running is finished first."""
        logger.info("Dispatcher stopping", extra={"worker_id": self.worker_id})
        self._running = False
        self._stop_event.set()

    async def run_once(self) -> bool:
        """
        Claim and process at most one job.

        Returns:
            True if a job was claimed and processed, False if the queue was empty.

        Raises:
            StoreUnavailable: If the claim could not reach the store.
        """
        with get_tracer().start_as_current_span(SPAN_CLAIM_JOB) as span:
            set_span_attributes(span, worker_id=self.worker_id)
            job = await self._store.claim(self.worker_id)

        if job is None:
            return False

        self._metrics.record_job_claimed(self.worker_id)
        await self._process(job)
        return True

    async def _idle(self) -> None:
        with suppress(TimeoutError):
            await asyncio.wait_for(self._stop_event.wait(), timeout=self.poll_interval)

    async def _process(self, job: Job) -> None:
        """
        Execute a claimed job and report its outcome.

        Reporting failures are logged; the job then stays in flight until
        its lease expires and the reaper returns it to pending.
        """
        start_time = time.monotonic()
        self._current_job = job

        context = JobContext(
            job=job,
            worker_id=self.worker_id,
            lease_expires_at=job.lease_expires_at or utc_now(),
        )

        with job_log_context(self.worker_id, job.id):
            logger.info(
                f"Processing job {job.id} of type {job.job_type}",
                extra={"attempt": context.attempt, "max_retries": job.max_retries},
            )

            handler_done = asyncio.Event()
            heartbeat = asyncio.create_task(self._heartbeat_loop(job.id, handler_done))
            try:
                with get_tracer().start_as_current_span(SPAN_EXECUTE_JOB) as span:
                    set_span_attributes(
                        span, job_id=job.id, job_type=job.job_type, attempt=context.attempt
                    )
                    result = await self._execute(context)
            finally:
                handler_done.set()
                await self._join_heartbeat(heartbeat)

            try:
                await self._report(job, result, time.monotonic() - start_time)
            except Exception:
                logger.exception(
                    "Failed to report job outcome, leaving it to lease expiry",
                    extra={"success": result.success},
                )
            finally:
                self._current_job = None

    async def _execute(self, context: JobContext) -> JobResult:
        if self.handler_timeout is None:
            return await execute_job(self._registry, context)

        try:
            return await asyncio.wait_for(
                execute_job(self._registry, context), timeout=self.handler_timeout
            )
        except TimeoutError:
            logger.error(
                "Handler timed out",
                extra={"timeout_seconds": self.handler_timeout},
            )
            return JobResult(
                success=False,
                error=f"handler timed out after {self.handler_timeout}s",
            )

    async def _report(self, job: Job, result: JobResult, duration: float) -> None:
        tracer = get_tracer()

        if result.success:
            with tracer.start_as_current_span(SPAN_COMPLETE_JOB) as span:
                set_span_attributes(span, job_id=job.id, job_type=job.job_type)
                updated = await self._store.complete(
                    job.id, result=result.output, worker_id=self.worker_id
                )
            outcome = FailureOutcome.COMPLETED
        else:
            error = result.error or "Unknown error"
            with tracer.start_as_current_span(SPAN_FAIL_JOB) as span:
                set_span_attributes(span, job_id=job.id, job_type=job.job_type, error=error)
                updated = await self._store.fail(job.id, error, worker_id=self.worker_id)
            outcome = (
                FailureOutcome.DEAD_LETTERED
                if updated is not None and updated.state == JobState.DEAD_LETTER
                else FailureOutcome.RETRIED
            )

        if updated is None:
            # Reporting race, already logged by the store
            return

        self._metrics.record_job_finished(
            job_type=job.job_type,
            outcome=outcome.value,
            duration_seconds=duration,
        )
        logger.info(
            f"Job {outcome.value}",
            extra={"duration": f"{duration:.2f}s", "retry_count": updated.retry_count},
        )

    async def _heartbeat_loop(self, job_id: str, handler_done: asyncio.Event) -> None:
        """
        Periodically extend the lease on the running job.

        This prevents the job from being recovered by the reaper while its
        handler is still executing. The loop ends once `handler_done` is set,
        even when that happens during an extend call.
        """
        if self.heartbeat_interval <= 0:
            return

        while not handler_done.is_set():
            with suppress(TimeoutError):
                await asyncio.wait_for(handler_done.wait(), timeout=self.heartbeat_interval)
            if handler_done.is_set():
                return

            try:
                extended = await self._store.extend_lease(job_id, self.worker_id)
            except Exception as e:
                logger.warning(f"Heartbeat failed: {e}", extra={"job_id": job_id})
                continue

            if not extended:
                logger.warning(
                    "Lease lost while job is running",
                    extra={"job_id": job_id, "worker_id": self.worker_id},
                )
                return
            logger.debug("Extended lease", extra={"job_id": job_id})

    async def _join_heartbeat(self, heartbeat: asyncio.Task) -> None:
        """
        Wait a bounded time for the heartbeat to notice the handler finished.

        A heartbeat stuck in a store call is cancelled and left behind; the
        outcome is reported without waiting for it.
        """
        done, _ = await asyncio.wait({heartbeat}, timeout=HEARTBEAT_JOIN_TIMEOUT_SECONDS)
        if not done:
            heartbeat.cancel()
            logger.warning("Heartbeat did not stop in time, cancelled")


class WorkerPool:
    """
    Runs a fixed number of peer dispatchers in one process.

    All dispatchers share the store client and the handler registry; the
    registry is frozen when the pool starts.
    """

    def __init__(
        self,
        store: JobStore,
        registry: HandlerRegistry,
        worker_count: int | None = None,
        worker_id: str | None = None,
        settings: Settings | None = None,
    ):
        settings = settings or get_settings()
        count = settings.worker_count if worker_count is None else worker_count
        if count < 1:
            raise ValueError(f"worker_count must be >= 1, got {count}")
        base_id = worker_id or settings.worker_id or default_worker_id()

        self.registry = registry
        self.dispatchers = [
            Dispatcher(store, registry, worker_id=f"{base_id}-{n}", settings=settings)
            for n in range(1, count + 1)
        ]

    async def start(self) -> None:
        """Start every dispatcher and wait until all of them have stopped."""
        self.registry.freeze()
        logger.info(
            f"Starting {len(self.dispatchers)} dispatchers",
            extra={"job_types": self.registry.job_types()},
        )
        await asyncio.gather(*(d.start() for d in self.dispatchers))

    async def stop(self) -> None:
        """Stop all dispatchers gracefully."""
        for dispatcher in self.dispatchers:
            await dispatcher.stop()


async def run_async(registry: HandlerRegistry | None = None) -> None:
    """
    Run a worker pool asynchronously.

    Args:
        registry: Handlers to serve. Defaults to the built-in job types.
    """
    settings = get_settings()
    setup_logging(settings)
    setup_tracing()
    if settings.metrics_enabled:
        start_metrics_server(settings.prometheus_port)

    client = await init_store()
    store = JobStore(client, settings)
    pool = WorkerPool(store, registry or create_default_registry(), settings=settings)

    install_shutdown_handlers(pool.stop)

    try:
        await pool.start()
    finally:
        remove_shutdown_handlers()
        await close_store()


def run() -> None:
    """Run the worker."""
    asyncio.run(run_async())


if __name__ == "__main__":
    run()
