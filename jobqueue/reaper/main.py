"""
Lease reaper for recovering expired job leases.

The reaper runs periodically to find in-flight jobs whose lease has
expired and returns them to the pending list. This handles dispatchers
that crashed or were killed between claiming and reporting a job.
"""

import asyncio
import logging
from contextlib import suppress

from jobqueue.config import Settings, get_settings
from jobqueue.lifecycle import install_shutdown_handlers, remove_shutdown_handlers
from jobqueue.observability.logging import setup_logging
from jobqueue.observability.metrics import get_metrics, start_metrics_server
from jobqueue.observability.tracing import setup_tracing
from jobqueue.store import JobStore, close_store, init_store

logger = logging.getLogger(__name__)


class Reaper:
    """
    Lease reaper that recovers expired job leases.

    Runs periodically to:
    1. Return in-flight jobs with an expired lease deadline to pending
    2. Record lease expiry metrics
    3. Refresh the queue depth gauges
    """

    def __init__(
        self,
        store: JobStore,
        interval_seconds: int | None = None,
        settings: Settings | None = None,
    ):
        """
        Initialize the reaper.

        Args:
            store: The shared job store.
            interval_seconds: Seconds between reaper runs.
            settings: Optional settings override.
        """
        settings = settings or get_settings()
        self.interval = interval_seconds or settings.reaper_interval_seconds
        self._store = store
        self._running = False
        self._stop_event = asyncio.Event()
        self._metrics = get_metrics()

    async def start(self) -> None:
        """Start the reaper loop."""
        logger.info(f"Reaper starting with interval {self.interval}s")
        self._running = True
        self._stop_event.clear()

        while self._running:
            try:
                recovered = await self.run_once()

                if recovered > 0:
                    logger.info(f"Recovered {recovered} expired leases")

            except Exception as e:
                logger.exception(f"Error in reaper loop: {e}")

            with suppress(TimeoutError):
                await asyncio.wait_for(self._stop_event.wait(), timeout=self.interval)

        logger.info("Reaper stopped")

    async def stop(self) -> None:
        """Stop the reaper."""
        logger.info("Reaper stopping")
        self._running = False
        self._stop_event.set()

    async def run_once(self) -> int:
        """
        Run the reaper once (for testing or cron-style execution).

        Returns:
            Number of jobs recovered.
        """
        count = await self._store.recover_expired_leases()
        if count > 0:
            self._metrics.record_lease_expired(count)

        stats = await self._store.get_stats()
        self._metrics.update_queue_depth(stats.as_dict())

        return count


async def run_async() -> None:
    """Run the reaper asynchronously."""
    settings = get_settings()
    setup_logging(settings)
    setup_tracing()
    if settings.metrics_enabled:
        start_metrics_server(settings.prometheus_port)

    client = await init_store()
    reaper = Reaper(JobStore(client, settings), settings=settings)

    install_shutdown_handlers(reaper.stop)

    try:
        await reaper.start()
    finally:
        remove_shutdown_handlers()
        await close_store()


def run() -> None:
    """Run the reaper."""
    asyncio.run(run_async())


if __name__ == "__main__":
    run()
