"""
Process lifecycle helpers shared by the worker and reaper entry points.
"""

import asyncio
import logging
import signal
from collections.abc import Awaitable, Callable

logger = logging.getLogger(__name__)

SHUTDOWN_SIGNALS = (signal.SIGTERM, signal.SIGINT)


def install_shutdown_handlers(stop: Callable[[], Awaitable[None]]) -> set[asyncio.Task]:
    """
    Run `stop()` on SIGTERM or SIGINT.

    Each signal schedules `stop()` as a task on the running loop. The
    returned set holds those tasks until they finish, so none is garbage
    collected mid-flight.

    Args:
        stop: Coroutine function that asks the process loop to exit.

    Returns:
        The set of shutdown tasks still running.
    """
    loop = asyncio.get_running_loop()
    pending: set[asyncio.Task] = set()

    def handle_signal(sig: signal.Signals) -> None:
        logger.info(f"Received {sig.name}, shutting down")
        task = loop.create_task(stop())
        pending.add(task)
        task.add_done_callback(pending.discard)

    for sig in SHUTDOWN_SIGNALS:
        loop.add_signal_handler(sig, handle_signal, sig)
    return pending


def remove_shutdown_handlers() -> None:
    """Restore default handling of the shutdown signals."""
    loop = asyncio.get_running_loop()
    for sig in SHUTDOWN_SIGNALS:
        loop.remove_signal_handler(sig)
