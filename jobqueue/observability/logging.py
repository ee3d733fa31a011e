"""
Structured logging for the worker and reaper processes.

Modules log through the standard library (`logging.getLogger(__name__)`
with `extra={...}`). structlog is only the formatter: it merges the fields
bound for the job being dispatched, the active trace ids and the `extra`
keys into one event, rendered as JSON or for the console.
"""

import logging
import sys
from collections.abc import Iterator
from contextlib import contextmanager
from typing import Any

import structlog
from opentelemetry import trace

from jobqueue.config import Settings, get_settings

# Libraries that log every command or export at INFO
QUIET_LOGGERS = ("redis", "opentelemetry")


def add_trace_context(logger: Any, method_name: str, event_dict: dict[str, Any]) -> dict[str, Any]:
    """Attach trace_id and span_id when a recording span is active."""
    span_context = trace.get_current_span().get_span_context()
    if span_context.is_valid:
        event_dict["trace_id"] = trace.format_trace_id(span_context.trace_id)
        event_dict["span_id"] = trace.format_span_id(span_context.span_id)
    return event_dict


def build_processors() -> list[Any]:
    """Processors applied to both structlog and stdlib records."""
    return [
        structlog.contextvars.merge_contextvars,
        add_trace_context,
        structlog.processors.add_log_level,
        structlog.stdlib.add_logger_name,
        structlog.processors.TimeStamper(fmt="iso", utc=True),
        structlog.stdlib.ExtraAdder(),
    ]


def build_renderer(log_format: str) -> Any:
    """JSON for `json`, a human readable renderer for anything else."""
    if log_format == "json":
        return structlog.processors.JSONRenderer()
    return structlog.dev.ConsoleRenderer(colors=sys.stdout.isatty())


def setup_logging(settings: Settings | None = None) -> None:
    """
    Route every stdlib log record through structlog on stdout.

    Replaces any handlers on the root logger, so calling it twice is safe.

    Args:
        settings: Optional settings override.
    """
    settings = settings or get_settings()
    processors = build_processors()

    structlog.configure(
        processors=[*processors, structlog.stdlib.ProcessorFormatter.wrap_for_formatter],
        wrapper_class=structlog.stdlib.BoundLogger,
        context_class=dict,
        logger_factory=structlog.stdlib.LoggerFactory(),
        cache_logger_on_first_use=True,
    )

    handler = logging.StreamHandler(sys.stdout)
    handler.setFormatter(
        structlog.stdlib.ProcessorFormatter(
            foreign_pre_chain=processors,
            processors=[
                structlog.stdlib.ProcessorFormatter.remove_processors_meta,
                structlog.processors.format_exc_info,
                build_renderer(settings.log_format),
            ],
        )
    )

    root_logger = logging.getLogger()
    root_logger.handlers = [handler]
    root_logger.setLevel(getattr(logging, settings.log_level.upper(), logging.INFO))

    for name in QUIET_LOGGERS:
        logging.getLogger(name).setLevel(logging.WARNING)


@contextmanager
def job_log_context(worker_id: str, job_id: str) -> Iterator[None]:
    """
    Tag every record logged inside the block with the dispatched job.

    The fields live in contextvars, so concurrent dispatchers in one
    process do not see each other's job.
    """
    with structlog.contextvars.bound_contextvars(worker_id=worker_id, job_id=job_id):
        yield
