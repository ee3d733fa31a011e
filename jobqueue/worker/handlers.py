"""
Job handler registry and built-in handlers.

Job handlers must be idempotent - they may be executed more than once
for the same job if a worker crashes between claiming and reporting.
"""

import logging
from collections.abc import Awaitable, Callable, Iterator
from typing import Protocol

from pydantic import ValidationError

from jobqueue.constants import (
    JOB_TYPE_GENERATE_REPORT,
    JOB_TYPE_PROCESS_PAYMENT,
    JOB_TYPE_SEND_EMAIL,
)
from jobqueue.errors import HandlerError, HandlerMissing
from jobqueue.types.job import JobContext, JobResult
from jobqueue.types.payloads import EmailPayload, PaymentPayload, ReportPayload

logger = logging.getLogger(__name__)

# Type alias for job handler functions. Returning None counts as success.
JobHandler = Callable[[JobContext], Awaitable[JobResult | None]]


class HandlerRegistry:
    """
    Mapping from job type tag to handler.

    Built once at process startup and passed to every dispatcher. Lookups
    are exact string matches. Once frozen, no further handlers can be added.
    """

    def __init__(self) -> None:
        self._handlers: dict[str, JobHandler] = {}
        self._frozen = False

    def add(self, job_type: str, handler: JobHandler) -> None:
        """
        Register a handler for a job type.

        Raises:
            RuntimeError: If the registry is frozen.
            ValueError: If the job type already has a handler.
        """
        if self._frozen:
            raise RuntimeError("Handler registry is frozen; register handlers at startup")
        if job_type in self._handlers:
            raise ValueError(f"Handler already registered for job type: {job_type}")
        self._handlers[job_type] = handler
        logger.info(f"Registered handler for job type: {job_type}")

    def register(self, job_type: str) -> Callable[[JobHandler], JobHandler]:
        """
        Decorator to register a job handler.

        Example:
            @registry.register("SendEmail")
            async def handle_send_email(context: JobContext) -> JobResult:
                ...
        """
        def decorator(handler: JobHandler) -> JobHandler:
            self.add(job_type, handler)
            return handler
        return decorator

    def get(self, job_type: str) -> JobHandler | None:
        return self._handlers.get(job_type)

    def resolve(self, job_type: str) -> JobHandler:
        """
        Get the handler for a job type.

        Raises:
            HandlerMissing: If no handler is registered.
        """
        handler = self._handlers.get(job_type)
        if handler is None:
            raise HandlerMissing(job_type)
        return handler

    def freeze(self) -> None:
        self._frozen = True

    @property
    def frozen(self) -> bool:
        return self._frozen

    def job_types(self) -> list[str]:
        """List all registered job types."""
        return list(self._handlers)

    def __contains__(self, job_type: object) -> bool:
        return job_type in self._handlers

    def __len__(self) -> int:
        return len(self._handlers)

    def __iter__(self) -> Iterator[str]:
        return iter(self._handlers)


def error_message(exc: BaseException) -> str:
    """Failure reason recorded on the job for an exception."""
    return str(exc) or type(exc).__name__


async def execute_job(registry: HandlerRegistry, context: JobContext) -> JobResult:
    """
    Execute a job using the appropriate handler.

    A missing handler or a handler exception never propagates: both are
    turned into a failed JobResult so the dispatcher can route the job
    through the failure path.

    Args:
        registry: Registry to resolve the handler from.
        context: The job context.

    Returns:
        JobResult from the handler.
    """
    job = context.job

    try:
        handler = registry.resolve(job.job_type)
    except HandlerMissing as e:
        logger.error(
            f"No handler for job type: {job.job_type}",
            extra={"job_id": job.id},
        )
        return JobResult(success=False, error=str(e))

    try:
        result = await handler(context)
    except Exception as e:
        logger.exception(
            "Handler raised exception",
            extra={"job_id": job.id, "job_type": job.job_type, "error": str(e)},
        )
        return JobResult(success=False, error=error_message(e))

    if result is None:
        return JobResult(success=True)
    if not result.success and not result.error:
        result.error = "handler reported failure"
    return result


# ============================================================================
# Built-in job handlers
# ============================================================================


class EmailSender(Protocol):
    """Collaborator that actually delivers email."""

    async def send_email(self, to: str, subject: str, body: str, is_html: bool = True) -> None: ...


class LoggingEmailSender:
    """EmailSender that only logs; used when no real sender is wired in."""

    async def send_email(self, to: str, subject: str, body: str, is_html: bool = True) -> None:
        logger.info(
            "Email delivery (logging sender)",
            extra={"to": to, "subject": subject, "is_html": is_html, "body_length": len(body)},
        )


def make_send_email_handler(sender: EmailSender) -> JobHandler:
    """Build the SendEmail handler around an email sender."""

    async def handle_send_email(context: JobContext) -> JobResult:
        try:
            payload = context.job.payload_as(EmailPayload)
        except ValidationError as e:
            raise HandlerError(f"Invalid email payload: {e.error_count()} validation error(s)") from e

        await sender.send_email(payload.to, payload.subject, payload.body, payload.is_html)
        logger.info(f"Email sent to {payload.to}", extra={"job_id": context.job_id})
        return JobResult(success=True, output={"to": payload.to})

    return handle_send_email


async def handle_process_payment(context: JobContext) -> JobResult:
    """
    Process a payment.

    Payload: PaymentPayload (transaction_id, amount, user_id).
    """
    try:
        payload = context.job.payload_as(PaymentPayload)
    except ValidationError as e:
        raise HandlerError(f"Invalid payment payload: {e.error_count()} validation error(s)") from e

    if payload.amount <= 0:
        return JobResult(
            success=False,
            error=f"Invalid payment amount {payload.amount} for transaction {payload.transaction_id}",
        )

    logger.info(
        f"Processing payment for transaction {payload.transaction_id}",
        extra={"job_id": context.job_id, "user_id": payload.user_id, "attempt": context.attempt},
    )
    return JobResult(
        success=True,
        output={"transaction_id": payload.transaction_id, "amount": str(payload.amount)},
    )


async def handle_generate_report(context: JobContext) -> JobResult:
    """
    Generate a report.

    Payload: ReportPayload (report_type, user_id, optional start/end dates).
    """
    try:
        payload = context.job.payload_as(ReportPayload)
    except ValidationError as e:
        raise HandlerError(f"Invalid report payload: {e.error_count()} validation error(s)") from e

    logger.info(
        f"Generating report {payload.report_type} for user {payload.user_id}",
        extra={"job_id": context.job_id},
    )
    return JobResult(
        success=True,
        output={
            "report_type": payload.report_type,
            "user_id": payload.user_id,
            "start_date": payload.start_date.isoformat() if payload.start_date else None,
            "end_date": payload.end_date.isoformat() if payload.end_date else None,
        },
    )


def create_default_registry(email_sender: EmailSender | None = None) -> HandlerRegistry:
    """
    Build the registry with the built-in job types.

    Args:
        email_sender: Delivery collaborator for SendEmail jobs. Defaults to
            a sender that only logs.
    """
    registry = HandlerRegistry()
    registry.add(JOB_TYPE_SEND_EMAIL, make_send_email_handler(email_sender or LoggingEmailSender()))
    registry.add(JOB_TYPE_PROCESS_PAYMENT, handle_process_payment)
    registry.add(JOB_TYPE_GENERATE_REPORT, handle_generate_report)
    return registry
