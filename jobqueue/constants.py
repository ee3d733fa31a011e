"""
Application constants.
Centralized location for all constant values used across the application.
"""

from enum import StrEnum


class JobState(StrEnum):
    """
    Job lifecycle states. Each state corresponds to one storage location.

    State transitions:
    - PENDING -> IN_FLIGHT (claimed by a dispatcher)
    - IN_FLIGHT -> COMPLETED (handler succeeded)
    - IN_FLIGHT -> PENDING (retry, no backoff)
    - IN_FLIGHT -> SCHEDULED (retry with backoff)
    - IN_FLIGHT -> DEAD_LETTER (retries exhausted)
    - SCHEDULED -> PENDING (backoff elapsed)
    - IN_FLIGHT -> PENDING (lease expired - crash recovery)
    """

    PENDING = "pending"
    SCHEDULED = "scheduled"
    IN_FLIGHT = "in_flight"
    COMPLETED = "completed"
    DEAD_LETTER = "dead_letter"


TERMINAL_STATES = frozenset({JobState.COMPLETED, JobState.DEAD_LETTER})


class FailureOutcome(StrEnum):
    """What happened to a job after a reported outcome."""

    COMPLETED = "completed"
    RETRIED = "retried"
    DEAD_LETTERED = "dead_lettered"


# Store key suffixes (joined to the configured prefix with ":")
KEY_PENDING = "pending"
KEY_IN_FLIGHT = "in-flight"
KEY_COMPLETED = "completed"
KEY_DEAD_LETTER = "dead-letter"
KEY_SCHEDULED = "scheduled"
KEY_JOB_RECORD = "job"

# Default values
DEFAULT_MAX_RETRIES = 3
DEFAULT_POLL_INTERVAL_MS = 1000
DEFAULT_WORKER_COUNT = 2

# Transaction retries when a watched job record changes under us
MAX_REPORT_ATTEMPTS = 5

# Upper bound on waiting for a heartbeat to stop once its handler returned
HEARTBEAT_JOIN_TIMEOUT_SECONDS = 1.0

# Built-in job types
JOB_TYPE_SEND_EMAIL = "SendEmail"
JOB_TYPE_PROCESS_PAYMENT = "ProcessPayment"
JOB_TYPE_GENERATE_REPORT = "GenerateReport"

# Metrics names
METRIC_QUEUE_DEPTH = "queue_depth"
METRIC_JOBS_ENQUEUED = "jobs_enqueued_total"
METRIC_JOBS_CLAIMED = "jobs_claimed_total"
METRIC_JOBS_FINISHED = "jobs_finished_total"
METRIC_JOB_DURATION = "job_duration_seconds"
METRIC_LEASE_EXPIRED = "lease_expired_total"
METRIC_REPORTING_RACES = "reporting_races_total"
METRIC_STORE_ERRORS = "store_errors_total"

# Trace span names
SPAN_ENQUEUE_JOB = "enqueue_job"
SPAN_CLAIM_JOB = "claim_job"
SPAN_EXECUTE_JOB = "execute_job"
SPAN_COMPLETE_JOB = "complete_job"
SPAN_FAIL_JOB = "fail_job"
