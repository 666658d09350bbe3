"""Prometheus instruments for the capture scheduler."""

from __future__ import annotations

from prometheus_client import Counter, Gauge, Histogram

JOBS_ACTIVE = Gauge(
    "xsnap_jobs_active",
    "Capture executions currently holding a concurrency slot",
)
JOB_OUTCOMES = Counter(
    "xsnap_job_outcomes_total",
    "Finished capture attempts by outcome",
    labelnames=("outcome",),
)
CAPTURE_DURATION_SECONDS = Histogram(
    "xsnap_capture_duration_seconds",
    "Wall-clock time spent inside the capture executor",
    buckets=(1, 2.5, 5, 10, 20, 30, 60, 120, 300),
)
RETRIES_SCHEDULED = Counter(
    "xsnap_retries_scheduled_total",
    "Failed attempts that scheduled a delayed requeue",
)
RETRIES_REQUEUED = Counter(
    "xsnap_retries_requeued_total",
    "Retry-pending jobs moved back to the queue",
)
JOBS_RECOVERED = Counter(
    "xsnap_jobs_recovered_total",
    "Running jobs reset to queued by startup recovery",
)
POLL_ERRORS = Counter(
    "xsnap_poll_errors_total",
    "Poll cycles abandoned because the store was unavailable",
)

OUTCOME_SUCCESS = "success"
OUTCOME_RETRY = "retry"
OUTCOME_FAILED = "failed"


def record_job_outcome(outcome: str, duration_seconds: float | None = None) -> None:
    JOB_OUTCOMES.labels(outcome=outcome).inc()
    if duration_seconds is not None:
        CAPTURE_DURATION_SECONDS.observe(max(0.0, duration_seconds))
    if outcome == OUTCOME_RETRY:
        RETRIES_SCHEDULED.inc()


def set_active_jobs(count: int) -> None:
    JOBS_ACTIVE.set(count)


__all__ = [
    "JOBS_ACTIVE",
    "JOB_OUTCOMES",
    "CAPTURE_DURATION_SECONDS",
    "RETRIES_SCHEDULED",
    "RETRIES_REQUEUED",
    "JOBS_RECOVERED",
    "POLL_ERRORS",
    "OUTCOME_SUCCESS",
    "OUTCOME_RETRY",
    "OUTCOME_FAILED",
    "record_job_outcome",
    "set_active_jobs",
]
