"""
Prometheus metrics for the DUPR submission pipeline.

Design principles:
- Low cardinality (controlled labels)
- Best-effort (never block main flow)

=============================================================================
CARDINALITY CONTROL
=============================================================================

ALLOWED LABELS (bounded sets):
- endpoint:    "token", "match_create", "player", "subscribe"
- status_code: "200", "400", "401", "409", "500", "0"
- outcome:     "success", "duplicate", "failure", "skipped"
- status:      "ok", "error", "skipped", "completed", "partial_failure", ...
- event_type:  normalized webhook event family ("RATING", "REGISTRATION", "OTHER")
- result:      "processed", "duplicate", "stored", "ignored", "error"
- job:         scheduler job id

FORBIDDEN AS LABELS:
- match_id, batch_id, dupr_id, player ids, event ids
- error messages, raw payloads
=============================================================================
"""

import logging

from prometheus_client import (
    CONTENT_TYPE_LATEST,
    REGISTRY,
    Counter,
    Gauge,
    Histogram,
    generate_latest,
)

logger = logging.getLogger(__name__)

# =============================================================================
# AUTHORITY CALLS
# =============================================================================

dupr_requests_total = Counter(
    "dupr_requests_total",
    "Total HTTP requests to the DUPR API",
    ["endpoint", "status_code"],
)

dupr_request_latency_ms = Histogram(
    "dupr_request_latency_ms",
    "DUPR API request latency in milliseconds",
    ["endpoint"],
    buckets=[25, 50, 100, 250, 500, 1000, 2500, 5000, 10000, 30000],
)

dupr_token_requests_total = Counter(
    "dupr_token_requests_total",
    "DUPR token exchanges by result",
    ["status"],
)

# =============================================================================
# PIPELINE OUTCOMES
# =============================================================================

dupr_submissions_total = Counter(
    "dupr_submissions_total",
    "Per-match submission outcomes",
    ["outcome"],
)

dupr_batches_total = Counter(
    "dupr_batches_total",
    "Submission batches finished by final status",
    ["status"],
)

dupr_webhook_events_total = Counter(
    "dupr_webhook_events_total",
    "Inbound DUPR webhook deliveries",
    ["event_type", "result"],
)

dupr_rating_sync_total = Counter(
    "dupr_rating_sync_total",
    "Rating sync lookups by result",
    ["status"],
)

# =============================================================================
# JOB HEALTH
# =============================================================================

job_runs_total = Counter(
    "job_runs_total",
    "Scheduler job runs by status",
    ["job", "status"],
)

job_duration_ms = Histogram(
    "job_duration_ms",
    "Scheduler job duration in milliseconds",
    ["job"],
    buckets=[100, 500, 1000, 5000, 15000, 60000, 300000, 900000],
)

job_last_success_timestamp = Gauge(
    "job_last_success_timestamp",
    "Unix timestamp of the last successful run",
    ["job"],
)


def _webhook_family(event_type: str) -> str:
    upper = (event_type or "").upper()
    if "RATING" in upper:
        return "RATING"
    if "REGISTRATION" in upper:
        return "REGISTRATION"
    return "OTHER"


def record_dupr_request(endpoint: str, status_code: int, latency_ms: float) -> None:
    try:
        dupr_requests_total.labels(endpoint=endpoint, status_code=str(status_code)).inc()
        dupr_request_latency_ms.labels(endpoint=endpoint).observe(latency_ms)
    except Exception as e:
        logger.warning(f"Failed to record DUPR request metric: {e}")


def record_token_request(status: str) -> None:
    try:
        dupr_token_requests_total.labels(status=status).inc()
    except Exception as e:
        logger.warning(f"Failed to record token metric: {e}")


def record_submission(outcome: str) -> None:
    try:
        dupr_submissions_total.labels(outcome=outcome).inc()
    except Exception as e:
        logger.warning(f"Failed to record submission metric: {e}")


def record_batch(status: str) -> None:
    try:
        dupr_batches_total.labels(status=status).inc()
    except Exception as e:
        logger.warning(f"Failed to record batch metric: {e}")


def record_webhook_event(event_type: str, result: str) -> None:
    try:
        dupr_webhook_events_total.labels(event_type=_webhook_family(event_type), result=result).inc()
    except Exception as e:
        logger.warning(f"Failed to record webhook metric: {e}")


def record_rating_sync(status: str, count: int = 1) -> None:
    try:
        if count > 0:
            dupr_rating_sync_total.labels(status=status).inc(count)
    except Exception as e:
        logger.warning(f"Failed to record rating sync metric: {e}")


def record_job_run(job: str, status: str, duration_ms: float) -> None:
    """
    Record a job run with status and duration.

    Args:
        job: Job identifier (dupr_process_queue, dupr_process_corrections, ...)
        status: "ok", "error", "skipped"
        duration_ms: Job duration in milliseconds
    """
    try:
        job_runs_total.labels(job=job, status=status).inc()
        if duration_ms > 0:
            job_duration_ms.labels(job=job).observe(duration_ms)
        if status == "ok":
            job_last_success_timestamp.labels(job=job).set_to_current_time()
    except Exception as e:
        logger.warning(f"Failed to record job run metric: {e}")


def get_metrics_text() -> tuple[str, str]:
    """
    Generate Prometheus metrics text output.

    Returns:
        Tuple of (content, content_type)
    """
    return generate_latest(REGISTRY).decode("utf-8"), CONTENT_TYPE_LATEST
