"""
Telemetry for the DUPR pipeline.

Prometheus metrics (Authority calls, submissions, batches, webhooks, jobs)
and Sentry error tracking.
"""

from duprsync.telemetry.metrics import (
    get_metrics_text,
    record_batch,
    record_dupr_request,
    record_job_run,
    record_rating_sync,
    record_submission,
    record_token_request,
    record_webhook_event,
)
