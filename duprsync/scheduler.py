"""
Background scheduler for the DUPR pipeline.

Jobs:
- dupr_process_queue: every DUPR_QUEUE_INTERVAL_MINUTES, pending/retry/stale batches
- dupr_process_corrections: every DUPR_CORRECTION_INTERVAL_MINUTES
- dupr_sync_ratings: daily at DUPR_RATING_SYNC_HOUR in DUPR_RATING_SYNC_TIMEZONE

Each tick is an independent unit of work: its own DB session, Authority
client and token. Exceptions are logged, sent to Sentry and recorded as an
error run; they never reach the scheduler.
"""

import logging
import os
import time
from typing import Awaitable, Callable

from apscheduler.schedulers.asyncio import AsyncIOScheduler
from apscheduler.triggers.cron import CronTrigger
from apscheduler.triggers.interval import IntervalTrigger
from sqlalchemy.ext.asyncio import AsyncSession

from duprsync.config import Settings, get_settings
from duprsync.database import get_session_with_retry
from duprsync.dupr.auth import DuprTokenProvider
from duprsync.dupr.client import DuprClient
from duprsync.dupr.corrections import process_corrections
from duprsync.dupr.engine import SubmissionEngine
from duprsync.dupr.ratings import sync_ratings
from duprsync.jobs.tracking import record_job_run as record_job_run_db
from duprsync.models import utc_now
from duprsync.telemetry.metrics import record_job_run
from duprsync.telemetry.sentry import capture_exception as sentry_capture_exception
from duprsync.telemetry.sentry import sentry_job_context

logger = logging.getLogger(__name__)

_scheduler_started = False
scheduler = AsyncIOScheduler()

JobRunner = Callable[[AsyncSession, Settings, DuprClient, DuprTokenProvider], Awaitable[dict]]


async def _record_run(job_id: str, status: str, started_at, start_time: float, metrics=None, error=None) -> None:
    """Persist a run to job_runs (best-effort) and to Prometheus."""
    duration_ms = (time.time() - start_time) * 1000
    try:
        async with get_session_with_retry(max_retries=2, retry_delay=0.5) as session:
            await record_job_run_db(session, job_id, status, started_at, error=error, metrics=metrics)
    except Exception as db_err:
        logger.warning(f"[JOB_TRACKING] Failed to persist {job_id} run: {db_err}")
    record_job_run(job=job_id, status=status, duration_ms=duration_ms)


async def run_dupr_job(job_id: str, runner: JobRunner) -> dict:
    """Run one DUPR job tick with its own session, client and token provider."""
    settings = get_settings()
    start_time = time.time()
    started_at = utc_now()

    try:
        with sentry_job_context(job_id, dupr_env=settings.DUPR_ENV):
            async with get_session_with_retry() as session:
                async with DuprClient(settings) as client:
                    metrics = await runner(session, settings, client, DuprTokenProvider(settings))
    except Exception as e:
        logger.error(f"[{job_id.upper()}] Job failed: {e}", exc_info=True)
        sentry_capture_exception(e, job_id=job_id)
        await _record_run(job_id, "error", started_at, start_time, error=str(e))
        return {"status": "error", "error": str(e)}

    status = "skipped" if metrics.get("status") == "token_unavailable" else "ok"
    await _record_run(job_id, status, started_at, start_time, metrics=metrics)
    return metrics


async def _queue_runner(session, settings, client, token_provider) -> dict:
    return await SubmissionEngine(session, settings, client, token_provider).process_queue()


async def dupr_process_queue() -> dict:
    return await run_dupr_job("dupr_process_queue", _queue_runner)


async def dupr_process_corrections() -> dict:
    return await run_dupr_job("dupr_process_corrections", process_corrections)


async def dupr_sync_ratings() -> dict:
    return await run_dupr_job("dupr_sync_ratings", sync_ratings)


def start_scheduler():
    """
    Start the background scheduler.

    Uses a module-level flag to prevent duplicate scheduler instances
    when running with --reload.
    """
    global _scheduler_started

    if _scheduler_started:
        logger.warning("Scheduler already started, skipping duplicate initialization")
        return

    if os.environ.get("UVICORN_RELOADED"):
        logger.info("Skipping scheduler in reload subprocess")
        return

    settings = get_settings()
    if not settings.SCHEDULER_ENABLED:
        logger.info("Scheduler disabled via SCHEDULER_ENABLED=false")
        return

    scheduler.add_job(
        dupr_process_queue,
        trigger=IntervalTrigger(minutes=settings.DUPR_QUEUE_INTERVAL_MINUTES),
        id="dupr_process_queue",
        name="DUPR submission queue",
        replace_existing=True,
        max_instances=1,
        coalesce=True,
        misfire_grace_time=60,
    )

    scheduler.add_job(
        dupr_process_corrections,
        trigger=IntervalTrigger(minutes=settings.DUPR_CORRECTION_INTERVAL_MINUTES),
        id="dupr_process_corrections",
        name="DUPR correction sweep",
        replace_existing=True,
        max_instances=1,
        coalesce=True,
        misfire_grace_time=300,
    )

    # Daily at 03:00 local (Pacific/Auckland by default)
    scheduler.add_job(
        dupr_sync_ratings,
        trigger=CronTrigger(hour=settings.DUPR_RATING_SYNC_HOUR, minute=0, timezone=settings.DUPR_RATING_SYNC_TIMEZONE),
        id="dupr_sync_ratings",
        name="DUPR daily rating sync",
        replace_existing=True,
        max_instances=1,
        coalesce=True,
        misfire_grace_time=3600,
    )

    scheduler.start()
    _scheduler_started = True
    logger.info(
        f"Scheduler started: queue every {settings.DUPR_QUEUE_INTERVAL_MINUTES}min, "
        f"corrections every {settings.DUPR_CORRECTION_INTERVAL_MINUTES}min, "
        f"rating sync daily at {settings.DUPR_RATING_SYNC_HOUR:02d}:00 {settings.DUPR_RATING_SYNC_TIMEZONE}"
    )


def stop_scheduler():
    """Stop the background scheduler."""
    global _scheduler_started
    if scheduler.running:
        scheduler.shutdown()
        _scheduler_started = False
        logger.info("Scheduler stopped")
