"""Job run tracking.

Records scheduler executions in the job_runs table so the last successful
run of each job is still known after a restart resets Prometheus counters.

Usage:
    from duprsync.jobs.tracking import record_job_run

    start = utc_now()
    try:
        metrics = await process_corrections(...)
        await record_job_run(session, "dupr_process_corrections", "ok", start, metrics=metrics)
    except Exception as e:
        await record_job_run(session, "dupr_process_corrections", "error", start, error=str(e))
        raise
"""

import logging
from datetime import datetime
from typing import Optional

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from duprsync.models import JobRun, utc_now

logger = logging.getLogger(__name__)


async def record_job_run(
    session: AsyncSession,
    job_name: str,
    status: str,
    started_at: datetime,
    error: Optional[str] = None,
    metrics: Optional[dict] = None,
) -> None:
    """
    Record a job execution in the database.

    Args:
        session: Database session.
        job_name: Job identifier (dupr_process_queue, dupr_sync_ratings, ...).
        status: Execution status (ok, error, skipped).
        started_at: When the job started (naive UTC).
        error: Error message if failed.
        metrics: Optional job-specific metrics dict.
    """
    finished_at = utc_now()
    duration_ms = int((finished_at - started_at).total_seconds() * 1000)

    session.add(
        JobRun(
            job_name=job_name,
            status=status,
            started_at=started_at,
            finished_at=finished_at,
            duration_ms=duration_ms,
            error_message=error,
            metrics=metrics,
        )
    )
    await session.commit()

    logger.debug(f"[JOB_TRACKING] Recorded {job_name} run: {status} in {duration_ms}ms")


async def get_last_success_at(session: AsyncSession, job_name: str) -> Optional[datetime]:
    """Finish time of the last successful run, or None."""
    result = await session.execute(
        select(JobRun.finished_at)
        .where(JobRun.job_name == job_name)
        .where(JobRun.status == "ok")
        .order_by(JobRun.finished_at.desc())
        .limit(1)
    )
    row = result.first()
    return row[0] if row else None
