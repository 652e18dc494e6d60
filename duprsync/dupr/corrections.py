"""
Correction sweep: resubmit matches whose official result changed after a
DUPR submission.

The resubmission reuses the match's submission identifier, so DUPR treats it
as an update of the record it already holds. A failed correction keeps its
flags and is picked up again by the next sweep.
"""

import asyncio
import logging

from sqlalchemy.ext.asyncio import AsyncSession

from duprsync.config import Settings
from duprsync.dupr.auth import DuprTokenProvider
from duprsync.dupr.client import DuprClient
from duprsync.dupr.converter import convert_match
from duprsync.dupr.repository import MatchRepository
from duprsync.dupr.types import EventType
from duprsync.models import utc_now
from duprsync.telemetry.metrics import record_submission

logger = logging.getLogger(__name__)


async def process_corrections(
    session: AsyncSession,
    settings: Settings,
    client: DuprClient,
    token_provider: DuprTokenProvider,
    sleep=asyncio.sleep,
) -> dict:
    """
    Resubmit every match flagged for correction (bounded per event type).

    Returns:
        Dict with status and submitted/failed counts for job tracking.
    """
    token = await token_provider.get_token()
    if not token:
        logger.error("[DUPR_CORRECTIONS] Failed to get API token, skipping corrections")
        return {"status": "token_unavailable", "submitted": 0, "failed": 0}

    repo = MatchRepository(session)
    submitted = 0
    failed = 0
    event_names = {}
    calls_made = 0

    for event_type in EventType:
        matches = await repo.list_needing_correction(event_type.value, settings.DUPR_CORRECTION_LIMIT)
        if not matches:
            continue

        logger.info(f"[DUPR_CORRECTIONS] {len(matches)} {event_type.value} matches need correction")

        for match in matches:
            match_id = match.id
            key = (match.event_type, match.event_id)
            if key not in event_names:
                event = await repo.get_event(*key)
                event_names[key] = event.name if event else ""

            if calls_made:
                await sleep(settings.DUPR_QUEUE_INTER_CALL_DELAY_MS / 1000)
            calls_made += 1

            try:
                conversion = await convert_match(
                    match,
                    event_names[key],
                    settings.DUPR_CLUB_ID,
                    repo.fetch_dupr_ids_for_players,
                    settings.DUPR_MIN_WINNING_SCORE_HINT,
                )
                if not conversion.is_success:
                    error = conversion.error
                else:
                    result = await client.submit_match(conversion.payload, token)
                    error = None if result.success else result.error
            except Exception as e:
                logger.error(f"[DUPR_CORRECTIONS] Unexpected error for match {match_id}: {e}", exc_info=True)
                error = str(e) or type(e).__name__

            if error is None:
                now = utc_now()
                await repo.update_match(
                    match_id,
                    dupr_correction_submitted=True,
                    dupr_correction_submitted_at=now,
                    dupr_needs_correction=False,
                    dupr_submitted=True,
                    dupr_submission_error=None,
                    dupr_last_attempt_at=now,
                )
                record_submission("success")
                submitted += 1
                logger.info(f"[DUPR_CORRECTIONS] Correction submitted for {match_id}")
            else:
                await repo.update_match(match_id, dupr_submission_error=error, dupr_last_attempt_at=utc_now())
                record_submission("failure")
                failed += 1
                logger.error(f"[DUPR_CORRECTIONS] Correction failed for {match_id}: {error}")

    logger.info(f"[DUPR_CORRECTIONS] Complete: {submitted} submitted, {failed} failed")
    return {"status": "ok", "submitted": submitted, "failed": failed}
