"""
DUPR submission engine: organizer submissions, failed-match retries, the
scheduled queue sweep and the single-match diagnostic path.

Matches are processed sequentially with a fixed delay between Authority
calls. A match's failure (or exception) is recorded on the match and the
batch and never aborts its siblings.

Batch retry policy:
- ``retry_count`` counts retries already started
- after a pass with failures, the next retry is scheduled while
  ``retry_count < DUPR_MAX_RETRIES`` using DUPR_RETRY_DELAYS_SECONDS[retry_count]
- a batch found in ``processing`` older than DUPR_PROCESSING_STALE_MINUTES is
  resumed by the sweep without consuming a retry
"""

import asyncio
import logging
import uuid
from dataclasses import asdict, dataclass, field
from datetime import timedelta
from typing import Iterable, List, Optional, Sequence

from sqlalchemy.ext.asyncio import AsyncSession

from duprsync.config import Settings
from duprsync.dupr.auth import DuprTokenProvider
from duprsync.dupr.client import DuprClient
from duprsync.dupr.converter import convert_match
from duprsync.dupr.eligibility import can_submit_to_dupr, categorize_match, is_submitted
from duprsync.dupr.errors import InvalidRequestError, InvalidTransitionError, NotFoundError, PermissionDeniedError
from duprsync.dupr.repository import BatchRepository, MatchRepository
from duprsync.dupr.scoring import games_from_result
from duprsync.dupr.types import BatchStatus, MatchCategory, check_batch_transition, parse_event_type
from duprsync.models import Event, Match, SubmissionBatch, utc_now
from duprsync.telemetry.metrics import record_batch, record_submission

logger = logging.getLogger(__name__)


@dataclass
class MatchOutcome:
    """Per-match result inside a batch."""

    match_id: str
    success: bool
    dupr_match_id: Optional[str] = None
    error: Optional[str] = None
    skipped: bool = False
    warnings: List[str] = field(default_factory=list)

    @property
    def is_failure(self) -> bool:
        return not self.success and not self.skipped

    def to_record(self) -> dict:
        """Shape stored in SubmissionBatch.results (no None values)."""
        record = {"match_id": self.match_id, "success": self.success}
        if self.dupr_match_id:
            record["dupr_match_id"] = self.dupr_match_id
        if self.error:
            record["error"] = self.error
        if self.skipped:
            record["skipped"] = True
        return record

    @classmethod
    def from_record(cls, record: dict) -> "MatchOutcome":
        return cls(
            match_id=record["match_id"],
            success=bool(record.get("success")),
            dupr_match_id=record.get("dupr_match_id"),
            error=record.get("error"),
            skipped=bool(record.get("skipped")),
        )


@dataclass
class SubmissionSummary:
    success: bool
    batch_id: Optional[str]
    message: str
    eligible_count: int = 0
    ineligible_count: int = 0
    skipped_count: int = 0
    success_count: int = 0
    failure_count: int = 0
    results: List[MatchOutcome] = field(default_factory=list)

    def to_dict(self) -> dict:
        return {
            "success": self.success,
            "batchId": self.batch_id,
            "message": self.message,
            "eligibleCount": self.eligible_count,
            "ineligibleCount": self.ineligible_count,
            "skippedCount": self.skipped_count,
            "successCount": self.success_count,
            "failureCount": self.failure_count,
            "results": [r.to_record() for r in self.results],
        }


@dataclass
class RetrySummary:
    success: bool
    retried_count: int
    success_count: int
    failure_count: int
    batch_id: Optional[str] = None
    message: str = ""
    results: List[MatchOutcome] = field(default_factory=list)

    def to_dict(self) -> dict:
        return {
            "success": self.success,
            "retriedCount": self.retried_count,
            "successCount": self.success_count,
            "failureCount": self.failure_count,
            "batchId": self.batch_id,
            "message": self.message,
            "results": [r.to_record() for r in self.results],
        }


@dataclass
class DiagnosticTrace:
    """Staged trace for one match. Never contains player or DUPR ids."""

    ok: bool
    stage: str
    error: Optional[str] = None
    match_metadata: Optional[dict] = None
    payload_metadata: Optional[dict] = None
    warnings: List[str] = field(default_factory=list)
    dupr_response: Optional[dict] = None

    def to_dict(self) -> dict:
        return {k: v for k, v in asdict(self).items() if v is not None}


def build_summary_message(success_count: int, failure_count: int) -> str:
    if success_count == 0 and failure_count == 0:
        return "No eligible matches to submit"
    if failure_count == 0:
        return f"Successfully submitted {success_count} matches to DUPR"
    if success_count > 0:
        return f"Submitted {success_count} matches, {failure_count} failed"
    return f"Failed to submit {failure_count} matches to DUPR"


def _unique(ids: Iterable[str]) -> List[str]:
    seen = set()
    ordered = []
    for match_id in ids:
        if match_id and match_id not in seen:
            seen.add(match_id)
            ordered.append(match_id)
    return ordered


class SubmissionEngine:
    """Orchestrates DUPR submissions for one unit of work (request or tick)."""

    def __init__(
        self,
        session: AsyncSession,
        settings: Settings,
        client: DuprClient,
        token_provider: DuprTokenProvider,
        sleep=asyncio.sleep,
    ):
        self.session = session
        self.settings = settings
        self.client = client
        self.token_provider = token_provider
        self.matches = MatchRepository(session)
        self.batches = BatchRepository(session)
        self._sleep = sleep

    # ------------------------------------------------------------------
    # Request validation
    # ------------------------------------------------------------------

    async def authorize_event(self, event_type: str, event_id: str, user_id: Optional[str]) -> Event:
        """Validate the request and check the caller may manage the event."""
        event_type = parse_event_type(event_type).value
        if not event_id:
            raise InvalidRequestError("Missing eventId")
        if not user_id:
            raise PermissionDeniedError("Must be logged in")

        event = await self.matches.get_event(event_type, event_id)
        if event is None:
            raise NotFoundError("Event not found")
        if not await self.matches.can_manage_event(event, user_id):
            raise PermissionDeniedError("Only organizers can submit matches to DUPR")
        return event

    # ------------------------------------------------------------------
    # Single match
    # ------------------------------------------------------------------

    async def submit_one(
        self,
        match: Match,
        event_name: str,
        token: str,
        batch_id: Optional[str] = None,
        count_retry: bool = False,
    ) -> MatchOutcome:
        """Convert, submit and persist one match. Never raises."""
        match_id = match.id
        prior_retries = match.dupr_retry_count or 0
        try:
            conversion = await convert_match(
                match,
                event_name,
                self.settings.DUPR_CLUB_ID,
                self.matches.fetch_dupr_ids_for_players,
                self.settings.DUPR_MIN_WINNING_SCORE_HINT,
            )
            if not conversion.is_success:
                await self._record_failure(match_id, prior_retries, conversion.error, batch_id, count_retry)
                return MatchOutcome(match_id, False, error=conversion.error, warnings=conversion.warnings)

            result = await self.client.submit_match(conversion.payload, token)
            warnings = conversion.warnings + result.warnings

            if result.success:
                await self.matches.mark_submitted(match_id, result.dupr_match_id, batch_id)
                record_submission("duplicate" if result.is_duplicate else "success")
                return MatchOutcome(match_id, True, dupr_match_id=result.dupr_match_id, warnings=warnings)

            await self._record_failure(match_id, prior_retries, result.error, batch_id, count_retry)
            return MatchOutcome(match_id, False, error=result.error, warnings=warnings)

        except Exception as e:
            error = str(e) or type(e).__name__
            logger.error(f"[DUPR] Unexpected error submitting match {match_id}: {error}", exc_info=True)
            try:
                await self._record_failure(match_id, prior_retries, error, batch_id, count_retry)
            except Exception as record_error:
                logger.warning(f"[DUPR] Could not record failure for match {match_id}: {record_error}")
            return MatchOutcome(match_id, False, error=error)

    async def _record_failure(
        self,
        match_id: str,
        prior_retries: int,
        error: str,
        batch_id: Optional[str],
        count_retry: bool,
    ) -> None:
        record_submission("failure")
        if count_retry:
            now = utc_now()
            await self.matches.update_match(
                match_id,
                dupr_submission_error=error,
                dupr_batch_id=batch_id,
                dupr_retry_count=prior_retries + 1,
                dupr_last_retry_at=now,
                dupr_last_attempt_at=now,
            )
        else:
            await self.matches.mark_failed(match_id, error, batch_id)

    # ------------------------------------------------------------------
    # Batch processing
    # ------------------------------------------------------------------

    def _schedule_fields(self, retry_count: int, failure_count: int) -> dict:
        """Retry schedule for a batch after a pass."""
        if failure_count == 0:
            return {"status": BatchStatus.COMPLETED, "next_retry_at": None}
        if retry_count < self.settings.DUPR_MAX_RETRIES:
            delay = self.settings.retry_delay_seconds(retry_count)
            return {"status": BatchStatus.PARTIAL_FAILURE, "next_retry_at": utc_now() + timedelta(seconds=delay)}
        # Retry budget exhausted: stays partial_failure for manual follow-up
        return {"status": BatchStatus.PARTIAL_FAILURE, "next_retry_at": None}

    async def _process_batch(
        self,
        batch: SubmissionBatch,
        event_name: str,
        token: str,
        delay_ms: int,
        count_retry: bool,
    ) -> List[MatchOutcome]:
        """
        Run every unresolved match of a batch. Prior successes and skips are reused.

        A failure on one match is recorded against that match only; the rest
        of the batch still runs.
        """
        batch_id = batch.id
        event_type, event_id = batch.event_type, batch.event_id
        previous = {r["match_id"]: MatchOutcome.from_record(r) for r in (batch.results or [])}
        outcomes: List[MatchOutcome] = []
        calls_made = 0
        rolled_back = False

        for match_id in list(batch.match_ids or []):
            prior = previous.get(match_id)
            if prior is not None and (prior.success or prior.skipped):
                outcomes.append(prior)
                continue

            try:
                match = await self.matches.get_match(event_type, event_id, match_id)
                if match is None:
                    outcomes.append(MatchOutcome(match_id, False, error="Match not found"))
                    record_submission("failure")
                    continue

                if is_submitted(match):
                    outcomes.append(
                        MatchOutcome(match_id, True, dupr_match_id=match.dupr_submission_id, skipped=True)
                    )
                    record_submission("skipped")
                    continue

                eligible, reason = can_submit_to_dupr(match)
                if not eligible:
                    outcomes.append(MatchOutcome(match_id, False, error=reason, skipped=True))
                    record_submission("skipped")
                    continue

                if calls_made:
                    await self._sleep(delay_ms / 1000)
                calls_made += 1
                outcomes.append(await self.submit_one(match, event_name, token, batch_id, count_retry=count_retry))
            except Exception as e:
                error = str(e) or type(e).__name__
                logger.error(f"[DUPR] Error processing match {match_id} in batch {batch_id}: {error}", exc_info=True)
                await self.session.rollback()
                rolled_back = True
                outcomes.append(MatchOutcome(match_id, False, error=error))
                record_submission("failure")

        if rolled_back:
            # rollback expires loaded rows; _finish_batch reads the batch again
            await self.session.refresh(batch)
        return outcomes

    async def _finish_batch(self, batch: SubmissionBatch, outcomes: Sequence[MatchOutcome]) -> BatchStatus:
        failure_count = sum(1 for o in outcomes if o.is_failure)
        schedule = self._schedule_fields(batch.retry_count, failure_count)
        status = schedule.pop("status")
        await self.batches.transition(
            batch,
            status,
            results=[o.to_record() for o in outcomes],
            processed_at=utc_now(),
            last_error=None,
            **schedule,
        )
        record_batch(status.value)
        return status

    async def _run_new_batch(
        self,
        event: Event,
        matches: Sequence[Match],
        user_id: Optional[str],
        token: str,
    ) -> tuple:
        """Create, process and finalize a batch for already-loaded matches."""
        batch = SubmissionBatch(
            id=uuid.uuid4().hex,
            event_type=event.event_type,
            event_id=event.id,
            match_ids=[m.id for m in matches],
            status=BatchStatus.PENDING.value,
            created_by_user_id=user_id,
        )
        await self.batches.create(batch)

        now = utc_now()
        for match in matches:
            await self.matches.update_match(
                match.id,
                dupr_pending_submission=True,
                dupr_pending_submission_at=now,
                dupr_batch_id=batch.id,
            )

        await self.batches.transition(batch, BatchStatus.PROCESSING, processing_started_at=now)
        outcomes = await self._process_batch(
            batch, event.name, token, self.settings.DUPR_INTER_CALL_DELAY_MS, count_retry=False
        )
        await self._finish_batch(batch, outcomes)
        return batch.id, outcomes

    async def submit_matches(
        self,
        event_type: str,
        event_id: str,
        user_id: Optional[str],
        match_ids: Optional[List[str]] = None,
        queue_only: bool = False,
    ) -> SubmissionSummary:
        """
        Submit matches for an event.

        With explicit ``match_ids`` every listed match is considered; without,
        all completed+official matches classified ready_for_dupr are swept.
        ``queue_only`` stores a pending batch for the scheduler instead of
        submitting inline.
        """
        event = await self.authorize_event(event_type, event_id, user_id)
        event_type = event.event_type

        if match_ids:
            match_ids = _unique(match_ids)
            if len(match_ids) > self.settings.DUPR_BATCH_SIZE:
                raise InvalidRequestError(f"Too many matches in one request (max {self.settings.DUPR_BATCH_SIZE})")
            loaded = [(mid, await self.matches.get_match(event_type, event_id, mid)) for mid in match_ids]
        else:
            pool = await self.matches.list_official_completed(event_type, event_id)
            ready = [m for m in pool if categorize_match(m) == MatchCategory.READY_FOR_DUPR]
            sweep_ineligible = len(pool) - len(ready)
            if len(ready) > self.settings.DUPR_BATCH_SIZE:
                logger.info(
                    f"[DUPR] Event {event_id}: {len(ready)} ready matches, "
                    f"submitting first {self.settings.DUPR_BATCH_SIZE}"
                )
                ready = ready[: self.settings.DUPR_BATCH_SIZE]
            loaded = [(m.id, m) for m in ready]

        outcomes: List[MatchOutcome] = []
        eligible: List[Match] = []
        ineligible_count = 0
        skipped_count = 0

        for match_id, match in loaded:
            if match is None:
                outcomes.append(MatchOutcome(match_id, False, error="Match not found"))
                continue
            if is_submitted(match):
                skipped_count += 1
                outcomes.append(MatchOutcome(match_id, True, dupr_match_id=match.dupr_submission_id, skipped=True))
                continue
            ok, reason = can_submit_to_dupr(match)
            if not ok:
                ineligible_count += 1
                outcomes.append(MatchOutcome(match_id, False, error=reason, skipped=True))
                continue
            eligible.append(match)

        if not match_ids:
            ineligible_count += sweep_ineligible

        if not eligible:
            missing = sum(1 for o in outcomes if o.is_failure)
            return SubmissionSummary(
                success=False,
                batch_id=None,
                message=build_summary_message(0, missing) if missing else "No eligible matches to submit",
                ineligible_count=ineligible_count,
                skipped_count=skipped_count,
                failure_count=missing,
                results=outcomes,
            )

        if queue_only:
            batch = await self.batches.create(
                SubmissionBatch(
                    id=uuid.uuid4().hex,
                    event_type=event_type,
                    event_id=event_id,
                    match_ids=[m.id for m in eligible],
                    status=BatchStatus.PENDING.value,
                    created_by_user_id=user_id,
                )
            )
            now = utc_now()
            for match in eligible:
                await self.matches.update_match(
                    match.id, dupr_pending_submission=True, dupr_pending_submission_at=now, dupr_batch_id=batch.id
                )
            logger.info(f"[DUPR] Queued batch {batch.id} with {len(eligible)} matches")
            return SubmissionSummary(
                success=True,
                batch_id=batch.id,
                message=f"Queued {len(eligible)} matches for DUPR submission",
                eligible_count=len(eligible),
                ineligible_count=ineligible_count,
                skipped_count=skipped_count,
                results=outcomes,
            )

        token = await self.token_provider.require_token()
        batch_id, batch_outcomes = await self._run_new_batch(event, eligible, user_id, token)
        outcomes.extend(batch_outcomes)

        success_count = sum(1 for o in batch_outcomes if o.success)
        failure_count = sum(1 for o in outcomes if o.is_failure)
        logger.info(f"[DUPR] Batch {batch_id} complete: {success_count} success, {failure_count} failed")

        return SubmissionSummary(
            success=success_count > 0,
            batch_id=batch_id,
            message=build_summary_message(success_count, failure_count),
            eligible_count=len(eligible),
            ineligible_count=ineligible_count,
            skipped_count=skipped_count,
            success_count=success_count,
            failure_count=failure_count,
            results=outcomes,
        )

    async def retry_failed(self, event_type: str, event_id: str, user_id: Optional[str]) -> RetrySummary:
        """Resubmit matches with a recorded error or a stuck pending flag."""
        event = await self.authorize_event(event_type, event_id, user_id)

        pool = await self.matches.list_official_completed(event.event_type, event.id)
        targets = [
            m for m in pool
            if m.official_result
            and m.dupr_eligible is not False
            and not m.dupr_submitted
            and (m.dupr_submission_error or m.dupr_pending_submission)
        ]

        if not targets:
            return RetrySummary(
                success=True,
                retried_count=0,
                success_count=0,
                failure_count=0,
                message="No failed matches to retry",
            )

        targets = targets[: self.settings.DUPR_BATCH_SIZE]
        token = await self.token_provider.require_token()
        batch_id, outcomes = await self._run_new_batch(event, targets, user_id, token)

        success_count = sum(1 for o in outcomes if o.success)
        failure_count = sum(1 for o in outcomes if o.is_failure)
        logger.info(f"[DUPR] Retry for event {event_id}: {success_count} success, {failure_count} failed")
        return RetrySummary(
            success=failure_count == 0,
            retried_count=len(targets),
            success_count=success_count,
            failure_count=failure_count,
            batch_id=batch_id,
            message=build_summary_message(success_count, failure_count),
            results=outcomes,
        )

    # ------------------------------------------------------------------
    # Queue sweep
    # ------------------------------------------------------------------

    async def process_queue(self) -> dict:
        """Scheduled sweep over pending, due-for-retry and stale batches."""
        token = await self.token_provider.get_token()
        if not token:
            logger.error("[DUPR_QUEUE] Failed to get API token, skipping processing")
            return {"status": "token_unavailable", "batches": 0}

        now = utc_now()
        stale_cutoff = now - timedelta(minutes=self.settings.DUPR_PROCESSING_STALE_MINUTES)

        pending = await self.batches.list_pending(self.settings.DUPR_QUEUE_PENDING_LIMIT)
        retries = await self.batches.list_due_retries(
            now, self.settings.DUPR_MAX_RETRIES, self.settings.DUPR_QUEUE_RETRY_LIMIT
        )
        stale = await self.batches.list_stale_processing(stale_cutoff, self.settings.DUPR_QUEUE_RETRY_LIMIT)

        batches = pending + retries + stale
        if not batches:
            logger.debug("[DUPR_QUEUE] No pending batches to process")
            return {"status": "ok", "batches": 0, "completed": 0, "partial_failure": 0, "skipped": 0, "stale_recovered": 0}

        logger.info(
            f"[DUPR_QUEUE] Processing {len(batches)} batches "
            f"(pending={len(pending)}, retry={len(retries)}, stale={len(stale)})"
        )

        counts = {"completed": 0, "partial_failure": 0, "skipped": 0}
        for batch_id in [b.id for b in batches]:
            # Re-read each batch: an earlier batch's rollback expires every loaded row
            batch = await self.batches.get(batch_id)
            if batch is None:
                counts["skipped"] += 1
                continue
            try:
                status = await self._process_queued_batch(batch, token)
            except InvalidTransitionError as e:
                logger.warning(f"[DUPR_QUEUE] Batch {batch_id} skipped: {e.message}")
                counts["skipped"] += 1
                continue
            counts[status.value] += 1

        return {"status": "ok", "batches": len(batches), "stale_recovered": len(stale), **counts}

    async def _process_queued_batch(self, batch: SubmissionBatch, token: str) -> BatchStatus:
        batch_id = batch.id
        is_retry = batch.status == BatchStatus.PARTIAL_FAILURE
        retry_count = batch.retry_count + 1 if is_retry else batch.retry_count

        await self.batches.transition(
            batch, BatchStatus.PROCESSING, processing_started_at=utc_now(), retry_count=retry_count
        )

        try:
            event = await self.matches.get_event(batch.event_type, batch.event_id)
            event_name = event.name if event else ""
            outcomes = await self._process_batch(
                batch, event_name, token, self.settings.DUPR_QUEUE_INTER_CALL_DELAY_MS, count_retry=is_retry
            )
            status = await self._finish_batch(batch, outcomes)
            logger.info(
                f"[DUPR_QUEUE] Batch {batch.id}: {sum(o.success for o in outcomes)} success, "
                f"{sum(o.is_failure for o in outcomes)} failed -> {status.value}"
            )
            return status
        except Exception as e:
            logger.error(f"[DUPR_QUEUE] Batch {batch_id} processing error: {e}", exc_info=True)
            # rollback expires loaded rows, so only captured values are used below
            await self.session.rollback()
            schedule = self._schedule_fields(retry_count, failure_count=1)
            status = check_batch_transition(BatchStatus.PROCESSING, schedule.pop("status"))
            await self.batches.update(batch_id, status=status.value, last_error=str(e), **schedule)
            record_batch(status.value)
            return status

    async def get_batch_status(self, batch_id: str) -> SubmissionBatch:
        if not batch_id:
            raise InvalidRequestError("Missing batchId")
        batch = await self.batches.get(batch_id)
        if batch is None:
            raise NotFoundError("Batch not found")
        return batch

    # ------------------------------------------------------------------
    # Diagnostics
    # ------------------------------------------------------------------

    async def test_submit_one(
        self,
        event_type: str,
        event_id: str,
        match_id: str,
        user_id: Optional[str],
    ) -> DiagnosticTrace:
        """
        Submit one match and return every stage's outcome.

        Does not write match state: a successful test submission is later
        recognised by DUPR as a duplicate of the same identifier.
        """
        if not user_id:
            return DiagnosticTrace(ok=False, stage="auth", error="Must be logged in")
        if not match_id or not event_type or not event_id:
            return DiagnosticTrace(ok=False, stage="auth", error="Missing required fields: matchId, eventType, eventId")

        try:
            event = await self.authorize_event(event_type, event_id, user_id)
        except (InvalidRequestError, NotFoundError, PermissionDeniedError) as e:
            return DiagnosticTrace(ok=False, stage="permission", error=e.message)

        token = await self.token_provider.get_token()
        if not token:
            return DiagnosticTrace(
                ok=False, stage="token", error="Failed to get DUPR API token - check credentials config"
            )

        match = await self.matches.get_match(event.event_type, event.id, match_id)
        if match is None:
            return DiagnosticTrace(ok=False, stage="load", error="Match not found")

        games = games_from_result(match.official_result)
        match_metadata = {
            "has_official_result": bool(match.official_result),
            "score_count": len(games),
            "has_side_a": bool(match.side_a),
            "has_side_b": bool(match.side_b),
            "game_count": len(games),
            "category": categorize_match(match).value,
        }

        conversion = await convert_match(
            match,
            event.name,
            self.settings.DUPR_CLUB_ID,
            self.matches.fetch_dupr_ids_for_players,
            self.settings.DUPR_MIN_WINNING_SCORE_HINT,
        )
        if not conversion.is_success:
            return DiagnosticTrace(
                ok=False,
                stage="convert",
                error=conversion.error,
                match_metadata=match_metadata,
                warnings=conversion.warnings,
            )

        result = await self.client.submit_match(conversion.payload, token)
        return DiagnosticTrace(
            ok=result.success,
            stage="submit",
            error=result.error,
            match_metadata=match_metadata,
            payload_metadata=conversion.payload_metadata(),
            warnings=conversion.warnings + result.warnings,
            dupr_response=result.response_summary(),
        )
