"""
Persistence access for the DUPR pipeline.

Writes are field-level UPDATE statements scoped to a single row (one match,
one batch, one webhook event) and committed immediately, so each match's
submission state is recoverable from its own row.
"""

import logging
from datetime import datetime
from typing import List, Optional

from sqlalchemy import or_, select, update
from sqlalchemy.ext.asyncio import AsyncSession

from duprsync.db_utils import upsert
from duprsync.dupr.types import BatchStatus, MatchStatus, ScoreState, check_batch_transition
from duprsync.models import Event, Match, PlayerProfile, RatingSnapshot, SubmissionBatch, WebhookEvent, utc_now

logger = logging.getLogger(__name__)

APP_ADMIN_ROLE = "app_admin"


class MatchRepository:
    """Events, matches and player profiles."""

    def __init__(self, session: AsyncSession):
        self.session = session

    async def get_event(self, event_type: str, event_id: str) -> Optional[Event]:
        result = await self.session.execute(
            select(Event).where(Event.id == event_id, Event.event_type == event_type)
        )
        return result.scalar_one_or_none()

    async def get_match(self, event_type: str, event_id: str, match_id: str) -> Optional[Match]:
        result = await self.session.execute(
            select(Match).where(
                Match.id == match_id,
                Match.event_type == event_type,
                Match.event_id == event_id,
            )
        )
        return result.scalar_one_or_none()

    async def list_event_matches(self, event_type: str, event_id: str) -> List[Match]:
        result = await self.session.execute(
            select(Match)
            .where(Match.event_type == event_type, Match.event_id == event_id)
            .order_by(Match.id)
        )
        return list(result.scalars().all())

    async def list_official_completed(self, event_type: str, event_id: str) -> List[Match]:
        """Completed matches whose score state is official (candidate pool for sweeps)."""
        result = await self.session.execute(
            select(Match)
            .where(
                Match.event_type == event_type,
                Match.event_id == event_id,
                Match.status == MatchStatus.COMPLETED.value,
                Match.score_state == ScoreState.OFFICIAL.value,
            )
            .order_by(Match.id)
        )
        return list(result.scalars().all())

    async def list_needing_correction(self, event_type: str, limit: int) -> List[Match]:
        result = await self.session.execute(
            select(Match)
            .where(
                Match.event_type == event_type,
                Match.dupr_needs_correction.is_(True),
                Match.dupr_correction_submitted.is_(False),
            )
            .order_by(Match.updated_at)
            .limit(limit)
        )
        return list(result.scalars().all())

    async def update_match(self, match_id: str, **fields) -> None:
        fields.setdefault("updated_at", utc_now())
        await self.session.execute(update(Match).where(Match.id == match_id).values(**fields))
        await self.session.commit()

    async def mark_submitted(self, match_id: str, submission_id: Optional[str], batch_id: Optional[str]) -> None:
        now = utc_now()
        await self.update_match(
            match_id,
            dupr_submitted=True,
            dupr_submitted_at=now,
            dupr_submission_id=submission_id,
            dupr_submission_error=None,
            dupr_pending_submission=False,
            dupr_batch_id=batch_id,
            dupr_last_attempt_at=now,
            score_state=ScoreState.SUBMITTED_TO_DUPR.value,
        )

    async def mark_failed(self, match_id: str, error: str, batch_id: Optional[str] = None) -> None:
        fields = {
            "dupr_submission_error": error,
            "dupr_last_attempt_at": utc_now(),
        }
        if batch_id:
            fields["dupr_batch_id"] = batch_id
        await self.update_match(match_id, **fields)

    async def get_profile(self, user_id: str) -> Optional[PlayerProfile]:
        return await self.session.get(PlayerProfile, user_id)

    async def find_profile_by_dupr_id(self, dupr_id: str) -> Optional[PlayerProfile]:
        result = await self.session.execute(
            select(PlayerProfile).where(PlayerProfile.dupr_id == dupr_id).limit(1)
        )
        return result.scalar_one_or_none()

    async def list_linked_profiles(self) -> List[PlayerProfile]:
        result = await self.session.execute(
            select(PlayerProfile)
            .where(PlayerProfile.dupr_id.is_not(None), PlayerProfile.dupr_id != "")
            .order_by(PlayerProfile.id)
        )
        return list(result.scalars().all())

    async def update_profile(self, user_id: str, **fields) -> None:
        await self.session.execute(update(PlayerProfile).where(PlayerProfile.id == user_id).values(**fields))
        await self.session.commit()

    async def fetch_dupr_ids_for_players(self, player_ids: List[str]) -> List[str]:
        """Linked DUPR ids in roster order; unlinked or unknown players are skipped."""
        if not player_ids:
            return []
        result = await self.session.execute(select(PlayerProfile).where(PlayerProfile.id.in_(player_ids)))
        by_id = {p.id: p for p in result.scalars().all()}

        dupr_ids = []
        for player_id in player_ids:
            profile = by_id.get(player_id)
            if profile is None:
                logger.warning("[DUPR] Player profile not found while resolving DUPR ids")
            elif profile.dupr_id:
                dupr_ids.append(profile.dupr_id)
        return dupr_ids

    async def can_manage_event(self, event: Event, user_id: Optional[str]) -> bool:
        """Organizer of the event or an app admin."""
        if not user_id:
            return False
        organizers = {event.organizer_id, event.created_by, *(event.organizer_ids or [])}
        if user_id in organizers:
            return True
        return await self.is_app_admin(user_id)

    async def is_app_admin(self, user_id: Optional[str]) -> bool:
        if not user_id:
            return False
        profile = await self.get_profile(user_id)
        return bool(profile and APP_ADMIN_ROLE in (profile.roles or []))


class BatchRepository:
    """Submission batches. Status changes go through the transition table."""

    def __init__(self, session: AsyncSession):
        self.session = session

    async def create(self, batch: SubmissionBatch) -> SubmissionBatch:
        self.session.add(batch)
        await self.session.commit()
        return batch

    async def get(self, batch_id: str) -> Optional[SubmissionBatch]:
        return await self.session.get(SubmissionBatch, batch_id, populate_existing=True)

    async def update(self, batch_id: str, **fields) -> None:
        await self.session.execute(
            update(SubmissionBatch).where(SubmissionBatch.id == batch_id).values(**fields)
        )
        await self.session.commit()

    async def transition(self, batch: SubmissionBatch, target: BatchStatus, **fields) -> None:
        status = check_batch_transition(batch.status, target)
        await self.update(batch.id, status=status.value, **fields)

    async def list_pending(self, limit: int) -> List[SubmissionBatch]:
        result = await self.session.execute(
            select(SubmissionBatch)
            .where(SubmissionBatch.status == BatchStatus.PENDING.value)
            .order_by(SubmissionBatch.created_at)
            .limit(limit)
        )
        return list(result.scalars().all())

    async def list_due_retries(self, now: datetime, max_retries: int, limit: int) -> List[SubmissionBatch]:
        result = await self.session.execute(
            select(SubmissionBatch)
            .where(
                SubmissionBatch.status == BatchStatus.PARTIAL_FAILURE.value,
                SubmissionBatch.next_retry_at.is_not(None),
                SubmissionBatch.next_retry_at <= now,
                SubmissionBatch.retry_count < max_retries,
            )
            .order_by(SubmissionBatch.next_retry_at)
            .limit(limit)
        )
        return list(result.scalars().all())

    async def list_stale_processing(self, cutoff: datetime, limit: int) -> List[SubmissionBatch]:
        """Batches left in processing since before ``cutoff`` (crashed or timed-out runs)."""
        result = await self.session.execute(
            select(SubmissionBatch)
            .where(
                SubmissionBatch.status == BatchStatus.PROCESSING.value,
                or_(
                    SubmissionBatch.processing_started_at.is_(None),
                    SubmissionBatch.processing_started_at < cutoff,
                ),
            )
            .order_by(SubmissionBatch.created_at)
            .limit(limit)
        )
        return list(result.scalars().all())


class WebhookEventRepository:
    def __init__(self, session: AsyncSession):
        self.session = session

    async def exists(self, dedupe_key: str) -> bool:
        result = await self.session.execute(
            select(WebhookEvent.dedupe_key).where(WebhookEvent.dedupe_key == dedupe_key)
        )
        return result.first() is not None

    async def insert(self, event: WebhookEvent) -> None:
        self.session.add(event)
        await self.session.commit()

    async def mark_processed(self, dedupe_key: str, error: Optional[str] = None) -> None:
        await self.session.execute(
            update(WebhookEvent)
            .where(WebhookEvent.dedupe_key == dedupe_key)
            .values(processed=error is None, processed_at=utc_now(), error=error)
        )
        await self.session.commit()


class RatingSnapshotRepository:
    def __init__(self, session: AsyncSession):
        self.session = session

    async def get(self, dupr_id: str) -> Optional[RatingSnapshot]:
        return await self.session.get(RatingSnapshot, dupr_id, populate_existing=True)

    async def save(self, dupr_id: str, **fields) -> None:
        """Last-writer-wins upsert keyed by DUPR id."""
        values = {"dupr_id": dupr_id, "updated_at": utc_now(), **fields}
        await upsert(self.session, RatingSnapshot, values, conflict_columns=["dupr_id"])
        await self.session.commit()
