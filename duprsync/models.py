"""Database models using SQLModel."""

from datetime import datetime, timezone
from typing import Optional

from sqlalchemy import JSON, Column
from sqlmodel import Field, SQLModel


def utc_now() -> datetime:
    """Naive UTC timestamp (all DB datetimes are stored naive UTC)."""
    return datetime.now(timezone.utc).replace(tzinfo=None)


class Event(SQLModel, table=True):
    """Tournament, league or meetup owning a set of matches."""

    __tablename__ = "events"

    id: str = Field(primary_key=True, max_length=128)
    event_type: str = Field(max_length=20, index=True, description="'tournament', 'league' or 'meetup'")
    name: str = Field(default="", max_length=255)
    organizer_id: Optional[str] = Field(default=None, max_length=128)
    organizer_ids: list = Field(default_factory=list, sa_column=Column(JSON))
    created_by: Optional[str] = Field(default=None, max_length=128)
    created_at: datetime = Field(default_factory=utc_now)


class PlayerProfile(SQLModel, table=True):
    """Player profile, optionally linked to a DUPR account."""

    __tablename__ = "player_profiles"

    id: str = Field(primary_key=True, max_length=128)
    display_name: str = Field(default="", max_length=255)
    dupr_id: Optional[str] = Field(default=None, max_length=64, index=True, description="Linked DUPR id")
    roles: list = Field(default_factory=list, sa_column=Column(JSON))

    dupr_doubles_rating: Optional[float] = Field(default=None)
    dupr_singles_rating: Optional[float] = Field(default=None)
    dupr_doubles_reliability: Optional[float] = Field(default=None)
    dupr_singles_reliability: Optional[float] = Field(default=None)
    dupr_last_sync_at: Optional[datetime] = Field(default=None)
    dupr_last_sync_source: Optional[str] = Field(default=None, max_length=20)

    # Rating-change webhook registration
    dupr_subscribed: bool = Field(default=False)
    dupr_subscribed_at: Optional[datetime] = Field(default=None)

    # DUPR+ membership as reported by the player's DUPR session
    dupr_subscriptions: list = Field(default_factory=list, sa_column=Column(JSON))
    dupr_plus_active: bool = Field(default=False)
    dupr_plus_verified_at: Optional[datetime] = Field(default=None)


class Match(SQLModel, table=True):
    """
    A scored match and its DUPR submission status block.

    side_a / side_b JSON shape: {"id", "name", "player_ids": [...], "dupr_ids": [...]}
    official_result JSON shape: {"scores": [{"game_number", "score_a", "score_b"}],
        "winner_id", "finalised_at", "finalised_by_user_id", "version", "previous_versions"}
    score_proposal JSON shape: {"scores", "winner_id", "status", "entered_by_user_id"}
    """

    __tablename__ = "matches"

    id: str = Field(primary_key=True, max_length=128)
    event_type: str = Field(max_length=20, index=True)
    event_id: str = Field(max_length=128, index=True)

    status: str = Field(default="scheduled", max_length=20, index=True)
    score_state: Optional[str] = Field(default=None, max_length=30, index=True)
    score_locked: bool = Field(default=False)
    play_type: Optional[str] = Field(default=None, max_length=20)

    side_a: Optional[dict] = Field(default=None, sa_column=Column(JSON))
    side_b: Optional[dict] = Field(default=None, sa_column=Column(JSON))
    official_result: Optional[dict] = Field(default=None, sa_column=Column(JSON))
    score_proposal: Optional[dict] = Field(default=None, sa_column=Column(JSON))

    # DUPR submission status block
    dupr_eligible: bool = Field(default=True)
    dupr_submitted: bool = Field(default=False, index=True)
    dupr_submitted_at: Optional[datetime] = Field(default=None)
    dupr_submission_id: Optional[str] = Field(default=None, max_length=128)
    dupr_submission_error: Optional[str] = Field(default=None)
    dupr_pending_submission: bool = Field(default=False)
    dupr_pending_submission_at: Optional[datetime] = Field(default=None)
    dupr_batch_id: Optional[str] = Field(default=None, max_length=64)
    dupr_retry_count: int = Field(default=0)
    dupr_last_retry_at: Optional[datetime] = Field(default=None)
    dupr_last_attempt_at: Optional[datetime] = Field(default=None)
    dupr_needs_correction: bool = Field(default=False, index=True)
    dupr_correction_submitted: bool = Field(default=False)
    dupr_correction_submitted_at: Optional[datetime] = Field(default=None)

    created_at: datetime = Field(default_factory=utc_now)
    updated_at: datetime = Field(default_factory=utc_now)


class SubmissionBatch(SQLModel, table=True):
    """A bounded group of match ids submitted together."""

    __tablename__ = "dupr_submission_batches"

    id: str = Field(primary_key=True, max_length=64)
    event_type: str = Field(max_length=20)
    event_id: str = Field(max_length=128, index=True)
    match_ids: list = Field(default_factory=list, sa_column=Column(JSON))
    status: str = Field(default="pending", max_length=20, index=True)
    results: list = Field(default_factory=list, sa_column=Column(JSON))
    retry_count: int = Field(default=0)
    next_retry_at: Optional[datetime] = Field(default=None, index=True)
    last_error: Optional[str] = Field(default=None)
    created_by_user_id: Optional[str] = Field(default=None, max_length=128)
    created_at: datetime = Field(default_factory=utc_now)
    processing_started_at: Optional[datetime] = Field(default=None)
    processed_at: Optional[datetime] = Field(default=None)


class WebhookEvent(SQLModel, table=True):
    """Inbound DUPR webhook delivery keyed by its content-hash dedupe key."""

    __tablename__ = "dupr_webhook_events"

    dedupe_key: str = Field(primary_key=True, max_length=32)
    event_type: str = Field(default="UNKNOWN", max_length=64, index=True)
    client_id: Optional[str] = Field(default=None, max_length=128)
    dupr_id: Optional[str] = Field(default=None, max_length=64)
    raw: Optional[dict] = Field(default=None, sa_column=Column(JSON))
    processed: bool = Field(default=False)
    processed_at: Optional[datetime] = Field(default=None)
    error: Optional[str] = Field(default=None)
    received_at: datetime = Field(default_factory=utc_now)


class RatingSnapshot(SQLModel, table=True):
    """Last-known DUPR ratings per external id (last writer wins)."""

    __tablename__ = "dupr_players"

    dupr_id: str = Field(primary_key=True, max_length=64)
    name: Optional[str] = Field(default=None, max_length=255)
    doubles_rating: Optional[float] = Field(default=None)
    singles_rating: Optional[float] = Field(default=None)
    doubles_reliability: Optional[float] = Field(default=None)
    singles_reliability: Optional[float] = Field(default=None)
    last_match_id: Optional[str] = Field(default=None, max_length=64)
    source: str = Field(default="webhook", max_length=20)
    updated_at: datetime = Field(default_factory=utc_now)


class JobRun(SQLModel, table=True):
    """Scheduler job execution ledger (fallback when Prometheus is cold)."""

    __tablename__ = "job_runs"

    id: Optional[int] = Field(default=None, primary_key=True)
    job_name: str = Field(max_length=100, index=True)
    status: str = Field(max_length=30, description="ok, error, skipped")
    started_at: datetime
    finished_at: datetime
    duration_ms: int = Field(default=0)
    error_message: Optional[str] = Field(default=None)
    metrics: Optional[dict] = Field(default=None, sa_column=Column(JSON))
    created_at: datetime = Field(default_factory=utc_now)
