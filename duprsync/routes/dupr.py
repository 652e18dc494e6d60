"""DUPR organizer and operator endpoints.

Auth: X-API-Key on every endpoint; organizer actions also need the acting
user in X-User-Id. Pipeline errors (DuprError) are translated to HTTP status
codes by the handler registered in main.py.
"""

import logging
from typing import AsyncGenerator, List, Optional

from fastapi import APIRouter, Depends, Request
from pydantic import BaseModel, ConfigDict, Field
from sqlalchemy.ext.asyncio import AsyncSession

from duprsync.config import Settings, get_settings
from duprsync.database import get_async_session
from duprsync.dupr.auth import DuprTokenProvider
from duprsync.dupr.client import DuprClient
from duprsync.dupr.eligibility import (
    build_match_row,
    filter_rows_by_category,
    get_panel_stats,
    sort_rows_for_panel,
)
from duprsync.dupr.engine import SubmissionEngine
from duprsync.dupr.errors import NotFoundError, PermissionDeniedError
from duprsync.dupr.ratings import (
    check_connection,
    get_subscriptions,
    link_dupr_account,
    refresh_player_rating,
    subscribe_all_players,
    subscribe_player,
    update_player_subscriptions,
)
from duprsync.dupr.repository import MatchRepository
from duprsync.dupr.results import (
    correct_official_result,
    default_best_of,
    dispute_score,
    finalise_result,
    propose_score,
    set_dupr_eligibility,
    sign_score,
)
from duprsync.dupr.scoring import GameRules
from duprsync.dupr.types import parse_event_type
from duprsync.security import get_current_user_id, limiter, verify_api_key

router = APIRouter(prefix="/dupr", tags=["dupr"])

logger = logging.getLogger(__name__)
settings = get_settings()


# =============================================================================
# Request models (camelCase on the wire)
# =============================================================================


class _CamelModel(BaseModel):
    model_config = ConfigDict(populate_by_name=True)


class SubmitMatchesRequest(_CamelModel):
    event_type: str = Field(alias="eventType")
    event_id: str = Field(alias="eventId")
    match_ids: Optional[List[str]] = Field(default=None, alias="matchIds")
    queue_only: bool = Field(default=False, alias="queueOnly")


class EventRequest(_CamelModel):
    event_type: str = Field(alias="eventType")
    event_id: str = Field(alias="eventId")


class TestSubmitRequest(_CamelModel):
    event_type: Optional[str] = Field(default=None, alias="eventType")
    event_id: Optional[str] = Field(default=None, alias="eventId")
    match_id: Optional[str] = Field(default=None, alias="matchId")


class EligibilityRequest(EventRequest):
    eligible: bool


class GameScoreIn(_CamelModel):
    score_a: int = Field(alias="scoreA")
    score_b: int = Field(alias="scoreB")
    game_number: Optional[int] = Field(default=None, alias="gameNumber")


class ScoresRequest(EventRequest):
    """Game scores, declared winner and optional rule overrides."""

    scores: List[GameScoreIn]
    winner_id: str = Field(alias="winnerId")
    points_to_win: Optional[int] = Field(default=None, alias="pointsToWin", ge=1)
    win_by: Optional[int] = Field(default=None, alias="winBy", ge=1)
    best_of: Optional[int] = Field(default=None, alias="bestOf", ge=1)
    cap: Optional[int] = Field(default=None, ge=1)

    def rules(self) -> Optional[GameRules]:
        """Explicit rule fields; anything not sent keeps its default, best-of sized to the games sent."""
        if self.points_to_win is None and self.win_by is None and self.best_of is None and self.cap is None:
            return None
        defaults = GameRules()
        return GameRules(
            points_to_win=defaults.points_to_win if self.points_to_win is None else self.points_to_win,
            win_by=defaults.win_by if self.win_by is None else self.win_by,
            best_of=default_best_of(len(self.scores)) if self.best_of is None else self.best_of,
            cap=self.cap,
        )

    def score_dicts(self) -> List[dict]:
        return [s.model_dump(exclude_none=True) for s in self.scores]


class CorrectionRequest(ScoresRequest):
    reason: str = ""


class FinaliseRequest(ScoresRequest):
    dupr_eligible: bool = Field(default=True, alias="duprEligible")


class DisputeRequest(EventRequest):
    reason: str = ""


class LinkDuprRequest(_CamelModel):
    dupr_id: str = Field(alias="duprId")


class DuprPlusRequest(_CamelModel):
    subscriptions: List[dict] = Field(default_factory=list)


# =============================================================================
# Dependencies
# =============================================================================


def get_app_settings() -> Settings:
    return get_settings()


async def get_dupr_client(app_settings: Settings = Depends(get_app_settings)) -> AsyncGenerator[DuprClient, None]:
    """One Authority client per request, closed afterwards."""
    async with DuprClient(app_settings) as client:
        yield client


def get_token_provider(app_settings: Settings = Depends(get_app_settings)) -> DuprTokenProvider:
    return DuprTokenProvider(app_settings)


def get_submission_engine(
    session: AsyncSession = Depends(get_async_session),
    app_settings: Settings = Depends(get_app_settings),
    client: DuprClient = Depends(get_dupr_client),
    token_provider: DuprTokenProvider = Depends(get_token_provider),
) -> SubmissionEngine:
    return SubmissionEngine(session, app_settings, client, token_provider)


# =============================================================================
# Submissions
# =============================================================================


@router.post("/submissions")
@limiter.limit(settings.RATE_LIMIT_PER_MINUTE)
async def submit_matches(
    request: Request,
    body: SubmitMatchesRequest,
    engine: SubmissionEngine = Depends(get_submission_engine),
    user_id: Optional[str] = Depends(get_current_user_id),
    _: bool = Depends(verify_api_key),
):
    """
    Submit an event's matches to DUPR.

    Without matchIds every ready_for_dupr match of the event is swept.
    """
    summary = await engine.submit_matches(
        body.event_type, body.event_id, user_id, match_ids=body.match_ids, queue_only=body.queue_only
    )
    return summary.to_dict()


@router.post("/submissions/retry-failed")
@limiter.limit(settings.RATE_LIMIT_PER_MINUTE)
async def retry_failed(
    request: Request,
    body: EventRequest,
    engine: SubmissionEngine = Depends(get_submission_engine),
    user_id: Optional[str] = Depends(get_current_user_id),
    _: bool = Depends(verify_api_key),
):
    """Resubmit matches with a recorded error or stuck pending flag."""
    summary = await engine.retry_failed(body.event_type, body.event_id, user_id)
    return summary.to_dict()


@router.get("/batches/{batch_id}")
async def get_batch_status(
    batch_id: str,
    engine: SubmissionEngine = Depends(get_submission_engine),
    _: bool = Depends(verify_api_key),
):
    batch = await engine.get_batch_status(batch_id)
    return {"success": True, "batch": batch.model_dump()}


@router.post("/diagnostics/test-submit")
@limiter.limit("10/minute")
async def diagnostic_test_submit(
    request: Request,
    body: TestSubmitRequest,
    engine: SubmissionEngine = Depends(get_submission_engine),
    user_id: Optional[str] = Depends(get_current_user_id),
    _: bool = Depends(verify_api_key),
):
    """Submit one match and return a staged trace (no player ids)."""
    trace = await engine.test_submit_one(body.event_type, body.event_id, body.match_id, user_id)
    return trace.to_dict()


# =============================================================================
# Organizer panel and result actions
# =============================================================================


@router.get("/events/{event_type}/{event_id}/panel")
async def event_panel(
    event_type: str,
    event_id: str,
    category: str = "all",
    session: AsyncSession = Depends(get_async_session),
    _: bool = Depends(verify_api_key),
):
    """Category counts and sorted rows for the organizer's DUPR panel."""
    event_type = parse_event_type(event_type).value
    repo = MatchRepository(session)
    if await repo.get_event(event_type, event_id) is None:
        raise NotFoundError("Event not found")

    matches = await repo.list_event_matches(event_type, event_id)
    rows = sort_rows_for_panel([build_match_row(m) for m in matches])
    return {
        "stats": get_panel_stats(matches),
        "rows": filter_rows_by_category(rows, category),
    }


@router.post("/matches/{match_id}/eligibility")
async def update_eligibility(
    match_id: str,
    body: EligibilityRequest,
    session: AsyncSession = Depends(get_async_session),
    user_id: Optional[str] = Depends(get_current_user_id),
    _: bool = Depends(verify_api_key),
):
    return await set_dupr_eligibility(session, body.event_type, body.event_id, match_id, user_id, body.eligible)


@router.post("/matches/{match_id}/correction")
async def correct_result(
    match_id: str,
    body: CorrectionRequest,
    session: AsyncSession = Depends(get_async_session),
    user_id: Optional[str] = Depends(get_current_user_id),
    _: bool = Depends(verify_api_key),
):
    """Replace an official result; submitted matches are queued for the correction sweep."""
    return await correct_official_result(
        session,
        body.event_type,
        body.event_id,
        match_id,
        user_id,
        scores=body.score_dicts(),
        winner_id=body.winner_id,
        reason=body.reason,
        rules=body.rules(),
    )


@router.post("/matches/{match_id}/finalise")
async def finalise_match_result(
    match_id: str,
    body: FinaliseRequest,
    session: AsyncSession = Depends(get_async_session),
    user_id: Optional[str] = Depends(get_current_user_id),
    _: bool = Depends(verify_api_key),
):
    """Write the official result (organizer) and lock the score."""
    return await finalise_result(
        session,
        body.event_type,
        body.event_id,
        match_id,
        user_id,
        scores=body.score_dicts(),
        winner_id=body.winner_id,
        dupr_eligible=body.dupr_eligible,
        rules=body.rules(),
    )


@router.post("/matches/{match_id}/proposal")
async def propose_match_score(
    match_id: str,
    body: ScoresRequest,
    session: AsyncSession = Depends(get_async_session),
    user_id: Optional[str] = Depends(get_current_user_id),
    _: bool = Depends(verify_api_key),
):
    return await propose_score(
        session,
        body.event_type,
        body.event_id,
        match_id,
        user_id,
        scores=body.score_dicts(),
        winner_id=body.winner_id,
        rules=body.rules(),
    )


@router.post("/matches/{match_id}/proposal/sign")
async def sign_match_score(
    match_id: str,
    body: EventRequest,
    session: AsyncSession = Depends(get_async_session),
    user_id: Optional[str] = Depends(get_current_user_id),
    _: bool = Depends(verify_api_key),
):
    return await sign_score(session, body.event_type, body.event_id, match_id, user_id)


@router.post("/matches/{match_id}/proposal/dispute")
async def dispute_match_score(
    match_id: str,
    body: DisputeRequest,
    session: AsyncSession = Depends(get_async_session),
    user_id: Optional[str] = Depends(get_current_user_id),
    _: bool = Depends(verify_api_key),
):
    return await dispute_score(session, body.event_type, body.event_id, match_id, user_id, reason=body.reason)


# =============================================================================
# Ratings
# =============================================================================


@router.post("/players/{user_id}/refresh")
@limiter.limit("10/minute")
async def refresh_rating(
    request: Request,
    user_id: str,
    session: AsyncSession = Depends(get_async_session),
    app_settings: Settings = Depends(get_app_settings),
    client: DuprClient = Depends(get_dupr_client),
    token_provider: DuprTokenProvider = Depends(get_token_provider),
    _: bool = Depends(verify_api_key),
):
    return await refresh_player_rating(session, app_settings, client, token_provider, user_id)


@router.post("/players/{user_id}/subscribe")
async def subscribe_rating_changes(
    user_id: str,
    session: AsyncSession = Depends(get_async_session),
    client: DuprClient = Depends(get_dupr_client),
    token_provider: DuprTokenProvider = Depends(get_token_provider),
    _: bool = Depends(verify_api_key),
):
    return await subscribe_player(session, client, token_provider, user_id)


@router.post("/players/{user_id}/link")
async def link_dupr(
    user_id: str,
    body: LinkDuprRequest,
    session: AsyncSession = Depends(get_async_session),
    client: DuprClient = Depends(get_dupr_client),
    token_provider: DuprTokenProvider = Depends(get_token_provider),
    _: bool = Depends(verify_api_key),
):
    """Link a DUPR account; a new or changed id is subscribed to rating changes."""
    return await link_dupr_account(session, client, token_provider, user_id, body.dupr_id)


@router.post("/me/dupr-plus")
async def update_my_subscriptions(
    body: DuprPlusRequest,
    session: AsyncSession = Depends(get_async_session),
    user_id: Optional[str] = Depends(get_current_user_id),
    _: bool = Depends(verify_api_key),
):
    """Record the caller's DUPR+ subscriptions."""
    if not user_id:
        raise PermissionDeniedError("Must be logged in")
    return await update_player_subscriptions(session, user_id, body.subscriptions)


# =============================================================================
# Operator endpoints (app admins)
# =============================================================================


async def require_app_admin(
    session: AsyncSession = Depends(get_async_session),
    user_id: Optional[str] = Depends(get_current_user_id),
) -> str:
    if not await MatchRepository(session).is_app_admin(user_id):
        raise PermissionDeniedError("Admin access required")
    return user_id


@router.get("/connection")
async def connection_check(
    app_settings: Settings = Depends(get_app_settings),
    token_provider: DuprTokenProvider = Depends(get_token_provider),
    _: bool = Depends(verify_api_key),
    _admin: str = Depends(require_app_admin),
):
    """Verify the configured DUPR credentials can obtain a token."""
    return await check_connection(app_settings, token_provider)


@router.post("/subscriptions/all")
@limiter.limit("2/minute")
async def subscribe_all(
    request: Request,
    session: AsyncSession = Depends(get_async_session),
    app_settings: Settings = Depends(get_app_settings),
    client: DuprClient = Depends(get_dupr_client),
    token_provider: DuprTokenProvider = Depends(get_token_provider),
    _: bool = Depends(verify_api_key),
    _admin: str = Depends(require_app_admin),
):
    """Subscribe every linked profile to rating-change webhooks."""
    return await subscribe_all_players(session, app_settings, client, token_provider)


@router.get("/subscriptions")
async def list_subscriptions(
    client: DuprClient = Depends(get_dupr_client),
    token_provider: DuprTokenProvider = Depends(get_token_provider),
    _: bool = Depends(verify_api_key),
    _admin: str = Depends(require_app_admin),
):
    return await get_subscriptions(client, token_provider)
