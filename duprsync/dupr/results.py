"""
Match result actions.

Players propose, sign or dispute a score; organizers finalise the official
result, correct it later and toggle DUPR eligibility.
"""

import logging
import time
from dataclasses import asdict
from typing import List, Optional, Tuple

from sqlalchemy.ext.asyncio import AsyncSession

from duprsync.dupr.eligibility import get_eligibility_toggle_state, is_submitted
from duprsync.dupr.errors import InvalidRequestError, NotFoundError, PermissionDeniedError, PreconditionFailedError
from duprsync.dupr.repository import MatchRepository
from duprsync.dupr.scoring import (
    GameRules,
    GameScore,
    ValidationResult,
    calculate_match_winner,
    validate_match_scores,
)
from duprsync.dupr.types import (
    MatchStatus,
    ProposalStatus,
    ScoreState,
    check_proposal_transition,
    parse_event_type,
)
from duprsync.models import Match

logger = logging.getLogger(__name__)


def _epoch_ms() -> int:
    return int(time.time() * 1000)


def default_best_of(game_count: int) -> int:
    """Smallest odd best-of that fits ``game_count`` games."""
    return max(1, game_count if game_count % 2 else game_count + 1)


async def load_managed_match(
    repo: MatchRepository,
    event_type: str,
    event_id: str,
    match_id: str,
    user_id: Optional[str],
) -> Match:
    event_type = parse_event_type(event_type).value
    if not user_id:
        raise PermissionDeniedError("Must be logged in")

    event = await repo.get_event(event_type, event_id)
    if event is None:
        raise NotFoundError("Event not found")
    if not await repo.can_manage_event(event, user_id):
        raise PermissionDeniedError("Only organizers can manage match results")

    match = await repo.get_match(event_type, event_id, match_id)
    if match is None:
        raise NotFoundError("Match not found")
    return match


def _validated_games(
    match: Match,
    scores: List[dict],
    winner_id: str,
    rules: Optional[GameRules],
) -> Tuple[List[GameScore], ValidationResult]:
    """Parse and validate game scores; the declared winner must be a side and agree with the games."""
    side_ids = {"a": (match.side_a or {}).get("id"), "b": (match.side_b or {}).get("id")}
    if not winner_id or winner_id not in side_ids.values():
        raise InvalidRequestError("Winner must be one of the match sides")

    games = [GameScore.from_dict(s, default_number=i + 1) for i, s in enumerate(scores or [])]
    rules = rules or GameRules(best_of=default_best_of(len(games)))
    validation = validate_match_scores(games, rules)
    if not validation.valid:
        raise InvalidRequestError("; ".join(validation.errors))

    if side_ids.get(calculate_match_winner(games)) != winner_id:
        raise InvalidRequestError("Winner does not match the game scores")
    return games, validation


def side_of_player(match: Match, user_id: Optional[str]) -> Optional[str]:
    """'a' or 'b' for a rostered player, None otherwise."""
    if not user_id:
        return None
    for key, side in (("a", match.side_a), ("b", match.side_b)):
        if user_id in ((side or {}).get("player_ids") or []):
            return key
    return None


async def _load_match(repo: MatchRepository, event_type: str, event_id: str, match_id: str) -> Match:
    event_type = parse_event_type(event_type).value
    if await repo.get_event(event_type, event_id) is None:
        raise NotFoundError("Event not found")
    match = await repo.get_match(event_type, event_id, match_id)
    if match is None:
        raise NotFoundError("Match not found")
    return match


# =============================================================================
# Score proposal workflow (players)
# =============================================================================


async def propose_score(
    session: AsyncSession,
    event_type: str,
    event_id: str,
    match_id: str,
    user_id: Optional[str],
    scores: List[dict],
    winner_id: str,
    rules: Optional[GameRules] = None,
) -> dict:
    """
    Record a participant's proposed score.

    A new proposal is allowed when none exists or the previous one was
    disputed. Nothing can be proposed once the score is locked.
    """
    if not user_id:
        raise PermissionDeniedError("Must be logged in")
    repo = MatchRepository(session)
    match = await _load_match(repo, event_type, event_id, match_id)

    if side_of_player(match, user_id) is None:
        raise PermissionDeniedError("Only match participants can propose a score")
    if match.score_locked or match.official_result:
        raise PreconditionFailedError("Score is locked")

    current = (match.score_proposal or {}).get("status")
    status = check_proposal_transition(current, ProposalStatus.PROPOSED)
    games, validation = _validated_games(match, scores, winner_id, rules)

    proposal = {
        "scores": [g.to_dict() for g in games],
        "winner_id": winner_id,
        "status": status.value,
        "entered_by_user_id": user_id,
        "entered_at": _epoch_ms(),
    }
    await repo.update_match(match.id, score_proposal=proposal, score_state=ScoreState.PROPOSED.value)
    logger.info(f"[SCORING] Score proposed for match {match.id}")
    return {"success": True, "status": status.value, "warnings": validation.warnings}


async def _review_proposal(
    session: AsyncSession,
    event_type: str,
    event_id: str,
    match_id: str,
    user_id: Optional[str],
    target: ProposalStatus,
    **extra,
) -> dict:
    if not user_id:
        raise PermissionDeniedError("Must be logged in")
    repo = MatchRepository(session)
    match = await _load_match(repo, event_type, event_id, match_id)

    proposal = dict(match.score_proposal or {})
    status = check_proposal_transition(proposal.get("status"), target)

    proposer_side = side_of_player(match, proposal.get("entered_by_user_id"))
    reviewer_side = side_of_player(match, user_id)
    if reviewer_side is None or reviewer_side == proposer_side:
        raise PermissionDeniedError(f"Only the opposing team can mark the proposal {target.value}")

    proposal.update(status=status.value, **extra)
    await repo.update_match(match.id, score_proposal=proposal, score_state=ScoreState(status.value).value)
    logger.info(f"[SCORING] Proposal for match {match.id} {status.value}")
    return {"success": True, "status": status.value}


async def sign_score(
    session: AsyncSession, event_type: str, event_id: str, match_id: str, user_id: Optional[str]
) -> dict:
    """Opposing team acknowledges the proposal; it then awaits organizer finalisation."""
    return await _review_proposal(
        session, event_type, event_id, match_id, user_id, ProposalStatus.SIGNED,
        signed_by_user_id=user_id, signed_at=_epoch_ms(),
    )


async def dispute_score(
    session: AsyncSession,
    event_type: str,
    event_id: str,
    match_id: str,
    user_id: Optional[str],
    reason: str = "",
) -> dict:
    return await _review_proposal(
        session, event_type, event_id, match_id, user_id, ProposalStatus.DISPUTED,
        disputed_by_user_id=user_id, disputed_at=_epoch_ms(), dispute_reason=reason or "No reason provided",
    )


# =============================================================================
# Organizer actions
# =============================================================================


async def finalise_result(
    session: AsyncSession,
    event_type: str,
    event_id: str,
    match_id: str,
    user_id: Optional[str],
    scores: List[dict],
    winner_id: str,
    dupr_eligible: bool = True,
    rules: Optional[GameRules] = None,
) -> dict:
    """
    Write the first official result and lock the score.

    Organizers may accept the proposal's scores or enter their own. Later
    changes go through correct_official_result.
    """
    repo = MatchRepository(session)
    match = await load_managed_match(repo, event_type, event_id, match_id, user_id)

    if match.official_result:
        raise PreconditionFailedError("Match already has an official result; submit a correction instead")

    games, validation = _validated_games(match, scores, winner_id, rules)
    official_result = {
        "scores": [g.to_dict() for g in games],
        "winner_id": winner_id,
        "finalised_at": _epoch_ms(),
        "finalised_by_user_id": user_id,
        "version": 1,
    }
    await repo.update_match(
        match.id,
        official_result=official_result,
        status=MatchStatus.COMPLETED.value,
        score_state=ScoreState.OFFICIAL.value,
        score_locked=True,
        dupr_eligible=bool(dupr_eligible),
        dupr_submitted=False,
    )
    logger.info(f"[SCORING] Official result finalised for match {match.id}")
    return {"success": True, "version": 1, "warnings": validation.warnings}


async def correct_official_result(
    session: AsyncSession,
    event_type: str,
    event_id: str,
    match_id: str,
    user_id: Optional[str],
    scores: List[dict],
    winner_id: str,
    reason: str = "",
    rules: Optional[GameRules] = None,
) -> dict:
    """
    Replace the official result of a match, keeping the previous version.

    A match already submitted to DUPR is flagged for the correction sweep,
    which resubmits it under the same identifier.
    """
    repo = MatchRepository(session)
    match = await load_managed_match(repo, event_type, event_id, match_id, user_id)

    if not match.official_result:
        raise PreconditionFailedError("Match has no official result to correct")

    games, validation = _validated_games(match, scores, winner_id, rules)

    previous = dict(match.official_result)
    history = list(previous.pop("previous_versions", None) or [])
    history.append({
        **previous,
        "superseded_at": _epoch_ms(),
        "superseded_by_user_id": user_id,
        "correction_reason": reason or None,
    })
    version = int(previous.get("version") or 1) + 1

    official_result = {
        "scores": [g.to_dict() for g in games],
        "winner_id": winner_id,
        "finalised_at": _epoch_ms(),
        "finalised_by_user_id": user_id,
        "version": version,
        "previous_versions": history,
    }

    fields = {"official_result": official_result}
    needs_correction = is_submitted(match)
    if needs_correction:
        fields["dupr_needs_correction"] = True
        fields["dupr_correction_submitted"] = False

    await repo.update_match(match.id, **fields)
    logger.info(
        f"[DUPR] Official result of match {match.id} corrected to version {version}"
        f"{' (flagged for DUPR correction)' if needs_correction else ''}"
    )
    return {
        "success": True,
        "version": version,
        "needsCorrection": needs_correction,
        "warnings": validation.warnings,
    }


async def set_dupr_eligibility(
    session: AsyncSession,
    event_type: str,
    event_id: str,
    match_id: str,
    user_id: Optional[str],
    eligible: bool,
) -> dict:
    """Flip the organizer's DUPR eligible flag. Refused while the toggle is locked."""
    repo = MatchRepository(session)
    match = await load_managed_match(repo, event_type, event_id, match_id, user_id)

    toggle = get_eligibility_toggle_state(match)
    if not toggle.can_toggle:
        raise PreconditionFailedError(toggle.tooltip)

    await repo.update_match(match.id, dupr_eligible=bool(eligible))
    return {"success": True, "eligibility": asdict(get_eligibility_toggle_state(match))}
