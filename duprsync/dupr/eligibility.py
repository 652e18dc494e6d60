"""
Eligibility classification for DUPR submission.

Every function here is pure: it reads a match's persisted fields and never
writes. The batch engine and the organizer panel share the same decisions.
"""

from collections import Counter
from dataclasses import asdict, dataclass
from typing import Iterable, List, Optional, Tuple

from duprsync.dupr.scoring import games_from_result
from duprsync.dupr.types import MatchCategory, MatchStatus, ProposalStatus, ScoreState
from duprsync.models import Match

PLACEHOLDER_NAMES = frozenset({"tbd", "tba", "bye", ""})

# Proposal workflow status -> category (exhaustive over ProposalStatus)
PROPOSAL_CATEGORY = {
    ProposalStatus.PROPOSED: MatchCategory.PROPOSED,
    ProposalStatus.SIGNED: MatchCategory.NEEDS_REVIEW,
    ProposalStatus.DISPUTED: MatchCategory.NEEDS_REVIEW,
}

# Legacy score_state -> category when no proposal decides it
SCORE_STATE_CATEGORY = {
    ScoreState.PROPOSED: MatchCategory.PROPOSED,
    ScoreState.SIGNED: MatchCategory.NEEDS_REVIEW,
    ScoreState.DISPUTED: MatchCategory.NEEDS_REVIEW,
    ScoreState.OFFICIAL: MatchCategory.BLOCKED,
}

PANEL_PRIORITY = {
    MatchCategory.NEEDS_REVIEW: 0,
    MatchCategory.PROPOSED: 1,
    MatchCategory.READY_FOR_DUPR: 2,
    MatchCategory.BLOCKED: 3,
    MatchCategory.FAILED: 4,
    MatchCategory.SUBMITTED: 5,
    MatchCategory.NONE: 6,
}

PANEL_FILTERS = {
    "needs_review": {MatchCategory.NEEDS_REVIEW, MatchCategory.PROPOSED},
    "ready_for_dupr": {MatchCategory.READY_FOR_DUPR},
    "submitted": {MatchCategory.SUBMITTED},
    "failed": {MatchCategory.FAILED},
    "blocked": {MatchCategory.BLOCKED},
}


@dataclass(frozen=True)
class EligibilityToggleState:
    can_toggle: bool
    is_enabled: bool
    is_locked: bool
    tooltip: str


def _side_name(side: Optional[dict]) -> str:
    return ((side or {}).get("name") or "").strip().lower()


def _enum_or_none(enum_cls, value):
    try:
        return enum_cls(value)
    except ValueError:
        return None


def has_valid_participants(match: Match) -> bool:
    """False when either side is missing or still a placeholder (TBD/TBA/BYE)."""
    for side in (match.side_a, match.side_b):
        name = _side_name(side)
        if name in PLACEHOLDER_NAMES or "tbd" in name:
            return False
    return True


def is_submitted(match: Match) -> bool:
    return bool(match.dupr_submitted) or match.score_state == ScoreState.SUBMITTED_TO_DUPR


def categorize_match(match: Match) -> MatchCategory:
    """Map a match to its pipeline category. First matching rule wins."""
    if is_submitted(match):
        return MatchCategory.SUBMITTED

    if match.dupr_submission_error:
        return MatchCategory.FAILED

    if match.dupr_needs_correction:
        return MatchCategory.BLOCKED

    if not has_valid_participants(match):
        return MatchCategory.BLOCKED

    if match.official_result:
        if (
            match.status == MatchStatus.COMPLETED
            and match.score_state == ScoreState.OFFICIAL
            and match.score_locked
            and match.dupr_eligible is not False
        ):
            return MatchCategory.READY_FOR_DUPR
        return MatchCategory.BLOCKED

    if match.score_proposal:
        proposal_status = _enum_or_none(ProposalStatus, match.score_proposal.get("status"))
        if proposal_status is not None:
            return PROPOSAL_CATEGORY[proposal_status]

    score_state = _enum_or_none(ScoreState, match.score_state)
    return SCORE_STATE_CATEGORY.get(score_state, MatchCategory.NONE)


def can_submit_to_dupr(match: Match) -> Tuple[bool, Optional[str]]:
    """Eligibility with a human-readable reason when not eligible."""
    if not has_valid_participants(match):
        return False, "Match has TBD or missing participants"
    if not match.official_result:
        return False, "No official result"
    if match.status != MatchStatus.COMPLETED:
        return False, "Match not completed"
    if match.score_state != ScoreState.OFFICIAL:
        return False, "Score not officially finalized"
    if not match.score_locked:
        return False, "Score not locked"
    if match.dupr_eligible is False:
        return False, "Not marked as DUPR eligible"
    if match.dupr_submitted:
        return False, "Already submitted to DUPR"
    if match.dupr_needs_correction:
        return False, "Awaiting correction workflow"
    return True, None


def get_eligibility_toggle_state(match: Match) -> EligibilityToggleState:
    """Whether an organizer may flip the eligible flag right now."""
    enabled = match.dupr_eligible is not False

    if not match.official_result or match.score_state != ScoreState.OFFICIAL:
        return EligibilityToggleState(False, False, False, "Finalise official result first")

    if match.dupr_submitted:
        return EligibilityToggleState(False, True, True, "Already submitted to DUPR")

    if match.dupr_needs_correction:
        return EligibilityToggleState(False, enabled, True, "Awaiting correction workflow")

    tooltip = "Click to exclude from DUPR" if enabled else "Click to mark as DUPR eligible"
    return EligibilityToggleState(True, enabled, False, tooltip)


def get_block_reason(match: Match) -> Optional[str]:
    if not has_valid_participants(match):
        return "Match has TBD or missing participants"
    if match.dupr_needs_correction:
        return "Official result changed after DUPR submission"
    if match.score_state == ScoreState.DISPUTED and not match.official_result:
        return "Score disputed - awaiting organizer resolution"
    if match.status == MatchStatus.COMPLETED and not match.official_result:
        return "Missing official result"
    if match.official_result and not match.score_locked:
        return "Score not locked"
    return None


def _score_summary(result: Optional[dict]) -> Optional[str]:
    games = games_from_result(result)
    if not games:
        return None
    return ", ".join(f"{g.score_a}-{g.score_b}" for g in games)


def _dupr_status_label(match: Match, eligible: bool) -> str:
    if match.dupr_submitted:
        return "Submitted"
    if match.dupr_submission_error:
        return "Failed"
    if match.dupr_batch_id:
        return "Queued"
    if eligible:
        return "Ready"
    if match.dupr_eligible is False:
        return "Not eligible"
    return "Not submitted"


def build_match_row(match: Match) -> dict:
    """Panel row for one match. Carries side names, never player or DUPR ids."""
    category = categorize_match(match)
    eligible, _ = can_submit_to_dupr(match)
    toggle = get_eligibility_toggle_state(match)
    proposal_status = (match.score_proposal or {}).get("status")

    can_finalise = not match.official_result and (
        proposal_status in (ProposalStatus.SIGNED, ProposalStatus.DISPUTED)
        or match.score_state in (ScoreState.SIGNED, ScoreState.DISPUTED)
    )

    return {
        "match_id": match.id,
        "side_a_name": (match.side_a or {}).get("name"),
        "side_b_name": (match.side_b or {}).get("name"),
        "category": category.value,
        "can_review": category in (MatchCategory.NEEDS_REVIEW, MatchCategory.PROPOSED, MatchCategory.BLOCKED),
        "can_finalise": bool(can_finalise),
        "can_submit": eligible,
        "can_toggle_eligibility": toggle.can_toggle,
        "eligibility": asdict(toggle),
        "block_reason": get_block_reason(match),
        "eligibility_lock_reason": None if toggle.can_toggle else toggle.tooltip,
        "dupr_status_label": _dupr_status_label(match, eligible),
        "submission_error": match.dupr_submission_error,
        "proposal_summary": _score_summary(match.score_proposal),
        "official_summary": _score_summary(match.official_result),
    }


def get_panel_stats(matches: Iterable[Match]) -> dict:
    """Counts per category plus total."""
    counts = Counter(categorize_match(m) for m in matches)
    stats = {category.value: counts.get(category, 0) for category in MatchCategory}
    stats["total"] = sum(counts.values())
    return stats


def filter_rows_by_category(rows: List[dict], category_filter: str = "all") -> List[dict]:
    if category_filter == "all":
        return rows
    wanted = {c.value for c in PANEL_FILTERS.get(category_filter, set())}
    return [row for row in rows if row["category"] in wanted]


def sort_rows_for_panel(rows: List[dict]) -> List[dict]:
    """Actionable categories first, then by match id for a stable order."""
    return sorted(rows, key=lambda row: (PANEL_PRIORITY[MatchCategory(row["category"])], row["match_id"]))
