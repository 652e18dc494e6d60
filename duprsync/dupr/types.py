"""Closed status vocabularies for the DUPR pipeline and their transition tables."""

from enum import Enum

from duprsync.dupr.errors import InvalidRequestError, InvalidTransitionError


class EventType(str, Enum):
    TOURNAMENT = "tournament"
    LEAGUE = "league"
    MEETUP = "meetup"


class MatchStatus(str, Enum):
    SCHEDULED = "scheduled"
    IN_PROGRESS = "in_progress"
    COMPLETED = "completed"
    CANCELLED = "cancelled"


class ScoreState(str, Enum):
    NONE = "none"
    PROPOSED = "proposed"
    SIGNED = "signed"
    DISPUTED = "disputed"
    OFFICIAL = "official"
    SUBMITTED_TO_DUPR = "submitted_to_dupr"


class ProposalStatus(str, Enum):
    PROPOSED = "proposed"
    SIGNED = "signed"
    DISPUTED = "disputed"


class MatchCategory(str, Enum):
    NONE = "none"
    PROPOSED = "proposed"
    NEEDS_REVIEW = "needs_review"
    READY_FOR_DUPR = "ready_for_dupr"
    SUBMITTED = "submitted"
    FAILED = "failed"
    BLOCKED = "blocked"


class BatchStatus(str, Enum):
    PENDING = "pending"
    PROCESSING = "processing"
    COMPLETED = "completed"
    PARTIAL_FAILURE = "partial_failure"


class MatchFormat(str, Enum):
    SINGLES = "SINGLES"
    DOUBLES = "DOUBLES"


class MatchSource(str, Enum):
    CLUB = "CLUB"
    PARTNER = "PARTNER"


PROPOSAL_TRANSITIONS = {
    ProposalStatus.PROPOSED: frozenset({ProposalStatus.SIGNED, ProposalStatus.DISPUTED}),
    ProposalStatus.SIGNED: frozenset(),
    ProposalStatus.DISPUTED: frozenset({ProposalStatus.PROPOSED}),
}

# processing -> processing is a stale re-pickup by the queue sweep
BATCH_TRANSITIONS = {
    BatchStatus.PENDING: frozenset({BatchStatus.PROCESSING}),
    BatchStatus.PROCESSING: frozenset({
        BatchStatus.PROCESSING,
        BatchStatus.COMPLETED,
        BatchStatus.PARTIAL_FAILURE,
    }),
    BatchStatus.PARTIAL_FAILURE: frozenset({BatchStatus.PROCESSING}),
    BatchStatus.COMPLETED: frozenset(),
}


def check_batch_transition(current, target) -> BatchStatus:
    """Validate a batch status change and return the target as a BatchStatus."""
    current, target = BatchStatus(current), BatchStatus(target)
    if target not in BATCH_TRANSITIONS[current]:
        raise InvalidTransitionError(f"Batch cannot move from {current.value} to {target.value}")
    return target


def check_proposal_transition(current, target) -> ProposalStatus:
    """Validate a score-proposal status change. ``current`` is None when no proposal exists yet."""
    target = ProposalStatus(target)
    if current is None:
        if target != ProposalStatus.PROPOSED:
            raise InvalidTransitionError(f"No score proposal to mark {target.value}")
        return target
    current = ProposalStatus(current)
    if target not in PROPOSAL_TRANSITIONS[current]:
        raise InvalidTransitionError(f"Proposal cannot move from {current.value} to {target.value}")
    return target


def parse_event_type(value) -> EventType:
    try:
        return EventType(value)
    except ValueError:
        raise InvalidRequestError(f"Invalid eventType: {value!r}")
