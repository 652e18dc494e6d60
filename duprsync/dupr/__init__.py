"""
DUPR integration.

Submission pipeline (converter, engine, corrections), eligibility rules,
score validation and rating ingestion (webhook, sync).
"""

from duprsync.dupr.auth import DuprTokenProvider
from duprsync.dupr.client import DuprClient, SubmissionResult
from duprsync.dupr.converter import build_submission_identifier, convert_match
from duprsync.dupr.eligibility import can_submit_to_dupr, categorize_match
from duprsync.dupr.engine import SubmissionEngine
from duprsync.dupr.errors import DuprError
from duprsync.dupr.scoring import GameRules, validate_game_score, validate_match_scores

__all__ = [
    "DuprClient",
    "DuprError",
    "DuprTokenProvider",
    "GameRules",
    "SubmissionEngine",
    "SubmissionResult",
    "build_submission_identifier",
    "can_submit_to_dupr",
    "categorize_match",
    "convert_match",
    "validate_game_score",
    "validate_match_scores",
]
