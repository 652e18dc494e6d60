"""Build DUPR match-create payloads from stored matches."""

import logging
from dataclasses import dataclass, field
from datetime import date, datetime, timezone
from typing import Awaitable, Callable, List, Optional

from duprsync.dupr.scoring import games_from_result, has_minimum_winning_score
from duprsync.dupr.types import MatchFormat, MatchSource
from duprsync.models import Match

logger = logging.getLogger(__name__)

MIN_GAMES = 1
MAX_GAMES = 5

DuprIdLookup = Callable[[List[str]], Awaitable[List[str]]]


@dataclass
class ConversionResult:
    """Either a payload or an error, never both. Warnings never block."""

    payload: Optional[dict] = None
    error: Optional[str] = None
    warnings: List[str] = field(default_factory=list)

    @property
    def is_success(self) -> bool:
        return self.payload is not None and self.error is None

    def payload_metadata(self) -> Optional[dict]:
        """Payload summary safe to return to callers (no player ids)."""
        if not self.payload:
            return None
        return {
            "identifier": self.payload["identifier"],
            "match_source": self.payload["matchSource"],
            "format": self.payload["format"],
            "game_count": sum(1 for key in self.payload["teamA"] if key.startswith("game")),
            "has_club_id": "clubId" in self.payload,
        }


def build_submission_identifier(event_type, event_id: str, match_id: str) -> str:
    """Deterministic idempotency key: the same match always maps to the same identifier."""
    event_type = getattr(event_type, "value", event_type)
    return f"{event_type}_{event_id}_{match_id}"


def is_doubles_match(match: Match) -> bool:
    side_a_players = (match.side_a or {}).get("player_ids") or []
    side_b_players = (match.side_b or {}).get("player_ids") or []
    if len(side_a_players) > 1 or len(side_b_players) > 1:
        return True
    return bool(match.play_type) and match.play_type != "singles"


def format_match_date(finalised_at) -> str:
    """ISO date (YYYY-MM-DD) for epoch millis, ISO strings or datetimes."""
    if isinstance(finalised_at, datetime):
        return finalised_at.date().isoformat()
    if isinstance(finalised_at, date):
        return finalised_at.isoformat()
    if isinstance(finalised_at, (int, float)) and not isinstance(finalised_at, bool):
        return datetime.fromtimestamp(finalised_at / 1000, tz=timezone.utc).date().isoformat()
    if isinstance(finalised_at, str) and finalised_at:
        try:
            return datetime.fromisoformat(finalised_at.replace("Z", "+00:00")).date().isoformat()
        except ValueError:
            logger.warning(f"[DUPR] Unparseable finalised_at {finalised_at!r}, using today")
    return datetime.now(timezone.utc).date().isoformat()


def missing_link_message(missing: int, doubles: bool) -> str:
    return f"{missing} player(s) missing DUPR link — all {4 if doubles else 2} players must link DUPR accounts"


async def _resolve_side_ids(side: dict, lookup: DuprIdLookup) -> List[str]:
    dupr_ids = [d for d in (side.get("dupr_ids") or []) if d]
    player_ids = side.get("player_ids") or []
    if not dupr_ids and player_ids:
        dupr_ids = await lookup(player_ids)
    return list(dupr_ids)


async def convert_match(
    match: Match,
    event_name: str,
    club_id: Optional[str],
    lookup_dupr_ids: DuprIdLookup,
    min_winning_score_hint: int = 6,
) -> ConversionResult:
    """
    Convert a match with an official result into a DUPR submission payload.

    Args:
        match: Stored match (must carry official_result, side_a, side_b)
        event_name: Display name sent as the DUPR ``event`` field
        club_id: Organizer club id; empty means PARTNER submission
        lookup_dupr_ids: Resolves linked DUPR ids for player ids (skips unlinked)
        min_winning_score_hint: Low-score heuristic threshold (warning only)

    Returns:
        ConversionResult with exactly one of payload / error set.
    """
    warnings: List[str] = []

    if not match.official_result or not match.side_a or not match.side_b:
        logger.warning(f"[DUPR] Match {match.id} missing official result or sides")
        return ConversionResult(error="Missing official result or team data")

    games = games_from_result(match.official_result)

    if not MIN_GAMES <= len(games) <= MAX_GAMES:
        logger.error(f"[DUPR] Match {match.id} invalid game count: {len(games)}")
        return ConversionResult(error=f"Invalid game count: {len(games)} (must be {MIN_GAMES}-{MAX_GAMES})")

    for game in games:
        if game.score_a == game.score_b:
            logger.error(f"[DUPR] Match {match.id} has tied game: {game.score_a}-{game.score_b}")
            return ConversionResult(error=f"Tied game not allowed: {game.score_a}-{game.score_b}")

    if not has_minimum_winning_score(games, min_winning_score_hint):
        warnings.append(f"No game with minimum {min_winning_score_hint} points - DUPR may reject")
        logger.warning(f"[DUPR] Match {match.id} warning: no game with {min_winning_score_hint}+ points")

    doubles = is_doubles_match(match)
    expected_per_side = 2 if doubles else 1

    side_a_ids = await _resolve_side_ids(match.side_a, lookup_dupr_ids)
    side_b_ids = await _resolve_side_ids(match.side_b, lookup_dupr_ids)

    if len(side_a_ids) < expected_per_side or len(side_b_ids) < expected_per_side:
        # Count rostered players without a link; fall back to empty roster slots
        missing = sum(
            max(len(side.get("player_ids") or []) - len(ids), 0)
            for side, ids in ((match.side_a, side_a_ids), (match.side_b, side_b_ids))
        )
        if missing == 0:
            missing = max(expected_per_side - len(side_a_ids), 0) + max(expected_per_side - len(side_b_ids), 0)
        logger.warning(
            f"[DUPR] Match {match.id} missing DUPR ids for {'doubles' if doubles else 'singles'}: "
            f"expected={expected_per_side} side_a_linked={len(side_a_ids)} side_b_linked={len(side_b_ids)}"
        )
        return ConversionResult(error=missing_link_message(missing, doubles))

    team_a = {"player1": side_a_ids[0]}
    team_b = {"player1": side_b_ids[0]}
    if doubles:
        team_a["player2"] = side_a_ids[1]
        team_b["player2"] = side_b_ids[1]

    # Both teams carry identical gameN keys
    for index, game in enumerate(games, start=1):
        team_a[f"game{index}"] = game.score_a
        team_b[f"game{index}"] = game.score_b

    identifier = build_submission_identifier(match.event_type, match.event_id, match.id)
    match_source = MatchSource.CLUB if club_id else MatchSource.PARTNER

    payload = {
        "identifier": identifier,
        "event": event_name,
        "format": (MatchFormat.DOUBLES if doubles else MatchFormat.SINGLES).value,
        "matchDate": format_match_date(match.official_result.get("finalised_at")),
        "matchSource": match_source.value,
        "teamA": team_a,
        "teamB": team_b,
    }

    if match_source is MatchSource.CLUB:
        try:
            payload["clubId"] = int(str(club_id).strip())
        except ValueError:
            logger.error(f"[DUPR] Invalid club id configuration: {club_id!r}")
            return ConversionResult(error="Invalid club ID configuration", warnings=warnings)

    logger.info(
        f"[DUPR] Formatted match {match.id}: identifier={identifier} source={match_source.value} "
        f"format={payload['format']} games={len(games)} warnings={len(warnings)}"
    )
    return ConversionResult(payload=payload, warnings=warnings)
