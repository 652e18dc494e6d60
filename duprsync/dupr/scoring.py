"""
Game score legality checks.

Pure functions, no I/O. Hard rule violations go to ``errors``; heuristics the
Authority arbitrates itself (low scores, games beyond the cap) go to
``warnings`` and never invalidate a result.

Rules per game:
- scores are non-negative integers and never tied
- the winner reaches ``points_to_win``
- the margin reaches ``win_by`` unless the winner has reached ``cap``
- a game past ``points_to_win`` ends as soon as the margin is met, so the
  loser's score must sit exactly ``win_by`` behind (1..win_by at the cap)

Rules per match:
- 1..best_of games, the leading side holds a majority of ``best_of``
"""

from dataclasses import dataclass, field
from typing import Iterable, List, Optional


@dataclass(frozen=True)
class GameRules:
    points_to_win: int = 11
    win_by: int = 2
    best_of: int = 1
    cap: Optional[int] = None
    min_winning_score_hint: int = 6

    @property
    def games_to_win(self) -> int:
        return self.best_of // 2 + 1


@dataclass(frozen=True)
class GameScore:
    score_a: int
    score_b: int
    game_number: Optional[int] = None

    @classmethod
    def from_dict(cls, data: dict, default_number: Optional[int] = None) -> "GameScore":
        """Accept both snake_case and camelCase score keys."""
        score_a = data.get("score_a", data.get("scoreA"))
        score_b = data.get("score_b", data.get("scoreB"))
        number = data.get("game_number", data.get("gameNumber", default_number))
        return cls(score_a=score_a, score_b=score_b, game_number=number)

    def to_dict(self) -> dict:
        return {"game_number": self.game_number, "score_a": self.score_a, "score_b": self.score_b}


@dataclass
class ValidationResult:
    valid: bool = True
    errors: List[str] = field(default_factory=list)
    warnings: List[str] = field(default_factory=list)

    def add_error(self, message: str) -> None:
        self.errors.append(message)
        self.valid = False

    def add_warning(self, message: str) -> None:
        self.warnings.append(message)

    def merge(self, other: "ValidationResult") -> None:
        for error in other.errors:
            self.add_error(error)
        self.warnings.extend(other.warnings)


def games_from_result(result: Optional[dict]) -> List[GameScore]:
    """Extract ordered game scores from an official result / proposal dict."""
    if not result:
        return []
    scores = result.get("scores") or []
    return [GameScore.from_dict(s, default_number=i + 1) for i, s in enumerate(scores)]


def _is_score(value) -> bool:
    return isinstance(value, int) and not isinstance(value, bool)


def validate_game_score(
    score_a,
    score_b,
    rules: GameRules = GameRules(),
    game_number: Optional[int] = None,
) -> ValidationResult:
    """Validate a single game score against the configured rules."""
    result = ValidationResult()
    label = f"Game {game_number}: " if game_number else ""

    if not _is_score(score_a) or not _is_score(score_b):
        result.add_error(f"{label}Scores must be whole numbers")
        return result
    if score_a < 0 or score_b < 0:
        result.add_error(f"{label}Scores cannot be negative")
        return result
    if score_a == score_b:
        result.add_error(f"{label}Game cannot end in a tie ({score_a}-{score_b})")
        return result

    winner, loser = max(score_a, score_b), min(score_a, score_b)
    margin = winner - loser

    if winner < rules.points_to_win:
        result.add_error(f"{label}Winning score must reach {rules.points_to_win} (got {winner}-{loser})")
        return result

    cap_reached = rules.cap is not None and winner >= rules.cap

    if margin < rules.win_by and not cap_reached:
        result.add_error(f"{label}Must win by {rules.win_by} (got {winner}-{loser})")
        return result

    if winner > rules.points_to_win and margin > rules.win_by:
        # Extended game must stop the moment the margin is met
        result.add_error(
            f"{label}Score {winner}-{loser} is not reachable: the game ends at a {rules.win_by}-point lead"
        )
        return result

    if rules.cap is not None and winner > rules.cap:
        result.add_warning(
            f"{label}Score {winner}-{loser} goes past the {rules.cap}-point cap; DUPR makes the final call"
        )

    return result


def calculate_match_winner(games: Iterable[GameScore]) -> Optional[str]:
    """Return "a", "b" or None when game wins are level."""
    wins_a = wins_b = 0
    for game in games:
        if game.score_a > game.score_b:
            wins_a += 1
        elif game.score_b > game.score_a:
            wins_b += 1
    if wins_a > wins_b:
        return "a"
    if wins_b > wins_a:
        return "b"
    return None


def has_minimum_winning_score(games: Iterable[GameScore], minimum: int = 6) -> bool:
    return any(_is_score(g.score_a) and _is_score(g.score_b) and max(g.score_a, g.score_b) >= minimum for g in games)


def validate_match_scores(games: List[GameScore], rules: GameRules = GameRules()) -> ValidationResult:
    """Validate every game plus the best-of structure of the match."""
    result = ValidationResult()

    if not games:
        result.add_error("At least one game is required")
        return result

    if len(games) > rules.best_of:
        result.add_error(f"Too many games: {len(games)} (best of {rules.best_of})")

    for index, game in enumerate(games):
        result.merge(validate_game_score(game.score_a, game.score_b, rules, game.game_number or index + 1))

    if not result.valid:
        return result

    needed = rules.games_to_win
    wins_a = wins_b = 0
    decided_at = None
    for index, game in enumerate(games):
        if game.score_a > game.score_b:
            wins_a += 1
        else:
            wins_b += 1
        if decided_at is None and max(wins_a, wins_b) >= needed:
            decided_at = index

    if max(wins_a, wins_b) < needed:
        result.add_error(f"Match is not decided: the winner needs {needed} game(s) (got {wins_a}-{wins_b})")
    elif decided_at is not None and decided_at < len(games) - 1:
        result.add_warning(f"Game {decided_at + 2} was played after the match was already decided")

    if not has_minimum_winning_score(games, rules.min_winning_score_hint):
        result.add_warning(f"No game with minimum {rules.min_winning_score_hint} points - DUPR may reject")

    return result
