"""Tests for the DUPR payload converter."""

import pytest

from duprsync.dupr.converter import (
    build_submission_identifier,
    convert_match,
    format_match_date,
    is_doubles_match,
)
from duprsync.dupr.repository import MatchRepository
from duprsync.dupr.types import EventType
from duprsync.models import Match


def _match(scores=((11, 7),), doubles=True, side_a=None, side_b=None, **kwargs):
    side_a = side_a or {"id": "team-a", "player_ids": ["p1", "p2"] if doubles else ["p1"]}
    side_b = side_b or {"id": "team-b", "player_ids": ["p3", "p4"] if doubles else ["p3"]}
    return Match(
        id=kwargs.pop("id", "m-1"),
        event_id="evt-1",
        event_type="tournament",
        play_type="doubles" if doubles else "singles",
        side_a=side_a,
        side_b=side_b,
        official_result={
            "scores": [{"score_a": a, "score_b": b} for a, b in scores],
            "winner_id": "team-a",
            "finalised_at": 1767225600000,
        },
        **kwargs,
    )


def _lookup(linked):
    async def lookup(player_ids):
        return [linked[p] for p in player_ids if p in linked]

    return lookup


ALL_LINKED = {"p1": "D1", "p2": "D2", "p3": "D3", "p4": "D4"}


class TestIdentifier:
    def test_identifier_is_deterministic(self):
        assert build_submission_identifier("tournament", "evt-1", "m-1") == "tournament_evt-1_m-1"
        assert build_submission_identifier(EventType.LEAGUE, "L", "m") == "league_L_m"

    @pytest.mark.asyncio
    async def test_converting_twice_yields_same_identifier(self):
        match = _match()
        first = await convert_match(match, "Summer Open", "", _lookup(ALL_LINKED))
        second = await convert_match(match, "Summer Open", "", _lookup(ALL_LINKED))
        assert first.payload["identifier"] == second.payload["identifier"] == "tournament_evt-1_m-1"


class TestConvertMatch:
    """Payload construction and validation."""

    @pytest.mark.asyncio
    async def test_doubles_partner_payload(self):
        result = await convert_match(_match(scores=((11, 7), (9, 11), (11, 5))), "Summer Open", "", _lookup(ALL_LINKED))

        assert result.is_success
        payload = result.payload
        assert payload["format"] == "DOUBLES"
        assert payload["matchSource"] == "PARTNER"
        assert "clubId" not in payload
        assert payload["event"] == "Summer Open"
        assert payload["matchDate"] == "2026-01-01"
        assert payload["teamA"] == {"player1": "D1", "player2": "D2", "game1": 11, "game2": 9, "game3": 11}
        assert payload["teamB"] == {"player1": "D3", "player2": "D4", "game1": 7, "game2": 11, "game3": 5}

    @pytest.mark.asyncio
    async def test_club_payload_has_integer_club_id(self):
        result = await convert_match(_match(), "Summer Open", " 12345 ", _lookup(ALL_LINKED))
        assert result.payload["matchSource"] == "CLUB"
        assert result.payload["clubId"] == 12345

    @pytest.mark.asyncio
    async def test_invalid_club_id(self):
        result = await convert_match(_match(), "Summer Open", "club-abc", _lookup(ALL_LINKED))
        assert result.payload is None
        assert result.error == "Invalid club ID configuration"

    @pytest.mark.asyncio
    async def test_singles_payload(self):
        result = await convert_match(_match(doubles=False), "Summer Open", "", _lookup(ALL_LINKED))
        assert result.payload["format"] == "SINGLES"
        assert result.payload["teamA"] == {"player1": "D1", "game1": 11}
        assert result.payload["teamB"] == {"player1": "D3", "game1": 7}

    @pytest.mark.asyncio
    async def test_one_unlinked_doubles_player(self):
        linked = {k: v for k, v in ALL_LINKED.items() if k != "p3"}
        result = await convert_match(_match(), "Summer Open", "", _lookup(linked))
        assert result.payload is None
        assert result.error == "1 player(s) missing DUPR link — all 4 players must link DUPR accounts"

    @pytest.mark.asyncio
    async def test_unlinked_singles_players(self):
        result = await convert_match(_match(doubles=False), "Summer Open", "", _lookup({}))
        assert result.error == "2 player(s) missing DUPR link — all 2 players must link DUPR accounts"

    @pytest.mark.asyncio
    async def test_stored_dupr_ids_skip_lookup(self):
        async def lookup(player_ids):
            raise AssertionError("lookup should not be called")

        match = _match(
            doubles=False,
            side_a={"id": "a", "player_ids": ["p1"], "dupr_ids": ["X1"]},
            side_b={"id": "b", "player_ids": ["p3"], "dupr_ids": ["X3"]},
        )
        result = await convert_match(match, "Summer Open", "", lookup)
        assert result.payload["teamA"]["player1"] == "X1"

    @pytest.mark.asyncio
    async def test_tied_game_rejected(self):
        result = await convert_match(_match(scores=((11, 7), (10, 10))), "Summer Open", "", _lookup(ALL_LINKED))
        assert result.error == "Tied game not allowed: 10-10"

    @pytest.mark.asyncio
    async def test_game_count_limits(self):
        too_many = tuple((11, 5) for _ in range(6))
        result = await convert_match(_match(scores=too_many), "Summer Open", "", _lookup(ALL_LINKED))
        assert result.error == "Invalid game count: 6 (must be 1-5)"

        result = await convert_match(_match(scores=()), "Summer Open", "", _lookup(ALL_LINKED))
        assert result.error == "Invalid game count: 0 (must be 1-5)"

    @pytest.mark.asyncio
    async def test_low_scores_warn_but_convert(self):
        result = await convert_match(_match(scores=((5, 3),)), "Summer Open", "", _lookup(ALL_LINKED))
        assert result.is_success
        assert result.warnings == ["No game with minimum 6 points - DUPR may reject"]

    @pytest.mark.asyncio
    async def test_missing_official_result(self):
        match = _match()
        match.official_result = None
        result = await convert_match(match, "Summer Open", "", _lookup(ALL_LINKED))
        assert result.error == "Missing official result or team data"

    @pytest.mark.asyncio
    async def test_payload_metadata_has_no_player_ids(self):
        result = await convert_match(_match(scores=((11, 7), (11, 9))), "Summer Open", "", _lookup(ALL_LINKED))
        metadata = result.payload_metadata()
        assert metadata == {
            "identifier": "tournament_evt-1_m-1",
            "match_source": "PARTNER",
            "format": "DOUBLES",
            "game_count": 2,
            "has_club_id": False,
        }
        assert "D1" not in str(metadata)


class TestRepositoryLookup:
    @pytest.mark.asyncio
    async def test_lookup_through_repository(self, session, factory):
        await factory.profile("p1", dupr_id="D1")
        await factory.profile("p2", dupr_id=None)
        await factory.profile("p3", dupr_id="D3")
        await factory.profile("p4", dupr_id="D4")

        repo = MatchRepository(session)
        assert await repo.fetch_dupr_ids_for_players(["p4", "p2", "p1", "ghost"]) == ["D4", "D1"]

        result = await convert_match(_match(), "Summer Open", "", repo.fetch_dupr_ids_for_players)
        assert result.error.startswith("1 player(s) missing DUPR link")


class TestHelpers:
    def test_doubles_detection(self):
        assert is_doubles_match(_match(doubles=True)) is True
        assert is_doubles_match(_match(doubles=False)) is False

    def test_format_match_date(self):
        assert format_match_date(1767225600000) == "2026-01-01"
        assert format_match_date("2026-03-04T10:00:00Z") == "2026-03-04"
