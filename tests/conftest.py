"""Shared fixtures: in-memory database, row factories and a mocked DUPR API."""

import json
import os

# Settings are read at import time by several modules
os.environ.setdefault("DATABASE_URL", "sqlite://")
os.environ.setdefault("SCHEDULER_ENABLED", "false")
os.environ.setdefault("SENTRY_ENABLED", "false")

import httpx
import pytest
import pytest_asyncio

from duprsync.config import Settings
from duprsync.database import build_engine, build_session_factory, init_db
from duprsync.models import Event, Match, PlayerProfile

FINALISED_AT_MS = 1767225600000  # 2026-01-01T00:00:00Z


def make_settings(**overrides) -> Settings:
    values = {
        "DUPR_ENV": "uat",
        "DUPR_CLIENT_KEY": "test-key",
        "DUPR_CLIENT_SECRET": "test-secret",
        "DUPR_CLUB_ID": "",
        "DUPR_INTER_CALL_DELAY_MS": 0,
        "DUPR_QUEUE_INTER_CALL_DELAY_MS": 0,
        "DUPR_SUBSCRIBE_DELAY_MS": 0,
    }
    values.update(overrides)
    return Settings(_env_file=None, **values)


@pytest.fixture
def settings():
    return make_settings()


@pytest_asyncio.fixture
async def db_engine():
    engine = build_engine("sqlite://")
    await init_db(engine)
    yield engine
    await engine.dispose()


@pytest_asyncio.fixture
async def session(db_engine):
    factory = build_session_factory(db_engine)
    async with factory() as s:
        yield s


class Factory:
    """Creates committed rows with sensible DUPR-ready defaults."""

    def __init__(self, session):
        self.session = session

    async def event(self, id="evt-1", event_type="tournament", name="Summer Open", organizer_id="org-1", **kwargs):
        event = Event(id=id, event_type=event_type, name=name, organizer_id=organizer_id, **kwargs)
        self.session.add(event)
        await self.session.commit()
        return event

    async def profile(self, id, dupr_id=None, **kwargs):
        profile = PlayerProfile(id=id, display_name=id, dupr_id=dupr_id, **kwargs)
        self.session.add(profile)
        await self.session.commit()
        return profile

    async def linked_players(self, count=4):
        """Profiles p1..pN linked to DUPR ids D1..DN."""
        return [await self.profile(f"p{i}", dupr_id=f"D{i}") for i in range(1, count + 1)]

    async def match(
        self,
        id="m-1",
        event_id="evt-1",
        event_type="tournament",
        scores=((11, 7),),
        doubles=True,
        side_a_players=None,
        side_b_players=None,
        **kwargs,
    ):
        if side_a_players is None:
            side_a_players = ["p1", "p2"] if doubles else ["p1"]
        if side_b_players is None:
            side_b_players = ["p3", "p4"] if doubles else ["p3"]

        values = {
            "status": "completed",
            "score_state": "official",
            "score_locked": True,
            "play_type": "doubles" if doubles else "singles",
            "side_a": {"id": "team-a", "name": "Alpha", "player_ids": side_a_players},
            "side_b": {"id": "team-b", "name": "Bravo", "player_ids": side_b_players},
            "official_result": {
                "scores": [
                    {"game_number": i + 1, "score_a": a, "score_b": b} for i, (a, b) in enumerate(scores)
                ],
                "winner_id": "team-a",
                "finalised_at": FINALISED_AT_MS,
                "finalised_by_user_id": "org-1",
                "version": 1,
            },
        }
        values.update(kwargs)
        match = Match(id=id, event_id=event_id, event_type=event_type, **values)
        self.session.add(match)
        await self.session.commit()
        return match


@pytest_asyncio.fixture
async def factory(session):
    return Factory(session)


class FakeDupr:
    """
    httpx.MockTransport handler standing in for the DUPR API.

    ``match_responses`` maps submission identifiers to (status, body); any
    other identifier is accepted with a generated match id.
    """

    def __init__(self, token="test-token"):
        self.token = token
        self.token_status = 200
        self.match_responses = {}
        self.players = {}
        self.subscribe_status = 200
        self.subscribe_failures = set()
        self.subscribed = []
        self.requests = []

    @property
    def submitted_payloads(self):
        return [json.loads(r.content) for r in self.requests if r.url.path.endswith("/match/v1.0/create")]

    def count(self, suffix):
        return sum(1 for r in self.requests if r.url.path.endswith(suffix))

    def __call__(self, request: httpx.Request) -> httpx.Response:
        self.requests.append(request)
        path = request.url.path

        if path.endswith("/auth/v1.0/token"):
            if self.token_status != 200:
                return httpx.Response(self.token_status, json={"message": "invalid client credentials"})
            if not self.token:
                return httpx.Response(200, json={"status": "SUCCESS"})
            return httpx.Response(200, json={"result": {"token": self.token}})

        if path.endswith("/match/v1.0/create"):
            payload = json.loads(request.content)
            status, body = self.match_responses.get(payload["identifier"], (200, None))
            if body is None:
                body = {"status": "SUCCESS", "result": {"matchId": f"dupr-{payload['identifier']}"}}
            return httpx.Response(status, json=body)

        if path.endswith("/v1.0/player"):
            dupr_id = json.loads(request.content)["duprIds"][0]
            if dupr_id not in self.players:
                return httpx.Response(200, json={"status": "SUCCESS", "results": []})
            return httpx.Response(200, json={"status": "SUCCESS", "results": [self.players[dupr_id]]})

        if path.endswith("/v1.0/subscribe/rating-changes"):
            if request.method == "GET":
                return httpx.Response(self.subscribe_status, json={"status": "SUCCESS", "result": self.subscribed})
            dupr_ids = json.loads(request.content)
            if self.subscribe_status != 200:
                return httpx.Response(self.subscribe_status, json={"status": "FAILURE"})
            if set(dupr_ids) & self.subscribe_failures:
                return httpx.Response(200, json={"status": "FAILURE"})
            self.subscribed.extend(dupr_ids)
            return httpx.Response(200, json={"status": "SUCCESS"})

        return httpx.Response(404, json={"message": "unknown endpoint"})


@pytest.fixture
def fake_dupr():
    return FakeDupr()


@pytest_asyncio.fixture
async def http_client(fake_dupr):
    async with httpx.AsyncClient(transport=httpx.MockTransport(fake_dupr)) as client:
        yield client
