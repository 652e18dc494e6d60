"""Tests for the token exchange and the DUPR API client (httpx.MockTransport)."""

import base64

import httpx
import pytest

from duprsync.dupr.auth import DuprTokenProvider, extract_token
from duprsync.dupr.client import (
    ALREADY_SUBMITTED_ID,
    ALREADY_SUBMITTED_WARNING,
    DuprClient,
    extract_error_message,
    parse_rating,
)
from duprsync.dupr.errors import TokenUnavailableError
from tests.conftest import make_settings

PAYLOAD = {"identifier": "tournament_evt-1_m-1", "teamA": {}, "teamB": {}}


class TestTokenProvider:
    """Client-credentials exchange."""

    def test_extract_token_shapes(self):
        assert extract_token({"token": "a"}) == "a"
        assert extract_token({"accessToken": "b"}) == "b"
        assert extract_token({"result": {"token": "c"}}) == "c"
        assert extract_token({"result": "nope"}) is None
        assert extract_token(["token"]) is None

    @pytest.mark.asyncio
    async def test_token_fetched_once_per_provider(self, settings, fake_dupr, http_client):
        provider = DuprTokenProvider(settings, http_client=http_client)

        assert await provider.get_token() == "test-token"
        assert await provider.get_token() == "test-token"
        assert fake_dupr.count("/auth/v1.0/token") == 1

        request = fake_dupr.requests[0]
        expected = base64.b64encode(b"test-key:test-secret").decode("ascii")
        assert request.headers["x-authorization"] == expected

    @pytest.mark.asyncio
    async def test_uses_environment_host(self, fake_dupr, http_client):
        provider = DuprTokenProvider(make_settings(DUPR_ENV="prod"), http_client=http_client)
        await provider.get_token()
        assert fake_dupr.requests[0].url.host == "prod.mydupr.com"

    @pytest.mark.asyncio
    async def test_missing_credentials(self, fake_dupr, http_client):
        provider = DuprTokenProvider(make_settings(DUPR_CLIENT_SECRET=""), http_client=http_client)
        assert await provider.get_token() is None
        assert fake_dupr.requests == []

    @pytest.mark.asyncio
    async def test_rejected_exchange(self, settings, fake_dupr, http_client):
        fake_dupr.token_status = 401
        provider = DuprTokenProvider(settings, http_client=http_client)
        assert await provider.get_token() is None

    @pytest.mark.asyncio
    async def test_response_without_token(self, settings, fake_dupr, http_client):
        fake_dupr.token = None
        provider = DuprTokenProvider(settings, http_client=http_client)
        assert await provider.get_token() is None

    @pytest.mark.asyncio
    async def test_require_token_raises(self, settings, fake_dupr, http_client):
        fake_dupr.token_status = 500
        provider = DuprTokenProvider(settings, http_client=http_client)
        with pytest.raises(TokenUnavailableError):
            await provider.require_token()

    @pytest.mark.asyncio
    async def test_network_error_returns_none(self, settings):
        def handler(request):
            raise httpx.ConnectError("connection refused")

        async with httpx.AsyncClient(transport=httpx.MockTransport(handler)) as http_client:
            provider = DuprTokenProvider(settings, http_client=http_client)
            assert await provider.get_token() is None


class TestSubmitMatch:
    """Match-create outcomes."""

    @pytest.mark.asyncio
    async def test_success_returns_match_id(self, settings, fake_dupr, http_client):
        client = DuprClient(settings, http_client=http_client)
        result = await client.submit_match(PAYLOAD, "tok")

        assert result.success is True
        assert result.dupr_match_id == "dupr-tournament_evt-1_m-1"
        assert result.status_code == 200
        assert fake_dupr.requests[0].headers["Authorization"] == "Bearer tok"

    @pytest.mark.asyncio
    async def test_duplicate_identifier_is_success(self, settings, fake_dupr, http_client):
        fake_dupr.match_responses[PAYLOAD["identifier"]] = (400, {"message": "Match with identifier already exists"})
        client = DuprClient(settings, http_client=http_client)

        result = await client.submit_match(PAYLOAD, "tok")

        assert result.success is True
        assert result.is_duplicate is True
        assert result.dupr_match_id == ALREADY_SUBMITTED_ID
        assert result.warnings == [ALREADY_SUBMITTED_WARNING]

    @pytest.mark.asyncio
    async def test_unique_identifier_message_is_duplicate(self, settings, fake_dupr, http_client):
        fake_dupr.match_responses[PAYLOAD["identifier"]] = (
            409,
            {"errors": [{"message": "Object identifiers must be universally unique"}]},
        )
        client = DuprClient(settings, http_client=http_client)
        assert (await client.submit_match(PAYLOAD, "tok")).is_duplicate is True

    @pytest.mark.asyncio
    async def test_rejection_carries_error(self, settings, fake_dupr, http_client):
        fake_dupr.match_responses[PAYLOAD["identifier"]] = (400, {"message": "Invalid player"})
        client = DuprClient(settings, http_client=http_client)

        result = await client.submit_match(PAYLOAD, "tok")

        assert result.success is False
        assert result.error == "Invalid player"
        assert result.status_code == 400
        assert result.response_summary()["status"] == 400

    @pytest.mark.asyncio
    async def test_transport_error_never_raises(self, settings):
        def handler(request):
            raise httpx.ReadTimeout("timed out")

        async with httpx.AsyncClient(transport=httpx.MockTransport(handler)) as http_client:
            client = DuprClient(settings, http_client=http_client)
            result = await client.submit_match(PAYLOAD, "tok")

        assert result.success is False
        assert result.error == "timed out"


class TestErrorExtraction:
    def test_message_fields(self):
        assert extract_error_message(httpx.Response(400, json={"message": "m"})) == "m"
        assert extract_error_message(httpx.Response(400, json={"error": "e"})) == "e"
        assert extract_error_message(httpx.Response(400, json={"errors": [{"message": "first"}]})) == "first"

    def test_plain_text_and_empty(self):
        assert extract_error_message(httpx.Response(502, text="Bad gateway ")) == "Bad gateway"
        assert extract_error_message(httpx.Response(500)) == "API error: 500"


class TestPlayerLookup:
    def test_parse_rating(self):
        assert parse_rating("NR") is None
        assert parse_rating("nr ") is None
        assert parse_rating("3.512") == 3.512
        assert parse_rating(4) == 4.0
        assert parse_rating(None) is None

    @pytest.mark.asyncio
    async def test_lookup_parses_ratings(self, settings, fake_dupr, http_client):
        fake_dupr.players["D1"] = {
            "fullName": "Ana Player",
            "ratings": {"doubles": "4.125", "singles": "NR", "doublesReliability": "80"},
        }
        client = DuprClient(settings, http_client=http_client)

        ratings = await client.lookup_player("D1", "tok")

        assert ratings.name == "Ana Player"
        assert ratings.doubles == 4.125
        assert ratings.singles is None
        assert ratings.doubles_reliability == 80.0
        assert ratings.has_rating is True

    @pytest.mark.asyncio
    async def test_lookup_unknown_player(self, settings, http_client):
        client = DuprClient(settings, http_client=http_client)
        assert await client.lookup_player("D404", "tok") is None

    @pytest.mark.asyncio
    async def test_subscribe(self, settings, fake_dupr, http_client):
        client = DuprClient(settings, http_client=http_client)
        assert await client.subscribe_rating_changes("D1", "tok") is True

        fake_dupr.subscribe_status = 500
        assert await client.subscribe_rating_changes("D1", "tok") is False
