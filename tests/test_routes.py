"""HTTP tests for the FastAPI app (httpx ASGITransport, dependencies overridden)."""

import json
from unittest.mock import patch

import httpx
import pytest
import pytest_asyncio

from duprsync import security
from duprsync.database import get_async_session
from duprsync.dupr.auth import DuprTokenProvider
from duprsync.dupr.client import DuprClient
from duprsync.dupr.repository import RatingSnapshotRepository
from duprsync.main import app
from duprsync.routes.dupr import get_app_settings, get_dupr_client, get_token_provider
from tests.conftest import make_settings

ORGANIZER = {"X-User-Id": "org-1"}
EVENT = {"eventType": "tournament", "eventId": "evt-1"}
OPEN_MATCH = {"official_result": None, "score_locked": False, "status": "in_progress", "score_state": None}


@pytest_asyncio.fixture
async def api(session, http_client):
    settings = make_settings()

    async def override_session():
        yield session

    async def override_client():
        yield DuprClient(settings, http_client=http_client)

    app.dependency_overrides[get_async_session] = override_session
    app.dependency_overrides[get_app_settings] = lambda: settings
    app.dependency_overrides[get_dupr_client] = override_client
    app.dependency_overrides[get_token_provider] = lambda: DuprTokenProvider(settings, http_client=http_client)

    transport = httpx.ASGITransport(app=app)
    async with httpx.AsyncClient(transport=transport, base_url="http://testserver") as client:
        yield client

    app.dependency_overrides.clear()


class TestCoreRoutes:
    @pytest.mark.asyncio
    async def test_health(self, api):
        response = await api.get("/health")
        assert response.status_code == 200
        assert response.json()["status"] == "ok"

    @pytest.mark.asyncio
    async def test_metrics_open_without_token(self, api):
        response = await api.get("/metrics")
        assert response.status_code == 200
        assert "dupr_" in response.text

    @pytest.mark.asyncio
    async def test_metrics_bearer_token(self, api):
        from duprsync.routes import core

        with patch.object(core.settings, "METRICS_BEARER_TOKEN", "s3cret"):
            assert (await api.get("/metrics")).status_code == 401
            assert (await api.get("/metrics", headers={"Authorization": "Basic s3cret"})).status_code == 401
            ok = await api.get("/metrics", headers={"Authorization": "Bearer s3cret"})
            assert ok.status_code == 200


class TestWebhookRoutes:
    """Every delivery is acknowledged with 200 ok."""

    @pytest.mark.asyncio
    @pytest.mark.parametrize("method", ["GET", "HEAD", "OPTIONS"])
    async def test_validation_pings(self, api, method):
        response = await api.request(method, "/webhooks/dupr")
        assert response.status_code == 200
        if method != "HEAD":
            assert response.text == "ok"

    @pytest.mark.asyncio
    async def test_garbage_body(self, api):
        response = await api.post("/webhooks/dupr", content=b"<<not json>>")
        assert response.status_code == 200
        assert response.text == "ok"

    @pytest.mark.asyncio
    async def test_rating_delivery(self, api, session):
        payload = {
            "clientId": "c",
            "event": "RATING",
            "message": {"duprId": "D7", "rating": {"doubles": "3.75"}},
        }
        for _ in range(2):
            response = await api.post("/webhooks/dupr", content=json.dumps(payload))
            assert response.status_code == 200

        snapshot = await RatingSnapshotRepository(session).get("D7")
        assert snapshot.doubles_rating == 3.75

    @pytest.mark.asyncio
    async def test_delivery_burst_is_never_throttled(self, api):
        assert "duprsync.routes.webhooks.dupr_webhook" not in security.limiter._route_limits

        codes = []
        for index in range(25):
            payload = {"clientId": "c", "event": "RATING", "message": {"duprId": f"D{index}"}}
            response = await api.post("/webhooks/dupr", content=json.dumps(payload))
            codes.append(response.status_code)

        assert codes == [200] * 25

    @pytest.mark.asyncio
    async def test_processor_crash_still_acknowledged(self, api):
        with patch("duprsync.routes.webhooks.WebhookProcessor.handle", side_effect=RuntimeError("boom")):
            response = await api.post("/webhooks/dupr", content=b"{}")
        assert response.status_code == 200


class TestDuprRoutes:
    """Organizer endpoints and error mapping."""

    @pytest.mark.asyncio
    async def test_submit(self, api, factory, fake_dupr):
        await factory.event()
        await factory.linked_players()
        await factory.match()

        response = await api.post(
            "/dupr/submissions", json={"eventType": "tournament", "eventId": "evt-1"}, headers=ORGANIZER
        )

        assert response.status_code == 200
        body = response.json()
        assert body["successCount"] == 1
        assert body["failureCount"] == 0
        assert body["batchId"]

        batch = await api.get(f"/dupr/batches/{body['batchId']}")
        assert batch.status_code == 200
        assert batch.json()["batch"]["status"] == "completed"

    @pytest.mark.asyncio
    async def test_error_mapping(self, api, factory):
        await factory.event()

        missing = await api.post(
            "/dupr/submissions", json={"eventType": "tournament", "eventId": "nope"}, headers=ORGANIZER
        )
        assert missing.status_code == 404
        assert missing.json() == {"detail": "Event not found", "category": "not_found"}

        forbidden = await api.post(
            "/dupr/submissions", json={"eventType": "tournament", "eventId": "evt-1"}, headers={"X-User-Id": "p9"}
        )
        assert forbidden.status_code == 403
        assert forbidden.json()["category"] == "permission_denied"

        bad_type = await api.post(
            "/dupr/submissions", json={"eventType": "ladder", "eventId": "evt-1"}, headers=ORGANIZER
        )
        assert bad_type.status_code == 400

        unknown_batch = await api.get("/dupr/batches/nope")
        assert unknown_batch.status_code == 404

    @pytest.mark.asyncio
    async def test_token_unavailable_is_503(self, api, factory, fake_dupr):
        await factory.event()
        await factory.linked_players()
        await factory.match()
        fake_dupr.token_status = 401

        response = await api.post(
            "/dupr/submissions", json={"eventType": "tournament", "eventId": "evt-1"}, headers=ORGANIZER
        )

        assert response.status_code == 503
        assert response.json()["category"] == "token_unavailable"

    @pytest.mark.asyncio
    async def test_retry_failed(self, api, factory):
        await factory.event()

        response = await api.post(
            "/dupr/submissions/retry-failed", json={"eventType": "tournament", "eventId": "evt-1"}, headers=ORGANIZER
        )

        assert response.status_code == 200
        assert response.json()["retriedCount"] == 0

    @pytest.mark.asyncio
    async def test_diagnostic(self, api, factory):
        await factory.event()
        await factory.linked_players()
        await factory.match()

        response = await api.post(
            "/dupr/diagnostics/test-submit",
            json={"eventType": "tournament", "eventId": "evt-1", "matchId": "m-1"},
            headers=ORGANIZER,
        )

        body = response.json()
        assert body["ok"] is True
        assert body["stage"] == "submit"
        assert "error" not in body

    @pytest.mark.asyncio
    async def test_panel(self, api, factory):
        await factory.event()
        await factory.match(id="m-1")
        await factory.match(id="m-2", dupr_submission_error="Invalid player")

        response = await api.get("/dupr/events/tournament/evt-1/panel", params={"category": "failed"})

        assert response.status_code == 200
        body = response.json()
        assert body["stats"]["total"] == 2
        assert [row["match_id"] for row in body["rows"]] == ["m-2"]

    @pytest.mark.asyncio
    async def test_eligibility_locked(self, api, factory):
        await factory.event()
        await factory.match(dupr_submitted=True)

        response = await api.post(
            "/dupr/matches/m-1/eligibility",
            json={"eventType": "tournament", "eventId": "evt-1", "eligible": False},
            headers=ORGANIZER,
        )

        assert response.status_code == 412
        assert response.json()["detail"] == "Already submitted to DUPR"

    @pytest.mark.asyncio
    async def test_correction(self, api, factory):
        await factory.event()
        await factory.match(dupr_submitted=True)

        response = await api.post(
            "/dupr/matches/m-1/correction",
            json={
                "eventType": "tournament",
                "eventId": "evt-1",
                "scores": [{"scoreA": 11, "scoreB": 5}],
                "winnerId": "team-a",
                "reason": "Typo",
            },
            headers=ORGANIZER,
        )

        assert response.status_code == 200
        assert response.json()["needsCorrection"] is True

    @pytest.mark.asyncio
    async def test_correction_with_partial_rules_sizes_best_of(self, api, factory):
        await factory.event()
        await factory.match(id="m-9")

        body = {
            "eventType": "tournament",
            "eventId": "evt-1",
            "scores": [
                {"scoreA": 11, "scoreB": 5},
                {"scoreA": 7, "scoreB": 11},
                {"scoreA": 11, "scoreB": 9},
            ],
            "winnerId": "team-a",
            "pointsToWin": 11,
        }
        response = await api.post("/dupr/matches/m-9/correction", json=body, headers=ORGANIZER)

        assert response.status_code == 200
        assert response.json()["version"] == 2

        zero = await api.post(
            "/dupr/matches/m-9/correction", json={**body, "pointsToWin": 0}, headers=ORGANIZER
        )
        assert zero.status_code == 422

    @pytest.mark.asyncio
    async def test_refresh_requires_link(self, api, factory):
        await factory.profile("p1")
        response = await api.post("/dupr/players/p1/refresh")
        assert response.status_code == 412

    @pytest.mark.asyncio
    async def test_subscribe(self, api, factory):
        await factory.profile("p1", dupr_id="D1")
        response = await api.post("/dupr/players/p1/subscribe")
        assert response.status_code == 200
        assert response.json()["subscribedCount"] == 1


class TestScoringRoutes:
    """Proposal, sign-off and finalisation over HTTP."""

    @pytest.mark.asyncio
    async def test_propose_then_sign(self, api, factory):
        await factory.event()
        await factory.match(**OPEN_MATCH)
        body = {**EVENT, "scores": [{"scoreA": 11, "scoreB": 6}], "winnerId": "team-a"}

        proposed = await api.post("/dupr/matches/m-1/proposal", json=body, headers={"X-User-Id": "p1"})
        same_side = await api.post("/dupr/matches/m-1/proposal/sign", json=EVENT, headers={"X-User-Id": "p2"})
        signed = await api.post("/dupr/matches/m-1/proposal/sign", json=EVENT, headers={"X-User-Id": "p3"})
        dispute = await api.post(
            "/dupr/matches/m-1/proposal/dispute", json={**EVENT, "reason": "late"}, headers={"X-User-Id": "p4"}
        )

        assert proposed.status_code == 200
        assert proposed.json()["status"] == "proposed"
        assert same_side.status_code == 403
        assert signed.json() == {"success": True, "status": "signed"}
        assert dispute.status_code == 409

    @pytest.mark.asyncio
    async def test_sign_without_proposal(self, api, factory):
        await factory.event()
        await factory.match(**OPEN_MATCH)

        response = await api.post("/dupr/matches/m-1/proposal/sign", json=EVENT, headers={"X-User-Id": "p3"})

        assert response.status_code == 409

    @pytest.mark.asyncio
    async def test_finalise(self, api, factory):
        await factory.event()
        await factory.match(**OPEN_MATCH)
        body = {**EVENT, "scores": [{"scoreA": 11, "scoreB": 4}], "winnerId": "team-a"}

        player = await api.post("/dupr/matches/m-1/finalise", json=body, headers={"X-User-Id": "p1"})
        organizer = await api.post("/dupr/matches/m-1/finalise", json=body, headers=ORGANIZER)
        again = await api.post("/dupr/matches/m-1/finalise", json=body, headers=ORGANIZER)

        assert player.status_code == 403
        assert organizer.status_code == 200
        assert organizer.json()["version"] == 1
        assert again.status_code == 412


class TestAccountRoutes:
    @pytest.mark.asyncio
    async def test_link_subscribes(self, api, factory, fake_dupr):
        await factory.profile("p1")

        response = await api.post("/dupr/players/p1/link", json={"duprId": "D7"})

        assert response.status_code == 200
        assert response.json() == {"success": True, "changed": True, "subscribed": True}
        assert fake_dupr.subscribed == ["D7"]

    @pytest.mark.asyncio
    async def test_dupr_plus_requires_login(self, api, factory):
        await factory.profile("p1")

        anonymous = await api.post("/dupr/me/dupr-plus", json={"subscriptions": []})
        mine = await api.post(
            "/dupr/me/dupr-plus", json={"subscriptions": [{"status": "active"}]}, headers={"X-User-Id": "p1"}
        )

        assert anonymous.status_code == 403
        assert mine.json() == {"success": True, "duprPlusActive": True}


class TestOperatorRoutes:
    """Connection check and subscription management are admin-only."""

    ADMIN = {"X-User-Id": "admin"}

    @pytest.mark.asyncio
    async def test_connection(self, api, factory):
        await factory.profile("admin", roles=["app_admin"])
        await factory.profile("p1")

        denied = await api.get("/dupr/connection", headers={"X-User-Id": "p1"})
        ok = await api.get("/dupr/connection", headers=self.ADMIN)

        assert denied.status_code == 403
        assert ok.status_code == 200
        assert ok.json() == {"success": True, "environment": "uat"}

    @pytest.mark.asyncio
    async def test_subscribe_all(self, api, factory, fake_dupr):
        await factory.profile("admin", roles=["app_admin"])
        await factory.linked_players(2)

        response = await api.post("/dupr/subscriptions/all", headers=self.ADMIN)

        assert response.status_code == 200
        assert response.json()["subscribedCount"] == 2
        assert sorted(fake_dupr.subscribed) == ["D1", "D2"]

    @pytest.mark.asyncio
    async def test_list_subscriptions(self, api, factory, fake_dupr):
        await factory.profile("admin", roles=["app_admin"])
        fake_dupr.subscribed = ["D1"]

        response = await api.get("/dupr/subscriptions", headers=self.ADMIN)

        assert response.status_code == 200
        assert response.json()["result"] == ["D1"]



class TestApiKey:
    @pytest.mark.asyncio
    async def test_api_key_enforced_when_configured(self, api, factory):
        await factory.event()

        with patch.object(security.settings, "API_KEY", "operator-key"):
            missing = await api.get("/dupr/events/tournament/evt-1/panel")
            wrong = await api.get("/dupr/events/tournament/evt-1/panel", headers={"X-API-Key": "nope"})
            right = await api.get("/dupr/events/tournament/evt-1/panel", headers={"X-API-Key": "operator-key"})

        assert missing.status_code == 401
        assert wrong.status_code == 403
        assert right.status_code == 200
