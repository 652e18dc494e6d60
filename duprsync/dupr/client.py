"""DUPR API client: match submission, player lookup and rating subscriptions."""

import logging
import time
from dataclasses import dataclass, field
from typing import List, Optional

import httpx

from duprsync.config import Settings
from duprsync.telemetry.metrics import record_dupr_request

logger = logging.getLogger(__name__)

ALREADY_SUBMITTED_ID = "already-submitted"
ALREADY_SUBMITTED_WARNING = "Match was already in DUPR database"
DUPLICATE_MARKERS = (
    "already exists",
    "object identifiers must be universally unique",
)


@dataclass
class SubmissionResult:
    """Outcome of a single match-create call. Never raised, always returned."""

    success: bool
    dupr_match_id: Optional[str] = None
    error: Optional[str] = None
    warnings: List[str] = field(default_factory=list)
    status_code: int = 0
    status_text: str = ""
    body: str = ""

    @property
    def is_duplicate(self) -> bool:
        return self.success and self.dupr_match_id == ALREADY_SUBMITTED_ID

    def response_summary(self) -> dict:
        return {"status": self.status_code, "status_text": self.status_text, "body": self.body}


@dataclass
class PlayerRatings:
    dupr_id: str
    name: Optional[str] = None
    singles: Optional[float] = None
    doubles: Optional[float] = None
    singles_reliability: Optional[float] = None
    doubles_reliability: Optional[float] = None

    @property
    def has_rating(self) -> bool:
        return self.singles is not None or self.doubles is not None


def parse_rating(value) -> Optional[float]:
    """DUPR reports unrated players as "NR"."""
    if value is None or value == "" or (isinstance(value, str) and value.strip().upper() == "NR"):
        return None
    try:
        return float(value)
    except (TypeError, ValueError):
        return None


def extract_error_message(response: httpx.Response) -> str:
    """Human-readable error from a non-success DUPR response."""
    text = response.text or ""
    try:
        data = response.json()
    except ValueError:
        data = None

    if isinstance(data, dict):
        errors = data.get("errors")
        first_error = errors[0].get("message") if isinstance(errors, list) and errors and isinstance(errors[0], dict) else None
        message = data.get("message") or data.get("error") or first_error
        if message:
            return str(message)
    if text.strip():
        return text.strip()
    return f"API error: {response.status_code}"


def is_duplicate_message(message: str) -> bool:
    lowered = (message or "").lower()
    return any(marker in lowered for marker in DUPLICATE_MARKERS)


class DuprClient:
    """
    Thin async wrapper over the DUPR REST API.

    Accepts an optional shared httpx.AsyncClient (tests inject one backed by
    httpx.MockTransport); otherwise it owns a client and must be closed.
    """

    def __init__(self, settings: Settings, http_client: Optional[httpx.AsyncClient] = None):
        self.settings = settings
        self._owns_client = http_client is None
        self.client = http_client or httpx.AsyncClient(timeout=settings.DUPR_HTTP_TIMEOUT_SECONDS)

    async def close(self) -> None:
        """Close the HTTP client."""
        if self._owns_client:
            await self.client.aclose()

    async def __aenter__(self) -> "DuprClient":
        return self

    async def __aexit__(self, *exc_info) -> None:
        await self.close()

    async def _request(self, method: str, endpoint: str, url: str, token: str, json=None) -> httpx.Response:
        headers = {"Authorization": f"Bearer {token}"}
        if json is not None:
            headers["Content-Type"] = "application/json"
        start_time = time.time()
        try:
            response = await self.client.request(method, url, json=json, headers=headers)
        except httpx.HTTPError:
            record_dupr_request(endpoint, 0, (time.time() - start_time) * 1000)
            raise
        record_dupr_request(endpoint, response.status_code, (time.time() - start_time) * 1000)
        return response

    async def _post(self, endpoint: str, url: str, json, token: str) -> httpx.Response:
        return await self._request("POST", endpoint, url, token, json=json)

    async def submit_match(self, payload: dict, token: str) -> SubmissionResult:
        """
        Submit one match payload.

        A duplicate-identifier rejection counts as success: the record already
        exists at DUPR, typically from an earlier attempt whose local write was lost.
        """
        identifier = payload.get("identifier")
        try:
            response = await self._post("match_create", self.settings.dupr_match_url, payload, token)
        except Exception as e:
            logger.error(f"[DUPR] Submission error for {identifier}: {e}")
            return SubmissionResult(success=False, error=str(e) or type(e).__name__)

        base = {
            "status_code": response.status_code,
            "status_text": response.reason_phrase,
            "body": response.text,
        }

        if not response.is_success:
            message = extract_error_message(response)
            if is_duplicate_message(message):
                logger.warning(f"[DUPR] Match {identifier} already exists in DUPR - treating as success")
                return SubmissionResult(
                    success=True,
                    dupr_match_id=ALREADY_SUBMITTED_ID,
                    warnings=[ALREADY_SUBMITTED_WARNING],
                    **base,
                )
            logger.error(f"[DUPR] Submission failed for {identifier}: {response.status_code} {message}")
            return SubmissionResult(success=False, error=message, **base)

        try:
            data = response.json()
        except ValueError:
            data = {}
        data = data if isinstance(data, dict) else {}
        result = data.get("result") if isinstance(data.get("result"), dict) else {}
        match_id = data.get("matchId") or data.get("id") or result.get("matchId") or result.get("id")

        logger.info(f"[DUPR] Match {identifier} submitted successfully")
        return SubmissionResult(
            success=True,
            dupr_match_id=str(match_id) if match_id is not None else None,
            **base,
        )

    async def lookup_player(self, dupr_id: str, token: str) -> Optional[PlayerRatings]:
        """Fetch current ratings for one DUPR id. Returns None when not found."""
        response = await self._post(
            "player", self.settings.dupr_player_url, {"duprIds": [dupr_id], "sortBy": ""}, token
        )
        response.raise_for_status()

        data = response.json()
        if not isinstance(data, dict) or data.get("status") != "SUCCESS":
            return None
        results = data.get("results") or []
        if not results:
            return None

        player = results[0] or {}
        ratings = player.get("ratings") or {}
        return PlayerRatings(
            dupr_id=dupr_id,
            name=player.get("fullName") or player.get("name"),
            singles=parse_rating(ratings.get("singles")),
            doubles=parse_rating(ratings.get("doubles")),
            singles_reliability=parse_rating(ratings.get("singlesReliability")),
            doubles_reliability=parse_rating(ratings.get("doublesReliability")),
        )

    async def subscribe_rating_changes(self, dupr_id: str, token: str) -> bool:
        """Register rating-change webhooks for a player. Ack status FAILURE means rejected."""
        try:
            response = await self._post("subscribe", self.settings.dupr_subscribe_url, [dupr_id], token)
        except httpx.HTTPError as e:
            logger.error(f"[DUPR] Subscription request failed: {e}")
            return False

        if not response.is_success:
            logger.error(f"[DUPR] Subscription rejected: {response.status_code}")
            return False
        try:
            data = response.json()
        except ValueError:
            data = {}
        status = data.get("status") if isinstance(data, dict) else None
        return status != "FAILURE"

    async def list_rating_subscriptions(self, token: str):
        """Current rating-change subscriptions, as returned by DUPR. Raises on a non-2xx answer."""
        response = await self._request("GET", "subscriptions", self.settings.dupr_subscribe_url, token)
        response.raise_for_status()
        return response.json()
