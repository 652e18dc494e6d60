"""
DUPR webhook ingestion.

Every delivery is acknowledged: the Authority retries on non-2xx responses,
and a retried delivery must never be able to mutate state twice. Dedupe is
by a content hash of the stable payload fields, stored as the event's
primary key.
"""

import hashlib
import json
import logging
from dataclasses import dataclass
from typing import Optional

from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession

from duprsync.dupr.client import PlayerRatings, parse_rating
from duprsync.dupr.ratings import SOURCE_WEBHOOK, apply_rating_snapshot
from duprsync.dupr.repository import WebhookEventRepository
from duprsync.models import WebhookEvent
from duprsync.telemetry.metrics import record_webhook_event

logger = logging.getLogger(__name__)

UNKNOWN_EVENT = "UNKNOWN"

# _store_event_best_effort results
STORED = "stored"
DUPLICATE = "duplicate"
STORE_FAILED = "store_failed"


@dataclass
class WebhookOutcome:
    result: str  # processed, duplicate, stored, ignored, error
    dedupe_key: Optional[str] = None
    event_type: str = UNKNOWN_EVENT
    stored: bool = False


def _part(value) -> str:
    return "" if value is None else str(value)


def _message(payload: dict) -> dict:
    message = payload.get("message")
    return message if isinstance(message, dict) else {}


def _rating(payload: dict) -> dict:
    rating = _message(payload).get("rating")
    return rating if isinstance(rating, dict) else {}


def compute_dedupe_key(payload: dict, raw_body: Optional[bytes] = None) -> str:
    """
    Deterministic 32-char key for a delivery.

    Hashes event|clientId|duprId|matchId|singles|doubles. When the payload
    carries neither a DUPR id nor a match id, the raw body is hashed instead
    (re-serializing the parsed JSON would not give a stable key order).
    """
    payload = payload if isinstance(payload, dict) else {}
    message = _message(payload)
    rating = _rating(payload)

    event = payload.get("event")
    if event is None:
        event = payload.get("topic")
    dupr_id = _part(message.get("duprId"))
    match_id = _part(rating.get("matchId"))

    if not dupr_id and not match_id and raw_body:
        data = raw_body
    else:
        data = "|".join([
            _part(event if event is not None else UNKNOWN_EVENT),
            _part(payload.get("clientId")),
            dupr_id,
            match_id,
            _part(rating.get("singles")),
            _part(rating.get("doubles")),
        ]).encode("utf-8")

    return hashlib.sha256(data).hexdigest()[:32]


def extract_event_type(payload: dict) -> str:
    """DUPR sends ``event``; ``topic`` and ``request.event`` are accepted as fallbacks."""
    if not isinstance(payload, dict):
        return UNKNOWN_EVENT
    request = payload.get("request") if isinstance(payload.get("request"), dict) else {}
    for value in (payload.get("event"), payload.get("topic"), request.get("event")):
        if value is not None:
            return str(value)
    return UNKNOWN_EVENT


def ratings_from_payload(payload: dict) -> Optional[PlayerRatings]:
    message = _message(payload)
    dupr_id = message.get("duprId")
    if not dupr_id:
        return None
    rating = _rating(payload)
    return PlayerRatings(
        dupr_id=str(dupr_id),
        name=message.get("name"),
        singles=parse_rating(rating.get("singles")),
        doubles=parse_rating(rating.get("doubles")),
        singles_reliability=parse_rating(rating.get("singlesReliability")),
        doubles_reliability=parse_rating(rating.get("doublesReliability")),
    )


class WebhookProcessor:
    """Handles one delivery within one DB session. ``handle`` never raises."""

    def __init__(self, session: AsyncSession):
        self.session = session
        self.events = WebhookEventRepository(session)

    async def handle(self, raw_body: bytes) -> WebhookOutcome:
        try:
            payload = json.loads(raw_body) if raw_body else {}
        except ValueError:
            logger.error("[DUPR_WEBHOOK] Failed to parse request body")
            record_webhook_event(UNKNOWN_EVENT, "ignored")
            return WebhookOutcome(result="ignored")
        if not isinstance(payload, dict):
            payload = {}

        dedupe_key = compute_dedupe_key(payload, raw_body)
        event_type = extract_event_type(payload)
        logger.info(f"[DUPR_WEBHOOK] Event received: type={event_type} key={dedupe_key}")

        store_result = await self._store_event_best_effort(dedupe_key, event_type, payload)
        if store_result == DUPLICATE:
            logger.info(f"[DUPR_WEBHOOK] Duplicate event {dedupe_key}, skipping processing")
            record_webhook_event(event_type, "duplicate")
            return WebhookOutcome(result="duplicate", dedupe_key=dedupe_key, event_type=event_type)

        outcome = WebhookOutcome(
            result="stored", dedupe_key=dedupe_key, event_type=event_type, stored=store_result == STORED
        )
        upper = event_type.upper()
        try:
            if upper.startswith("RATING"):
                await self._apply_rating_change(payload)
                outcome.result = "processed"
            elif upper.startswith("REGISTRATION"):
                logger.info("[DUPR_WEBHOOK] Registration validation received")
                outcome.result = "processed"
            else:
                logger.info(f"[DUPR_WEBHOOK] Unknown event type {event_type}, stored for review")
        except Exception as e:
            logger.error(f"[DUPR_WEBHOOK] Error processing event {dedupe_key}: {e}", exc_info=True)
            await self.session.rollback()
            outcome.result = "error"
            await self._mark_processed_best_effort(outcome, error=str(e) or type(e).__name__)
            record_webhook_event(event_type, outcome.result)
            return outcome

        if outcome.result == "processed":
            await self._mark_processed_best_effort(outcome)
        record_webhook_event(event_type, outcome.result)
        return outcome

    async def _store_event_best_effort(self, dedupe_key: str, event_type: str, payload: dict) -> str:
        """
        Record the raw delivery under its dedupe key.

        Returns DUPLICATE when the key is already stored. A storage failure is
        logged and reported as STORE_FAILED; processing continues regardless.
        """
        try:
            if await self.events.exists(dedupe_key):
                return DUPLICATE
            message = _message(payload)
            await self.events.insert(
                WebhookEvent(
                    dedupe_key=dedupe_key,
                    event_type=event_type[:64],
                    client_id=_part(payload.get("clientId")) or None,
                    dupr_id=_part(message.get("duprId")) or None,
                    raw=payload,
                )
            )
            return STORED
        except IntegrityError:
            # Concurrent delivery inserted the same key first
            await self.session.rollback()
            return DUPLICATE
        except Exception as e:
            logger.warning(f"[DUPR_WEBHOOK] Failed to store event {dedupe_key} (continuing anyway): {e}")
            await self.session.rollback()
            return STORE_FAILED

    async def _mark_processed_best_effort(self, outcome: WebhookOutcome, error: Optional[str] = None) -> None:
        if not outcome.stored:
            return
        try:
            await self.events.mark_processed(outcome.dedupe_key, error=error)
        except Exception as e:
            logger.warning(f"[DUPR_WEBHOOK] Failed to mark event {outcome.dedupe_key} processed: {e}")
            await self.session.rollback()

    async def _apply_rating_change(self, payload: dict) -> None:
        ratings = ratings_from_payload(payload)
        if ratings is None:
            logger.info("[DUPR_WEBHOOK] No duprId in rating change event")
            return
        profile_id = await apply_rating_snapshot(
            self.session, ratings, SOURCE_WEBHOOK, last_match_id=_rating(payload).get("matchId")
        )
        if profile_id:
            logger.info(f"[DUPR_WEBHOOK] Updated ratings for profile {profile_id}")
