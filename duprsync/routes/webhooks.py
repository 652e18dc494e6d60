"""Inbound DUPR webhooks.

Public endpoint. Every request is answered 200 "ok": DUPR retries non-2xx
deliveries, and retried deliveries are absorbed by dedupe instead. For the
same reason the POST route carries no rate limiter (a 429 is a non-2xx).
"""

import logging

from fastapi import APIRouter, Depends, Request
from fastapi.responses import PlainTextResponse
from sqlalchemy.ext.asyncio import AsyncSession

from duprsync.database import get_async_session
from duprsync.dupr.webhook import WebhookProcessor

router = APIRouter(tags=["webhooks"])

logger = logging.getLogger(__name__)


def _ok() -> PlainTextResponse:
    return PlainTextResponse(content="ok", status_code=200)


@router.api_route("/webhooks/dupr", methods=["GET", "HEAD", "OPTIONS"])
async def dupr_webhook_ping(request: Request):
    """Validation ping sent by DUPR when the webhook is registered."""
    logger.info(f"[DUPR_WEBHOOK] {request.method} ping received")
    return _ok()


@router.post("/webhooks/dupr")
async def dupr_webhook(
    request: Request,
    session: AsyncSession = Depends(get_async_session),
):
    """Store, dedupe and apply one DUPR event."""
    try:
        raw_body = await request.body()
        outcome = await WebhookProcessor(session).handle(raw_body)
        logger.info(f"[DUPR_WEBHOOK] Delivery {outcome.dedupe_key}: {outcome.result}")
    except Exception as e:
        logger.error(f"[DUPR_WEBHOOK] Unhandled error (still returning 200): {e}", exc_info=True)
    return _ok()
