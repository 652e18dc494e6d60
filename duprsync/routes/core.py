"""Core routes: health and metrics.

- /health: public, rate limited
- /metrics: Bearer token (METRICS_BEARER_TOKEN)
"""

from fastapi import APIRouter, Header, Request
from fastapi.responses import PlainTextResponse
from pydantic import BaseModel

from duprsync.config import get_settings
from duprsync.security import limiter
from duprsync.telemetry import get_metrics_text

router = APIRouter(tags=["core"])
settings = get_settings()


class HealthResponse(BaseModel):
    status: str
    dupr_env: str
    scheduler_enabled: bool


@router.get("/health", response_model=HealthResponse)
@limiter.limit("120/minute")
async def health_check(request: Request):
    """Health check endpoint."""
    return HealthResponse(
        status="ok",
        dupr_env=settings.DUPR_ENV,
        scheduler_enabled=settings.SCHEDULER_ENABLED,
    )


def _unauthorized(reason: str) -> PlainTextResponse:
    return PlainTextResponse(content=f"# Unauthorized: {reason}\n", status_code=401, media_type="text/plain")


@router.get("/metrics")
async def prometheus_metrics(
    authorization: str = Header(None, alias="Authorization"),
):
    """
    Prometheus metrics for the DUPR pipeline.

    Requires Bearer token authentication when METRICS_BEARER_TOKEN is set.
    """
    expected_token = settings.METRICS_BEARER_TOKEN
    if expected_token:
        if not authorization:
            return _unauthorized("Missing Authorization header")
        parts = authorization.split(" ", 1)
        if len(parts) != 2 or parts[0].lower() != "bearer":
            return _unauthorized("Invalid Authorization format")
        if parts[1] != expected_token:
            return _unauthorized("Invalid token")

    content, content_type = get_metrics_text()
    return PlainTextResponse(content=content, media_type=content_type)
