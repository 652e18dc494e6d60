"""duprsync: DUPR match-result submission service."""

import logging
from contextlib import asynccontextmanager

from fastapi import FastAPI, Request
from fastapi.responses import JSONResponse
from slowapi import _rate_limit_exceeded_handler
from slowapi.errors import RateLimitExceeded

from duprsync.config import get_settings
from duprsync.database import close_db, init_db
from duprsync.dupr.errors import DuprError
from duprsync.routes.core import router as core_router
from duprsync.routes.dupr import router as dupr_router
from duprsync.routes.webhooks import router as webhooks_router
from duprsync.scheduler import start_scheduler, stop_scheduler
from duprsync.security import limiter
from duprsync.telemetry.sentry import init_sentry

# Configure logging
logging.basicConfig(
    level=logging.INFO,
    format="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
)
logger = logging.getLogger(__name__)

# Only activates if SENTRY_DSN is set in environment
init_sentry()

settings = get_settings()


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Application lifespan handler."""
    logger.info(f"Starting duprsync (DUPR env: {settings.DUPR_ENV})...")
    await init_db()
    start_scheduler()

    yield

    logger.info("Shutting down...")
    stop_scheduler()
    await close_db()


async def dupr_error_handler(request: Request, exc: DuprError) -> JSONResponse:
    """Pipeline errors carry their own HTTP status and category."""
    if exc.status_code >= 500:
        logger.error(f"[DUPR] {request.method} {request.url.path} failed: {exc.category}: {exc.message}")
    return JSONResponse(
        status_code=exc.status_code,
        content={"detail": exc.message, "category": exc.category},
    )


app = FastAPI(
    title="duprsync",
    description="Submits finalised match results to DUPR and ingests rating webhooks",
    version="1.0.0",
    lifespan=lifespan,
)

# Add rate limiting
app.state.limiter = limiter
app.add_exception_handler(RateLimitExceeded, _rate_limit_exceeded_handler)
app.add_exception_handler(DuprError, dupr_error_handler)

# Include routers
app.include_router(core_router)
app.include_router(dupr_router)
app.include_router(webhooks_router)
