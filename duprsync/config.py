"""Application configuration using Pydantic Settings."""

from functools import lru_cache
from typing import List

from pydantic_settings import BaseSettings


class Settings(BaseSettings):
    """Application settings loaded from environment variables."""

    # Database
    DATABASE_URL: str = "sqlite:///./duprsync.db"

    # API Security
    API_KEY: str = ""  # Optional API key for organizer/operator endpoints
    API_KEY_HEADER: str = "X-API-Key"
    USER_ID_HEADER: str = "X-User-Id"
    METRICS_BEARER_TOKEN: str = ""
    RATE_LIMIT_PER_MINUTE: str = "60/minute"

    # ═══════════════════════════════════════════════════════════════
    # DUPR integration
    # ═══════════════════════════════════════════════════════════════

    DUPR_ENV: str = "uat"  # "uat" | "prod"
    DUPR_CLIENT_KEY: str = ""
    DUPR_CLIENT_SECRET: str = ""
    # Organizer-level club id. Empty = PARTNER submissions (no clubId field)
    DUPR_CLUB_ID: str = ""
    DUPR_HTTP_TIMEOUT_SECONDS: float = 30.0

    # Queue / retry policy
    DUPR_MAX_RETRIES: int = 3
    DUPR_RETRY_DELAYS_SECONDS: List[int] = [60, 120, 180]
    DUPR_BATCH_SIZE: int = 50
    DUPR_QUEUE_INTERVAL_MINUTES: int = 5
    DUPR_QUEUE_PENDING_LIMIT: int = 10
    DUPR_QUEUE_RETRY_LIMIT: int = 5
    # A batch left in "processing" longer than this is re-picked by the sweep
    DUPR_PROCESSING_STALE_MINUTES: int = 15

    # Authority rate limiting (sequential calls)
    DUPR_INTER_CALL_DELAY_MS: int = 200
    DUPR_QUEUE_INTER_CALL_DELAY_MS: int = 500

    # Correction sweep
    DUPR_CORRECTION_LIMIT: int = 20
    DUPR_CORRECTION_INTERVAL_MINUTES: int = 60

    # Daily rating sync (local time in DUPR_RATING_SYNC_TIMEZONE)
    DUPR_RATING_SYNC_HOUR: int = 3
    DUPR_RATING_SYNC_TIMEZONE: str = "Pacific/Auckland"
    # Minimum gap between manual refreshes of one player's rating
    DUPR_REFRESH_COOLDOWN_SECONDS: int = 60
    DUPR_SUBSCRIBE_DELAY_MS: int = 100

    # Score heuristics (warning only, never blocks submission)
    DUPR_MIN_WINNING_SCORE_HINT: int = 6

    # Scheduler
    SCHEDULER_ENABLED: bool = True

    class Config:
        env_file = ".env"
        env_file_encoding = "utf-8"
        extra = "ignore"

    @property
    def dupr_environment(self) -> str:
        return "prod" if self.DUPR_ENV.lower() == "prod" else "uat"

    @property
    def dupr_base_url(self) -> str:
        return f"https://{self.dupr_environment}.mydupr.com/api"

    @property
    def dupr_token_url(self) -> str:
        return f"{self.dupr_base_url}/auth/v1.0/token"

    @property
    def dupr_match_url(self) -> str:
        return f"{self.dupr_base_url}/match/v1.0/create"

    @property
    def dupr_player_url(self) -> str:
        return f"{self.dupr_base_url}/v1.0/player"

    @property
    def dupr_subscribe_url(self) -> str:
        return f"{self.dupr_base_url}/v1.0/subscribe/rating-changes"

    def retry_delay_seconds(self, retry_count: int) -> int:
        """Delay before the next retry, clamped to the last entry of the table."""
        delays = self.DUPR_RETRY_DELAYS_SECONDS or [60]
        index = max(0, min(retry_count, len(delays) - 1))
        return delays[index]


@lru_cache
def get_settings() -> Settings:
    """Get cached settings instance."""
    return Settings()
