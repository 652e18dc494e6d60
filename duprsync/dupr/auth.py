"""DUPR client-credentials token exchange."""

import base64
import logging
import time
from typing import Optional

import httpx

from duprsync.config import Settings
from duprsync.dupr.errors import TokenUnavailableError
from duprsync.telemetry.metrics import record_dupr_request, record_token_request

logger = logging.getLogger(__name__)


def build_authorization_header(client_key: str, client_secret: str) -> str:
    """base64("key:secret") as expected by the x-authorization header."""
    return base64.b64encode(f"{client_key}:{client_secret}".encode("utf-8")).decode("ascii")


def extract_token(data) -> Optional[str]:
    """Token may arrive as token, accessToken or result.token."""
    if not isinstance(data, dict):
        return None
    result = data.get("result")
    nested = result.get("token") if isinstance(result, dict) else None
    return data.get("token") or data.get("accessToken") or nested or None


class DuprTokenProvider:
    """
    Exchanges the configured client credentials for a bearer token.

    One provider lives for one unit of work (request, scheduler tick), so the
    cached token never outlives the invocation that fetched it. A missing token
    is reported as ``None`` by ``get_token`` and as ``TokenUnavailableError`` by
    ``require_token``; both mean the integration is unreachable rather than a
    specific match being rejected.
    """

    def __init__(self, settings: Settings, http_client: Optional[httpx.AsyncClient] = None):
        self.settings = settings
        self._http_client = http_client
        self._token: Optional[str] = None

    async def _post(self, headers: dict) -> httpx.Response:
        if self._http_client is not None:
            return await self._http_client.post(self.settings.dupr_token_url, headers=headers)
        async with httpx.AsyncClient(timeout=self.settings.DUPR_HTTP_TIMEOUT_SECONDS) as client:
            return await client.post(self.settings.dupr_token_url, headers=headers)

    async def get_token(self) -> Optional[str]:
        if self._token:
            return self._token

        if not self.settings.DUPR_CLIENT_KEY or not self.settings.DUPR_CLIENT_SECRET:
            logger.error("[DUPR] Missing DUPR client credentials")
            record_token_request("missing_credentials")
            return None

        headers = {
            "Content-Type": "application/json",
            "x-authorization": build_authorization_header(
                self.settings.DUPR_CLIENT_KEY, self.settings.DUPR_CLIENT_SECRET
            ),
        }

        start_time = time.time()
        try:
            response = await self._post(headers)
        except httpx.HTTPError as e:
            record_dupr_request("token", 0, (time.time() - start_time) * 1000)
            record_token_request("error")
            logger.error(f"[DUPR] Token request failed: {e}")
            return None
        record_dupr_request("token", response.status_code, (time.time() - start_time) * 1000)

        if not response.is_success:
            record_token_request("error")
            logger.error(f"[DUPR] Token request rejected: {response.status_code}")
            return None

        try:
            data = response.json()
        except ValueError:
            data = None

        token = extract_token(data)
        if not token:
            record_token_request("no_token")
            logger.error("[DUPR] No token in DUPR auth response")
            return None

        record_token_request("ok")
        self._token = token
        return token

    async def require_token(self) -> str:
        token = await self.get_token()
        if not token:
            raise TokenUnavailableError()
        return token
