"""
Google OAuth token refresh for connected mailboxes.
Only the refresh grant is needed by the sync workers; the consent flow
lives with the account-connection API.
"""

import asyncio
from datetime import UTC, datetime, timedelta

import httpx

from mailsync.config import settings
from mailsync.infrastructure.observability.logging import get_logger

logger = get_logger(__name__)

GOOGLE_TOKEN_URL = "https://oauth2.googleapis.com/token"

REQUEST_TIMEOUT = 10  # seconds
MAX_RETRIES = 3
BACKOFF_FACTOR = 2  # 2, 4 seconds between attempts
RETRY_STATUS_CODES = {429, 500, 502, 503, 504}
DEFAULT_EXPIRES_IN = 3600  # Google access tokens last one hour

REFRESH_ERROR_MESSAGES = {
    "invalid_grant": "Refresh token revoked or expired. Please reconnect the mailbox.",
    "invalid_client": "Google OAuth client misconfigured.",
    "unauthorized_client": "Google OAuth client not authorized for this grant.",
}


class GoogleOAuthError(Exception):
    """Token endpoint failure; error_code is Google's `error` field when present."""

    def __init__(
        self, message: str, error_code: str | None = None, response_data: dict | None = None
    ):
        super().__init__(message)
        self.error_code = error_code
        self.response_data = response_data or {}


class TokenResponse:
    """Parsed token endpoint response with an absolute expiry."""

    def __init__(self, data: dict):
        self.access_token = data.get("access_token")
        self.refresh_token = data.get("refresh_token")
        self.token_type = data.get("token_type", "Bearer")
        self.expires_in = int(data.get("expires_in") or DEFAULT_EXPIRES_IN)
        self.scope = data.get("scope", "")
        self.expires_at = datetime.now(UTC) + timedelta(seconds=self.expires_in)

    def is_valid(self) -> bool:
        return bool(self.access_token and self.token_type)


class GoogleOAuthService:
    def __init__(self, client_id: str | None = None, client_secret: str | None = None):
        self.client_id = client_id or settings.GOOGLE_CLIENT_ID
        self.client_secret = client_secret or settings.GOOGLE_CLIENT_SECRET

    async def refresh_access_token(self, refresh_token: str) -> TokenResponse:
        """
        Exchange a refresh token for a new access token.

        Google usually omits refresh_token on this grant; the one passed in
        is carried over in that case.

        Raises:
            GoogleOAuthError: Misconfiguration, network failure or rejected grant
        """
        if not self.client_id or not self.client_secret:
            raise GoogleOAuthError("Google OAuth client credentials not configured")

        form = {
            "client_id": self.client_id,
            "client_secret": self.client_secret,
            "refresh_token": refresh_token,
            "grant_type": "refresh_token",
        }

        try:
            response = await self._post_form(form)
        except httpx.RequestError as e:
            logger.error("Network error during token refresh", error=str(e))
            raise GoogleOAuthError(f"Network error during token refresh: {e}") from e

        token_response = self._parse_token_response(response)
        token_response.refresh_token = token_response.refresh_token or refresh_token
        return token_response

    async def _post_form(self, form: dict) -> httpx.Response:
        """POST to the token endpoint, retrying transient statuses and network errors."""
        headers = {"Content-Type": "application/x-www-form-urlencoded"}

        async with httpx.AsyncClient(timeout=REQUEST_TIMEOUT) as client:
            attempt = 1
            while True:
                try:
                    response = await client.post(GOOGLE_TOKEN_URL, data=form, headers=headers)
                except httpx.RequestError as e:
                    if attempt >= MAX_RETRIES:
                        raise
                    reason = {"error": str(e)}
                else:
                    if response.status_code not in RETRY_STATUS_CODES or attempt >= MAX_RETRIES:
                        return response
                    reason = {"status_code": response.status_code}

                wait_time = BACKOFF_FACTOR**attempt
                logger.warning(
                    "Google token refresh retrying", attempt=attempt, wait_time=wait_time, **reason
                )
                await asyncio.sleep(wait_time)
                attempt += 1

    def _parse_token_response(self, response: httpx.Response) -> TokenResponse:
        if not response.is_success:
            try:
                error_data = response.json()
            except ValueError:
                logger.error("Google token refresh failed", status_code=response.status_code)
                raise GoogleOAuthError(
                    f"Google OAuth service error (HTTP {response.status_code})"
                ) from None

            error_code = error_data.get("error", "unknown_error")
            logger.error(
                "Google token refresh rejected",
                status_code=response.status_code,
                error_code=error_code,
                error_description=error_data.get("error_description"),
            )
            raise GoogleOAuthError(
                REFRESH_ERROR_MESSAGES.get(error_code, f"Google OAuth error: {error_code}"),
                error_code=error_code,
                response_data=error_data,
            )

        try:
            token_response = TokenResponse(response.json())
        except ValueError as e:
            raise GoogleOAuthError(f"Failed to parse Google response: {e}") from e

        if not token_response.is_valid():
            raise GoogleOAuthError("Invalid token response from Google")

        logger.info("Google token refresh successful", expires_in=token_response.expires_in)
        return token_response
