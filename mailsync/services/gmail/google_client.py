"""
Google Gmail API client used by the sync engine.
Covers the read-side endpoints needed to mirror a mailbox: profile,
history (change feed), message listing, message/attachment fetch and
push-notification watches.
"""

import asyncio

import httpx

from mailsync.features.mail_sync.domain.errors import ProviderError
from mailsync.infrastructure.observability.logging import get_logger
from mailsync.models.domain.gmail_domain import (
    GmailHistoryPage,
    GmailMessage,
    GmailMessageRef,
    GmailProfile,
)

logger = get_logger(__name__)

# Google Gmail API configuration
GMAIL_API_BASE_URL = "https://gmail.googleapis.com/gmail/v1"
GMAIL_USER_ID = "me"

# Request timeouts and retry configuration
REQUEST_TIMEOUT = 30  # seconds
MAX_RETRIES = 3
BACKOFF_FACTOR = 2
RETRY_STATUS_CODES = {429, 500, 502, 503, 504}
MAX_LIST_PAGE_SIZE = 500  # Gmail API limit

HISTORY_TYPES = ["messageAdded", "messageDeleted", "labelAdded", "labelRemoved"]

GMAIL_ERROR_SUMMARIES = {
    "400": "Invalid Gmail request",
    "401": "Gmail authorization expired",
    "403": "Gmail access denied",
    "404": "Gmail resource not found",
    "429": "Gmail rate limit exceeded",
    "500": "Gmail service temporarily unavailable",
}


class GoogleGmailError(ProviderError):
    """Gmail API failure carrying the HTTP status and Google error code."""

    def __init__(
        self,
        message: str,
        error_code: str | None = None,
        status_code: int | None = None,
        response_data: dict | None = None,
    ):
        super().__init__(message, status_code=status_code, error_code=error_code)
        self.response_data = response_data or {}


class GoogleGmailService:
    """
    Async client for the Gmail REST API.

    Retries 429/5xx responses and network errors with exponential backoff;
    every other failure is raised as GoogleGmailError.
    """

    def __init__(self, client: httpx.AsyncClient | None = None):
        self._client = client or self._create_client()

    def _create_client(self) -> httpx.AsyncClient:
        timeout = httpx.Timeout(REQUEST_TIMEOUT)
        limits = httpx.Limits(max_keepalive_connections=20, max_connections=50)
        return httpx.AsyncClient(timeout=timeout, limits=limits)

    async def close(self) -> None:
        """Close the underlying HTTP client."""
        await self._client.aclose()

    async def _request_with_retry(self, method: str, url: str, **kwargs) -> httpx.Response:
        """Execute an HTTP request with retry and backoff."""
        for attempt in range(1, MAX_RETRIES + 1):
            try:
                response = await self._client.request(method, url, **kwargs)
                if response.status_code in RETRY_STATUS_CODES and attempt < MAX_RETRIES:
                    backoff = BACKOFF_FACTOR * (2 ** (attempt - 1))
                    logger.debug(
                        "Gmail API retrying request",
                        attempt=attempt,
                        status_code=response.status_code,
                        backoff_seconds=backoff,
                    )
                    await asyncio.sleep(backoff)
                    continue
                return response
            except httpx.RequestError as e:
                if attempt >= MAX_RETRIES:
                    raise GoogleGmailError(f"Gmail API network error: {e}") from e
                backoff = BACKOFF_FACTOR * (2 ** (attempt - 1))
                logger.debug(
                    "Gmail API request error, retrying",
                    attempt=attempt,
                    error=str(e),
                    backoff_seconds=backoff,
                )
                await asyncio.sleep(backoff)
        raise RuntimeError("Gmail API retry loop exhausted")

    def _get_auth_headers(self, access_token: str) -> dict:
        return {
            "Authorization": f"Bearer {access_token}",
            "Accept": "application/json",
        }

    def _handle_api_response(self, response: httpx.Response, operation: str) -> dict:
        """Return the JSON body, or raise GoogleGmailError carrying the HTTP status."""
        try:
            data = response.json() if response.text else {}
        except ValueError as e:
            logger.error(
                f"Gmail API {operation} returned non-JSON body",
                status_code=response.status_code,
                response_text=response.text[:200],
            )
            if response.is_success:
                raise GoogleGmailError(f"Invalid response format: {e}") from e
            raise GoogleGmailError(
                f"Gmail API error (HTTP {response.status_code})", status_code=response.status_code
            ) from None

        if response.is_success:
            return data

        error_info = data.get("error", {})
        error_code = str(error_info.get("code", response.status_code))
        error_message = error_info.get("message", "Unknown Gmail API error")
        logger.error(
            f"Gmail API {operation} failed",
            status_code=response.status_code,
            error_code=error_code,
            error_message=error_message,
        )
        summary = GMAIL_ERROR_SUMMARIES.get(error_code, "Gmail error")
        raise GoogleGmailError(
            f"{summary}: {error_message}",
            error_code=error_code,
            status_code=response.status_code,
            response_data=data,
        )

    async def get_profile(self, access_token: str) -> GmailProfile:
        """Get the mailbox profile, including its current historyId."""
        url = f"{GMAIL_API_BASE_URL}/users/{GMAIL_USER_ID}/profile"
        response = await self._request_with_retry(
            "GET", url, headers=self._get_auth_headers(access_token)
        )
        return GmailProfile(self._handle_api_response(response, "get_profile"))

    async def get_history(
        self,
        access_token: str,
        start_history_id: str,
        history_types: list[str] | None = None,
        page_token: str | None = None,
    ) -> GmailHistoryPage:
        """
        Fetch one page of mailbox changes since start_history_id.

        Args:
            access_token: Valid OAuth access token
            start_history_id: Cursor to read changes after
            history_types: Change kinds to include (defaults to all four)
            page_token: Token of the page to fetch

        Returns:
            GmailHistoryPage: records, new historyId and next page token

        Raises:
            GoogleGmailError: 404 when the cursor is too old
        """
        url = f"{GMAIL_API_BASE_URL}/users/{GMAIL_USER_ID}/history"
        params: dict = {
            "startHistoryId": start_history_id,
            "historyTypes": history_types or HISTORY_TYPES,
        }
        if page_token:
            params["pageToken"] = page_token

        logger.debug(
            "Fetching Gmail history page",
            start_history_id=start_history_id,
            has_page_token=bool(page_token),
        )

        response = await self._request_with_retry(
            "GET", url, headers=self._get_auth_headers(access_token), params=params
        )
        return GmailHistoryPage(self._handle_api_response(response, "get_history"))

    async def list_message_refs(
        self,
        access_token: str,
        query: str | None = None,
        page_token: str | None = None,
        max_results: int = 100,
    ) -> tuple[list[GmailMessageRef], str | None]:
        """
        List message ids, most recent first.

        Returns:
            Tuple of (message refs, next page token)
        """
        url = f"{GMAIL_API_BASE_URL}/users/{GMAIL_USER_ID}/messages"
        params: dict = {"maxResults": min(max_results, MAX_LIST_PAGE_SIZE)}
        if query:
            params["q"] = query
        if page_token:
            params["pageToken"] = page_token

        response = await self._request_with_retry(
            "GET", url, headers=self._get_auth_headers(access_token), params=params
        )
        data = self._handle_api_response(response, "list_messages")

        refs = [GmailMessageRef(item) for item in data.get("messages", [])]
        return refs, data.get("nextPageToken")

    async def get_message(
        self, access_token: str, message_id: str, format: str = "full"
    ) -> GmailMessage:
        """Get a specific message by ID."""
        url = f"{GMAIL_API_BASE_URL}/users/{GMAIL_USER_ID}/messages/{message_id}"
        response = await self._request_with_retry(
            "GET", url, headers=self._get_auth_headers(access_token), params={"format": format}
        )
        return GmailMessage(self._handle_api_response(response, "get_message"))

    async def get_attachment(self, access_token: str, message_id: str, attachment_id: str) -> dict:
        """Get attachment body ({size, data}) for a message."""
        url = (
            f"{GMAIL_API_BASE_URL}/users/{GMAIL_USER_ID}/messages/{message_id}"
            f"/attachments/{attachment_id}"
        )
        response = await self._request_with_retry(
            "GET", url, headers=self._get_auth_headers(access_token)
        )
        return self._handle_api_response(response, "get_attachment")

    async def watch_mailbox(
        self, access_token: str, topic_name: str, label_ids: list[str] | None = None
    ) -> dict:
        """Start (or renew) push notifications; returns {historyId, expiration}."""
        url = f"{GMAIL_API_BASE_URL}/users/{GMAIL_USER_ID}/watch"
        body = {"topicName": topic_name, "labelIds": label_ids or ["INBOX", "SENT"]}
        response = await self._request_with_retry(
            "POST", url, headers=self._get_auth_headers(access_token), json=body
        )
        return self._handle_api_response(response, "watch_mailbox")

    async def stop_watch(self, access_token: str) -> None:
        url = f"{GMAIL_API_BASE_URL}/users/{GMAIL_USER_ID}/stop"
        response = await self._request_with_retry(
            "POST", url, headers=self._get_auth_headers(access_token)
        )
        self._handle_api_response(response, "stop_watch")
