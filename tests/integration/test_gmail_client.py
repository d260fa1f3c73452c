import re

import pytest

from mailsync.features.mail_sync.domain import is_stale_cursor_error
from mailsync.services.gmail import google_client
from mailsync.services.gmail.google_client import (
    HISTORY_TYPES,
    GoogleGmailError,
    GoogleGmailService,
)

HISTORY_URL = re.compile(r"https://gmail\.googleapis\.com/gmail/v1/users/me/history.*")
MESSAGES_URL = re.compile(r"https://gmail\.googleapis\.com/gmail/v1/users/me/messages\?.*")


@pytest.fixture(autouse=True)
def no_backoff(monkeypatch):
    async def instant(_seconds):
        return None

    monkeypatch.setattr(google_client.asyncio, "sleep", instant)


@pytest.mark.asyncio
async def test_history_request_params(httpx_mock):
    service = GoogleGmailService()
    httpx_mock.add_response(
        method="GET",
        url=HISTORY_URL,
        json={
            "history": [{"id": "101", "messagesAdded": [{"message": {"id": "m1"}}]}],
            "historyId": "150",
            "nextPageToken": "p2",
        },
    )

    page = await service.get_history("token", "100", page_token="p1")
    await service.close()

    assert page.history_id == "150"
    assert page.next_page_token == "p2"
    assert len(page.history) == 1

    request = httpx_mock.get_requests()[0]
    assert request.headers["Authorization"] == "Bearer token"
    params = request.url.params
    assert params.get("startHistoryId") == "100"
    assert params.get("pageToken") == "p1"
    assert params.get_list("historyTypes") == HISTORY_TYPES


@pytest.mark.asyncio
async def test_expired_history_id_maps_to_404(httpx_mock):
    service = GoogleGmailService()
    httpx_mock.add_response(
        method="GET",
        url=HISTORY_URL,
        status_code=404,
        json={"error": {"code": 404, "message": "Requested entity was not found."}},
    )

    with pytest.raises(GoogleGmailError) as exc_info:
        await service.get_history("token", "1")
    await service.close()

    assert exc_info.value.status_code == 404
    assert exc_info.value.error_code == "404"
    assert is_stale_cursor_error(exc_info.value)


@pytest.mark.asyncio
async def test_transient_status_is_retried(httpx_mock):
    service = GoogleGmailService()
    httpx_mock.add_response(method="GET", url=HISTORY_URL, status_code=503, text="")
    httpx_mock.add_response(method="GET", url=HISTORY_URL, json={"historyId": "120"})

    page = await service.get_history("token", "100")
    await service.close()

    assert page.history_id == "120"
    assert page.history == []
    assert len(httpx_mock.get_requests()) == 2


@pytest.mark.asyncio
async def test_profile_and_message_refs(httpx_mock):
    service = GoogleGmailService()
    httpx_mock.add_response(
        method="GET",
        url="https://gmail.googleapis.com/gmail/v1/users/me/profile",
        json={"emailAddress": "owner@example.com", "historyId": "999", "messagesTotal": 12},
    )
    httpx_mock.add_response(
        method="GET",
        url=MESSAGES_URL,
        json={"messages": [{"id": "m1", "threadId": "t1"}], "nextPageToken": "n2"},
    )

    profile = await service.get_profile("token")
    refs, next_token = await service.list_message_refs("token", max_results=1000)
    await service.close()

    assert profile.email_address == "owner@example.com"
    assert profile.history_id == "999"
    assert [(ref.id, ref.thread_id) for ref in refs] == [("m1", "t1")]
    assert next_token == "n2"
    assert httpx_mock.get_requests()[1].url.params.get("maxResults") == "500"
