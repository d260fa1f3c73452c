from datetime import UTC, datetime, timedelta

import pytest

from mailsync.config import settings
from mailsync.features.mail_sync.domain import AccountNotFoundError, TokenRefreshError
from mailsync.features.mail_sync.domain.models import JobName
from mailsync.features.mail_sync.services.account_service import (
    AccountServiceError,
    EmailAccountService,
)
from mailsync.features.mail_sync.services.full_resync import FullResyncPlanner
from mailsync.models.domain.account_domain import SyncMode, SyncStatus
from mailsync.services.gmail.google_client import GoogleGmailError
from mailsync.services.infrastructure.encryption_service import decrypt_token


@pytest.fixture
def service(accounts, token_provider, gmail, queue):
    planner = FullResyncPlanner(accounts, token_provider, gmail, queue, max_results=10)
    return EmailAccountService(accounts, token_provider, gmail, planner)


@pytest.mark.asyncio
async def test_connect_account_seeds_cursor_from_profile(service, accounts, gmail, queue):
    gmail.profile = {"emailAddress": "new@example.com", "historyId": "4242"}
    gmail.message_pages = [
        {"messages": [{"id": "m1", "threadId": "t1"}, {"id": "m2", "threadId": "t2"}]}
    ]
    expires = datetime.now(UTC) + timedelta(hours=1)

    account = await service.connect_account(
        workspace_id="ws-1",
        user_id="user-2",
        email="New@Example.com",
        access_token="access",
        refresh_token="refresh",
        token_expires_at=expires,
    )

    assert account.history_id == "4242"
    _, kwargs = next(call for call in accounts.calls if call[0] == "create")
    assert decrypt_token(kwargs["access_token_encrypted"]) == "access"
    assert decrypt_token(kwargs["refresh_token_encrypted"]) == "refresh"
    assert kwargs["token_expires_at"] == expires

    assert queue.names() == [JobName.FETCH_MESSAGE, JobName.FETCH_MESSAGE]
    assert [job.payload["messageId"] for job in queue.jobs] == ["m1", "m2"]
    assert all(job.account_id == account.id for job in queue.jobs)


@pytest.mark.asyncio
async def test_connect_account_survives_failed_backfill(service, accounts, gmail, queue):
    gmail.profile = {"emailAddress": "new@example.com", "historyId": "4242"}

    async def failing_list(*args, **kwargs):
        raise GoogleGmailError("Backend Error", status_code=503)

    gmail.list_message_refs = failing_list

    account = await service.connect_account(
        workspace_id="ws-1",
        user_id="user-2",
        email="new@example.com",
        access_token="access",
        refresh_token="refresh",
        token_expires_at=datetime.now(UTC),
    )

    assert account.id in accounts.accounts
    assert accounts.accounts[account.id].sync_status == SyncStatus.ERROR
    assert queue.jobs == []


@pytest.mark.asyncio
async def test_connect_account_rejects_mismatched_mailbox(service, accounts, gmail):
    gmail.profile = {"emailAddress": "someone-else@example.com", "historyId": "1"}

    with pytest.raises(AccountServiceError, match="Email address mismatch"):
        await service.connect_account(
            workspace_id="ws-1",
            user_id="user-2",
            email="new@example.com",
            access_token="access",
            refresh_token="refresh",
            token_expires_at=datetime.now(UTC),
        )

    assert "create" not in accounts.call_names()


@pytest.mark.asyncio
async def test_disable_and_enable_sync(service, accounts):
    await service.disable_sync("acc-1")
    paused = accounts.accounts["acc-1"]
    assert (paused.sync_enabled, paused.sync_status) == (False, SyncStatus.PAUSED)

    await service.enable_sync("acc-1")
    resumed = accounts.accounts["acc-1"]
    assert (resumed.sync_enabled, resumed.sync_status) == (True, SyncStatus.ACTIVE)


@pytest.mark.asyncio
async def test_disable_unknown_account(service):
    with pytest.raises(AccountNotFoundError):
        await service.disable_sync("missing")


@pytest.mark.asyncio
async def test_renew_watch_switches_to_push(service, accounts, gmail, monkeypatch):
    monkeypatch.setattr(settings, "GMAIL_PUBSUB_TOPIC", "projects/p/topics/gmail")

    expiration = await service.renew_watch("acc-1")

    stored = accounts.accounts["acc-1"]
    assert stored.sync_mode == SyncMode.PUSH
    assert stored.watch_expiration == expiration
    assert expiration > datetime.now(UTC) + timedelta(days=6)
    assert ("watch_mailbox", "projects/p/topics/gmail") in gmail.calls


@pytest.mark.asyncio
async def test_renew_watch_requires_topic(service, gmail, monkeypatch):
    monkeypatch.setattr(settings, "GMAIL_PUBSUB_TOPIC", None)

    with pytest.raises(AccountServiceError, match="GMAIL_PUBSUB_TOPIC"):
        await service.renew_watch("acc-1")
    assert gmail.calls == []


@pytest.mark.asyncio
async def test_renew_watch_failure_is_recorded(service, accounts, gmail, monkeypatch):
    monkeypatch.setattr(settings, "GMAIL_PUBSUB_TOPIC", "projects/p/topics/gmail")

    async def failing_watch(access_token, topic_name, label_ids=None):
        raise GoogleGmailError("Gmail access denied: topic", "403", 403)

    gmail.watch_mailbox = failing_watch

    with pytest.raises(GoogleGmailError):
        await service.renew_watch("acc-1")

    assert accounts.accounts["acc-1"].last_error.startswith("Watch renewal failed")


@pytest.mark.asyncio
async def test_delete_push_account_stops_watch(service, accounts, gmail, account_factory):
    accounts.add(account_factory(id="acc-push", sync_mode=SyncMode.PUSH))

    await service.delete_account("acc-push")

    assert "stop_watch" in gmail.call_names()
    assert "acc-push" not in accounts.accounts


@pytest.mark.asyncio
async def test_delete_continues_when_watch_cannot_be_stopped(
    service, accounts, token_provider, account_factory
):
    accounts.add(account_factory(id="acc-push", sync_mode=SyncMode.PUSH))
    token_provider.error = TokenRefreshError("revoked", account_id="acc-push")

    await service.delete_account("acc-push")

    assert "acc-push" not in accounts.accounts


@pytest.mark.asyncio
async def test_find_expiring_watches(service, accounts, account_factory):
    now = datetime.now(UTC)
    accounts.add(
        account_factory(id="soon", sync_mode=SyncMode.PUSH, watch_expiration=now + timedelta(hours=2))
    )
    accounts.add(
        account_factory(id="later", sync_mode=SyncMode.PUSH, watch_expiration=now + timedelta(days=5))
    )

    expiring = await service.find_expiring_watches(hours_ahead=24)

    assert [account.id for account in expiring] == ["soon"]


@pytest.mark.asyncio
async def test_get_sync_status(service, account_factory, accounts):
    accounts.add(account_factory(id="acc-2", workspace_id="ws-2"))

    statuses = await service.get_sync_status("ws-1")

    assert len(statuses) == 1
    status = statuses[0]
    assert status["id"] == "acc-1"
    assert status["syncMode"] == "POLLING"
    assert status["syncStatus"] == "ACTIVE"
    assert status["emailCount"] == 7
