import pytest
from pydantic import ValidationError

from mailsync.features.mail_sync.domain import (
    Job,
    JobName,
    ProviderError,
    SyncCancelledError,
    SyncResult,
)
from mailsync.features.mail_sync.jobs.processors import (
    HistorySyncProcessor,
    MessageFetchProcessor,
)
from mailsync.models.domain.account_domain import SyncStatus


class StubReconciler:
    def __init__(self, result=None, error=None):
        self.result = result or SyncResult(messages_added=1, new_history_id="150")
        self.error = error
        self.calls = []

    async def reconcile(self, account_id, start_history_id=None, *, cancel_event=None):
        self.calls.append((account_id, start_history_id, cancel_event))
        if self.error is not None:
            raise self.error
        return self.result


class StubMessageService:
    def __init__(self, error=None):
        self.error = error
        self.calls = []

    async def fetch_and_store_message(self, payload):
        self.calls.append(("fetch", payload))
        if self.error is not None:
            raise self.error
        return 11

    async def download_attachment(self, payload):
        self.calls.append(("download", payload))
        return "attachment://m1/a1/f.txt"

    async def run_full_sync(self, payload):
        self.calls.append(("full", payload))
        return 4


def _job(name, payload):
    return Job(id="job-1", name=str(name), payload=payload, priority=1)


@pytest.mark.asyncio
async def test_history_processor_passes_start_history_id(accounts):
    reconciler = StubReconciler()
    processor = HistorySyncProcessor(reconciler, accounts)

    summary = await processor.process(
        _job(
            JobName.SYNC_HISTORY,
            {"accountId": "acc-1", "startHistoryId": "120", "trigger": "webhook"},
        )
    )

    assert reconciler.calls == [("acc-1", "120", None)]
    assert summary == {
        "messagesAdded": 1,
        "messagesDeleted": 0,
        "labelsChanged": 0,
        "newHistoryId": "150",
    }


@pytest.mark.asyncio
async def test_history_processor_records_and_reraises(accounts):
    processor = HistorySyncProcessor(
        StubReconciler(error=ProviderError("upstream down", status_code=503)), accounts
    )

    with pytest.raises(ProviderError):
        await processor.process(_job(JobName.SYNC_HISTORY, {"accountId": "acc-1"}))

    assert ("record_sync_error", "acc-1", "upstream down") in accounts.calls
    assert accounts.accounts["acc-1"].sync_status == SyncStatus.ERROR


@pytest.mark.asyncio
async def test_history_processor_does_not_record_cancellation(accounts):
    processor = HistorySyncProcessor(
        StubReconciler(error=SyncCancelledError("stopping", account_id="acc-1")), accounts
    )

    with pytest.raises(SyncCancelledError):
        await processor.process(_job(JobName.SYNC_HISTORY, {"accountId": "acc-1"}))

    assert "record_sync_error" not in accounts.call_names()


@pytest.mark.asyncio
async def test_history_processor_rejects_payload_without_account(accounts):
    processor = HistorySyncProcessor(StubReconciler(), accounts)

    with pytest.raises(ValidationError):
        await processor.process(_job(JobName.SYNC_HISTORY, {"trigger": "manual"}))


@pytest.mark.asyncio
async def test_message_processor_routes_by_job_name(accounts):
    service = StubMessageService()
    processor = MessageFetchProcessor(service, accounts)

    fetched = await processor.process(
        _job(JobName.FETCH_MESSAGE, {"accountId": "acc-1", "messageId": "m1", "threadId": "t1"})
    )
    url = await processor.process(
        _job(
            JobName.DOWNLOAD_ATTACHMENT,
            {
                "accountId": "acc-1",
                "messageId": "m1",
                "attachmentId": "a1",
                "filename": "f.txt",
                "mimeType": "text/plain",
            },
        )
    )
    enqueued = await processor.process(
        _job(JobName.FULL_SYNC, {"accountId": "acc-1", "maxResults": 4})
    )

    assert (fetched, url, enqueued) == (11, "attachment://m1/a1/f.txt", 4)
    assert [call[0] for call in service.calls] == ["fetch", "download", "full"]
    assert service.calls[2][1].max_results == 4


@pytest.mark.asyncio
async def test_message_processor_records_failure(accounts):
    processor = MessageFetchProcessor(
        StubMessageService(error=ProviderError("Gmail rate limit exceeded", status_code=429)),
        accounts,
    )

    with pytest.raises(ProviderError):
        await processor.process(
            _job(
                JobName.FETCH_MESSAGE,
                {"accountId": "acc-1", "messageId": "m1", "threadId": "t1"},
            )
        )

    assert accounts.accounts["acc-1"].last_error == "Gmail rate limit exceeded"


@pytest.mark.asyncio
async def test_message_processor_rejects_unknown_job(accounts):
    processor = MessageFetchProcessor(StubMessageService(), accounts)

    with pytest.raises(ValueError, match="cannot handle"):
        await processor.process(_job("sync-history", {"accountId": "acc-1"}))
