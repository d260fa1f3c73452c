import base64
import json

import pytest

from mailsync.features.mail_sync.domain import AccountNotFoundError, JobName
from mailsync.features.mail_sync.services.dispatch_queue import DispatchQueueError
from mailsync.features.mail_sync.services.notification_service import (
    GmailPushNotification,
    NotificationService,
)


@pytest.fixture
def service(accounts, queue, fake_redis):
    return NotificationService(accounts, queue, fake_redis)


def _notification(history_id="150", message_id="pubsub-1", email="owner@example.com"):
    return GmailPushNotification(
        email_address=email, history_id=history_id, message_id=message_id
    )


@pytest.mark.asyncio
async def test_notification_enqueues_history_sync(service, queue, fake_redis):
    job = await service.process_notification(_notification())

    assert job is queue.jobs[0]
    assert job.name == JobName.SYNC_HISTORY
    assert (job.priority, job.attempts) == (1, 3)
    assert job.payload == {
        "accountId": "acc-1",
        "startHistoryId": "100",
        "endHistoryId": "150",
        "trigger": "webhook",
    }
    assert fake_redis.expiries["gmail:notification:pubsub-1"] == 3600


@pytest.mark.asyncio
async def test_duplicate_notification_is_ignored(service, queue):
    await service.process_notification(_notification())
    second = await service.process_notification(_notification(history_id="160"))

    assert second is None
    assert len(queue.jobs) == 1


@pytest.mark.asyncio
async def test_failed_enqueue_allows_redelivery(service, queue, fake_redis):
    original_add = queue.add

    async def failing_add(*args, **kwargs):
        raise DispatchQueueError("Failed to enqueue sync-history: down", operation="add")

    queue.add = failing_add
    with pytest.raises(DispatchQueueError):
        await service.process_notification(_notification())

    assert "gmail:notification:pubsub-1" not in fake_redis.store

    queue.add = original_add
    job = await service.process_notification(_notification())

    assert job is queue.jobs[0]
    assert fake_redis.store["gmail:notification:pubsub-1"] == "1"


@pytest.mark.asyncio
async def test_unknown_mailbox_is_ignored(service, queue):
    job = await service.process_notification(_notification(email="stranger@example.com"))

    assert job is None
    assert queue.jobs == []


@pytest.mark.asyncio
async def test_notification_not_newer_than_cursor_is_skipped(service, queue):
    assert await service.process_notification(_notification(history_id="100")) is None
    assert await service.process_notification(_notification("99", "pubsub-2")) is None
    assert queue.jobs == []


@pytest.mark.asyncio
async def test_email_lookup_is_case_insensitive(service, queue):
    job = await service.process_notification(_notification(email="Owner@Example.com"))

    assert job is not None


@pytest.mark.asyncio
async def test_webhook_metrics_are_aggregated(service):
    await service.process_notification(_notification(message_id="a"))
    await service.process_notification(_notification(history_id="170", message_id="b"))

    metrics = await service.get_webhook_metrics()

    assert metrics["total"] == 2
    assert metrics["accounts"] == [{"accountId": "acc-1", "count": 2}]
    assert metrics["averageProcessingTime"] >= 0


@pytest.mark.asyncio
async def test_metrics_for_empty_day(service):
    metrics = await service.get_webhook_metrics("2024-01-01")

    assert metrics == {
        "date": "2024-01-01",
        "total": 0,
        "averageProcessingTime": 0,
        "accounts": [],
    }


@pytest.mark.asyncio
async def test_request_sync(service, queue):
    job = await service.request_sync("acc-1", trigger="scheduled")

    assert job.payload == {"accountId": "acc-1", "trigger": "scheduled"}
    assert job.priority == 1


@pytest.mark.asyncio
async def test_request_sync_unknown_account(service, queue):
    with pytest.raises(AccountNotFoundError):
        await service.request_sync("missing")
    assert queue.jobs == []


def test_notification_from_pubsub_envelope():
    data = base64.b64encode(
        json.dumps({"emailAddress": "owner@example.com", "historyId": 12345}).encode("utf-8")
    ).decode("utf-8")

    notification = GmailPushNotification.from_pubsub_envelope(
        {
            "message": {
                "data": data,
                "messageId": "pubsub-9",
                "publishTime": "2024-05-01T12:00:00Z",
            },
            "subscription": "projects/p/subscriptions/gmail",
        }
    )

    assert notification.email_address == "owner@example.com"
    assert notification.history_id == "12345"
    assert notification.message_id == "pubsub-9"
    assert notification.publish_time.year == 2024
