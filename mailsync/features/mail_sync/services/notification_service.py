"""
Intake for Gmail push notifications and manual sync requests.

Both only enqueue sync-history jobs; reconciliation happens in the worker.
"""

import base64
import json
from datetime import UTC, datetime
from typing import Any

from pydantic import BaseModel, ConfigDict, Field

from mailsync.config import settings
from mailsync.features.mail_sync.domain.errors import AccountNotFoundError
from mailsync.features.mail_sync.domain.models import (
    HistorySyncPayload,
    Job,
    JobName,
    JobPriority,
    SyncTrigger,
)
from mailsync.features.mail_sync.repository.account_repository import EmailAccountRepository
from mailsync.features.mail_sync.services.dispatch_queue import DispatchQueue
from mailsync.infrastructure.observability.logging import get_logger
from mailsync.services.infrastructure.redis_client import RedisClient

logger = get_logger(__name__)

WEBHOOK_METRICS_TTL_SECONDS = 30 * 24 * 60 * 60
SYNC_HISTORY_ATTEMPTS = 3


class GmailPushNotification(BaseModel):
    """Decoded Pub/Sub push for a mailbox change."""

    model_config = ConfigDict(populate_by_name=True)

    email_address: str = Field(alias="emailAddress")
    history_id: str = Field(alias="historyId")
    message_id: str = Field(alias="messageId")
    publish_time: datetime | None = Field(default=None, alias="publishTime")

    @classmethod
    def from_pubsub_envelope(cls, envelope: dict[str, Any]) -> "GmailPushNotification":
        """Build from a Pub/Sub push body: {"message": {"data": b64, "messageId", "publishTime"}}."""
        message = envelope["message"]
        data = json.loads(base64.b64decode(message["data"]).decode("utf-8"))
        return cls(
            email_address=data["emailAddress"],
            history_id=str(data["historyId"]),
            message_id=message.get("messageId") or message.get("message_id"),
            publish_time=message.get("publishTime") or message.get("publish_time"),
        )


class NotificationService:
    def __init__(
        self,
        accounts: type[EmailAccountRepository],
        queue: DispatchQueue,
        redis: RedisClient,
        dedupe_ttl_seconds: int | None = None,
    ):
        self.accounts = accounts
        self.queue = queue
        self.redis = redis
        self.dedupe_ttl_seconds = dedupe_ttl_seconds or settings.NOTIFICATION_DEDUPE_TTL_SECONDS

    async def process_notification(self, notification: GmailPushNotification) -> Job | None:
        """
        Turn a push notification into a sync-history job.

        Returns the enqueued job, or None when the notification was a
        duplicate, for an unknown mailbox, or not newer than the cursor.
        """
        started = datetime.now(UTC)
        dedupe_key = f"gmail:notification:{notification.message_id}"

        first_seen = await self.redis.set_if_absent(dedupe_key, "1", self.dedupe_ttl_seconds)
        if not first_seen:
            logger.warning("Duplicate notification", message_id=notification.message_id)
            return None

        try:
            return await self._enqueue_for_notification(notification, started)
        except Exception:
            # Let the Pub/Sub redelivery through
            await self.redis.delete(dedupe_key)
            raise

    async def _enqueue_for_notification(
        self, notification: GmailPushNotification, started: datetime
    ) -> Job | None:
        account = await self.accounts.find_by_email(notification.email_address)
        if account is None:
            logger.error("No account found for notification", email=notification.email_address)
            return None

        if int(notification.history_id) <= int(account.history_id or "0"):
            logger.info(
                "Skipping notification for old history",
                account_id=account.id,
                notification_history_id=notification.history_id,
                history_id=account.history_id,
            )
            return None

        job = await self.queue.add(
            JobName.SYNC_HISTORY,
            HistorySyncPayload(
                account_id=account.id,
                start_history_id=account.history_id,
                end_history_id=notification.history_id,
                trigger="webhook",
            ).to_payload(),
            priority=JobPriority.SYNC_HISTORY,
            attempts=SYNC_HISTORY_ATTEMPTS,
        )

        processing_ms = int((datetime.now(UTC) - started).total_seconds() * 1000)
        await self._update_metrics(account.id, processing_ms)

        logger.info(
            "Queued history sync from notification",
            account_id=account.id,
            job_id=job.id,
            history_id=notification.history_id,
        )
        return job

    async def request_sync(self, account_id: str, trigger: SyncTrigger = "manual") -> Job:
        account = await self.accounts.find_one(account_id)
        if account is None:
            raise AccountNotFoundError(account_id)

        job = await self.queue.add(
            JobName.SYNC_HISTORY,
            HistorySyncPayload(account_id=account_id, trigger=trigger).to_payload(),
            priority=JobPriority.SYNC_HISTORY,
            attempts=SYNC_HISTORY_ATTEMPTS,
        )
        logger.info("History sync requested", account_id=account_id, trigger=trigger, job_id=job.id)
        return job

    async def _update_metrics(self, account_id: str, processing_ms: int) -> None:
        key = f"metrics:gmail:webhooks:{datetime.now(UTC).date().isoformat()}"
        client = await self.redis.get_client()
        await client.hincrby(key, "total", 1)
        await client.hincrby(key, f"account:{account_id}", 1)
        await client.hincrby(key, "processing_time", processing_ms)
        await client.expire(key, WEBHOOK_METRICS_TTL_SECONDS)

    async def get_webhook_metrics(self, date: str | None = None) -> dict[str, Any]:
        target_date = date or datetime.now(UTC).date().isoformat()
        client = await self.redis.get_client()
        metrics = await client.hgetall(f"metrics:gmail:webhooks:{target_date}")

        total = int(metrics.get("total", 0))
        processing_time = int(metrics.get("processing_time", 0))
        return {
            "date": target_date,
            "total": total,
            "averageProcessingTime": processing_time / total if total else 0,
            "accounts": [
                {"accountId": key.removeprefix("account:"), "count": int(value)}
                for key, value in metrics.items()
                if key.startswith("account:")
            ],
        }
