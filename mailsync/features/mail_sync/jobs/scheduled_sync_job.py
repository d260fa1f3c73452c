"""
Scheduled sync job.
Periodically enqueues history syncs for every schedulable account and
renews Gmail push watches that are about to expire.
"""

import asyncio
from datetime import UTC, datetime

from mailsync.config import settings
from mailsync.db.pool import db_pool
from mailsync.features.mail_sync.repository.account_repository import EmailAccountRepository
from mailsync.features.mail_sync.services.account_service import EmailAccountService
from mailsync.features.mail_sync.services.factory import build_mail_sync_services
from mailsync.features.mail_sync.services.notification_service import NotificationService
from mailsync.infrastructure.observability.logging import get_logger, setup_logging
from mailsync.services.infrastructure.redis_client import redis_client

logger = get_logger(__name__)


class ScheduledSyncJobError(Exception):
    """Custom exception for scheduled sync job operations."""

    def __init__(self, message: str, operation: str | None = None, recoverable: bool = True):
        super().__init__(message)
        self.operation = operation
        self.recoverable = recoverable


class ScheduledSyncMetrics:
    """Counters for one scheduled sync run."""

    def __init__(self):
        self.reset()

    def reset(self):
        self.start_time = datetime.now(UTC)
        self.accounts_found = 0
        self.syncs_enqueued = 0
        self.enqueue_failures = 0
        self.watches_renewed = 0
        self.watch_failures = 0
        self.total_duration_seconds = 0.0
        self.errors: list[dict] = []

    def record_failure(self, account_id: str, operation: str, error: str):
        self.errors.append(
            {
                "account_id": account_id,
                "operation": operation,
                "error": error,
                "timestamp": datetime.now(UTC).isoformat(),
            }
        )
        logger.warning(
            "Scheduled sync step failed",
            account_id=account_id,
            operation=operation,
            error=error,
            job_run="scheduled_sync",
        )

    def finalize(self):
        self.total_duration_seconds = (datetime.now(UTC) - self.start_time).total_seconds()

    def to_dict(self) -> dict:
        return {
            "job_run": "scheduled_sync",
            "start_time": self.start_time.isoformat(),
            "total_duration_seconds": round(self.total_duration_seconds, 2),
            "accounts_found": self.accounts_found,
            "syncs_enqueued": self.syncs_enqueued,
            "enqueue_failures": self.enqueue_failures,
            "watches_renewed": self.watches_renewed,
            "watch_failures": self.watch_failures,
            "errors_count": len(self.errors),
        }


class ScheduledSyncJob:
    def __init__(
        self,
        accounts: type[EmailAccountRepository],
        notifications: NotificationService,
        account_service: EmailAccountService,
        renew_watches: bool | None = None,
    ):
        self.accounts = accounts
        self.notifications = notifications
        self.account_service = account_service
        self.renew_watches = (
            renew_watches if renew_watches is not None else bool(settings.GMAIL_PUBSUB_TOPIC)
        )
        self.is_running = False
        self.last_run_time: datetime | None = None
        self.job_metrics = ScheduledSyncMetrics()

    async def run_once(self) -> dict:
        """
        Run a single scheduling pass.

        Per-account failures are counted and logged; only a failure to list
        accounts aborts the run.

        Raises:
            ScheduledSyncJobError: If the account listing fails
        """
        if self.is_running:
            logger.warning("Scheduled sync already running, skipping this iteration")
            return {"skipped": True, "reason": "already_running"}

        try:
            self.is_running = True
            self.job_metrics.reset()

            try:
                accounts = await self.accounts.find_schedulable()
            except Exception as e:
                logger.error("Failed to list schedulable accounts", error=str(e))
                raise ScheduledSyncJobError(
                    f"Failed to list schedulable accounts: {e}", operation="find_schedulable"
                ) from e

            self.job_metrics.accounts_found = len(accounts)

            for account in accounts:
                try:
                    await self.notifications.request_sync(account.id, trigger="scheduled")
                    self.job_metrics.syncs_enqueued += 1
                except Exception as e:
                    self.job_metrics.enqueue_failures += 1
                    self.job_metrics.record_failure(account.id, "request_sync", str(e))

            if self.renew_watches:
                await self._renew_expiring_watches()

            self.job_metrics.finalize()
            self.last_run_time = datetime.now(UTC)

            metrics = self.job_metrics.to_dict()
            logger.info("Scheduled sync completed", **metrics)
            return metrics

        finally:
            self.is_running = False

    async def _renew_expiring_watches(self) -> None:
        try:
            expiring = await self.account_service.find_expiring_watches()
        except Exception as e:
            self.job_metrics.record_failure("*", "find_expiring_watches", str(e))
            return

        for account in expiring:
            try:
                await self.account_service.renew_watch(account.id)
                self.job_metrics.watches_renewed += 1
            except Exception as e:
                self.job_metrics.watch_failures += 1
                self.job_metrics.record_failure(account.id, "renew_watch", str(e))

    def get_job_status(self) -> dict:
        return {
            "job_name": "scheduled_sync",
            "is_running": self.is_running,
            "last_run_time": self.last_run_time.isoformat() if self.last_run_time else None,
            "interval_minutes": settings.SCHEDULED_SYNC_INTERVAL_MINUTES,
            "renew_watches": self.renew_watches,
            "last_run_metrics": self.job_metrics.to_dict() if self.last_run_time else None,
        }


async def start_scheduled_sync_scheduler() -> None:
    """Run the scheduled sync job every SCHEDULED_SYNC_INTERVAL_MINUTES."""
    setup_logging(settings.LOG_LEVEL)
    await db_pool.initialize()
    await redis_client.initialize()

    services = build_mail_sync_services(await redis_client.get_client())
    job = ScheduledSyncJob(
        EmailAccountRepository, services.notifications, services.account_service
    )
    interval_seconds = settings.SCHEDULED_SYNC_INTERVAL_MINUTES * 60

    logger.info(
        "Starting scheduled sync scheduler",
        interval_minutes=settings.SCHEDULED_SYNC_INTERVAL_MINUTES,
        renew_watches=job.renew_watches,
    )

    try:
        while True:
            try:
                await job.run_once()
            except ScheduledSyncJobError as e:
                logger.error("Scheduled sync run failed", error=str(e), operation=e.operation)
            await asyncio.sleep(interval_seconds)
    finally:
        await services.gmail.close()
        await redis_client.close()
        await db_pool.close()


if __name__ == "__main__":
    asyncio.run(start_scheduled_sync_scheduler())
