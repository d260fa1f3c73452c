"""
Queue job processors.

Each processor records the failure on the account before re-raising, so
the queue's retry/dead-letter handling and the account status agree.
"""

import asyncio
import time
from typing import Any

from mailsync.features.mail_sync.domain.errors import SyncCancelledError
from mailsync.features.mail_sync.domain.models import (
    DownloadAttachmentPayload,
    FetchMessagePayload,
    FullSyncPayload,
    HistorySyncPayload,
    Job,
    JobName,
)
from mailsync.features.mail_sync.repository.account_repository import EmailAccountRepository
from mailsync.features.mail_sync.services.history_reconciler import HistoryReconciler
from mailsync.features.mail_sync.services.message_sync_service import MessageSyncService
from mailsync.infrastructure.observability.logging import get_logger, log_sync_result

logger = get_logger(__name__)


class HistorySyncProcessor:
    names = frozenset({JobName.SYNC_HISTORY})

    def __init__(
        self, reconciler: HistoryReconciler, accounts: type[EmailAccountRepository]
    ):
        self.reconciler = reconciler
        self.accounts = accounts

    async def process(
        self, job: Job, cancel_event: asyncio.Event | None = None
    ) -> dict[str, Any]:
        payload = HistorySyncPayload.model_validate(job.payload)
        start = time.perf_counter()

        logger.info(
            "Processing history sync",
            account_id=payload.account_id,
            trigger=payload.trigger,
            start_history_id=payload.start_history_id,
        )

        try:
            result = await self.reconciler.reconcile(
                payload.account_id, payload.start_history_id, cancel_event=cancel_event
            )
        except SyncCancelledError:
            raise
        except Exception as e:
            logger.error(
                "History sync job failed",
                account_id=payload.account_id,
                error=str(e),
                error_type=type(e).__name__,
            )
            await self.accounts.record_sync_error(
                payload.account_id, str(e) or "History sync failed"
            )
            raise

        summary = result.to_dict()
        log_sync_result(
            payload.account_id,
            payload.trigger,
            {
                **summary,
                "fullResync": result.full_resync,
                "jobsEnqueued": len(result.enqueued_jobs),
            },
            (time.perf_counter() - start) * 1000,
        )
        return summary


class MessageFetchProcessor:
    names = frozenset({JobName.FETCH_MESSAGE, JobName.DOWNLOAD_ATTACHMENT, JobName.FULL_SYNC})

    def __init__(self, service: MessageSyncService, accounts: type[EmailAccountRepository]):
        self.service = service
        self.accounts = accounts

    async def process(self, job: Job, cancel_event: asyncio.Event | None = None) -> Any:
        account_id = job.account_id

        try:
            match job.name:
                case JobName.FETCH_MESSAGE:
                    payload = FetchMessagePayload.model_validate(job.payload)
                    return await self.service.fetch_and_store_message(payload)
                case JobName.DOWNLOAD_ATTACHMENT:
                    payload = DownloadAttachmentPayload.model_validate(job.payload)
                    return await self.service.download_attachment(payload)
                case JobName.FULL_SYNC:
                    payload = FullSyncPayload.model_validate(job.payload)
                    return await self.service.run_full_sync(payload)
                case _:
                    raise ValueError(f"MessageFetchProcessor cannot handle job '{job.name}'")

        except Exception as e:
            logger.error(
                "Message job failed",
                job_name=job.name,
                account_id=account_id,
                error=str(e),
                error_type=type(e).__name__,
            )
            if account_id:
                await self.accounts.record_sync_error(account_id, str(e) or f"{job.name} failed")
            raise
