"""
Full-resync planning for accounts whose change-feed cursor is missing or
too old, plus initial seeding of newly connected accounts.
"""

from mailsync.config import settings
from mailsync.features.mail_sync.domain.errors import AccountNotFoundError
from mailsync.features.mail_sync.domain.models import (
    FetchMessagePayload,
    FullSyncPayload,
    JobName,
    JobPriority,
    SyncResult,
)
from mailsync.features.mail_sync.repository.account_repository import EmailAccountRepository
from mailsync.features.mail_sync.services.dispatch_queue import DispatchQueue
from mailsync.features.mail_sync.services.token_provider import AccountTokenProvider
from mailsync.infrastructure.observability.logging import get_logger
from mailsync.models.domain.gmail_domain import GmailMessageRef
from mailsync.services.gmail.google_client import GoogleGmailService

logger = get_logger(__name__)

DEFAULT_HISTORY_ID = "1"


async def list_recent_message_refs(
    gmail: GoogleGmailService, access_token: str, limit: int
) -> list[GmailMessageRef]:
    """Page through messages.list until `limit` refs are collected."""
    refs: list[GmailMessageRef] = []
    page_token = None

    while len(refs) < limit:
        page, page_token = await gmail.list_message_refs(
            access_token, page_token=page_token, max_results=limit - len(refs)
        )
        refs.extend(page)
        if not page_token or not page:
            break

    return refs[:limit]


class FullResyncPlanner:
    def __init__(
        self,
        accounts: type[EmailAccountRepository],
        token_provider: AccountTokenProvider,
        gmail: GoogleGmailService,
        queue: DispatchQueue,
        max_results: int | None = None,
    ):
        self.accounts = accounts
        self.token_provider = token_provider
        self.gmail = gmail
        self.queue = queue
        self.max_results = max_results or settings.FULL_SYNC_MAX_RESULTS

    async def full_resync(self, account_id: str) -> SyncResult:
        """
        Re-seed the cursor from the mailbox profile and defer the backfill
        to a full-sync job.

        The cursor is written unconditionally: the previous one is either
        absent or no longer accepted by the change feed.
        """
        account = await self.accounts.find_one(account_id)
        if account is None:
            raise AccountNotFoundError(account_id)

        try:
            access_token = await self.token_provider.get_fresh_access_token(account_id)
            profile = await self.gmail.get_profile(access_token)
            new_history_id = profile.history_id or DEFAULT_HISTORY_ID

            job = await self.queue.add(
                JobName.FULL_SYNC,
                FullSyncPayload(account_id=account_id, max_results=self.max_results).to_payload(),
                priority=JobPriority.FULL_SYNC,
                attempts=settings.FETCH_MESSAGE_ATTEMPTS,
            )

            await self.accounts.record_successful_sync(account_id, new_history_id)

        except Exception as e:
            await self.accounts.record_sync_error(account_id, str(e) or "Full sync failed")
            raise

        logger.info(
            "Full resync planned",
            account_id=account_id,
            email=account.email,
            new_history_id=new_history_id,
            job_id=job.id,
        )
        return SyncResult(new_history_id=new_history_id, enqueued_jobs=[job], full_resync=True)

    async def seed_new_account(self, account_id: str) -> SyncResult:
        """Enqueue fetches for the most recent messages of a newly connected account."""
        account = await self.accounts.find_one(account_id)
        if account is None:
            raise AccountNotFoundError(account_id)

        try:
            access_token = await self.token_provider.get_fresh_access_token(account_id)
            # Cursor is read before listing; later arrivals come through the feed
            profile = await self.gmail.get_profile(access_token)
            refs = await list_recent_message_refs(self.gmail, access_token, self.max_results)

            result = SyncResult(new_history_id=profile.history_id or DEFAULT_HISTORY_ID)
            for ref in refs:
                if not ref.id or not ref.thread_id:
                    continue
                job = await self.queue.add(
                    JobName.FETCH_MESSAGE,
                    FetchMessagePayload(
                        account_id=account_id, message_id=ref.id, thread_id=ref.thread_id
                    ).to_payload(),
                    priority=JobPriority.FETCH_MESSAGE,
                    attempts=settings.FETCH_MESSAGE_ATTEMPTS,
                )
                result.enqueued_jobs.append(job)
                result.messages_added += 1

            await self.accounts.record_successful_sync(account_id, result.new_history_id)

        except Exception as e:
            await self.accounts.record_sync_error(account_id, str(e) or "Initial sync failed")
            raise

        logger.info(
            "New account seeded",
            account_id=account_id,
            messages_enqueued=result.messages_added,
            new_history_id=result.new_history_id,
        )
        return result
