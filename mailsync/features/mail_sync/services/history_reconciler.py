"""
History reconciler: brings the local mirror of one mailbox up to date by
replaying the Gmail change feed from the account's stored cursor.

Deletions and label changes are applied synchronously; new messages are
deferred to fetch-message jobs. The cursor only moves after the whole
feed has been consumed and applied.
"""

import asyncio
import weakref
from typing import assert_never

from mailsync.config import settings
from mailsync.features.mail_sync.domain.errors import (
    AccountNotFoundError,
    ProtocolError,
    SyncCancelledError,
    is_stale_cursor_error,
)
from mailsync.features.mail_sync.domain.models import (
    ChangeRecord,
    FetchMessagePayload,
    JobName,
    JobPriority,
    LabelsAdded,
    LabelsRemoved,
    MessageAdded,
    MessageDeleted,
    SyncResult,
    parse_history_entry,
)
from mailsync.features.mail_sync.repository.account_repository import EmailAccountRepository
from mailsync.features.mail_sync.repository.email_repository import EmailRepository
from mailsync.features.mail_sync.services.dispatch_queue import DispatchQueue
from mailsync.features.mail_sync.services.full_resync import FullResyncPlanner
from mailsync.features.mail_sync.services.token_provider import AccountTokenProvider
from mailsync.infrastructure.observability.logging import get_logger
from mailsync.models.domain.account_domain import EmailAccount
from mailsync.services.gmail.google_client import HISTORY_TYPES, GoogleGmailService

logger = get_logger(__name__)


class HistoryReconciler:
    def __init__(
        self,
        accounts: type[EmailAccountRepository],
        emails: type[EmailRepository],
        token_provider: AccountTokenProvider,
        gmail: GoogleGmailService,
        queue: DispatchQueue,
        planner: FullResyncPlanner | None = None,
        max_pages: int | None = None,
    ):
        self.accounts = accounts
        self.emails = emails
        self.token_provider = token_provider
        self.gmail = gmail
        self.queue = queue
        self.planner = planner or FullResyncPlanner(accounts, token_provider, gmail, queue)
        self.max_pages = max_pages or settings.HISTORY_MAX_PAGES
        # Entries vanish once no pass holds or awaits the lock
        self._locks: weakref.WeakValueDictionary[str, asyncio.Lock] = (
            weakref.WeakValueDictionary()
        )

    def _lock_for(self, account_id: str) -> asyncio.Lock:
        lock = self._locks.get(account_id)
        if lock is None:
            lock = self._locks[account_id] = asyncio.Lock()
        return lock

    async def reconcile(
        self,
        account_id: str,
        start_history_id: str | None = None,
        *,
        cancel_event: asyncio.Event | None = None,
    ) -> SyncResult:
        """
        Replay the change feed for an account.

        Args:
            account_id: Account to reconcile
            start_history_id: Cursor override; defaults to the stored cursor
            cancel_event: Checked between pages; when set the pass stops
                without persisting anything

        Returns:
            SyncResult with counts and the jobs enqueued

        Raises:
            AccountNotFoundError: Unknown account (before any network call)
            ProtocolError: The feed never stopped returning page tokens
            SyncCancelledError: cancel_event was set mid-pass
        """
        lock = self._lock_for(account_id)
        async with lock:
            return await self._reconcile(account_id, start_history_id, cancel_event)

    async def _reconcile(
        self,
        account_id: str,
        start_history_id: str | None,
        cancel_event: asyncio.Event | None,
    ) -> SyncResult:
        account = await self.accounts.find_one(account_id)
        if account is None:
            raise AccountNotFoundError(account_id)

        access_token = await self.token_provider.get_fresh_access_token(account_id)

        cursor = start_history_id or account.history_id
        if not cursor:
            logger.warning(
                "No history cursor, performing full resync",
                account_id=account_id,
                email=account.email,
            )
            return await self.planner.full_resync(account_id)

        try:
            records, new_history_id = await self._fetch_changes(
                account_id, access_token, cursor, cancel_event
            )
            result = await self._apply(account, records)
            result.new_history_id = new_history_id

            await self.accounts.record_successful_sync(account_id, new_history_id)

        except SyncCancelledError:
            logger.info("History sync cancelled", account_id=account_id, cursor=cursor)
            raise

        except Exception as e:
            if not is_stale_cursor_error(e):
                if isinstance(e, ProtocolError):
                    logger.error(
                        "Change feed pagination bound exceeded",
                        account_id=account_id,
                        pages=e.pages,
                    )
                else:
                    logger.error(
                        "History sync failed",
                        account_id=account_id,
                        error=str(e),
                        error_type=type(e).__name__,
                    )
                await self.accounts.record_sync_error(account_id, str(e) or "History sync failed")
                raise

            logger.warning(
                "History cursor too old, performing full resync",
                account_id=account_id,
                email=account.email,
                cursor=cursor,
                error=str(e),
            )
            return await self.planner.full_resync(account_id)

        logger.info(
            "History sync applied",
            account_id=account_id,
            messages_added=result.messages_added,
            messages_deleted=result.messages_deleted,
            labels_changed=result.labels_changed,
            new_history_id=new_history_id,
        )
        return result

    async def _fetch_changes(
        self,
        account_id: str,
        access_token: str,
        cursor: str,
        cancel_event: asyncio.Event | None,
    ) -> tuple[list[ChangeRecord], str]:
        """Drain every page of the feed; returns records in feed order and the new cursor."""
        records: list[ChangeRecord] = []
        new_history_id = cursor
        page_token: str | None = None
        pages = 0

        while True:
            if cancel_event is not None and cancel_event.is_set():
                raise SyncCancelledError(
                    "History sync cancelled before completion", account_id=account_id
                )

            if pages >= self.max_pages:
                raise ProtocolError(
                    f"Change feed still paginating after {pages} pages",
                    account_id=account_id,
                    pages=pages,
                )

            page = await self.gmail.get_history(
                access_token, cursor, HISTORY_TYPES, page_token
            )
            pages += 1

            for entry in page.history:
                records.extend(parse_history_entry(entry))

            if page.history_id:
                new_history_id = page.history_id

            page_token = page.next_page_token
            if not page_token:
                break

        logger.debug(
            "Change feed drained",
            account_id=account_id,
            pages=pages,
            records=len(records),
        )
        return records, new_history_id

    async def _apply(self, account: EmailAccount, records: list[ChangeRecord]) -> SyncResult:
        result = SyncResult()

        for record in records:
            match record:
                case MessageAdded(message_id=message_id, thread_id=thread_id):
                    if not message_id or not thread_id:
                        continue
                    job = await self.queue.add(
                        JobName.FETCH_MESSAGE,
                        FetchMessagePayload(
                            account_id=account.id, message_id=message_id, thread_id=thread_id
                        ).to_payload(),
                        priority=JobPriority.FETCH_MESSAGE,
                        attempts=settings.FETCH_MESSAGE_ATTEMPTS,
                    )
                    result.enqueued_jobs.append(job)
                    result.messages_added += 1

                case MessageDeleted(message_id=message_id):
                    if not message_id:
                        continue
                    await self.emails.mark_as_deleted(account.workspace_id, message_id)
                    result.messages_deleted += 1

                case LabelsAdded(message_id=message_id, label_ids=label_ids):
                    if not message_id or label_ids is None:
                        continue
                    await self.emails.add_labels(account.workspace_id, message_id, list(label_ids))
                    result.labels_changed += 1

                case LabelsRemoved(message_id=message_id, label_ids=label_ids):
                    if not message_id or label_ids is None:
                        continue
                    await self.emails.remove_labels(
                        account.workspace_id, message_id, list(label_ids)
                    )
                    result.labels_changed += 1

                case _:
                    assert_never(record)

        return result
