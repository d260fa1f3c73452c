"""
Message-level sync work executed by queue jobs: fetching and storing a
message, recording attachment locations and the full-sync backfill.
"""

from mailsync.config import settings
from mailsync.features.mail_sync.domain.errors import AccountNotFoundError
from mailsync.features.mail_sync.domain.models import (
    DownloadAttachmentPayload,
    FetchMessagePayload,
    FullSyncPayload,
    JobName,
    JobPriority,
)
from mailsync.features.mail_sync.repository.account_repository import EmailAccountRepository
from mailsync.features.mail_sync.repository.email_repository import EmailRepository
from mailsync.features.mail_sync.services.dispatch_queue import DispatchQueue
from mailsync.features.mail_sync.services.full_resync import list_recent_message_refs
from mailsync.features.mail_sync.services.token_provider import AccountTokenProvider
from mailsync.infrastructure.observability.logging import get_logger
from mailsync.models.domain.account_domain import EmailAccount
from mailsync.services.gmail.google_client import GoogleGmailError, GoogleGmailService

logger = get_logger(__name__)


def attachment_placeholder_url(message_id: str, attachment_id: str, filename: str) -> str:
    """Location recorded for an attachment; bytes are not stored."""
    return f"attachment://{message_id}/{attachment_id}/{filename}"


class MessageSyncService:
    def __init__(
        self,
        accounts: type[EmailAccountRepository],
        emails: type[EmailRepository],
        token_provider: AccountTokenProvider,
        gmail: GoogleGmailService,
        queue: DispatchQueue,
    ):
        self.accounts = accounts
        self.emails = emails
        self.token_provider = token_provider
        self.gmail = gmail
        self.queue = queue

    async def _load_account(self, account_id: str) -> EmailAccount:
        account = await self.accounts.find_one(account_id)
        if account is None:
            raise AccountNotFoundError(account_id)
        return account

    async def fetch_and_store_message(self, payload: FetchMessagePayload) -> int | None:
        """
        Fetch one message and upsert it with its attachment descriptors.

        Returns the local email id, or None when the message no longer
        exists upstream.
        """
        account = await self._load_account(payload.account_id)
        access_token = await self.token_provider.get_fresh_access_token(account.id)

        try:
            message = await self.gmail.get_message(access_token, payload.message_id)
        except GoogleGmailError as e:
            if e.status_code == 404:
                logger.warning(
                    "Message vanished before it could be fetched",
                    account_id=account.id,
                    message_id=payload.message_id,
                )
                return None
            raise

        email_id = await self.emails.upsert_message(
            account.workspace_id, account.id, account.email, message
        )

        for attachment in message.attachments:
            await self.queue.add(
                JobName.DOWNLOAD_ATTACHMENT,
                DownloadAttachmentPayload(
                    account_id=account.id,
                    message_id=message.id,
                    attachment_id=attachment.attachment_id,
                    filename=attachment.filename,
                    mime_type=attachment.mime_type,
                    size=attachment.size,
                ).to_payload(),
                priority=JobPriority.DOWNLOAD_ATTACHMENT,
                attempts=settings.FETCH_MESSAGE_ATTEMPTS,
            )

        logger.info(
            "Message synced",
            account_id=account.id,
            message_id=message.id,
            thread_id=message.thread_id,
            attachments=len(message.attachments),
        )
        return email_id

    async def download_attachment(self, payload: DownloadAttachmentPayload) -> str | None:
        """Record the attachment location; returns None when there is nothing to record."""
        account = await self._load_account(payload.account_id)
        access_token = await self.token_provider.get_fresh_access_token(account.id)

        email = await self.emails.find_by_message_id(account.workspace_id, payload.message_id)
        if email is None:
            logger.warning(
                "Email not stored yet for attachment",
                account_id=account.id,
                message_id=payload.message_id,
                attachment_id=payload.attachment_id,
            )
            return None

        attachment = await self.gmail.get_attachment(
            access_token, payload.message_id, payload.attachment_id
        )
        if not attachment.get("data"):
            logger.warning(
                "Attachment has no data",
                account_id=account.id,
                message_id=payload.message_id,
                attachment_id=payload.attachment_id,
            )
            return None

        url = attachment_placeholder_url(
            payload.message_id, payload.attachment_id, payload.filename
        )
        await self.emails.set_attachment_url(
            account.workspace_id, payload.message_id, payload.attachment_id, url
        )

        logger.info(
            "Attachment recorded",
            account_id=account.id,
            message_id=payload.message_id,
            attachment_id=payload.attachment_id,
            size=payload.size,
        )
        return url

    async def run_full_sync(self, payload: FullSyncPayload) -> int:
        """
        Enqueue fetches for the most recent messages.

        The cursor was already re-seeded when this job was planned, so only
        the sync status is refreshed here.
        """
        account = await self._load_account(payload.account_id)
        access_token = await self.token_provider.get_fresh_access_token(account.id)

        refs = await list_recent_message_refs(self.gmail, access_token, payload.max_results)

        enqueued = 0
        for ref in refs:
            if not ref.id or not ref.thread_id:
                continue
            await self.queue.add(
                JobName.FETCH_MESSAGE,
                FetchMessagePayload(
                    account_id=account.id, message_id=ref.id, thread_id=ref.thread_id
                ).to_payload(),
                priority=JobPriority.FETCH_MESSAGE,
                attempts=settings.FETCH_MESSAGE_ATTEMPTS,
            )
            enqueued += 1

        await self.accounts.record_successful_sync(account.id)

        logger.info(
            "Full sync completed",
            account_id=account.id,
            messages_enqueued=enqueued,
            max_results=payload.max_results,
        )
        return enqueued
