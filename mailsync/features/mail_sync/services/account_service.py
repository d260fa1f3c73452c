"""
Connected-account lifecycle: connecting a mailbox, pausing/resuming sync,
push-watch management and status reporting.
"""

import uuid
from datetime import UTC, datetime, timedelta
from typing import Any

from mailsync.config import settings
from mailsync.features.mail_sync.domain.errors import AccountNotFoundError, MailSyncError
from mailsync.features.mail_sync.repository.account_repository import EmailAccountRepository
from mailsync.features.mail_sync.services.full_resync import FullResyncPlanner
from mailsync.features.mail_sync.services.token_provider import AccountTokenProvider
from mailsync.infrastructure.observability.logging import get_logger
from mailsync.models.domain.account_domain import EmailAccount, SyncMode
from mailsync.services.gmail.google_client import GoogleGmailError, GoogleGmailService
from mailsync.services.infrastructure.encryption_service import encrypt_oauth_tokens

logger = get_logger(__name__)


class AccountServiceError(MailSyncError):
    """Account lifecycle failure."""


class EmailAccountService:
    def __init__(
        self,
        accounts: type[EmailAccountRepository],
        token_provider: AccountTokenProvider,
        gmail: GoogleGmailService,
        planner: FullResyncPlanner | None = None,
    ):
        self.accounts = accounts
        self.token_provider = token_provider
        self.gmail = gmail
        self.planner = planner

    async def connect_account(
        self,
        *,
        workspace_id: str,
        user_id: str,
        email: str,
        access_token: str,
        refresh_token: str,
        token_expires_at: datetime,
    ) -> EmailAccount:
        """
        Store a newly authorized mailbox with its cursor seeded from the profile,
        then enqueue fetches for its most recent messages.

        A failed backfill leaves the account connected in ERROR status; the
        next scheduled pass picks it up from the stored cursor.

        Raises:
            AccountServiceError: The token belongs to a different mailbox
        """
        profile = await self.gmail.get_profile(access_token)
        if (profile.email_address or "").lower() != email.lower():
            raise AccountServiceError("Email address mismatch", recoverable=False)

        access_encrypted, refresh_encrypted = encrypt_oauth_tokens(access_token, refresh_token)
        account = await self.accounts.create(
            account_id=str(uuid.uuid4()),
            workspace_id=workspace_id,
            user_id=user_id,
            email=email,
            access_token_encrypted=access_encrypted,
            refresh_token_encrypted=refresh_encrypted,
            token_expires_at=token_expires_at,
            history_id=profile.history_id,
        )

        if self.planner is not None:
            try:
                await self.planner.seed_new_account(account.id)
            except MailSyncError as e:
                logger.error("Initial backfill failed", account_id=account.id, error=str(e))
            else:
                account = await self.accounts.find_one(account.id) or account

        return account

    async def enable_sync(self, account_id: str) -> None:
        await self._require(account_id)
        await self.accounts.enable_sync(account_id)
        logger.info("Sync enabled", account_id=account_id)

    async def disable_sync(self, account_id: str) -> None:
        await self._require(account_id)
        await self.accounts.disable_sync(account_id)
        logger.info("Sync paused", account_id=account_id)

    async def delete_account(self, account_id: str) -> None:
        account = await self._require(account_id)

        if account.sync_mode == SyncMode.PUSH:
            try:
                access_token = await self.token_provider.get_fresh_access_token(account_id)
                await self.gmail.stop_watch(access_token)
            except MailSyncError as e:
                logger.warning(
                    "Could not stop Gmail watch before delete",
                    account_id=account_id,
                    error=str(e),
                )

        await self.accounts.delete(account_id)

    async def renew_watch(self, account_id: str) -> datetime:
        """Start or renew the Gmail push watch; returns the new expiration."""
        if not settings.GMAIL_PUBSUB_TOPIC:
            raise AccountServiceError(
                "GMAIL_PUBSUB_TOPIC not configured", account_id=account_id, recoverable=False
            )

        await self._require(account_id)
        access_token = await self.token_provider.get_fresh_access_token(account_id)

        try:
            response = await self.gmail.watch_mailbox(access_token, settings.GMAIL_PUBSUB_TOPIC)
        except GoogleGmailError as e:
            await self.accounts.record_sync_error(account_id, f"Watch renewal failed: {e}")
            raise

        # expiration is epoch milliseconds as a string
        expiration = datetime.fromtimestamp(int(response["expiration"]) / 1000, tz=UTC)
        await self.accounts.update(
            account_id, {"watch_expiration": expiration, "sync_mode": SyncMode.PUSH}
        )

        logger.info(
            "Gmail watch renewed",
            account_id=account_id,
            expiration=expiration.isoformat(),
        )
        return expiration

    async def find_expiring_watches(self, hours_ahead: int | None = None) -> list[EmailAccount]:
        hours = hours_ahead if hours_ahead is not None else settings.WATCH_RENEWAL_HOURS_AHEAD
        return await self.accounts.find_expiring_watches(datetime.now(UTC) + timedelta(hours=hours))

    async def get_sync_status(self, workspace_id: str) -> list[dict[str, Any]]:
        accounts = await self.accounts.find_by_workspace(workspace_id)

        statuses = []
        for account in accounts:
            statuses.append(
                {
                    "id": account.id,
                    "email": account.email,
                    "syncEnabled": account.sync_enabled,
                    "syncMode": account.sync_mode.value,
                    "syncStatus": account.sync_status.value,
                    "lastSyncAt": account.last_sync_at,
                    "lastError": account.last_error,
                    "emailCount": await self.accounts.count_emails(account.id),
                    "watchExpiration": account.watch_expiration,
                }
            )
        return statuses

    async def _require(self, account_id: str) -> EmailAccount:
        account = await self.accounts.find_one(account_id)
        if account is None:
            raise AccountNotFoundError(account_id)
        return account
