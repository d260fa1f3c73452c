"""
Wiring for the mailbox sync services.

Every service receives its collaborators explicitly; this is the one place
that picks the production implementations.
"""

from dataclasses import dataclass

import redis.asyncio as redis

from mailsync.features.mail_sync.jobs.processors import HistorySyncProcessor, MessageFetchProcessor
from mailsync.features.mail_sync.repository.account_repository import EmailAccountRepository
from mailsync.features.mail_sync.repository.email_repository import EmailRepository
from mailsync.features.mail_sync.services.account_service import EmailAccountService
from mailsync.features.mail_sync.services.dispatch_queue import RedisDispatchQueue
from mailsync.features.mail_sync.services.full_resync import FullResyncPlanner
from mailsync.features.mail_sync.services.history_reconciler import HistoryReconciler
from mailsync.features.mail_sync.services.message_sync_service import MessageSyncService
from mailsync.features.mail_sync.services.notification_service import NotificationService
from mailsync.features.mail_sync.services.token_provider import AccountTokenProvider
from mailsync.services.gmail.google_client import GoogleGmailService
from mailsync.services.infrastructure.redis_client import redis_client


@dataclass(slots=True)
class MailSyncServices:
    queue: RedisDispatchQueue
    gmail: GoogleGmailService
    token_provider: AccountTokenProvider
    planner: FullResyncPlanner
    reconciler: HistoryReconciler
    message_sync: MessageSyncService
    account_service: EmailAccountService
    notifications: NotificationService

    def processors(self) -> list[HistorySyncProcessor | MessageFetchProcessor]:
        return [
            HistorySyncProcessor(self.reconciler, EmailAccountRepository),
            MessageFetchProcessor(self.message_sync, EmailAccountRepository),
        ]


def build_mail_sync_services(client: redis.Redis) -> MailSyncServices:
    queue = RedisDispatchQueue(client)
    gmail = GoogleGmailService()
    token_provider = AccountTokenProvider(EmailAccountRepository)
    planner = FullResyncPlanner(EmailAccountRepository, token_provider, gmail, queue)

    return MailSyncServices(
        queue=queue,
        gmail=gmail,
        token_provider=token_provider,
        planner=planner,
        reconciler=HistoryReconciler(
            EmailAccountRepository, EmailRepository, token_provider, gmail, queue, planner
        ),
        message_sync=MessageSyncService(
            EmailAccountRepository, EmailRepository, token_provider, gmail, queue
        ),
        account_service=EmailAccountService(
            EmailAccountRepository, token_provider, gmail, planner
        ),
        notifications=NotificationService(EmailAccountRepository, queue, redis_client),
    )
