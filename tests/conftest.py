from datetime import UTC, datetime, timedelta

import pytest
from cryptography.fernet import Fernet

from mailsync.config import settings
from mailsync.features.mail_sync.domain.models import Job
from mailsync.models.domain.account_domain import EmailAccount, SyncStatus
from mailsync.models.domain.gmail_domain import (
    GmailHistoryPage,
    GmailMessage,
    GmailMessageRef,
    GmailProfile,
)

TEST_ENCRYPTION_KEY = Fernet.generate_key().decode("utf-8")


@pytest.fixture(autouse=True)
def encryption_key(monkeypatch):
    monkeypatch.setattr(settings, "ENCRYPTION_KEY", TEST_ENCRYPTION_KEY)
    return TEST_ENCRYPTION_KEY


def make_account(**overrides) -> EmailAccount:
    data = {
        "id": "acc-1",
        "workspace_id": "ws-1",
        "user_id": "user-1",
        "email": "owner@example.com",
        "history_id": "100",
    }
    data.update(overrides)
    return EmailAccount(**data)


class FakeAccountRepository:
    """In-memory stand-in for EmailAccountRepository."""

    def __init__(self, *accounts: EmailAccount):
        self.accounts: dict[str, EmailAccount] = {a.id: a for a in accounts}
        self.credentials: dict[str, object] = {}
        self.calls: list[tuple] = []

    def add(self, account: EmailAccount) -> EmailAccount:
        self.accounts[account.id] = account
        return account

    async def find_one(self, account_id):
        self.calls.append(("find_one", account_id))
        return self.accounts.get(account_id)

    async def find_by_email(self, email):
        for account in self.accounts.values():
            if account.email.lower() == email.lower():
                return account
        return None

    async def find_by_workspace(self, workspace_id):
        return [a for a in self.accounts.values() if a.workspace_id == workspace_id]

    async def find_schedulable(self):
        return [a for a in self.accounts.values() if a.is_schedulable()]

    async def find_expiring_watches(self, expires_before):
        return [
            a
            for a in self.accounts.values()
            if a.sync_enabled
            and a.sync_mode == "PUSH"
            and (a.watch_expiration is None or a.watch_expiration <= expires_before)
        ]

    async def get_credentials(self, account_id):
        return self.credentials.get(account_id)

    async def update(self, account_id, patch):
        self.calls.append(("update", account_id, patch))
        account = self.accounts.get(account_id)
        if account is None:
            return 0
        model_fields = {k: v for k, v in patch.items() if k in EmailAccount.model_fields}
        self.accounts[account_id] = account.model_copy(update=model_fields)
        return 1

    async def record_sync_error(self, account_id, error_message):
        self.calls.append(("record_sync_error", account_id, error_message))
        account = self.accounts.get(account_id)
        if account is not None:
            self.accounts[account_id] = account.model_copy(
                update={"sync_status": SyncStatus.ERROR, "last_error": error_message}
            )

    async def record_successful_sync(self, account_id, history_id=None):
        self.calls.append(("record_successful_sync", account_id, history_id))
        account = self.accounts.get(account_id)
        if account is not None:
            update = {
                "sync_status": SyncStatus.ACTIVE,
                "last_error": None,
                "last_sync_at": datetime.now(UTC),
            }
            if history_id:
                update["history_id"] = history_id
            self.accounts[account_id] = account.model_copy(update=update)

    async def enable_sync(self, account_id):
        await self.update(account_id, {"sync_enabled": True, "sync_status": SyncStatus.ACTIVE})

    async def disable_sync(self, account_id):
        await self.update(account_id, {"sync_enabled": False, "sync_status": SyncStatus.PAUSED})

    async def delete(self, account_id):
        self.calls.append(("delete", account_id))
        self.accounts.pop(account_id, None)

    async def count_emails(self, account_id):
        return 7

    async def create(self, **kwargs):
        self.calls.append(("create", kwargs))
        account = make_account(
            id=kwargs["account_id"],
            workspace_id=kwargs["workspace_id"],
            user_id=kwargs["user_id"],
            email=kwargs["email"],
            history_id=kwargs["history_id"],
        )
        return self.add(account)

    def call_names(self) -> list[str]:
        return [call[0] for call in self.calls]


class FakeEmailRepository:
    """In-memory stand-in for EmailRepository with the same idempotent semantics."""

    def __init__(self):
        self.rows: dict[str, dict] = {}
        self.attachment_urls: dict[tuple[str, str], str] = {}
        self.calls: list[tuple] = []

    def seed(self, message_id: str, labels: list[str] | None = None) -> dict:
        row = {"id": len(self.rows) + 1, "labels": list(labels or []), "deleted_at": None}
        self.rows[message_id] = row
        return row

    async def mark_as_deleted(self, workspace_id, message_id):
        self.calls.append(("mark_as_deleted", message_id))
        row = self.rows.get(message_id)
        if row is None:
            return 0
        if row["deleted_at"] is None:
            row["deleted_at"] = datetime.now(UTC)
        return 1

    async def add_labels(self, workspace_id, message_id, label_ids):
        self.calls.append(("add_labels", message_id, tuple(label_ids)))
        row = self.rows.get(message_id)
        if row is None:
            return 0
        for label in label_ids:
            if label not in row["labels"]:
                row["labels"].append(label)
        return 1

    async def remove_labels(self, workspace_id, message_id, label_ids):
        self.calls.append(("remove_labels", message_id, tuple(label_ids)))
        row = self.rows.get(message_id)
        if row is None:
            return 0
        row["labels"] = [label for label in row["labels"] if label not in label_ids]
        return 1

    async def upsert_message(self, workspace_id, account_id, account_email, message):
        self.calls.append(("upsert_message", message.id))
        row = self.rows.get(message.id)
        if row is None:
            row = self.seed(message.id)
        row["labels"] = list(message.label_ids)
        row["attachments"] = [a.attachment_id for a in message.attachments]
        return row["id"]

    async def find_by_message_id(self, workspace_id, message_id):
        row = self.rows.get(message_id)
        return {"id": row["id"], "message_id": message_id} if row else None

    async def set_attachment_url(self, workspace_id, message_id, attachment_id, url):
        self.calls.append(("set_attachment_url", message_id, attachment_id, url))
        self.attachment_urls[(message_id, attachment_id)] = url
        return 1


class FakeGmailClient:
    """Scripted Gmail client; records every call."""

    def __init__(
        self,
        history_pages: list[dict] | None = None,
        profile: dict | None = None,
        message_pages: list[dict] | None = None,
        messages: dict[str, dict] | None = None,
    ):
        self.history_pages = list(history_pages or [])
        self.profile = profile or {"emailAddress": "owner@example.com", "historyId": "500"}
        self.message_pages = list(message_pages or [])
        self.messages = messages or {}
        self.attachments: dict[tuple[str, str], dict] = {}
        self.history_error: Exception | None = None
        self.message_error: Exception | None = None
        self.calls: list[tuple] = []

    async def get_profile(self, access_token):
        self.calls.append(("get_profile",))
        return GmailProfile(self.profile)

    async def get_history(self, access_token, start_history_id, history_types=None, page_token=None):
        self.calls.append(("get_history", start_history_id, page_token))
        if self.history_error is not None:
            raise self.history_error
        index = len([c for c in self.calls if c[0] == "get_history"]) - 1
        if index < len(self.history_pages):
            return GmailHistoryPage(self.history_pages[index])
        return GmailHistoryPage(self.history_pages[-1] if self.history_pages else {})

    async def list_message_refs(self, access_token, query=None, page_token=None, max_results=100):
        self.calls.append(("list_message_refs", page_token, max_results))
        if not self.message_pages:
            return [], None
        index = len([c for c in self.calls if c[0] == "list_message_refs"]) - 1
        page = self.message_pages[min(index, len(self.message_pages) - 1)]
        refs = [GmailMessageRef(item) for item in page.get("messages", [])][:max_results]
        return refs, page.get("nextPageToken")

    async def get_message(self, access_token, message_id, format="full"):
        self.calls.append(("get_message", message_id))
        if self.message_error is not None:
            raise self.message_error
        return GmailMessage(self.messages[message_id])

    async def get_attachment(self, access_token, message_id, attachment_id):
        self.calls.append(("get_attachment", message_id, attachment_id))
        return self.attachments.get((message_id, attachment_id), {"size": 3, "data": "YWJj"})

    async def watch_mailbox(self, access_token, topic_name, label_ids=None):
        self.calls.append(("watch_mailbox", topic_name))
        expires = datetime.now(UTC) + timedelta(days=7)
        return {"historyId": "900", "expiration": str(int(expires.timestamp() * 1000))}

    async def stop_watch(self, access_token):
        self.calls.append(("stop_watch",))

    async def close(self):
        pass

    def call_names(self) -> list[str]:
        return [call[0] for call in self.calls]


class FakeDispatchQueue:
    def __init__(self):
        self.jobs: list[Job] = []

    async def add(self, name, payload, *, priority, attempts=3):
        job = Job(
            id=f"job-{len(self.jobs) + 1}",
            name=str(name),
            payload=payload,
            priority=int(priority),
            attempts=attempts,
        )
        self.jobs.append(job)
        return job

    def names(self) -> list[str]:
        return [job.name for job in self.jobs]


class FakeTokenProvider:
    def __init__(self, token: str = "access-token", error: Exception | None = None):
        self.token = token
        self.error = error
        self.calls: list[str] = []

    async def get_fresh_access_token(self, account_id):
        self.calls.append(account_id)
        if self.error is not None:
            raise self.error
        return self.token


class FakeRedis:
    def __init__(self):
        self.store: dict[str, str] = {}
        self.hashes: dict[str, dict[str, int]] = {}
        self.expiries: dict[str, int] = {}

    async def set_if_absent(self, key: str, value: str, ttl_s: int) -> bool:
        if key in self.store:
            return False
        self.store[key] = value
        self.expiries[key] = ttl_s
        return True

    async def delete(self, key: str) -> None:
        self.store.pop(key, None)

    async def get_client(self):
        return self

    async def hincrby(self, key: str, field: str, amount: int = 1) -> int:
        bucket = self.hashes.setdefault(key, {})
        bucket[field] = bucket.get(field, 0) + amount
        return bucket[field]

    async def hgetall(self, key: str) -> dict[str, str]:
        return {k: str(v) for k, v in self.hashes.get(key, {}).items()}

    async def expire(self, key: str, seconds: int) -> bool:
        self.expiries[key] = seconds
        return True


@pytest.fixture
def account():
    return make_account()


@pytest.fixture
def accounts(account):
    return FakeAccountRepository(account)


@pytest.fixture
def emails():
    return FakeEmailRepository()


@pytest.fixture
def gmail():
    return FakeGmailClient()


@pytest.fixture
def queue():
    return FakeDispatchQueue()


@pytest.fixture
def token_provider():
    return FakeTokenProvider()


@pytest.fixture
def fake_redis():
    return FakeRedis()


@pytest.fixture
def account_factory():
    return make_account
