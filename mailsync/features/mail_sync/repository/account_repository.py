"""
Persistence for connected email accounts.

Owns the sync-state bookkeeping (cursor, status, last error) so services
never write those columns directly.
"""

from datetime import datetime
from typing import Any

from mailsync.db.helpers import DatabaseError, execute_query, fetch_all, fetch_one, with_db_retry
from mailsync.infrastructure.observability.logging import get_logger
from mailsync.models.domain.account_domain import (
    AccountCredentials,
    EmailAccount,
    SyncMode,
    SyncStatus,
)

logger = get_logger(__name__)

MAX_ERROR_LENGTH = 500


class AccountRepositoryError(DatabaseError):
    """More specific exception for account repository failures."""


class EmailAccountRepository:
    """Persistence helpers for the email_accounts table."""

    ACCOUNT_SELECT_COLUMNS = """
        id, workspace_id, user_id, email, provider, sync_enabled, sync_mode,
        sync_status, history_id, last_error, last_sync_at, watch_expiration
    """

    UPDATABLE_COLUMNS = frozenset(
        {
            "sync_enabled",
            "sync_mode",
            "sync_status",
            "history_id",
            "last_error",
            "last_sync_at",
            "watch_expiration",
            "access_token",
            "refresh_token",
            "token_expires_at",
        }
    )

    @classmethod
    def _row_to_account(cls, row: dict | None) -> EmailAccount | None:
        if not row:
            return None

        return EmailAccount(
            id=str(row["id"]),
            workspace_id=str(row["workspace_id"]),
            user_id=str(row["user_id"]),
            email=row["email"],
            provider=row.get("provider") or "gmail",
            sync_enabled=bool(row.get("sync_enabled", True)),
            sync_mode=row.get("sync_mode") or SyncMode.POLLING,
            sync_status=row.get("sync_status") or SyncStatus.ACTIVE,
            history_id=row.get("history_id"),
            last_error=row.get("last_error"),
            last_sync_at=row.get("last_sync_at"),
            watch_expiration=row.get("watch_expiration"),
        )

    @classmethod
    @with_db_retry(max_retries=3, base_delay=0.1)
    async def find_one(cls, account_id: str) -> EmailAccount | None:
        query = f"SELECT {cls.ACCOUNT_SELECT_COLUMNS} FROM email_accounts WHERE id = %s"
        return cls._row_to_account(await fetch_one(query, (account_id,)))

    @classmethod
    async def find_by_email(cls, email: str) -> EmailAccount | None:
        query = f"""
            SELECT {cls.ACCOUNT_SELECT_COLUMNS}
            FROM email_accounts
            WHERE lower(email) = lower(%s)
            ORDER BY created_at ASC
            LIMIT 1
        """
        return cls._row_to_account(await fetch_one(query, (email,)))

    @classmethod
    async def find_by_workspace(cls, workspace_id: str) -> list[EmailAccount]:
        query = f"""
            SELECT {cls.ACCOUNT_SELECT_COLUMNS}
            FROM email_accounts
            WHERE workspace_id = %s
            ORDER BY created_at DESC
        """
        rows = await fetch_all(query, (workspace_id,))
        return [cls._row_to_account(row) for row in rows]

    @classmethod
    async def find_schedulable(cls) -> list[EmailAccount]:
        """Accounts eligible for scheduled reconciliation (enabled, not paused)."""
        query = f"""
            SELECT {cls.ACCOUNT_SELECT_COLUMNS}
            FROM email_accounts
            WHERE sync_enabled = true
              AND sync_status <> %s
            ORDER BY last_sync_at ASC NULLS FIRST
        """
        rows = await fetch_all(query, (SyncStatus.PAUSED.value,))
        return [cls._row_to_account(row) for row in rows]

    @classmethod
    async def find_expiring_watches(cls, expires_before: datetime) -> list[EmailAccount]:
        query = f"""
            SELECT {cls.ACCOUNT_SELECT_COLUMNS}
            FROM email_accounts
            WHERE sync_enabled = true
              AND sync_mode = %s
              AND (watch_expiration IS NULL OR watch_expiration <= %s)
        """
        rows = await fetch_all(query, (SyncMode.PUSH.value, expires_before))
        return [cls._row_to_account(row) for row in rows]

    @classmethod
    async def get_credentials(cls, account_id: str) -> AccountCredentials | None:
        query = """
            SELECT id, access_token, refresh_token, token_expires_at
            FROM email_accounts
            WHERE id = %s
        """
        row = await fetch_one(query, (account_id,))
        if not row:
            return None

        return AccountCredentials(
            account_id=str(row["id"]),
            access_token_encrypted=bytes(row["access_token"]),
            refresh_token_encrypted=bytes(row["refresh_token"]),
            token_expires_at=row["token_expires_at"],
        )

    @classmethod
    async def create(
        cls,
        *,
        account_id: str,
        workspace_id: str,
        user_id: str,
        email: str,
        access_token_encrypted: bytes,
        refresh_token_encrypted: bytes,
        token_expires_at: datetime,
        history_id: str | None,
    ) -> EmailAccount:
        """Insert a newly connected account, seeding its cursor."""
        query = f"""
            INSERT INTO email_accounts (
                id, workspace_id, user_id, email, access_token, refresh_token,
                token_expires_at, history_id
            )
            VALUES (%s, %s, %s, %s, %s, %s, %s, %s)
            RETURNING {cls.ACCOUNT_SELECT_COLUMNS}
        """
        row = await fetch_one(
            query,
            (
                account_id,
                workspace_id,
                user_id,
                email,
                access_token_encrypted,
                refresh_token_encrypted,
                token_expires_at,
                history_id,
            ),
        )
        if not row:
            raise AccountRepositoryError("Failed to create email account", operation="create")

        logger.info("Email account created", account_id=account_id, history_id=history_id)
        return cls._row_to_account(row)

    @classmethod
    async def update(cls, account_id: str, patch: dict[str, Any]) -> int:
        """Apply a column patch; unknown columns are rejected."""
        unknown = set(patch) - cls.UPDATABLE_COLUMNS
        if unknown:
            raise ValueError(f"Cannot update email_accounts columns: {sorted(unknown)}")
        if not patch:
            return 0

        assignments = ", ".join(f"{column} = %s" for column in patch)
        query = f"UPDATE email_accounts SET {assignments}, updated_at = NOW() WHERE id = %s"
        params = tuple(
            value.value if isinstance(value, (SyncStatus, SyncMode)) else value
            for value in patch.values()
        )
        return await execute_query(query, (*params, account_id))

    @classmethod
    async def record_sync_error(cls, account_id: str, error_message: str) -> None:
        """Move the account to ERROR with a non-empty message."""
        message = (error_message or "Sync failed")[:MAX_ERROR_LENGTH]
        query = """
            UPDATE email_accounts
            SET sync_status = %s,
                last_error = %s,
                updated_at = NOW()
            WHERE id = %s
        """
        await execute_query(query, (SyncStatus.ERROR.value, message, account_id))
        logger.warning("Account sync error recorded", account_id=account_id, error=message)

    @classmethod
    async def record_successful_sync(cls, account_id: str, history_id: str | None = None) -> None:
        """Mark ACTIVE, clear the error, stamp last_sync_at and advance the cursor if given."""
        query = """
            UPDATE email_accounts
            SET sync_status = %s,
                last_error = NULL,
                last_sync_at = NOW(),
                history_id = COALESCE(%s, history_id),
                updated_at = NOW()
            WHERE id = %s
        """
        await execute_query(query, (SyncStatus.ACTIVE.value, history_id, account_id))
        logger.debug("Account sync recorded", account_id=account_id, history_id=history_id)

    @classmethod
    async def enable_sync(cls, account_id: str) -> None:
        await cls.update(account_id, {"sync_enabled": True, "sync_status": SyncStatus.ACTIVE})

    @classmethod
    async def disable_sync(cls, account_id: str) -> None:
        await cls.update(account_id, {"sync_enabled": False, "sync_status": SyncStatus.PAUSED})

    @classmethod
    async def delete(cls, account_id: str) -> None:
        await execute_query("DELETE FROM email_accounts WHERE id = %s", (account_id,))
        logger.info("Email account deleted", account_id=account_id)

    @classmethod
    async def count_emails(cls, account_id: str) -> int:
        row = await fetch_one(
            "SELECT COUNT(*) AS total FROM emails WHERE account_id = %s AND deleted_at IS NULL",
            (account_id,),
        )
        return int(row["total"]) if row else 0
