"""
Email account domain model.
Tokens are never carried on this model; the token provider reads the
encrypted credential pair separately.
"""

from datetime import datetime
from enum import StrEnum

from pydantic import BaseModel


class SyncStatus(StrEnum):
    ACTIVE = "ACTIVE"
    PAUSED = "PAUSED"
    ERROR = "ERROR"


class SyncMode(StrEnum):
    POLLING = "POLLING"
    PUSH = "PUSH"


class EmailAccount(BaseModel):
    """Domain model for a connected mailbox."""

    id: str
    workspace_id: str
    user_id: str
    email: str
    provider: str = "gmail"
    sync_enabled: bool = True
    sync_mode: SyncMode = SyncMode.POLLING
    sync_status: SyncStatus = SyncStatus.ACTIVE
    history_id: str | None = None
    last_error: str | None = None
    last_sync_at: datetime | None = None
    watch_expiration: datetime | None = None

    def is_schedulable(self) -> bool:
        """Scheduled syncs skip disabled and paused accounts."""
        return self.sync_enabled and self.sync_status != SyncStatus.PAUSED


class AccountCredentials(BaseModel):
    """Encrypted OAuth credential pair as stored on the account row."""

    account_id: str
    access_token_encrypted: bytes
    refresh_token_encrypted: bytes
    token_expires_at: datetime
