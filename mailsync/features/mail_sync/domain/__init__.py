"""
Domain subpackage for the mailbox sync feature.
"""

from .errors import (
    AccountNotFoundError,
    MailSyncError,
    ProtocolError,
    ProviderError,
    StaleCursorError,
    SyncCancelledError,
    TokenRefreshError,
    is_stale_cursor_error,
)
from .models import (
    ChangeRecord,
    DownloadAttachmentPayload,
    FetchMessagePayload,
    FullSyncPayload,
    HistorySyncPayload,
    Job,
    JobName,
    JobPriority,
    LabelsAdded,
    LabelsRemoved,
    MessageAdded,
    MessageDeleted,
    SyncResult,
    parse_history_entry,
)

__all__ = [
    "AccountNotFoundError",
    "ChangeRecord",
    "DownloadAttachmentPayload",
    "FetchMessagePayload",
    "FullSyncPayload",
    "HistorySyncPayload",
    "Job",
    "JobName",
    "JobPriority",
    "LabelsAdded",
    "LabelsRemoved",
    "MailSyncError",
    "MessageAdded",
    "MessageDeleted",
    "ProtocolError",
    "ProviderError",
    "StaleCursorError",
    "SyncCancelledError",
    "SyncResult",
    "TokenRefreshError",
    "is_stale_cursor_error",
    "parse_history_entry",
]
