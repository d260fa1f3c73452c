"""
Error taxonomy for mailbox synchronization.

AccountNotFoundError is terminal. StaleCursorError never reaches callers of
reconcile(); it triggers the full-resync fallback. ProviderError is a
transient upstream failure and is eligible for queue-level retry.
ProtocolError means the change feed broke its pagination contract.
"""


class MailSyncError(Exception):
    """Base class for sync failures."""

    def __init__(self, message: str, *, account_id: str | None = None, recoverable: bool = True):
        super().__init__(message)
        self.account_id = account_id
        self.recoverable = recoverable


class AccountNotFoundError(MailSyncError):
    def __init__(self, account_id: str):
        super().__init__(
            f"Email account not found: {account_id}", account_id=account_id, recoverable=False
        )


class StaleCursorError(MailSyncError):
    """The stored historyId is older than the provider retains."""


class ProviderError(MailSyncError):
    """Upstream mail provider failure."""

    def __init__(
        self,
        message: str,
        *,
        status_code: int | None = None,
        error_code: str | None = None,
        account_id: str | None = None,
        recoverable: bool = True,
    ):
        super().__init__(message, account_id=account_id, recoverable=recoverable)
        self.status_code = status_code
        self.error_code = error_code


class ProtocolError(MailSyncError):
    """Change feed kept returning page tokens past the safety bound."""

    def __init__(self, message: str, *, account_id: str | None = None, pages: int = 0):
        super().__init__(message, account_id=account_id, recoverable=False)
        self.pages = pages


class TokenRefreshError(MailSyncError):
    """Access token could not be refreshed for the account."""


class SyncCancelledError(MailSyncError):
    """A reconciliation pass was interrupted before its cursor was persisted."""


def is_stale_cursor_error(exc: BaseException) -> bool:
    """
    Decide whether a change-feed failure means the cursor is too old.

    Gmail answers an expired startHistoryId with 404; some client paths only
    surface the message, so a message mentioning "historyId" also counts.
    """
    if isinstance(exc, StaleCursorError):
        return True

    status_code = getattr(exc, "status_code", None)
    if status_code == 404 or getattr(exc, "code", None) == 404:
        return True

    return "historyId" in str(exc)
