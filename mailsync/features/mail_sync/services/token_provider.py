"""
Fresh access tokens for connected mailboxes.
"""

from datetime import UTC, datetime, timedelta

from mailsync.config import settings
from mailsync.features.mail_sync.domain.errors import AccountNotFoundError, TokenRefreshError
from mailsync.features.mail_sync.repository.account_repository import EmailAccountRepository
from mailsync.infrastructure.observability.logging import get_logger
from mailsync.services.google_oauth_service import GoogleOAuthError, GoogleOAuthService
from mailsync.services.infrastructure.encryption_service import (
    EncryptionError,
    decrypt_token,
    encrypt_oauth_tokens,
)

logger = get_logger(__name__)


class AccountTokenProvider:
    """
    Returns a usable access token for an account, refreshing it when it
    expires within the configured buffer.
    """

    def __init__(
        self,
        accounts: type[EmailAccountRepository] = EmailAccountRepository,
        oauth: GoogleOAuthService | None = None,
        buffer_minutes: int | None = None,
    ):
        self.accounts = accounts
        self.oauth = oauth or GoogleOAuthService()
        self.buffer = timedelta(
            minutes=buffer_minutes
            if buffer_minutes is not None
            else settings.TOKEN_REFRESH_BUFFER_MINUTES
        )

    async def get_fresh_access_token(self, account_id: str) -> str:
        credentials = await self.accounts.get_credentials(account_id)
        if credentials is None:
            raise AccountNotFoundError(account_id)

        try:
            if credentials.token_expires_at > datetime.now(UTC) + self.buffer:
                return decrypt_token(credentials.access_token_encrypted)

            logger.info(
                "Access token expiring, refreshing",
                account_id=account_id,
                expires_at=credentials.token_expires_at.isoformat(),
            )

            refresh_token = decrypt_token(credentials.refresh_token_encrypted)
            token_response = await self.oauth.refresh_access_token(refresh_token)

            access_encrypted, refresh_encrypted = encrypt_oauth_tokens(
                token_response.access_token, token_response.refresh_token
            )
            await self.accounts.update(
                account_id,
                {
                    "access_token": access_encrypted,
                    "refresh_token": refresh_encrypted,
                    "token_expires_at": token_response.expires_at,
                },
            )

            logger.info(
                "Access token refreshed",
                account_id=account_id,
                expires_in=token_response.expires_in,
            )
            return token_response.access_token

        except (GoogleOAuthError, EncryptionError) as e:
            message = f"Failed to refresh access token: {e}"
            logger.error("Token refresh failed", account_id=account_id, error=str(e))
            await self.accounts.record_sync_error(account_id, message)
            raise TokenRefreshError(message, account_id=account_id) from e
