"""
Encryption service for OAuth tokens stored on email accounts.
Uses Fernet symmetric encryption for secure token storage.
"""

from cryptography.fernet import Fernet, InvalidToken

from mailsync.config import settings
from mailsync.infrastructure.observability.logging import get_logger

logger = get_logger(__name__)


class EncryptionError(Exception):
    """Custom exception for encryption/decryption errors."""

    pass


def _get_fernet() -> Fernet:
    """
    Get Fernet instance with encryption key from environment.

    Raises:
        EncryptionError: If encryption key is not configured
    """
    if not settings.ENCRYPTION_KEY:
        raise EncryptionError("ENCRYPTION_KEY not configured in environment")

    try:
        return Fernet(settings.ENCRYPTION_KEY.encode("utf-8"))
    except Exception as e:
        logger.error("Failed to initialize Fernet cipher", error=str(e))
        raise EncryptionError(f"Invalid encryption key: {e}") from e


def encrypt_token(token: str) -> bytes:
    """
    Encrypt a token string for database storage.

    Args:
        token: Plain text token to encrypt

    Returns:
        bytes: Encrypted token (ready for BYTEA storage)

    Raises:
        EncryptionError: If encryption fails
    """
    if not token or not isinstance(token, str):
        raise EncryptionError("Token must be a non-empty string")

    try:
        return _get_fernet().encrypt(token.encode("utf-8"))
    except EncryptionError:
        raise
    except Exception as e:
        logger.error("Failed to encrypt token", error=str(e))
        raise EncryptionError(f"Encryption failed: {e}") from e


def decrypt_token(encrypted_token: bytes | memoryview) -> str:
    """
    Decrypt a token from database storage.

    Args:
        encrypted_token: Encrypted token bytes from database

    Returns:
        str: Decrypted plain text token

    Raises:
        EncryptionError: If decryption fails or token is invalid
    """
    if isinstance(encrypted_token, memoryview):
        encrypted_token = encrypted_token.tobytes()

    if not encrypted_token or not isinstance(encrypted_token, bytes):
        raise EncryptionError("Encrypted token must be non-empty bytes")

    try:
        return _get_fernet().decrypt(encrypted_token).decode("utf-8")
    except InvalidToken as e:
        logger.error("Token decryption failed - invalid token")
        raise EncryptionError("Invalid or corrupted token") from e
    except EncryptionError:
        raise
    except Exception as e:
        logger.error("Failed to decrypt token", error=str(e))
        raise EncryptionError(f"Decryption failed: {e}") from e


def encrypt_oauth_tokens(access_token: str, refresh_token: str) -> tuple[bytes, bytes]:
    """Encrypt an OAuth access/refresh token pair."""
    return encrypt_token(access_token), encrypt_token(refresh_token)


def generate_new_key() -> str:
    """
    Generate a new Fernet encryption key.

    Store the result in ENCRYPTION_KEY.
    """
    return Fernet.generate_key().decode("utf-8")
