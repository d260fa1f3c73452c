"""
Repository subpackage for the mailbox sync feature.
"""

from .account_repository import AccountRepositoryError, EmailAccountRepository
from .email_repository import EmailRepository

__all__ = ["AccountRepositoryError", "EmailAccountRepository", "EmailRepository"]
