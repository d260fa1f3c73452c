"""
Persistence for mirrored messages and their attachment descriptors.

Every mutation here is idempotent: replaying the same change feed against
the same rows leaves them unchanged.
"""

from typing import Any

from mailsync.db.helpers import execute_query, fetch_one
from mailsync.db.pool import get_db_transaction
from mailsync.infrastructure.observability.logging import get_logger
from mailsync.models.domain.gmail_domain import GmailMessage

logger = get_logger(__name__)


class EmailRepository:
    """Persistence helpers for the emails and email_attachments tables."""

    @staticmethod
    async def mark_as_deleted(workspace_id: str, message_id: str) -> int:
        """Soft-delete; a second delete keeps the original timestamp."""
        query = """
            UPDATE emails
            SET deleted_at = COALESCE(deleted_at, NOW()),
                updated_at = NOW()
            WHERE workspace_id = %s AND message_id = %s
        """
        return await execute_query(query, (workspace_id, message_id))

    @staticmethod
    async def add_labels(workspace_id: str, message_id: str, label_ids: list[str]) -> int:
        """Append only labels the row does not already carry."""
        query = """
            UPDATE emails
            SET gmail_labels = gmail_labels || ARRAY(
                    SELECT DISTINCT label
                    FROM unnest(%s::text[]) AS label
                    WHERE NOT (label = ANY(gmail_labels))
                ),
                updated_at = NOW()
            WHERE workspace_id = %s AND message_id = %s
        """
        return await execute_query(query, (list(label_ids), workspace_id, message_id))

    @staticmethod
    async def remove_labels(workspace_id: str, message_id: str, label_ids: list[str]) -> int:
        query = """
            UPDATE emails
            SET gmail_labels = ARRAY(
                    SELECT label
                    FROM unnest(gmail_labels) AS label
                    WHERE NOT (label = ANY(%s::text[]))
                ),
                updated_at = NOW()
            WHERE workspace_id = %s AND message_id = %s
        """
        return await execute_query(query, (list(label_ids), workspace_id, message_id))

    @staticmethod
    async def upsert_message(
        workspace_id: str, account_id: str, account_email: str, message: GmailMessage
    ) -> int:
        """
        Insert or refresh a fetched message and its attachment descriptors.

        Returns the local emails.id. deleted_at is left untouched so a late
        fetch never resurrects a message the feed already deleted.
        """
        email_query = """
            INSERT INTO emails (
                workspace_id, account_id, message_id, thread_id, subject, snippet,
                from_email, from_name, to_emails, cc_emails, direction,
                gmail_labels, gmail_history_id, received_at
            )
            VALUES (%s, %s, %s, %s, %s, %s, %s, %s, %s, %s, %s, %s, %s, %s)
            ON CONFLICT (message_id) DO UPDATE SET
                thread_id = EXCLUDED.thread_id,
                subject = EXCLUDED.subject,
                snippet = EXCLUDED.snippet,
                from_email = EXCLUDED.from_email,
                from_name = EXCLUDED.from_name,
                to_emails = EXCLUDED.to_emails,
                cc_emails = EXCLUDED.cc_emails,
                direction = EXCLUDED.direction,
                gmail_labels = EXCLUDED.gmail_labels,
                gmail_history_id = EXCLUDED.gmail_history_id,
                received_at = EXCLUDED.received_at,
                updated_at = NOW()
            RETURNING id
        """
        email_params = (
            workspace_id,
            account_id,
            message.id,
            message.thread_id,
            message.subject,
            message.snippet,
            message.sender["email"],
            message.sender["name"] or None,
            [r["email"] for r in message.recipients],
            [r["email"] for r in message.cc],
            message.direction_for(account_email),
            list(message.label_ids),
            message.history_id,
            message.received_at,
        )

        attachment_ids = [a.attachment_id for a in message.attachments]

        async with await get_db_transaction() as conn:
            row = await fetch_one(email_query, email_params, connection=conn)
            email_id = row["id"]

            await execute_query(
                """
                DELETE FROM email_attachments
                WHERE email_id = %s AND NOT (gmail_attachment_id = ANY(%s::text[]))
                """,
                (email_id, attachment_ids),
                connection=conn,
            )

            for attachment in message.attachments:
                await execute_query(
                    """
                    INSERT INTO email_attachments (
                        email_id, gmail_attachment_id, filename, mime_type, size
                    )
                    VALUES (%s, %s, %s, %s, %s)
                    ON CONFLICT (email_id, gmail_attachment_id) DO UPDATE SET
                        filename = EXCLUDED.filename,
                        mime_type = EXCLUDED.mime_type,
                        size = EXCLUDED.size
                    """,
                    (
                        email_id,
                        attachment.attachment_id,
                        attachment.filename,
                        attachment.mime_type,
                        attachment.size,
                    ),
                    connection=conn,
                )

        logger.debug(
            "Message stored",
            message_id=message.id,
            email_id=email_id,
            attachments=len(attachment_ids),
        )
        return email_id

    @staticmethod
    async def find_by_message_id(workspace_id: str, message_id: str) -> dict[str, Any] | None:
        query = """
            SELECT id, message_id, thread_id, subject, gmail_labels, deleted_at
            FROM emails
            WHERE workspace_id = %s AND message_id = %s
        """
        return await fetch_one(query, (workspace_id, message_id))

    @staticmethod
    async def set_attachment_url(
        workspace_id: str, message_id: str, attachment_id: str, url: str
    ) -> int:
        query = """
            UPDATE email_attachments a
            SET url = %s
            FROM emails e
            WHERE a.email_id = e.id
              AND e.workspace_id = %s
              AND e.message_id = %s
              AND a.gmail_attachment_id = %s
        """
        return await execute_query(query, (url, workspace_id, message_id, attachment_id))
