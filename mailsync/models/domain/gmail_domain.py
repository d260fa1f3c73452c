"""
Gmail Domain Models
Wrappers around raw Gmail API payloads used by the sync services.
Body decoding is left to downstream consumers; only headers, labels and
attachment descriptors are extracted here.
"""

from datetime import UTC, datetime


class GmailAttachmentRef:
    """Attachment descriptor found in a message payload part."""

    def __init__(self, part: dict):
        body = part.get("body", {})
        self.attachment_id = body.get("attachmentId")
        self.filename = part.get("filename", "")
        self.mime_type = part.get("mimeType", "application/octet-stream")
        self.size = body.get("size", 0)


class GmailMessage:
    """Domain model for a fetched Gmail message."""

    def __init__(self, data: dict):
        self.id = data.get("id")
        self.thread_id = data.get("threadId")
        self.label_ids = data.get("labelIds", [])
        self.snippet = data.get("snippet", "")
        self.history_id = data.get("historyId")
        self.internal_date = data.get("internalDate")
        self.payload = data.get("payload", {})
        self.raw_data = data

        self._parse_headers()
        self.attachments = self._collect_attachments(self.payload.get("parts", []))

    def _parse_headers(self):
        """Parse email headers from payload."""
        headers = self.payload.get("headers", [])
        self.headers = {h["name"].lower(): h["value"] for h in headers}

        self.subject = self.headers.get("subject", "(No Subject)")
        self.sender = self._parse_email_address(self.headers.get("from", ""))
        self.recipients = self._parse_email_addresses(self.headers.get("to", ""))
        self.cc = self._parse_email_addresses(self.headers.get("cc", ""))

    def _parse_email_address(self, address_str: str) -> dict[str, str]:
        """Parse "Name <email>" or a bare address into name and email."""
        if not address_str:
            return {"name": "", "email": ""}

        if "<" in address_str and ">" in address_str:
            name_part = address_str.split("<")[0].strip().strip('"')
            email_part = address_str.split("<")[1].split(">")[0].strip()
            return {"name": name_part, "email": email_part.lower()}
        return {"name": "", "email": address_str.strip().lower()}

    def _parse_email_addresses(self, addresses_str: str) -> list[dict[str, str]]:
        """Parse comma-separated email addresses."""
        if not addresses_str:
            return []

        addresses = []
        for addr in addresses_str.split(","):
            parsed = self._parse_email_address(addr.strip())
            if parsed["email"]:
                addresses.append(parsed)
        return addresses

    def _collect_attachments(self, parts: list) -> list[GmailAttachmentRef]:
        attachments = []
        for part in parts:
            if part.get("mimeType", "").startswith("multipart/"):
                attachments.extend(self._collect_attachments(part.get("parts", [])))
            elif part.get("filename") and part.get("body", {}).get("attachmentId"):
                attachments.append(GmailAttachmentRef(part))
        return attachments

    @property
    def received_at(self) -> datetime | None:
        """internalDate is epoch milliseconds as a string."""
        if not self.internal_date:
            return None
        return datetime.fromtimestamp(int(self.internal_date) / 1000, tz=UTC)

    def direction_for(self, account_email: str) -> str:
        """OUTBOUND when the account owner sent the message."""
        if self.sender["email"] and self.sender["email"] == account_email.lower():
            return "OUTBOUND"
        return "INBOUND"


class GmailProfile:
    """Result of users.getProfile."""

    def __init__(self, data: dict):
        self.email_address = data.get("emailAddress")
        self.history_id = data.get("historyId")
        self.messages_total = data.get("messagesTotal", 0)


class GmailHistoryPage:
    """One page of users.history.list."""

    def __init__(self, data: dict):
        self.history = data.get("history", [])
        self.history_id = data.get("historyId")
        self.next_page_token = data.get("nextPageToken")


class GmailMessageRef:
    """Minimal {id, threadId} entry returned by users.messages.list."""

    def __init__(self, data: dict):
        self.id = data.get("id")
        self.thread_id = data.get("threadId")
