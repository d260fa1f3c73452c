"""
Domain models for the mailbox sync feature.

Change records are a closed set of variants parsed from Gmail history
entries. Job payloads mirror the queue wire contract, which uses
camelCase keys.
"""

from dataclasses import dataclass, field
from enum import IntEnum, StrEnum
from typing import Any, Literal

from pydantic import BaseModel, ConfigDict, Field


@dataclass(frozen=True, slots=True)
class MessageAdded:
    message_id: str | None
    thread_id: str | None


@dataclass(frozen=True, slots=True)
class MessageDeleted:
    message_id: str | None


@dataclass(frozen=True, slots=True)
class LabelsAdded:
    message_id: str | None
    label_ids: tuple[str, ...] | None


@dataclass(frozen=True, slots=True)
class LabelsRemoved:
    message_id: str | None
    label_ids: tuple[str, ...] | None


ChangeRecord = MessageAdded | MessageDeleted | LabelsAdded | LabelsRemoved


def _message_id(item: dict) -> str | None:
    return (item.get("message") or {}).get("id")


def _label_ids(item: dict) -> tuple[str, ...] | None:
    label_ids = item.get("labelIds")
    return tuple(label_ids) if label_ids is not None else None


def parse_history_entry(entry: dict) -> list[ChangeRecord]:
    """
    Flatten one Gmail history entry into ordered change records.

    Within an entry: additions, deletions, label additions, label removals.
    Keys the feed did not send simply produce no records.
    """
    records: list[ChangeRecord] = []

    for item in entry.get("messagesAdded") or []:
        message = item.get("message") or {}
        records.append(MessageAdded(message_id=message.get("id"), thread_id=message.get("threadId")))

    for item in entry.get("messagesDeleted") or []:
        records.append(MessageDeleted(message_id=_message_id(item)))

    for item in entry.get("labelsAdded") or []:
        records.append(LabelsAdded(message_id=_message_id(item), label_ids=_label_ids(item)))

    for item in entry.get("labelsRemoved") or []:
        records.append(LabelsRemoved(message_id=_message_id(item), label_ids=_label_ids(item)))

    return records


class JobName(StrEnum):
    SYNC_HISTORY = "sync-history"
    FETCH_MESSAGE = "fetch-message"
    FULL_SYNC = "full-sync"
    DOWNLOAD_ATTACHMENT = "download-attachment"


class JobPriority(IntEnum):
    """Lower is more urgent."""

    SYNC_HISTORY = 1
    FETCH_MESSAGE = 2
    FULL_SYNC = 3
    DOWNLOAD_ATTACHMENT = 3


DEFAULT_JOB_ATTEMPTS = 3


@dataclass(slots=True)
class Job:
    """A dispatched unit of work as held by the queue."""

    id: str
    name: str
    payload: dict[str, Any]
    priority: int
    attempts: int = DEFAULT_JOB_ATTEMPTS
    attempts_made: int = 0

    @property
    def account_id(self) -> str | None:
        return self.payload.get("accountId")

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "name": self.name,
            "payload": self.payload,
            "priority": self.priority,
            "attempts": self.attempts,
            "attempts_made": self.attempts_made,
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "Job":
        return cls(
            id=data["id"],
            name=data["name"],
            payload=data["payload"],
            priority=int(data["priority"]),
            attempts=int(data.get("attempts", DEFAULT_JOB_ATTEMPTS)),
            attempts_made=int(data.get("attempts_made", 0)),
        )


class _Payload(BaseModel):
    model_config = ConfigDict(populate_by_name=True, extra="ignore")

    def to_payload(self) -> dict[str, Any]:
        return self.model_dump(by_alias=True, exclude_none=True)


SyncTrigger = Literal["webhook", "manual", "scheduled"]


class HistorySyncPayload(_Payload):
    account_id: str = Field(alias="accountId")
    start_history_id: str | None = Field(default=None, alias="startHistoryId")
    end_history_id: str | None = Field(default=None, alias="endHistoryId")
    trigger: SyncTrigger = "manual"


class FetchMessagePayload(_Payload):
    account_id: str = Field(alias="accountId")
    message_id: str = Field(alias="messageId")
    thread_id: str = Field(alias="threadId")


class DownloadAttachmentPayload(_Payload):
    account_id: str = Field(alias="accountId")
    message_id: str = Field(alias="messageId")
    attachment_id: str = Field(alias="attachmentId")
    filename: str
    mime_type: str = Field(alias="mimeType")
    size: int = 0


class FullSyncPayload(_Payload):
    account_id: str = Field(alias="accountId")
    max_results: int = Field(default=100, alias="maxResults")


@dataclass(slots=True)
class SyncResult:
    """
    Outcome of one reconciliation or resync pass.

    applied_now counts deletes and label mutations written during the pass;
    enqueued_jobs holds the work deferred to the queue.
    """

    messages_added: int = 0
    messages_deleted: int = 0
    labels_changed: int = 0
    new_history_id: str | None = None
    enqueued_jobs: list[Job] = field(default_factory=list)
    full_resync: bool = False

    @property
    def applied_now(self) -> int:
        return self.messages_deleted + self.labels_changed

    def to_dict(self) -> dict[str, Any]:
        return {
            "messagesAdded": self.messages_added,
            "messagesDeleted": self.messages_deleted,
            "labelsChanged": self.labels_changed,
            "newHistoryId": self.new_history_id,
        }
