"""Queue store interface shared by the file and database backends."""

from __future__ import annotations

import uuid
from abc import ABC, abstractmethod
from datetime import datetime, timezone
from typing import Any, Optional

from projectize.models import (
    ChannelMapping,
    HistoryRecord,
    QueueEntry,
    QueueStatus,
    UserLinkage,
)

# Fields callers may change through update_status
UPDATABLE_FIELDS = frozenset(
    {"status", "error_message", "retry_count", "tasks", "suggestions"}
)


class StoreError(Exception):
    """A queue store read or write failed."""


class EntryNotFoundError(StoreError):
    """No queue entry exists with the given id."""

    def __init__(self, entry_id: str):
        super().__init__(f"Queue entry not found: {entry_id}")
        self.entry_id = entry_id


def utc_now() -> str:
    return datetime.now(timezone.utc).isoformat()


def new_id() -> str:
    return str(uuid.uuid4())


def check_updates(fields: dict[str, Any]) -> None:
    unknown = set(fields) - UPDATABLE_FIELDS
    if unknown:
        raise ValueError(f"Cannot update fields: {', '.join(sorted(unknown))}")
    status = fields.get("status")
    if status is not None and not isinstance(status, QueueStatus):
        fields["status"] = QueueStatus(status)


class QueueStore(ABC):
    """Persistence for queue entries, history, channel mappings and linkages.

    There is no locking: concurrent update_status calls on one entry are
    last-write-wins.
    """

    backend_name = "base"

    @abstractmethod
    def enqueue(self, entry: QueueEntry) -> QueueEntry:
        """Store a new entry with a fresh id, pending status and no retries."""

    @abstractmethod
    def update_status(self, entry_id: str, **fields: Any) -> QueueEntry:
        """Merge fields into an entry and stamp last_attempt.

        Raises:
            EntryNotFoundError: If the id is unknown.
        """

    @abstractmethod
    def list_pending(
        self, limit: int = 10, min_retry_count: int = 0
    ) -> list[QueueEntry]:
        """Pending entries under the retry limit, oldest first.

        ``min_retry_count=1`` restricts the result to entries that already
        had a failed sync attempt.
        """

    @abstractmethod
    def find_by_key(self, message_id: str, channel_id: str) -> Optional[QueueEntry]:
        """Most recent entry for a Slack message, or None."""

    @abstractmethod
    def get(self, entry_id: str) -> Optional[QueueEntry]:
        """Entry by id, or None."""

    @abstractmethod
    def list_entries(
        self, status: Optional[QueueStatus] = None, limit: int = 50
    ) -> list[QueueEntry]:
        """Entries newest first, optionally filtered by status."""

    @abstractmethod
    def add_history(self, record: HistoryRecord) -> HistoryRecord:
        """Append an audit record."""

    @abstractmethod
    def list_history(
        self, channel_id: Optional[str] = None, limit: int = 50
    ) -> list[HistoryRecord]:
        """Audit records newest first."""

    @abstractmethod
    def get_channel_mapping(
        self, channel_id: str, workspace_id: str
    ) -> Optional[ChannelMapping]:
        """Mapping for a (channel, workspace) pair, or None."""

    @abstractmethod
    def save_channel_mapping(self, mapping: ChannelMapping) -> ChannelMapping:
        """Insert or replace the mapping for its (channel, workspace) pair."""

    @abstractmethod
    def get_user_linkage(self, slack_user_id: str) -> Optional[UserLinkage]:
        """Linkage for a Slack user, or None."""

    @abstractmethod
    def save_user_linkage(self, linkage: UserLinkage) -> UserLinkage:
        """Insert or replace the linkage for its Slack user."""

    def count_by_status(self) -> dict[str, int]:
        counts = {status.value: 0 for status in QueueStatus}
        for entry in self.list_entries(limit=10_000):
            counts[entry.status.value] += 1
        return counts

    def health_check(self) -> dict:
        try:
            self.list_pending(limit=1)
            return {"healthy": True, "storage": self.backend_name, "timestamp": utc_now()}
        except StoreError as e:
            return {
                "healthy": False,
                "storage": self.backend_name,
                "error": str(e),
                "timestamp": utc_now(),
            }
