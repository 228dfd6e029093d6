"""Flat JSON file queue store for local development."""

from __future__ import annotations

import json
import logging
import os
from pathlib import Path
from typing import Any, Optional

from projectize.models import (
    MAX_RETRIES,
    ChannelMapping,
    HistoryRecord,
    QueueEntry,
    QueueStatus,
    UserLinkage,
)
from projectize.store.base import (
    EntryNotFoundError,
    QueueStore,
    StoreError,
    check_updates,
    new_id,
    utc_now,
)

logger = logging.getLogger(__name__)

TASKS_FILE = "tasks.json"
HISTORY_FILE = "history.json"
MAPPINGS_FILE = "mappings.json"
LINKAGES_FILE = "linkages.json"


class JsonFileQueueStore(QueueStore):
    """Stores every collection as a JSON list in its own file."""

    backend_name = "json"

    def __init__(self, data_dir: Path):
        """Initialize the store.

        Args:
            data_dir: Directory holding the JSON files. Created if missing.
        """
        self.data_dir = Path(data_dir)
        try:
            self.data_dir.mkdir(parents=True, exist_ok=True)
        except OSError as e:
            raise StoreError(f"Cannot create data directory {self.data_dir}: {e}") from e

    def _read(self, filename: str) -> list[dict[str, Any]]:
        path = self.data_dir / filename
        if not path.exists():
            return []
        try:
            data = json.loads(path.read_text(encoding="utf-8") or "[]")
        except (OSError, json.JSONDecodeError) as e:
            raise StoreError(f"Failed to read {path}: {e}") from e
        if not isinstance(data, list):
            raise StoreError(f"Unexpected content in {path}: expected a list")
        return data

    def _write(self, filename: str, rows: list[dict[str, Any]]) -> None:
        path = self.data_dir / filename
        tmp = path.with_suffix(".tmp")
        try:
            tmp.write_text(json.dumps(rows, indent=2), encoding="utf-8")
            os.replace(tmp, path)
        except OSError as e:
            raise StoreError(f"Failed to write {path}: {e}") from e

    def _entries(self) -> list[QueueEntry]:
        return [QueueEntry.from_dict(row) for row in self._read(TASKS_FILE)]

    def enqueue(self, entry: QueueEntry) -> QueueEntry:
        rows = self._read(TASKS_FILE)
        entry.id = new_id()
        entry.status = QueueStatus.PENDING
        entry.retry_count = 0
        entry.created_at = utc_now()
        rows.append(entry.to_dict())
        self._write(TASKS_FILE, rows)
        logger.info(
            f"Queued entry {entry.id[:8]} with {len(entry.tasks)} task(s) "
            f"for message {entry.source_message_id}"
        )
        return entry

    def update_status(self, entry_id: str, **fields: Any) -> QueueEntry:
        check_updates(fields)
        rows = self._read(TASKS_FILE)
        for index, row in enumerate(rows):
            if row.get("id") != entry_id:
                continue
            entry = QueueEntry.from_dict(row)
            for name, value in fields.items():
                setattr(entry, name, value)
            entry.last_attempt = utc_now()
            rows[index] = entry.to_dict()
            self._write(TASKS_FILE, rows)
            return entry
        raise EntryNotFoundError(entry_id)

    def list_pending(
        self, limit: int = 10, min_retry_count: int = 0
    ) -> list[QueueEntry]:
        pending = [
            e
            for e in self._entries()
            if e.status is QueueStatus.PENDING
            and min_retry_count <= e.retry_count < MAX_RETRIES
        ]
        pending.sort(key=lambda e: e.created_at)
        return pending[:limit]

    def find_by_key(self, message_id: str, channel_id: str) -> Optional[QueueEntry]:
        matches = [
            e
            for e in self._entries()
            if e.source_message_id == message_id and e.source_channel_id == channel_id
        ]
        return matches[-1] if matches else None

    def get(self, entry_id: str) -> Optional[QueueEntry]:
        for entry in self._entries():
            if entry.id == entry_id:
                return entry
        return None

    def list_entries(
        self, status: Optional[QueueStatus] = None, limit: int = 50
    ) -> list[QueueEntry]:
        entries = [e for e in self._entries() if status is None or e.status is status]
        entries.reverse()
        return entries[:limit]

    def add_history(self, record: HistoryRecord) -> HistoryRecord:
        rows = self._read(HISTORY_FILE)
        record.id = new_id()
        record.created_at = utc_now()
        rows.append(record.to_dict())
        self._write(HISTORY_FILE, rows)
        return record

    def list_history(
        self, channel_id: Optional[str] = None, limit: int = 50
    ) -> list[HistoryRecord]:
        records = [
            HistoryRecord.from_dict(row)
            for row in self._read(HISTORY_FILE)
            if channel_id is None or row.get("source_channel_id") == channel_id
        ]
        records.reverse()
        return records[:limit]

    def get_channel_mapping(
        self, channel_id: str, workspace_id: str
    ) -> Optional[ChannelMapping]:
        for row in self._read(MAPPINGS_FILE):
            if (
                row.get("slack_channel_id") == channel_id
                and row.get("slack_workspace_id") == workspace_id
            ):
                return ChannelMapping.from_dict(row)
        return None

    def save_channel_mapping(self, mapping: ChannelMapping) -> ChannelMapping:
        rows = [
            row
            for row in self._read(MAPPINGS_FILE)
            if not (
                row.get("slack_channel_id") == mapping.slack_channel_id
                and row.get("slack_workspace_id") == mapping.slack_workspace_id
            )
        ]
        mapping.created_at = mapping.created_at or utc_now()
        rows.append(mapping.to_dict())
        self._write(MAPPINGS_FILE, rows)
        return mapping

    def get_user_linkage(self, slack_user_id: str) -> Optional[UserLinkage]:
        for row in self._read(LINKAGES_FILE):
            if row.get("slack_user_id") == slack_user_id:
                return UserLinkage.from_dict(row)
        return None

    def save_user_linkage(self, linkage: UserLinkage) -> UserLinkage:
        rows = [
            row
            for row in self._read(LINKAGES_FILE)
            if row.get("slack_user_id") != linkage.slack_user_id
        ]
        linkage.created_at = linkage.created_at or utc_now()
        rows.append(linkage.to_dict())
        self._write(LINKAGES_FILE, rows)
        return linkage
