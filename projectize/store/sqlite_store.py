"""SQLite-backed queue store.

Holds the approval queue, the audit history and the per-channel and
per-user lookups in one database file. Task lists and suggestions are
stored as JSON text columns.
"""

from __future__ import annotations

import json
import logging
import sqlite3
from contextlib import contextmanager
from pathlib import Path
from typing import Any, Generator, Optional

from projectize.models import (
    MAX_RETRIES,
    ChannelMapping,
    DestinationSuggestion,
    HistoryRecord,
    QueueEntry,
    QueueStatus,
    TaskDraft,
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

DB_FILENAME = "projectize.db"


class SqliteQueueStore(QueueStore):
    """Queue store on a single SQLite database."""

    backend_name = "sqlite"

    def __init__(self, db_path: Path) -> None:
        """Initialize the store.

        Args:
            db_path: Path to the SQLite database file. Parent directories
                are created if missing.
        """
        self.db_path = Path(db_path)
        self.db_path.parent.mkdir(parents=True, exist_ok=True)
        self._init_db()

    @contextmanager
    def _get_connection(self) -> Generator[sqlite3.Connection, None, None]:
        """Get a database connection with row factory, committing on exit."""
        try:
            conn = sqlite3.connect(str(self.db_path))
        except sqlite3.Error as e:
            raise StoreError(f"Cannot open {self.db_path}: {e}") from e
        conn.row_factory = sqlite3.Row
        try:
            yield conn
            conn.commit()
        except sqlite3.Error as e:
            raise StoreError(f"Database error: {e}") from e
        finally:
            conn.close()

    def _init_db(self) -> None:
        """Create tables and indexes if they don't exist."""
        with self._get_connection() as conn:
            cursor = conn.cursor()

            cursor.execute("""
                CREATE TABLE IF NOT EXISTS task_queue (
                    id TEXT PRIMARY KEY,
                    source_message_id TEXT NOT NULL,
                    source_channel_id TEXT NOT NULL,
                    source_user_id TEXT NOT NULL DEFAULT '',
                    tasks TEXT NOT NULL DEFAULT '[]',
                    suggestions TEXT NOT NULL DEFAULT '[]',
                    status TEXT NOT NULL DEFAULT 'pending'
                        CHECK(status IN (
                            'pending', 'processing', 'editing',
                            'completed', 'failed'
                        )),
                    retry_count INTEGER NOT NULL DEFAULT 0,
                    error_message TEXT,
                    created_at TEXT NOT NULL,
                    last_attempt TEXT
                )
            """)

            cursor.execute("""
                CREATE TABLE IF NOT EXISTS task_history (
                    id TEXT PRIMARY KEY,
                    source_message_id TEXT NOT NULL,
                    source_channel_id TEXT NOT NULL,
                    original_tasks TEXT NOT NULL DEFAULT '[]',
                    external_task_ids TEXT NOT NULL DEFAULT '[]',
                    success INTEGER NOT NULL DEFAULT 1,
                    created_at TEXT NOT NULL
                )
            """)

            cursor.execute("""
                CREATE TABLE IF NOT EXISTS channel_mappings (
                    slack_channel_id TEXT NOT NULL,
                    slack_workspace_id TEXT NOT NULL,
                    destination_group_id TEXT NOT NULL,
                    destination_project_id TEXT,
                    project_name TEXT,
                    created_by TEXT NOT NULL DEFAULT '',
                    created_at TEXT NOT NULL,
                    PRIMARY KEY (slack_channel_id, slack_workspace_id)
                )
            """)

            cursor.execute("""
                CREATE TABLE IF NOT EXISTS user_linkages (
                    slack_user_id TEXT PRIMARY KEY,
                    slack_workspace_id TEXT NOT NULL,
                    destination_user_id TEXT,
                    email TEXT,
                    created_at TEXT NOT NULL
                )
            """)

            cursor.execute("""
                CREATE INDEX IF NOT EXISTS idx_task_queue_status
                ON task_queue(status, created_at)
            """)
            cursor.execute("""
                CREATE INDEX IF NOT EXISTS idx_task_queue_source
                ON task_queue(source_message_id, source_channel_id)
            """)
            cursor.execute("""
                CREATE INDEX IF NOT EXISTS idx_task_history_channel
                ON task_history(source_channel_id)
            """)

    def _row_to_entry(self, row: sqlite3.Row) -> QueueEntry:
        """Convert a database row to a QueueEntry."""
        return QueueEntry(
            id=row["id"],
            source_message_id=row["source_message_id"],
            source_channel_id=row["source_channel_id"],
            source_user_id=row["source_user_id"],
            tasks=[TaskDraft.from_dict(t) for t in json.loads(row["tasks"] or "[]")],
            suggestions=[
                DestinationSuggestion.from_dict(s)
                for s in json.loads(row["suggestions"] or "[]")
            ],
            status=QueueStatus(row["status"]),
            retry_count=row["retry_count"],
            error_message=row["error_message"],
            created_at=row["created_at"],
            last_attempt=row["last_attempt"],
        )

    def _row_to_history(self, row: sqlite3.Row) -> HistoryRecord:
        """Convert a database row to a HistoryRecord."""
        return HistoryRecord(
            id=row["id"],
            source_message_id=row["source_message_id"],
            source_channel_id=row["source_channel_id"],
            original_tasks=[
                TaskDraft.from_dict(t) for t in json.loads(row["original_tasks"])
            ],
            external_task_ids=json.loads(row["external_task_ids"]),
            success=bool(row["success"]),
            created_at=row["created_at"],
        )

    def enqueue(self, entry: QueueEntry) -> QueueEntry:
        entry.id = new_id()
        entry.status = QueueStatus.PENDING
        entry.retry_count = 0
        entry.created_at = utc_now()

        with self._get_connection() as conn:
            conn.execute(
                """
                INSERT INTO task_queue (
                    id, source_message_id, source_channel_id, source_user_id,
                    tasks, suggestions, status, retry_count, created_at
                ) VALUES (?, ?, ?, ?, ?, ?, 'pending', 0, ?)
                """,
                (
                    entry.id,
                    entry.source_message_id,
                    entry.source_channel_id,
                    entry.source_user_id,
                    json.dumps([t.to_dict() for t in entry.tasks]),
                    json.dumps([s.to_dict() for s in entry.suggestions]),
                    entry.created_at,
                ),
            )

        logger.info(
            f"Queued entry {entry.id[:8]} with {len(entry.tasks)} task(s) "
            f"for message {entry.source_message_id}"
        )
        return entry

    def update_status(self, entry_id: str, **fields: Any) -> QueueEntry:
        check_updates(fields)

        updates: list[str] = []
        params: list[object] = []
        for name, value in fields.items():
            if name == "status":
                value = value.value
            elif name == "tasks":
                value = json.dumps([t.to_dict() for t in value])
            elif name == "suggestions":
                value = json.dumps([s.to_dict() for s in value])
            updates.append(f"{name} = ?")
            params.append(value)

        updates.append("last_attempt = ?")
        params.append(utc_now())
        params.append(entry_id)

        sql = f"UPDATE task_queue SET {', '.join(updates)} WHERE id = ?"
        with self._get_connection() as conn:
            cursor = conn.execute(sql, params)
            if cursor.rowcount == 0:
                raise EntryNotFoundError(entry_id)
            row = conn.execute(
                "SELECT * FROM task_queue WHERE id = ?", (entry_id,)
            ).fetchone()
            return self._row_to_entry(row)

    def list_pending(
        self, limit: int = 10, min_retry_count: int = 0
    ) -> list[QueueEntry]:
        with self._get_connection() as conn:
            rows = conn.execute(
                """
                SELECT * FROM task_queue
                WHERE status = 'pending' AND retry_count < ? AND retry_count >= ?
                ORDER BY created_at ASC, rowid ASC
                LIMIT ?
                """,
                (MAX_RETRIES, min_retry_count, limit),
            ).fetchall()
            return [self._row_to_entry(row) for row in rows]

    def find_by_key(self, message_id: str, channel_id: str) -> Optional[QueueEntry]:
        with self._get_connection() as conn:
            row = conn.execute(
                """
                SELECT * FROM task_queue
                WHERE source_message_id = ? AND source_channel_id = ?
                ORDER BY created_at DESC, rowid DESC
                LIMIT 1
                """,
                (message_id, channel_id),
            ).fetchone()
            return self._row_to_entry(row) if row else None

    def get(self, entry_id: str) -> Optional[QueueEntry]:
        with self._get_connection() as conn:
            row = conn.execute(
                "SELECT * FROM task_queue WHERE id = ?", (entry_id,)
            ).fetchone()
            return self._row_to_entry(row) if row else None

    def list_entries(
        self, status: Optional[QueueStatus] = None, limit: int = 50
    ) -> list[QueueEntry]:
        query = "SELECT * FROM task_queue"
        params: list[object] = []
        if status is not None:
            query += " WHERE status = ?"
            params.append(status.value)
        query += " ORDER BY created_at DESC, rowid DESC LIMIT ?"
        params.append(limit)

        with self._get_connection() as conn:
            rows = conn.execute(query, params).fetchall()
            return [self._row_to_entry(row) for row in rows]

    def count_by_status(self) -> dict[str, int]:
        counts = {status.value: 0 for status in QueueStatus}
        with self._get_connection() as conn:
            rows = conn.execute(
                "SELECT status, COUNT(*) AS n FROM task_queue GROUP BY status"
            ).fetchall()
        for row in rows:
            counts[row["status"]] = row["n"]
        return counts

    def add_history(self, record: HistoryRecord) -> HistoryRecord:
        record.id = new_id()
        record.created_at = utc_now()

        with self._get_connection() as conn:
            conn.execute(
                """
                INSERT INTO task_history (
                    id, source_message_id, source_channel_id,
                    original_tasks, external_task_ids, success, created_at
                ) VALUES (?, ?, ?, ?, ?, ?, ?)
                """,
                (
                    record.id,
                    record.source_message_id,
                    record.source_channel_id,
                    json.dumps([t.to_dict() for t in record.original_tasks]),
                    json.dumps(record.external_task_ids),
                    1 if record.success else 0,
                    record.created_at,
                ),
            )
        return record

    def list_history(
        self, channel_id: Optional[str] = None, limit: int = 50
    ) -> list[HistoryRecord]:
        query = "SELECT * FROM task_history"
        params: list[object] = []
        if channel_id is not None:
            query += " WHERE source_channel_id = ?"
            params.append(channel_id)
        query += " ORDER BY created_at DESC, rowid DESC LIMIT ?"
        params.append(limit)

        with self._get_connection() as conn:
            rows = conn.execute(query, params).fetchall()
            return [self._row_to_history(row) for row in rows]

    def get_channel_mapping(
        self, channel_id: str, workspace_id: str
    ) -> Optional[ChannelMapping]:
        with self._get_connection() as conn:
            row = conn.execute(
                """
                SELECT * FROM channel_mappings
                WHERE slack_channel_id = ? AND slack_workspace_id = ?
                """,
                (channel_id, workspace_id),
            ).fetchone()
            return ChannelMapping.from_dict(dict(row)) if row else None

    def save_channel_mapping(self, mapping: ChannelMapping) -> ChannelMapping:
        mapping.created_at = mapping.created_at or utc_now()
        with self._get_connection() as conn:
            conn.execute(
                """
                INSERT OR REPLACE INTO channel_mappings (
                    slack_channel_id, slack_workspace_id, destination_group_id,
                    destination_project_id, project_name, created_by, created_at
                ) VALUES (?, ?, ?, ?, ?, ?, ?)
                """,
                (
                    mapping.slack_channel_id,
                    mapping.slack_workspace_id,
                    mapping.destination_group_id,
                    mapping.destination_project_id,
                    mapping.project_name,
                    mapping.created_by,
                    mapping.created_at,
                ),
            )
        logger.info(
            f"Saved mapping {mapping.slack_channel_id} -> "
            f"{mapping.destination_group_id}"
        )
        return mapping

    def get_user_linkage(self, slack_user_id: str) -> Optional[UserLinkage]:
        with self._get_connection() as conn:
            row = conn.execute(
                "SELECT * FROM user_linkages WHERE slack_user_id = ?",
                (slack_user_id,),
            ).fetchone()
            return UserLinkage.from_dict(dict(row)) if row else None

    def save_user_linkage(self, linkage: UserLinkage) -> UserLinkage:
        linkage.created_at = linkage.created_at or utc_now()
        with self._get_connection() as conn:
            conn.execute(
                """
                INSERT OR REPLACE INTO user_linkages (
                    slack_user_id, slack_workspace_id, destination_user_id,
                    email, created_at
                ) VALUES (?, ?, ?, ?, ?)
                """,
                (
                    linkage.slack_user_id,
                    linkage.slack_workspace_id,
                    linkage.destination_user_id,
                    linkage.email,
                    linkage.created_at,
                ),
            )
        return linkage
