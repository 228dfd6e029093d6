"""Tests for the queue store backends."""

from pathlib import Path

import pytest

from projectize.config import StoreConfig
from projectize.models import (
    ChannelMapping,
    HistoryRecord,
    QueueEntry,
    QueueStatus,
    TaskDraft,
    UserLinkage,
)
from projectize.store import (
    EntryNotFoundError,
    JsonFileQueueStore,
    SqliteQueueStore,
    StoreError,
    create_store,
)


def _entry(message_id: str = "1700000000.000100", channel_id: str = "C1") -> QueueEntry:
    return QueueEntry(
        source_message_id=message_id,
        source_channel_id=channel_id,
        source_user_id="U1",
        tasks=[TaskDraft(title="Finish the report", assignee="Jenny", due_date="Friday")],
    )


class TestQueueEntries:
    """Behaviour shared by every backend."""

    def test_enqueue_assigns_identity(self, store):
        entry = store.enqueue(_entry())
        assert entry.id
        assert entry.created_at
        assert entry.status is QueueStatus.PENDING
        assert entry.retry_count == 0

    def test_find_by_key_round_trip(self, store):
        entry = store.enqueue(_entry())
        found = store.find_by_key("1700000000.000100", "C1")
        assert found is not None
        assert found.id == entry.id
        assert found.tasks == entry.tasks
        assert found.source_user_id == "U1"

    def test_find_by_key_unknown(self, store):
        assert store.find_by_key("nope", "C1") is None
        store.enqueue(_entry())
        assert store.find_by_key("1700000000.000100", "C2") is None

    def test_find_by_key_returns_most_recent(self, store):
        store.enqueue(_entry())
        second = store.enqueue(_entry())
        assert store.find_by_key("1700000000.000100", "C1").id == second.id

    def test_update_status_merges_fields(self, store):
        entry = store.enqueue(_entry())
        updated = store.update_status(
            entry.id, status=QueueStatus.FAILED, error_message="boom", retry_count=2
        )
        assert updated.status is QueueStatus.FAILED
        assert updated.error_message == "boom"
        assert updated.retry_count == 2
        assert updated.last_attempt is not None
        assert updated.tasks == entry.tasks

    def test_update_status_accepts_plain_status(self, store):
        entry = store.enqueue(_entry())
        assert store.update_status(entry.id, status="editing").status is QueueStatus.EDITING

    def test_update_tasks(self, store):
        entry = store.enqueue(_entry())
        store.update_status(entry.id, tasks=[TaskDraft(title="Another task")])
        assert store.get(entry.id).tasks == [TaskDraft(title="Another task")]

    def test_update_unknown_entry_raises(self, store):
        with pytest.raises(EntryNotFoundError) as excinfo:
            store.update_status("missing", status=QueueStatus.FAILED)
        assert excinfo.value.entry_id == "missing"

    def test_update_rejects_unknown_fields(self, store):
        entry = store.enqueue(_entry())
        with pytest.raises(ValueError):
            store.update_status(entry.id, created_at="yesterday")

    def test_list_pending_oldest_first_with_limit(self, store):
        first = store.enqueue(_entry("1"))
        second = store.enqueue(_entry("2"))
        store.enqueue(_entry("3"))

        assert [e.id for e in store.list_pending(limit=2)] == [first.id, second.id]

    def test_list_pending_excludes_exhausted_and_finished(self, store):
        exhausted = store.enqueue(_entry("1"))
        done = store.enqueue(_entry("2"))
        retrying = store.enqueue(_entry("3"))
        store.update_status(exhausted.id, retry_count=3)
        store.update_status(done.id, status=QueueStatus.COMPLETED)
        store.update_status(retrying.id, retry_count=2)

        assert [e.id for e in store.list_pending()] == [retrying.id]

    def test_list_pending_min_retry_count(self, store):
        for n in range(3):
            store.enqueue(_entry(f"fresh-{n}"))
        retried = store.enqueue(_entry("retried"))
        store.update_status(retried.id, retry_count=1)

        assert [e.id for e in store.list_pending(limit=1, min_retry_count=1)] == [retried.id]
        assert len(store.list_pending(min_retry_count=0)) == 4

    def test_list_entries_newest_first(self, store):
        first = store.enqueue(_entry("1"))
        second = store.enqueue(_entry("2"))
        store.update_status(first.id, status=QueueStatus.FAILED)

        assert [e.id for e in store.list_entries()] == [second.id, first.id]
        assert [e.id for e in store.list_entries(status=QueueStatus.FAILED)] == [first.id]

    def test_get(self, store):
        entry = store.enqueue(_entry())
        assert store.get(entry.id).source_message_id == entry.source_message_id
        assert store.get("missing") is None

    def test_count_by_status(self, store):
        store.enqueue(_entry("1"))
        done = store.enqueue(_entry("2"))
        store.update_status(done.id, status=QueueStatus.COMPLETED)

        counts = store.count_by_status()
        assert counts["pending"] == 1
        assert counts["completed"] == 1
        assert counts["failed"] == 0

    def test_health_check(self, store):
        health = store.health_check()
        assert health["healthy"] is True
        assert health["storage"] == store.backend_name


class TestHistoryAndLookups:
    """History records, channel mappings and user linkages."""

    def test_history(self, store):
        store.add_history(
            HistoryRecord(
                source_message_id="1",
                source_channel_id="C1",
                original_tasks=[TaskDraft(title="Finish the report")],
                external_task_ids=["motion-1"],
            )
        )
        store.add_history(HistoryRecord(source_message_id="2", source_channel_id="C2"))

        records = store.list_history()
        assert [r.source_message_id for r in records] == ["2", "1"]

        [record] = store.list_history(channel_id="C1")
        assert record.external_task_ids == ["motion-1"]
        assert record.original_tasks == [TaskDraft(title="Finish the report")]
        assert record.success is True

    def test_channel_mapping_upsert(self, store):
        assert store.get_channel_mapping("C1", "T1") is None

        store.save_channel_mapping(
            ChannelMapping(
                slack_channel_id="C1",
                slack_workspace_id="T1",
                destination_group_id="W1",
                created_by="U1",
            )
        )
        store.save_channel_mapping(
            ChannelMapping(
                slack_channel_id="C1",
                slack_workspace_id="T1",
                destination_group_id="W2",
                destination_project_id="P2",
                project_name="Launch",
            )
        )

        mapping = store.get_channel_mapping("C1", "T1")
        assert mapping.destination_group_id == "W2"
        assert mapping.destination_project_id == "P2"
        assert mapping.project_name == "Launch"
        assert store.get_channel_mapping("C1", "T2") is None

    def test_user_linkage_upsert(self, store):
        assert store.get_user_linkage("U1") is None
        store.save_user_linkage(UserLinkage(slack_user_id="U1", slack_workspace_id="T1"))
        store.save_user_linkage(
            UserLinkage(
                slack_user_id="U1",
                slack_workspace_id="T1",
                destination_user_id="m-1",
                email="jenny@example.com",
            )
        )

        linkage = store.get_user_linkage("U1")
        assert linkage.destination_user_id == "m-1"
        assert linkage.email == "jenny@example.com"


class TestJsonFileQueueStore:
    """File-specific behaviour."""

    def test_state_survives_reopen(self, tmp_path: Path):
        JsonFileQueueStore(tmp_path).enqueue(_entry())
        reopened = JsonFileQueueStore(tmp_path)
        assert len(reopened.list_pending()) == 1

    def test_corrupt_file_raises_store_error(self, json_store):
        (json_store.data_dir / "tasks.json").write_text("{not json")
        with pytest.raises(StoreError):
            json_store.list_pending()

    def test_non_list_content_raises_store_error(self, json_store):
        (json_store.data_dir / "tasks.json").write_text('{"id": "x"}')
        with pytest.raises(StoreError):
            json_store.list_entries()

    def test_health_check_reports_failure(self, json_store):
        (json_store.data_dir / "tasks.json").write_text("[oops")
        health = json_store.health_check()
        assert health["healthy"] is False
        assert "error" in health


class TestCreateStore:
    def test_json_backend(self, tmp_path: Path):
        store = create_store(StoreConfig(backend="json", path=str(tmp_path)))
        assert isinstance(store, JsonFileQueueStore)

    def test_sqlite_backend_in_directory(self, tmp_path: Path):
        store = create_store(StoreConfig(backend="sqlite", path=str(tmp_path)))
        assert isinstance(store, SqliteQueueStore)
        assert store.db_path == tmp_path / "projectize.db"

    def test_sqlite_backend_explicit_file(self, tmp_path: Path):
        store = create_store(StoreConfig(backend="sqlite", path=str(tmp_path / "q.db")))
        assert store.db_path == tmp_path / "q.db"

    def test_unknown_backend(self, tmp_path: Path):
        with pytest.raises(ValueError):
            create_store(StoreConfig(backend="postgres", path=str(tmp_path)))
