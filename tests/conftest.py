"""Shared fixtures for Projectize tests."""

from __future__ import annotations

import json
from pathlib import Path
from unittest.mock import AsyncMock

import pytest

from projectize.config import LLMConfig
from projectize.extraction import TaskExtractor
from projectize.matching import DestinationMatcher
from projectize.models import Destination
from projectize.store import JsonFileQueueStore, QueueStore, SqliteQueueStore
from projectize.sync import DestinationClient, SyncPacing, SyncResult
from projectize.workflow import TaskWorkflow

JENNY_TASK = {
    "title": "Finish the report",
    "assignee": "Jenny",
    "due_date": "Friday",
    "confidence": "high",
    "priority": "medium",
    "context": "report deadline",
}

GROUPS = [
    Destination(id="W-personal", name="Personal"),
    Destination(id="W-dkc", name="DKC Projects"),
]


@pytest.fixture(params=["json", "sqlite"])
def store(request, tmp_path: Path) -> QueueStore:
    """Each queue store backend, freshly created."""
    if request.param == "json":
        return JsonFileQueueStore(tmp_path / "data")
    return SqliteQueueStore(tmp_path / "data" / "projectize.db")


@pytest.fixture
def json_store(tmp_path: Path) -> JsonFileQueueStore:
    return JsonFileQueueStore(tmp_path / "data")


@pytest.fixture
def llm_config() -> LLMConfig:
    return LLMConfig(
        base_url="http://localhost:9999/v1", api_key="test-key", model="test-model"
    )


@pytest.fixture
def extractor(llm_config: LLMConfig) -> TaskExtractor:
    """Extractor whose LLM call returns the Jenny task."""
    ext = TaskExtractor(llm_config)
    ext._complete = AsyncMock(return_value=json.dumps([JENNY_TASK]))
    return ext


@pytest.fixture
def destination() -> DestinationClient:
    """Task API client with stubbed requests that succeed by default.

    create_many is the real batching code, so it fans out to the stub.
    """
    client = DestinationClient(
        api_key="test-key",
        base_url="http://motion.test/v1",
        default_group_id="W-default",
        pacing=SyncPacing(request_delay=0, stagger_delay=0, batch_delay=0),
    )
    client.list_groups = AsyncMock(return_value=list(GROUPS))
    client.list_projects = AsyncMock(return_value=[])
    client.list_users = AsyncMock(
        return_value=[{"id": "m-9", "email": "jenny@example.com", "name": "Jenny"}]
    )
    client.find_project_by_name = AsyncMock(return_value=None)
    client.create_one = AsyncMock(
        return_value=SyncResult(success=True, external_id="motion-1", http_status=201)
    )
    return client


@pytest.fixture
def workflow(store, extractor, destination) -> TaskWorkflow:
    return TaskWorkflow(
        store=store,
        extractor=extractor,
        matcher=DestinationMatcher(),
        destination=destination,
        pacing_delay=0,
        team_id="T123",
    )
