"""Data model for extracted tasks and the approval queue."""

from __future__ import annotations

from dataclasses import asdict, dataclass, field
from enum import Enum
from typing import Any, Optional

# Entries that fail this many sync attempts are terminally failed
MAX_RETRIES = 3

VALID_LEVELS = frozenset({"high", "medium", "low"})

ASSIGNEE_INFER = "infer_from_context"
ASSIGNEE_AUTHOR = "message_author"


class QueueStatus(Enum):
    """Lifecycle states of a queue entry."""

    PENDING = "pending"
    PROCESSING = "processing"
    EDITING = "editing"
    COMPLETED = "completed"
    FAILED = "failed"


@dataclass(frozen=True)
class TaskDraft:
    """A candidate task extracted from chat, not yet created downstream."""

    title: str
    assignee: str = ASSIGNEE_INFER
    due_date: Optional[str] = None
    confidence: str = "medium"
    priority: str = "medium"
    context: str = ""
    estimated_time: Optional[str] = None

    def to_dict(self) -> dict[str, Any]:
        return asdict(self)

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> TaskDraft:
        return cls(
            title=data["title"],
            assignee=data.get("assignee") or ASSIGNEE_INFER,
            due_date=data.get("due_date"),
            confidence=data.get("confidence") or "medium",
            priority=data.get("priority") or "medium",
            context=data.get("context") or "",
            estimated_time=data.get("estimated_time"),
        )


@dataclass(frozen=True)
class Destination:
    """A destination container: a workspace (group) or a project."""

    id: str
    name: str

    @classmethod
    def from_api(cls, data: dict[str, Any]) -> Destination:
        return cls(id=str(data.get("id", "")), name=data.get("name") or "")


@dataclass
class DestinationSuggestion:
    """Where a task should be filed, with the matcher's reasoning."""

    task: TaskDraft
    group: Destination
    project: Optional[Destination] = None
    confidence: str = "low"
    reasoning: str = ""

    def to_dict(self) -> dict[str, Any]:
        return {
            "task": self.task.to_dict(),
            "group": asdict(self.group),
            "project": asdict(self.project) if self.project else None,
            "confidence": self.confidence,
            "reasoning": self.reasoning,
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> DestinationSuggestion:
        project = data.get("project")
        return cls(
            task=TaskDraft.from_dict(data["task"]),
            group=Destination(**data["group"]),
            project=Destination(**project) if project else None,
            confidence=data.get("confidence", "low"),
            reasoning=data.get("reasoning", ""),
        )


@dataclass
class QueueEntry:
    """One batch of tasks tracked through approval and sync."""

    source_message_id: str
    source_channel_id: str
    source_user_id: str = ""
    tasks: list[TaskDraft] = field(default_factory=list)
    suggestions: list[DestinationSuggestion] = field(default_factory=list)
    status: QueueStatus = QueueStatus.PENDING
    retry_count: int = 0
    error_message: Optional[str] = None
    id: str = ""
    created_at: str = ""
    last_attempt: Optional[str] = None

    @property
    def is_retryable(self) -> bool:
        return self.status is QueueStatus.PENDING and self.retry_count < MAX_RETRIES

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "source_message_id": self.source_message_id,
            "source_channel_id": self.source_channel_id,
            "source_user_id": self.source_user_id,
            "tasks": [t.to_dict() for t in self.tasks],
            "suggestions": [s.to_dict() for s in self.suggestions],
            "status": self.status.value,
            "retry_count": self.retry_count,
            "error_message": self.error_message,
            "created_at": self.created_at,
            "last_attempt": self.last_attempt,
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> QueueEntry:
        return cls(
            id=data.get("id", ""),
            source_message_id=data["source_message_id"],
            source_channel_id=data["source_channel_id"],
            source_user_id=data.get("source_user_id", ""),
            tasks=[TaskDraft.from_dict(t) for t in data.get("tasks", [])],
            suggestions=[
                DestinationSuggestion.from_dict(s)
                for s in data.get("suggestions", [])
            ],
            status=QueueStatus(data.get("status", "pending")),
            retry_count=data.get("retry_count") or 0,
            error_message=data.get("error_message"),
            created_at=data.get("created_at", ""),
            last_attempt=data.get("last_attempt"),
        )


@dataclass
class HistoryRecord:
    """Audit record of a completed batch. Written once."""

    source_message_id: str
    source_channel_id: str
    original_tasks: list[TaskDraft] = field(default_factory=list)
    external_task_ids: list[str] = field(default_factory=list)
    success: bool = True
    id: str = ""
    created_at: str = ""

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "source_message_id": self.source_message_id,
            "source_channel_id": self.source_channel_id,
            "original_tasks": [t.to_dict() for t in self.original_tasks],
            "external_task_ids": list(self.external_task_ids),
            "success": self.success,
            "created_at": self.created_at,
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> HistoryRecord:
        return cls(
            id=data.get("id", ""),
            source_message_id=data["source_message_id"],
            source_channel_id=data["source_channel_id"],
            original_tasks=[
                TaskDraft.from_dict(t) for t in data.get("original_tasks", [])
            ],
            external_task_ids=list(data.get("external_task_ids", [])),
            success=bool(data.get("success", True)),
            created_at=data.get("created_at", ""),
        )


@dataclass
class ChannelMapping:
    """Default destination for tasks extracted in a Slack channel."""

    slack_channel_id: str
    slack_workspace_id: str
    destination_group_id: str
    destination_project_id: Optional[str] = None
    project_name: Optional[str] = None
    created_by: str = ""
    created_at: str = ""

    def to_dict(self) -> dict[str, Any]:
        return asdict(self)

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> ChannelMapping:
        return cls(**{k: data.get(k) for k in cls.__dataclass_fields__ if k in data})


@dataclass
class UserLinkage:
    """Link between a Slack user and a destination-service user."""

    slack_user_id: str
    slack_workspace_id: str
    destination_user_id: Optional[str] = None
    email: Optional[str] = None
    created_at: str = ""

    def to_dict(self) -> dict[str, Any]:
        return asdict(self)

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> UserLinkage:
        return cls(**{k: data.get(k) for k in cls.__dataclass_fields__ if k in data})
