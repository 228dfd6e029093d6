"""Client for the task-management API (Motion).

Creates tasks from approved drafts and reads the workspaces, projects and
users that suggestions and assignee lookups need. Task creation never
raises; every outcome comes back as a SyncResult.
"""

from __future__ import annotations

import asyncio
import json
import logging
import time
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from typing import Any, List, Mapping, Optional, Sequence

import aiohttp

from projectize.config import DestinationConfig
from projectize.models import Destination, TaskDraft

logger = logging.getLogger(__name__)

DEFAULT_RETRY_AFTER = 60

PRIORITY_MAP = {"high": "HIGH", "medium": "MEDIUM", "low": "LOW"}

WEEKDAYS = (
    "monday", "tuesday", "wednesday", "thursday",
    "friday", "saturday", "sunday",
)  # fmt: skip

STATUS_ERRORS = {
    401: "Invalid API key or authentication failed",
    403: "Insufficient permissions",
    404: "Resource not found",
    429: "Rate limit exceeded",
}

DATE_FORMATS = ("%B %d, %Y", "%b %d, %Y", "%m/%d/%Y", "%Y/%m/%d", "%d %B %Y")


class DestinationError(Exception):
    """A read request against the task API failed."""

    def __init__(self, message: str, http_status: Optional[int] = None):
        super().__init__(message)
        self.http_status = http_status


@dataclass
class SyncPacing:
    """Delays applied to outgoing requests, in seconds."""

    # Minimum spacing between any two requests
    request_delay: float = 1.0
    # Extra delay per position inside a batch
    stagger_delay: float = 0.1
    # Pause between consecutive batches
    batch_delay: float = 2.0
    batch_size: int = 10


@dataclass
class SyncResult:
    """Outcome of creating one task."""

    success: bool
    external_id: Optional[str] = None
    error: Optional[str] = None
    http_status: Optional[int] = None
    retry_after: Optional[int] = None


@dataclass
class TaskTarget:
    """A draft together with where it should be created."""

    task: TaskDraft
    group_id: Optional[str] = None
    project_id: Optional[str] = None
    assignee_id: Optional[str] = None


@dataclass
class BatchSyncResult:
    """Outcome of creating several tasks."""

    success_count: int = 0
    fail_count: int = 0
    results: List[SyncResult] = field(default_factory=list)

    @property
    def success(self) -> bool:
        return self.fail_count == 0


def map_priority(priority: Optional[str]) -> str:
    """Map a draft priority onto the API's priority names."""
    return PRIORITY_MAP.get((priority or "").lower(), "MEDIUM")


def _end_of_day(day: datetime) -> datetime:
    return day.replace(hour=23, minute=59, second=0, microsecond=0)


def parse_due_date(text: Optional[str], now: Optional[datetime] = None) -> Optional[datetime]:
    """Resolve a free-form due date.

    Understands "today", "tomorrow" and weekday names, which resolve to the
    next such day strictly after today. Everything lands at 23:59. Other
    values are tried as ISO and a few common date formats.

    Args:
        text: Due date as written by the extractor.
        now: Reference time. Defaults to the current local time.

    Returns:
        The resolved datetime, or None when nothing matched.
    """
    if not text:
        return None

    now = now or datetime.now().astimezone()
    lowered = text.lower()

    if "today" in lowered:
        return _end_of_day(now)
    if "tomorrow" in lowered:
        return _end_of_day(now + timedelta(days=1))

    for index, name in enumerate(WEEKDAYS):
        if name in lowered:
            days_ahead = (index - now.weekday()) % 7 or 7
            return _end_of_day(now + timedelta(days=days_ahead))

    candidate = text.strip()
    try:
        parsed = datetime.fromisoformat(candidate)
    except ValueError:
        parsed = None
        for fmt in DATE_FORMATS:
            try:
                parsed = datetime.strptime(candidate, fmt)
                break
            except ValueError:
                continue

    if parsed is None:
        logger.debug(f"Unparsable due date: {text!r}")
        return None
    if parsed.tzinfo is None and now.tzinfo is not None:
        parsed = parsed.replace(tzinfo=now.tzinfo)
    return parsed


def build_payload(
    task: TaskDraft,
    group_id: str,
    project_id: Optional[str] = None,
    assignee_id: Optional[str] = None,
    now: Optional[datetime] = None,
) -> dict[str, Any]:
    """Build the create-task request body for a draft."""
    payload: dict[str, Any] = {
        "name": task.title,
        "description": task.context or "",
        "workspaceId": group_id,
        "projectId": project_id,
        "assigneeId": assignee_id,
        "priority": map_priority(task.priority),
        "status": "TODO",
    }
    due = parse_due_date(task.due_date, now)
    if due is not None:
        payload["dueDate"] = due.isoformat()
    return payload


def _retry_after(headers: Mapping[str, str]) -> int:
    value = headers.get("Retry-After") or headers.get("retry-after")
    try:
        return int(value) if value else DEFAULT_RETRY_AFTER
    except ValueError:
        return DEFAULT_RETRY_AFTER


def _error_message(status: int, data: Any) -> str:
    if status in STATUS_ERRORS:
        return STATUS_ERRORS[status]
    if isinstance(data, dict) and data.get("message"):
        return str(data["message"])
    return f"Request failed with status {status}"


def _items(data: Any, key: str) -> list[dict]:
    """The API returns either a bare list or an object wrapping one."""
    if isinstance(data, dict):
        data = data.get(key, [])
    return [item for item in data or [] if isinstance(item, dict)]


class DestinationClient:
    """Async client for the task API."""

    def __init__(
        self,
        api_key: str,
        base_url: str,
        default_group_id: str = "",
        pacing: Optional[SyncPacing] = None,
        timeout: float = 30.0,
        session: Optional[aiohttp.ClientSession] = None,
    ):
        """Initialize client.

        Args:
            api_key: Value for the X-API-Key header.
            base_url: API root, e.g. https://api.usemotion.com/v1.
            default_group_id: Workspace used when none is given.
            pacing: Request delays. Defaults to SyncPacing().
            timeout: Total timeout per request in seconds.
            session: Pre-built session, mostly for tests.
        """
        self.api_key = api_key
        self.base_url = base_url.rstrip("/")
        self.default_group_id = default_group_id
        self.pacing = pacing or SyncPacing()
        self.timeout = timeout
        self._session = session
        self._pace_lock = asyncio.Lock()
        self._last_request = 0.0

    @classmethod
    def from_config(cls, config: DestinationConfig) -> "DestinationClient":
        return cls(
            api_key=config.api_key,
            base_url=config.base_url,
            default_group_id=config.workspace_id,
            pacing=SyncPacing(
                request_delay=config.request_delay,
                stagger_delay=config.stagger_delay,
                batch_delay=config.batch_delay,
                batch_size=config.batch_size,
            ),
            timeout=config.timeout,
        )

    async def _get_session(self) -> aiohttp.ClientSession:
        """Get or create aiohttp session."""
        if self._session is None or self._session.closed:
            self._session = aiohttp.ClientSession(
                headers={
                    "X-API-Key": self.api_key,
                    "Content-Type": "application/json",
                },
                timeout=aiohttp.ClientTimeout(total=self.timeout),
            )
        return self._session

    async def _pace(self) -> None:
        """Hold the caller until request_delay has passed since the last request."""
        async with self._pace_lock:
            wait = self.pacing.request_delay - (time.monotonic() - self._last_request)
            if wait > 0:
                await asyncio.sleep(wait)
            self._last_request = time.monotonic()

    async def _request(
        self, method: str, path: str, payload: Optional[dict] = None
    ) -> tuple[int, Any, Mapping[str, str]]:
        await self._pace()
        session = await self._get_session()
        async with session.request(
            method, f"{self.base_url}{path}", json=payload
        ) as response:
            try:
                data = await response.json(content_type=None)
            except (aiohttp.ContentTypeError, json.JSONDecodeError, ValueError):
                data = None
            return response.status, data, response.headers

    async def create_one(
        self,
        task: TaskDraft,
        group_id: Optional[str] = None,
        project_id: Optional[str] = None,
        assignee_id: Optional[str] = None,
    ) -> SyncResult:
        """Create a single task.

        Args:
            task: Draft to create.
            group_id: Target workspace, defaults to default_group_id.
            project_id: Optional project inside the workspace.
            assignee_id: Optional destination user id.

        Returns:
            SyncResult; transport and HTTP errors are reported, not raised.
        """
        payload = build_payload(
            task, group_id or self.default_group_id, project_id, assignee_id
        )

        try:
            status, data, headers = await self._request("POST", "/tasks", payload)
        except (aiohttp.ClientError, asyncio.TimeoutError) as e:
            logger.error(f"Task create failed for {task.title!r}: {e}")
            return SyncResult(success=False, error=str(e) or type(e).__name__)

        if 200 <= status < 300:
            external_id = data.get("id") if isinstance(data, dict) else None
            logger.info(f"Created task {external_id} ({task.title!r})")
            return SyncResult(
                success=True,
                external_id=str(external_id) if external_id is not None else None,
                http_status=status,
            )

        result = SyncResult(
            success=False, error=_error_message(status, data), http_status=status
        )
        if status == 429:
            result.retry_after = _retry_after(headers)
        logger.error(f"Task create for {task.title!r} returned {status}: {result.error}")
        return result

    async def create_many(
        self,
        tasks: Sequence[TaskDraft | TaskTarget],
        group_id: Optional[str] = None,
        project_id: Optional[str] = None,
        assignee_id: Optional[str] = None,
    ) -> BatchSyncResult:
        """Create tasks in batches of pacing.batch_size.

        Items may be bare drafts, which use the shared ``group_id``,
        ``project_id`` and ``assignee_id``, or TaskTargets carrying their
        own. Requests within a batch start staggered by stagger_delay per
        position; batches are separated by batch_delay. Results keep the
        input order.
        """
        targets = [
            item
            if isinstance(item, TaskTarget)
            else TaskTarget(item, group_id, project_id, assignee_id)
            for item in tasks
        ]
        batch = BatchSyncResult()
        size = max(1, self.pacing.batch_size)

        async def staggered(index: int, target: TaskTarget) -> SyncResult:
            if index and self.pacing.stagger_delay > 0:
                await asyncio.sleep(index * self.pacing.stagger_delay)
            return await self.create_one(
                target.task,
                group_id=target.group_id,
                project_id=target.project_id,
                assignee_id=target.assignee_id,
            )

        for start in range(0, len(targets), size):
            chunk = targets[start : start + size]
            results = await asyncio.gather(
                *(staggered(i, target) for i, target in enumerate(chunk))
            )
            batch.results.extend(results)

            if start + size < len(targets) and self.pacing.batch_delay > 0:
                await asyncio.sleep(self.pacing.batch_delay)

        batch.success_count = sum(1 for r in batch.results if r.success)
        batch.fail_count = len(batch.results) - batch.success_count
        return batch

    async def _get_list(self, path: str, key: str) -> list[dict]:
        try:
            status, data, _ = await self._request("GET", path)
        except (aiohttp.ClientError, asyncio.TimeoutError) as e:
            raise DestinationError(str(e) or type(e).__name__) from e
        if not 200 <= status < 300:
            raise DestinationError(_error_message(status, data), http_status=status)
        return _items(data, key)

    async def list_groups(self) -> list[Destination]:
        """List workspaces visible to the API key.

        Raises:
            DestinationError: If the request fails.
        """
        rows = await self._get_list("/workspaces", "workspaces")
        return [Destination.from_api(row) for row in rows]

    async def list_projects(self, group_id: Optional[str] = None) -> list[Destination]:
        group_id = group_id or self.default_group_id
        rows = await self._get_list(f"/workspaces/{group_id}/projects", "projects")
        return [Destination.from_api(row) for row in rows]

    async def list_users(self, group_id: Optional[str] = None) -> list[dict]:
        group_id = group_id or self.default_group_id
        return await self._get_list(f"/workspaces/{group_id}/users", "users")

    async def find_user_by_email(
        self, email: str, group_id: Optional[str] = None
    ) -> Optional[dict]:
        wanted = email.lower()
        for user in await self.list_users(group_id):
            if (user.get("email") or "").lower() == wanted:
                return user
        return None

    async def find_project_by_name(
        self, name: str, group_id: Optional[str] = None
    ) -> Optional[Destination]:
        """First project whose name contains ``name``, case-insensitively."""
        wanted = name.lower()
        for project in await self.list_projects(group_id):
            if wanted in project.name.lower():
                return project
        return None

    async def health_check(self) -> dict:
        try:
            await self.list_groups()
            error = None
        except DestinationError as e:
            error = str(e)
        return {
            "healthy": error is None,
            "api_key_valid": error is None,
            "workspace_id": self.default_group_id,
            "error": error,
            "timestamp": datetime.now().astimezone().isoformat(),
        }

    async def close(self) -> None:
        """Close the HTTP session."""
        if self._session and not self._session.closed:
            await self._session.close()
        self._session = None
