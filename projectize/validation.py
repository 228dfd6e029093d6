"""Input validation for tasks, Slack events and stored mappings."""

from __future__ import annotations

import re
import time
from dataclasses import dataclass, field
from typing import Any, Callable, Optional

from projectize.models import VALID_LEVELS

MAX_BATCH_SIZE = 10
MAX_DUE_DATE_LENGTH = 100
MIN_TITLE_LENGTH = 3

_EMAIL = re.compile(r"^[^\s@]+@[^\s@]+\.[^\s@]+$")
_SLACK_USER_ID = re.compile(r"^U[A-Z0-9]{8,10}$")
_SLACK_CHANNEL_ID = re.compile(r"^C[A-Z0-9]{8,10}$")


@dataclass
class ValidationResult:
    """Outcome of a validation check."""

    valid: bool
    errors: list[str] = field(default_factory=list)


def _field(obj: Any, name: str) -> Any:
    if isinstance(obj, dict):
        return obj.get(name)
    return getattr(obj, name, None)


def validate_task(task: Any) -> ValidationResult:
    """Validate one task (dict or TaskDraft)."""
    errors = []

    title = _field(task, "title")
    if not title or not isinstance(title, str):
        errors.append("Task title is required")
    elif len(title.strip()) < MIN_TITLE_LENGTH:
        errors.append(f"Task title must be at least {MIN_TITLE_LENGTH} characters")

    assignee = _field(task, "assignee")
    if assignee and not isinstance(assignee, str):
        errors.append("Assignee must be a string")

    confidence = _field(task, "confidence")
    if confidence and confidence not in VALID_LEVELS:
        errors.append("Confidence must be high, medium, or low")

    priority = _field(task, "priority")
    if priority and priority not in VALID_LEVELS:
        errors.append("Priority must be high, medium, or low")

    due_date = _field(task, "due_date")
    if due_date and len(str(due_date)) > MAX_DUE_DATE_LENGTH:
        errors.append("Due date string is too long")

    return ValidationResult(valid=not errors, errors=errors)


def validate_task_batch(tasks: Any) -> ValidationResult:
    """Validate a batch of 1 to MAX_BATCH_SIZE tasks."""
    if not isinstance(tasks, list):
        return ValidationResult(valid=False, errors=["Tasks must be an array"])

    if not tasks:
        return ValidationResult(valid=False, errors=["At least one task is required"])

    if len(tasks) > MAX_BATCH_SIZE:
        return ValidationResult(
            valid=False,
            errors=[f"Maximum {MAX_BATCH_SIZE} tasks allowed per batch"],
        )

    errors = []
    for index, task in enumerate(tasks, start=1):
        result = validate_task(task)
        if not result.valid:
            errors.append(f"Task {index}: {', '.join(result.errors)}")

    return ValidationResult(valid=not errors, errors=errors)


def validate_slack_event(event: Optional[dict]) -> ValidationResult:
    """Check that an inbound event carries the fields its handler needs."""
    if not event:
        return ValidationResult(valid=False, errors=["Event is required"])

    event_type = event.get("type")
    if not event_type:
        return ValidationResult(valid=False, errors=["Event type is required"])

    if event_type in ("app_mention", "message"):
        if not (event.get("text") and event.get("user") and event.get("channel")):
            return ValidationResult(
                valid=False, errors=[f"{event_type} missing required fields"]
            )
    elif event_type == "reaction_added":
        if not (event.get("reaction") and event.get("user") and event.get("item")):
            return ValidationResult(
                valid=False, errors=["reaction_added missing required fields"]
            )

    return ValidationResult(valid=True)


def validate_channel_mapping(mapping: dict) -> ValidationResult:
    errors = []
    if not mapping.get("slack_channel_id"):
        errors.append("Slack channel ID is required")
    if not mapping.get("slack_workspace_id"):
        errors.append("Slack workspace ID is required")
    if not mapping.get("destination_group_id"):
        errors.append("Destination workspace ID is required")
    if not mapping.get("created_by"):
        errors.append("Creator user ID is required")
    return ValidationResult(valid=not errors, errors=errors)


def validate_user_linkage(linkage: dict) -> ValidationResult:
    errors = []
    if not linkage.get("slack_user_id"):
        errors.append("Slack user ID is required")
    if not linkage.get("slack_workspace_id"):
        errors.append("Slack workspace ID is required")
    if not linkage.get("destination_user_id"):
        errors.append("Destination user ID is required")
    return ValidationResult(valid=not errors, errors=errors)


def sanitize_input(value: Any, max_length: int = 1000) -> str:
    """Trim, cap and strip angle brackets from free-form user input."""
    if not isinstance(value, str):
        return ""
    return re.sub(r"[<>]", "", value.strip()[:max_length])


def is_valid_email(email: Any) -> bool:
    return isinstance(email, str) and bool(_EMAIL.match(email))


def is_valid_slack_user_id(user_id: Any) -> bool:
    return isinstance(user_id, str) and bool(_SLACK_USER_ID.match(user_id))


def is_valid_slack_channel_id(channel_id: Any) -> bool:
    return isinstance(channel_id, str) and bool(_SLACK_CHANNEL_ID.match(channel_id))


@dataclass
class RateLimitDecision:
    """Result of a rate limit check."""

    allowed: bool
    remaining: int = 0
    retry_after: int = 0


class RateLimiter:
    """In-memory sliding window limiter keyed by (user, action)."""

    def __init__(
        self,
        window_seconds: float = 60.0,
        max_requests: int = 10,
        clock: Callable[[], float] = time.monotonic,
    ):
        """Initialize limiter.

        Args:
            window_seconds: Length of the sliding window.
            max_requests: Requests allowed per key inside the window.
            clock: Time source, injectable for tests.
        """
        self.window_seconds = window_seconds
        self.max_requests = max_requests
        self._clock = clock
        self._requests: dict[str, list[float]] = {}

    def _prune(self, now: float) -> None:
        """Forget keys whose newest request has left the window."""
        stale = [
            key
            for key, stamps in self._requests.items()
            if not stamps or now - stamps[-1] >= self.window_seconds
        ]
        for key in stale:
            del self._requests[key]

    def check(self, user_id: str, action: str) -> RateLimitDecision:
        """Record a request and decide whether it is allowed."""
        key = f"{user_id}:{action}"
        now = self._clock()
        self._prune(now)

        recent = [
            ts for ts in self._requests.get(key, []) if now - ts < self.window_seconds
        ]

        if len(recent) >= self.max_requests:
            self._requests[key] = recent
            retry_after = int(recent[0] + self.window_seconds - now) + 1
            return RateLimitDecision(allowed=False, retry_after=retry_after)

        recent.append(now)
        self._requests[key] = recent
        return RateLimitDecision(
            allowed=True, remaining=self.max_requests - len(recent)
        )
