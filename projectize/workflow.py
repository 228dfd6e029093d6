"""Approval workflow for extracted task batches.

Drives a QueueEntry through its lifecycle::

    pending --approve--> processing --any task synced--> completed
                                    --nothing synced---> pending (retry_count + 1)
                                                         failed once retries run out
    pending --reject--> failed
    pending --request_edit--> editing --apply_edit or apply_feedback--> pending

Nothing here knows about Slack; handlers call into TaskWorkflow and render
the returned outcome objects.
"""

from __future__ import annotations

import asyncio
import dataclasses
import logging
import re
from dataclasses import dataclass, field
from typing import List, Optional, Sequence

from projectize.extraction import ExtractionContext, TaskExtractor
from projectize.matching import DestinationMatcher
from projectize.models import (
    ASSIGNEE_AUTHOR,
    MAX_RETRIES,
    ChannelMapping,
    Destination,
    DestinationSuggestion,
    HistoryRecord,
    QueueEntry,
    QueueStatus,
    TaskDraft,
    UserLinkage,
)
from projectize.store import QueueStore, StoreError
from projectize.sync import DestinationClient, DestinationError, SyncResult, TaskTarget
from projectize.text import parse_task_edit_command
from projectize.validation import (
    MAX_BATCH_SIZE,
    is_valid_email,
    sanitize_input,
    validate_channel_mapping,
    validate_task,
    validate_user_linkage,
)

logger = logging.getLogger(__name__)

REJECTED_MESSAGE = "Rejected by user"
MAX_RETRIES_MESSAGE = "Max retries exceeded"
ALL_REMOVED_MESSAGE = "All tasks removed"

LIVE_STATUSES = (QueueStatus.PENDING, QueueStatus.EDITING, QueueStatus.PROCESSING)

_TASK_REFERENCE = re.compile(r"\btask\s+(\d+)", re.IGNORECASE)


@dataclass
class EnqueueOutcome:
    """Result of extracting a message into the queue."""

    success: bool
    entry: Optional[QueueEntry] = None
    error: Optional[str] = None
    duplicate: bool = False

    @property
    def tasks(self) -> List[TaskDraft]:
        return self.entry.tasks if self.entry else []


@dataclass
class TaskSync:
    """Sync result for one task of an entry."""

    task: TaskDraft
    result: SyncResult


@dataclass
class ApprovalOutcome:
    """Result of syncing one queue entry."""

    entry: Optional[QueueEntry]
    processed: bool = False
    synced: List[TaskSync] = field(default_factory=list)

    @property
    def success_count(self) -> int:
        return sum(1 for s in self.synced if s.result.success)

    @property
    def fail_count(self) -> int:
        return len(self.synced) - self.success_count

    @property
    def completed(self) -> bool:
        return self.entry is not None and self.entry.status is QueueStatus.COMPLETED

    @property
    def exhausted(self) -> bool:
        """True when the entry was just marked failed for running out of retries."""
        return self.entry is not None and self.entry.status is QueueStatus.FAILED


@dataclass
class EditOutcome:
    """Result of applying an edit command."""

    entry: Optional[QueueEntry]
    applied: bool = False
    error: Optional[str] = None


@dataclass
class LinkOutcome:
    """Result of linking a Slack user to a destination user."""

    linkage: Optional[UserLinkage] = None
    error: Optional[str] = None


@dataclass
class SweepReport:
    """Counts from one retry sweep."""

    attempted: int = 0
    completed: int = 0
    requeued: int = 0
    exhausted: int = 0
    errors: int = 0


class TaskWorkflow:
    """Coordinates extraction, the queue store and the task API."""

    def __init__(
        self,
        store: QueueStore,
        extractor: TaskExtractor,
        matcher: DestinationMatcher,
        destination: DestinationClient,
        pacing_delay: float = 2.0,
        team_id: str = "",
    ):
        """Initialize workflow.

        Args:
            store: Queue persistence.
            extractor: LLM task extractor.
            matcher: Destination suggestion engine.
            destination: Task API client.
            pacing_delay: Seconds to wait between entries during a sweep.
            team_id: Slack workspace id used for channel mapping lookups.
        """
        self.store = store
        self.extractor = extractor
        self.matcher = matcher
        self.destination = destination
        self.pacing_delay = pacing_delay
        self.team_id = team_id

    async def _groups(self) -> list[Destination]:
        try:
            return await self.destination.list_groups()
        except DestinationError as e:
            logger.warning(f"Could not load destination workspaces: {e}")
            return []

    async def _suggest(self, tasks: Sequence[TaskDraft]) -> list[DestinationSuggestion]:
        groups = await self._groups()
        return await self.matcher.suggest(tasks, groups)

    def find_live_entry(self, message_id: str, channel_id: str) -> Optional[QueueEntry]:
        entry = self.store.find_by_key(message_id, channel_id)
        if entry and entry.status in LIVE_STATUSES:
            return entry
        return None

    async def extract_and_enqueue(
        self,
        text: str,
        message_id: str,
        channel_id: str,
        user_id: str,
        context: Optional[ExtractionContext] = None,
    ) -> EnqueueOutcome:
        """Extract tasks from text and queue them for approval.

        Returns:
            EnqueueOutcome. ``entry`` is None when the extractor found
            nothing actionable.
        """
        existing = self.find_live_entry(message_id, channel_id)
        if existing:
            logger.info(f"Message {message_id} already has live entry {existing.id[:8]}")
            return EnqueueOutcome(success=True, entry=existing, duplicate=True)

        result = await self.extractor.extract_tasks(text, context)
        if not result.success:
            return EnqueueOutcome(success=False, error=result.error)

        return await self.enqueue_tasks(result.tasks, message_id, channel_id, user_id)

    async def enqueue_tasks(
        self,
        tasks: Sequence[TaskDraft],
        message_id: str,
        channel_id: str,
        user_id: str,
    ) -> EnqueueOutcome:
        """Queue already-extracted tasks with fresh suggestions."""
        valid = [task for task in tasks if validate_task(task).valid]
        if len(valid) < len(tasks):
            logger.info(f"Dropped {len(tasks) - len(valid)} invalid task(s)")
        if len(valid) > MAX_BATCH_SIZE:
            logger.warning(f"Truncating batch of {len(valid)} to {MAX_BATCH_SIZE}")
            valid = valid[:MAX_BATCH_SIZE]

        if not valid:
            return EnqueueOutcome(success=True)

        entry = self.store.enqueue(
            QueueEntry(
                source_message_id=message_id,
                source_channel_id=channel_id,
                source_user_id=user_id,
                tasks=list(valid),
                suggestions=await self._suggest(valid),
            )
        )
        return EnqueueOutcome(success=True, entry=entry)

    def _target(
        self, entry: QueueEntry, index: int, mapping: Optional[ChannelMapping]
    ) -> tuple[Optional[str], Optional[str]]:
        """Group and project ids for the task at ``index``."""
        task = entry.tasks[index]
        if index < len(entry.suggestions):
            suggestion = entry.suggestions[index]
            if suggestion.task.title == task.title:
                project = suggestion.project.id if suggestion.project else None
                return suggestion.group.id, project

        if mapping:
            return mapping.destination_group_id, mapping.destination_project_id
        return None, None

    def _assignee(self, entry: QueueEntry, task: TaskDraft) -> Optional[str]:
        if task.assignee != ASSIGNEE_AUTHOR or not entry.source_user_id:
            return None
        linkage = self.store.get_user_linkage(entry.source_user_id)
        return linkage.destination_user_id if linkage else None

    async def _sync_entry(self, entry: QueueEntry) -> ApprovalOutcome:
        entry = self.store.update_status(entry.id, status=QueueStatus.PROCESSING)
        mapping = self.store.get_channel_mapping(entry.source_channel_id, self.team_id)

        targets = []
        for index, task in enumerate(entry.tasks):
            group_id, project_id = self._target(entry, index, mapping)
            targets.append(
                TaskTarget(task, group_id, project_id, self._assignee(entry, task))
            )
        batch = await self.destination.create_many(targets)
        synced = [
            TaskSync(task=target.task, result=result)
            for target, result in zip(targets, batch.results)
        ]

        outcome = ApprovalOutcome(entry=entry, processed=True, synced=synced)

        if outcome.success_count:
            failures = [s for s in synced if not s.result.success]
            outcome.entry = self.store.update_status(
                entry.id,
                status=QueueStatus.COMPLETED,
                error_message=(
                    f"{len(failures)} task(s) failed to sync" if failures else None
                ),
            )
            self.store.add_history(
                HistoryRecord(
                    source_message_id=entry.source_message_id,
                    source_channel_id=entry.source_channel_id,
                    original_tasks=list(entry.tasks),
                    external_task_ids=[
                        s.result.external_id
                        for s in synced
                        if s.result.success and s.result.external_id
                    ],
                    success=not failures,
                )
            )
            logger.info(
                f"Entry {entry.id[:8]} completed: {outcome.success_count} synced, "
                f"{outcome.fail_count} failed"
            )
            return outcome

        retry_count = entry.retry_count + 1
        if retry_count >= MAX_RETRIES:
            outcome.entry = self.store.update_status(
                entry.id,
                status=QueueStatus.FAILED,
                retry_count=retry_count,
                error_message=MAX_RETRIES_MESSAGE,
            )
            logger.error(f"Entry {entry.id[:8]} failed after {retry_count} attempts")
        else:
            first_error = synced[0].result.error if synced else "No tasks to sync"
            outcome.entry = self.store.update_status(
                entry.id,
                status=QueueStatus.PENDING,
                retry_count=retry_count,
                error_message=first_error,
            )
            logger.warning(
                f"Entry {entry.id[:8]} sync failed (attempt {retry_count}): "
                f"{first_error}"
            )
        return outcome

    async def approve(self, message_id: str, channel_id: str) -> ApprovalOutcome:
        """Sync a pending entry to the task API.

        Entries in any other state are left alone and reported with
        ``processed=False``.
        """
        entry = self.store.find_by_key(message_id, channel_id)
        if entry is None or entry.status is not QueueStatus.PENDING:
            return ApprovalOutcome(entry=entry, processed=False)
        return await self._sync_entry(entry)

    def reject(self, message_id: str, channel_id: str) -> Optional[QueueEntry]:
        """Cancel a pending entry. Returns None if nothing was pending."""
        entry = self.store.find_by_key(message_id, channel_id)
        if entry is None or entry.status is not QueueStatus.PENDING:
            return None
        logger.info(f"Entry {entry.id[:8]} rejected")
        return self.store.update_status(
            entry.id, status=QueueStatus.FAILED, error_message=REJECTED_MESSAGE
        )

    def request_edit(self, message_id: str, channel_id: str) -> Optional[QueueEntry]:
        """Put a pending entry into editing. Returns None if nothing was pending."""
        entry = self.store.find_by_key(message_id, channel_id)
        if entry is None or entry.status is not QueueStatus.PENDING:
            return None
        return self.store.update_status(entry.id, status=QueueStatus.EDITING)

    async def apply_edit(
        self, message_id: str, channel_id: str, command_text: str
    ) -> EditOutcome:
        """Apply an edit command to an entry in editing.

        Tasks are replaced with modified copies and the suggestions are
        regenerated for the whole batch.
        """
        entry = self.store.find_by_key(message_id, channel_id)
        if entry is None or entry.status is not QueueStatus.EDITING:
            return EditOutcome(entry=entry, error="No tasks are being edited here")

        command = parse_task_edit_command(command_text)
        if command is None:
            return EditOutcome(entry=entry, error="Unrecognized edit command")

        if not 0 <= command.task_index < len(entry.tasks):
            return EditOutcome(
                entry=entry, error=f"Task {command.task_index + 1} does not exist"
            )

        tasks = list(entry.tasks)
        if command.action == "remove":
            del tasks[command.task_index]
        elif command.action == "change_assignee":
            tasks[command.task_index] = dataclasses.replace(
                tasks[command.task_index], assignee=command.value
            )
        elif command.action == "change_date":
            tasks[command.task_index] = dataclasses.replace(
                tasks[command.task_index], due_date=command.value
            )

        logger.info(f"Entry {entry.id[:8]} edited: {command.action}")
        return await self._save_edit(entry, tasks)

    async def _save_edit(self, entry: QueueEntry, tasks: list[TaskDraft]) -> EditOutcome:
        """Store edited tasks and return the entry to pending, or fail it if empty."""
        if not tasks:
            updated = self.store.update_status(
                entry.id,
                status=QueueStatus.FAILED,
                tasks=tasks,
                suggestions=[],
                error_message=ALL_REMOVED_MESSAGE,
            )
            return EditOutcome(entry=updated, applied=True)

        updated = self.store.update_status(
            entry.id,
            status=QueueStatus.PENDING,
            tasks=tasks,
            suggestions=await self._suggest(tasks),
        )
        return EditOutcome(entry=updated, applied=True)

    async def apply_feedback(
        self,
        message_id: str,
        channel_id: str,
        feedback: str,
        context: Optional[ExtractionContext] = None,
    ) -> EditOutcome:
        """Revise tasks of an entry in editing from free-form feedback.

        Feedback naming "task N" revises only that task; otherwise every
        task is revised. Tasks the model drops are removed.
        """
        entry = self.store.find_by_key(message_id, channel_id)
        if entry is None or entry.status is not QueueStatus.EDITING:
            return EditOutcome(entry=entry, error="No tasks are being edited here")

        feedback = sanitize_input(feedback)
        if not feedback:
            return EditOutcome(entry=entry, error="Feedback is empty")

        match = _TASK_REFERENCE.search(feedback)
        if match:
            index = int(match.group(1)) - 1
            if not 0 <= index < len(entry.tasks):
                return EditOutcome(entry=entry, error=f"Task {index + 1} does not exist")
            indices = [index]
        else:
            indices = list(range(len(entry.tasks)))

        revised: list[Optional[TaskDraft]] = list(entry.tasks)
        for index in indices:
            revised[index] = await self.extractor.improve_task(
                entry.tasks[index], feedback, context
            )

        tasks = [task for task in revised if task is not None]
        logger.info(
            f"Entry {entry.id[:8]} revised from feedback: "
            f"{len(indices)} task(s) reviewed, {len(entry.tasks) - len(tasks)} removed"
        )
        return await self._save_edit(entry, tasks)

    async def confirm_mapping(
        self,
        channel_id: str,
        group_name: str,
        project_name: Optional[str],
        created_by: str,
    ) -> Optional[ChannelMapping]:
        """Save a channel mapping from suggested workspace and project names.

        Returns:
            The saved mapping, or None when no workspace matches the name or
            the mapping is incomplete.
        """
        wanted = group_name.lower()
        group = next(
            (g for g in await self._groups() if g.name.lower() == wanted), None
        )
        if group is None:
            return None

        project = None
        if project_name:
            try:
                project = await self.destination.find_project_by_name(
                    project_name, group.id
                )
            except DestinationError as e:
                logger.warning(f"Project lookup failed for {group.name}: {e}")

        mapping = ChannelMapping(
            slack_channel_id=channel_id,
            slack_workspace_id=self.team_id,
            destination_group_id=group.id,
            destination_project_id=project.id if project else None,
            project_name=project.name if project else project_name,
            created_by=created_by,
        )
        check = validate_channel_mapping(mapping.to_dict())
        if not check.valid:
            logger.warning(f"Not saving mapping for {channel_id}: {check.errors}")
            return None
        return self.store.save_channel_mapping(mapping)

    async def link_user(
        self, slack_user_id: str, email: str, workspace_id: Optional[str] = None
    ) -> LinkOutcome:
        """Link a Slack user to the destination user with the given email.

        Tasks assigned to the message author are then created with that
        user as assignee. An existing linkage for the Slack user is replaced.
        """
        email = sanitize_input(email, max_length=254)
        if not is_valid_email(email):
            return LinkOutcome(error=f"Invalid email address: {email or '(empty)'}")

        try:
            user = await self.destination.find_user_by_email(email)
        except DestinationError as e:
            logger.warning(f"User lookup for {email} failed: {e}")
            return LinkOutcome(error=f"Motion user lookup failed: {e}")
        if user is None:
            return LinkOutcome(error=f"No Motion user found with email {email}")

        linkage = UserLinkage(
            slack_user_id=slack_user_id,
            slack_workspace_id=self.team_id if workspace_id is None else workspace_id,
            destination_user_id=str(user["id"]) if user.get("id") else None,
            email=email,
        )
        check = validate_user_linkage(linkage.to_dict())
        if not check.valid:
            return LinkOutcome(error="; ".join(check.errors))

        logger.info(f"Linked Slack user {slack_user_id} to {linkage.destination_user_id}")
        return LinkOutcome(linkage=self.store.save_user_linkage(linkage))

    async def process_retry_queue(self, limit: int = 5) -> SweepReport:
        """Retry entries whose earlier sync attempt failed.

        Entries still awaiting their first approval are skipped.
        """
        report = SweepReport()
        retryable = self.store.list_pending(limit=limit, min_retry_count=1)

        for index, entry in enumerate(retryable):
            if index and self.pacing_delay > 0:
                await asyncio.sleep(self.pacing_delay)

            report.attempted += 1
            try:
                outcome = await self._sync_entry(entry)
            except StoreError as e:
                logger.error(f"Retry of entry {entry.id[:8]} failed: {e}")
                report.errors += 1
                continue

            if outcome.completed:
                report.completed += 1
            elif outcome.exhausted:
                report.exhausted += 1
            else:
                report.requeued += 1

        if report.attempted:
            logger.info(
                f"Retry sweep: {report.attempted} attempted, "
                f"{report.completed} completed, {report.requeued} requeued, "
                f"{report.exhausted} exhausted"
            )
        return report
