"""Suggest a destination workspace and project for each extracted task.

Scoring is a fixed keyword heuristic. It sits behind the ``ScoringStrategy``
protocol so a different ranking can be plugged into ``DestinationMatcher``
without touching the approval workflow.
"""

from __future__ import annotations

import logging
import re
from dataclasses import dataclass, field
from typing import Awaitable, Callable, Optional, Protocol, Sequence

from projectize.models import Destination, DestinationSuggestion, TaskDraft

logger = logging.getLogger(__name__)

STOP_WORDS = frozenset(
    {
        "the", "and", "for", "are", "but", "not", "you", "all", "can", "had",
        "her", "was", "one", "our", "out", "day", "get", "has", "him", "his",
        "how", "its", "may", "new", "now", "old", "see", "two", "who", "boy",
        "did", "she", "use", "way", "will", "need", "have", "this", "that",
        "with", "they",
    }
)  # fmt: skip

PERSONAL_KEYWORDS = (
    "personal", "home", "health", "doctor", "appointment",
    "family", "vacation", "shopping", "errands",
)  # fmt: skip

WORK_KEYWORDS = (
    "client", "project", "meeting", "deadline", "business",
    "company", "team", "development", "marketing",
)  # fmt: skip

KEYWORD_POINTS = 5

# Look up the projects of a group; returns an empty list when unavailable
ProjectLookup = Callable[[str], Awaitable[Sequence[Destination]]]


@dataclass
class Score:
    """A group's score and the reasons that produced it."""

    total: int = 0
    reasons: list[str] = field(default_factory=list)

    @property
    def reasoning(self) -> str:
        return ", ".join(self.reasons) or "no specific matches"


class ScoringStrategy(Protocol):
    """Ranks destinations against a task's text."""

    def score_group(self, task_text: str, group: Destination) -> Score: ...

    def score_project(self, task_text: str, project: Destination) -> int: ...


def extract_keywords(text: str) -> list[str]:
    """Lowercase words longer than two characters, minus stop words, deduped."""
    words = re.sub(r"[^\w\s]", " ", text.lower()).split()
    seen: dict[str, None] = {}
    for word in words:
        if len(word) > 2 and word not in STOP_WORDS:
            seen.setdefault(word, None)
    return list(seen)


def is_personal_task(text: str) -> bool:
    return any(keyword in text for keyword in PERSONAL_KEYWORDS)


def is_work_task(text: str) -> bool:
    return any(keyword in text for keyword in WORK_KEYWORDS)


def confidence_for(score: int) -> str:
    if score > 3:
        return "high"
    if score > 1:
        return "medium"
    return "low"


class KeywordScoringStrategy:
    """Keyword overlap plus a handful of hand-written domain rules."""

    def score_group(self, task_text: str, group: Destination) -> Score:
        name = group.name.lower()
        score = Score()

        for keyword in extract_keywords(task_text):
            if keyword in name:
                score.total += KEYWORD_POINTS
                score.reasons.append(f'keyword match: "{keyword}"')

        if "nastygram" in task_text and "nastygram" in name:
            score.total += 10
            score.reasons.append("project context match: nastygram")

        if "labcorp" in task_text and "health" in name:
            score.total += 8
            score.reasons.append("health-related task")

        if is_personal_task(task_text) and "personal" in name:
            score.total += 3
            score.reasons.append("personal task classification")

        if is_work_task(task_text) and ("dkc" in name or "dkdev" in name):
            score.total += 3
            score.reasons.append("work task classification")

        if "personal" in name and score.total == 0:
            score.total += 1
            score.reasons.append("default personal workspace")

        return score

    def score_project(self, task_text: str, project: Destination) -> int:
        name = project.name.lower()
        return sum(
            KEYWORD_POINTS for keyword in extract_keywords(task_text) if keyword in name
        )


class DestinationMatcher:
    """Picks a workspace and project for every task of a batch."""

    def __init__(
        self,
        strategy: Optional[ScoringStrategy] = None,
        project_lookup: Optional[ProjectLookup] = None,
    ):
        """Initialize matcher.

        Args:
            strategy: Scoring strategy, defaults to KeywordScoringStrategy.
            project_lookup: Async callable returning the projects of a group.
        """
        self.strategy = strategy or KeywordScoringStrategy()
        self.project_lookup = project_lookup

    @staticmethod
    def task_text(task: TaskDraft) -> str:
        return f"{task.title} {task.context or ''}".lower()

    async def suggest(
        self, tasks: Sequence[TaskDraft], groups: Sequence[Destination]
    ) -> list[DestinationSuggestion]:
        """Build one suggestion per task. Empty when there are no groups."""
        if not groups:
            return []
        return [await self.best_match(task, groups) for task in tasks]

    async def best_match(
        self, task: TaskDraft, groups: Sequence[Destination]
    ) -> DestinationSuggestion:
        text = self.task_text(task)

        scored = [(group, self.strategy.score_group(text, group)) for group in groups]
        # sorted() is stable, so ties keep the order the API returned
        best_group, best_score = sorted(scored, key=lambda pair: -pair[1].total)[0]

        project = None
        if self.project_lookup is not None:
            try:
                projects = await self.project_lookup(best_group.id)
            except Exception as e:
                logger.warning(f"Could not get projects for {best_group.name}: {e}")
                projects = []
            project = self.best_project(text, projects)

        return DestinationSuggestion(
            task=task,
            group=best_group,
            project=project,
            confidence=confidence_for(best_score.total),
            reasoning=best_score.reasoning,
        )

    def best_project(
        self, task_text: str, projects: Sequence[Destination]
    ) -> Optional[Destination]:
        if not projects:
            return None
        ranked = sorted(
            projects, key=lambda p: -self.strategy.score_project(task_text, p)
        )
        best = ranked[0]
        return best if self.strategy.score_project(task_text, best) > 0 else None

