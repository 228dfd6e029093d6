"""LLM-powered task extraction from Slack messages."""

from __future__ import annotations

import json
import logging
import re
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, List, Optional

from openai import AsyncOpenAI

from projectize.config import LLMConfig
from projectize.models import ASSIGNEE_INFER, VALID_LEVELS, TaskDraft

logger = logging.getLogger(__name__)


class TaskParseError(ValueError):
    """The LLM response did not contain a usable JSON task list."""

    def __init__(self, message: str, raw_response: str = ""):
        super().__init__(message)
        self.raw_response = raw_response


@dataclass
class ExtractionContext:
    """Where a message came from, included in the prompt."""

    channel_name: str = "general"
    author_name: str = "unknown"
    readme_rules: str = "None specified"


@dataclass
class ExtractionResult:
    """Outcome of one extraction request."""

    success: bool
    tasks: List[TaskDraft] = field(default_factory=list)
    error: Optional[str] = None
    raw_response: Optional[str] = None
    model: Optional[str] = None


@dataclass
class MappingSuggestion:
    """Suggested destination for a whole Slack channel."""

    group: str
    project: str
    confidence: str = "low"
    reasoning: str = ""


EXTRACTION_PROMPT_TEMPLATE = """You are an AI assistant that extracts actionable tasks from Slack messages.

EXAMPLES:
Input: "Jenny, I think the website needs to be done next Tuesday for us to launch."
Output: {{
  "title": "Complete website for launch",
  "assignee": "Jenny",
  "due_date": "next Tuesday",
  "confidence": "high",
  "context": "needed for launch"
}}

Input: "We're going to need the logo before Thursday so we can send to the printer."
Output: {{
  "title": "Deliver logo for printing",
  "assignee": "infer_from_context",
  "due_date": "before Thursday",
  "confidence": "medium",
  "context": "for printer deadline"
}}

Input: "The printer will be finished Friday - I will plan to pick it up."
Output: {{
  "title": "Pick up from printer",
  "assignee": "message_author",
  "due_date": "Friday",
  "confidence": "high",
  "context": "printer completion"
}}

RULES:
- Only extract clear, actionable tasks
- For ambiguous assignees, use "infer_from_context" or "message_author"
- Skip tentative language ("maybe", "might", "could")
- Skip past due items
- Skip questions without clear ownership
- Return empty array if no actionable tasks found
- Include confidence level: "high", "medium", or "low"
- Include priority: "high", "medium", or "low"
- Add brief context explaining why this is a task

Extract tasks from this message:
{message}

Channel context: {channel_name}
Message author: {author_name}
Previous pinned readme rules: {readme_rules}

Return JSON array of task objects. If no actionable tasks found, return empty array []."""


FEEDBACK_PROMPT_TEMPLATE = """You are helping improve a task extraction based on user feedback.

ORIGINAL TASK:
{task}

USER FEEDBACK:
"{feedback}"

CONTEXT:
Channel: {channel_name}
Author: {author_name}

Return an improved version of the task based on the feedback as a single JSON object
with the same fields. If the feedback indicates the task should be removed, return null."""


MAPPING_PROMPT_TEMPLATE = """Based on a Slack channel, suggest a Motion workspace and project mapping.

CHANNEL INFO:
Name: {channel_name}
Topic: {topic}
Recent activity: {recent}

Consider common project patterns like marketing campaigns, product development,
operations, sales projects and engineering sprints.

Respond with JSON only:
{{"workspace": "suggested workspace name", "project": "suggested project name", "confidence": "high/medium/low", "reasoning": "why this mapping makes sense"}}"""


def parse_task_array(content: str) -> list[dict[str, Any]]:
    """Pull a list of task objects out of free-form model output.

    Tries the first ``[...]`` span, then strips everything before the first
    bracket or brace and after the last one. A lone object is wrapped in a
    list.

    Args:
        content: Raw model response text.

    Returns:
        List of parsed objects (not yet validated).

    Raises:
        TaskParseError: If neither strategy yields JSON.
    """
    candidates = []

    match = re.search(r"\[[\s\S]*\]", content)
    candidates.append(match.group(0) if match else content)

    stripped = re.sub(r"^[^\[{]*", "", content)
    stripped = re.sub(r"[^}\]]*$", "", stripped)
    candidates.append(stripped)

    for candidate in candidates:
        try:
            parsed = json.loads(candidate)
        except (json.JSONDecodeError, ValueError):
            continue
        if isinstance(parsed, list):
            return parsed
        if isinstance(parsed, dict):
            return [parsed]

    logger.warning(f"Failed to parse LLM response as JSON: {content[:200]}")
    raise TaskParseError("Failed to parse AI response", raw_response=content)


def clean_task(data: Any) -> Optional[TaskDraft]:
    """Validate and default one parsed task object.

    Returns None when the object has no usable title.
    """
    if not isinstance(data, dict):
        return None

    title = data.get("title")
    if not title or not isinstance(title, str) or not title.strip():
        return None

    confidence = data.get("confidence") or "medium"
    if confidence not in VALID_LEVELS:
        confidence = "medium"

    priority = data.get("priority") or "medium"
    if priority not in VALID_LEVELS:
        priority = "medium"

    assignee = data.get("assignee")
    due_date = data.get("due_date")
    context = data.get("context")
    estimated = data.get("estimated_time")

    return TaskDraft(
        title=title.strip(),
        assignee=assignee if isinstance(assignee, str) and assignee else ASSIGNEE_INFER,
        due_date=str(due_date) if due_date else None,
        confidence=confidence,
        priority=priority,
        context=context if isinstance(context, str) else "",
        estimated_time=str(estimated) if estimated else None,
    )


def default_mapping(channel_name: str, reasoning: str) -> MappingSuggestion:
    project = channel_name.replace("#", "").replace("-", " ", 1)
    return MappingSuggestion(
        group="General", project=project, confidence="low", reasoning=reasoning
    )


class TaskExtractor:
    """Sends messages to the LLM and turns the reply into TaskDrafts."""

    def __init__(self, config: LLMConfig):
        """Initialize extractor.

        Args:
            config: LLM configuration.
        """
        self.config = config
        self._client: Optional[AsyncOpenAI] = None

    @property
    def client(self) -> AsyncOpenAI:
        """Get or create OpenAI client."""
        if self._client is None:
            self._client = AsyncOpenAI(
                base_url=self.config.base_url,
                api_key=self.config.api_key or "not-needed",
                timeout=self.config.timeout,
            )
        return self._client

    async def _complete(
        self,
        prompt: str,
        max_tokens: Optional[int] = None,
        temperature: Optional[float] = None,
    ) -> str:
        response = await self.client.chat.completions.create(
            model=self.config.model,
            messages=[{"role": "user", "content": prompt}],
            temperature=(
                self.config.temperature if temperature is None else temperature
            ),
            max_tokens=max_tokens or self.config.max_tokens,
        )
        return response.choices[0].message.content or ""

    async def extract_tasks(
        self, text: str, context: Optional[ExtractionContext] = None
    ) -> ExtractionResult:
        """Extract actionable tasks from a message.

        Args:
            text: Message (or conversation transcript) to analyze.
            context: Channel and author information for the prompt.

        Returns:
            ExtractionResult; failures are reported, never raised.
        """
        context = context or ExtractionContext()
        prompt = EXTRACTION_PROMPT_TEMPLATE.format(
            message=text,
            channel_name=context.channel_name,
            author_name=context.author_name,
            readme_rules=context.readme_rules,
        )

        try:
            content = await self._complete(prompt)
        except Exception as e:
            logger.error(f"LLM request failed: {e}")
            return ExtractionResult(success=False, error=str(e))

        try:
            parsed = parse_task_array(content)
        except TaskParseError as e:
            return ExtractionResult(
                success=False, error=str(e), raw_response=e.raw_response
            )

        tasks = [task for task in (clean_task(item) for item in parsed) if task]
        logger.info(f"Extracted {len(tasks)} task(s) from {len(parsed)} candidate(s)")

        return ExtractionResult(success=True, tasks=tasks, model=self.config.model)

    async def improve_task(
        self,
        task: TaskDraft,
        feedback: str,
        context: Optional[ExtractionContext] = None,
    ) -> Optional[TaskDraft]:
        """Revise a task from free-form user feedback.

        Returns:
            The revised task, None if the model says to drop it, or the
            original task when anything goes wrong.
        """
        context = context or ExtractionContext()
        prompt = FEEDBACK_PROMPT_TEMPLATE.format(
            task=json.dumps(task.to_dict(), indent=2),
            feedback=feedback,
            channel_name=context.channel_name,
            author_name=context.author_name,
        )

        try:
            content = (await self._complete(prompt, max_tokens=500)).strip()
        except Exception as e:
            logger.error(f"Feedback processing failed: {e}")
            return task

        if content.lower() == "null":
            return None

        match = re.search(r"\{[\s\S]*\}", content)
        if not match:
            logger.warning(f"Failed to parse improved task: {content[:100]}")
            return task

        try:
            improved = clean_task(json.loads(match.group(0)))
        except (json.JSONDecodeError, ValueError):
            logger.warning(f"Failed to parse improved task: {content[:100]}")
            return task

        return improved or task

    async def suggest_channel_mapping(
        self,
        channel_name: str,
        topic: str = "",
        recent_messages: Optional[List[str]] = None,
    ) -> MappingSuggestion:
        """Suggest a destination workspace and project for a channel."""
        prompt = MAPPING_PROMPT_TEMPLATE.format(
            channel_name=channel_name,
            topic=topic,
            recent=". ".join((recent_messages or [])[:3]),
        )

        try:
            content = await self._complete(prompt, max_tokens=300, temperature=0.2)
        except Exception as e:
            logger.error(f"Project mapping suggestion failed: {e}")
            return default_mapping(channel_name, "Error occurred, using default mapping")

        match = re.search(r"\{[^{}]*\}", content, re.DOTALL)
        try:
            data = json.loads(match.group(0)) if match else None
        except (json.JSONDecodeError, ValueError):
            data = None

        if not isinstance(data, dict) or not data.get("workspace"):
            return default_mapping(channel_name, "Default mapping based on channel name")

        confidence = data.get("confidence", "low")
        return MappingSuggestion(
            group=str(data["workspace"]),
            project=str(data.get("project") or channel_name),
            confidence=confidence if confidence in VALID_LEVELS else "low",
            reasoning=str(data.get("reasoning", "")),
        )

    async def health_check(self) -> dict:
        """Send a tiny request to check the model endpoint."""
        try:
            reply = await self._complete('Say "OK" if you are working.', max_tokens=10)
            return {
                "healthy": True,
                "model": self.config.model,
                "response": reply,
                "timestamp": datetime.now(timezone.utc).isoformat(),
            }
        except Exception as e:
            return {
                "healthy": False,
                "model": self.config.model,
                "error": str(e),
                "timestamp": datetime.now(timezone.utc).isoformat(),
            }

    async def close(self) -> None:
        """Clean up resources."""
        if self._client:
            await self._client.close()
            self._client = None
