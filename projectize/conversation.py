"""Task extraction over a window of channel history.

Used by the ``history`` command: everything said since the bot was last
mentioned (or over the last two days) is flattened into one transcript and
sent through the extractor.
"""

from __future__ import annotations

import logging
import time
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, List, Optional

from slack_sdk.errors import SlackApiError

from projectize.extraction import ExtractionContext, TaskExtractor
from projectize.models import TaskDraft
from projectize.text import strip_slack_formatting

logger = logging.getLogger(__name__)

MENTION_LOOKBACK_SECONDS = 7 * 24 * 3600
DEFAULT_WINDOW_SECONDS = 48 * 3600
HISTORY_LIMIT = 200
MIN_MESSAGE_LENGTH = 5

TRANSCRIPT_FOOTER = """
PLEASE EXTRACT ALL ACTIONABLE TASKS from this conversation history. Look for:
- Commitments people made
- Deadlines mentioned
- Work assignments
- Follow-up actions
- Things people said they would do
"""


@dataclass
class ConversationAnalysis:
    """Outcome of analyzing a stretch of channel history."""

    success: bool
    tasks: List[TaskDraft] = field(default_factory=list)
    messages_analyzed: int = 0
    time_range: str = "none"
    error: Optional[str] = None


def clean_message_text(text: Optional[str]) -> str:
    """Flatten Slack markup onto one line."""
    return strip_slack_formatting(text).replace("\n", " ")


def is_relevant(message: dict) -> bool:
    """Plain user messages with real content."""
    text = (message.get("text") or "").strip()
    return (
        message.get("type") == "message"
        and not message.get("subtype")
        and not message.get("bot_id")
        and len(text) > MIN_MESSAGE_LENGTH
        and "has joined the channel" not in text
        and "has left the channel" not in text
    )


def describe_time_range(messages: List[dict]) -> str:
    """Span between the first and last message, in words."""
    if not messages:
        return "none"

    duration = float(messages[-1]["ts"]) - float(messages[0]["ts"])
    if duration < 3600:
        return f"{round(duration / 60)} minutes"
    if duration < 86400:
        return f"{round(duration / 3600)} hours"
    return f"{round(duration / 86400)} days"


def build_transcript(messages: List[dict]) -> str:
    lines = ["RECENT CONVERSATION HISTORY:", ""]
    for message in messages:
        stamp = datetime.fromtimestamp(float(message["ts"])).strftime("%Y-%m-%d %H:%M")
        profile = message.get("user_profile") or {}
        user = profile.get("real_name") or profile.get("display_name") or "User"
        lines.append(f"[{stamp}] {user}: {clean_message_text(message.get('text'))}")
    return "\n".join(lines) + "\n" + TRANSCRIPT_FOOTER


class ConversationAnalyzer:
    """Pulls recent channel history and extracts tasks from it."""

    def __init__(self, extractor: TaskExtractor):
        self.extractor = extractor

    async def find_last_mention(
        self, client: Any, channel: str, before_ts: str, bot_user_id: str, now: float
    ) -> Optional[str]:
        """Timestamp of the latest earlier message mentioning the bot."""
        if not bot_user_id:
            return None

        response = await client.conversations_history(
            channel=channel,
            oldest=str(int(now - MENTION_LOOKBACK_SECONDS)),
            latest=before_ts,
            limit=HISTORY_LIMIT,
        )
        marker = f"<@{bot_user_id}>"
        for message in response.get("messages") or []:
            if message.get("ts") != before_ts and marker in (message.get("text") or ""):
                return message["ts"]
        return None

    async def messages_since(
        self,
        client: Any,
        channel: str,
        since_ts: Optional[str],
        before_ts: str,
        now: float,
    ) -> List[dict]:
        """Relevant messages in the window, oldest first."""
        oldest = since_ts or str(int(now - DEFAULT_WINDOW_SECONDS))
        response = await client.conversations_history(
            channel=channel, oldest=oldest, latest=before_ts, limit=HISTORY_LIMIT
        )
        messages = [m for m in response.get("messages") or [] if is_relevant(m)]
        # Slack returns newest first
        messages.reverse()
        return messages

    async def analyze(
        self,
        client: Any,
        channel: str,
        current_ts: str,
        bot_user_id: str,
        now: Optional[float] = None,
    ) -> ConversationAnalysis:
        """Extract tasks from the conversation leading up to ``current_ts``.

        Args:
            client: Slack async web client.
            channel: Channel to read.
            current_ts: Timestamp of the triggering mention, excluded.
            bot_user_id: The bot's user id, used to find its last mention.
            now: Unix time reference. Defaults to the current time.

        Returns:
            ConversationAnalysis; Slack API errors are reported, not raised.
        """
        now = time.time() if now is None else now

        try:
            last_mention = await self.find_last_mention(
                client, channel, current_ts, bot_user_id, now
            )
            messages = await self.messages_since(
                client, channel, last_mention, current_ts, now
            )
        except SlackApiError as e:
            logger.error(f"Could not read history of {channel}: {e}")
            return ConversationAnalysis(success=False, error=str(e))

        if not messages:
            logger.info(f"No conversation history to analyze in {channel}")
            return ConversationAnalysis(success=True)

        logger.info(
            f"Analyzing {len(messages)} message(s) in {channel} since "
            f"{'last mention' if last_mention else 'the default window'}"
        )

        result = await self.extractor.extract_tasks(
            build_transcript(messages),
            ExtractionContext(
                channel_name="conversation-history", author_name="multiple-users"
            ),
        )
        return ConversationAnalysis(
            success=result.success,
            tasks=result.tasks,
            messages_analyzed=len(messages),
            time_range=describe_time_range(messages),
            error=result.error,
        )
