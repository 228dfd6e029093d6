"""Slack Bot integration for Projectize using Slack Bolt."""

import json
import logging
import time
from typing import Any, Callable, Optional

from slack_bolt.adapter.socket_mode.async_handler import AsyncSocketModeHandler
from slack_bolt.async_app import AsyncApp
from slack_sdk.errors import SlackApiError

from projectize import blocks
from projectize.config import SlackConfig
from projectize.conversation import ConversationAnalyzer
from projectize.extraction import ExtractionContext, TaskExtractor
from projectize.logging import set_correlation_id
from projectize.models import QueueStatus
from projectize.text import (
    extract_quoted_text,
    parse_link_command,
    parse_message,
    parse_task_edit_command,
    unescape_slack,
)
from projectize.validation import RateLimiter, validate_slack_event
from projectize.workflow import TaskWorkflow

logger = logging.getLogger(__name__)

MIN_CONTENT_LENGTH = 10
STATUS_HISTORY_LIMIT = 5

APPROVE_REACTION = "white_check_mark"
REJECT_REACTION = "x"
EDIT_REACTION = "pencil2"


class SlackBot:
    """Slack front end for the task approval workflow."""

    def __init__(
        self,
        config: SlackConfig,
        workflow: TaskWorkflow,
        extractor: TaskExtractor,
        analyzer: ConversationAnalyzer,
        rate_limiter: Optional[RateLimiter] = None,
        clock: Callable[[], float] = time.time,
    ):
        """Initialize Slack bot.

        Args:
            config: Slack tokens and message age limit.
            workflow: Approval workflow the handlers drive.
            extractor: Used directly for channel setup suggestions.
            analyzer: Conversation history analyzer for the history command.
            rate_limiter: Per-user limiter for extraction requests.
            clock: Unix time source, injectable for tests.
        """
        self.config = config
        self.workflow = workflow
        self.extractor = extractor
        self.analyzer = analyzer
        self.rate_limiter = rate_limiter or RateLimiter()
        self.bot_user_id = config.bot_user_id
        self._clock = clock

        # Initialize Slack Bolt app
        self.app = AsyncApp(token=config.bot_token)
        self._setup_handlers()

        self._handler: Optional[AsyncSocketModeHandler] = None

    def _setup_handlers(self) -> None:
        """Set up Slack event and action handlers."""

        @self.app.event("app_mention")
        async def on_mention(event: dict, client: Any) -> None:
            await self.handle_mention(event, client)

        @self.app.event("message")
        async def on_message(event: dict, client: Any) -> None:
            await self.handle_message(event, client)

        @self.app.event("reaction_added")
        async def on_reaction(event: dict, client: Any) -> None:
            await self.handle_reaction(event, client)

        @self.app.event("member_joined_channel")
        async def on_member_joined(event: dict, client: Any) -> None:
            await self.handle_member_joined(event, client)

        @self.app.event("app_home_opened")
        async def on_home_opened(event: dict, client: Any) -> None:
            await self.handle_home_opened(event, client)

        @self.app.action("approve_tasks")
        async def on_approve(ack: Callable, body: dict, client: Any) -> None:
            await ack()
            await self.approve(body["channel"]["id"], body["actions"][0]["value"], client)

        @self.app.action("reject_tasks")
        async def on_reject(ack: Callable, body: dict, client: Any) -> None:
            await ack()
            await self.reject(body["channel"]["id"], body["actions"][0]["value"], client)

        @self.app.action("edit_tasks")
        async def on_edit(ack: Callable, body: dict, client: Any) -> None:
            await ack()
            await self.request_edit(
                body["channel"]["id"], body["actions"][0]["value"], client
            )

        @self.app.action("confirm_mapping")
        async def on_confirm_mapping(ack: Callable, body: dict, client: Any) -> None:
            await ack()
            await self.confirm_mapping(body, client)

        @self.app.error
        async def on_error(error: Exception) -> None:
            logger.error(f"Slack app error: {error}")

    async def _reply(
        self, client: Any, channel: str, text: str, thread_ts: Optional[str] = None, **kwargs: Any
    ) -> dict:
        return await client.chat_postMessage(
            channel=channel, text=text, thread_ts=thread_ts, **kwargs
        )

    async def _context(self, client: Any, channel: str, user: str) -> ExtractionContext:
        """Channel and author names for the extraction prompt."""
        context = ExtractionContext(channel_name="unknown", author_name="unknown")
        try:
            info = await client.conversations_info(channel=channel)
            context.channel_name = (info.get("channel") or {}).get("name") or "unknown"
            profile = await client.users_info(user=user)
            user_data = profile.get("user") or {}
            context.author_name = (
                user_data.get("real_name") or user_data.get("name") or "unknown"
            )
        except SlackApiError as e:
            logger.warning(f"Could not load channel/user info: {e}")
        return context

    async def handle_mention(self, event: dict, client: Any) -> None:
        """Handle @mentions: commands or task extraction."""
        set_correlation_id(event.get("ts", "")[-8:] or "mention")

        check = validate_slack_event(event)
        if not check.valid:
            logger.warning(f"Ignoring malformed mention: {check.errors}")
            return

        channel = event["channel"]
        user = event["user"]
        ts = event.get("ts", "")

        try:
            parsed = parse_message(event["text"])

            if parsed.command == "help":
                await self._reply(
                    client, channel, "Projectize help", blocks=blocks.help_blocks()
                )
                return
            if parsed.command == "setup":
                await self._handle_setup(client, channel, user)
                return
            if parsed.command == "status":
                counts = self.workflow.store.count_by_status()
                recent = self.workflow.store.list_history(
                    channel_id=channel, limit=STATUS_HISTORY_LIMIT
                )
                await self._reply(client, channel, blocks.status_text(counts, recent), ts)
                return
            if parsed.command == "link":
                await self._handle_link(client, channel, user, parsed.content, ts)
                return

            decision = self.rate_limiter.check(user, "extract")
            if not decision.allowed:
                await self._reply(
                    client,
                    channel,
                    f"⏳ Too many requests. Try again in {decision.retry_after}s.",
                    ts,
                )
                return

            if parsed.command == "history":
                await self._handle_history(client, channel, user, ts)
                return

            text = unescape_slack(parsed.content)
            quoted = extract_quoted_text(text)
            content = quoted or text
            if len(content.strip()) < MIN_CONTENT_LENGTH:
                await self._reply(client, channel, blocks.USAGE_HINT)
                return

            await self._reply(client, channel, blocks.ANALYZING_TEXT, ts)
            context = await self._context(client, channel, user)
            outcome = await self.workflow.extract_and_enqueue(
                content, ts, channel, user, context
            )

            if not outcome.success:
                await self._reply(
                    client, channel, blocks.extraction_error_text(outcome.error), ts
                )
                return
            if outcome.entry is None:
                await self._reply(client, channel, blocks.NO_TASKS_TEXT, ts)
                return

            await self._post_preview(client, channel, ts, outcome.entry, quoted or None)

        except Exception:
            logger.exception("Error handling mention")
            await self._reply(client, channel, blocks.GENERIC_ERROR_TEXT, ts)

    async def _post_preview(
        self, client: Any, channel: str, ts: str, entry: Any, quoted: Optional[str] = None
    ) -> None:
        await self._reply(
            client,
            channel,
            blocks.preview_text(entry.tasks),
            ts,
            blocks=blocks.task_preview_blocks(
                entry.tasks, entry.suggestions, ts, quoted=quoted
            ),
        )

    async def _handle_setup(self, client: Any, channel: str, user: str) -> None:
        mapping = self.workflow.store.get_channel_mapping(channel, self.workflow.team_id)
        if mapping:
            await self._reply(client, channel, blocks.existing_mapping_text(mapping))
            return

        info = await client.conversations_info(channel=channel)
        channel_data = info.get("channel") or {}
        suggestion = await self.extractor.suggest_channel_mapping(
            channel_data.get("name") or "unknown",
            (channel_data.get("topic") or {}).get("value") or "",
        )
        await self._reply(
            client,
            channel,
            "Channel setup",
            blocks=blocks.setup_blocks(suggestion, channel),
        )

    async def _handle_link(
        self, client: Any, channel: str, user: str, content: str, ts: str
    ) -> None:
        command = parse_link_command(content)
        target = command.slack_user_id or user
        outcome = await self.workflow.link_user(target, command.email)
        await self._reply(client, channel, blocks.link_result_text(outcome, target), ts)

    async def _handle_history(self, client: Any, channel: str, user: str, ts: str) -> None:
        await self._reply(client, channel, "📚 Reading recent conversation...", ts)
        analysis = await self.analyzer.analyze(
            client, channel, ts, self.bot_user_id, now=self._clock()
        )
        await self._reply(client, channel, blocks.history_summary_text(analysis), ts)

        if analysis.success and analysis.tasks:
            outcome = await self.workflow.enqueue_tasks(analysis.tasks, ts, channel, user)
            if outcome.entry:
                await self._post_preview(client, channel, ts, outcome.entry)

    async def handle_message(self, event: dict, client: Any) -> None:
        """Handle thread replies on a batch in editing.

        Edit commands are applied directly; any other reply is treated as
        feedback and sent to the model to revise the tasks.
        """
        if event.get("bot_id") or event.get("subtype"):
            return
        if self.bot_user_id and event.get("user") == self.bot_user_id:
            return

        ts = event.get("ts")
        try:
            age = self._clock() - float(ts)
        except (TypeError, ValueError):
            return
        if age > self.config.max_message_age_seconds:
            logger.debug(f"Ignoring message {ts}, {int(age)}s old")
            return

        thread_ts = event.get("thread_ts")
        if not thread_ts or thread_ts == ts:
            return

        text = unescape_slack(event.get("text"))
        if not text.strip():
            return

        channel = event.get("channel", "")
        set_correlation_id(ts[-8:])

        try:
            entry = self.workflow.find_live_entry(thread_ts, channel)
            if entry is None or entry.status is not QueueStatus.EDITING:
                return

            if parse_task_edit_command(text) is not None:
                outcome = await self.workflow.apply_edit(thread_ts, channel, text)
            else:
                user = event.get("user", "")
                decision = self.rate_limiter.check(user, "feedback")
                if not decision.allowed:
                    await self._reply(
                        client,
                        channel,
                        f"⏳ Too many requests. Try again in {decision.retry_after}s.",
                        thread_ts,
                    )
                    return
                context = await self._context(client, channel, user)
                outcome = await self.workflow.apply_feedback(
                    thread_ts, channel, text, context
                )

            if outcome.error:
                await self._reply(client, channel, f"⚠️ {outcome.error}", thread_ts)
                return
            if outcome.entry.status is QueueStatus.FAILED:
                await self._reply(
                    client, channel, "🗑️ All tasks removed. Nothing to create.", thread_ts
                )
                return

            await self._post_preview(client, channel, thread_ts, outcome.entry)

        except Exception:
            logger.exception("Error applying edit")
            await self._reply(client, channel, blocks.GENERIC_ERROR_TEXT, thread_ts)

    async def handle_reaction(self, event: dict, client: Any) -> None:
        """Reactions on a source message approve, reject or edit its tasks."""
        if not validate_slack_event(event).valid:
            return

        item = event["item"]
        channel = item.get("channel")
        ts = item.get("ts")
        if not channel or not ts:
            return

        reaction = event["reaction"]
        if reaction == APPROVE_REACTION:
            await self.approve(channel, ts, client)
        elif reaction == REJECT_REACTION:
            await self.reject(channel, ts, client)
        elif reaction == EDIT_REACTION:
            await self.request_edit(channel, ts, client)

    async def approve(self, channel: str, message_ts: str, client: Any) -> None:
        """Create the tasks of a pending entry and report the result."""
        set_correlation_id(message_ts[-8:])
        try:
            entry = self.workflow.store.find_by_key(message_ts, channel)
            if entry is None:
                await self._reply(client, channel, blocks.NOTHING_PENDING_TEXT, message_ts)
                return
            if entry.status is not QueueStatus.PENDING:
                await self._reply(
                    client,
                    channel,
                    blocks.already_processed_text(entry.status.value),
                    message_ts,
                )
                return

            progress = await self._reply(
                client, channel, blocks.creating_text(len(entry.tasks)), message_ts
            )
            outcome = await self.workflow.approve(message_ts, channel)
            if not outcome.processed:
                status = outcome.entry.status.value if outcome.entry else "processing"
                await self._reply(
                    client, channel, blocks.already_processed_text(status), message_ts
                )
                return

            await client.chat_update(
                channel=channel,
                ts=progress["ts"],
                text=blocks.approval_result_text(outcome),
            )
        except Exception:
            logger.exception("Error approving tasks")
            await self._reply(client, channel, blocks.GENERIC_ERROR_TEXT, message_ts)

    async def reject(self, channel: str, message_ts: str, client: Any) -> None:
        try:
            entry = self.workflow.reject(message_ts, channel)
            text = blocks.CANCELLED_TEXT if entry else blocks.NOTHING_PENDING_TEXT
            await self._reply(client, channel, text, message_ts)
        except Exception:
            logger.exception("Error rejecting tasks")
            await self._reply(client, channel, blocks.GENERIC_ERROR_TEXT, message_ts)

    async def request_edit(self, channel: str, message_ts: str, client: Any) -> None:
        try:
            entry = self.workflow.request_edit(message_ts, channel)
            text = blocks.EDIT_INSTRUCTIONS if entry else blocks.NOTHING_PENDING_TEXT
            await self._reply(client, channel, text, message_ts)
        except Exception:
            logger.exception("Error starting edit")
            await self._reply(client, channel, blocks.GENERIC_ERROR_TEXT, message_ts)

    async def confirm_mapping(self, body: dict, client: Any) -> None:
        """Save the channel mapping carried by a confirm button."""
        try:
            value = json.loads(body["actions"][0]["value"])
        except (KeyError, IndexError, ValueError) as e:
            logger.warning(f"Bad confirm_mapping payload: {e}")
            return

        channel = value.get("channel") or body.get("channel", {}).get("id", "")
        user = body.get("user", {}).get("id", "")
        try:
            mapping = await self.workflow.confirm_mapping(
                channel, value.get("workspace", ""), value.get("project"), user
            )
            await self._reply(
                client,
                channel,
                blocks.mapping_saved_text(mapping, value.get("workspace", "")),
            )
        except Exception:
            logger.exception("Error saving channel mapping")
            await self._reply(client, channel, blocks.GENERIC_ERROR_TEXT)

    async def handle_member_joined(self, event: dict, client: Any) -> None:
        """Greet a channel when the bot itself is added."""
        if not self.bot_user_id or event.get("user") != self.bot_user_id:
            return
        channel = event.get("channel", "")
        try:
            await self._reply(
                client, channel, blocks.WELCOME_TEXT, blocks=blocks.welcome_blocks()
            )
        except SlackApiError as e:
            logger.error(f"Failed to post welcome message: {e}")

    async def handle_home_opened(self, event: dict, client: Any) -> None:
        try:
            await client.views_publish(user_id=event["user"], view=blocks.home_view())
        except SlackApiError as e:
            logger.error(f"Error publishing home view: {e}")

    async def start(self) -> None:
        """Start the Slack bot in Socket Mode."""
        auth = await self.app.client.auth_test()
        self.bot_user_id = self.bot_user_id or auth.get("user_id", "")
        self.workflow.team_id = self.workflow.team_id or auth.get("team_id", "")
        logger.info(f"Connected to Slack as {auth.get('user')} ({self.bot_user_id})")

        logger.info("Starting Slack bot in Socket Mode...")
        self._handler = AsyncSocketModeHandler(self.app, self.config.app_token)
        await self._handler.connect_async()

    async def stop(self) -> None:
        """Stop the Slack bot."""
        if self._handler:
            logger.info("Stopping Slack bot...")
            await self._handler.close_async()


async def test_connection(bot_token: str) -> bool:
    """Test Slack connection without starting the full bot.

    Args:
        bot_token: Slack bot OAuth token.

    Returns:
        True if connection successful, False otherwise.
    """
    try:
        app = AsyncApp(token=bot_token)
        response = await app.client.auth_test()
        logger.info(f"Connected to Slack as: {response['user']}")
        return True
    except SlackApiError as e:
        logger.error(f"Slack connection test failed: {e}")
        return False
