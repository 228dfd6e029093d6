"""Tests for the Slack event and action handlers."""

import json
from unittest.mock import AsyncMock, MagicMock, patch

import pytest

from projectize import blocks
from projectize.config import SlackConfig
from projectize.conversation import ConversationAnalysis, ConversationAnalyzer
from projectize.extraction import MappingSuggestion
from projectize.models import ChannelMapping, QueueStatus, TaskDraft
from projectize.slack_bot import SlackBot
from projectize.validation import RateLimiter

BOT = "UBOT12345"
TS = "1700000000.000100"
NOW = 1_700_000_100.0


def _mention(text: str, ts: str = TS) -> dict:
    return {
        "type": "app_mention",
        "text": f"<@{BOT}> {text}",
        "user": "U1",
        "channel": "C1",
        "ts": ts,
    }


def _reaction(name: str) -> dict:
    return {
        "type": "reaction_added",
        "reaction": name,
        "user": "U1",
        "item": {"type": "message", "channel": "C1", "ts": TS},
    }


def _posted(client) -> list:
    return [c.kwargs["text"] for c in client.chat_postMessage.call_args_list]


@pytest.fixture
def client() -> MagicMock:
    """Slack web client with canned responses."""
    mock = MagicMock()
    mock.chat_postMessage = AsyncMock(return_value={"ok": True, "ts": "1700000001.000200"})
    mock.chat_update = AsyncMock(return_value={"ok": True})
    mock.conversations_info = AsyncMock(
        return_value={"channel": {"name": "launch", "topic": {"value": "Spring launch"}}}
    )
    mock.users_info = AsyncMock(return_value={"user": {"real_name": "Sam"}})
    mock.views_publish = AsyncMock(return_value={"ok": True})
    return mock


@pytest.fixture
def bot(workflow, extractor) -> SlackBot:
    with patch("projectize.slack_bot.AsyncApp"):
        return SlackBot(
            SlackConfig(bot_token="xoxb-test", app_token="xapp-test", bot_user_id=BOT),
            workflow,
            extractor,
            ConversationAnalyzer(extractor),
            clock=lambda: NOW,
        )


class TestMentions:
    """Tests for handle_mention."""

    @pytest.mark.asyncio
    async def test_extracts_and_posts_preview(self, bot, client):
        await bot.handle_mention(_mention("Jenny needs to finish the report by Friday"), client)

        first, preview = client.chat_postMessage.call_args_list
        assert first.kwargs["text"] == blocks.ANALYZING_TEXT
        assert preview.kwargs["thread_ts"] == TS
        assert preview.kwargs["text"] == "📋 Found 1 task"
        actions = preview.kwargs["blocks"][-1]["elements"]
        assert [a["action_id"] for a in actions] == [
            "approve_tasks",
            "edit_tasks",
            "reject_tasks",
        ]
        assert actions[0]["value"] == TS

        entry = bot.workflow.store.find_by_key(TS, "C1")
        assert entry.status is QueueStatus.PENDING
        assert entry.tasks[0].assignee == "Jenny"

        prompt = bot.extractor._complete.call_args.args[0]
        assert "Channel context: launch" in prompt
        assert "Message author: Sam" in prompt

    @pytest.mark.asyncio
    async def test_quoted_text_wins(self, bot, client):
        await bot.handle_mention(
            _mention("please look at this\n> Jenny will finish the report by Friday"), client
        )
        prompt = bot.extractor._complete.call_args.args[0]
        assert "Jenny will finish the report by Friday" in prompt
        assert "please look at this" not in prompt
        assert "from quoted text" in client.chat_postMessage.call_args.kwargs["blocks"][0]["text"]["text"]

    @pytest.mark.asyncio
    async def test_escaped_quote_markers_are_recognised(self, bot, client):
        await bot.handle_mention(
            _mention("please look at this\n&gt; Jenny will finish the report by Friday"),
            client,
        )
        prompt = bot.extractor._complete.call_args.args[0]
        assert "Jenny will finish the report by Friday" in prompt
        assert "please look at this" not in prompt

    @pytest.mark.asyncio
    async def test_short_message_gets_usage_hint(self, bot, client):
        await bot.handle_mention(_mention("hi"), client)
        assert _posted(client) == [blocks.USAGE_HINT]
        bot.extractor._complete.assert_not_awaited()

    @pytest.mark.asyncio
    async def test_help(self, bot, client):
        await bot.handle_mention(_mention("help"), client)
        assert client.chat_postMessage.call_args.kwargs["blocks"] == blocks.help_blocks()

    @pytest.mark.asyncio
    async def test_status(self, bot, client):
        await bot.handle_mention(_mention("status"), client)
        assert _posted(client)[0].startswith("📊 *Task queue*")
        assert "Recent syncs" not in _posted(client)[0]

    @pytest.mark.asyncio
    async def test_status_lists_recent_syncs(self, bot, client):
        await bot.handle_mention(_mention("Jenny needs to finish the report by Friday"), client)
        await bot.approve("C1", TS, client)
        client.chat_postMessage.reset_mock()

        await bot.handle_mention(_mention("status", ts="1700000050.000100"), client)
        text = _posted(client)[0]
        assert "• completed: 1" in text
        assert "🕘 *Recent syncs here*\n• ✅ 1 task created" in text

    @pytest.mark.asyncio
    async def test_link_command(self, bot, client):
        await bot.handle_mention(_mention("link <mailto:jenny@example.com|jenny@example.com>"), client)

        assert _posted(client)[0].startswith("🔗 Linked <@U1> to Motion user jenny@example.com.")
        assert bot.workflow.store.get_user_linkage("U1").destination_user_id == "m-9"
        bot.extractor._complete.assert_not_awaited()

    @pytest.mark.asyncio
    async def test_link_command_for_other_user(self, bot, client):
        await bot.handle_mention(_mention("link <@U0SAM12345> sam@example.com"), client)

        assert _posted(client)[0] == (
            "⚠️ Could not link <@U0SAM12345>: No Motion user found with email sam@example.com"
        )
        assert bot.workflow.store.get_user_linkage("U0SAM12345") is None

    @pytest.mark.asyncio
    async def test_no_tasks_found(self, bot, client):
        bot.extractor._complete.return_value = "[]"
        await bot.handle_mention(_mention("lovely weather we are having today"), client)
        assert _posted(client)[-1] == blocks.NO_TASKS_TEXT

    @pytest.mark.asyncio
    async def test_rate_limited(self, bot, client):
        bot.rate_limiter = RateLimiter(max_requests=1, clock=lambda: 0.0)
        await bot.handle_mention(_mention("Jenny needs to finish the report"), client)
        await bot.handle_mention(_mention("Jenny needs to finish the report", ts="2"), client)
        assert _posted(client)[-1] == "⏳ Too many requests. Try again in 61s."

    @pytest.mark.asyncio
    async def test_unexpected_error_replies_generically(self, bot, client):
        with patch.object(
            bot.workflow, "extract_and_enqueue", AsyncMock(side_effect=RuntimeError("boom"))
        ):
            await bot.handle_mention(_mention("Jenny needs to finish the report"), client)
        assert _posted(client)[-1] == blocks.GENERIC_ERROR_TEXT

    @pytest.mark.asyncio
    async def test_malformed_event_is_ignored(self, bot, client):
        await bot.handle_mention({"type": "app_mention", "text": "hi"}, client)
        client.chat_postMessage.assert_not_awaited()


class TestSetupAndHistory:
    @pytest.mark.asyncio
    async def test_setup_suggests_mapping(self, bot, client):
        suggestion = MappingSuggestion("DKC Projects", "Spring Launch", "high", "channel name")
        with patch.object(
            bot.extractor, "suggest_channel_mapping", AsyncMock(return_value=suggestion)
        ) as suggest:
            await bot.handle_mention(_mention("setup"), client)

        suggest.assert_awaited_once_with("launch", "Spring launch")
        posted = client.chat_postMessage.call_args.kwargs["blocks"]
        value = json.loads(posted[-1]["elements"][0]["value"])
        assert value == {"workspace": "DKC Projects", "project": "Spring Launch", "channel": "C1"}

    @pytest.mark.asyncio
    async def test_setup_reports_existing_mapping(self, bot, client):
        bot.workflow.store.save_channel_mapping(
            ChannelMapping(
                slack_channel_id="C1",
                slack_workspace_id="T123",
                destination_group_id="W-dkc",
                project_name="Spring Launch",
            )
        )
        await bot.handle_mention(_mention("setup"), client)
        assert "already configured" in _posted(client)[0]

    @pytest.mark.asyncio
    async def test_confirm_mapping(self, bot, client):
        body = {
            "actions": [
                {"value": json.dumps({"workspace": "DKC Projects", "project": None, "channel": "C1"})}
            ],
            "user": {"id": "U1"},
            "channel": {"id": "C1"},
        }
        await bot.confirm_mapping(body, client)

        assert _posted(client) == ["✅ Channel mapped to *DKC Projects*."]
        assert bot.workflow.store.get_channel_mapping("C1", "T123").destination_group_id == "W-dkc"

    @pytest.mark.asyncio
    async def test_history_queues_tasks(self, bot, client):
        bot.analyzer.analyze = AsyncMock(
            return_value=ConversationAnalysis(
                success=True,
                tasks=[TaskDraft(title="Finish the report")],
                messages_analyzed=3,
                time_range="2 hours",
            )
        )
        await bot.handle_mention(_mention("history"), client)

        bot.analyzer.analyze.assert_awaited_once_with(client, "C1", TS, BOT, now=NOW)
        texts = _posted(client)
        assert "📚 Analyzed 3 messages over 2 hours." in texts
        assert texts[-1] == "📋 Found 1 task"
        assert bot.workflow.store.find_by_key(TS, "C1").tasks[0].title == "Finish the report"


class TestApprovalActions:
    """Tests for reactions and buttons."""

    @pytest.mark.asyncio
    async def test_reaction_approves(self, bot, client):
        await bot.handle_mention(_mention("Jenny needs to finish the report by Friday"), client)
        await bot.handle_reaction(_reaction("white_check_mark"), client)

        assert _posted(client)[-1] == "🔄 Creating 1 task in Motion..."
        update = client.chat_update.call_args.kwargs
        assert update["ts"] == "1700000001.000200"
        assert update["text"] == "✅ Successfully created 1 task in Motion!"
        assert bot.workflow.store.find_by_key(TS, "C1").status is QueueStatus.COMPLETED

    @pytest.mark.asyncio
    async def test_approve_twice_reports_already_created(self, bot, client):
        await bot.handle_mention(_mention("Jenny needs to finish the report by Friday"), client)
        await bot.approve("C1", TS, client)
        await bot.approve("C1", TS, client)
        assert _posted(client)[-1] == "⚠️ Tasks already created."

    @pytest.mark.asyncio
    async def test_approve_nothing(self, bot, client):
        await bot.approve("C1", TS, client)
        assert _posted(client) == [blocks.NOTHING_PENDING_TEXT]

    @pytest.mark.asyncio
    async def test_reaction_rejects(self, bot, client):
        await bot.handle_mention(_mention("Jenny needs to finish the report by Friday"), client)
        await bot.handle_reaction(_reaction("x"), client)

        assert _posted(client)[-1] == blocks.CANCELLED_TEXT
        assert bot.workflow.store.find_by_key(TS, "C1").status is QueueStatus.FAILED

    @pytest.mark.asyncio
    async def test_unrelated_reaction_is_ignored(self, bot, client):
        await bot.handle_reaction(_reaction("tada"), client)
        client.chat_postMessage.assert_not_awaited()

    @pytest.mark.asyncio
    async def test_edit_flow(self, bot, client):
        await bot.handle_mention(_mention("Jenny needs to finish the report by Friday"), client)
        await bot.request_edit("C1", TS, client)
        assert _posted(client)[-1] == blocks.EDIT_INSTRUCTIONS

        reply = {
            "type": "message",
            "text": "change task 1 assignee to Sam",
            "user": "U1",
            "channel": "C1",
            "ts": "1700000090.000100",
            "thread_ts": TS,
        }
        await bot.handle_message(reply, client)

        entry = bot.workflow.store.find_by_key(TS, "C1")
        assert entry.status is QueueStatus.PENDING
        assert entry.tasks[0].assignee == "Sam"
        assert _posted(client)[-1] == "📋 Found 1 task"

    @pytest.mark.asyncio
    async def test_free_text_reply_revises_tasks(self, bot, client):
        await bot.handle_mention(_mention("Jenny needs to finish the report by Friday"), client)
        await bot.request_edit("C1", TS, client)
        bot.extractor._complete.return_value = json.dumps(
            {"title": "Finish the Q3 report", "assignee": "Jenny", "due_date": "Friday"}
        )

        reply = {
            "type": "message",
            "text": "it's the Q3 report &amp; it goes to finance",
            "user": "U1",
            "channel": "C1",
            "ts": "1700000090.000100",
            "thread_ts": TS,
        }
        await bot.handle_message(reply, client)

        prompt = bot.extractor._complete.call_args.args[0]
        assert "Q3 report & it goes to finance" in prompt
        entry = bot.workflow.store.find_by_key(TS, "C1")
        assert entry.status is QueueStatus.PENDING
        assert entry.tasks[0].title == "Finish the Q3 report"
        assert _posted(client)[-1] == "📋 Found 1 task"


class TestMessageFiltering:
    """handle_message ignores everything but fresh edit replies."""

    def _reply(self, **overrides) -> dict:
        event = {
            "type": "message",
            "text": "remove task 1",
            "user": "U1",
            "channel": "C1",
            "ts": "1700000090.000100",
            "thread_ts": TS,
        }
        event.update(overrides)
        return event

    @pytest.mark.asyncio
    @pytest.mark.parametrize(
        "overrides",
        [
            {"bot_id": "B1"},
            {"subtype": "message_changed"},
            {"user": BOT},
            {"ts": "1699990000.000100"},
            {"thread_ts": None},
            {"text": "sounds good"},
        ],
    )
    async def test_ignored(self, bot, client, overrides):
        with patch.object(bot.workflow, "apply_edit", AsyncMock()) as apply_edit:
            await bot.handle_message(self._reply(**overrides), client)
        apply_edit.assert_not_awaited()
        client.chat_postMessage.assert_not_awaited()

    @pytest.mark.asyncio
    async def test_entry_not_in_editing(self, bot, client):
        await bot.handle_mention(_mention("Jenny needs to finish the report by Friday"), client)
        client.chat_postMessage.reset_mock()

        await bot.handle_message(self._reply(), client)
        client.chat_postMessage.assert_not_awaited()
        assert bot.workflow.store.find_by_key(TS, "C1").tasks


class TestLifecycleEvents:
    @pytest.mark.asyncio
    async def test_welcome_when_bot_joins(self, bot, client):
        await bot.handle_member_joined({"user": BOT, "channel": "C1"}, client)
        assert client.chat_postMessage.call_args.kwargs["blocks"] == blocks.welcome_blocks()

    @pytest.mark.asyncio
    async def test_no_welcome_for_other_members(self, bot, client):
        await bot.handle_member_joined({"user": "U2", "channel": "C1"}, client)
        client.chat_postMessage.assert_not_awaited()

    @pytest.mark.asyncio
    async def test_home_view(self, bot, client):
        await bot.handle_home_opened({"user": "U1"}, client)
        client.views_publish.assert_awaited_once_with(user_id="U1", view=blocks.home_view())
