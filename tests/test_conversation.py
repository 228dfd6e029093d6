"""Tests for conversation history analysis."""

from unittest.mock import AsyncMock, MagicMock

import pytest
from slack_sdk.errors import SlackApiError

from projectize.conversation import (
    DEFAULT_WINDOW_SECONDS,
    ConversationAnalyzer,
    build_transcript,
    clean_message_text,
    describe_time_range,
    is_relevant,
)

NOW = 1_700_100_000.0
BOT = "UBOT12345"


def _message(ts: float, text: str, **extra) -> dict:
    return {"type": "message", "ts": f"{ts:.6f}", "text": text, **extra}


def _client(*pages) -> MagicMock:
    client = MagicMock()
    client.conversations_history = AsyncMock(side_effect=[{"messages": p} for p in pages])
    return client


class TestHelpers:
    def test_clean_message_text(self):
        text = "<@U0ABC1234> see <#C0ABC1234|launch>\nand <https://x.io|the doc>"
        assert clean_message_text(text) == "@user see #launch and the doc"
        assert clean_message_text(None) == ""

    def test_is_relevant(self):
        assert is_relevant(_message(1, "Jenny will send the deck"))
        assert not is_relevant(_message(1, "ok"))
        assert not is_relevant(_message(1, "Jenny will send the deck", bot_id="B1"))
        assert not is_relevant(_message(1, "Jenny will send the deck", subtype="channel_join"))
        assert not is_relevant(_message(1, "<@U1> has joined the channel"))

    def test_describe_time_range(self):
        assert describe_time_range([]) == "none"
        assert describe_time_range([_message(0, "a"), _message(1800, "b")]) == "30 minutes"
        assert describe_time_range([_message(0, "a"), _message(7200, "b")]) == "2 hours"
        assert describe_time_range([_message(0, "a"), _message(172800, "b")]) == "2 days"

    def test_build_transcript(self):
        transcript = build_transcript(
            [_message(NOW, "I'll ship it", user_profile={"real_name": "Jenny"})]
        )
        assert transcript.startswith("RECENT CONVERSATION HISTORY:")
        assert "Jenny: I'll ship it" in transcript
        assert "PLEASE EXTRACT ALL ACTIONABLE TASKS" in transcript


class TestConversationAnalyzer:
    """Tests for ConversationAnalyzer.analyze."""

    @pytest.mark.asyncio
    async def test_reads_since_last_mention(self, extractor):
        current = f"{NOW:.6f}"
        mention = _message(NOW - 3600, f"<@{BOT}> hi")
        client = _client(
            [_message(NOW, f"<@{BOT}> history"), mention],
            [
                _message(NOW - 60, "Jenny will finish the report by Friday"),
                _message(NOW - 600, "Who owns the quarterly report?"),
                _message(NOW - 700, "ok"),
            ],
        )

        analysis = await ConversationAnalyzer(extractor).analyze(
            client, "C1", current, BOT, now=NOW
        )

        assert analysis.success
        assert analysis.messages_analyzed == 2
        assert analysis.time_range == "9 minutes"
        assert [t.title for t in analysis.tasks] == ["Finish the report"]

        second_call = client.conversations_history.call_args_list[1].kwargs
        assert second_call["oldest"] == mention["ts"]
        assert second_call["latest"] == current

        prompt = extractor._complete.call_args.args[0]
        assert prompt.index("Who owns") < prompt.index("Jenny will finish")
        assert "Channel context: conversation-history" in prompt

    @pytest.mark.asyncio
    async def test_default_window_without_bot_id(self, extractor):
        client = _client([_message(NOW - 60, "Jenny will finish the report")])
        analysis = await ConversationAnalyzer(extractor).analyze(
            client, "C1", f"{NOW:.6f}", "", now=NOW
        )

        assert analysis.messages_analyzed == 1
        client.conversations_history.assert_awaited_once()
        oldest = client.conversations_history.call_args.kwargs["oldest"]
        assert oldest == str(int(NOW - DEFAULT_WINDOW_SECONDS))

    @pytest.mark.asyncio
    async def test_no_messages(self, extractor):
        client = _client([], [])
        analysis = await ConversationAnalyzer(extractor).analyze(
            client, "C1", f"{NOW:.6f}", BOT, now=NOW
        )
        assert analysis.success
        assert analysis.messages_analyzed == 0
        extractor._complete.assert_not_awaited()

    @pytest.mark.asyncio
    async def test_slack_error_is_reported(self, extractor):
        client = MagicMock()
        client.conversations_history = AsyncMock(
            side_effect=SlackApiError("not_in_channel", {"ok": False, "error": "not_in_channel"})
        )
        analysis = await ConversationAnalyzer(extractor).analyze(
            client, "C1", f"{NOW:.6f}", BOT, now=NOW
        )
        assert not analysis.success
        assert "not_in_channel" in analysis.error
