"""Slack Block Kit payloads and message text."""

import json
from typing import Optional, Sequence

from projectize.conversation import ConversationAnalysis
from projectize.extraction import MappingSuggestion
from projectize.models import ChannelMapping, DestinationSuggestion, HistoryRecord, TaskDraft
from projectize.text import format_due_date_for_display, sanitize_for_slack, truncate_text
from projectize.workflow import ApprovalOutcome, LinkOutcome

USAGE_HINT = (
    "Hi! I extract tasks from messages. Try:\n"
    "• `@projectize I need to finish the report by Friday`\n"
    "• `@projectize help` for more info\n"
    "• `@projectize setup` to configure this channel"
)

ANALYZING_TEXT = "🔄 Analyzing your message for tasks..."
NO_TASKS_TEXT = (
    "🤔 I didn't find any clear actionable tasks in that message. "
    "Try being more specific about who should do what and when."
)
GENERIC_ERROR_TEXT = "❌ Sorry, something went wrong processing your request."
CANCELLED_TEXT = "❌ Tasks cancelled."
NOTHING_PENDING_TEXT = "⚠️ No pending tasks found here. They may have already been processed."

EDIT_INSTRUCTIONS = (
    "✏️ *Editing tasks.* Reply in this thread with one of:\n"
    "• `remove task 2`\n"
    "• `change task 1 assignee to Jenny`\n"
    "• `change task 1 date to Friday`\n"
    "Or just describe what to fix, e.g. `task 2 is for the Q3 report`."
)

WELCOME_TEXT = (
    "Hi! I'm Projectize 🚀 I'll help extract tasks from conversations "
    "and sync them to Motion."
)

HOW_TO_USE = (
    "*How to use:*\n"
    "• `@projectize [message]` - Extract tasks from your message\n"
    "• `@projectize setup` - Configure this channel\n"
    "• `@projectize status` - Show the task queue\n"
    "• `@projectize history` - Extract tasks from recent conversation\n"
    "• `@projectize link you@example.com` - Assign your tasks to your Motion user\n"
    "• Quote text with `>` and mention me to extract from quoted content\n"
    "• React with ✅ to create, ❌ to cancel, ✏️ to edit"
)


def _section(text: str) -> dict:
    return {"type": "section", "text": {"type": "mrkdwn", "text": text}}


def _button(text: str, action_id: str, value: str, style: Optional[str] = None) -> dict:
    button = {
        "type": "button",
        "text": {"type": "plain_text", "text": text},
        "action_id": action_id,
        "value": value,
    }
    if style:
        button["style"] = style
    return button


def plural(count: int, noun: str = "task") -> str:
    return f"{count} {noun}{'' if count == 1 else 's'}"


def task_line(index: int, task: TaskDraft, suggestion: Optional[DestinationSuggestion]) -> str:
    details = [f"👤 {sanitize_for_slack(task.assignee)}"]
    if task.due_date:
        details.append(f"📅 {sanitize_for_slack(format_due_date_for_display(task.due_date))}")
    if task.confidence:
        details.append(f"🎯 {task.confidence}")

    text = f"*{index}. {sanitize_for_slack(task.title)}*\n{' | '.join(details)}"
    if task.context:
        text += f"\n_{sanitize_for_slack(task.context)}_"
    if suggestion:
        target = f"📁 *{suggestion.group.name}*"
        if suggestion.project:
            target += f" > {suggestion.project.name}"
        text += f"\n{target} ({suggestion.confidence} confidence)"
        text += f"\n💭 _{suggestion.reasoning}_"
    return text


def task_preview_blocks(
    tasks: Sequence[TaskDraft],
    suggestions: Sequence[DestinationSuggestion],
    message_ts: str,
    quoted: Optional[str] = None,
) -> list:
    """Preview of an extracted batch with approve, edit and cancel buttons."""
    source = " from quoted text" if quoted else ""
    blocks = [_section(f"📋 *Found {plural(len(tasks))}{source}:*")]
    if quoted:
        blocks.append(_section(f"> {truncate_text(quoted, 200)}"))

    for index, task in enumerate(tasks):
        suggestion = suggestions[index] if index < len(suggestions) else None
        blocks.append(_section(task_line(index + 1, task, suggestion)))

    blocks.append(
        {
            "type": "actions",
            "elements": [
                _button("✅ Create in Motion", "approve_tasks", message_ts, "primary"),
                _button("✏️ Edit", "edit_tasks", message_ts),
                _button("❌ Cancel", "reject_tasks", message_ts),
            ],
        }
    )
    return blocks


def preview_text(tasks: Sequence[TaskDraft]) -> str:
    """Plain fallback for notifications."""
    return f"📋 Found {plural(len(tasks))}"


def creating_text(count: int) -> str:
    return f"🔄 Creating {plural(count)} in Motion..."


def approval_result_text(outcome: ApprovalOutcome) -> str:
    """Summarize an approval for the thread."""
    if outcome.completed:
        text = f"✅ Successfully created {plural(outcome.success_count)} in Motion!"
        if outcome.fail_count:
            failed = "\n".join(
                f"• {s.task.title}: {s.result.error}"
                for s in outcome.synced
                if not s.result.success
            )
            text += f"\n⚠️ {plural(outcome.fail_count)} failed to sync:\n{failed}"
        return text

    if outcome.exhausted:
        return "❌ Failed to sync tasks to Motion after several attempts. Giving up."

    error = outcome.entry.error_message if outcome.entry else None
    return (
        "⚠️ Failed to sync tasks to Motion. They've been queued for retry."
        + (f"\nError: {error}" if error else "")
    )


def already_processed_text(status: str) -> str:
    if status == "completed":
        return "⚠️ Tasks already created."
    if status == "failed":
        return "⚠️ These tasks were cancelled or failed."
    return "⚠️ Tasks are already being processed."


def extraction_error_text(error: Optional[str]) -> str:
    return f"⚠️ Sorry, I had trouble processing that message. Error: {error}"


def help_blocks() -> list:
    return [
        _section(
            "*🚀 Projectize Help*\n\nI help extract actionable tasks from your "
            "conversations and sync them to Motion."
        ),
        _section(HOW_TO_USE),
        _section(
            "*Examples:*\n"
            '• "Jenny needs to finish the website by Tuesday"\n'
            '• "We should schedule the client call for next week"\n'
            '• "I\'ll handle the presentation slides before Friday"'
        ),
    ]


def welcome_blocks() -> list:
    return [_section(WELCOME_TEXT), _section(HOW_TO_USE)]


def home_view() -> dict:
    return {
        "type": "home",
        "blocks": [
            _section(
                "🚀 *Welcome to Projectize!*\n\nI help extract actionable tasks "
                "from your conversations and sync them to Motion."
            ),
            _section(HOW_TO_USE),
            _section(
                "*Example:*\n"
                '"@projectize I need to write labcorp a letter by Friday for the '
                'nastygram project"'
            ),
        ],
    }


def setup_blocks(suggestion: MappingSuggestion, channel_id: str) -> list:
    """Suggested channel mapping with a confirm button."""
    value = json.dumps(
        {
            "workspace": suggestion.group,
            "project": suggestion.project,
            "channel": channel_id,
        }
    )
    return [
        _section(
            "🔧 *Channel Setup*\n\nI think this channel maps to:\n"
            f"📁 *{suggestion.group} > {suggestion.project}*\n\n"
            f"_{suggestion.reasoning}_"
        ),
        {
            "type": "actions",
            "elements": [_button("✅ Confirm", "confirm_mapping", value, "primary")],
        },
    ]


def existing_mapping_text(mapping: ChannelMapping) -> str:
    return (
        "✅ This channel is already configured!\n"
        f"📁 Motion Project: *{mapping.project_name or 'Not specified'}*"
    )


def mapping_saved_text(mapping: Optional[ChannelMapping], workspace: str) -> str:
    if mapping is None:
        return f"⚠️ Could not find a Motion workspace named *{workspace}*."
    project = f" > {mapping.project_name}" if mapping.project_name else ""
    return f"✅ Channel mapped to *{workspace}*{project}."


def status_text(counts: dict, recent: Sequence[HistoryRecord] = ()) -> str:
    lines = ["📊 *Task queue*"]
    for status, count in counts.items():
        lines.append(f"• {status}: {count}")
    if recent:
        lines.append("")
        lines.append("🕘 *Recent syncs here*")
        for record in recent:
            mark = "✅" if record.success else "⚠️"
            lines.append(
                f"• {mark} {plural(len(record.external_task_ids))} created "
                f"({record.created_at[:10]})"
            )
    return "\n".join(lines)


def link_result_text(outcome: LinkOutcome, slack_user_id: str) -> str:
    if outcome.linkage is None:
        return f"⚠️ Could not link <@{slack_user_id}>: {outcome.error}"
    return (
        f"🔗 Linked <@{slack_user_id}> to Motion user {outcome.linkage.email}. "
        "Tasks they assign to themselves will be assigned to that user."
    )


def history_summary_text(analysis: ConversationAnalysis) -> str:
    if not analysis.success:
        return extraction_error_text(analysis.error)
    if not analysis.messages_analyzed:
        return "📭 No recent conversation to analyze."
    text = (
        f"📚 Analyzed {plural(analysis.messages_analyzed, 'message')} "
        f"over {analysis.time_range}."
    )
    if not analysis.tasks:
        text += " No actionable tasks found."
    return text
