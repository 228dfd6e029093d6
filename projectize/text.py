"""Slack message text helpers."""

import re
from dataclasses import dataclass
from datetime import datetime
from typing import Optional

BOT_COMMANDS = ("help", "setup", "status", "history")

_LEADING_MENTION = re.compile(r"^<@[A-Z0-9]+>\s*", re.IGNORECASE)
_COMMAND = re.compile(r"^(%s)\s*$" % "|".join(BOT_COMMANDS), re.IGNORECASE)
_USER_MENTION = re.compile(r"<@([A-Z0-9]+)>")
_LINK_COMMAND = re.compile(r"^link\s+(\S.*)$", re.IGNORECASE | re.DOTALL)
_MAILTO = re.compile(r"<mailto:([^|>]+)(?:\|[^>]*)?>")
_CHANNEL_MENTION = re.compile(r"<#([A-Z0-9]+)\|([^>]+)>")


@dataclass
class ParsedMessage:
    """A bot mention split into free text and an optional command."""

    content: str = ""
    command: Optional[str] = None


@dataclass
class EditCommand:
    """A user request to modify one task of a pending batch."""

    action: str  # "remove", "change_assignee" or "change_date"
    task_index: int  # 0-based
    value: Optional[str] = None


@dataclass
class LinkCommand:
    """`link EMAIL` or `link @user EMAIL`."""

    email: str
    slack_user_id: Optional[str] = None


def parse_message(text: Optional[str]) -> ParsedMessage:
    """Strip the leading bot mention and detect bare commands.

    Args:
        text: Raw Slack message text.

    Returns:
        ParsedMessage with either a command or the cleaned content.
    """
    if not text or not isinstance(text, str):
        return ParsedMessage()

    clean = _LEADING_MENTION.sub("", text).strip()

    match = _COMMAND.match(clean)
    if match:
        return ParsedMessage(content="", command=match.group(1).lower())

    if parse_link_command(clean):
        return ParsedMessage(content=clean, command="link")

    return ParsedMessage(content=clean)


def extract_quoted_text(text: Optional[str]) -> str:
    """Join the content of every ``>`` quoted line with single spaces."""
    if not text or not isinstance(text, str):
        return ""

    quoted = []
    for line in text.split("\n"):
        stripped = line.strip()
        if not stripped.startswith(">"):
            continue
        content = re.sub(r"^>\s*", "", stripped).strip()
        if content:
            quoted.append(content)

    return " ".join(quoted)


def parse_user_mention(text: Optional[str]) -> Optional[str]:
    """Return the first mentioned user ID, if any."""
    if not text:
        return None
    match = _USER_MENTION.search(text)
    return match.group(1) if match else None


def parse_link_command(text: Optional[str]) -> Optional[LinkCommand]:
    """Parse `link [<@U123>] EMAIL`, unwrapping Slack mailto links.

    Anything other than exactly one address-looking word after the optional
    mention is not a link command.
    """
    match = _LINK_COMMAND.match((text or "").strip())
    if not match:
        return None

    args = match.group(1)
    words = _MAILTO.sub(r"\1", _USER_MENTION.sub("", args)).split()
    if len(words) != 1 or "@" not in words[0]:
        return None
    return LinkCommand(email=words[0], slack_user_id=parse_user_mention(args))


def strip_slack_formatting(text: Optional[str]) -> str:
    """Replace Slack markup with plain text."""
    if not text:
        return ""

    text = _USER_MENTION.sub("@user", text)
    text = _CHANNEL_MENTION.sub(r"#\2", text)
    text = re.sub(r"<([^|>]+)\|([^>]+)>", r"\2", text)
    text = re.sub(r"<([^>]+)>", r"\1", text)
    text = re.sub(r"\*([^*]+)\*", r"\1", text)
    text = re.sub(r"_([^_]+)_", r"\1", text)
    text = re.sub(r"~([^~]+)~", r"\1", text)
    text = re.sub(r"`([^`]+)`", r"\1", text)
    return text.strip()


def parse_task_edit_command(text: Optional[str]) -> Optional[EditCommand]:
    """Parse an edit instruction such as ``remove task 2``.

    Supported forms (case-insensitive):
        remove task N
        change task N assignee to NAME
        change|update task N [due] date to WHEN

    Args:
        text: Message text.

    Returns:
        EditCommand with a 0-based index, or None if nothing matched.
    """
    if not text:
        return None

    match = re.search(r"remove\s+task\s+(\d+)", text, re.IGNORECASE)
    if match:
        return EditCommand(action="remove", task_index=int(match.group(1)) - 1)

    match = re.search(
        r"change\s+task\s+(\d+)\s+assignee\s+to\s+(.+)", text, re.IGNORECASE
    )
    if match:
        return EditCommand(
            action="change_assignee",
            task_index=int(match.group(1)) - 1,
            value=match.group(2).strip(),
        )

    match = re.search(
        r"(?:change|update)\s+task\s+(\d+)\s+(?:due\s+)?date\s+to\s+(.+)",
        text,
        re.IGNORECASE,
    )
    if match:
        return EditCommand(
            action="change_date",
            task_index=int(match.group(1)) - 1,
            value=match.group(2).strip(),
        )

    return None


def format_due_date_for_display(
    value: Optional[str], now: Optional[datetime] = None
) -> str:
    """Render an ISO due date relative to ``now``.

    Unparsable values are returned unchanged.
    """
    if not value:
        return ""

    try:
        due = datetime.fromisoformat(value)
    except ValueError:
        return value

    now = now or datetime.now(due.tzinfo)
    diff_days = (due.date() - now.date()).days

    if diff_days == 0:
        return "Today"
    if diff_days == 1:
        return "Tomorrow"
    if diff_days == -1:
        return "Yesterday"
    if 1 < diff_days <= 7:
        return f"In {diff_days} days"
    if -7 <= diff_days < -1:
        return f"{abs(diff_days)} days ago"
    return due.strftime("%b %d, %Y")


def truncate_text(text: Optional[str], max_length: int = 100) -> Optional[str]:
    if not text or len(text) <= max_length:
        return text
    return text[: max_length - 3] + "..."


def sanitize_for_slack(text: Optional[str]) -> str:
    """Escape the characters Slack treats as control sequences."""
    if not text:
        return ""
    return (
        text.replace("&", "&amp;").replace("<", "&lt;").replace(">", "&gt;").strip()
    )


def unescape_slack(text: Optional[str]) -> str:
    """Undo the entity escaping Slack applies to event text."""
    if not text:
        return ""
    return text.replace("&gt;", ">").replace("&lt;", "<").replace("&amp;", "&")
