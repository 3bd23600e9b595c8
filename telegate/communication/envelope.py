"""Agent payload builder.

One text payload per forwarded message::

    [TG GROUP:Team] alice said: <chat-context>
    [bob]: earlier message
    </chat-context>

    <replying-to>
    [carol]: quoted text
    </replying-to>

    <current-message>
    the message
    </current-message> ---- file: /path/to/media

User-controlled text is HTML-escaped before insertion, so a message that
contains ``</current-message>`` cannot close a block early. Inside the
context and quote blocks every line that starts with ``[`` is a real
``[name]: text`` line: names are kept on one line with brackets escaped,
and multi-line bodies continue on indented lines.
"""

import html
from typing import Optional, Sequence

from ..history import HistoryEntry

CHANNEL_LABEL = "TG"


def escape_text(text: Optional[str]) -> str:
    if not text:
        return ""
    return html.escape(text, quote=True)


def escape_name(name: Optional[str]) -> str:
    """Escape a display name for ``[name]`` positions: one line, no brackets."""
    escaped = " ".join(escape_text(name).split())
    return escaped.replace("[", "&#91;").replace("]", "&#93;")


def escape_line(text: Optional[str]) -> str:
    """Escape a ``[name]: text`` body; continuation lines are indented."""
    lines = escape_text(text).splitlines() or [""]
    return "\n  ".join(lines)


def chat_prefix(is_group: bool, group_name: Optional[str] = None) -> str:
    if not is_group:
        return f"[{CHANNEL_LABEL} DM]"
    return f"[{CHANNEL_LABEL} GROUP:{escape_name(group_name or 'group')}]"


def format_context_block(entries: Sequence[HistoryEntry], names: Optional[dict] = None) -> str:
    if not entries:
        return ""
    names = names or {}
    lines = []
    for e in entries:
        name = e.sender_name or names.get(e.sender_id) or e.sender_id
        lines.append(f"[{escape_name(name)}]: {escape_line(e.text)}")
    return "<chat-context>\n" + "\n".join(lines) + "\n</chat-context>\n\n"


def format_reply_block(sender: Optional[str], text: Optional[str]) -> str:
    if not text:
        return ""
    return f"<replying-to>\n[{escape_name(sender or 'unknown')}]: {escape_line(text)}\n</replying-to>\n\n"


def format_agent_message(
    *,
    is_group: bool,
    sender_name: str,
    text: str,
    group_name: Optional[str] = None,
    context: Sequence[HistoryEntry] = (),
    reply_sender: Optional[str] = None,
    reply_text: Optional[str] = None,
    media_path: Optional[str] = None,
    names: Optional[dict] = None,
) -> str:
    """Build the payload handed to the agent bridge."""
    message = f"{chat_prefix(is_group, group_name)} {escape_name(sender_name)} said: "
    message += format_context_block(context, names)
    message += format_reply_block(reply_sender, reply_text)
    message += f"<current-message>\n{escape_text(text)}\n</current-message>"
    if media_path:
        message += f" ---- file: {media_path}"
    return message
