"""Outbound message processing: everything between agent text and the wire.

Handles:
- Reply directives from the agent ([SKIP], [MEDIA:image], [MEDIA:file])
- Message splitting for platform length limits

These operations are transport-agnostic. The sender applies them before
any Telegram call.
"""

from dataclasses import dataclass
from typing import Optional

TELEGRAM_MAX_LENGTH = 4000

SKIP_DIRECTIVE = "[SKIP]"
MEDIA_IMAGE_PREFIX = "[MEDIA:image]"
MEDIA_FILE_PREFIX = "[MEDIA:file]"

FENCE = "```"


# ============================================================
# REPLY DIRECTIVES
# ============================================================
# The agent signals non-text replies with a leading tag. A bare [SKIP]
# means "seen, nothing to say" (broadcast groups).

@dataclass(frozen=True)
class OutboundReply:
    kind: str  # "skip" | "image" | "file" | "text"
    text: str = ""
    path: Optional[str] = None


def parse_reply(message: str) -> OutboundReply:
    """Classify raw agent output into a reply kind."""
    if message.strip() == SKIP_DIRECTIVE:
        return OutboundReply(kind="skip")
    if message.startswith(MEDIA_IMAGE_PREFIX):
        return OutboundReply(kind="image", path=message[len(MEDIA_IMAGE_PREFIX):].strip())
    if message.startswith(MEDIA_FILE_PREFIX):
        return OutboundReply(kind="file", path=message[len(MEDIA_FILE_PREFIX):].strip())
    return OutboundReply(kind="text", text=message)


# ============================================================
# MESSAGE SPLITTING
# ============================================================

def _fence_break(remaining: str, segment: str, max_length: int) -> int:
    """Break point when ``segment`` ends inside a fenced code block.

    Prefer the line before the block's opening fence. If that leaves too
    small a chunk, take the whole block even if it runs past max_length.
    """
    fence_start = segment.rfind(FENCE)
    line_before_fence = remaining.rfind("\n", 0, fence_start)
    if line_before_fence > max_length * 0.2:
        return line_before_fence

    fence_end = remaining.find(FENCE, fence_start + len(FENCE))
    if fence_end == -1:
        # Never closed: no block boundary to respect
        return max_length
    block_end = remaining.find("\n", fence_end + len(FENCE))
    return block_end + 1 if block_end != -1 else fence_end + len(FENCE)


def _plain_break(segment: str, max_length: int) -> int:
    """Break point on the best semantic boundary in the last 70% of the segment."""
    floor = max_length * 0.3

    para = segment.rfind("\n\n")
    if para > floor:
        return para + 1
    newline = segment.rfind("\n")
    if newline > floor:
        return newline
    space = segment.rfind(" ")
    if space > floor:
        return space
    return max_length


def split_message(text: str, max_length: int = TELEGRAM_MAX_LENGTH) -> list[str]:
    """Split a long message into chunks respecting platform length limits.

    Split preference at each step: keep fenced code blocks whole, then
    paragraph break, line break, word boundary, hard cut. Chunks are
    trimmed; empty chunks are dropped.

    Args:
        text: Message text to split
        max_length: Maximum length per chunk (default: 4000 for Telegram)

    Returns:
        List of message chunks. Each is at most max_length long unless it
        holds a single fenced block that could not be broken before.
    """
    if max_length <= 0:
        raise ValueError("max_length must be positive")

    chunks = []
    remaining = text.strip()

    while remaining:
        if len(remaining) <= max_length:
            chunks.append(remaining)
            break

        segment = remaining[:max_length]
        if segment.count(FENCE) % 2 == 1:
            break_at = _fence_break(remaining, segment, max_length)
        else:
            break_at = _plain_break(segment, max_length)

        if break_at <= 0:
            break_at = max_length

        chunk = remaining[:break_at].strip()
        if chunk:
            chunks.append(chunk)
        remaining = remaining[break_at:].strip()

    return chunks
