"""Agent-forwarding address.

Format: ``chatId|key:value|key:value...`` with keys ``msg`` (trigger
message), ``req`` (correlation ID, itself ``chatId:msgId``) and ``thread``.
Unknown keys are ignored and the first occurrence of a key wins, so the
format can grow without breaking older readers.
"""

from dataclasses import dataclass
from typing import Optional


@dataclass(frozen=True)
class Endpoint:
    chat_id: str
    message_id: Optional[str] = None
    correlation_id: Optional[str] = None
    thread_id: Optional[str] = None


def correlation_id_for(chat_id, message_id) -> str:
    return f"{chat_id}:{message_id}"


def build_endpoint(chat_id, message_id=None, thread_id=None) -> str:
    parts = [str(chat_id)]
    if message_id is not None:
        parts.append(f"msg:{message_id}")
        parts.append(f"req:{correlation_id_for(chat_id, message_id)}")
    if thread_id:
        parts.append(f"thread:{thread_id}")
    return "|".join(parts)


def parse_endpoint(raw: Optional[str]) -> Endpoint:
    if not raw or not isinstance(raw, str):
        return Endpoint(chat_id="")
    segments = raw.split("|")
    fields: dict[str, str] = {}
    for segment in segments[1:]:
        sep = segment.find(":")
        # Need a non-empty key and a non-empty value
        if 0 < sep < len(segment) - 1:
            key = segment[:sep]
            if key not in fields:
                fields[key] = segment[sep + 1:]
    return Endpoint(
        chat_id=segments[0],
        message_id=fields.get("msg"),
        correlation_id=fields.get("req"),
        thread_id=fields.get("thread"),
    )
