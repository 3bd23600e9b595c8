"""Inbound events: the transport boundary.

Telegram updates are converted once, here, into plain dataclasses with
string identifiers. Everything past this module works on these events and
never touches a ``telegram.Update``.
"""

from dataclasses import dataclass, field
from typing import Optional, Union

from telegram import Message, Update

MAX_QUOTE_LENGTH = 500


@dataclass(frozen=True)
class Sender:
    id: str
    username: Optional[str] = None
    first_name: Optional[str] = None
    last_name: Optional[str] = None
    is_bot: bool = False

    @property
    def display_name(self) -> str:
        if self.first_name and self.last_name:
            return f"{self.first_name} {self.last_name}"
        return self.first_name or self.username or self.id


@dataclass(frozen=True)
class ChatRef:
    id: str
    type: str  # "private" | "group" | "supergroup" | "channel"
    title: Optional[str] = None

    @property
    def is_private(self) -> bool:
        return self.type == "private"

    @property
    def is_group(self) -> bool:
        return self.type in ("group", "supergroup")


@dataclass(frozen=True)
class ReplyRef:
    message_id: str
    sender_name: str
    text: str
    sender_id: Optional[str] = None


@dataclass(frozen=True)
class _MessageEvent:
    chat: ChatRef
    sender: Sender
    message_id: str
    thread_id: Optional[str] = None
    reply_to: Optional[ReplyRef] = None


@dataclass(frozen=True)
class TextMessage(_MessageEvent):
    text: str = ""


@dataclass(frozen=True)
class PhotoMessage(_MessageEvent):
    file_id: str = ""
    caption: Optional[str] = None


@dataclass(frozen=True)
class DocumentMessage(_MessageEvent):
    file_id: str = ""
    file_name: Optional[str] = None
    caption: Optional[str] = None


@dataclass(frozen=True)
class MemberAdded:
    chat: ChatRef
    added_by: Optional[Sender]
    members: tuple[Sender, ...] = field(default_factory=tuple)


@dataclass(frozen=True)
class ChatMemberStatusChanged:
    chat: ChatRef
    changed_by: Optional[Sender]
    old_status: str
    new_status: str


InboundEvent = Union[TextMessage, PhotoMessage, DocumentMessage, MemberAdded, ChatMemberStatusChanged]


# ── Adapter ──────────────────────────────────────────────────

def sender_from_user(user) -> Optional[Sender]:
    if user is None:
        return None
    return Sender(
        id=str(user.id),
        username=user.username,
        first_name=user.first_name,
        last_name=user.last_name,
        is_bot=bool(user.is_bot),
    )


def chat_from_telegram(chat) -> ChatRef:
    return ChatRef(id=str(chat.id), type=str(chat.type), title=chat.title)


def _thread_id(msg: Message) -> Optional[str]:
    # Only forum topics are separate conversations; plain reply chains carry
    # a thread id too and must stay in the chat's main history.
    if msg.message_thread_id and msg.is_topic_message:
        return str(msg.message_thread_id)
    return None


def _reply_ref(msg: Message) -> Optional[ReplyRef]:
    reply = msg.reply_to_message
    if reply is None:
        return None
    # A forum topic's first message shows up as reply_to on every topic post
    if msg.is_topic_message and reply.message_id == msg.message_thread_id:
        return None
    text = reply.text or reply.caption or ""
    if not text.strip():
        return None
    if len(text) > MAX_QUOTE_LENGTH:
        text = text[:MAX_QUOTE_LENGTH] + "…"
    user = reply.from_user
    if user is None:
        name = "unknown"
    else:
        name = user.first_name or user.username or str(user.id)
    return ReplyRef(
        message_id=str(reply.message_id),
        sender_name=name,
        text=text,
        sender_id=str(user.id) if user else None,
    )


def event_from_update(update: Update) -> Optional[InboundEvent]:
    """Convert a Telegram update into an inbound event, or None if irrelevant."""
    member_update = update.my_chat_member
    if member_update is not None:
        return ChatMemberStatusChanged(
            chat=chat_from_telegram(member_update.chat),
            changed_by=sender_from_user(member_update.from_user),
            old_status=str(member_update.old_chat_member.status),
            new_status=str(member_update.new_chat_member.status),
        )

    msg = update.message
    if msg is None or msg.from_user is None:
        return None

    chat = chat_from_telegram(msg.chat)
    sender = sender_from_user(msg.from_user)

    if msg.new_chat_members:
        return MemberAdded(
            chat=chat,
            added_by=sender,
            members=tuple(sender_from_user(u) for u in msg.new_chat_members),
        )

    common = dict(
        chat=chat,
        sender=sender,
        message_id=str(msg.message_id),
        thread_id=_thread_id(msg),
        reply_to=_reply_ref(msg),
    )
    if msg.text is not None:
        return TextMessage(text=msg.text, **common)
    if msg.photo:
        # Largest size is last
        return PhotoMessage(file_id=msg.photo[-1].file_id, caption=msg.caption, **common)
    if msg.document is not None:
        return DocumentMessage(
            file_id=msg.document.file_id,
            file_name=msg.document.file_name,
            caption=msg.caption,
            **common,
        )
    return None
