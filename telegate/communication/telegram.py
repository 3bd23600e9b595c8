"""Telegram gateway: dispatcher and python-telegram-bot wiring.

``Dispatcher`` holds the per-message policy and never sees a
``telegram.Update``; ``TelegramGateway`` owns the PTB Application and turns
updates into inbound events for it.

Per message:
    reload config → authorize → replay history (first time per key) →
    record → decide whether to forward → build payload → 👀 + typing →
    hand to the agent bridge
"""

import asyncio
import logging
import re
from pathlib import Path
from typing import Optional

from telegram import Bot, BotCommand, ReactionTypeEmoji, Update
from telegram.constants import ChatAction
from telegram.error import TelegramError
from telegram.ext import (
    Application,
    ChatMemberHandler,
    CommandHandler,
    ContextTypes,
    MessageHandler,
    filters,
)

from ..bridge import AgentBridge, AgentRejection
from ..config_store import ConfigStore
from ..history import HistoryEntry, HistoryStore, history_key, synthetic_message_id, utc_timestamp
from ..media import download_document, download_photo
from ..security import (
    add_group,
    bind_owner,
    get_group,
    group_history_limit,
    has_owner,
    is_authorized,
    is_broadcast_group,
    is_group_message_authorized,
    is_owner,
)
from ..typing_tracker import TypingTracker
from ..user_cache import UserNameCache
from .endpoint import build_endpoint, correlation_id_for
from .envelope import format_agent_message
from .errors import classify_error
from .inbound import (
    ChatMemberStatusChanged,
    ChatRef,
    DocumentMessage,
    MemberAdded,
    PhotoMessage,
    Sender,
    TextMessage,
    event_from_update,
)

logger = logging.getLogger("telegate.telegram")

OWNER_BOUND_REPLY = "You are now the admin of this bot."
PRIVATE_DENIED_REPLY = "Sorry, this bot is private."
READY_REPLY = "Bot is ready. Send me a message!"
PHOTO_FAILED_REPLY = "Failed to download photo."
FILE_FAILED_REPLY = "Failed to download file."
MEDIA_DISABLED_REPLY = "Media download is disabled."

FORWARD_REACTION = "👀"
MAX_REJECTION_LENGTH = 500

_JOINED = ("member", "administrator")
_REMOVED = ("left", "kicked")


def make_typing_sender(bot: Bot):
    """Adapter from the typing tracker's callback to ``send_chat_action``."""

    async def send_typing(chat_id: str, thread_id: Optional[str]):
        await bot.send_chat_action(
            chat_id=chat_id,
            action=ChatAction.TYPING,
            message_thread_id=int(thread_id) if thread_id else None,
        )

    return send_typing


def _event_text(event) -> str:
    """Text that stands for the message in history and in the payload."""
    if isinstance(event, TextMessage):
        return event.text
    if isinstance(event, PhotoMessage):
        return event.caption or "[sent a photo]"
    if isinstance(event, DocumentMessage):
        return event.caption or f"[sent a file: {event.file_name or 'file'}]"
    return ""


class Dispatcher:
    """Routes inbound events through authorization, history and the agent."""

    def __init__(
        self,
        bot: Bot,
        config_store: ConfigStore,
        history: HistoryStore,
        bridge: AgentBridge,
        typing: TypingTracker,
        names: UserNameCache,
        media_dir: Path,
    ):
        self.bot = bot
        self.config_store = config_store
        self.history = history
        self.bridge = bridge
        self.typing = typing
        self.names = names
        self.media_dir = Path(media_dir)
        self.bot_id: Optional[str] = None
        self.bot_username: Optional[str] = None
        # Groups the owner was already told about this run
        self._announced_groups: set[str] = set()

    def set_identity(self, bot_id, username: Optional[str]) -> None:
        self.bot_id = str(bot_id) if bot_id is not None else None
        self.bot_username = username

    # ── Entry points ─────────────────────────────────────────

    async def handle_event(self, event) -> None:
        config = self.config_store.load()
        if not config.get("enabled", True):
            return
        if isinstance(event, MemberAdded):
            await self._on_member_added(config, event)
        elif isinstance(event, ChatMemberStatusChanged):
            await self._on_status_changed(config, event)
        elif isinstance(event, (TextMessage, PhotoMessage, DocumentMessage)):
            await self._on_message(config, event)

    async def handle_start(self, event: TextMessage) -> None:
        """/start: binds the owner on first contact, otherwise reports status."""
        config = self.config_store.load()
        if not config.get("enabled", True) or not event.chat.is_private:
            return
        sender = event.sender

        if not has_owner(config):
            if self._bind_owner(config, sender):
                await self._reply(event.chat.id, OWNER_BOUND_REPLY)
                return

        if not is_authorized(config, sender.id, sender.username):
            logger.info(f"Unauthorized /start from {sender.id} (@{sender.username})")
            await self._reply(event.chat.id, PRIVATE_DENIED_REPLY)
            return

        await self._reply(event.chat.id, READY_REPLY)

    async def record_outgoing(self, chat_id: str, thread_id: Optional[str], text: str) -> None:
        """Add a bot-authored message (reported by the reply path) to history."""
        config = self.config_store.load()
        limit = group_history_limit(config, chat_id)
        key = history_key(chat_id, thread_id)
        # Replay first: a non-empty window counts as already replayed
        self.history.ensure_replay(key, limit)
        entry = HistoryEntry(
            timestamp=utc_timestamp(),
            message_id=synthetic_message_id(),
            sender_id=self.bot_id or "bot",
            sender_name=self.bot_username or "bot",
            text=text,
            thread_id=thread_id,
        )
        self.history.record(key, entry, limit)
        logger.debug(f"Recorded outgoing message for {key}")

    # ── Messages ─────────────────────────────────────────────

    async def _on_message(self, config: dict, event) -> None:
        chat, sender = event.chat, event.sender

        if chat.is_private:
            if not has_owner(config) and self._bind_owner(config, sender):
                await self._reply(chat.id, OWNER_BOUND_REPLY)
            if not is_authorized(config, sender.id, sender.username):
                logger.info(f"Unauthorized private message from {sender.id} (@{sender.username})")
                await self._reply(chat.id, PRIVATE_DENIED_REPLY)
                return
        elif chat.is_group:
            if not is_group_message_authorized(config, chat.id, sender.id):
                logger.info(f"Ignoring message in group {chat.id} from {sender.id}: not authorized")
                return
        else:
            return

        limit = group_history_limit(config, chat.id)
        key = history_key(chat.id, event.thread_id)
        self.history.ensure_replay(key, limit)

        sender_name = self.names.resolve(sender.id, sender.username, sender.first_name)
        text = _event_text(event)
        entry = HistoryEntry(
            timestamp=utc_timestamp(),
            message_id=event.message_id,
            sender_id=sender.id,
            sender_name=sender_name,
            text=text,
            thread_id=event.thread_id,
        )
        if not self.history.record(key, entry, limit):
            # Duplicate delivery of a message already handled
            return

        if chat.is_group and not is_broadcast_group(config, chat.id) and not self._addresses_bot(event, text):
            return

        try:
            await self._forward(config, event, key, limit, sender_name, text)
        except Exception as e:
            logger.error(f"Failed to handle message {event.message_id} in chat {chat.id}: {e}", exc_info=True)
            await self._reply(chat.id, classify_error(e), thread_id=event.thread_id)

    def _bind_owner(self, config: dict, sender: Sender) -> bool:
        if not bind_owner(config, sender.id, sender.username or sender.display_name):
            return False
        self.config_store.save(config)
        return True

    def _addresses_bot(self, event, text: str) -> bool:
        reply = event.reply_to
        if reply is not None and self.bot_id and reply.sender_id == self.bot_id:
            return True
        if self.bot_username and f"@{self.bot_username}".lower() in text.lower():
            return True
        return False

    def _strip_mention(self, text: str) -> str:
        if not self.bot_username:
            return text
        stripped = re.sub(rf"@{re.escape(self.bot_username)}\b", "", text, flags=re.IGNORECASE).strip()
        return stripped or text

    async def _forward(self, config: dict, event, key: str, limit: int, sender_name: str, text: str) -> None:
        chat = event.chat

        media_path = None
        if isinstance(event, (PhotoMessage, DocumentMessage)):
            if not (config.get("features") or {}).get("download_media", True):
                logger.info(f"Media download disabled, not forwarding {event.message_id} in chat {chat.id}")
                await self._reply(chat.id, MEDIA_DISABLED_REPLY, thread_id=event.thread_id)
                return
            try:
                if isinstance(event, PhotoMessage):
                    media_path = await download_photo(self.bot, event.file_id, self.media_dir)
                else:
                    media_path = await download_document(self.bot, event.file_id, self.media_dir, event.file_name)
            except (TelegramError, OSError) as e:
                logger.error(f"Media download failed for {event.message_id} in chat {chat.id}: {e}")
                failed = PHOTO_FAILED_REPLY if isinstance(event, PhotoMessage) else FILE_FAILED_REPLY
                await self._reply(chat.id, failed, thread_id=event.thread_id)
                return

        context = self.history.get_recent_history(key, exclude_message_id=event.message_id, limit=limit)
        group = get_group(config, chat.id) if chat.is_group else None
        reply = event.reply_to
        content = format_agent_message(
            is_group=chat.is_group,
            sender_name=sender_name,
            text=self._strip_mention(text) if chat.is_group else text,
            group_name=(group or {}).get("name") or chat.title,
            context=context,
            reply_sender=reply.sender_name if reply else None,
            reply_text=reply.text if reply else None,
            media_path=str(media_path) if media_path else None,
            names={e.sender_id: self.names.get_cached_name(e.sender_id) for e in context},
        )

        endpoint = build_endpoint(chat.id, event.message_id, event.thread_id)
        cid = correlation_id_for(chat.id, event.message_id)

        await self._set_reaction(chat.id, event.message_id, FORWARD_REACTION)
        self.typing.start(cid, chat.id, event.thread_id)
        try:
            await self.bridge.forward(endpoint, content)
        except AgentRejection as e:
            self.typing.complete(cid)
            await self._set_reaction(chat.id, event.message_id, None)
            await self._reply(chat.id, e.message[:MAX_REJECTION_LENGTH], thread_id=event.thread_id)
        except Exception:
            self.typing.complete(cid)
            await self._set_reaction(chat.id, event.message_id, None)
            raise

    # ── Membership ───────────────────────────────────────────

    async def _on_member_added(self, config: dict, event: MemberAdded) -> None:
        if self.bot_id and any(m.id == self.bot_id for m in event.members):
            await self._on_bot_joined(config, event.chat, event.added_by)

    async def _on_status_changed(self, config: dict, event: ChatMemberStatusChanged) -> None:
        if event.new_status in _JOINED and event.old_status not in _JOINED:
            await self._on_bot_joined(config, event.chat, event.changed_by)
        elif event.new_status in _REMOVED and event.old_status not in _REMOVED:
            logger.info(f"Bot removed from group: {event.chat.title} ({event.chat.id})")

    async def _on_bot_joined(self, config: dict, chat: ChatRef, added_by: Optional[Sender]) -> None:
        if not chat.is_group:
            return
        logger.info(f"Bot added to group: {chat.title} ({chat.id})")
        if get_group(config, chat.id):
            logger.info(f"Group {chat.id} already configured")
            return

        if added_by is not None and is_owner(config, added_by.id):
            add_group(config, chat.id, chat.title, mode="mention")
            self.config_store.save(config)
            logger.info(f"Group {chat.id} added by owner, enabled in mention mode")
            return

        if not has_owner(config) or chat.id in self._announced_groups:
            return
        self._announced_groups.add(chat.id)
        who = added_by.display_name if added_by else "someone"
        title = chat.title or "group"
        await self._reply(
            str(config["owner"]["id"]),
            f"Bot was added to group \"{title}\" ({chat.id}) by {who}.\n"
            f"To enable it, run: telegate admin add-group {chat.id} \"{title}\"",
        )

    # ── Transport helpers ────────────────────────────────────

    async def _reply(self, chat_id: str, text: str, thread_id: Optional[str] = None) -> None:
        try:
            await self.bot.send_message(
                chat_id=chat_id,
                text=text,
                message_thread_id=int(thread_id) if thread_id else None,
            )
        except TelegramError as e:
            logger.error(f"Failed to send message to {chat_id}: {e}")

    async def _set_reaction(self, chat_id: str, message_id: str, emoji: Optional[str]) -> None:
        reaction = [ReactionTypeEmoji(emoji)] if emoji else []
        try:
            await self.bot.set_message_reaction(chat_id=chat_id, message_id=int(message_id), reaction=reaction)
        except TelegramError as e:
            logger.debug(f"Reaction update failed for {chat_id}/{message_id}: {e}")


class TelegramGateway:
    """python-telegram-bot Application wired to a Dispatcher."""

    def __init__(self, app: Application, dispatcher: Dispatcher):
        self.app = app
        self.dispatcher = dispatcher

    def _register_handlers(self):
        self.app.add_handler(CommandHandler("start", self._cmd_start))
        self.app.add_handler(MessageHandler(filters.TEXT & ~filters.COMMAND, self._handle_update))
        self.app.add_handler(MessageHandler(filters.PHOTO, self._handle_update))
        self.app.add_handler(MessageHandler(filters.Document.ALL, self._handle_update))
        self.app.add_handler(MessageHandler(filters.StatusUpdate.NEW_CHAT_MEMBERS, self._handle_update))
        self.app.add_handler(ChatMemberHandler(self._handle_update, ChatMemberHandler.MY_CHAT_MEMBER))
        self.app.add_error_handler(self._handle_error)

    async def start(self):
        """Initialize the bot and start long polling."""
        self._register_handlers()

        logger.info("Starting Telegram bot...")
        # Transient network timeouts on getMe shouldn't kill the gateway
        for attempt in range(5):
            try:
                await self.app.initialize()
                break
            except TelegramError as e:
                if attempt < 4:
                    delay = [2, 5, 10, 15][attempt]
                    logger.warning(f"Telegram init failed (attempt {attempt + 1}/5): {type(e).__name__}: {e}. Retrying in {delay}s...")
                    await asyncio.sleep(delay)
                else:
                    raise

        self.dispatcher.set_identity(self.app.bot.id, self.app.bot.username)
        await self.app.start()
        await self.app.updater.start_polling(allowed_updates=["message", "my_chat_member"])
        await self.app.bot.set_my_commands([BotCommand("start", "Check access to this bot")])
        logger.info(f"Telegram bot @{self.app.bot.username} started.")

    async def stop(self):
        if self.app.updater and self.app.updater.running:
            await self.app.updater.stop()
        if self.app.running:
            await self.app.stop()
        await self.app.shutdown()
        logger.info("Telegram bot stopped.")

    async def _handle_update(self, update: Update, context: ContextTypes.DEFAULT_TYPE):
        event = event_from_update(update)
        if event is not None:
            await self.dispatcher.handle_event(event)

    async def _cmd_start(self, update: Update, context: ContextTypes.DEFAULT_TYPE):
        event = event_from_update(update)
        if isinstance(event, TextMessage):
            await self.dispatcher.handle_start(event)

    async def _handle_error(self, update: object, context: ContextTypes.DEFAULT_TYPE):
        """Handle errors in update processing."""
        error = context.error
        logger.error(f"Telegram error processing update: {type(error).__name__}: {error}", exc_info=error)
        if self.app.updater and not self.app.updater.running:
            logger.critical("POLLING STOPPED after error: bot will not receive new messages!")
