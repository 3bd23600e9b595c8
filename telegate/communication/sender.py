"""Outbound Telegram delivery: chunked text, photos and documents.

Wraps every Bot call with the two recoveries Telegram needs in practice:
- 429 (RetryAfter): wait the advertised time and try once more
- 400 mentioning the reply target: resend without the reply reference
"""

import asyncio
import logging
from datetime import timedelta
from pathlib import Path
from typing import Awaitable, Callable, Optional

from telegram import Bot
from telegram.error import BadRequest, RetryAfter

from .outbound import TELEGRAM_MAX_LENGTH, split_message

logger = logging.getLogger("telegate.sender")

DEFAULT_RETRY_AFTER = 5.0
CHUNK_DELAY = 0.5


def _retry_seconds(e: RetryAfter) -> float:
    value = getattr(e, "retry_after", None)
    if isinstance(value, timedelta):
        return value.total_seconds()
    if value is None:
        return DEFAULT_RETRY_AFTER
    return float(value)


def _is_reply_error(e: BadRequest) -> bool:
    # "Message to be replied not found", "Replied message not found", ...
    return "repl" in str(e).lower()


class ReplySender:
    """Sends one reply to one chat, optionally threaded and quoting a message."""

    def __init__(
        self,
        bot: Bot,
        chat_id: str,
        thread_id: Optional[str] = None,
        reply_to: Optional[str] = None,
        max_length: int = TELEGRAM_MAX_LENGTH,
        chunk_delay: float = CHUNK_DELAY,
        sleep: Callable[[float], Awaitable[object]] = asyncio.sleep,
    ):
        self.bot = bot
        self.chat_id = chat_id
        self.thread_id = thread_id
        self.reply_to = reply_to
        self.max_length = max_length
        self.chunk_delay = chunk_delay
        self._sleep = sleep

    def _base_kwargs(self, with_reply: bool) -> dict:
        kwargs = {"chat_id": self.chat_id}
        if self.thread_id:
            kwargs["message_thread_id"] = int(self.thread_id)
        if with_reply and self.reply_to:
            kwargs["reply_parameters"] = {"message_id": int(self.reply_to)}
        return kwargs

    async def _call(self, method: Callable[..., Awaitable], with_reply: bool, **kwargs):
        """Invoke a Bot method with rate-limit and reply-target recovery."""
        try:
            return await method(**self._base_kwargs(with_reply), **kwargs)
        except RetryAfter as e:
            wait = _retry_seconds(e)
            logger.warning(f"Rate limited by Telegram in chat {self.chat_id}, retrying in {wait}s")
            await self._sleep(wait)
            return await method(**self._base_kwargs(with_reply), **kwargs)
        except BadRequest as e:
            if with_reply and self.reply_to and _is_reply_error(e):
                logger.info(f"Reply target {self.reply_to} unavailable in chat {self.chat_id}, sending without it")
                return await method(**self._base_kwargs(False), **kwargs)
            raise

    async def send_text(self, text: str) -> int:
        """Send text split into chunks. Returns the number of chunks sent.

        Only the first chunk quotes the original message.
        """
        chunks = split_message(text, self.max_length)
        for i, chunk in enumerate(chunks):
            if i > 0:
                await self._sleep(self.chunk_delay)
            await self._call(self.bot.send_message, with_reply=(i == 0), text=chunk)
        logger.info(f"Sent {len(chunks)} chunk(s) to chat {self.chat_id}")
        return len(chunks)

    async def send_photo(self, path: Path, caption: Optional[str] = None):
        with open(path, "rb") as f:
            data = f.read()
        logger.info(f"Sending photo {path} to chat {self.chat_id}")
        return await self._call(self.bot.send_photo, with_reply=True, photo=data, caption=caption)

    async def send_document(self, path: Path, caption: Optional[str] = None):
        path = Path(path)
        with open(path, "rb") as f:
            data = f.read()
        logger.info(f"Sending document {path} to chat {self.chat_id}")
        return await self._call(
            self.bot.send_document, with_reply=True, document=data, filename=path.name, caption=caption,
        )
