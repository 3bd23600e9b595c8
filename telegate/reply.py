"""Reply delivery path: agent output back to Telegram.

Runs as a separate process (``telegate send <endpoint> <message>``). After a
successful send it:

1. writes the completion marker so the gateway stops the typing indicator;
2. reports the bot-authored text to the gateway's loopback listener so it
   lands in the chat history.

Neither step can fail the send; both are logged and skipped on error.
"""

import logging
from pathlib import Path
from typing import Optional

import httpx
from telegram import Bot
from telegram.error import TelegramError

from .communication.endpoint import Endpoint, parse_endpoint
from .communication.outbound import TELEGRAM_MAX_LENGTH, parse_reply
from .communication.sender import ReplySender
from .internal_api import MAX_RECORD_LENGTH, RECORD_PATH, TOKEN_HEADER, internal_token
from .typing_tracker import write_marker

logger = logging.getLogger("telegate.reply")

RECORD_TIMEOUT = 5.0


class ReplyError(Exception):
    """The reply cannot be delivered as requested (bad endpoint, missing file)."""


async def clear_reaction(bot: Bot, endpoint: Endpoint) -> None:
    """Remove the 👀 the gateway put on the trigger message."""
    if not endpoint.message_id or not endpoint.message_id.isdigit():
        return
    try:
        await bot.set_message_reaction(chat_id=endpoint.chat_id, message_id=int(endpoint.message_id), reaction=[])
    except TelegramError as e:
        logger.debug(f"Could not clear reaction on {endpoint.chat_id}/{endpoint.message_id}: {e}")


def mark_done(typing_dir: Path, endpoint: Endpoint) -> None:
    if not endpoint.correlation_id:
        return
    try:
        write_marker(typing_dir, endpoint.correlation_id)
    except OSError as e:
        logger.warning(f"Failed to write completion marker for {endpoint.correlation_id}: {e}")


async def record_outgoing(
    port: int,
    token_hash: str,
    chat_id: str,
    thread_id: Optional[str],
    text: str,
    client: Optional[httpx.AsyncClient] = None,
) -> bool:
    """POST the bot's own message to the running gateway."""
    payload = {"chatId": chat_id, "text": text[:MAX_RECORD_LENGTH]}
    if thread_id:
        payload["threadId"] = thread_id
    url = f"http://127.0.0.1:{port}{RECORD_PATH}"
    headers = {TOKEN_HEADER: token_hash}

    try:
        if client is None:
            async with httpx.AsyncClient(timeout=RECORD_TIMEOUT) as own_client:
                resp = await own_client.post(url, json=payload, headers=headers)
        else:
            resp = await client.post(url, json=payload, headers=headers)
    except httpx.HTTPError as e:
        logger.warning(f"Failed to record outgoing message for {chat_id}: {type(e).__name__}: {e}")
        return False

    if resp.status_code != 200:
        logger.warning(f"Gateway refused outgoing record for {chat_id}: HTTP {resp.status_code}")
        return False
    return True


def _media_file(raw_path: Optional[str]) -> Path:
    if not raw_path:
        raise ReplyError("media directive without a path")
    path = Path(raw_path).expanduser()
    if not path.is_file():
        raise ReplyError(f"file not found: {path}")
    return path


async def deliver_reply(
    bot: Bot,
    raw_endpoint: str,
    message: str,
    *,
    bot_token: str,
    typing_dir: Path,
    internal_port: int,
    max_length: int = TELEGRAM_MAX_LENGTH,
    sender: Optional[ReplySender] = None,
    client: Optional[httpx.AsyncClient] = None,
) -> str:
    """Deliver one agent reply. Returns the reply kind that was handled.

    Raises:
        ReplyError: unusable endpoint, empty message or missing media file.
        telegram.error.TelegramError: the send itself failed.
    """
    endpoint = parse_endpoint(raw_endpoint)
    if not endpoint.chat_id:
        raise ReplyError(f"invalid endpoint: {raw_endpoint!r}")

    reply = parse_reply(message)
    if reply.kind == "text" and not reply.text.strip():
        raise ReplyError("empty message")
    media_path = _media_file(reply.path) if reply.kind in ("image", "file") else None

    await clear_reaction(bot, endpoint)

    if reply.kind == "skip":
        logger.info(f"Agent skipped reply for {endpoint.correlation_id or endpoint.chat_id}")
        mark_done(typing_dir, endpoint)
        return reply.kind

    sender = sender or ReplySender(
        bot,
        endpoint.chat_id,
        thread_id=endpoint.thread_id,
        reply_to=endpoint.message_id,
        max_length=max_length,
    )
    if reply.kind == "image":
        await sender.send_photo(media_path)
        recorded = "[sent a photo]"
    elif reply.kind == "file":
        await sender.send_document(media_path)
        recorded = f"[sent a file: {media_path.name}]"
    else:
        await sender.send_text(reply.text)
        recorded = reply.text

    mark_done(typing_dir, endpoint)
    await record_outgoing(
        internal_port, internal_token(bot_token), endpoint.chat_id, endpoint.thread_id, recorded, client=client,
    )
    return reply.kind
