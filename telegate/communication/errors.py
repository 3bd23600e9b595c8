"""Error classification for user-facing messages."""

import asyncio

import httpx
from telegram.error import BadRequest, Forbidden, NetworkError, RetryAfter, TimedOut

from ..bridge import AgentBridgeError

GENERIC_FAILURE = "⚠️ Failed to deliver your message. Please try again."


def classify_error(e: Exception) -> str:
    """Classify any exception into a short notice for the chat.

    Order matters: TimedOut and RetryAfter are NetworkError subclasses in
    python-telegram-bot, so the specific ones go first.
    """
    # 1: Agent bridge crashed twice in a row
    if isinstance(e, AgentBridgeError):
        return "⚠️ The agent is not reachable right now. Please try again later."

    # 2-5: Telegram API errors
    if isinstance(e, RetryAfter):
        return "⚠️ Telegram is rate limiting this bot. Please wait a moment and try again."
    if isinstance(e, TimedOut):
        return "⚠️ Telegram request timed out. Please try again."
    if isinstance(e, Forbidden):
        return "⚠️ The bot is not allowed to do that in this chat."
    if isinstance(e, BadRequest):
        return "⚠️ Telegram rejected the request."
    if isinstance(e, NetworkError):
        return "⚠️ Cannot reach Telegram. Please try again."

    # 6-7: Plain HTTP errors (media download, loopback)
    if isinstance(e, (httpx.ReadTimeout, httpx.WriteTimeout, httpx.PoolTimeout, httpx.ConnectTimeout)):
        return "⚠️ Request timed out. Please try again."
    if isinstance(e, httpx.ConnectError):
        return "⚠️ Connection failed. Please try again."

    # 8: asyncio timeout
    if isinstance(e, asyncio.TimeoutError):
        return "⚠️ Request timed out. Please try again."

    # 9: Local disk problems (media dir, logs)
    if isinstance(e, OSError):
        return "⚠️ Local storage error. Check logs for details."

    # 10: Fallback: include type name for debugging
    type_name = type(e).__name__
    return f"⚠️ Something went wrong ({type_name}). Check logs for details."
